"""Command-line client for the bot-flow build agent.

Usage:
    botflow build "Appointment booking bot for a dental clinic" --client "Acme Dental" --project "Booking"
    botflow build description.txt --bot-id AcmeDental.Booking --output flow.csv
    botflow errors --limit 10
    botflow human-fix --node 12 --field Message --current "..." --correct "..." --explanation "..."
    botflow serve --port 8000
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import pathlib
import sys
from argparse import ArgumentParser, Namespace

from dotenv import load_dotenv

from botflow_agent.agent.pipeline import BuildFailure, BuildRequest, ProgressUpdate
from botflow_agent.agent.metrics import format_phase_table


def _print_progress(update: ProgressUpdate) -> None:
    detail = f" ({update.detail})" if update.detail else ""
    print(f"[{update.progress:3d}%] {update.phase.value:<9} {update.message}{detail}")


def _read_description(value: str) -> str:
    path = pathlib.Path(value)
    if len(value) < 255 and path.is_file():
        return path.read_text(encoding="utf-8")
    return value


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _build(args: Namespace) -> int:
    from botflow_agent.agent.factory import create_orchestrator

    components = await create_orchestrator(health_check=not args.no_health)
    request = BuildRequest(
        description=_read_description(args.description),
        client_name=args.client,
        project_name=args.project,
        bot_id=args.bot_id,
        environment=args.environment,
        widget_name=args.widget_name,
    )
    try:
        result = await components.orchestrator.run(request, on_progress=_print_progress)
    finally:
        await components.aclose()

    graph_text = result.graph_text
    if args.output and graph_text:
        pathlib.Path(args.output).write_text(graph_text, encoding="utf-8")
        print(f"Flow written to {args.output}")

    print()
    print(format_phase_table(result.timings))
    print()
    for warning in result.warnings:
        print(f"warning: {warning}")

    if isinstance(result, BuildFailure):
        print(f"FAILED ({result.phase}): {result.message}")
        if result.auth_error:
            print("Set a fresh BOTMANAGER_API_TOKEN and run again.")
        for row in result.failed_rows:
            print(f"  node {row.node_num} {row.node_name!r}:")
            for err in row.errors:
                print(f"    - {err}")
        return 1

    print(f"Deployed {result.bot_id}: {result.node_count} nodes, version {result.version_id or '-'}")
    if result.widget_url:
        print(f"Widget: {result.widget_url}")
    if result.health is not None:
        print(f"Health: {'healthy' if result.health.healthy else result.health.reason}")
    for name, url in result.export_links.items():
        print(f"{name}: {url}")
    if result.needs_review:
        print(f"Needs review: {len(result.residual_errors)} validation error(s) remain")
    return 0


async def _errors(args: Namespace) -> int:
    from botflow_agent.agent.factory import create_learning_client
    from botflow_agent.agent.settings import PipelineSettings
    from botflow_agent.client.config import Settings

    learning = await create_learning_client(Settings.from_env(), PipelineSettings.from_env())
    try:
        errors = await learning.errors_to_avoid(args.limit)
    finally:
        await learning.close()
    if args.json:
        print(json.dumps([vars(e) for e in errors], indent=2))
        return 0
    if not errors:
        print("No learned error patterns.")
    for e in errors:
        fix = f"\n      fix: {e.known_fix}" if e.known_fix else ""
        print(f"{e.occurrences:>4}x  {e.error_type:<28} {e.description}{fix}")
    return 0


async def _human_fix(args: Namespace) -> int:
    from botflow_agent.agent.factory import create_learning_client
    from botflow_agent.agent.settings import PipelineSettings
    from botflow_agent.client.config import Settings
    from botflow_agent.learning.models import HumanCorrection, HumanFix

    fixes = []
    if args.field:
        if args.node is None:
            print("--node is required with --field", file=sys.stderr)
            return 2
        fixes.append(HumanCorrection(
            node_num=args.node,
            field=args.field,
            current_value=args.current,
            correct_value=args.correct,
            explanation=args.explanation,
            error_description=args.error,
        ))
    if not fixes and not args.guidance:
        print("Nothing to submit: give --field/--correct or --guidance", file=sys.stderr)
        return 2

    learning = await create_learning_client(Settings.from_env(), PipelineSettings.from_env())
    try:
        ok = await learning.submit_human_fix(HumanFix(fixes=fixes, general_guidance=args.guidance or ""))
    finally:
        await learning.close()
    print("Submitted." if ok else "Submission incomplete; see log output.")
    return 0 if ok else 1


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("BOTFLOW_LOG_LEVEL", "WARNING").upper(),
        format="%(levelname)s: %(message)s",
    )

    parser = ArgumentParser(
        prog="botflow",
        description="Bot-flow build agent: generate, validate, deploy and probe conversational flows",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    build_p = sub.add_parser("build", help="Generate, validate and deploy a bot flow")
    build_p.add_argument("description", help="Product description, or a path to a file holding it")
    build_p.add_argument("--client", default="", help="Client name (used to derive the bot id)")
    build_p.add_argument("--project", default="", help="Project name (used to derive the bot id)")
    build_p.add_argument("--bot-id", default=None, help="Explicit bot id, Customer.BotName")
    build_p.add_argument("--environment", choices=["sandbox", "production"], default=None)
    build_p.add_argument("--widget-name", default=None)
    build_p.add_argument("--output", "-o", default=None, metavar="FILE", help="Write the final flow CSV here")
    build_p.add_argument("--no-health", action="store_true", help="Skip the post-deploy health probe")

    errors_p = sub.add_parser("errors", help="List learned error patterns to avoid")
    errors_p.add_argument("--limit", type=int, default=20)
    errors_p.add_argument("--json", action="store_true")

    fix_p = sub.add_parser("human-fix", help="Submit a reviewer correction to error learning")
    fix_p.add_argument("--node", type=int, default=None)
    fix_p.add_argument("--field", default=None)
    fix_p.add_argument("--current", default="")
    fix_p.add_argument("--correct", default="")
    fix_p.add_argument("--explanation", default="")
    fix_p.add_argument("--error", default=None, help="Validator error text the correction addresses")
    fix_p.add_argument("--guidance", default=None, help="General guidance for future builds")

    serve_p = sub.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=8000)
    serve_p.add_argument("--reload", action="store_true")

    args = parser.parse_args()

    if args.command == "build":
        sys.exit(asyncio.run(_build(args)))
    elif args.command == "errors":
        sys.exit(asyncio.run(_errors(args)))
    elif args.command == "human-fix":
        sys.exit(asyncio.run(_human_fix(args)))
    elif args.command == "serve":
        from botflow_agent.api import serve
        serve(host=args.host, port=args.port, reload=args.reload)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
