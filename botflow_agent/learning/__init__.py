"""Error-signature learning: fingerprints, categories, fix-confidence stores."""

from botflow_agent.learning.client import BackoffPolicy, LearningClient, shared_backoff
from botflow_agent.learning.models import (
    ErrorPattern,
    ErrorToAvoid,
    FixAttempt,
    HumanCorrection,
    HumanFix,
)
from botflow_agent.learning.signatures import (
    CATEGORY_LADDER,
    CategoryRule,
    ValidationError,
    categorize_error,
    extract_node_context,
    normalize_error,
)
from botflow_agent.learning.store import (
    FixStore,
    FixStoreError,
    HttpFixStore,
    InMemoryFixStore,
    SqliteFixStore,
)

__all__ = [
    "BackoffPolicy",
    "CATEGORY_LADDER",
    "CategoryRule",
    "ErrorPattern",
    "ErrorToAvoid",
    "FixAttempt",
    "FixStore",
    "FixStoreError",
    "HttpFixStore",
    "HumanCorrection",
    "HumanFix",
    "InMemoryFixStore",
    "LearningClient",
    "SqliteFixStore",
    "ValidationError",
    "categorize_error",
    "extract_node_context",
    "normalize_error",
    "shared_backoff",
]
