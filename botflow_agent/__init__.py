"""Bot flow build agent: generate, validate, refine and deploy conversational flows."""

__version__ = "0.1.0"
