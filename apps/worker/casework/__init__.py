"""Background job pipeline for constituency casework."""

__version__ = "0.1.0"
