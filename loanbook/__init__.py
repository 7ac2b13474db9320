"""Bank statement reconciliation engine for the loan book."""

__version__ = "1.0.0"
