"""Bank and mobile-money statement reconciliation engine."""

__version__ = "1.0.0"
