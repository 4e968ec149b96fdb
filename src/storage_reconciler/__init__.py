"""Storage reconciliation and garbage collection for portfolio media."""

__version__ = "0.1.0"
