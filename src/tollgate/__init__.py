"""tollgate: token-metering proxy for managed assistant instances."""

__version__ = "0.1.0"
