"""Exchange Custody - multi-chain wallet custody and deposit detection."""

__version__ = "0.1.0"
