"""account-guard: account-security and risk-control core for trading platforms."""

__version__ = "0.1.0"
