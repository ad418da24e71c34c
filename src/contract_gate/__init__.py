"""Contract compliance and regression gate."""

__version__ = "0.1.0"
