"""threadbridge: comment threads backed by Matrix rooms."""

__version__ = "0.3.0"
