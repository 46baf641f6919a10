"""LBRY tip bot for Reddit."""

__version__ = "1.0.0"
