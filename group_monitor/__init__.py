"""Group chat monitor: connection lifecycle tracking and message storage."""

__version__ = "1.0.0"
