"""AI-assisted translation orchestration for a translation memory."""

__version__ = "0.1.0"
