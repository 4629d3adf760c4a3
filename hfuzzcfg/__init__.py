"""Command-line configuration and status display for a feedback-driven fuzzer."""

__version__ = "0.1.0"
__all__ = ["cmdline", "config", "display"]