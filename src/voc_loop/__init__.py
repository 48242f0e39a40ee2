"""Issue clustering and closed-loop fix verification for user feedback."""

__version__ = "0.3.0"
