"""Repository compliance analysis pipeline."""

__version__ = "1.0.0"
