"""Multi-language translation orchestration with human review loops."""

__version__ = "1.0.0"
