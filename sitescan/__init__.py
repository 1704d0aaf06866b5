"""Website security scan orchestrator."""

__version__ = "2.0.0"
