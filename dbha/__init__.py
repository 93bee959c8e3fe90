"""Database high-availability controller sidecar."""

__version__ = "0.1.0"
