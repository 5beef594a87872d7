"""Just-in-time access engine: role resolution, capability dispatch and grant lifecycle."""

__version__ = "0.1.0"
