"""Bridge between an automation host and the macOS Messages app."""

__version__ = "0.1.0"
