"""Remote build runner: executes broker commands and streams events back."""

__version__ = "0.1.0"
