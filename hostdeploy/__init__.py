"""Single-host Docker deployment behind nginx, driven over SSH."""

__version__ = "0.1.0"
