"""Voice note task worker."""

__version__ = "0.1.0"
