"""Back-office services for the spiritual-content platform."""

__version__ = "0.4.0"
