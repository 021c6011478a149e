"""Category-based redirector for the Squid web proxy."""

__version__ = "0.9.0"
