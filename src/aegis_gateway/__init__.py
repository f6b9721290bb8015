"""Aegis request-security gateway for FastAPI services."""

__version__ = "0.1.0"
