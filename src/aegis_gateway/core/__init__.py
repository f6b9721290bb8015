"""Core configuration, error taxonomy and credential helpers."""
