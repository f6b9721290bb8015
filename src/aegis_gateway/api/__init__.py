"""HTTP API for the Aegis gateway."""
