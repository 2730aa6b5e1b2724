"""HTTP API for the memory engine."""
