"""HTTP API for the CFP federation service."""
