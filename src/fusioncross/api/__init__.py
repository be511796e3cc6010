"""HTTP API for the swap coordinator."""
