"""HTTP routes beyond the core stream and speech endpoints."""
