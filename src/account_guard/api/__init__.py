"""HTTP boundary (FastAPI)."""
