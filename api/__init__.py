"""HTTP control surface for the remediation engine (FastAPI)."""
