"""FastAPI routes: the health probe and the catch-all pipeline dispatcher."""
