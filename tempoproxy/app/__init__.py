"""FastAPI application package for the Tempo proxy."""
