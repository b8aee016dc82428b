"""Villy API service.

This package contains the retrieval core and its FastAPI surface.

Main components:
- main.py: FastAPI application factory and logging setup
- models.py: Pydantic models shared by the pipeline stages
- orchestrators/: intent classifier and query pipeline
- tools/: structured query generator, rerankers, embedding text, normalization
- routers/: performance and health endpoints
"""

# Avoid importing heavy modules (e.g., FastAPI app) at package import time to
# prevent side effects when scripts import `api.*`.
__all__ = []
