"""
API package for the Fine-Tuning Job Orchestrator.

Provides REST and WebSocket endpoints for job management.

Usage:
    # Start API server
    uvicorn api.app:app --host 0.0.0.0 --port 8000
"""

from api.app import app, create_app

__all__ = ["app", "create_app"]
