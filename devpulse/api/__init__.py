"""
API endpoints for the DevPulse dashboard application.
"""

from .analysis_routes import router as analysis_router

__all__ = [
    "analysis_router"
]
