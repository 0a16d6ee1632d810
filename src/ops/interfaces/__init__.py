"""
Ops Interfaces Layer
=====================

Interface adapters (controllers) for the ops health module.

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from src.ops.interfaces.controllers import router as ops_router

__all__ = ["ops_router"]
