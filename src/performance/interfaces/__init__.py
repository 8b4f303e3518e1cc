"""
Performance Interfaces Layer
============================

Interface adapters (controllers) for the contract performance module.

Contains:
- Controllers: FastAPI route handlers

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from src.performance.interfaces.controllers import performance_router

__all__ = ["performance_router"]
