"""
Shared Kernel Module
====================

This module contains shared infrastructure used across bounded contexts.

Architecture Pattern: Modular Monolith
- Each module (performance) is a bounded context
- Shared kernel contains only generic infrastructure
- Domain models live within each module

DO NOT add contract-performance business logic to the shared kernel.
"""

__version__ = "1.0.0"
