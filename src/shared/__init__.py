"""
Shared Kernel Module
====================

This module contains shared infrastructure used by the ops health bounded
context and the application shell.

Architecture Pattern: Modular Monolith
- Each module (ops) is a bounded context
- Shared kernel contains only generic infrastructure

DO NOT add SLA or inbox business logic to the shared kernel.
"""

__version__ = "1.0.0"
