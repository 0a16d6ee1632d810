"""
Infrastructure Layer
=====================

Low-level technical concerns:
- Logging setup
- Once-per-process warnings
"""
