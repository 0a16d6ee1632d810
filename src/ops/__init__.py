"""
Ops Health Module
=================

Bounded Context for quote distribution health.

Responsibilities:
- Evaluate each provider destination against SLA thresholds
- Roll destinations, offers, messages and intro requests up per quote
- Derive pending state and notification dedup from the ops event log
- Tolerate a database schema that is still being migrated
- Provide the ops inbox API for staff triage
"""

__version__ = "1.0.0"
