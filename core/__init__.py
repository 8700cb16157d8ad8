"""Core module - ERP-neutral synchronization engine.

This module contains the sync data model, the mapping store, retry and
conflict policy, the error log and the orchestrator. It is intentionally
ERP-agnostic.

ERP-specific logic belongs in /connectors/.
"""

__version__ = "1.0.0"
