"""Bidirectional sync engine.

Modules:
- models: mappings, jobs, outcomes
- mapping_store: durable mapping table
- retry: Retry Scheduler
- conflicts: Conflict Resolver
- error_log: persistent failure log
- content: local record access
- orchestrator: Sync Orchestrator
"""
