"""
tagdb - reactive node-graph query and automation engine.

This package implements an in-process database of typed, tagged nodes:
- Nodes with typed fields, supertags (inheritable tags) and relations,
  stored in SQLite
- A JSON-serializable query language evaluated against graph snapshots
- Live subscriptions that keep query results fresh as the graph mutates
- Computed fields, aggregates and automations that call webhooks

Architecture:
    write ──▶ NodeStore ──▶ EventBus ──▶ SubscriptionService
                                              │
                         ┌────────────────────┼──────────────────┐
                         ▼                    ▼                  ▼
                 ComputedFieldService  AutomationService   saved query cache
                         │                    │
                         ▼                    ▼
                    NodeStore (write)    WebhookQueue ──▶ HTTP

Invariants:
    - Every committed mutation emits exactly one event, in sequence order
    - Query evaluation never mutates the store
    - Incrementally maintained results equal a fresh evaluation

How to change safely:
    - New filter kinds need an evaluator matcher and dependency markers
    - New mutation kinds need affected-dependency markers

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
