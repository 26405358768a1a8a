"""
tagdb Test Suite.

This package contains:
- unit/: Unit tests for single components (store, evaluator, queue, config)
- integration/: Integration tests wiring store, subscriptions, computed
  fields, automations and the engine together
"""
