"""
CLI tools for tagdb.

This module provides command-line tools for:
- query: Evaluate a query definition against a store file

Invariants:
    - Tools work offline against a store file
    - Tools never mutate the store
"""

from .query_cli import QueryCLI

__all__ = ["QueryCLI"]
