"""
Reactive layer for tagdb.

This module provides everything that reacts to store mutations:
- SubscriptionService: live queries with result diffs
- SavedQueryStore: queries persisted as #query nodes
- ComputedFieldService: derived fields and aggregates
- AutomationService: triggers bound to graph and webhook actions
- Payload templates rendered against node context

Invariants:
    - Reactions run after the triggering write has committed
    - One subscriber's failure never reaches another subscriber
"""

from .automation import (
    AUTOMATION_SUPERTAG,
    MAX_EXECUTION_DEPTH,
    Action,
    AddSupertagAction,
    AutomationBinding,
    AutomationService,
    CreateNodeAction,
    MembershipCondition,
    MembershipTrigger,
    RemoveSupertagAction,
    SetPropertyAction,
    ThresholdOperator,
    ThresholdTrigger,
    Trigger,
    WebhookAction,
)
from .computed import (
    COMPUTED_SUPERTAG,
    COMPUTED_VALUE_FIELD,
    Aggregate,
    Aggregation,
    ComputedField,
    ComputedFieldService,
    aggregate_values,
)
from .saved_queries import SavedQuery, SavedQueryStore
from .subscriptions import (
    QueryResultChange,
    ResultDiff,
    SubscriptionHandle,
    SubscriptionInfo,
    SubscriptionService,
    diff_results,
)
from .template import build_node_context, render_payload, render_template, resolve_path

__all__ = [
    # Subscriptions
    "QueryResultChange",
    "ResultDiff",
    "SubscriptionHandle",
    "SubscriptionInfo",
    "SubscriptionService",
    "diff_results",
    # Saved queries
    "SavedQuery",
    "SavedQueryStore",
    # Computed fields
    "COMPUTED_SUPERTAG",
    "COMPUTED_VALUE_FIELD",
    "Aggregate",
    "Aggregation",
    "ComputedField",
    "ComputedFieldService",
    "aggregate_values",
    # Automation
    "AUTOMATION_SUPERTAG",
    "MAX_EXECUTION_DEPTH",
    "Action",
    "AddSupertagAction",
    "AutomationBinding",
    "AutomationService",
    "CreateNodeAction",
    "MembershipCondition",
    "MembershipTrigger",
    "RemoveSupertagAction",
    "SetPropertyAction",
    "ThresholdOperator",
    "ThresholdTrigger",
    "Trigger",
    "WebhookAction",
    # Templates
    "build_node_context",
    "render_payload",
    "render_template",
    "resolve_path",
]
