"""
Automation bindings for tagdb.

An AutomationBinding ties a trigger to an action:

    - membership trigger: a SavedQuery's result changes (on_add per added
      node, on_remove per removed node, on_any_change once per change)
    - threshold trigger: an aggregate's value crosses a comparison

Actions either write to the graph (set_property, add_supertag,
remove_supertag, create_node) or render a payload template against the node
(or aggregate) context and enqueue a WebhookJob (webhook). An action given
without a type is a webhook.

Bindings are persisted as #automation nodes whose id is the binding id.
load() re-registers them, threshold arming included, on a new service.

Invariants:
    - The initial delivery of a subscription is a baseline, never a fire
    - A deactivated SavedQuery suspends its bindings; reactivation resumes
      them from a fresh baseline, so changes made while inactive never fire
    - Deleting a SavedQuery removes its bindings
    - A graph action fired while an event of depth MAX_EXECUTION_DEPTH or
      more is dispatched is skipped, which bounds self-triggering chains
    - A BackpressureError never propagates into the mutating caller; the job
      is parked in a deferred list until flush_deferred()
    - close() detaches bindings but keeps their #automation nodes

How to change safely:
    - New trigger kinds need a model in Trigger and an _activate branch
    - New action kinds need a model in Action and an _apply branch
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import BackpressureError, ConfigurationError, NotFoundError, TagDbError
from ..events import EventFilter, MutationEvent, MutationKind
from ..store import Node, NodeStore
from ..webhook import WebhookJob, WebhookQueue, WebhookTarget
from .computed import ComputedFieldService
from .saved_queries import ACTIVE_FIELD, DEFINITION_FIELD
from .subscriptions import QueryResultChange, SubscriptionHandle, SubscriptionService
from .template import build_node_context, render_payload, render_template

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("POST", "PUT", "PATCH", "GET", "DELETE")

AUTOMATION_SUPERTAG = "supertag:automation"
AUTOMATION_DEFINITION_FIELD = "automation_definition"
AUTOMATION_ENABLED_FIELD = "automation_enabled"
AUTOMATION_STATE_FIELD = "automation_state"

# Deepest event chain a graph action may extend
MAX_EXECUTION_DEPTH = 10

# set_property value replaced by the current time
NOW_MARKER = "$now"


class MembershipCondition(str, Enum):
    ON_ADD = "on_add"
    ON_REMOVE = "on_remove"
    ON_ANY_CHANGE = "on_any_change"


class ThresholdOperator(str, Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NEQ = "neq"


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class MembershipTrigger(_Model):
    """Fire when nodes enter or leave a saved query's result."""

    type: Literal["membership"] = "membership"
    saved_query_id: str
    on: MembershipCondition = MembershipCondition.ON_ADD


class ThresholdTrigger(_Model):
    """Fire when an aggregate's value satisfies a comparison.

    With fire_once the trigger fires on the transition into the condition
    and re-arms only after the condition stops holding.
    """

    type: Literal["threshold"] = "threshold"
    aggregate_id: str
    operator: ThresholdOperator
    value: float
    fire_once: bool = True

    def holds(self, current: Any) -> bool:
        if not isinstance(current, (int, float)) or isinstance(current, bool):
            return False
        op = self.operator
        if op is ThresholdOperator.GT:
            return current > self.value
        if op is ThresholdOperator.GTE:
            return current >= self.value
        if op is ThresholdOperator.LT:
            return current < self.value
        if op is ThresholdOperator.LTE:
            return current <= self.value
        if op is ThresholdOperator.EQ:
            return current == self.value
        return current != self.value


Trigger = Annotated[Union[MembershipTrigger, ThresholdTrigger], Field(discriminator="type")]


class SetPropertyAction(_Model):
    """Write a field on the triggering node.

    String values are rendered as templates; {"$now": true} writes the
    store's current time as ISO-8601.
    """

    type: Literal["set_property"] = "set_property"
    field: str
    value: Any = None


class AddSupertagAction(_Model):
    type: Literal["add_supertag"] = "add_supertag"
    supertag: str


class RemoveSupertagAction(_Model):
    type: Literal["remove_supertag"] = "remove_supertag"
    supertag: str


class CreateNodeAction(_Model):
    """Create a node. content, owner_id and string property values are templates."""

    type: Literal["create_node"] = "create_node"
    content: str
    supertag: str | None = None
    owner_id: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)


class WebhookAction(_Model):
    """Webhook target plus payload template.

    A payload of None sends a default JSON body describing the fire.
    """

    type: Literal["webhook"] = "webhook"
    url: str
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    payload: Union[str, dict[str, Any], list[Any], None] = None

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must be http(s)")
        return value

    @field_validator("method")
    @classmethod
    def _check_method(cls, value: str) -> str:
        method = value.upper()
        if method not in ALLOWED_METHODS:
            raise ValueError(f"method must be one of {', '.join(ALLOWED_METHODS)}")
        return method


Action = Annotated[
    Union[SetPropertyAction, AddSupertagAction, RemoveSupertagAction, CreateNodeAction, WebhookAction],
    Field(discriminator="type"),
]

# Actions that write to the triggering node
NODE_ACTIONS = (SetPropertyAction, AddSupertagAction, RemoveSupertagAction)


def _binding_id() -> str:
    return f"auto_{uuid.uuid4().hex[:12]}"


class AutomationBinding(_Model):
    """A trigger bound to an action."""

    id: str = Field(default_factory=_binding_id)
    name: str = ""
    trigger: Trigger
    action: Action
    enabled: bool = True

    @field_validator("action", mode="before")
    @classmethod
    def _default_action_type(cls, value: Any) -> Any:
        if isinstance(value, dict) and "type" not in value:
            return {**value, "type": "webhook"}
        return value


def _is_now_marker(value: Any) -> bool:
    return isinstance(value, dict) and len(value) == 1 and value.get(NOW_MARKER) is True


@dataclass
class _BindingState:
    binding: AutomationBinding
    handle: SubscriptionHandle | None = None
    remove_listener: Callable[[], None] | None = None
    suspended: bool = False
    armed: bool = True
    fire_count: int = 0


class AutomationService:
    """Runs automation bindings, applies graph actions and feeds the webhook queue.

    Example:
        >>> automations = AutomationService(store, subscriptions, webhook_queue)
        >>> automations.register_automation({
        ...     "name": "Notify open tasks",
        ...     "trigger": {"type": "membership", "saved_query_id": query.id, "on": "on_add"},
        ...     "action": {"type": "webhook", "url": "https://example.com/hook", "payload": "{{content}} is open"},
        ... })
        >>> automations.register_automation({
        ...     "name": "Stamp completion",
        ...     "trigger": {"type": "membership", "saved_query_id": done.id},
        ...     "action": {"type": "set_property", "field": "completed_at", "value": {"$now": True}},
        ... })
    """

    def __init__(
        self,
        store: NodeStore,
        subscriptions: SubscriptionService,
        webhook_queue: WebhookQueue,
        *,
        computed: ComputedFieldService | None = None,
        metrics: Any | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            store: Node store (its bus reports saved-query changes)
            subscriptions: Subscription service, also owning saved queries
            webhook_queue: Queue receiving rendered jobs
            computed: Computed field service, required for threshold triggers
            metrics: Optional EngineMetrics
        """
        self.store = store
        self.subscriptions = subscriptions
        self.saved_queries = subscriptions.saved_queries
        self.webhook_queue = webhook_queue
        self.computed = computed
        self.metrics = metrics

        self._bindings: dict[str, _BindingState] = {}
        self._deferred: deque[WebhookJob] = deque()
        self._lock = threading.RLock()
        self._fired = 0
        self._skipped_actions = 0
        self._action_errors = 0
        self._unsubscribe_bus: Callable[[], None] | None = store.bus.subscribe(
            self._on_event,
            EventFilter(
                kinds=(
                    MutationKind.PROPERTY_SET,
                    MutationKind.PROPERTY_CLEARED,
                    MutationKind.NODE_DELETED,
                )
            ),
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_automation(self, binding: AutomationBinding | dict[str, Any]) -> AutomationBinding:
        """Persist, register and (if enabled) activate a binding.

        Raises:
            ConfigurationError: Invalid binding, duplicate id, or a
                threshold trigger without a computed field service
            NotFoundError: Unknown saved query or aggregate
        """
        if isinstance(binding, dict):
            try:
                binding = AutomationBinding.model_validate(binding)
            except ValidationError as e:
                raise ConfigurationError(
                    f"Invalid automation binding: {e.error_count()} error(s)",
                    component="automation",
                    errors=[err["msg"] for err in e.errors()],
                ) from e

        self._check_trigger(binding.trigger)
        with self._lock:
            registered = binding.id in self._bindings
        if registered:
            raise ConfigurationError(
                f"Automation already registered: {binding.id}", component="automation"
            )
        if self.store.find_node(binding.id) is not None:
            raise ConfigurationError(
                f"Automation id already in use: {binding.id}", component="automation"
            )

        self.store.create_node(
            binding.name or binding.id,
            supertags=[AUTOMATION_SUPERTAG],
            properties={
                AUTOMATION_DEFINITION_FIELD: binding.model_dump(mode="json", exclude={"id", "enabled"}),
                AUTOMATION_ENABLED_FIELD: binding.enabled,
                AUTOMATION_STATE_FIELD: {"armed": True},
            },
            node_id=binding.id,
        )
        state = self._install(binding)
        logger.info(
            "Automation registered",
            extra={
                "automation_id": binding.id,
                "trigger": binding.trigger.type,
                "action": binding.action.type,
                "enabled": binding.enabled,
                "suspended": state.suspended,
            },
        )
        return binding

    def _check_trigger(self, trigger: MembershipTrigger | ThresholdTrigger) -> None:
        if isinstance(trigger, MembershipTrigger):
            self.saved_queries.get(trigger.saved_query_id)
            return
        if self.computed is None:
            raise ConfigurationError(
                "Threshold triggers need a computed field service", component="automation"
            )
        self.computed.get_value(trigger.aggregate_id)

    def _install(self, binding: AutomationBinding, armed: bool | None = None) -> _BindingState:
        state = _BindingState(binding, armed=armed is not False)
        with self._lock:
            if binding.id in self._bindings:
                raise ConfigurationError(
                    f"Automation already registered: {binding.id}", component="automation"
                )
            self._bindings[binding.id] = state
        if binding.enabled:
            self._activate(state, rearm=armed is None)
        return state

    def load(self) -> int:
        """Register the persisted #automation nodes not registered yet.

        A binding whose saved query or aggregate cannot be found is skipped
        and stays persisted.

        Returns:
            Number of bindings loaded
        """
        loaded = 0
        for node in list(self.store.snapshot().live_nodes()):
            if AUTOMATION_SUPERTAG not in node.supertag_ids:
                continue
            with self._lock:
                if node.id in self._bindings:
                    continue
            try:
                binding = AutomationBinding.model_validate(
                    {
                        **(node.get_value(AUTOMATION_DEFINITION_FIELD) or {}),
                        "id": node.id,
                        "enabled": node.get_value(AUTOMATION_ENABLED_FIELD, True) is not False,
                    }
                )
                self._check_trigger(binding.trigger)
            except (ValidationError, TagDbError) as e:
                logger.warning(
                    f"Skipping persisted automation: {e}",
                    extra={"automation_id": node.id},
                )
                continue
            persisted = node.get_value(AUTOMATION_STATE_FIELD) or {}
            self._install(binding, armed=persisted.get("armed", True) is not False)
            loaded += 1

        if loaded:
            logger.info("Automations loaded", extra={"loaded": loaded})
        return loaded

    def unregister_automation(self, automation_id: str) -> bool:
        """Remove a binding and soft-delete its #automation node."""
        return self._remove(automation_id, delete_node=True)

    def _remove(self, automation_id: str, delete_node: bool) -> bool:
        with self._lock:
            state = self._bindings.pop(automation_id, None)
        if state is None:
            return False
        self._deactivate(state)
        if delete_node:
            node = self.store.find_node(automation_id)
            if node is not None and not node.is_deleted:
                self.store.delete_node(automation_id)
        logger.info("Automation removed", extra={"automation_id": automation_id})
        return True

    def get_automation(self, automation_id: str) -> AutomationBinding:
        with self._lock:
            state = self._bindings.get(automation_id)
        if state is None:
            raise NotFoundError(f"Automation not found: {automation_id}", "automation", automation_id)
        return state.binding

    def list_automations(self) -> list[AutomationBinding]:
        with self._lock:
            return [state.binding for state in self._bindings.values()]

    def set_enabled(self, automation_id: str, enabled: bool) -> AutomationBinding:
        """Enable or disable a binding; enabling starts from a new baseline."""
        self.get_automation(automation_id)
        with self._lock:
            state = self._bindings[automation_id]
            state.binding = state.binding.model_copy(update={"enabled": enabled})
        self.store.set_property(automation_id, AUTOMATION_ENABLED_FIELD, enabled)
        if enabled:
            self._activate(state)
        else:
            self._deactivate(state)
        return state.binding

    def is_suspended(self, automation_id: str) -> bool:
        with self._lock:
            state = self._bindings.get(automation_id)
            return state is not None and state.suspended

    def is_armed(self, automation_id: str) -> bool:
        """Whether a threshold binding may fire on its next crossing."""
        with self._lock:
            state = self._bindings.get(automation_id)
        if state is None:
            raise NotFoundError(f"Automation not found: {automation_id}", "automation", automation_id)
        return state.armed

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def _activate(self, state: _BindingState, rearm: bool = True) -> None:
        self._deactivate(state)
        trigger = state.binding.trigger

        if isinstance(trigger, MembershipTrigger):
            saved = self.saved_queries.get(trigger.saved_query_id)
            if not saved.active:
                state.suspended = True
                return
            state.suspended = False
            state.handle = self.subscriptions.subscribe_saved(
                saved.id, lambda change: self._on_membership(state, change)
            )
            return

        assert self.computed is not None
        if rearm:
            self._set_armed(state, not trigger.holds(self.computed.get_value(trigger.aggregate_id)))
        state.remove_listener = self.computed.add_aggregate_listener(
            trigger.aggregate_id,
            lambda aggregate_id, old, new: self._on_threshold(state, old, new),
        )

    def _deactivate(self, state: _BindingState) -> None:
        if state.handle is not None:
            state.handle.unsubscribe()
            state.handle = None
        if state.remove_listener is not None:
            state.remove_listener()
            state.remove_listener = None

    def _set_armed(self, state: _BindingState, armed: bool) -> None:
        if state.armed is armed:
            return
        state.armed = armed
        try:
            self.store.set_property(state.binding.id, AUTOMATION_STATE_FIELD, {"armed": armed})
        except NotFoundError:
            logger.debug(
                "Automation node missing, threshold state not persisted",
                extra={"automation_id": state.binding.id},
            )

    def _bindings_for_query(self, saved_query_id: str) -> list[_BindingState]:
        with self._lock:
            return [
                state
                for state in self._bindings.values()
                if isinstance(state.binding.trigger, MembershipTrigger)
                and state.binding.trigger.saved_query_id == saved_query_id
            ]

    def _on_event(self, event: MutationEvent) -> None:
        if event.kind is MutationKind.NODE_DELETED:
            with self._lock:
                own = event.node_id in self._bindings
            if own:
                logger.info("Automation node deleted", extra={"automation_id": event.node_id})
                self._remove(event.node_id, delete_node=False)
                return

        states = self._bindings_for_query(event.node_id)
        if not states:
            return

        if event.kind is MutationKind.NODE_DELETED:
            for state in states:
                logger.info(
                    "Saved query deleted, removing automation",
                    extra={"automation_id": state.binding.id, "saved_query_id": event.node_id},
                )
                self.unregister_automation(state.binding.id)
            return

        if ACTIVE_FIELD in event.field_names:
            active = self.saved_queries.get(event.node_id).active
            for state in states:
                if not state.binding.enabled:
                    continue
                if active and state.suspended:
                    logger.info("Automation resumed", extra={"automation_id": state.binding.id})
                    self._activate(state)
                elif not active and not state.suspended:
                    logger.info("Automation suspended", extra={"automation_id": state.binding.id})
                    self._deactivate(state)
                    state.suspended = True
        elif DEFINITION_FIELD in event.field_names:
            for state in states:
                if state.binding.enabled and not state.suspended:
                    self._activate(state)

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def _on_membership(self, state: _BindingState, change: QueryResultChange) -> None:
        if change.initial or state.suspended or not state.binding.enabled:
            return
        trigger = state.binding.trigger
        assert isinstance(trigger, MembershipTrigger)
        diff = change.diff

        if trigger.on is MembershipCondition.ON_ADD:
            for node_id in diff.added:
                self._fire(state, node_id, event="on_add")
        elif trigger.on is MembershipCondition.ON_REMOVE:
            for node_id in diff.removed:
                self._fire(state, node_id, event="on_remove")
        elif diff.added or diff.removed:
            self._fire(
                state,
                (diff.added or diff.removed)[0],
                event="on_any_change",
                added=list(diff.added),
                removed=list(diff.removed),
                results=list(change.results),
            )

    def _on_threshold(self, state: _BindingState, old: Any, new: Any) -> None:
        trigger = state.binding.trigger
        assert isinstance(trigger, ThresholdTrigger)
        if not trigger.holds(new):
            self._set_armed(state, True)
            return
        if trigger.fire_once and not state.armed:
            return
        self._set_armed(state, False)
        self._fire(
            state,
            None,
            event="threshold",
            value=new,
            previous=old,
            aggregate={"id": trigger.aggregate_id, "value": new, "previous": old},
        )

    def _fire(self, state: _BindingState, node_id: str | None, event: str, **extra: Any) -> None:
        binding = state.binding
        node = self.store.find_node(node_id) if node_id is not None else None
        context = build_node_context(
            node,
            automation={"id": binding.id, "name": binding.name},
            event=event,
            **extra,
        )

        state.fire_count += 1
        self._fired += 1
        if self.metrics is not None:
            self.metrics.record_automation_fire(binding.trigger.type)
        logger.debug(
            "Automation fired",
            extra={
                "automation_id": binding.id,
                "trigger_event": event,
                "node_id": node_id,
                "action": binding.action.type,
            },
        )

        action = binding.action
        if isinstance(action, WebhookAction):
            self._enqueue_webhook(binding, action, node, context, event, extra)
        else:
            self._apply(binding, action, node, context)

    def _enqueue_webhook(
        self,
        binding: AutomationBinding,
        action: WebhookAction,
        node: Node | None,
        context: dict[str, Any],
        event: str,
        extra: dict[str, Any],
    ) -> None:
        if action.payload is None:
            payload: Any = {
                "automation_id": binding.id,
                "event": event,
                "node": node.to_dict() if node is not None else None,
                **extra,
            }
        else:
            payload = render_payload(action.payload, context)

        job = WebhookJob(
            automation_id=binding.id,
            target=WebhookTarget(url=action.url, method=action.method, headers=dict(action.headers)),
            payload=payload,
        )
        self._submit(job)

    def _apply(
        self,
        binding: AutomationBinding,
        action: SetPropertyAction | AddSupertagAction | RemoveSupertagAction | CreateNodeAction,
        node: Node | None,
        context: dict[str, Any],
    ) -> None:
        enclosing = self.store.bus.current_event
        depth = enclosing.depth if enclosing is not None else 0
        if depth >= MAX_EXECUTION_DEPTH:
            self._skipped_actions += 1
            logger.warning(
                "Automation depth limit reached, action skipped",
                extra={"automation_id": binding.id, "depth": depth, "max_depth": MAX_EXECUTION_DEPTH},
            )
            return
        if isinstance(action, NODE_ACTIONS) and (node is None or node.is_deleted):
            self._skipped_actions += 1
            logger.warning(
                "Automation action needs a live node, skipped",
                extra={"automation_id": binding.id, "action": action.type},
            )
            return

        try:
            if isinstance(action, SetPropertyAction):
                self.store.set_property(node.id, action.field, self._resolve_value(action.value, context))
            elif isinstance(action, AddSupertagAction):
                self.store.add_supertag(node.id, action.supertag)
            elif isinstance(action, RemoveSupertagAction):
                self.store.remove_supertag(node.id, action.supertag)
            else:
                owner_id = render_template(action.owner_id, context) if action.owner_id else ""
                self.store.create_node(
                    render_template(action.content, context),
                    supertags=[action.supertag] if action.supertag else [],
                    properties={
                        name: self._resolve_value(value, context)
                        for name, value in action.properties.items()
                    },
                    owner_id=owner_id or None,
                )
        except Exception as e:
            self._action_errors += 1
            logger.error(
                f"Automation action failed: {e}",
                exc_info=True,
                extra={"automation_id": binding.id, "action": action.type},
            )

    def _resolve_value(self, value: Any, context: dict[str, Any]) -> Any:
        if _is_now_marker(value):
            return datetime.fromtimestamp(self.store.now() / 1000, tz=timezone.utc).isoformat()
        return render_payload(value, context)

    def _submit(self, job: WebhookJob) -> None:
        try:
            self.webhook_queue.enqueue(job)
        except BackpressureError as e:
            with self._lock:
                self._deferred.append(job)
                deferred = len(self._deferred)
            logger.warning(
                f"Webhook backlog full, deferring job: {e.message}",
                extra={"job_id": job.id, "automation_id": job.automation_id, "deferred": deferred},
            )

    def flush_deferred(self) -> int:
        """Retry deferred jobs in order until the queue pushes back again.

        Returns:
            Number of jobs handed to the queue
        """
        flushed = 0
        with self._lock:
            while self._deferred:
                try:
                    self.webhook_queue.enqueue(self._deferred[0])
                except BackpressureError:
                    break
                self._deferred.popleft()
                flushed += 1
            remaining = len(self._deferred)
        if flushed:
            logger.info("Deferred webhook jobs flushed", extra={"flushed": flushed, "remaining": remaining})
        return flushed

    @property
    def deferred_count(self) -> int:
        with self._lock:
            return len(self._deferred)

    def close(self) -> None:
        """Detach every binding and the bus listener. Persisted nodes are kept."""
        with self._lock:
            states = list(self._bindings.values())
            self._bindings.clear()
        for state in states:
            self._deactivate(state)
        if self._unsubscribe_bus is not None:
            self._unsubscribe_bus()
            self._unsubscribe_bus = None

    @property
    def stats(self) -> dict[str, Any]:
        """Get automation statistics."""
        with self._lock:
            return {
                "automation_count": len(self._bindings),
                "suspended_count": sum(1 for s in self._bindings.values() if s.suspended),
                "fired": self._fired,
                "skipped_actions": self._skipped_actions,
                "action_errors": self._action_errors,
                "deferred": len(self._deferred),
            }
