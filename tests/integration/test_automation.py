"""
Integration tests for automation bindings.

Tests cover:
- Membership triggers (on_add, on_remove, on_any_change) rendering payloads
- Suspension and resumption with saved query activation
- Binding removal when the saved query is deleted
- Threshold triggers on aggregates with re-arming
- Registration validation and backpressure deferral
- Graph actions (set_property, add/remove supertag, create_node) and the
  execution depth limit
- Bindings persisted as #automation nodes and reloaded
"""

import logging

import httpx
import pytest

from tagdb.config import WebhookQueueConfig
from tagdb.errors import ConfigurationError, NotFoundError
from tagdb.events import EventBus
from tagdb.query import PropertyFilter, QueryDefinition, SupertagFilter
from tagdb.reactive import (
    AUTOMATION_SUPERTAG,
    MAX_EXECUTION_DEPTH,
    AutomationBinding,
    AutomationService,
    ComputedFieldService,
    MembershipTrigger,
    SavedQueryStore,
    SubscriptionService,
    WebhookAction,
)
from tagdb.store import FieldType, NodeStore
from tagdb.webhook import JobState, WebhookQueue

HOOK_URL = "https://hooks.example.com/tagdb"

OPEN_TASKS = QueryDefinition(
    filters=[SupertagFilter(supertag="task"), PropertyFilter(field="status", value="open")]
)


class AutomationTestBase:
    """Shared fixtures: a store, the reactive services and an unstarted queue."""

    @pytest.fixture
    def store(self):
        store = NodeStore(EventBus())
        store.define_field("status", FieldType.SELECT)
        store.define_supertag("task")
        return store

    @pytest.fixture
    def saved_queries(self, store):
        return SavedQueryStore(store)

    @pytest.fixture
    def subscriptions(self, store, saved_queries):
        return SubscriptionService(store, store.bus, saved_queries=saved_queries)

    @pytest.fixture
    def computed(self, store, subscriptions):
        return ComputedFieldService(store, subscriptions)

    @pytest.fixture
    def queue(self):
        return WebhookQueue(WebhookQueueConfig(backlog_capacity=100))

    @pytest.fixture
    def automations(self, store, subscriptions, queue, computed):
        return AutomationService(store, subscriptions, queue, computed=computed)

    @pytest.fixture
    def open_tasks(self, saved_queries):
        return saved_queries.create("Open tasks", OPEN_TASKS)

    def membership(self, saved_query_id, on="on_add", payload="{{content}} is open", **kwargs):
        return {
            "name": "Notify",
            "trigger": {"type": "membership", "saved_query_id": saved_query_id, "on": on},
            "action": {"url": HOOK_URL, "payload": payload},
            **kwargs,
        }


class TestMembershipTriggers(AutomationTestBase):
    """Tests for membership-triggered automations."""

    def test_on_add_renders_one_job(self, store, automations, queue, open_tasks):
        """Creating an open task enqueues exactly one rendered job."""
        automations.register_automation(self.membership(open_tasks.id))

        store.create_node("Task A", supertags=["task"], properties={"status": "open"})

        jobs = queue.jobs()
        assert len(jobs) == 1
        assert jobs[0].payload == "Task A is open"
        assert jobs[0].target.url == HOOK_URL
        assert jobs[0].target.method == "POST"
        assert jobs[0].state is JobState.PENDING

    def test_existing_members_do_not_fire(self, store, automations, queue, open_tasks):
        """The baseline on registration never fires."""
        store.create_node("Task A", supertags=["task"], properties={"status": "open"})
        automations.register_automation(self.membership(open_tasks.id))
        assert queue.jobs() == []

    def test_on_add_ignores_removals(self, store, automations, queue, open_tasks):
        task = store.create_node("Task A", supertags=["task"], properties={"status": "open"})
        automations.register_automation(self.membership(open_tasks.id))
        store.set_property(task.id, "status", "done")
        assert queue.jobs() == []

    def test_on_remove(self, store, automations, queue, open_tasks):
        task = store.create_node("Task A", supertags=["task"], properties={"status": "open"})
        automations.register_automation(self.membership(open_tasks.id, on="on_remove", payload="{{content}} closed"))

        store.set_property(task.id, "status", "done")

        assert [job.payload for job in queue.jobs()] == ["Task A closed"]

    def test_on_any_change_context(self, store, automations, queue, open_tasks):
        """on_any_change fires once per change with added and removed lists."""
        automations.register_automation(
            self.membership(
                open_tasks.id,
                on="on_any_change",
                payload={"event": "{{event}}", "added": "{{added}}", "first": "{{content}}"},
            )
        )
        task = store.create_node("Task A", supertags=["task"], properties={"status": "open"})

        jobs = queue.jobs()
        assert len(jobs) == 1
        assert jobs[0].payload == {
            "event": "on_any_change",
            "added": f'["{task.id}"]',
            "first": "Task A",
        }

    def test_default_payload(self, store, automations, queue, open_tasks):
        binding = automations.register_automation(self.membership(open_tasks.id, payload=None))
        task = store.create_node("Task A", supertags=["task"], properties={"status": "open"})

        payload = queue.jobs()[0].payload
        assert payload["automation_id"] == binding.id
        assert payload["event"] == "on_add"
        assert payload["node"]["id"] == task.id
        assert payload["node"]["properties"]["status"] == "open"

    def test_headers_and_method_carried(self, store, automations, queue, open_tasks):
        automations.register_automation(
            AutomationBinding(
                trigger=MembershipTrigger(saved_query_id=open_tasks.id),
                action=WebhookAction(url=HOOK_URL, method="put", headers={"X-Token": "abc"}, payload="{{id}}"),
            )
        )
        task = store.create_node("Task A", supertags=["task"], properties={"status": "open"})

        job = queue.jobs()[0]
        assert job.target.method == "PUT"
        assert job.target.headers == {"X-Token": "abc"}
        assert job.payload == task.id

    def test_definition_update_resubscribes(self, store, automations, queue, saved_queries, open_tasks):
        """Changing the saved definition applies to later changes."""
        automations.register_automation(self.membership(open_tasks.id, payload="{{content}}"))
        saved_queries.update_definition(
            open_tasks.id,
            QueryDefinition(filters=[SupertagFilter(supertag="task"), PropertyFilter(field="status", value="done")]),
        )

        store.create_node("Open one", supertags=["task"], properties={"status": "open"})
        store.create_node("Done one", supertags=["task"], properties={"status": "done"})

        assert [job.payload for job in queue.jobs()] == ["Done one"]


class TestSuspension(AutomationTestBase):
    """Tests for saved query activation and deletion."""

    def test_inactive_query_suspends(self, store, automations, queue, saved_queries, open_tasks):
        """Changes made while inactive never fire, even after resuming."""
        binding = automations.register_automation(self.membership(open_tasks.id))

        saved_queries.set_active(open_tasks.id, False)
        assert automations.is_suspended(binding.id)
        store.create_node("While inactive", supertags=["task"], properties={"status": "open"})
        assert queue.jobs() == []

        saved_queries.set_active(open_tasks.id, True)
        assert not automations.is_suspended(binding.id)
        assert queue.jobs() == []

        store.create_node("After resume", supertags=["task"], properties={"status": "open"})
        assert [job.payload for job in queue.jobs()] == ["After resume is open"]

    def test_register_on_inactive_query(self, automations, saved_queries, open_tasks):
        saved_queries.set_active(open_tasks.id, False)
        binding = automations.register_automation(self.membership(open_tasks.id))
        assert automations.is_suspended(binding.id)

    def test_deleting_query_removes_binding(self, store, automations, queue, saved_queries, open_tasks):
        binding = automations.register_automation(self.membership(open_tasks.id))

        saved_queries.delete(open_tasks.id)

        assert automations.list_automations() == []
        with pytest.raises(NotFoundError):
            automations.get_automation(binding.id)
        store.create_node("Task A", supertags=["task"], properties={"status": "open"})
        assert queue.jobs() == []

    def test_disable_and_enable(self, store, automations, queue, open_tasks):
        binding = automations.register_automation(self.membership(open_tasks.id))

        automations.set_enabled(binding.id, False)
        store.create_node("Disabled", supertags=["task"], properties={"status": "open"})
        automations.set_enabled(binding.id, True)
        store.create_node("Enabled", supertags=["task"], properties={"status": "open"})

        assert [job.payload for job in queue.jobs()] == ["Enabled is open"]
        assert automations.get_automation(binding.id).enabled is True

    def test_unregister(self, store, automations, queue, open_tasks):
        binding = automations.register_automation(self.membership(open_tasks.id))
        assert automations.unregister_automation(binding.id) is True
        store.create_node("Task A", supertags=["task"], properties={"status": "open"})
        assert queue.jobs() == []
        assert automations.unregister_automation(binding.id) is False


class TestThresholdTriggers(AutomationTestBase):
    """Tests for threshold-triggered automations."""

    def test_fires_on_crossing_and_rearms(self, store, automations, queue, computed):
        """fire_once fires on entering the condition and re-arms on leaving it."""
        aggregate = computed.register_aggregate("Open count", OPEN_TASKS, "count")
        automations.register_automation(
            {
                "trigger": {"type": "threshold", "aggregate_id": aggregate.id, "operator": "gt", "value": 1},
                "action": {"url": HOOK_URL},
            }
        )

        first = store.create_node("A", supertags=["task"], properties={"status": "open"})
        assert queue.jobs() == []
        store.create_node("B", supertags=["task"], properties={"status": "open"})
        assert len(queue.jobs()) == 1
        store.create_node("C", supertags=["task"], properties={"status": "open"})
        assert len(queue.jobs()) == 1

        store.set_property(first.id, "status", "done")
        store.create_node("D", supertags=["task"], properties={"status": "done"})
        assert len(queue.jobs()) == 1

        payload = queue.jobs()[0].payload
        assert payload["event"] == "threshold"
        assert payload["value"] == 2
        assert payload["previous"] == 1

    def test_rearm_after_condition_stops(self, store, automations, queue, computed):
        aggregate = computed.register_aggregate("Open count", OPEN_TASKS, "count")
        automations.register_automation(
            {
                "trigger": {"type": "threshold", "aggregate_id": aggregate.id, "operator": "gte", "value": 1},
                "action": {"url": HOOK_URL, "payload": "count={{value}}"},
            }
        )
        task = store.create_node("A", supertags=["task"], properties={"status": "open"})
        store.set_property(task.id, "status", "done")
        store.set_property(task.id, "status", "open")

        assert [job.payload for job in queue.jobs()] == ["count=1", "count=1"]

    def test_already_holding_does_not_fire(self, store, automations, queue, computed):
        store.create_node("A", supertags=["task"], properties={"status": "open"})
        store.create_node("B", supertags=["task"], properties={"status": "open"})
        aggregate = computed.register_aggregate("Open count", OPEN_TASKS, "count")
        automations.register_automation(
            {
                "trigger": {"type": "threshold", "aggregate_id": aggregate.id, "operator": "gt", "value": 1},
                "action": {"url": HOOK_URL},
            }
        )
        store.create_node("C", supertags=["task"], properties={"status": "open"})
        assert queue.jobs() == []

    def test_threshold_needs_computed_service(self, store, subscriptions, queue, computed):
        aggregate = computed.register_aggregate("Open count", OPEN_TASKS, "count")
        automations = AutomationService(store, subscriptions, queue)
        with pytest.raises(ConfigurationError):
            automations.register_automation(
                {
                    "trigger": {"type": "threshold", "aggregate_id": aggregate.id, "operator": "gt", "value": 1},
                    "action": {"url": HOOK_URL},
                }
            )


class TestRegistrationValidation(AutomationTestBase):
    """Tests for invalid registrations."""

    def test_invalid_binding(self, automations, open_tasks):
        with pytest.raises(ConfigurationError) as exc_info:
            automations.register_automation(self.membership(open_tasks.id, on="sometimes"))
        assert exc_info.value.errors

    def test_invalid_url(self, automations, open_tasks):
        binding = self.membership(open_tasks.id)
        binding["action"]["url"] = "ftp://example.com"
        with pytest.raises(ConfigurationError):
            automations.register_automation(binding)

    def test_unknown_saved_query(self, automations):
        with pytest.raises(NotFoundError):
            automations.register_automation(self.membership("missing"))

    def test_unknown_aggregate(self, automations):
        with pytest.raises(NotFoundError):
            automations.register_automation(
                {
                    "trigger": {"type": "threshold", "aggregate_id": "missing", "operator": "gt", "value": 1},
                    "action": {"url": HOOK_URL},
                }
            )

    def test_duplicate_id(self, automations, open_tasks):
        automations.register_automation(self.membership(open_tasks.id, id="auto_fixed"))
        with pytest.raises(ConfigurationError, match="already registered"):
            automations.register_automation(self.membership(open_tasks.id, id="auto_fixed"))


class TestBackpressure(AutomationTestBase):
    """Tests for deferral when the webhook backlog is full."""

    @pytest.fixture
    def queue(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        return WebhookQueue(WebhookQueueConfig(backlog_capacity=1), client=client)

    def test_full_backlog_defers_without_raising(self, store, automations, queue, open_tasks):
        """The mutating caller never sees BackpressureError."""
        automations.register_automation(self.membership(open_tasks.id))

        store.create_node("A", supertags=["task"], properties={"status": "open"})
        store.create_node("B", supertags=["task"], properties={"status": "open"})

        assert queue.backlog == 1
        assert automations.deferred_count == 1
        assert automations.flush_deferred() == 0

    @pytest.mark.asyncio
    async def test_flush_after_delivery(self, store, automations, queue, open_tasks):
        automations.register_automation(self.membership(open_tasks.id))
        store.create_node("A", supertags=["task"], properties={"status": "open"})
        store.create_node("B", supertags=["task"], properties={"status": "open"})

        await queue.start()
        try:
            await queue.join()
            assert automations.flush_deferred() == 1
            await queue.join()
        finally:
            await queue.stop()

        assert automations.deferred_count == 0
        assert [job.payload for job in queue.jobs(JobState.DELIVERED)] == ["A is open", "B is open"]


class TestGraphActions(AutomationTestBase):
    """Tests for actions that write to the graph."""

    @pytest.fixture
    def store(self):
        store = NodeStore(EventBus(), clock=lambda: 1_700_000_000_000)
        store.define_field("status", FieldType.SELECT)
        store.define_field("completed_at", FieldType.DATE)
        store.define_field("note", FieldType.TEXT)
        store.define_supertag("task")
        store.define_supertag("urgent")
        return store

    def action_binding(self, saved_query_id, action, on="on_add"):
        return {
            "name": "Act",
            "trigger": {"type": "membership", "saved_query_id": saved_query_id, "on": on},
            "action": action,
        }

    def test_untyped_action_is_webhook(self, automations, open_tasks):
        binding = automations.register_automation(self.membership(open_tasks.id))
        assert isinstance(binding.action, WebhookAction)
        assert binding.action.type == "webhook"

    def test_set_property_with_now(self, store, automations, queue, open_tasks):
        """The $now marker writes the store clock as ISO-8601."""
        automations.register_automation(
            self.action_binding(
                open_tasks.id,
                {"type": "set_property", "field": "completed_at", "value": {"$now": True}},
            )
        )
        task = store.create_node("Task A", supertags=["task"], properties={"status": "open"})

        assert store.find_node(task.id).get_value("completed_at") == "2023-11-14T22:13:20+00:00"
        assert queue.jobs() == []

    def test_set_property_renders_template(self, store, automations, open_tasks):
        automations.register_automation(
            self.action_binding(
                open_tasks.id,
                {"type": "set_property", "field": "note", "value": "{{content}} was opened"},
            )
        )
        task = store.create_node("Task A", supertags=["task"], properties={"status": "open"})

        assert store.find_node(task.id).get_value("note") == "Task A was opened"

    def test_add_supertag(self, store, automations, open_tasks):
        automations.register_automation(
            self.action_binding(open_tasks.id, {"type": "add_supertag", "supertag": "urgent"})
        )
        task = store.create_node("Task A", supertags=["task"], properties={"status": "open"})

        assert store.find_node(task.id).supertag_ids == ["supertag:task", "supertag:urgent"]

    def test_remove_supertag_on_remove(self, store, automations, open_tasks):
        task = store.create_node("Task A", supertags=["task", "urgent"], properties={"status": "open"})
        automations.register_automation(
            self.action_binding(
                open_tasks.id, {"type": "remove_supertag", "supertag": "urgent"}, on="on_remove"
            )
        )

        store.set_property(task.id, "status", "done")

        assert store.find_node(task.id).supertag_ids == ["supertag:task"]

    def test_create_node(self, store, automations, open_tasks):
        """create_node renders content and owner from the triggering node."""
        automations.register_automation(
            self.action_binding(
                open_tasks.id,
                {
                    "type": "create_node",
                    "content": "Review {{content}}",
                    "supertag": "task",
                    "owner_id": "{{id}}",
                    "properties": {"status": "done"},
                },
            )
        )
        task = store.create_node("Task A", supertags=["task"], properties={"status": "open"})

        children = [n for n in store.snapshot().live_nodes() if n.owner_id == task.id]
        assert len(children) == 1
        assert children[0].content == "Review Task A"
        assert children[0].supertag_ids == ["supertag:task"]
        assert children[0].get_value("status") == "done"

    def test_failing_action_is_isolated(self, store, automations, open_tasks):
        """A failing action is counted and never reaches the writer."""
        automations.register_automation(
            self.action_binding(open_tasks.id, {"type": "set_property", "field": "missing", "value": 1})
        )
        task = store.create_node("Task A", supertags=["task"], properties={"status": "open"})

        assert store.find_node(task.id) is not None
        assert automations.stats["action_errors"] == 1

    def test_node_action_on_threshold_is_skipped(self, store, automations, computed):
        aggregate = computed.register_aggregate("Open count", OPEN_TASKS, "count")
        automations.register_automation(
            {
                "trigger": {"type": "threshold", "aggregate_id": aggregate.id, "operator": "gt", "value": 0},
                "action": {"type": "add_supertag", "supertag": "urgent"},
            }
        )
        task = store.create_node("Task A", supertags=["task"], properties={"status": "open"})

        assert automations.stats["fired"] == 1
        assert automations.stats["skipped_actions"] == 1
        assert store.find_node(task.id).supertag_ids == ["supertag:task"]

    def test_create_node_on_threshold(self, store, automations, computed):
        aggregate = computed.register_aggregate("Open count", OPEN_TASKS, "count")
        automations.register_automation(
            {
                "trigger": {"type": "threshold", "aggregate_id": aggregate.id, "operator": "gt", "value": 0},
                "action": {"type": "create_node", "content": "Open count reached {{value}}"},
            }
        )
        store.create_node("Task A", supertags=["task"], properties={"status": "open"})

        contents = [n.content for n in store.snapshot().live_nodes()]
        assert "Open count reached 1" in contents

    def test_self_triggering_chain_stops(self, store, automations, open_tasks, caplog):
        """An action that re-enters its own trigger stops at the depth limit."""
        automations.register_automation(
            self.action_binding(
                open_tasks.id,
                {
                    "type": "create_node",
                    "content": "Follow-up",
                    "supertag": "task",
                    "properties": {"status": "open"},
                },
            )
        )

        with caplog.at_level(logging.WARNING, logger="tagdb.reactive.automation"):
            store.create_node("Seed", supertags=["task"], properties={"status": "open"})

        follow_ups = [n for n in store.snapshot().live_nodes() if n.content == "Follow-up"]
        assert len(follow_ups) == MAX_EXECUTION_DEPTH
        assert automations.stats["skipped_actions"] == 1
        assert any("depth limit" in r.getMessage() for r in caplog.records)


class TestPersistence(AutomationTestBase):
    """Tests for bindings stored as #automation nodes."""

    def threshold(self, aggregate_id):
        return {
            "name": "Too many open",
            "trigger": {"type": "threshold", "aggregate_id": aggregate_id, "operator": "gt", "value": 0},
            "action": {"url": HOOK_URL},
        }

    def test_binding_is_stored_as_node(self, store, automations, open_tasks):
        binding = automations.register_automation(self.membership(open_tasks.id))

        node = store.find_node(binding.id)
        assert AUTOMATION_SUPERTAG in node.supertag_ids
        assert node.content == "Notify"
        assert node.get_value("automation_enabled") is True
        definition = node.get_value("automation_definition")
        assert definition["trigger"]["saved_query_id"] == open_tasks.id
        assert definition["action"] == {
            "type": "webhook",
            "url": HOOK_URL,
            "method": "POST",
            "headers": {},
            "payload": "{{content}} is open",
        }

    def test_unregister_deletes_node(self, store, automations, open_tasks):
        binding = automations.register_automation(self.membership(open_tasks.id))
        automations.unregister_automation(binding.id)
        assert store.find_node(binding.id).is_deleted

    def test_deleting_node_removes_binding(self, store, automations, queue, open_tasks):
        binding = automations.register_automation(self.membership(open_tasks.id))

        store.delete_node(binding.id)

        assert automations.list_automations() == []
        store.create_node("Task A", supertags=["task"], properties={"status": "open"})
        assert queue.jobs() == []

    def test_reused_id_rejected(self, store, automations, open_tasks):
        task = store.create_node("Task A")
        with pytest.raises(ConfigurationError, match="already in use"):
            automations.register_automation(self.membership(open_tasks.id, id=task.id))

    def test_close_keeps_nodes_and_load_restores(
        self, store, subscriptions, queue, computed, automations, open_tasks
    ):
        """A new service loads the bindings a closed one registered."""
        binding = automations.register_automation(self.membership(open_tasks.id))
        automations.close()
        assert not store.find_node(binding.id).is_deleted

        reloaded = AutomationService(store, subscriptions, queue, computed=computed)
        assert reloaded.load() == 1
        assert reloaded.get_automation(binding.id).model_dump() == binding.model_dump()
        assert reloaded.load() == 0

        store.create_node("Task A", supertags=["task"], properties={"status": "open"})
        assert [job.payload for job in queue.jobs()] == ["Task A is open"]

    def test_disabled_flag_persists(self, store, subscriptions, queue, computed, automations, open_tasks):
        binding = automations.register_automation(self.membership(open_tasks.id))
        automations.set_enabled(binding.id, False)
        automations.close()

        reloaded = AutomationService(store, subscriptions, queue, computed=computed)
        reloaded.load()
        store.create_node("Task A", supertags=["task"], properties={"status": "open"})

        assert reloaded.get_automation(binding.id).enabled is False
        assert queue.jobs() == []

    def test_threshold_state_restored(self, store, subscriptions, queue, computed, automations):
        """A fired fire_once trigger stays disarmed across a reload."""
        aggregate = computed.register_aggregate("Open count", OPEN_TASKS, "count")
        binding = automations.register_automation(self.threshold(aggregate.id))
        store.create_node("A", supertags=["task"], properties={"status": "open"})
        assert len(queue.jobs()) == 1
        assert store.find_node(binding.id).get_value("automation_state") == {"armed": False}
        automations.close()

        reloaded = AutomationService(store, subscriptions, queue, computed=computed)
        reloaded.load()
        assert reloaded.is_armed(binding.id) is False

        store.create_node("B", supertags=["task"], properties={"status": "open"})
        assert len(queue.jobs()) == 1

    def test_unresolvable_binding_is_skipped(self, store, subscriptions, queue, computed, automations):
        aggregate = computed.register_aggregate("Open count", OPEN_TASKS, "count")
        binding = automations.register_automation(self.threshold(aggregate.id))
        automations.close()

        reloaded = AutomationService(
            store, subscriptions, queue, computed=ComputedFieldService(store, subscriptions)
        )

        assert reloaded.load() == 0
        assert not store.find_node(binding.id).is_deleted

    def test_reload_from_file(self, tmp_path):
        """Bindings survive reopening a file database."""
        path = str(tmp_path / "tagdb.sqlite")

        def open_services():
            store = NodeStore(EventBus(), db_path=path)
            saved_queries = SavedQueryStore(store)
            subscriptions = SubscriptionService(store, store.bus, saved_queries=saved_queries)
            queue = WebhookQueue(WebhookQueueConfig(backlog_capacity=10))
            automations = AutomationService(store, subscriptions, queue)
            return store, saved_queries, subscriptions, queue, automations

        store, saved_queries, subscriptions, queue, automations = open_services()
        store.define_field("status", FieldType.SELECT)
        store.define_supertag("task")
        open_tasks = saved_queries.create("Open tasks", OPEN_TASKS)
        binding = automations.register_automation(self.membership(open_tasks.id))
        automations.close()
        subscriptions.close()
        store.close()

        store, saved_queries, subscriptions, queue, automations = open_services()
        try:
            assert automations.load() == 1
            assert automations.get_automation(binding.id).trigger.saved_query_id == open_tasks.id
            store.create_node("Task A", supertags=["task"], properties={"status": "open"})
            assert [job.payload for job in queue.jobs()] == ["Task A is open"]
        finally:
            automations.close()
            subscriptions.close()
            store.close()
