"""
Unit tests for domain models.
"""

from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest
from pydantic import ValidationError

from automation_engine.core.models import (
    BranchLabel,
    DateScope,
    DomainEvent,
    Edge,
    PublicationScope,
    RetryConfig,
    SubscriberSnapshot,
    TriggerKind,
    TriggerSpec,
    WaitNode,
    Workflow,
    WorkflowExecution,
    WorkflowGraph,
)
from automation_engine.core.state_machine import ExecutionStatus


class TestRetryConfig:
    """Tests for RetryConfig model."""

    def test_default_values(self):
        """Test default configuration values."""
        config = RetryConfig()

        assert config.base_delay == 30.0
        assert config.factor == 2.0
        assert config.max_attempts == 5
        assert config.max_delay == 3600.0

    def test_backoff_is_exponential(self):
        config = RetryConfig()

        assert config.backoff(1) == timedelta(seconds=30)
        assert config.backoff(2) == timedelta(seconds=60)
        assert config.backoff(3) == timedelta(seconds=120)

    def test_backoff_is_capped(self):
        config = RetryConfig(base_delay=100, factor=10, max_delay=500)

        assert config.backoff(4) == timedelta(seconds=500)

    def test_max_delay_below_base_delay(self):
        with pytest.raises(ValidationError, match="max_delay"):
            RetryConfig(base_delay=60, max_delay=10)


class TestTriggerSpec:
    """Tests for trigger kinds and scopes."""

    def test_subscribe_defaults_to_publication_scope(self):
        spec = TriggerSpec(kind=TriggerKind.SUBSCRIBE)

        assert isinstance(spec.scope, PublicationScope)

    def test_scope_parsed_from_json(self):
        spec = TriggerSpec.model_validate({
            "kind": "TAG_ADDED",
            "scope": {"type": "tag", "tag_name": "vip"},
        })

        assert spec.scope.type == "tag"
        assert spec.scope.tag_name == "vip"

    def test_scope_must_fit_kind(self):
        with pytest.raises(ValidationError, match="not valid for trigger TAG_ADDED"):
            TriggerSpec.model_validate({
                "kind": "TAG_ADDED",
                "scope": {"type": "form", "form_id": "f1"},
            })

    def test_scope_required_for_non_subscription_kinds(self):
        with pytest.raises(ValidationError):
            TriggerSpec.model_validate({"kind": "FORM_SUBMITTED"})

    def test_subscribe_to_a_single_course(self):
        spec = TriggerSpec.model_validate({
            "kind": "SUBSCRIBE",
            "scope": {"type": "course", "course_id": "c1"},
        })

        assert spec.scope.course_id == "c1"


class TestDateScope:
    def test_matches_month_and_day_every_year(self):
        scope = DateScope(on_date=date(2020, 3, 15))

        assert scope.matches(datetime(2026, 3, 15, 23, 59, tzinfo=timezone.utc))
        assert not scope.matches(datetime(2026, 3, 16, tzinfo=timezone.utc))

    def test_feb_29_falls_back_to_feb_28_in_common_years(self):
        scope = DateScope(on_date=date(2024, 2, 29))

        assert scope.matches(datetime(2027, 2, 28, tzinfo=timezone.utc))
        assert not scope.matches(datetime(2028, 2, 28, tzinfo=timezone.utc))
        assert scope.matches(datetime(2028, 2, 29, tzinfo=timezone.utc))

    def test_payload_uses_date_key(self):
        spec = TriggerSpec.model_validate(
            {"kind": "CUSTOM_DATE", "scope": {"type": "date", "date": "1996-02-29"}}
        )

        assert spec.scope.on_date == date(1996, 2, 29)
        assert spec.model_dump(mode="json", by_alias=True)["scope"] == {"type": "date", "date": "1996-02-29"}
        assert TriggerSpec.model_validate(spec.model_dump()) == spec


class TestGraphModels:
    def test_edge_branch_normalization(self):
        assert Edge(id="e", source="a", target="b", branch=True).branch == BranchLabel.TRUE
        assert Edge(id="e", source="a", target="b", branch="FALSE").branch == BranchLabel.FALSE
        assert Edge(id="e", source="a", target="b", branch="").branch is None
        assert Edge(id="e", source="a", target="b").branch is None

    def test_nodes_are_discriminated_by_type(self, welcome_graph):
        assert welcome_graph.get_node("wait").duration == timedelta(days=2)
        assert welcome_graph.get_node("welcome").category.value == "action"
        assert welcome_graph.trigger_node.id == "trigger"
        assert [n.id for n in welcome_graph.send_email_nodes()] == ["welcome"]

    def test_unknown_node_type_is_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowGraph.model_validate({"nodes": [{"id": "x", "type": "webhook"}]})

    def test_tag_nodes_need_a_tag(self):
        with pytest.raises(ValidationError):
            WorkflowGraph.model_validate({"nodes": [{"id": "x", "type": "add_tag", "tags": []}]})

    def test_wait_units(self):
        assert WaitNode(id="w", delay=90).duration == timedelta(minutes=90)
        assert WaitNode(id="w", delay=3, unit="hours").duration == timedelta(hours=3)

    def test_next_node_follows_branches(self, branching_graph):
        assert branching_graph.next_node_id("trigger") == "is_vip"
        assert branching_graph.next_node_id("is_vip", True) == "vip_email"
        assert branching_graph.next_node_id("is_vip", False) == "upsell"
        assert branching_graph.next_node_id("upsell") is None

    def test_edge_indexes(self, branching_graph):
        assert [e.id for e in branching_graph.outgoing_edges("is_vip")] == ["e2", "e3"]
        assert [e.id for e in branching_graph.incoming_edges("upsell")] == ["e3"]
        assert branching_graph.outgoing_edges("missing") == []


class TestWorkflow:
    def test_name_length(self, subscribe_trigger):
        with pytest.raises(ValidationError):
            Workflow(publication_id="p", name="x" * 101, trigger=subscribe_trigger)

    def test_defaults(self, subscribe_trigger):
        workflow = Workflow(publication_id="p", name="Welcome", trigger=subscribe_trigger)

        assert workflow.status.value == "DRAFT"
        assert workflow.graph.is_empty
        assert not workflow.is_active

    def test_round_trips_through_json(self, subscribe_trigger, branching_graph):
        workflow = Workflow(
            publication_id="p",
            name="Branches",
            trigger=subscribe_trigger,
            graph=branching_graph,
        )

        restored = Workflow.model_validate_json(workflow.model_dump_json())

        assert restored.graph.next_node_id("is_vip", False) == "upsell"
        assert restored.trigger == workflow.trigger


class TestDomainEvent:
    def test_occurred_at_normalized_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        event = DomainEvent(
            event_id="e1",
            kind=TriggerKind.SUBSCRIBE,
            publication_id="p",
            subscriber_id="s",
            occurred_at=datetime(2026, 1, 1, 1, 30, tzinfo=plus_two),
        )

        assert event.occurred_at == datetime(2025, 12, 31, 23, 30, tzinfo=timezone.utc)
        assert event.occurred_at.tzinfo == timezone.utc

    def test_naive_time_is_treated_as_utc(self):
        event = DomainEvent(
            event_id="e1",
            kind="SUBSCRIBE",
            publication_id="p",
            subscriber_id="s",
            occurred_at=datetime(2026, 1, 1, 12, 0),
        )

        assert event.occurred_at.tzinfo == timezone.utc


class TestSubscriberSnapshot:
    def test_name_split_into_parts(self):
        snapshot = SubscriberSnapshot(id="s", name="Mary Jane Watson")

        assert snapshot.first_name == "Mary"
        assert snapshot.last_name == "Jane Watson"

    def test_explicit_parts_are_kept(self):
        snapshot = SubscriberSnapshot(id="s", name="M. Watson", first_name="Mary")

        assert snapshot.first_name == "Mary"
        assert snapshot.last_name is None

    def test_context_uses_camel_case(self):
        context = SubscriberSnapshot(id="s", name="Ada Lovelace", tags=["a"]).as_context()

        assert context["firstName"] == "Ada"
        assert context["lastName"] == "Lovelace"
        assert context["tags"] == ["a"]


class TestWorkflowExecution:
    def test_is_due(self):
        now = datetime(2026, 10, 19, tzinfo=timezone.utc)
        execution = WorkflowExecution(
            workflow_id=uuid4(),
            publication_id="p",
            subscriber_id="s",
            event_id="e",
            status=ExecutionStatus.WAITING,
            wake_at=now,
        )

        assert execution.is_due(now)
        assert not execution.is_due(now - timedelta(seconds=1))
        assert not execution.is_terminal

    def test_running_is_never_due(self):
        now = datetime(2026, 10, 19, tzinfo=timezone.utc)
        execution = WorkflowExecution(
            workflow_id=uuid4(),
            publication_id="p",
            subscriber_id="s",
            event_id="e",
            wake_at=now,
        )

        assert not execution.is_due(now)
