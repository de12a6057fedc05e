"""
Domain models for the automation engine.

All models use Pydantic for validation and serialization. Node kinds and
trigger scopes are tagged unions discriminated on ``type``, so every variant
only carries the fields that make sense for it.
"""

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    field_validator,
    model_validator,
)

from automation_engine.core.state_machine import (
    TERMINAL_EXECUTION_STATUSES,
    ExecutionStatus,
    WorkflowStatus,
)

# Reserved context keys used by the engine for its own bookkeeping
RETRY_KEY = "_retry"
DISPATCH_KEY = "_dispatch"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TriggerKind(str, Enum):
    """Subscriber lifecycle events a workflow can start on."""

    SUBSCRIBE = "SUBSCRIBE"
    UNSUBSCRIBE = "UNSUBSCRIBE"
    POST_PUBLISHED = "POST_PUBLISHED"
    COURSE_ENROLLED = "COURSE_ENROLLED"
    TAG_ADDED = "TAG_ADDED"
    TAG_REMOVED = "TAG_REMOVED"
    TIER_CHANGED = "TIER_CHANGED"
    CUSTOM_DATE = "CUSTOM_DATE"
    FORM_SUBMITTED = "FORM_SUBMITTED"
    POST_VIEWED = "POST_VIEWED"


class NodeCategory(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"


class ActionKind(str, Enum):
    SEND_EMAIL = "send_email"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    WAIT = "wait"


class ConditionKind(str, Enum):
    HAS_TAG = "has_tag"
    SUBSCRIPTION_TIER = "subscription_tier"
    CUSTOM_FIELD = "custom_field"


class FieldOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class DelayUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class BranchLabel(str, Enum):
    TRUE = "true"
    FALSE = "false"


class RetryConfig(BaseModel):
    """Bounded exponential backoff for external effects."""

    base_delay: float = Field(default=30.0, ge=0.0, description="Delay before the second attempt (seconds)")
    factor: float = Field(default=2.0, ge=1.0, le=10.0, description="Backoff factor")
    max_attempts: int = Field(default=5, ge=1, le=100, description="Attempts before failing")
    max_delay: float = Field(default=3600.0, ge=1.0, description="Maximum delay (seconds)")

    @model_validator(mode="after")
    def validate_delays(self) -> "RetryConfig":
        """Ensure max_delay is greater than base_delay."""
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self

    def backoff(self, attempt: int) -> timedelta:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.base_delay * (self.factor ** max(attempt - 1, 0))
        return timedelta(seconds=min(delay, self.max_delay))

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        """Build from RetrySettings."""
        return cls(
            base_delay=settings.base_delay,
            factor=settings.factor,
            max_attempts=settings.max_attempts,
            max_delay=settings.max_delay,
        )


# ==================== Trigger Scopes ====================

class PublicationScope(BaseModel):
    """Matches any event in the workflow's publication."""

    type: Literal["publication"] = "publication"


class CourseScope(BaseModel):
    type: Literal["course"] = "course"
    course_id: str = Field(..., min_length=1)


class PostScope(BaseModel):
    type: Literal["post"] = "post"
    post_id: str = Field(..., min_length=1)


class TagScope(BaseModel):
    type: Literal["tag"] = "tag"
    tag_name: str = Field(..., min_length=1)


class TierScope(BaseModel):
    """Unset fields act as wildcards."""

    type: Literal["tier"] = "tier"
    from_tier: Optional[str] = None
    to_tier: Optional[str] = None


class DateScope(BaseModel):
    """Yearly recurring date; only month and day are compared."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["date"] = "date"
    on_date: date = Field(..., alias="date")

    def matches(self, moment: datetime) -> bool:
        target = (self.on_date.month, self.on_date.day)
        if (moment.month, moment.day) == target:
            return True
        # Feb 29 fires on Feb 28 in non-leap years
        if target == (2, 29) and (moment.month, moment.day) == (2, 28):
            year = moment.year
            is_leap = year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)
            return not is_leap
        return False


class FormScope(BaseModel):
    type: Literal["form"] = "form"
    form_id: str = Field(..., min_length=1)


class TargetScope(BaseModel):
    """A single course, post or other target id."""

    type: Literal["target"] = "target"
    target_id: str = Field(..., min_length=1)


TriggerScope = Annotated[
    Union[
        PublicationScope,
        CourseScope,
        PostScope,
        TagScope,
        TierScope,
        DateScope,
        FormScope,
        TargetScope,
    ],
    Field(discriminator="type"),
]


ALLOWED_SCOPES: dict[TriggerKind, frozenset[str]] = {
    TriggerKind.SUBSCRIBE: frozenset({"publication", "course", "post"}),
    TriggerKind.UNSUBSCRIBE: frozenset({"publication", "course", "post"}),
    TriggerKind.TAG_ADDED: frozenset({"tag"}),
    TriggerKind.TAG_REMOVED: frozenset({"tag"}),
    TriggerKind.TIER_CHANGED: frozenset({"tier"}),
    TriggerKind.CUSTOM_DATE: frozenset({"date"}),
    TriggerKind.FORM_SUBMITTED: frozenset({"form"}),
    TriggerKind.COURSE_ENROLLED: frozenset({"target"}),
    TriggerKind.POST_PUBLISHED: frozenset({"target"}),
    TriggerKind.POST_VIEWED: frozenset({"target"}),
}


class TriggerSpec(BaseModel):
    """Trigger kind plus the scope variant that narrows which events match."""

    kind: TriggerKind
    scope: TriggerScope

    @model_validator(mode="before")
    @classmethod
    def default_publication_scope(cls, data: Any) -> Any:
        """Subscribe/unsubscribe triggers default to the whole publication."""
        if isinstance(data, dict) and data.get("scope") is None:
            kind = data.get("kind")
            if kind in (
                TriggerKind.SUBSCRIBE,
                TriggerKind.UNSUBSCRIBE,
                TriggerKind.SUBSCRIBE.value,
                TriggerKind.UNSUBSCRIBE.value,
            ):
                data = {**data, "scope": {"type": "publication"}}
        return data

    @model_validator(mode="after")
    def validate_scope_for_kind(self) -> "TriggerSpec":
        allowed = ALLOWED_SCOPES[self.kind]
        if self.scope.type not in allowed:
            raise ValueError(
                f"Scope '{self.scope.type}' is not valid for trigger {self.kind.value}; "
                f"expected one of {sorted(allowed)}"
            )
        return self


# ==================== Graph Nodes ====================

class NodeBase(BaseModel):
    """Fields shared by every node variant."""

    category: ClassVar[NodeCategory]

    id: str = Field(..., min_length=1, max_length=255, description="Unique node identifier")
    label: Optional[str] = Field(default=None, max_length=255)


class TriggerNode(NodeBase):
    category = NodeCategory.TRIGGER

    type: Literal["trigger"] = "trigger"


class SendEmailNode(NodeBase):
    category = NodeCategory.ACTION

    type: Literal["send_email"] = "send_email"
    subject: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, description="HTML body with personalization tokens")
    template_id: Optional[str] = None


class AddTagNode(NodeBase):
    category = NodeCategory.ACTION

    type: Literal["add_tag"] = "add_tag"
    tags: list[str] = Field(..., min_length=1)


class RemoveTagNode(NodeBase):
    category = NodeCategory.ACTION

    type: Literal["remove_tag"] = "remove_tag"
    tags: list[str] = Field(..., min_length=1)


class WaitNode(NodeBase):
    category = NodeCategory.ACTION

    type: Literal["wait"] = "wait"
    delay: int = Field(..., ge=1)
    unit: DelayUnit = DelayUnit.MINUTES

    @property
    def duration(self) -> timedelta:
        if self.unit == DelayUnit.DAYS:
            return timedelta(days=self.delay)
        if self.unit == DelayUnit.HOURS:
            return timedelta(hours=self.delay)
        return timedelta(minutes=self.delay)


class HasTagNode(NodeBase):
    category = NodeCategory.CONDITION

    type: Literal["has_tag"] = "has_tag"
    tag: str = Field(..., min_length=1)
    present: bool = Field(default=True, description="False inverts the check (tag absent)")


class SubscriptionTierNode(NodeBase):
    category = NodeCategory.CONDITION

    type: Literal["subscription_tier"] = "subscription_tier"
    tier: str = Field(..., min_length=1)


class CustomFieldNode(NodeBase):
    category = NodeCategory.CONDITION

    type: Literal["custom_field"] = "custom_field"
    field_name: str = Field(..., min_length=1)
    operator: FieldOperator
    value: str


Node = Annotated[
    Union[
        TriggerNode,
        SendEmailNode,
        AddTagNode,
        RemoveTagNode,
        WaitNode,
        HasTagNode,
        SubscriptionTierNode,
        CustomFieldNode,
    ],
    Field(discriminator="type"),
]


class Edge(BaseModel):
    """Directed edge; ``branch`` is only set on edges leaving a condition."""

    id: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    branch: Optional[BranchLabel] = None

    @field_validator("branch", mode="before")
    @classmethod
    def normalize_branch(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return BranchLabel.TRUE if v else BranchLabel.FALSE
        if isinstance(v, str):
            return v.strip().lower() or None
        return v


class WorkflowGraph(BaseModel):
    """
    Arena of nodes indexed by id plus a flat edge list.

    Treat as immutable once built: the indexes are computed on construction.
    """

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    _nodes_by_id: dict[str, Any] = PrivateAttr(default_factory=dict)
    _outgoing: dict[str, list[Edge]] = PrivateAttr(default_factory=dict)
    _incoming: dict[str, list[Edge]] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        for node in self.nodes:
            self._nodes_by_id.setdefault(node.id, node)
        for edge in self.edges:
            self._outgoing.setdefault(edge.source, []).append(edge)
            self._incoming.setdefault(edge.target, []).append(edge)

    @property
    def is_empty(self) -> bool:
        return not self.nodes

    def get_node(self, node_id: str) -> Optional[Node]:
        """Get node by ID."""
        return self._nodes_by_id.get(node_id)

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        return list(self._outgoing.get(node_id, []))

    def incoming_edges(self, node_id: str) -> list[Edge]:
        return list(self._incoming.get(node_id, []))

    @property
    def trigger_nodes(self) -> list[TriggerNode]:
        return [node for node in self.nodes if isinstance(node, TriggerNode)]

    @property
    def trigger_node(self) -> Optional[TriggerNode]:
        triggers = self.trigger_nodes
        return triggers[0] if triggers else None

    def next_node_id(self, node_id: str, branch: Optional[bool] = None) -> Optional[str]:
        """
        Resolve the node reached from ``node_id``.

        For conditions pass the evaluated branch; other nodes follow their
        single outgoing edge. Returns None when there is nowhere to go.
        """
        edges = self.outgoing_edges(node_id)
        if branch is None:
            return edges[0].target if edges else None

        wanted = BranchLabel.TRUE if branch else BranchLabel.FALSE
        for edge in edges:
            if edge.branch == wanted:
                return edge.target
        return None

    def send_email_nodes(self) -> list[SendEmailNode]:
        return [node for node in self.nodes if isinstance(node, SendEmailNode)]


class Workflow(BaseModel):
    """An automation owned by a publication."""

    id: UUID = Field(default_factory=uuid4)
    publication_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    trigger: TriggerSpec
    status: WorkflowStatus = Field(default=WorkflowStatus.DRAFT)
    graph: WorkflowGraph = Field(default_factory=WorkflowGraph)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    version: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE


class DomainEvent(BaseModel):
    """A subscriber lifecycle event emitted elsewhere in the platform."""

    event_id: str = Field(..., min_length=1, max_length=255, description="Idempotency key of the event")
    kind: TriggerKind
    publication_id: str = Field(..., min_length=1)
    subscriber_id: str = Field(..., min_length=1)
    target_id: Optional[str] = None
    tag_name: Optional[str] = None
    from_tier: Optional[str] = None
    to_tier: Optional[str] = None
    form_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict, description="Extra context, e.g. post or course details")

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class SubscriberSnapshot(BaseModel):
    """Current subscriber state as reported by the platform."""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    tier: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    fields: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def derive_name_parts(self) -> "SubscriberSnapshot":
        if self.name and not (self.first_name or self.last_name):
            first, _, last = self.name.strip().partition(" ")
            self.first_name = first or None
            self.last_name = last.strip() or None
        return self

    def as_context(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "tier": self.tier,
            "tags": list(self.tags),
            "fields": dict(self.fields),
        }


class WorkflowExecution(BaseModel):
    """Durable record of one traversal for one subscriber and one event."""

    id: UUID = Field(default_factory=uuid4)
    workflow_id: UUID
    publication_id: str
    subscriber_id: str
    event_id: str

    status: ExecutionStatus = Field(default=ExecutionStatus.RUNNING)
    current_node_id: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    wake_at: Optional[datetime] = None
    last_error: Optional[str] = None
    version: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @field_validator("wake_at", "created_at", "updated_at", "completed_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    @property
    def retry_state(self) -> Optional[dict[str, Any]]:
        return self.context.get(RETRY_KEY)

    @property
    def dispatch_claim(self) -> Optional[dict[str, Any]]:
        return self.context.get(DISPATCH_KEY)

    def is_due(self, now: datetime) -> bool:
        return (
            self.status == ExecutionStatus.WAITING
            and self.wake_at is not None
            and self.wake_at <= now
        )
