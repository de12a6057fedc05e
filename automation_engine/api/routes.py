"""
FastAPI routes for the automation engine API.

Implements the endpoints used by the automation editor and the platform:
- /v1/workflows - Create, edit, activate and pause workflows
- /v1/executions - Inspect and cancel executions
- /v1/publications/:id/dashboard - Derived execution counters
- /v1/templates - Preview and test-send email content
- /v1/events - Ingest subscriber lifecycle events
- /v1/health - Health check

Events are normally handed to workers via Redis Streams; with the inline
transport they are matched and executed inside the request.
"""

from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, EmailStr, Field

from automation_engine.collaborators import ExternalServiceError
from automation_engine.core.graph import GraphValidator, WorkflowValidationError
from automation_engine.core.models import (
    DomainEvent,
    RetryConfig,
    TriggerSpec,
    Workflow,
    WorkflowExecution,
    WorkflowGraph,
)
from automation_engine.core.state_machine import (
    ExecutionStatus,
    InvalidStateTransitionError,
    StateTransition,
    WorkflowStatus,
)
from automation_engine.engine.service import (
    AutomationService,
    PublicationDashboard,
    TemplatePreview,
)
from automation_engine.storage import (
    ConcurrencyConflictError,
    ExecutionNotFoundError,
    WorkflowNotFoundError,
)

router = APIRouter(prefix="/v1", tags=["automations"])


# ==================== Request/Response Models ====================

class WorkflowCreateRequest(BaseModel):
    """Request body for workflow creation."""

    publication_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    trigger: TriggerSpec
    graph: Optional[WorkflowGraph] = None
    retry: Optional[RetryConfig] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "publication_id": "pub_123",
                "name": "Welcome series",
                "trigger": {"kind": "SUBSCRIBE"},
                "graph": {
                    "nodes": [
                        {"id": "trigger", "type": "trigger"},
                        {
                            "id": "welcome",
                            "type": "send_email",
                            "subject": "Welcome {{subscriber.firstName}}",
                            "content": "<p>Thanks for joining {{publication.name}}</p>",
                        },
                        {"id": "wait", "type": "wait", "delay": 2, "unit": "days"},
                        {"id": "tag", "type": "add_tag", "tags": ["onboarded"]},
                    ],
                    "edges": [
                        {"id": "e1", "source": "trigger", "target": "welcome"},
                        {"id": "e2", "source": "welcome", "target": "wait"},
                        {"id": "e3", "source": "wait", "target": "tag"},
                    ],
                },
            }
        }
    }


class WorkflowUpdateRequest(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    trigger: Optional[TriggerSpec] = None
    graph: Optional[WorkflowGraph] = None
    retry: Optional[RetryConfig] = None


class WorkflowStatusRequest(BaseModel):
    status: WorkflowStatus


class GraphValidationResponse(BaseModel):
    """Editor feedback for a graph."""

    is_valid: bool
    errors: list[dict[str, Any]] = Field(default_factory=list)
    warnings: list[dict[str, Any]] = Field(default_factory=list)
    topological_order: list[str] = Field(default_factory=list)


class ExecutionCountsResponse(BaseModel):
    workflow_id: str
    counts: dict[ExecutionStatus, int]
    total: int


class TemplatePreviewRequest(BaseModel):
    subject: str = Field(default="", max_length=998)
    content: str = Field(default="")
    sample: Optional[dict[str, Any]] = Field(
        default=None,
        description="Context used for rendering; defaults to built-in sample data",
    )


class SendTestEmailRequest(TemplatePreviewRequest):
    to: EmailStr


class EventAcceptedResponse(BaseModel):
    """Response for event ingestion."""

    event_id: str
    message_id: Optional[str] = None
    executions: list[str] = Field(default_factory=list)
    message: str = "Event accepted"


class VariableResponse(BaseModel):
    key: str
    alias: str
    description: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    services: dict[str, str]


# ==================== Dependency Injection ====================

async def get_runtime(request: Request):
    """Get the automation runtime from app state."""
    return request.app.state.runtime


async def get_service(request: Request) -> AutomationService:
    """Get the automation service from app state."""
    return request.app.state.runtime.service


def validation_failed(error: WorkflowValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={
            "message": "Workflow graph is invalid",
            "errors": [e.to_dict() for e in error.errors],
        },
    )


def not_found(error: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))


def conflict(error: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))


# ==================== Workflow Routes ====================

@router.post(
    "/workflows",
    response_model=Workflow,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
    description="Create a DRAFT workflow. A non-empty graph is validated before saving.",
)
async def create_workflow(
    request: WorkflowCreateRequest,
    service: AutomationService = Depends(get_service),
) -> Workflow:
    try:
        return await service.create_workflow(
            publication_id=request.publication_id,
            name=request.name,
            trigger=request.trigger,
            description=request.description,
            graph=request.graph,
            retry=request.retry,
        )
    except WorkflowValidationError as e:
        raise validation_failed(e)


@router.get(
    "/workflows",
    response_model=list[Workflow],
    summary="List workflows",
    description="List the workflows of a publication, optionally filtered by status.",
)
async def list_workflows(
    publication_id: str = Query(..., min_length=1),
    status_filter: Optional[WorkflowStatus] = Query(default=None, alias="status"),
    service: AutomationService = Depends(get_service),
) -> list[Workflow]:
    return await service.list_workflows(publication_id, status_filter)


@router.get(
    "/workflows/{workflow_id}",
    response_model=Workflow,
    summary="Get a workflow",
)
async def get_workflow(
    workflow_id: UUID,
    service: AutomationService = Depends(get_service),
) -> Workflow:
    try:
        return await service.get_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        raise not_found(e)


@router.patch(
    "/workflows/{workflow_id}",
    response_model=Workflow,
    summary="Update a workflow",
    description=(
        "Update name, description, trigger, graph or retry policy. "
        "An invalid graph is rejected and the stored definition is left unchanged."
    ),
)
async def update_workflow(
    workflow_id: UUID,
    request: WorkflowUpdateRequest,
    service: AutomationService = Depends(get_service),
) -> Workflow:
    changes = {
        key: getattr(request, key)
        for key in request.model_fields_set
    }
    try:
        return await service.update_workflow(workflow_id, **changes)
    except WorkflowNotFoundError as e:
        raise not_found(e)
    except WorkflowValidationError as e:
        raise validation_failed(e)
    except ConcurrencyConflictError as e:
        raise conflict(e)


@router.post(
    "/workflows/{workflow_id}/status",
    response_model=Workflow,
    summary="Change workflow status",
    description=(
        "Activate, pause or return a workflow to draft. Activation validates the graph; "
        "pausing does not affect executions already in progress."
    ),
)
async def set_workflow_status(
    workflow_id: UUID,
    request: WorkflowStatusRequest,
    service: AutomationService = Depends(get_service),
) -> Workflow:
    try:
        return await service.set_status(workflow_id, request.status)
    except WorkflowNotFoundError as e:
        raise not_found(e)
    except WorkflowValidationError as e:
        raise validation_failed(e)
    except (InvalidStateTransitionError, ConcurrencyConflictError) as e:
        raise conflict(e)


@router.post(
    "/graphs/validate",
    response_model=GraphValidationResponse,
    summary="Validate a graph",
    description="Validate a graph without saving it; returns errors and warnings for the editor.",
)
async def validate_graph(
    graph: WorkflowGraph,
    service: AutomationService = Depends(get_service),
) -> GraphValidationResponse:
    result = GraphValidator(graph, service.renderer).validate()
    return GraphValidationResponse(
        is_valid=result.is_valid,
        errors=[e.to_dict() for e in result.errors],
        warnings=[w.to_dict() for w in result.warnings],
        topological_order=result.topological_order,
    )


@router.get(
    "/workflows/{workflow_id}/counts",
    response_model=ExecutionCountsResponse,
    summary="Execution counts for a workflow",
)
async def get_workflow_counts(
    workflow_id: UUID,
    service: AutomationService = Depends(get_service),
) -> ExecutionCountsResponse:
    try:
        counts = await service.execution_counts(workflow_id)
    except WorkflowNotFoundError as e:
        raise not_found(e)

    return ExecutionCountsResponse(
        workflow_id=str(workflow_id),
        counts=counts,
        total=sum(counts.values()),
    )


@router.get(
    "/workflows/{workflow_id}/executions",
    response_model=list[WorkflowExecution],
    summary="List executions of a workflow",
    description="Newest first.",
)
async def list_workflow_executions(
    workflow_id: UUID,
    status_filter: Optional[ExecutionStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: AutomationService = Depends(get_service),
) -> list[WorkflowExecution]:
    try:
        await service.get_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        raise not_found(e)

    return await service.list_executions(
        workflow_id=workflow_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/publications/{publication_id}/dashboard",
    response_model=PublicationDashboard,
    summary="Automation dashboard counters",
    description="Workflow and execution counts for a publication, derived from execution records.",
)
async def get_dashboard(
    publication_id: str,
    service: AutomationService = Depends(get_service),
) -> PublicationDashboard:
    return await service.dashboard(publication_id)


# ==================== Execution Routes ====================

@router.get(
    "/executions/{execution_id}",
    response_model=WorkflowExecution,
    summary="Get an execution",
)
async def get_execution(
    execution_id: UUID,
    service: AutomationService = Depends(get_service),
) -> WorkflowExecution:
    try:
        return await service.get_execution(execution_id)
    except ExecutionNotFoundError as e:
        raise not_found(e)


@router.get(
    "/executions/{execution_id}/history",
    response_model=list[StateTransition],
    summary="Get execution history",
    description="Committed transitions of an execution, oldest first.",
)
async def get_execution_history(
    execution_id: UUID,
    service: AutomationService = Depends(get_service),
) -> list[StateTransition]:
    try:
        return await service.get_execution_history(execution_id)
    except ExecutionNotFoundError as e:
        raise not_found(e)


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=WorkflowExecution,
    summary="Cancel an execution",
    description="Cancel a RUNNING or WAITING execution. Finished executions cannot be cancelled.",
)
async def cancel_execution(
    execution_id: UUID,
    service: AutomationService = Depends(get_service),
) -> WorkflowExecution:
    try:
        return await service.cancel_execution(execution_id)
    except ExecutionNotFoundError as e:
        raise not_found(e)
    except InvalidStateTransitionError as e:
        raise conflict(e)


# ==================== Template Routes ====================

@router.get(
    "/templates/variables",
    response_model=list[VariableResponse],
    summary="List personalization variables",
)
async def list_variables(
    service: AutomationService = Depends(get_service),
) -> list[VariableResponse]:
    return [
        VariableResponse(key=v.key, alias=v.alias, description=v.description)
        for v in service.renderer.variables
    ]


@router.post(
    "/templates/preview",
    response_model=TemplatePreview,
    summary="Preview an email",
    description="Render subject and content against sample data.",
)
async def preview_template(
    request: TemplatePreviewRequest,
    service: AutomationService = Depends(get_service),
) -> TemplatePreview:
    return service.preview_template(request.subject, request.content, request.sample)


@router.post(
    "/templates/test",
    response_model=TemplatePreview,
    summary="Send a test email",
    description="Render against sample data and send to the given address.",
)
async def send_test_email(
    request: SendTestEmailRequest,
    service: AutomationService = Depends(get_service),
) -> TemplatePreview:
    try:
        return await service.send_test_email(
            str(request.to),
            request.subject,
            request.content,
            request.sample,
        )
    except WorkflowValidationError as e:
        raise validation_failed(e)
    except ExternalServiceError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to send test email: {e}",
        )


# ==================== Event Routes ====================

@router.post(
    "/events",
    response_model=EventAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest a subscriber event",
    description="Queue a lifecycle event for matching. Replaying an event_id starts nothing new.",
)
async def ingest_event(
    event: DomainEvent,
    runtime=Depends(get_runtime),
) -> EventAcceptedResponse:
    if runtime.events is not None:
        message_id = await runtime.events.publish(event)
        return EventAcceptedResponse(event_id=event.event_id, message_id=message_id)

    try:
        executions = await runtime.service.process_event(event)
    except ExternalServiceError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Event could not be processed: {e}",
        )

    return EventAcceptedResponse(
        event_id=event.event_id,
        executions=[str(execution.id) for execution in executions],
        message="Event processed",
    )


# ==================== Health Check Routes ====================

@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the automation engine services.",
)
async def health_check(runtime=Depends(get_runtime)) -> HealthResponse:
    from automation_engine import __version__

    services = await runtime.health()

    unhealthy_count = sum(1 for s in services.values() if s == "unhealthy")
    if unhealthy_count == 0:
        overall_status = "healthy"
    elif unhealthy_count == len(services):
        overall_status = "unhealthy"
    else:
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=__version__,
        services=services,
    )
