"""Trigger scope matching against incoming domain events."""

from automation_engine.core.models import (
    CourseScope,
    DateScope,
    DomainEvent,
    FormScope,
    PostScope,
    PublicationScope,
    TagScope,
    TargetScope,
    TierScope,
    TriggerSpec,
)


def scope_matches(spec: TriggerSpec, event: DomainEvent) -> bool:
    """
    Check whether an event falls inside a trigger's scope.

    The caller is responsible for comparing publication and kind; a scope
    mismatch is not an error, it simply means no match.
    """
    scope = spec.scope

    if isinstance(scope, PublicationScope):
        return True
    if isinstance(scope, CourseScope):
        return event.target_id == scope.course_id
    if isinstance(scope, PostScope):
        return event.target_id == scope.post_id
    if isinstance(scope, TargetScope):
        return event.target_id == scope.target_id
    if isinstance(scope, TagScope):
        return event.tag_name == scope.tag_name
    if isinstance(scope, TierScope):
        if scope.from_tier is not None and event.from_tier != scope.from_tier:
            return False
        if scope.to_tier is not None and event.to_tier != scope.to_tier:
            return False
        return True
    if isinstance(scope, DateScope):
        return scope.matches(event.occurred_at)
    if isinstance(scope, FormScope):
        return event.form_id == scope.form_id

    return False


def trigger_matches(spec: TriggerSpec, event: DomainEvent) -> bool:
    """Kind and scope both match."""
    return spec.kind == event.kind and scope_matches(spec, event)
