"""Personalization variables for email content."""

from automation_engine.template.variables import (
    SAMPLE_CONTEXT,
    VARIABLES,
    VariableDefinition,
    VariableRenderer,
    VariableValidation,
    render,
    validate,
)

__all__ = [
    "SAMPLE_CONTEXT",
    "VARIABLES",
    "VariableDefinition",
    "VariableRenderer",
    "VariableValidation",
    "render",
    "validate",
]
