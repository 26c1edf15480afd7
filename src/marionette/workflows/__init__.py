"""Workflow catalogue and resolution."""

from marionette.workflows.resolver import (
    ExecutionPlan,
    ResolvedStep,
    WorkflowResolver,
    merge_step_params,
)

__all__ = ["ExecutionPlan", "ResolvedStep", "WorkflowResolver", "merge_step_params"]
