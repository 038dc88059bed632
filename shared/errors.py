"""Error taxonomy for the workflow coordinator.

Definition-time errors are raised to the caller. Run-time errors are
captured by the executor and surfaced as ``WorkflowResult.errors``.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Graph-definition, unknown node/action or step-limit problem."""

    def __init__(self, message: str, code: str = "WORKFLOW_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code


class ActionValidationError(WorkflowError):
    """An action rejected the context before execution."""

    def __init__(self, message: str):
        super().__init__(message, code="VALIDATION_ERROR")


class ActionPermissionError(WorkflowError):
    """Authorization was denied for an action."""

    def __init__(self, message: str):
        super().__init__(message, code="PERMISSION_ERROR")


class ResumeError(WorkflowError):
    """Resume handle is unknown, expired, malformed or mismatched."""

    def __init__(self, message: str):
        super().__init__(message, code="RESUME_ERROR")
