"""
Error taxonomy for workflow runs.

Node executors raise these; the engine records the message against the
failing node and aborts the run. Anything else escaping an executor is
treated the same way but reported with its exception type name.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for all workflow-level failures."""


class WorkflowValidationError(WorkflowError):
    """Invalid graph (cycle, dangling edge) or malformed node parameter."""


class ConfigurationError(WorkflowError):
    """A required credential or binary is not configured."""


class ExternalServiceError(WorkflowError):
    """A collaborator returned non-2xx, timed out, or exited non-zero."""


class ResourceLimitError(WorkflowError):
    """A payload exceeded its configured byte cap."""


class NodeExecutionError(WorkflowError):
    """Raised by the engine when a node fails, to abort the remaining waves."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        self.message = message
        super().__init__(f"Execution stopped at node {node_id}: {message}")
