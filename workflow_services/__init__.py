"""
Workflow services -- orchestration over the kernel.

``WorkflowEngine`` registers workflow types and drives instances;
``AuditTrail`` records who did what to which workflow.
"""

from workflow_services.audit import AuditAction, AuditEntry, AuditTrail, sanitize_context
from workflow_services.engine import (
    EngineEvent,
    EngineStatistics,
    UserWorkflowView,
    WorkflowEngine,
)

__all__ = [
    "AuditAction",
    "AuditEntry",
    "AuditTrail",
    "EngineEvent",
    "EngineStatistics",
    "UserWorkflowView",
    "WorkflowEngine",
    "sanitize_context",
]
