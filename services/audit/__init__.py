"""Audit services: agent-backed rule checks, sessions and the task list."""

from .agent_auditor import AuditAgent, AuditClue, AuditItem, AuditVerdict
from .orchestrator import AuditSession, AuditSessionError, AuditSessionRegistry, audit_sessions
from .task_registry import TaskNotFoundError, TaskRegistry, task_registry

__all__ = [
    "AuditAgent",
    "AuditClue",
    "AuditItem",
    "AuditVerdict",
    "AuditSession",
    "AuditSessionError",
    "AuditSessionRegistry",
    "audit_sessions",
    "TaskNotFoundError",
    "TaskRegistry",
    "task_registry",
]
