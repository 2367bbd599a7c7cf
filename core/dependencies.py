"""
Shared dependencies for FastAPI routes.
"""

import logging
from typing import Any, Dict

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from core.agent_client import AgentClient, get_agent_client
from database import ProjectDB, ProjectFileDB, get_db

logger = logging.getLogger(__name__)


def get_agent() -> AgentClient:
    """Agent platform client dependency."""
    return get_agent_client()


def get_audit_sessions():
    """Audit session registry dependency."""
    from services.audit.orchestrator import audit_sessions
    return audit_sessions


def get_task_registry():
    """Background task list dependency."""
    from services.audit.task_registry import task_registry
    return task_registry


async def read_json_body(request: Request) -> Dict[str, Any]:
    """Parse the request body as a JSON object; an empty body reads as {}."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return body


def get_project_or_404(project_id: str, db: Session = Depends(get_db)) -> ProjectDB:
    project = db.query(ProjectDB).filter(ProjectDB.id == project_id).first()
    if not project:
        raise HTTPException(status_code=404, detail="项目不存在")
    return project


def get_project_file_or_404(db: Session, project_id: str, file_id: str) -> ProjectFileDB:
    project_file = db.query(ProjectFileDB).filter(
        ProjectFileDB.id == file_id,
        ProjectFileDB.project_id == project_id,
    ).first()
    if not project_file:
        raise HTTPException(status_code=404, detail="文件不存在")
    return project_file
