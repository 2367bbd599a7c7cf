from fastapi import APIRouter, Request, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from database import AuditRuleDB, FileFieldDB, ProjectDB, ProjectFieldDB, ProjectFileDB
from core.dependencies import (
    get_db,
    get_audit_sessions,
    get_project_or_404,
    get_task_registry,
    read_json_body,
)
from services.audit.agent_auditor import AuditClue, AuditItem
from services.audit.orchestrator import AuditSessionError, AuditSessionRegistry
from services.audit.task_registry import TaskNotFoundError, TaskRegistry
from services.document_pipeline.jobs import PipelineJobs, get_pipeline_jobs

logger = logging.getLogger(__name__)

router = APIRouter()


def rule_clues(db: Session, rule_codes: Optional[List[str]] = None) -> List[AuditClue]:
    """Enabled audit rules as agent clues, optionally limited to the given codes."""
    query = db.query(AuditRuleDB).filter(AuditRuleDB.is_enabled.is_(True))
    if rule_codes:
        query = query.filter(AuditRuleDB.code.in_(rule_codes))
    return [
        AuditClue(
            rule_code=rule.code,
            rule_name=rule.name,
            description=rule.description or "",
            check_logic=rule.category or "",
        )
        for rule in query.order_by(AuditRuleDB.category, AuditRuleDB.code).all()
    ]


def project_items(db: Session, project: ProjectDB) -> List[AuditItem]:
    """Extracted values of the project: tender fields first, then every file's fields."""
    items = [
        AuditItem(source=project.name, file="招标文件", field=f.field_name, content=f.field_value)
        for f in db.query(ProjectFieldDB)
        .filter(ProjectFieldDB.project_id == project.id, ProjectFieldDB.field_value.isnot(None))
        .order_by(ProjectFieldDB.id)
        .all()
    ]

    rows = (
        db.query(FileFieldDB, ProjectFileDB)
        .join(ProjectFileDB, FileFieldDB.file_id == ProjectFileDB.id)
        .filter(FileFieldDB.project_id == project.id, FileFieldDB.field_value.isnot(None))
        .filter(ProjectFileDB.is_tender.is_(False))
        .order_by(ProjectFileDB.created_at, FileFieldDB.id)
        .all()
    )
    for field, project_file in rows:
        items.append(AuditItem(
            source=project.name,
            file=project_file.file_name,
            field=field.field_name,
            content=field.field_value,
        ))
    return items


@router.post("/projects/{project_id}/audit")
async def start_project_audit(
    request: Request,
    project: ProjectDB = Depends(get_project_or_404),
    db: Session = Depends(get_db),
    sessions: AuditSessionRegistry = Depends(get_audit_sessions),
):
    """
    Start an audit run.

    Body (all optional): clues / items to audit directly, ruleCodes to limit
    the stored rules, useCodeAudit to use the code comparison agent.
    """
    body = await read_json_body(request)

    running = sessions.attach_running_session(project.id)
    if running is not None:
        return {"code": 0, "data": running.to_dict(), "message": "审计正在进行中"}

    if body.get("clues"):
        clues = [AuditClue.from_dict(c) for c in body["clues"] if isinstance(c, dict)]
    else:
        clues = rule_clues(db, body.get("ruleCodes"))
    if not clues:
        raise HTTPException(status_code=400, detail="没有可执行的审计规则")

    if body.get("items"):
        items = [AuditItem.from_dict(i) for i in body["items"] if isinstance(i, dict)]
    else:
        items = project_items(db, project)
    if not items:
        raise HTTPException(status_code=400, detail="没有可审计的数据，请先提取字段")

    project.status = "auditing"
    db.commit()

    session = sessions.start_audit(
        project.id,
        project.name,
        clues,
        items,
        use_code_audit=bool(body.get("useCodeAudit")),
    )
    logger.info(f"Audit requested for project {project.id}: {len(clues)} rules, {len(items)} items")
    return {"code": 0, "data": session.to_dict(), "message": "审计已开始"}


@router.get("/projects/{project_id}/audit")
async def get_project_audit(
    project_id: str,
    sessions: AuditSessionRegistry = Depends(get_audit_sessions),
):
    session = sessions.get_session(project_id)
    if session is None:
        return {"code": 0, "data": {"projectId": project_id, "state": "idle", "isRunning": False, "results": []}}
    return {"code": 0, "data": session.to_dict()}


@router.delete("/projects/{project_id}/audit")
async def reset_project_audit(
    project_id: str,
    sessions: AuditSessionRegistry = Depends(get_audit_sessions),
):
    sessions.reset_audit(project_id)
    return {"code": 0, "message": "审计结果已清除"}


@router.post("/projects/{project_id}/audit/confirm")
async def confirm_audit_result(
    project_id: str,
    request: Request,
    db: Session = Depends(get_db),
    sessions: AuditSessionRegistry = Depends(get_audit_sessions),
):
    body = await read_json_body(request)
    rule_code = body.get("ruleCode")
    if not rule_code:
        raise HTTPException(status_code=400, detail="缺少规则编码")

    try:
        risk = sessions.confirm_result(project_id, rule_code, body.get("saveAsRisk") is not False, db)
    except AuditSessionError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "code": 0,
        "data": {"ruleCode": rule_code, "risk": risk.to_dict() if risk else None},
        "message": "已保存为风险项" if risk else "已确认",
    }


@router.get("/tasks")
async def list_tasks(
    project_id: Optional[str] = None,
    tasks: TaskRegistry = Depends(get_task_registry),
):
    items = tasks.get_project_tasks(project_id) if project_id else tasks.list_tasks()
    return {"code": 0, "data": {"tasks": items, "stats": tasks.stats()}}


@router.delete("/tasks/completed")
async def clear_completed_tasks(tasks: TaskRegistry = Depends(get_task_registry)):
    cleared = tasks.clear_completed()
    return {"code": 0, "data": {"cleared": cleared}, "message": f"已清除 {cleared} 个任务"}


@router.delete("/tasks/{task_id}")
async def remove_task(task_id: str, tasks: TaskRegistry = Depends(get_task_registry)):
    if not tasks.remove(task_id):
        raise HTTPException(status_code=404, detail="任务不存在")
    return {"code": 0, "message": "任务已删除"}


@router.post("/tasks/{task_id}/retry")
async def retry_task(
    task_id: str,
    tasks: TaskRegistry = Depends(get_task_registry),
    jobs: PipelineJobs = Depends(get_pipeline_jobs),
):
    """Reset a task to pending and re-run it when it is an extract or classify task."""
    try:
        task = tasks.retry(task_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="任务不存在")

    restarted = jobs.redispatch(task)
    if not restarted:
        logger.info(f"Task {task_id} ({task['type']}) reset without re-running")
    return {"code": 0, "data": dict(task, restarted=restarted), "message": "任务已重新排队"}
