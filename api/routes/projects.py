from fastapi import APIRouter, Request, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional, Type
from urllib.parse import quote
import logging

from database import (
    ProjectDB,
    ProjectFieldDB,
    ProjectFileDB,
    FileFieldDB,
    AuditRiskDB,
    PROJECT_STATUSES,
    FIELD_STATUSES,
    FILE_FIELD_STATUSES,
    FILE_STATUSES,
    EXTRACTION_STATUSES,
    RISK_LEVELS,
    RISK_STATUSES,
    generate_id,
)
from core.dependencies import (
    get_db,
    get_project_or_404,
    get_project_file_or_404,
    get_audit_sessions,
    get_task_registry,
    read_json_body,
)
from services.risk_report import XLSX_MEDIA_TYPE, export_risk_report, report_filename

logger = logging.getLogger(__name__)

router = APIRouter()


def _check_choice(value: Optional[str], allowed, label: str) -> None:
    if value is not None and value not in allowed:
        raise HTTPException(status_code=400, detail=f"Invalid {label}: {value}")


def _apply_updates(target, body: Dict[str, Any], mapping: Dict[str, str]) -> int:
    """Copy present request keys onto model attributes. Returns how many were applied."""
    applied = 0
    for key, attribute in mapping.items():
        if key in body:
            setattr(target, attribute, body[key])
            applied += 1
    return applied


def _evidence_columns(field: Dict[str, Any]) -> Dict[str, Any]:
    evidence = field.get("evidenceRef") or {}
    return {
        "evidence_page": evidence.get("page") or None,
        "evidence_bbox": evidence.get("bbox") or None,
    }


def upsert_field(
    db: Session,
    model: Type,
    keys: Dict[str, Any],
    field: Dict[str, Any],
    update_evidence: bool = True,
):
    """
    Insert or update one field row identified by `keys` plus the field code.

    Updates default the status to "modified", inserts default it to "auto".
    """
    field_code = field.get("fieldCode")
    if not field_code:
        raise HTTPException(status_code=400, detail="fieldCode is required")

    row = db.query(model).filter_by(field_code=field_code, **keys).first()
    if row:
        row.field_value = field.get("value")
        row.status = field.get("status") or "modified"
        if update_evidence:
            for attribute, value in _evidence_columns(field).items():
                setattr(row, attribute, value)
    else:
        row = model(
            field_code=field_code,
            field_name=field.get("fieldName") or field_code,
            field_value=field.get("value"),
            status=field.get("status") or "auto",
            group_name=field.get("groupName") or None,
            **keys,
            **_evidence_columns(field),
        )
        db.add(row)
    db.flush()
    return row


# =============== Projects ===============

@router.get("/projects")
async def list_projects(db: Session = Depends(get_db)):
    """List projects, newest first, with file and pending-risk counts."""
    file_count = (
        select(func.count(ProjectFileDB.id))
        .where(ProjectFileDB.project_id == ProjectDB.id)
        .correlate(ProjectDB)
        .scalar_subquery()
    )
    risk_count = (
        select(func.count(AuditRiskDB.id))
        .where(AuditRiskDB.project_id == ProjectDB.id, AuditRiskDB.status == "pending")
        .correlate(ProjectDB)
        .scalar_subquery()
    )
    rows = (
        db.query(ProjectDB, file_count.label("file_count"), risk_count.label("risk_count"))
        .order_by(ProjectDB.created_at.desc())
        .all()
    )

    data = []
    for project, files, risks in rows:
        item = project.to_dict()
        item["fileCount"] = files or 0
        item["riskCount"] = risks or 0
        data.append(item)
    return {"code": 0, "data": data}


@router.get("/projects/{project_id}")
async def get_project(project: ProjectDB = Depends(get_project_or_404)):
    return {"code": 0, "data": project.to_dict()}


@router.post("/projects")
async def create_project(request: Request, db: Session = Depends(get_db)):
    """Create a project, optionally with its tender fields, in one transaction."""
    body = await read_json_body(request)
    name = body.get("name")
    if not name:
        raise HTTPException(status_code=400, detail="项目名称不能为空")

    project = ProjectDB(
        id=generate_id("proj"),
        name=name,
        tender_file_id=body.get("tenderFileId") or None,
        tender_ds_id=body.get("tenderDsId") or None,
        tender_file_url=body.get("tenderFileUrl") or None,
    )
    try:
        db.add(project)
        db.flush()
        for field in body.get("fields") or []:
            upsert_field(db, ProjectFieldDB, {"project_id": project.id}, field)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Created project {project.id} ({name})")
    return {"code": 0, "data": {"id": project.id, "name": name}, "message": "项目创建成功"}


@router.put("/projects/{project_id}")
async def update_project(
    request: Request,
    project: ProjectDB = Depends(get_project_or_404),
    db: Session = Depends(get_db),
):
    body = await read_json_body(request)
    _check_choice(body.get("status"), PROJECT_STATUSES, "project status")

    applied = _apply_updates(project, body, {
        "name": "name",
        "status": "status",
        "tenderFileId": "tender_file_id",
        "tenderDsId": "tender_ds_id",
        "tenderFileUrl": "tender_file_url",
    })
    if not applied:
        raise HTTPException(status_code=400, detail="没有要更新的字段")

    db.commit()
    return {"code": 0, "message": "更新成功"}


@router.delete("/projects/{project_id}")
async def delete_project(
    project: ProjectDB = Depends(get_project_or_404),
    db: Session = Depends(get_db),
    sessions=Depends(get_audit_sessions),
    tasks=Depends(get_task_registry),
):
    """Delete a project and, through the cascades, every row that references it."""
    project_id = project.id
    db.delete(project)
    db.commit()

    sessions.reset_audit(project_id)
    tasks.remove_project_tasks(project_id)

    logger.info(f"Deleted project {project_id}")
    return {"code": 0, "message": "项目删除成功"}


# =============== Project fields ===============

@router.get("/projects/{project_id}/fields")
async def list_project_fields(project_id: str, db: Session = Depends(get_db)):
    rows = (
        db.query(ProjectFieldDB)
        .filter(ProjectFieldDB.project_id == project_id)
        .order_by(ProjectFieldDB.id)
        .all()
    )
    return {"code": 0, "data": [row.to_dict() for row in rows]}


@router.put("/projects/{project_id}/fields/{field_code}")
async def update_project_field(
    field_code: str,
    request: Request,
    project: ProjectDB = Depends(get_project_or_404),
    db: Session = Depends(get_db),
):
    """Upsert a single tender field."""
    body = await read_json_body(request)
    _check_choice(body.get("status"), FIELD_STATUSES, "field status")

    body["fieldCode"] = field_code
    upsert_field(db, ProjectFieldDB, {"project_id": project.id}, body, update_evidence=False)
    db.commit()
    return {"code": 0, "message": "更新成功"}


# =============== Project files ===============

@router.get("/projects/{project_id}/files")
async def list_project_files(project_id: str, db: Session = Depends(get_db)):
    rows = (
        db.query(ProjectFileDB)
        .filter(ProjectFileDB.project_id == project_id)
        .order_by(ProjectFileDB.created_at)
        .all()
    )
    return {"code": 0, "data": [row.to_dict() for row in rows]}


@router.post("/projects/{project_id}/files")
async def add_project_file(
    request: Request,
    project: ProjectDB = Depends(get_project_or_404),
    db: Session = Depends(get_db),
):
    body = await read_json_body(request)
    if not body.get("fileName"):
        raise HTTPException(status_code=400, detail="文件名不能为空")
    _check_choice(body.get("status"), FILE_STATUSES, "file status")

    project_file = ProjectFileDB(
        id=generate_id("file"),
        project_id=project.id,
        file_name=body["fileName"],
        file_size=body.get("fileSize"),
        mime_type=body.get("mimeType"),
        file_id=body.get("fileId"),
        ds_id=body.get("dsId"),
        doc_type_code=body.get("docTypeCode"),
        doc_type_name=body.get("docTypeName"),
        is_tender=bool(body.get("isTender")),
        status=body.get("status") or "pending",
    )
    db.add(project_file)
    db.commit()
    return {"code": 0, "data": {"id": project_file.id}, "message": "文件添加成功"}


@router.put("/projects/{project_id}/files/{file_id}")
async def update_project_file(
    project_id: str,
    file_id: str,
    request: Request,
    db: Session = Depends(get_db),
):
    body = await read_json_body(request)
    project_file = get_project_file_or_404(db, project_id, file_id)

    updates = {k: v for k, v in body.items() if k in ("docTypeCode", "docTypeName")}
    # Empty status values are ignored rather than cleared
    for key in ("status", "extractionStatus"):
        if body.get(key):
            updates[key] = body[key]
    _check_choice(updates.get("status"), FILE_STATUSES, "file status")
    _check_choice(updates.get("extractionStatus"), EXTRACTION_STATUSES, "extraction status")

    applied = _apply_updates(project_file, updates, {
        "docTypeCode": "doc_type_code",
        "docTypeName": "doc_type_name",
        "status": "status",
        "extractionStatus": "extraction_status",
    })
    if not applied:
        raise HTTPException(status_code=400, detail="没有要更新的字段")

    db.commit()
    return {"code": 0, "message": "更新成功"}


@router.delete("/projects/{project_id}/files/{file_id}")
async def delete_project_file(project_id: str, file_id: str, db: Session = Depends(get_db)):
    project_file = get_project_file_or_404(db, project_id, file_id)
    db.delete(project_file)
    db.commit()
    logger.info(f"Deleted file {file_id} from project {project_id}")
    return {"code": 0, "message": "文件删除成功"}


# =============== File fields ===============

@router.get("/projects/{project_id}/all-fields")
async def list_all_file_fields(project_id: str, db: Session = Depends(get_db)):
    """Every file's fields, tender file first; used to assemble audit items."""
    rows = (
        db.query(FileFieldDB, ProjectFileDB)
        .join(ProjectFileDB, FileFieldDB.file_id == ProjectFileDB.id)
        .filter(FileFieldDB.project_id == project_id)
        .order_by(ProjectFileDB.is_tender.desc(), ProjectFileDB.created_at, FileFieldDB.id)
        .all()
    )
    logger.info(f"Found {len(rows)} file fields for project {project_id}")

    data = []
    for field, project_file in rows:
        item = field.to_dict()
        item.update({
            "fileId": field.file_id,
            "fileName": project_file.file_name,
            "docTypeName": project_file.doc_type_name,
            "isTender": bool(project_file.is_tender),
        })
        data.append(item)
    return {"code": 0, "data": data}


@router.get("/projects/{project_id}/files/{file_id}/fields")
async def list_file_fields(project_id: str, file_id: str, db: Session = Depends(get_db)):
    rows = (
        db.query(FileFieldDB)
        .filter(FileFieldDB.project_id == project_id, FileFieldDB.file_id == file_id)
        .order_by(FileFieldDB.id)
        .all()
    )
    return {"code": 0, "data": [row.to_dict() for row in rows]}


def save_file_fields(db: Session, project_id: str, file_id: str, fields: List[Dict[str, Any]]) -> int:
    """Upsert a batch of file fields in one transaction; re-saving never duplicates rows."""
    try:
        for field in fields:
            _check_choice(field.get("status"), FILE_FIELD_STATUSES, "field status")
            upsert_field(db, FileFieldDB, {"project_id": project_id, "file_id": file_id}, field)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return len(fields)


@router.put("/projects/{project_id}/files/{file_id}/fields")
async def update_file_fields(
    project_id: str,
    file_id: str,
    request: Request,
    db: Session = Depends(get_db),
):
    body = await read_json_body(request)
    fields = body.get("fields")
    if not isinstance(fields, list):
        raise HTTPException(status_code=400, detail="字段数据无效")

    get_project_file_or_404(db, project_id, file_id)
    count = save_file_fields(db, project_id, file_id, fields)
    logger.info(f"Saved {count} fields for file {file_id} in project {project_id}")
    return {"code": 0, "message": "字段更新成功"}


# =============== Audit risks ===============

@router.get("/projects/{project_id}/risks")
async def list_risks(project_id: str, db: Session = Depends(get_db)):
    rows = (
        db.query(AuditRiskDB)
        .filter(AuditRiskDB.project_id == project_id)
        .order_by(AuditRiskDB.created_at.desc(), AuditRiskDB.id.desc())
        .all()
    )
    return {"code": 0, "data": [row.to_dict() for row in rows]}


@router.get("/projects/{project_id}/risks/export")
async def export_risks(project: ProjectDB = Depends(get_project_or_404), db: Session = Depends(get_db)):
    """Download the project's risks as an Excel workbook."""
    risks = (
        db.query(AuditRiskDB)
        .filter(AuditRiskDB.project_id == project.id)
        .order_by(AuditRiskDB.created_at.desc(), AuditRiskDB.id.desc())
        .all()
    )
    buffer = export_risk_report(project, risks)
    filename = report_filename(project)
    response_headers = {
        "Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"
    }
    return StreamingResponse(buffer, media_type=XLSX_MEDIA_TYPE, headers=response_headers)


@router.post("/projects/{project_id}/risks")
async def add_risk(
    request: Request,
    project: ProjectDB = Depends(get_project_or_404),
    db: Session = Depends(get_db),
):
    body = await read_json_body(request)
    if not body.get("description"):
        raise HTTPException(status_code=400, detail="风险描述不能为空")
    _check_choice(body.get("riskLevel"), RISK_LEVELS, "risk level")

    risk = AuditRiskDB(
        project_id=project.id,
        rule_code=body.get("ruleCode") or None,
        rule_name=body.get("ruleName") or None,
        risk_level=body.get("riskLevel") or "medium",
        description=body["description"],
        suggestion=body.get("suggestion") or None,
        evidence=body.get("evidence") or None,
        status="pending",
    )
    db.add(risk)
    db.commit()
    return {"code": 0, "data": {"id": risk.id}, "message": "风险添加成功"}


@router.put("/projects/{project_id}/risks/{risk_id}")
async def update_risk(project_id: str, risk_id: int, request: Request, db: Session = Depends(get_db)):
    body = await read_json_body(request)
    _check_choice(body.get("status"), RISK_STATUSES, "risk status")
    _check_choice(body.get("riskLevel"), RISK_LEVELS, "risk level")

    risk = db.query(AuditRiskDB).filter(AuditRiskDB.id == risk_id, AuditRiskDB.project_id == project_id).first()
    if not risk:
        raise HTTPException(status_code=404, detail="风险不存在")

    applied = _apply_updates(risk, body, {
        "status": "status",
        "description": "description",
        "suggestion": "suggestion",
        "riskLevel": "risk_level",
    })
    if not applied:
        raise HTTPException(status_code=400, detail="没有要更新的字段")

    db.commit()
    return {"code": 0, "message": "更新成功"}


@router.delete("/projects/{project_id}/risks/{risk_id}")
async def delete_risk(project_id: str, risk_id: int, db: Session = Depends(get_db)):
    deleted = (
        db.query(AuditRiskDB)
        .filter(AuditRiskDB.id == risk_id, AuditRiskDB.project_id == project_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    if not deleted:
        raise HTTPException(status_code=404, detail="风险不存在")
    return {"code": 0, "message": "风险删除成功"}
