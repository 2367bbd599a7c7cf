from fastapi import APIRouter, Request, Depends, HTTPException, File, Form, UploadFile
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import List
import logging

from database import ProjectDB, ProjectFileDB, generate_id
from core.agent_client import AgentClient, AgentServiceError
from core.data_hub_client import DataHubClient, DataHubError, get_data_hub_client
from core.dependencies import (
    get_db,
    get_agent,
    get_project_or_404,
    get_project_file_or_404,
    get_task_registry,
    read_json_body,
)
from services.document_pipeline.extractor import FieldDefinition
from services.document_pipeline.jobs import PipelineJobs, get_pipeline_jobs

logger = logging.getLogger(__name__)

router = APIRouter()


def _is_truthy(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@router.post("/projects/{project_id}/files/upload")
async def upload_project_file(
    file: UploadFile = File(...),
    is_tender: str = Form("false", alias="isTender"),
    project: ProjectDB = Depends(get_project_or_404),
    db: Session = Depends(get_db),
    client: AgentClient = Depends(get_agent),
    tasks=Depends(get_task_registry),
):
    """
    Upload a document to the agent platform and register it in the knowledge base.

    Indexing continues on the platform; poll parsing-status or start an
    extraction, which waits for it.
    """
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="文件为空")

    tender = _is_truthy(is_tender)
    task_id = tasks.add(
        project_id=project.id,
        project_name=project.name,
        task_type="upload",
        status="running",
        message=f"上传 {file.filename}...",
        fileName=file.filename,
    )

    try:
        indexed = await run_in_threadpool(client.upload_and_index, content, file.filename)
    except AgentServiceError as e:
        tasks.update(task_id, status="failed", error=str(e))
        logger.error(f"Upload of {file.filename} failed: {e}")
        raise HTTPException(status_code=500, detail=f"文件上传失败: {e}")

    project_file = ProjectFileDB(
        id=generate_id("file"),
        project_id=project.id,
        file_name=file.filename,
        file_size=len(content),
        mime_type=file.content_type,
        file_id=indexed.file_id,
        ds_id=indexed.ds_id,
        is_tender=tender,
        status="pending",
    )
    try:
        db.add(project_file)
        if tender:
            project.tender_file_id = indexed.file_id
            project.tender_ds_id = indexed.ds_id
            project.tender_file_url = indexed.file_url
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        tasks.update(task_id, status="failed", error=str(e))
        logger.error(f"Saving uploaded file {file.filename} failed: {e}")
        raise HTTPException(status_code=500, detail="文件保存失败")

    tasks.update(task_id, status="completed", progress=100, message="上传完成", fileId=project_file.id)
    data = project_file.to_dict()
    data["fileUrl"] = indexed.file_url
    data["taskId"] = task_id
    return {"code": 0, "data": data, "message": "文件上传成功"}


@router.get("/projects/{project_id}/files/{file_id}/parsing-status")
async def get_parsing_status(
    project_id: str,
    file_id: str,
    db: Session = Depends(get_db),
    client: AgentClient = Depends(get_agent),
):
    project_file = get_project_file_or_404(db, project_id, file_id)
    if not project_file.ds_id:
        raise HTTPException(status_code=400, detail="文件尚未加入知识库")

    try:
        status = await run_in_threadpool(client.check_parsing_status, project_file.ds_id)
    except AgentServiceError as e:
        raise HTTPException(status_code=500, detail=f"查询解析状态失败: {e}")
    return {"code": 0, "data": status.to_dict()}


def _load_definitions(body: dict, project_file: ProjectFileDB, hub: DataHubClient) -> List[FieldDefinition]:
    fields = body.get("fields")
    if fields is not None:
        if not isinstance(fields, list):
            raise HTTPException(status_code=400, detail="字段数据无效")
        return [FieldDefinition.from_dict(f) for f in fields if isinstance(f, dict)]

    if not project_file.is_tender:
        raise HTTPException(status_code=400, detail="非招标文件需要提供字段定义")

    try:
        return [FieldDefinition.from_dict(f) for f in hub.get_tender_field_definitions()]
    except DataHubError as e:
        raise HTTPException(status_code=500, detail=f"获取字段定义失败: {e}")


@router.post("/projects/{project_id}/files/{file_id}/extract")
async def extract_file_fields(
    project_id: str,
    file_id: str,
    request: Request,
    db: Session = Depends(get_db),
    hub: DataHubClient = Depends(get_data_hub_client),
    jobs: PipelineJobs = Depends(get_pipeline_jobs),
):
    """
    Extract fields from an uploaded file.

    Body: {"fields": [...definitions]} (tender files default to the data hub's
    tender field set) and optionally {"background": false} to wait for results.
    """
    body = await read_json_body(request)
    project_file = get_project_file_or_404(db, project_id, file_id)
    if not project_file.file_id:
        raise HTTPException(status_code=400, detail="文件尚未上传到智能体平台")

    definitions = await run_in_threadpool(_load_definitions, body, project_file, hub)
    if not definitions:
        raise HTTPException(status_code=400, detail="没有要提取的字段")

    project = project_file.project
    if body.get("background", True):
        task_id = jobs.start_extraction(project_file, definitions, project.name)
        return {"code": 0, "data": {"taskId": task_id}, "message": "提取任务已开始"}

    task_id = jobs.tasks.add(
        project_id=project.id,
        project_name=project.name,
        task_type="extract",
        status="running",
        fileName=project_file.file_name,
        fileId=project_file.id,
        fields=[d.to_dict() for d in definitions],
    )
    try:
        results = await run_in_threadpool(jobs.run_extraction, project_file.id, definitions, task_id)
    except AgentServiceError as e:
        raise HTTPException(status_code=500, detail=f"字段提取失败: {e}")
    return {"code": 0, "data": {"taskId": task_id, "fields": [r.to_dict() for r in results]}}


@router.post("/projects/{project_id}/files/{file_id}/classify")
async def classify_project_file(
    project_id: str,
    file_id: str,
    request: Request,
    db: Session = Depends(get_db),
    jobs: PipelineJobs = Depends(get_pipeline_jobs),
):
    body = await read_json_body(request)
    project_file = get_project_file_or_404(db, project_id, file_id)
    if not project_file.file_id:
        raise HTTPException(status_code=400, detail="文件尚未上传到智能体平台")

    project = project_file.project
    if body.get("background", True):
        task_id = jobs.start_classification(project_file, project.name)
        return {"code": 0, "data": {"taskId": task_id}, "message": "分拣任务已开始"}

    task_id = jobs.tasks.add(
        project_id=project.id,
        project_name=project.name,
        task_type="classify",
        status="running",
        fileName=project_file.file_name,
        fileId=project_file.id,
    )
    try:
        result = await run_in_threadpool(jobs.run_classification, project_file.id, task_id)
    except AgentServiceError as e:
        raise HTTPException(status_code=500, detail=f"文件分拣失败: {e}")
    return {"code": 0, "data": dict(result.to_dict(), taskId=task_id)}
