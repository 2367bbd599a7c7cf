"""
Background pipeline jobs: wait for indexing, then extract or classify.

Each job runs on a daemon thread with its own database session and reports
through the task list. A failing job marks both its task and the file's
extraction status as failed; nothing is retried automatically.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from core.agent_client import AgentClient
from database import FileFieldDB, ProjectFieldDB, ProjectFileDB, SessionLocal
from services.audit.task_registry import TaskRegistry
from services.document_pipeline.classifier import ClassificationResult, DocumentClassifier
from services.document_pipeline.extractor import ExtractionResult, FieldDefinition, FieldExtractor

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def _upsert_results(db: Session, model, keys: Dict[str, str], results: List[ExtractionResult]) -> None:
    for result in results:
        row = db.query(model).filter_by(field_code=result.field_code, **keys).first()
        page = (result.evidence or {}).get("page") or None
        if row is None:
            row = model(field_code=result.field_code, field_name=result.field_name, **keys)
            db.add(row)
        row.field_value = result.value
        row.status = result.status
        row.group_name = result.group_name or row.group_name
        row.evidence_page = page
        db.flush()


def store_extraction(db: Session, project_file: ProjectFileDB, results: List[ExtractionResult]) -> None:
    """Persist extracted values for the file; tender files also fill the project's fields."""
    _upsert_results(db, FileFieldDB, {"project_id": project_file.project_id, "file_id": project_file.id}, results)
    if project_file.is_tender:
        _upsert_results(db, ProjectFieldDB, {"project_id": project_file.project_id}, results)
    project_file.extraction_status = "completed"
    db.commit()


def store_classification(db: Session, project_file: ProjectFileDB, result: ClassificationResult) -> None:
    project_file.doc_type_code = result.doc_type_code
    project_file.doc_type_name = result.doc_type_name
    if result.doc_type_name:
        project_file.status = "classified"
    db.commit()


class PipelineJobs:
    """Starts extraction/classification jobs for files already uploaded to the platform."""

    def __init__(self, client: AgentClient, tasks: TaskRegistry, session_factory: SessionFactory = SessionLocal):
        self.client = client
        self.tasks = tasks
        self.session_factory = session_factory

    def _load(self, db: Session, file_row_id: str) -> ProjectFileDB:
        project_file = db.query(ProjectFileDB).filter(ProjectFileDB.id == file_row_id).first()
        if project_file is None:
            raise LookupError(f"File {file_row_id} no longer exists")
        return project_file

    def _wait_for_index(self, project_file: ProjectFileDB) -> None:
        if project_file.ds_id:
            self.client.wait_for_parsing(project_file.ds_id)

    def run_extraction(self, file_row_id: str, definitions: List[FieldDefinition], task_id: str) -> List[ExtractionResult]:
        db = self.session_factory()
        try:
            project_file = self._load(db, file_row_id)
            project_file.extraction_status = "processing"
            db.commit()

            self.tasks.update(task_id, status="running", progress=10, message="等待文档解析...")
            self._wait_for_index(project_file)

            self.tasks.update(task_id, progress=30, message=f"提取 {len(definitions)} 个字段...")
            results = FieldExtractor(self.client).batch_extract(project_file.file_id, definitions)
            store_extraction(db, project_file, results)

            found = sum(1 for r in results if r.value is not None)
            self.tasks.update(task_id, status="completed", progress=100, message=f"提取完成，{found}/{len(results)} 个字段有值")
            logger.info(f"Extraction finished for file {file_row_id}: {found}/{len(results)} fields")
            return results

        except Exception as e:
            db.rollback()
            self._mark_failed(db, file_row_id)
            self.tasks.update(task_id, status="failed", error=str(e))
            raise

        finally:
            db.close()

    def run_classification(self, file_row_id: str, task_id: str) -> ClassificationResult:
        db = self.session_factory()
        try:
            project_file = self._load(db, file_row_id)
            self.tasks.update(task_id, status="running", progress=10, message="等待文档解析...")
            self._wait_for_index(project_file)

            self.tasks.update(task_id, progress=50, message="智能分拣中...")
            result = DocumentClassifier(self.client).classify_file(project_file.file_id, project_file.file_name)
            result.ds_id = project_file.ds_id
            store_classification(db, project_file, result)

            self.tasks.update(task_id, status="completed", progress=100, message=f"分类结果: {result.doc_type_name or '未识别'}")
            return result

        except Exception as e:
            db.rollback()
            self.tasks.update(task_id, status="failed", error=str(e))
            raise

        finally:
            db.close()

    def _mark_failed(self, db: Session, file_row_id: str) -> None:
        project_file = db.query(ProjectFileDB).filter(ProjectFileDB.id == file_row_id).first()
        if project_file is not None:
            project_file.extraction_status = "failed"
            db.commit()

    def _start(self, target, args, name: str) -> threading.Thread:
        def _run():
            try:
                target(*args)
            except Exception as e:
                logger.error(f"{name} failed: {e}")

        thread = threading.Thread(target=_run, name=name, daemon=True)
        thread.start()
        return thread

    def start_extraction(
        self,
        project_file: ProjectFileDB,
        definitions: List[FieldDefinition],
        project_name: str = "",
    ) -> str:
        task_id = self.tasks.add(
            project_id=project_file.project_id,
            project_name=project_name,
            task_type="extract",
            status="pending",
            message="等待提取...",
            fileName=project_file.file_name,
            fileId=project_file.id,
            fields=[d.to_dict() for d in definitions],
        )
        self._start(self.run_extraction, (project_file.id, definitions, task_id), f"ExtractWorker-{project_file.id}")
        logger.info(f"Started extraction of {len(definitions)} fields for file {project_file.id}")
        return task_id

    def start_classification(self, project_file: ProjectFileDB, project_name: str = "") -> str:
        task_id = self.tasks.add(
            project_id=project_file.project_id,
            project_name=project_name,
            task_type="classify",
            status="pending",
            message="等待分拣...",
            fileName=project_file.file_name,
            fileId=project_file.id,
        )
        self._start(self.run_classification, (project_file.id, task_id), f"ClassifyWorker-{project_file.id}")
        return task_id

    def redispatch(self, task: Dict) -> bool:
        """Re-run an extract/classify task under the same task id. Other task types are not re-runnable."""
        file_row_id = task.get("fileId")
        if not file_row_id:
            return False

        if task["type"] == "extract":
            definitions = [FieldDefinition.from_dict(f) for f in task.get("fields") or []]
            self._start(self.run_extraction, (file_row_id, definitions, task["id"]), f"ExtractWorker-{file_row_id}")
            return True
        if task["type"] == "classify":
            self._start(self.run_classification, (file_row_id, task["id"]), f"ClassifyWorker-{file_row_id}")
            return True
        return False


_jobs: Optional[PipelineJobs] = None


def get_pipeline_jobs() -> PipelineJobs:
    """Shared job runner (FastAPI dependency)."""
    global _jobs
    if _jobs is None:
        from core.agent_client import get_agent_client
        from services.audit.task_registry import task_registry
        _jobs = PipelineJobs(get_agent_client(), task_registry)
    return _jobs
