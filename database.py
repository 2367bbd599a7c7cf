import os
import time
import uuid
from datetime import datetime
from typing import Dict, Any, Optional
from sqlalchemy import create_engine, event, Column, String, Integer, BigInteger, DateTime, Boolean, Text, ForeignKey, UniqueConstraint, JSON
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, relationship
from sqlalchemy.engine import make_url
from sqlalchemy.pool import StaticPool
import logging

logger = logging.getLogger(__name__)


def _build_mysql_url() -> str:
    """Assemble the MySQL URL from the DB_* environment variables."""
    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "3306")
    user = os.getenv("DB_USER", "root")
    password = os.getenv("DB_PASSWORD", "root123")
    name = os.getenv("DB_NAME", "audit_app")
    return f"mysql+pymysql://{user}:{password}@{host}:{port}/{name}?charset=utf8mb4"


def _normalize_database_url(url: str) -> str:
    """Normalize DATABASE_URL for SQLAlchemy compatibility."""
    if url.startswith("mysql://"):
        url = url.replace("mysql://", "mysql+pymysql://", 1)
    return url


# Database configuration
DATABASE_URL = _normalize_database_url(os.getenv("DATABASE_URL") or _build_mysql_url())
database_url = make_url(DATABASE_URL)

# Connection pooling configuration
engine_kwargs: Dict[str, Any] = {
    "pool_pre_ping": True,
}

if database_url.get_backend_name() == "sqlite":
    engine_kwargs.update(
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    engine_kwargs.update(
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "5")),
        pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
    )

engine = create_engine(DATABASE_URL, **engine_kwargs)


if database_url.get_backend_name() == "sqlite":
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

MYSQL_TABLE_ARGS = {"mysql_engine": "InnoDB", "mysql_charset": "utf8mb4"}

PROJECT_STATUSES = ("uploading", "extracting", "auditing", "completed", "draft", "parsing", "confirming", "ready")
FIELD_STATUSES = ("auto", "confirmed", "modified", "missing")
FILE_FIELD_STATUSES = FIELD_STATUSES + ("pending",)
FILE_STATUSES = ("pending", "classified", "confirmed")
EXTRACTION_STATUSES = ("pending", "processing", "completed", "failed")
RISK_LEVELS = ("critical", "high", "medium", "low", "info")
RISK_STATUSES = ("pending", "confirmed", "ignored", "resolved")


def generate_id(prefix: str) -> str:
    """Generate ids in the `<prefix>-<epoch ms>-<random>` format."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _evidence_ref(page: Optional[int], bbox: Any) -> Optional[Dict[str, Any]]:
    if not page:
        return None
    return {"page": page, "bbox": bbox}


class ProjectDB(Base):
    """An audit project; owns every file, field and risk row."""

    __tablename__ = "projects"

    id = Column(String(64), primary_key=True, default=lambda: generate_id("proj"))
    name = Column(String(255), nullable=False)
    status = Column(String(32), default="uploading", index=True)
    tender_file_id = Column(String(64))
    tender_ds_id = Column(Integer)
    tender_file_url = Column(String(512))

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    fields = relationship("ProjectFieldDB", back_populates="project", cascade="all, delete-orphan", passive_deletes=True)
    files = relationship("ProjectFileDB", back_populates="project", cascade="all, delete-orphan", passive_deletes=True)
    file_fields = relationship("FileFieldDB", back_populates="project", cascade="all, delete-orphan", passive_deletes=True)
    risks = relationship("AuditRiskDB", back_populates="project", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (MYSQL_TABLE_ARGS,)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "tenderFileId": self.tender_file_id,
            "tenderDsId": self.tender_ds_id,
            "tenderFileUrl": self.tender_file_url,
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }


class ProjectFieldDB(Base):
    """Key/value extracted from the project's tender document."""

    __tablename__ = "project_fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(64), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    field_code = Column(String(64), nullable=False)
    field_name = Column(String(128), nullable=False)
    field_value = Column(Text)
    status = Column(String(16), default="auto")
    group_name = Column(String(64))
    evidence_page = Column(Integer)
    evidence_bbox = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    project = relationship("ProjectDB", back_populates="fields")

    __table_args__ = (
        UniqueConstraint("project_id", "field_code", name="uk_project_field"),
        MYSQL_TABLE_ARGS,
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fieldCode": self.field_code,
            "fieldName": self.field_name,
            "value": self.field_value,
            "status": self.status,
            "groupName": self.group_name,
            "evidenceRef": _evidence_ref(self.evidence_page, self.evidence_bbox),
        }


class ProjectFileDB(Base):
    """Any document uploaded to a project, the tender file included."""

    __tablename__ = "project_files"

    id = Column(String(64), primary_key=True, default=lambda: generate_id("file"))
    project_id = Column(String(64), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    file_size = Column(BigInteger)
    mime_type = Column(String(64))
    file_id = Column(String(64))  # Agent platform file id
    ds_id = Column(Integer)  # Knowledge-base dataset id
    doc_type_code = Column(String(64))
    doc_type_name = Column(String(128))
    is_tender = Column(Boolean, default=False, index=True)
    status = Column(String(16), default="pending", index=True)
    extraction_status = Column(String(16), default="pending")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    project = relationship("ProjectDB", back_populates="files")
    fields = relationship("FileFieldDB", back_populates="file", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (MYSQL_TABLE_ARGS,)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "fileId": self.file_id,
            "dsId": self.ds_id,
            "docTypeCode": self.doc_type_code,
            "docTypeName": self.doc_type_name,
            "isTender": bool(self.is_tender),
            "status": self.status,
            "extractionStatus": self.extraction_status,
            "createdAt": _isoformat(self.created_at),
        }


class FileFieldDB(Base):
    """Key/value extracted from a specific project file."""

    __tablename__ = "file_fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    file_id = Column(String(64), ForeignKey("project_files.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(String(64), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    field_code = Column(String(64), nullable=False)
    field_name = Column(String(128), nullable=False)
    field_value = Column(Text)
    status = Column(String(16), default="auto")
    group_name = Column(String(64))
    evidence_page = Column(Integer)
    evidence_bbox = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    file = relationship("ProjectFileDB", back_populates="fields")
    project = relationship("ProjectDB", back_populates="file_fields")

    __table_args__ = (
        UniqueConstraint("file_id", "field_code", name="uk_file_field"),
        MYSQL_TABLE_ARGS,
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fieldCode": self.field_code,
            "fieldName": self.field_name,
            "value": self.field_value,
            "status": self.status,
            "groupName": self.group_name,
            "evidenceRef": _evidence_ref(self.evidence_page, self.evidence_bbox),
        }


class AuditRiskDB(Base):
    """A user-confirmed audit finding."""

    __tablename__ = "audit_risks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(64), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    rule_code = Column(String(64))
    rule_name = Column(String(255))
    risk_level = Column(String(32), default="medium", index=True)
    description = Column(Text)
    suggestion = Column(Text)
    status = Column(String(32), default="pending", index=True)
    evidence = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    project = relationship("ProjectDB", back_populates="risks")

    __table_args__ = (MYSQL_TABLE_ARGS,)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "ruleCode": self.rule_code,
            "ruleName": self.rule_name,
            "riskLevel": self.risk_level,
            "description": self.description,
            "suggestion": self.suggestion,
            "evidence": self.evidence,
            "status": self.status,
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }


class AuditRuleDB(Base):
    """Audit rule, synced from the data hub (source_id set) or created locally."""

    __tablename__ = "audit_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(String(64), nullable=True, default=None)
    code = Column(String(64), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    category = Column(String(64), index=True)
    stage = Column(String(64))
    is_enabled = Column(Boolean, default=True)
    synced_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (MYSQL_TABLE_ARGS,)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sourceId": self.source_id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "stage": self.stage,
            "isEnabled": bool(self.is_enabled),
            "syncedAt": _isoformat(self.synced_at),
            "createdAt": _isoformat(self.created_at),
        }


def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all database tables."""
    Base.metadata.create_all(bind=engine)
    logger.info("Tables ready: %s", ", ".join(sorted(Base.metadata.tables)))
