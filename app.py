"""
FastAPI backend for the bid document audit service.

MODULE STRUCTURE:
=================
1. core/agent_client.py       - Agent platform client (upload, knowledge base, chat)
2. core/response_normalizer.py - Turns agent replies into field values
3. core/data_hub_client.py    - Data hub client (audit rules, document types)
4. services/document_pipeline - Field extraction and document classification
5. services/audit             - Audit agent, per-project audit sessions, task list
6. api/routes/*               - REST endpoints, all mounted under /api/app

Every response uses the envelope {"code": 0, "data": ..., "message": ...};
errors carry the HTTP status as code.
"""

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from datetime import datetime
import os
import time
import logging

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from database import SessionLocal, ProjectDB, create_tables

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("redis").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/app"

# Initialize FastAPI app
app = FastAPI(title="Bid Audit", description="Bid document extraction and compliance audit service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.time()
    response = await call_next(request)
    elapsed_ms = (time.time() - started) * 1000
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms)")
    return response


# Startup event to initialize database tables
@app.on_event("startup")
async def startup_event():
    """Initialize database tables and drop tasks whose project is gone."""
    try:
        logger.info("Application startup: Ensuring database tables exist...")
        create_tables()
    except Exception as e:
        logger.error(f"Failed to initialize database tables on startup: {e}")
        return

    from services.audit.task_registry import task_registry

    db = SessionLocal()
    try:
        project_ids = [project_id for (project_id,) in db.query(ProjectDB.id).all()]
        removed = task_registry.cleanup_orphans(project_ids)
        if removed:
            logger.info(f"Removed {removed} tasks of deleted projects")
    finally:
        db.close()


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render every HTTP error in the response envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.status_code, "message": str(exc.detail)},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "; ".join(f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in errors)
    return JSONResponse(status_code=400, content={"code": 400, "message": message or "Invalid request"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"code": 500, "message": str(exc) or "Internal server error"})


# Import and mount API routers
from api.routes import audit_rules as audit_rules_router
from api.routes import projects as projects_router
from api.routes import pipeline as pipeline_router
from api.routes import audits as audits_router
app.include_router(audit_rules_router.router, prefix=API_PREFIX)
app.include_router(projects_router.router, prefix=API_PREFIX)
app.include_router(pipeline_router.router, prefix=API_PREFIX)
app.include_router(audits_router.router, prefix=API_PREFIX)


@app.get(f"{API_PREFIX}/health")
async def health_check():
    return {"code": 0, "data": {"status": "ok", "time": datetime.now().isoformat()}}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
