from fastapi import APIRouter, Request, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from database import AuditRuleDB
from core.data_hub_client import DataHubClient, get_data_hub_client
from core.dependencies import get_db, read_json_body
from services.rule_sync import RuleSyncError, sync_rules

logger = logging.getLogger(__name__)

router = APIRouter()

DUPLICATE_CODE_MESSAGE = "规则编码已存在"


def _commit_rule(db: Session) -> None:
    """Commit, mapping a unique-code violation to a 400."""
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Rule code conflict: {e.orig}")
        raise HTTPException(status_code=400, detail=DUPLICATE_CODE_MESSAGE)


@router.get("/audit-rules")
async def list_rules(db: Session = Depends(get_db)):
    rows = db.query(AuditRuleDB).order_by(AuditRuleDB.category, AuditRuleDB.code).all()
    return {"code": 0, "data": [row.to_dict() for row in rows]}


@router.post("/audit-rules/sync")
async def sync_audit_rules(
    db: Session = Depends(get_db),
    hub: DataHubClient = Depends(get_data_hub_client),
):
    """Replace local rules with the data hub's rule set."""
    try:
        result = sync_rules(db, hub)
    except RuleSyncError as e:
        logger.error(f"Rule sync failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if result["total"] == 0:
        return {"code": 0, "data": result, "message": "数据中台暂无规则"}
    return {"code": 0, "data": result, "message": f"成功同步 {result['synced']} 条规则"}


@router.post("/audit-rules")
async def create_rule(request: Request, db: Session = Depends(get_db)):
    body = await read_json_body(request)
    if not body.get("code") or not body.get("name"):
        raise HTTPException(status_code=400, detail="规则编码和名称不能为空")

    rule = AuditRuleDB(
        source_id=None,
        code=body["code"],
        name=body["name"],
        description=body.get("description") or None,
        category=body.get("category") or None,
        stage=body.get("stage") or None,
        is_enabled=body.get("isEnabled") is not False,
    )
    db.add(rule)
    _commit_rule(db)
    return {"code": 0, "data": {"id": rule.id}, "message": "规则创建成功"}


@router.delete("/audit-rules/all")
async def delete_all_rules(db: Session = Depends(get_db)):
    deleted = db.query(AuditRuleDB).delete(synchronize_session=False)
    db.commit()
    logger.info(f"Deleted all {deleted} audit rules")
    return {"code": 0, "message": "已清空所有规则"}


@router.put("/audit-rules/{rule_id}")
async def update_rule(rule_id: int, request: Request, db: Session = Depends(get_db)):
    body = await read_json_body(request)
    rule = db.query(AuditRuleDB).filter(AuditRuleDB.id == rule_id).first()
    if not rule:
        raise HTTPException(status_code=404, detail="规则不存在")

    mapping = {
        "code": "code",
        "name": "name",
        "description": "description",
        "category": "category",
        "stage": "stage",
    }
    applied = 0
    for key, attribute in mapping.items():
        if key in body:
            setattr(rule, attribute, body[key])
            applied += 1
    if "isEnabled" in body:
        rule.is_enabled = bool(body["isEnabled"])
        applied += 1

    if not applied:
        raise HTTPException(status_code=400, detail="没有要更新的字段")

    _commit_rule(db)
    return {"code": 0, "message": "规则更新成功"}


@router.delete("/audit-rules/{rule_id}")
async def delete_rule(rule_id: int, db: Session = Depends(get_db)):
    deleted = db.query(AuditRuleDB).filter(AuditRuleDB.id == rule_id).delete(synchronize_session=False)
    db.commit()
    if not deleted:
        raise HTTPException(status_code=404, detail="规则不存在")
    return {"code": 0, "message": "规则删除成功"}
