"""
Audit rule synchronization from the data hub.

The local rule table is replaced wholesale: delete everything, insert the
fetched rules, commit. Any failure before the commit rolls back and leaves
the previous rules in place.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from core.data_hub_client import DataHubClient, DataHubError
from database import AuditRuleDB

logger = logging.getLogger(__name__)


class RuleSyncError(Exception):
    """Raised when rules cannot be fetched or stored."""
    pass


def map_hub_rule(rule: Dict[str, Any], synced_at: datetime) -> Dict[str, Any]:
    """Data hub rule -> audit_rules column values."""
    source_id = rule.get("id")
    return {
        "source_id": str(source_id) if source_id is not None else None,
        "code": rule.get("ruleCode"),
        "name": rule.get("ruleName"),
        "description": rule.get("problemDesc") or None,
        "category": rule.get("auditType") or None,
        "stage": rule.get("phase") or None,
        "is_enabled": rule.get("status") == 1,
        "synced_at": synced_at,
    }


def sync_rules(db: Session, hub: DataHubClient) -> Dict[str, int]:
    """
    Replace local audit rules with the data hub's.

    Returns:
        {"synced": n, "total": n}

    Raises:
        RuleSyncError: token missing, hub unreachable, or the write failed
    """
    logger.info(f"Syncing audit rules from {hub.host} (token configured: {'yes' if hub.token else 'no'})")

    try:
        rules: List[Dict[str, Any]] = hub.fetch_all_rules()
    except DataHubError as e:
        raise RuleSyncError(str(e)) from e

    logger.info(f"Fetched {len(rules)} rules from data hub")
    if not rules:
        return {"synced": 0, "total": 0}

    synced_at = datetime.utcnow()
    try:
        db.query(AuditRuleDB).delete(synchronize_session=False)
        db.bulk_insert_mappings(AuditRuleDB, [map_hub_rule(rule, synced_at) for rule in rules])
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Rule sync rolled back: {e}")
        raise RuleSyncError(f"Failed to store synced rules: {e}") from e

    logger.info(f"Synced {len(rules)} audit rules")
    return {"synced": len(rules), "total": len(rules)}
