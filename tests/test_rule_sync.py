from datetime import datetime

import pytest

from core.data_hub_client import DataHubError
from database import AuditRuleDB
from services.rule_sync import RuleSyncError, map_hub_rule, sync_rules


class StubHub:
    host = "http://hub.test"

    def __init__(self, rules=None, error=None, token="t"):
        self.rules = rules or []
        self.error = error
        self.token = token

    def fetch_all_rules(self):
        if self.error is not None:
            raise self.error
        return self.rules


def hub_rule(rule_id, code, status=1, **extra):
    rule = {
        "id": rule_id,
        "ruleCode": code,
        "ruleName": f"规则{code}",
        "problemDesc": "描述",
        "auditType": "合规性",
        "phase": "投标",
        "status": status,
    }
    rule.update(extra)
    return rule


@pytest.fixture
def existing_rules(db):
    db.add_all([
        AuditRuleDB(code="OLD1", name="旧规则1"),
        AuditRuleDB(code="OLD2", name="旧规则2"),
    ])
    db.commit()


def rule_codes(db):
    return sorted(code for (code,) in db.query(AuditRuleDB.code).all())


def test_map_hub_rule():
    now = datetime(2024, 5, 1)
    mapped = map_hub_rule(hub_rule(12, "R1", status=0), now)
    assert mapped == {
        "source_id": "12",
        "code": "R1",
        "name": "规则R1",
        "description": "描述",
        "category": "合规性",
        "stage": "投标",
        "is_enabled": False,
        "synced_at": now,
    }


def test_sync_replaces_rules(db, existing_rules):
    result = sync_rules(db, StubHub([hub_rule(1, "R1"), hub_rule(2, "R2", status=0)]))

    assert result == {"synced": 2, "total": 2}
    assert rule_codes(db) == ["R1", "R2"]
    r2 = db.query(AuditRuleDB).filter_by(code="R2").one()
    assert r2.source_id == "2"
    assert r2.is_enabled is False
    assert r2.synced_at is not None


def test_empty_hub_leaves_rules_untouched(db, existing_rules):
    assert sync_rules(db, StubHub([])) == {"synced": 0, "total": 0}
    assert rule_codes(db) == ["OLD1", "OLD2"]


def test_hub_error_aborts_before_mutation(db, existing_rules):
    with pytest.raises(RuleSyncError):
        sync_rules(db, StubHub(error=DataHubError("Data hub token is not configured")))
    assert rule_codes(db) == ["OLD1", "OLD2"]


def test_insert_failure_rolls_back_delete(db, existing_rules):
    # Duplicate codes violate the unique constraint after the delete has run
    hub = StubHub([hub_rule(1, "DUP"), hub_rule(2, "DUP")])
    with pytest.raises(RuleSyncError):
        sync_rules(db, hub)
    assert rule_codes(db) == ["OLD1", "OLD2"]
