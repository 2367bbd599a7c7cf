import threading

import pytest

from database import AuditRiskDB, ProjectDB
from services.audit.agent_auditor import AuditClue, AuditItem, AuditVerdict
from services.audit.orchestrator import (
    RULE_FAILURE_DESCRIPTION,
    STATE_COMPLETED,
    STATE_RUNNING,
    AuditSessionError,
    AuditSessionRegistry,
    risk_level_for,
)


def verdict(code, result="pass", severity="medium", **kwargs):
    return AuditVerdict(code, f"rule {code}", result, severity, kwargs.pop("description", "d"), **kwargs)


class ScriptedAgent:
    """Audit agent double: returns scripted verdicts per rule code, or raises."""

    def __init__(self, outcomes=None, gate=None):
        self.outcomes = outcomes or {}
        self.gate = gate
        self.calls = []

    def run_basic_audit(self, clues, items):
        clue = clues[0]
        self.calls.append(("basic", clue.rule_code))
        if self.gate is not None:
            self.gate.wait(5)
        outcome = self.outcomes.get(clue.rule_code, [verdict(clue.rule_code)])
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def run_code_audit(self, clues, items):
        self.calls.append(("code", clues[0].rule_code))
        return [verdict(clues[0].rule_code)]


@pytest.fixture
def clues():
    return [AuditClue(f"R00{i}", f"规则{i}") for i in range(1, 4)]


@pytest.fixture
def items():
    return [AuditItem("项目", "招标文件", "工期", "90天")]


class TestRunAudit:

    def test_one_verdict_per_rule_under_failures(self, tasks, clues, items):
        agent = ScriptedAgent({
            "R002": RuntimeError("agent exploded"),
            "R003": [verdict("X"), verdict("R003", "fail", "high")],
        })
        registry = AuditSessionRegistry(agent=agent, tasks=tasks)

        session = registry.start_audit("p1", "项目", clues, items, background=False)

        assert session.state == STATE_COMPLETED
        assert [v.rule_code for v in session.results] == ["R001", "R002", "R003"]
        failed = session.results[1]
        assert failed.result == "review"
        assert failed.description == RULE_FAILURE_DESCRIPTION
        assert failed.raw_response == "agent exploded"
        assert session.results[2].result == "fail"
        assert session.progress.current == 3
        assert not registry.has_running_audit("p1")

        task = tasks.get(session.task_id)
        assert task["status"] == "completed"
        assert task["type"] == "audit"
        assert task["completedAt"] is not None

    def test_code_audit_flag(self, tasks, clues, items):
        agent = ScriptedAgent()
        registry = AuditSessionRegistry(agent=agent, tasks=tasks)
        registry.start_audit("p1", "项目", clues[:1], items, use_code_audit=True, background=False)
        assert agent.calls == [("code", "R001")]

    def test_empty_agent_answer_becomes_review(self, tasks, clues, items):
        registry = AuditSessionRegistry(agent=ScriptedAgent({"R001": []}), tasks=tasks)
        session = registry.start_audit("p1", "项目", clues[:1], items, background=False)
        assert session.results[0].result == "review"

    def test_second_start_while_running_is_noop(self, tasks, clues, items):
        gate = threading.Event()
        registry = AuditSessionRegistry(agent=ScriptedAgent(gate=gate), tasks=tasks)

        first = registry.start_audit("p1", "项目", clues, items)
        assert registry.has_running_audit("p1")
        task_count = len(tasks.list_tasks())

        second = registry.start_audit("p1", "项目", clues[:1], items)
        assert second is first
        assert second.state == STATE_RUNNING
        assert second.progress.total == 3
        assert len(tasks.list_tasks()) == task_count
        assert registry.has_running_audit("p1")

        gate.set()
        registry.wait("p1", timeout=5)
        assert first.state == STATE_COMPLETED
        assert len(first.results) == 3

    def test_reset_while_running_then_start_resumes_running_session(self, tasks, clues, items):
        gate = threading.Event()
        registry = AuditSessionRegistry(agent=ScriptedAgent(gate=gate), tasks=tasks)

        first = registry.start_audit("p1", "项目", clues, items)
        registry.reset_audit("p1")
        assert registry.get_session("p1") is None
        assert registry.has_running_audit("p1")
        task_count = len(tasks.list_tasks())

        again = registry.start_audit("p1", "项目", clues, items)
        assert again is first
        assert registry.get_session("p1") is first
        assert len(tasks.list_tasks()) == task_count

        gate.set()
        registry.wait("p1", timeout=5)
        assert first.state == STATE_COMPLETED
        assert not registry.has_running_audit("p1")

        fresh = registry.start_audit("p1", "项目", clues[:1], items, background=False)
        assert fresh is not first
        assert len(fresh.results) == 1

    def test_reset_audit_forgets_session(self, tasks, clues, items):
        registry = AuditSessionRegistry(agent=ScriptedAgent(), tasks=tasks)
        registry.start_audit("p1", "项目", clues, items, background=False)
        registry.reset_audit("p1")
        assert registry.get_session("p1") is None

    def test_session_to_dict(self, tasks, clues, items):
        registry = AuditSessionRegistry(agent=ScriptedAgent({"R001": [verdict("R001", "fail", "high")]}), tasks=tasks)
        session = registry.start_audit("p1", "项目", clues, items, background=False)
        data = session.to_dict()
        assert data["state"] == "completed"
        assert data["isRunning"] is False
        assert data["summary"]["byResult"]["fail"] == 1
        assert data["progress"] == {"current": 3, "total": 3, "currentRule": None}


class TestConfirmResult:

    @pytest.fixture
    def project(self, db):
        project = ProjectDB(id="p1", name="项目")
        db.add(project)
        db.commit()
        return project

    @pytest.fixture
    def registry(self, tasks, clues, items):
        agent = ScriptedAgent({
            "R001": [verdict("R001", "fail", "critical", suggestion="整改", evidence="第2页", law_reference="条例")],
            "R002": [verdict("R002", "review", "high")],
            "R003": [verdict("R003", "pass")],
        })
        registry = AuditSessionRegistry(agent=agent, tasks=tasks)
        registry.start_audit("p1", "项目", clues, items, background=False)
        return registry

    def test_fail_becomes_risk(self, db, project, registry):
        risk = registry.confirm_result("p1", "R001", True, db)
        assert risk.risk_level == "critical"
        assert risk.suggestion == "整改"
        assert risk.evidence == {"text": "第2页", "law": "条例"}
        assert db.query(AuditRiskDB).count() == 1
        assert "R001" in registry.get_session("p1").confirmed_rules

    def test_review_becomes_low_risk(self, db, project, registry):
        risk = registry.confirm_result("p1", "R002", True, db)
        assert risk.risk_level == "low"
        assert risk.evidence is None

    def test_law_reference_kept_without_evidence_text(self, db, project, tasks, clues, items):
        agent = ScriptedAgent({"R001": [verdict("R001", "fail", "high", law_reference="招标投标法第二十条")]})
        registry = AuditSessionRegistry(agent=agent, tasks=tasks)
        registry.start_audit("p1", "项目", clues[:1], items, background=False)

        risk = registry.confirm_result("p1", "R001", True, db)
        assert risk.evidence == {"text": "", "law": "招标投标法第二十条"}

    def test_pass_is_confirmed_without_risk(self, db, project, registry):
        assert registry.confirm_result("p1", "R003", True, db) is None
        assert db.query(AuditRiskDB).count() == 0
        assert "R003" in registry.get_session("p1").confirmed_rules

    def test_confirm_without_saving(self, db, project, registry):
        assert registry.confirm_result("p1", "R001", False, db) is None
        assert db.query(AuditRiskDB).count() == 0
        assert "R001" in registry.get_session("p1").confirmed_rules

    def test_unknown_session_or_rule(self, db, project, registry):
        with pytest.raises(AuditSessionError):
            registry.confirm_result("nope", "R001", True, db)
        with pytest.raises(AuditSessionError):
            registry.confirm_result("p1", "R999", True, db)


@pytest.mark.parametrize("result, severity, expected", [
    ("fail", "critical", "critical"),
    ("fail", "high", "high"),
    ("fail", "medium", "medium"),
    ("fail", "low", "medium"),
    ("review", "critical", "low"),
])
def test_risk_level_for(result, severity, expected):
    assert risk_level_for(verdict("R", result, severity)) == expected
