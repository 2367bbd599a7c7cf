"""
Per-project audit sessions.

An audit runs its rules one at a time on a daemon thread. The session keeps
progress and verdicts so clients can poll it, and a task entry mirrors the
run in the background task list.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from sqlalchemy.orm import Session

from database import AuditRiskDB
from services.audit.agent_auditor import (
    RESULT_FAIL,
    RESULT_REVIEW,
    AuditAgent,
    AuditClue,
    AuditItem,
    AuditVerdict,
    UNPARSED_DESCRIPTION,
    parse_severity,
    review_verdict,
    summarize,
)
from services.audit.task_registry import TaskRegistry, task_registry

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_COMPLETED = "completed"
STATE_ERRORED = "errored"

RULE_FAILURE_DESCRIPTION = "规则执行失败，需要人工复核"


class AuditSessionError(LookupError):
    """No session, or no verdict for the requested rule."""
    pass


@dataclass
class AuditProgress:
    current: int = 0
    total: int = 0
    current_rule: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"current": self.current, "total": self.total, "currentRule": self.current_rule}


@dataclass
class AuditSession:
    project_id: str
    project_name: str
    state: str = STATE_IDLE
    error: Optional[str] = None
    results: List[AuditVerdict] = field(default_factory=list)
    progress: AuditProgress = field(default_factory=AuditProgress)
    confirmed_rules: Set[str] = field(default_factory=set)
    task_id: Optional[str] = None
    use_code_audit: bool = False

    @property
    def is_running(self) -> bool:
        return self.state == STATE_RUNNING

    def find_result(self, rule_code: str) -> Optional[AuditVerdict]:
        return next((v for v in self.results if v.rule_code == rule_code), None)

    def to_dict(self) -> Dict[str, Any]:
        results = list(self.results)
        return {
            "projectId": self.project_id,
            "projectName": self.project_name,
            "state": self.state,
            "isRunning": self.is_running,
            "error": self.error,
            "progress": self.progress.to_dict(),
            "results": [v.to_dict() for v in results],
            "summary": summarize(results),
            "confirmedRules": sorted(self.confirmed_rules),
            "taskId": self.task_id,
        }


def risk_level_for(verdict: AuditVerdict) -> str:
    """fail keeps critical/high severities (anything else is medium); review is low."""
    if verdict.result == RESULT_FAIL:
        return verdict.severity if verdict.severity in ("critical", "high") else "medium"
    return "low"


class AuditSessionRegistry:
    """Owns the project id -> AuditSession map and the audit worker threads."""

    def __init__(self, agent: Optional[AuditAgent] = None, tasks: Optional[TaskRegistry] = None):
        self._agent = agent
        self._tasks = tasks if tasks is not None else task_registry
        self._sessions: Dict[str, AuditSession] = {}
        self._running: Dict[str, AuditSession] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.RLock()

    @property
    def agent(self) -> AuditAgent:
        if self._agent is None:
            from core.agent_client import get_agent_client
            self._agent = AuditAgent(get_agent_client())
        return self._agent

    def get_session(self, project_id: str) -> Optional[AuditSession]:
        with self._lock:
            return self._sessions.get(project_id)

    def has_running_audit(self, project_id: str) -> bool:
        with self._lock:
            return project_id in self._running

    def attach_running_session(self, project_id: str) -> Optional[AuditSession]:
        """Return the in-flight session for a project, re-registering it if it was reset."""
        with self._lock:
            running = self._running.get(project_id)
            if running is not None:
                self._sessions[project_id] = running
            return running

    def reset_audit(self, project_id: str) -> None:
        """Forget the session. A run still in flight keeps going and a later start picks it back up."""
        with self._lock:
            self._sessions.pop(project_id, None)

    def start_audit(
        self,
        project_id: str,
        project_name: str,
        clues: Sequence[AuditClue],
        items: Sequence[AuditItem],
        use_code_audit: bool = False,
        background: bool = True,
    ) -> AuditSession:
        """
        Start an audit for a project.

        If an audit is already running for the project, the running session is
        returned unchanged and no new task is created.
        """
        with self._lock:
            running = self.attach_running_session(project_id)
            if running is not None:
                logger.info(f"Audit already running for project {project_id}")
                return running

            session = AuditSession(
                project_id=project_id,
                project_name=project_name,
                state=STATE_RUNNING,
                progress=AuditProgress(current=0, total=len(clues)),
                use_code_audit=use_code_audit,
            )
            self._sessions[project_id] = session
            self._running[project_id] = session

        session.task_id = self._tasks.add(
            project_id=project_id,
            project_name=project_name,
            task_type="audit",
            status="running",
            message="正在执行审计...",
        )

        if not background:
            self.run_audit(session, list(clues), list(items))
            return session

        thread = threading.Thread(
            target=self.run_audit,
            args=(session, list(clues), list(items)),
            name=f"AuditWorker-{project_id}",
            daemon=True,
        )
        with self._lock:
            self._threads[project_id] = thread
        thread.start()
        logger.info(f"Started audit worker for project {project_id} ({len(clues)} rules)")
        return session

    def _run_rule(self, session: AuditSession, clue: AuditClue, items: List[AuditItem]) -> AuditVerdict:
        """One verdict per rule: the one naming the rule if several come back, else the first."""
        runner = self.agent.run_code_audit if session.use_code_audit else self.agent.run_basic_audit
        try:
            verdicts = runner([clue], items)
        except Exception as e:
            logger.error(f"Rule {clue.rule_code} failed for project {session.project_id}: {e}")
            return AuditVerdict(
                rule_code=clue.rule_code,
                rule_name=clue.rule_name,
                result=RESULT_REVIEW,
                severity=parse_severity(clue.severity),
                description=RULE_FAILURE_DESCRIPTION,
                raw_response=str(e),
            )

        if not verdicts:
            return review_verdict(clue, UNPARSED_DESCRIPTION, "")
        return next((v for v in verdicts if v.rule_code == clue.rule_code), verdicts[0])

    def run_audit(self, session: AuditSession, clues: List[AuditClue], items: List[AuditItem]) -> AuditSession:
        """Run every rule in order, updating progress and results after each one."""
        total = len(clues)
        results: List[AuditVerdict] = []

        try:
            for index, clue in enumerate(clues):
                with self._lock:
                    session.progress = AuditProgress(current=index, total=total, current_rule=clue.rule_name)
                self._tasks.update(
                    session.task_id,
                    progress=round(index / total * 100),
                    message=f"执行规则: {clue.rule_name} ({index + 1}/{total})",
                )

                results.append(self._run_rule(session, clue, items))
                with self._lock:
                    session.results = list(results)

            with self._lock:
                session.state = STATE_COMPLETED
                session.progress = AuditProgress(current=total, total=total)
                session.results = results
            self._tasks.update(
                session.task_id,
                status="completed",
                progress=100,
                message=f"审计完成，共 {len(results)} 条规则",
            )
            logger.info(f"Audit completed for project {session.project_id}: {len(results)} verdicts")

        except Exception as e:
            message = str(e) or "审计执行失败"
            logger.error(f"Audit failed for project {session.project_id}: {message}")
            with self._lock:
                session.state = STATE_ERRORED
                session.error = message
            self._tasks.update(session.task_id, status="failed", error=message)

        finally:
            with self._lock:
                if self._running.get(session.project_id) is session:
                    del self._running[session.project_id]
                    self._threads.pop(session.project_id, None)

        return session

    def wait(self, project_id: str, timeout: Optional[float] = None) -> None:
        """Block until the project's worker thread (if any) finishes."""
        with self._lock:
            thread = self._threads.get(project_id)
        if thread is not None:
            thread.join(timeout)

    def confirm_result(
        self,
        project_id: str,
        rule_code: str,
        save_as_risk: bool,
        db: Session,
    ) -> Optional[AuditRiskDB]:
        """
        Confirm one verdict. fail/review verdicts become an audit risk when
        save_as_risk is set. The rule is recorded as confirmed either way.

        Raises:
            AuditSessionError: no session for the project or no verdict for the rule
        """
        session = self.get_session(project_id)
        if session is None:
            raise AuditSessionError(f"No audit session for project {project_id}")

        verdict = session.find_result(rule_code)
        if verdict is None:
            raise AuditSessionError(f"No audit result for rule {rule_code}")

        risk = None
        if save_as_risk and verdict.result in (RESULT_FAIL, RESULT_REVIEW):
            risk = AuditRiskDB(
                project_id=project_id,
                rule_code=verdict.rule_code,
                rule_name=verdict.rule_name,
                risk_level=risk_level_for(verdict),
                description=verdict.description or "需要人工复核",
                suggestion=verdict.suggestion or "",
                evidence=(
                    {"text": verdict.evidence, "law": verdict.law_reference}
                    if verdict.evidence or verdict.law_reference else None
                ),
            )
            db.add(risk)
            db.commit()
            db.refresh(risk)
            logger.info(f"Saved risk {risk.id} ({risk.risk_level}) for rule {rule_code} in project {project_id}")

        with self._lock:
            session.confirmed_rules.add(rule_code)

        return risk


# Global instance
audit_sessions = AuditSessionRegistry()
