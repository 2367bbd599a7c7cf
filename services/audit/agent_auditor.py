"""
Rule-based auditing through the basicAudit / codeAudit agents.

Rules ("clues") and the extracted data ("items") are rendered into two text
blocks, sent as the agent state, and the free-form answer is parsed back into
one verdict per rule. Parsing never raises: anything that cannot be read
becomes a `review` verdict for a human to look at.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from core.agent_client import AgentClient, AgentServiceError
from core.response_normalizer import strip_code_fence

logger = logging.getLogger(__name__)

BLOCK_SEPARATOR = "\n\n---\n\n"

RESULT_PASS = "pass"
RESULT_FAIL = "fail"
RESULT_REVIEW = "review"
RESULT_MISSING = "missing"
AUDIT_RESULTS = (RESULT_PASS, RESULT_FAIL, RESULT_REVIEW, RESULT_MISSING)

SEVERITIES = ("critical", "high", "medium", "low")

RESULT_KEYS = ("审计结果", "result", "结果", "status", "状态", "结论", "conclusion")
DESCRIPTION_KEYS = (
    "审计理由简述", "审计理由", "理由简述", "理由",
    "description", "问题描述", "描述", "审计意见", "意见",
    "opinion", "message", "结论说明", "说明", "reason",
)
SUGGESTION_KEYS = ("suggestion", "处理建议", "建议", "整改建议", "recommendation", "advice")
EVIDENCE_KEYS = ("evidence", "证据", "依据", "proof")
LAW_KEYS = ("lawReference", "法规依据", "法律依据", "法规", "law", "reference")
RULE_CODE_KEYS = ("ruleCode", "规则编码", "code")
RULE_NAME_KEYS = ("ruleName", "规则名称", "name")
SEVERITY_KEYS = ("severity", "严重程度", "级别")
IDENTITY_KEYS = ("ruleCode", "规则编码", "ruleName", "规则名称")

PASS_MARKERS = ("不存在问题", "无问题", "正常", "pass", "通过", "合规", "符合", "ok", "正确")
FAIL_MARKERS = (
    "存在问题", "有问题", "异常", "fail", "不通过", "违规",
    "不合规", "不符合", "错误", "违反", "问题",
)
MISSING_MARKERS = ("missing", "缺失", "未找到")

DEFAULT_REVIEW_SUGGESTION = "请人工复核审计结果"
AGENT_FAILURE_DESCRIPTION = "审计执行失败，需要人工复核"
UNPARSED_DESCRIPTION = "未能解析审计结果"
MIN_FALLBACK_DESCRIPTION_LENGTH = 10


@dataclass
class AuditClue:
    """An audit rule as presented to the agent."""

    rule_code: str
    rule_name: str
    description: str = ""
    check_logic: str = ""
    fields: List[str] = field(default_factory=list)
    law: str = ""
    severity: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditClue":
        fields = data.get("fields") or data.get("涉及字段") or []
        if isinstance(fields, str):
            fields = [f.strip() for f in fields.split(",") if f.strip()]
        return cls(
            rule_code=str(data.get("ruleCode") or data.get("code") or data.get("规则编码") or ""),
            rule_name=str(data.get("ruleName") or data.get("name") or data.get("规则名称") or ""),
            description=data.get("description") or data.get("规则描述") or "",
            check_logic=data.get("checkLogic") or data.get("检查逻辑") or "",
            fields=list(fields),
            law=data.get("law") or data.get("法规依据") or "",
            severity=data.get("severity") or data.get("严重程度") or "",
        )


@dataclass
class AuditItem:
    """One piece of extracted data under review."""

    source: str
    file: str
    field: str
    content: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditItem":
        content = data.get("content", data.get("内容"))
        return cls(
            source=str(data.get("source") or data.get("来源") or ""),
            file=str(data.get("file") or data.get("文件") or ""),
            field=str(data.get("field") or data.get("字段") or ""),
            content="" if content is None else str(content),
        )


@dataclass
class AuditVerdict:
    rule_code: str
    rule_name: str
    result: str
    severity: str
    description: str
    suggestion: str = ""
    evidence: str = ""
    law_reference: str = ""
    raw_response: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ruleCode": self.rule_code,
            "ruleName": self.rule_name,
            "result": self.result,
            "severity": self.severity,
            "description": self.description,
            "suggestion": self.suggestion,
            "evidence": self.evidence,
            "lawReference": self.law_reference,
            "rawResponse": self.raw_response,
        }


def build_clue_string(clues: Sequence[AuditClue]) -> str:
    blocks = []
    for clue in clues:
        lines = [f"规则编码: {clue.rule_code}", f"规则名称: {clue.rule_name}"]
        if clue.description:
            lines.append(f"规则描述: {clue.description}")
        if clue.check_logic:
            lines.append(f"检查逻辑: {clue.check_logic}")
        if clue.fields:
            lines.append(f"涉及字段: {', '.join(clue.fields)}")
        if clue.severity:
            lines.append(f"严重程度: {clue.severity}")
        if clue.law:
            lines.append(f"法规依据: {clue.law}")
        blocks.append("\n".join(lines))
    return BLOCK_SEPARATOR.join(blocks)


def build_item_string(items: Sequence[AuditItem]) -> str:
    return BLOCK_SEPARATOR.join(
        f"来源: {item.source}\n文件: {item.file}\n字段: {item.field}\n内容: {item.content}"
        for item in items
    )


def parse_result(value: Optional[str]) -> str:
    """
    Map free-text conclusions onto pass/fail/missing/review.

    This is substring matching and is known to be lossy ("不通过" contains
    "通过" and reads as pass). Pass markers are checked first, fail markers
    only count when the text does not also say the problem is absent.
    """
    if not value:
        return RESULT_REVIEW

    text = value.lower()
    if any(marker in text for marker in PASS_MARKERS):
        return RESULT_PASS

    if any(marker in text for marker in FAIL_MARKERS):
        if "不存在" not in text and "无问题" not in text:
            return RESULT_FAIL

    if any(marker in text for marker in MISSING_MARKERS):
        return RESULT_MISSING

    return RESULT_REVIEW


def parse_severity(value: Optional[str]) -> str:
    if not value:
        return "medium"
    text = value.lower()
    if "critical" in text or "严重" in text:
        return "critical"
    if "high" in text or "高" in text:
        return "high"
    if "low" in text or "低" in text:
        return "low"
    return "medium"


def _get_field(item: Dict[str, Any], keys: Sequence[str]) -> str:
    for key in keys:
        value = item.get(key)
        if value is not None:
            return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    return ""


def review_verdict(clue: Optional[AuditClue], description: str, raw_response: str) -> AuditVerdict:
    return AuditVerdict(
        rule_code=clue.rule_code if clue else "",
        rule_name=clue.rule_name if clue else "",
        result=RESULT_REVIEW,
        severity=parse_severity(clue.severity if clue else None),
        description=description or "需要人工复核",
        suggestion=DEFAULT_REVIEW_SUGGESTION,
        raw_response=raw_response,
    )


def extract_verdict(item: Dict[str, Any], clue: Optional[AuditClue] = None) -> AuditVerdict:
    """Read one verdict out of an agent JSON object, tolerating many key spellings."""
    description = _get_field(item, DESCRIPTION_KEYS)
    if not description:
        long_strings = [
            value for key, value in item.items()
            if isinstance(value, str)
            and len(value) > MIN_FALLBACK_DESCRIPTION_LENGTH
            and key not in IDENTITY_KEYS
        ]
        if long_strings:
            description = "\n".join(long_strings)
        else:
            description = json.dumps(item, ensure_ascii=False, indent=2)

    return AuditVerdict(
        rule_code=_get_field(item, RULE_CODE_KEYS) or (clue.rule_code if clue else ""),
        rule_name=_get_field(item, RULE_NAME_KEYS) or (clue.rule_name if clue else ""),
        result=parse_result(_get_field(item, RESULT_KEYS)),
        severity=parse_severity(_get_field(item, SEVERITY_KEYS)),
        description=description,
        suggestion=_get_field(item, SUGGESTION_KEYS),
        evidence=_get_field(item, EVIDENCE_KEYS),
        law_reference=_get_field(item, LAW_KEYS),
        raw_response=json.dumps(item, ensure_ascii=False),
    )


def parse_audit_response(content: Optional[str], clues: Sequence[AuditClue]) -> List[AuditVerdict]:
    """
    Turn the agent's answer into verdicts.

    A JSON array yields one verdict per element, an object yields one verdict.
    Anything else yields `review` verdicts so that no rule silently disappears.
    """
    raw = content or ""
    cleaned = strip_code_fence(raw)
    first_clue = clues[0] if clues else None
    verdicts: List[AuditVerdict] = []

    try:
        parsed = json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        logger.info("Audit response is not JSON, returning it as review text")
        verdicts = [review_verdict(clue, cleaned, raw) for clue in clues]
    else:
        if isinstance(parsed, list):
            verdicts = [
                extract_verdict(element, first_clue) if isinstance(element, dict)
                else review_verdict(first_clue, str(element), raw)
                for element in parsed
            ]
        elif isinstance(parsed, dict):
            verdicts = [extract_verdict(parsed, first_clue)]
        else:
            verdicts = [review_verdict(first_clue, str(parsed), raw)]

    if not verdicts:
        verdicts = [review_verdict(clue, UNPARSED_DESCRIPTION, raw) for clue in clues]
    return verdicts


def summarize(verdicts: Sequence[AuditVerdict]) -> Dict[str, Any]:
    """Counts by result, plus failing verdicts by severity."""
    by_result = Counter(v.result for v in verdicts)
    failing = Counter(v.severity for v in verdicts if v.result == RESULT_FAIL)
    return {
        "total": len(verdicts),
        "byResult": {result: by_result.get(result, 0) for result in AUDIT_RESULTS},
        "failBySeverity": {severity: failing.get(severity, 0) for severity in SEVERITIES},
    }


class AuditAgent:
    """Sends rules and data to an audit agent and parses what comes back."""

    def __init__(self, client: AgentClient):
        self.client = client

    def _run(self, agent_type: str, clues: Sequence[AuditClue], items: Sequence[AuditItem]) -> List[AuditVerdict]:
        state = {
            "比对方式": build_clue_string(clues),
            "待审查项目": build_item_string(items),
        }
        try:
            response = self.client.chat(agent_type, datetime.now().isoformat(), state)
        except AgentServiceError as e:
            logger.error(f"{agent_type} failed for {len(clues)} rule(s): {e}")
            verdicts = []
            for clue in clues:
                verdict = review_verdict(clue, AGENT_FAILURE_DESCRIPTION, str(e))
                verdict.suggestion = ""
                verdicts.append(verdict)
            return verdicts

        return parse_audit_response(self.client.get_text_content(response), clues)

    def run_basic_audit(self, clues: Sequence[AuditClue], items: Sequence[AuditItem]) -> List[AuditVerdict]:
        return self._run("basicAudit", clues, items)

    def run_code_audit(self, clues: Sequence[AuditClue], items: Sequence[AuditItem]) -> List[AuditVerdict]:
        """Same contract as run_basic_audit, backed by the code-generating agent."""
        return self._run("codeAudit", clues, items)
