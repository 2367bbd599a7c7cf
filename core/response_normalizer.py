"""
Normalization of free-form agent output into a single field value.

Agents answer with fenced JSON, bare strings, or key/value pairs embedded in
prose. `normalize_field_value` coerces all of them into a clean scalar plus an
optional evidence reference. None of the functions here raise.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence

# Canonical value keys, checked in order
VALUE_KEYS: Sequence[str] = ("value", "结果", "提取结果", "answer", "result", "data")

# Keys that describe where the value came from rather than the value itself
METADATA_KEYS = frozenset({"page", "页码", "snippet", "原文片段", "bbox", "坐标"})

PAGE_KEYS = ("page", "页码")
SNIPPET_KEYS = ("snippet", "原文片段")

NOT_FOUND_PATTERNS = [
    re.compile(r"^未提取到"),
    re.compile(r"^未找到"),
    re.compile(r"^无法提取"),
    re.compile(r"^没有找到"),
    re.compile(r"^不存在"),
    re.compile(r"^无数据"),
    re.compile(r"^null$", re.IGNORECASE),
    re.compile(r"^undefined$", re.IGNORECASE),
    re.compile(r"^无$"),
    re.compile(r"^-$"),
    re.compile(r"^N/A$", re.IGNORECASE),
]

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")
_KV_SEARCH = re.compile(r'"[^"]+"\s*:\s*"([^"]+)"')
_KV_FULL = re.compile(r'^"[^"]+"\s*:\s*"([^"]*)"$')

STATUS_AUTO = "auto"
STATUS_MISSING = "missing"


@dataclass
class NormalizedValue:
    value: Optional[str]
    status: str
    evidence: Optional[Dict[str, Any]] = None
    raw: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "status": self.status, "evidenceRef": self.evidence}


def strip_code_fence(text: Optional[str]) -> str:
    """Remove a surrounding Markdown code fence (```json ... ``` or ``` ... ```)."""
    if not text:
        return ""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned, count=1)
        cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def is_not_found(value: Optional[str]) -> bool:
    """True when the agent's answer means "nothing found"."""
    if value is None:
        return True
    return any(pattern.search(value) for pattern in NOT_FOUND_PATTERNS)


def escape_for_agent(text: Optional[str]) -> str:
    """Escape characters that break the agent's state templating."""
    if not text:
        return ""
    return (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _scalar_to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _first_present(obj: Dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if obj.get(key) is not None:
            return obj[key]
    return None


def _value_from_object(obj: Dict[str, Any], field_name: Optional[str], value_keys: Sequence[str]) -> Any:
    value = _first_present(obj, value_keys)

    if value is None and field_name:
        value = obj.get(field_name)

    if value is None:
        keys = [k for k in obj if k not in METADATA_KEYS]
        if len(keys) == 1:
            single = obj[keys[0]]
            value = _dump(single) if isinstance(single, (dict, list)) else single
        else:
            value = _dump(obj)

    # One more level for values that are themselves objects
    if isinstance(value, dict):
        if len(value) == 1:
            inner = next(iter(value.values()))
            value = _dump(inner) if isinstance(inner, (dict, list)) else _scalar_to_text(inner)
        else:
            value = _dump(value)
    elif isinstance(value, list):
        value = _dump(value)

    return value


def _evidence_from_object(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    page = _first_present(obj, PAGE_KEYS)
    if not page:
        return None
    return {"page": page, "snippet": _first_present(obj, SNIPPET_KEYS) or ""}


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = _scalar_to_text(value).strip()

    kv_match = _KV_FULL.match(text)
    if kv_match:
        text = kv_match.group(1)

    if len(text) > 2 and text.startswith('"') and text.endswith('"'):
        text = text[1:-1]

    if not text or is_not_found(text):
        return None
    return text


def normalize_field_value(
    raw: Optional[str],
    field_name: Optional[str] = None,
    value_keys: Sequence[str] = VALUE_KEYS,
) -> NormalizedValue:
    """
    Coerce raw agent output into (value, status, evidence).

    Args:
        raw: Text returned by the agent
        field_name: Requested field name; also tried as a key of the JSON object
        value_keys: Canonical value keys, in priority order

    Returns:
        NormalizedValue with value None and status "missing" when the agent
        found nothing, otherwise the cleaned string and status "auto".
    """
    raw_text = raw or ""
    cleaned = strip_code_fence(raw_text)
    value: Any = None
    evidence = None

    try:
        parsed = json.loads(cleaned)
    except (json.JSONDecodeError, TypeError, ValueError):
        kv_match = _KV_SEARCH.search(cleaned)
        value = kv_match.group(1) if kv_match else (cleaned or None)
    else:
        if isinstance(parsed, dict):
            value = _value_from_object(parsed, field_name, value_keys)
            evidence = _evidence_from_object(parsed)
        elif isinstance(parsed, list):
            value = _dump(parsed)
        elif parsed is not None:
            value = parsed

    final = _clean(value)
    return NormalizedValue(
        value=final,
        status=STATUS_AUTO if final else STATUS_MISSING,
        evidence=evidence,
        raw=raw_text,
    )
