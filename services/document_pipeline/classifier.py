"""Document classification through the fileClassify agent."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from core.agent_client import AgentClient, AgentServiceError
from core.response_normalizer import strip_code_fence

logger = logging.getLogger(__name__)

LEVEL_KEYS = (
    ("一级分类", "level1"),
    ("二级分类", "level2"),
    ("三级分类", "level3"),
)
CODE_KEYS = ("docTypeCode", "code", "类型编码")
NAME_KEYS = ("docTypeName", "name", "类型名称", "文件类型", "分类", "类型")

TEXT_PATTERNS = [
    re.compile(r"文件类型[：:]\s*[「『\"']?(.+?)[」』\"']?$", re.MULTILINE),
    re.compile(r"分类[：:]\s*[「『\"']?(.+?)[」』\"']?$", re.MULTILINE),
    re.compile(r"是[「『\"']?(.+?)[」』\"']?文件"),
    re.compile(r"属于[「『\"']?(.+?)[」』\"']?$", re.MULTILINE),
]

MAX_PLAIN_NAME_LENGTH = 50


@dataclass
class ClassificationResult:
    file_id: str
    file_name: str
    doc_type_code: Optional[str]
    doc_type_name: Optional[str]
    ds_id: Optional[int] = None
    raw_response: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileId": self.file_id,
            "fileName": self.file_name,
            "dsId": self.ds_id,
            "docTypeCode": self.doc_type_code,
            "docTypeName": self.doc_type_name,
            "rawResponse": self.raw_response,
        }


def _first_truthy(obj: Dict[str, Any], keys) -> Optional[Any]:
    for key in keys:
        if obj.get(key):
            return obj[key]
    return None


def _from_levels(parsed: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    levels = [_first_truthy(parsed, keys) for keys in LEVEL_KEYS]
    if not any(levels):
        return None, None
    # Deepest level names the type; code is the path down to it
    depth = max(i for i, level in enumerate(levels) if level)
    name = str(levels[depth])
    code = "/".join(str(level or "") for level in levels[: depth + 1]).strip("/")
    return code, name


def _parse_json_classification(parsed: Any) -> Tuple[Optional[str], Optional[str]]:
    if not isinstance(parsed, dict):
        return None, None

    code, name = _from_levels(parsed)
    if name:
        return code, name

    code = _first_truthy(parsed, CODE_KEYS)
    name = _first_truthy(parsed, NAME_KEYS)
    if name:
        return code, name

    if len(parsed) == 1:
        key, value = next(iter(parsed.items()))
        if isinstance(value, str):
            return key, value

    return code, None


def _parse_text_classification(text: str) -> Optional[str]:
    for pattern in TEXT_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()

    if text and len(text) <= MAX_PLAIN_NAME_LENGTH and "\n" not in text:
        return text
    return None


def parse_classification(content: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Parse a classification answer into (doc_type_code, doc_type_name).

    Accepts level objects ({"一级分类": ..., "二级分类": ..., "三级分类": ...}),
    flat objects with a code/name, single-key objects, and plain text such as
    "文件类型：施工合同".
    """
    cleaned = strip_code_fence(content)
    try:
        parsed = json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        return None, _parse_text_classification(cleaned)
    return _parse_json_classification(parsed)


class DocumentClassifier:
    """Uploads documents and asks the classification agent for their type."""

    def __init__(self, client: AgentClient):
        self.client = client

    def classify_file(self, file_id: str, file_name: str) -> ClassificationResult:
        logger.info(f"Classifying {file_name} ({file_id})")
        try:
            response = self.client.chat(
                "fileClassify",
                datetime.now().isoformat(),
                {"fileId": file_id},
                files=[{"fileId": file_id}],
            )
        except AgentServiceError as e:
            logger.error(f"Classification failed for {file_name}: {e}")
            return ClassificationResult(file_id, file_name, None, None, raw_response=str(e))

        content = self.client.get_text_content(response)
        code, name = parse_classification(content)
        logger.info(f"Classified {file_name}: code={code} name={name}")
        return ClassificationResult(file_id, file_name, code, name, raw_response=content)

    def process_file(self, content: bytes, filename: str) -> ClassificationResult:
        """Upload, wait for indexing, classify."""
        indexed = self.client.upload_and_index(content, filename)
        self.client.wait_for_parsing(indexed.ds_id)
        result = self.classify_file(indexed.file_id, filename)
        result.ds_id = indexed.ds_id
        return result

    def process_files(self, files: List[Tuple[str, bytes]]) -> List[ClassificationResult]:
        """Process (filename, content) pairs; one failing file does not stop the rest."""
        results = []
        for filename, content in files:
            try:
                results.append(self.process_file(content, filename))
            except AgentServiceError as e:
                logger.error(f"Processing {filename} failed: {e}")
                results.append(ClassificationResult("", filename, None, None, ds_id=0, raw_response=str(e)))
        return results
