"""Field extraction through the normalExtract / visionExtract agents."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from core.agent_client import AgentClient, AgentServiceError
from core.response_normalizer import (
    STATUS_AUTO,
    STATUS_MISSING,
    escape_for_agent,
    normalize_field_value,
)

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_FORMAT = "字符串"


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value if v is not None)
    return str(value)


@dataclass
class FieldDefinition:
    """One field the extraction agent is asked to find."""

    field_code: str
    field_name: str
    anchor_word: str = ""
    category: str = ""
    value_source: str = ""
    extract_method: str = ""
    enum_options: str = ""
    example_value: str = ""
    description: str = ""
    output_format: str = ""
    group_name: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDefinition":
        """Build from a data hub field definition or a request body entry."""
        code = data.get("fieldCode") or data.get("code") or data.get("fieldName") or data.get("name") or ""
        name = data.get("fieldName") or data.get("name") or code
        category = data.get("fieldCategory") or data.get("字段类别") or ""
        return cls(
            field_code=_text(code),
            field_name=_text(name),
            anchor_word=_text(data.get("anchorWord") or data.get("定位词")),
            category=_text(category),
            value_source=_text(data.get("valueSource") or data.get("取值方式")),
            extract_method=_text(data.get("extractMethod") or data.get("提取方法")),
            enum_options=_text(data.get("enumOptions") or data.get("枚举值")),
            example_value=_text(data.get("exampleValue") or data.get("示例数据")),
            description=_text(data.get("fieldDescription") or data.get("description") or data.get("字段说明")),
            output_format=_text(data.get("outputFormat") or data.get("输出格式")),
            group_name=_text(data.get("groupName") or category),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "fieldCode": self.field_code,
            "fieldName": self.field_name,
            "anchorWord": self.anchor_word,
            "fieldCategory": self.category,
            "valueSource": self.value_source,
            "extractMethod": self.extract_method,
            "enumOptions": self.enum_options,
            "exampleValue": self.example_value,
            "fieldDescription": self.description,
            "outputFormat": self.output_format,
            "groupName": self.group_name,
        }

    def to_state(self, file_id: str) -> Dict[str, str]:
        """State bag consumed by the extraction agent workflow."""
        return {
            "fileId": file_id,
            "定位词": escape_for_agent(self.anchor_word),
            "字段名称": escape_for_agent(self.field_name),
            "字段类别": escape_for_agent(self.category),
            "取值方式": escape_for_agent(self.value_source),
            "提取方法": escape_for_agent(self.extract_method),
            "枚举值": escape_for_agent(self.enum_options),
            "示例数据": escape_for_agent(self.example_value),
            "字段说明": escape_for_agent(self.description),
            "输出格式": escape_for_agent(self.output_format) or DEFAULT_OUTPUT_FORMAT,
        }


@dataclass
class ExtractionResult:
    field_code: str
    field_name: str
    value: Optional[str]
    status: str
    evidence: Optional[Dict[str, Any]] = None
    raw_response: str = ""
    group_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fieldCode": self.field_code,
            "fieldName": self.field_name,
            "value": self.value,
            "status": self.status,
            "groupName": self.group_name or None,
            "evidenceRef": self.evidence,
            "rawResponse": self.raw_response,
        }


@dataclass
class FileExtraction:
    file_id: str
    ds_id: int
    file_url: str
    results: List[ExtractionResult] = field(default_factory=list)


def _now() -> str:
    return datetime.now().isoformat()


class FieldExtractor:
    """Runs extraction agents against files already indexed on the platform."""

    def __init__(self, client: AgentClient):
        self.client = client

    def extract_field(self, file_id: str, definition: FieldDefinition) -> ExtractionResult:
        """
        Extract one field. Agent failures degrade to a missing result that
        carries the error text instead of raising.
        """
        try:
            response = self.client.chat("normalExtract", _now(), definition.to_state(file_id))
        except AgentServiceError as e:
            logger.error(f"Extraction of '{definition.field_name}' failed for file {file_id}: {e}")
            return ExtractionResult(
                field_code=definition.field_code,
                field_name=definition.field_name,
                value=None,
                status=STATUS_MISSING,
                raw_response=str(e),
                group_name=definition.group_name,
            )

        content = self.client.get_text_content(response)
        normalized = normalize_field_value(content, definition.field_name)
        if normalized.value is None and content.strip():
            logger.info(f"Field '{definition.field_name}' not found, agent said: {content.strip()[:80]}")

        return ExtractionResult(
            field_code=definition.field_code,
            field_name=definition.field_name,
            value=normalized.value,
            status=normalized.status,
            evidence=normalized.evidence,
            raw_response=content,
            group_name=definition.group_name,
        )

    def batch_extract(self, file_id: str, definitions: Iterable[FieldDefinition]) -> List[ExtractionResult]:
        """Extract fields one after another; one result per definition, in order."""
        definitions = list(definitions)
        logger.info(f"Extracting {len(definitions)} fields from file {file_id}")
        return [self.extract_field(file_id, definition) for definition in definitions]

    def extract_with_vision(self, file_id: str, field_name: str, description: str = "") -> ExtractionResult:
        """Vision-model extraction for scans and images; the raw text is the value."""
        state = {"fileId": file_id, "字段名称": field_name, "字段说明": description}
        try:
            response = self.client.chat("visionExtract", _now(), state)
        except AgentServiceError as e:
            logger.error(f"Vision extraction of '{field_name}' failed for file {file_id}: {e}")
            return ExtractionResult(field_name, field_name, None, STATUS_MISSING, raw_response=str(e))

        content = self.client.get_text_content(response)
        value = content.strip() or None
        return ExtractionResult(
            field_code=field_name,
            field_name=field_name,
            value=value,
            status=STATUS_AUTO if value else STATUS_MISSING,
            raw_response=content,
        )

    def process_file(self, content: bytes, filename: str, definitions: Iterable[FieldDefinition]) -> FileExtraction:
        """Upload, wait for indexing, then extract every field."""
        indexed = self.client.upload_and_index(content, filename)
        self.client.wait_for_parsing(indexed.ds_id)
        results = self.batch_extract(indexed.file_id, definitions)
        return FileExtraction(
            file_id=indexed.file_id,
            ds_id=indexed.ds_id,
            file_url=indexed.file_url,
            results=results,
        )
