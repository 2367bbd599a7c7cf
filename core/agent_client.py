"""
Agent platform client: file upload, knowledge-base datasets and chat calls.

Chat calls are not retried; a failed call surfaces as AgentServiceError and the
caller decides how to degrade.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Callable, Dict, List, Optional

import httpx

from core.agent_config import (
    AGENT_HOST,
    AGENT_KB_ID,
    AGENT_REQUEST_TIMEOUT,
    PARSE_POLL_INTERVAL,
    AgentCredential,
    load_account_credential,
    load_agent_credentials,
)

logger = logging.getLogger(__name__)

logging.getLogger('httpx').setLevel(logging.WARNING)

# Dataset taskStatus codes reported by the knowledge base
TASK_STATUS_PENDING = 0
TASK_STATUS_RUNNING = 1
TASK_STATUS_PARSED = 2
TASK_STATUS_FAILED = 3
TASK_STATUS_CANCELLED = 4
TASK_STATUS_READY = 30  # Embedding finished, agents can use the dataset

PLATFORM_SUCCESS_CODE = 1


class AgentServiceError(Exception):
    """Custom exception for agent platform errors."""
    pass


@dataclass
class ParsingStatus:
    status: str  # pending | processing | completed | failed
    progress: str
    task_status: int

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "progress": self.progress, "taskStatus": self.task_status}


@dataclass
class IndexedFile:
    file_id: str
    ds_id: int
    file_url: str
    file_name: str


def generate_trace_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:11]}"


def map_task_status(task_status: int) -> str:
    """Map a raw dataset taskStatus onto pending/processing/completed/failed."""
    if task_status == TASK_STATUS_PENDING:
        return "pending"
    if task_status == TASK_STATUS_READY:
        return "completed"
    if task_status in (TASK_STATUS_FAILED, TASK_STATUS_CANCELLED):
        return "failed"
    # 1, 2 (text parsed, embedding pending), 20-29 and unknown codes
    return "processing"


def build_dataset_name(file_id: str, file_name: str) -> str:
    """Knowledge-base file name: `{fileId}_{base}.{ext}`."""
    path = PurePath(file_name)
    ext = path.suffix.lstrip(".")
    return f"{file_id}_{path.stem}.{ext}"


class AgentClient:
    """
    Wrapper for agent platform HTTP calls with error wrapping and logging.
    """

    def __init__(
        self,
        host: str = AGENT_HOST,
        kb_id: int = AGENT_KB_ID,
        account: Optional[AgentCredential] = None,
        agents: Optional[Dict[str, AgentCredential]] = None,
        http_client: Optional[httpx.Client] = None,
        poll_interval: float = PARSE_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.host = host.rstrip("/")
        self.kb_id = kb_id
        self.account = account or load_account_credential()
        self.agents = agents or load_agent_credentials()
        self.client = http_client or httpx.Client(base_url=self.host, timeout=AGENT_REQUEST_TIMEOUT)
        self.poll_interval = poll_interval
        self._sleep = sleep

    def _post(self, path: str, token: str, **kwargs) -> Any:
        headers = {"Authorization": token, "X-Trace-Id": generate_trace_id()}
        headers.update(kwargs.pop("headers", {}))
        try:
            response = self.client.post(path, headers=headers, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Agent platform returned {e.response.status_code} for {path}")
            raise AgentServiceError(f"HTTP {e.response.status_code} from {path}")
        except httpx.HTTPError as e:
            logger.error(f"Agent platform request failed for {path}: {e}")
            raise AgentServiceError(f"Request to {path} failed: {e}")
        except ValueError as e:
            logger.error(f"Agent platform returned non-JSON body for {path}: {e}")
            raise AgentServiceError(f"Invalid response from {path}")

    @staticmethod
    def _unwrap(payload: Dict[str, Any], failure_message: str) -> Any:
        if payload.get("code") != PLATFORM_SUCCESS_CODE:
            raise AgentServiceError(payload.get("msg") or failure_message)
        return payload.get("data")

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def upload_file(self, content: bytes, filename: str, return_type: str = "id") -> str:
        """
        Upload a file to the platform.

        Args:
            content: Raw file bytes
            filename: Original file name
            return_type: 'id' for an opaque fileId, 'url' for a direct URL

        Returns:
            The fileId or URL
        """
        payload = self._post(
            "/openapi/fs/upload",
            self.account.bearer_token,
            files={"file": (filename, content)},
            data={"returnType": return_type},
        )
        return self._unwrap(payload, "File upload failed")

    def get_file_url(self, file_id: str) -> str:
        return f"{self.host}/openapi/fs/{file_id}"

    # ------------------------------------------------------------------
    # Knowledge base
    # ------------------------------------------------------------------

    def create_dataset(self, file_id: str, name: str) -> int:
        """Create a knowledge-base dataset and start its parse task. Returns dsId."""
        payload = self._post(
            "/openapi/kb/createDsAndTask",
            self.account.bearer_token,
            json={"kbId": self.kb_id, "fileId": file_id, "name": name, "parserType": "general"},
        )
        return self._unwrap(payload, "Dataset creation failed")

    def query_datasets(self, ds_ids: List[int]) -> List[Dict[str, Any]]:
        payload = self._post(
            "/openapi/kb/ds/query",
            self.account.bearer_token,
            json={"kbId": self.kb_id, "dsIds": ds_ids, "pageNum": 1, "pageSize": 100},
        )
        data = self._unwrap(payload, "Dataset query failed") or {}
        return data.get("list") or []

    def _find_dataset(self, ds_id: int) -> Optional[Dict[str, Any]]:
        for dataset in self.query_datasets([ds_id]):
            if dataset.get("id") == ds_id:
                return dataset
        return None

    def check_parsing_status(self, ds_id: int) -> ParsingStatus:
        dataset = self._find_dataset(ds_id)
        if not dataset:
            return ParsingStatus(status="failed", progress="0%", task_status=-1)

        task_status = dataset.get("taskStatus", -1)
        status = map_task_status(task_status)
        progress = dataset.get("progress") or "0%"
        logger.info(f"Parsing status dsId={ds_id} taskStatus={task_status} progress={progress} status={status}")
        return ParsingStatus(status=status, progress=progress, task_status=task_status)

    def wait_for_parsing(self, ds_id: int) -> bool:
        """
        Poll the dataset until it is ready for agents.

        There is no timeout: polling continues at a fixed interval until the
        dataset reports ready or a terminal failure.

        Raises:
            AgentServiceError: dataset missing, failed or cancelled
        """
        while True:
            dataset = self._find_dataset(ds_id)
            if not dataset:
                raise AgentServiceError(f"Dataset {ds_id} does not exist")

            task_status = dataset.get("taskStatus")
            if task_status == TASK_STATUS_READY:
                logger.info(f"Dataset {ds_id} ready")
                return True

            if task_status in (TASK_STATUS_FAILED, TASK_STATUS_CANCELLED):
                raise AgentServiceError(f"Dataset {ds_id} parsing failed (taskStatus={task_status})")

            logger.info(f"Dataset {ds_id} parsing... taskStatus={task_status}, progress={dataset.get('progress')}")
            self._sleep(self.poll_interval)

    def upload_and_index(self, content: bytes, filename: str) -> IndexedFile:
        """Upload a file (id + preview URL) and register it in the knowledge base."""
        file_id = self.upload_file(content, filename, "id")
        file_url = self.upload_file(content, filename, "url")
        ds_name = build_dataset_name(file_id, filename)
        ds_id = self.create_dataset(file_id, ds_name)
        logger.info(f"Indexed {filename}: fileId={file_id} dsId={ds_id}")
        return IndexedFile(file_id=file_id, ds_id=ds_id, file_url=file_url, file_name=filename)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def chat(
        self,
        agent_type: str,
        user_input: str,
        state: Optional[Dict[str, Any]] = None,
        chat_id: Optional[int] = None,
        files: Optional[List[Dict[str, str]]] = None,
    ) -> Dict[str, Any]:
        """
        Invoke a named agent with a state bag.

        Args:
            agent_type: One of the configured agent names (normalExtract, basicAudit, ...)
            user_input: Free-form user input; callers pass the current time
            state: Key/value state bag consumed by the agent workflow
            chat_id: Continue an existing conversation
            files: Optional file references [{"fileId": ...}]

        Returns:
            Raw chat response dictionary

        Raises:
            AgentServiceError: unknown agent or failed request
        """
        credential = self.agents.get(agent_type)
        if credential is None:
            raise AgentServiceError(f"Unknown agent type: {agent_type}")

        body: Dict[str, Any] = {
            "agentId": credential.agent_id,
            "chatId": chat_id or None,
            "userChatInput": user_input,
            "state": state or {},
            "debug": True,
        }
        if files:
            body["files"] = files

        logger.debug(f"Agent request {agent_type}: {json.dumps(body, ensure_ascii=False)}")
        response = self._post("/openapi/v2/chat/completions", credential.bearer_token, json=body)
        logger.debug(f"Agent response {agent_type}: {json.dumps(response, ensure_ascii=False)}")
        return response

    @staticmethod
    def get_text_content(response: Dict[str, Any]) -> str:
        choices = response.get("choices") or []
        return "".join(c.get("content", "") for c in choices if c.get("type") == "text" and c.get("content"))

    def parse_content(self, response: Dict[str, Any]) -> Optional[Any]:
        try:
            return json.loads(self.get_text_content(response))
        except json.JSONDecodeError:
            return None

    def close(self) -> None:
        self.client.close()


_default_client: Optional[AgentClient] = None


def get_agent_client() -> AgentClient:
    """Shared client instance (FastAPI dependency)."""
    global _default_client
    if _default_client is None:
        _default_client = AgentClient()
    return _default_client
