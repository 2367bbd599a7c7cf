"""
Agent platform configuration.

One account-level credential pair (file upload, knowledge base) plus one pair
per logical agent. Every value can be overridden from the environment.
"""

import os
from dataclasses import dataclass
from typing import Dict

AGENT_HOST = os.getenv("AGENT_HOST", "https://qj.agentspro.cn").rstrip("/")
AGENT_KB_ID = int(os.getenv("AGENT_KB_ID", "761"))
AGENT_REQUEST_TIMEOUT = float(os.getenv("AGENT_REQUEST_TIMEOUT", "600"))
PARSE_POLL_INTERVAL = float(os.getenv("AGENT_PARSE_POLL_INTERVAL", "3"))

AGENT_TYPES = ("normalExtract", "visionExtract", "fileClassify", "basicAudit", "codeAudit")

# Environment variable stem for each agent type
_ENV_NAMES = {
    "normalExtract": "NORMAL_EXTRACT",
    "visionExtract": "VISION_EXTRACT",
    "fileClassify": "FILE_CLASSIFY",
    "basicAudit": "BASIC_AUDIT",
    "codeAudit": "CODE_AUDIT",
}


@dataclass(frozen=True)
class AgentCredential:
    auth_key: str
    auth_secret: str
    uuid: str = ""

    @property
    def agent_id(self) -> str:
        return self.uuid or self.auth_key

    @property
    def bearer_token(self) -> str:
        return get_bearer_token(self.auth_key, self.auth_secret)


def get_bearer_token(auth_key: str, auth_secret: str) -> str:
    return f"Bearer {auth_key}.{auth_secret}"


def load_account_credential() -> AgentCredential:
    return AgentCredential(
        auth_key=os.getenv("AGENT_ACCOUNT_KEY", ""),
        auth_secret=os.getenv("AGENT_ACCOUNT_SECRET", ""),
    )


def load_agent_credentials() -> Dict[str, AgentCredential]:
    credentials = {}
    for agent_type in AGENT_TYPES:
        stem = _ENV_NAMES[agent_type]
        credentials[agent_type] = AgentCredential(
            auth_key=os.getenv(f"AGENT_{stem}_KEY", ""),
            auth_secret=os.getenv(f"AGENT_{stem}_SECRET", ""),
            uuid=os.getenv(f"AGENT_{stem}_UUID", ""),
        )
    return credentials
