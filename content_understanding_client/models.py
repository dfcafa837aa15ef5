import os
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class OperationStatus(str, Enum):
    not_started = "notStarted"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["OperationStatus"]:
        """Case-insensitive lookup; unknown interim states map to None"""
        if not isinstance(raw, str):
            return None
        lowered = raw.lower()
        for status in cls:
            if status.value.lower() == lowered:
                return status
        return None

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.succeeded, OperationStatus.failed)


class OperationHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation_url: str
    request_id: Optional[str] = None

    @property
    def operation_id(self) -> str:
        return self.operation_url.split("?")[0].rstrip("/").split("/")[-1]


class OperationError(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: Any = ""
    message: Any = ""
    details: Optional[Any] = None


class StatusResponse(BaseModel):
    status: Optional[OperationStatus]
    raw_status: str
    raw_response: dict
    elapsed_time: float


class ResultDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    result: Any
    raw_response: dict
    operation_id: str
    elapsed_time: float
    attempts: int


class AnalyzerListResponse(BaseModel):
    value: List[Dict[str, Any]] = Field(default_factory=list)
    next_link: Optional[str] = Field(default=None, alias="nextLink")


class PollingConfig(BaseModel):
    timeout_seconds: float = Field(gt=0)
    polling_interval_seconds: float = Field(default=2.0, gt=0)


# Budgets the bundled samples use per operation type. Callers pick one
# explicitly; nothing in the client falls back to them.
ANALYZE_POLLING = PollingConfig(timeout_seconds=120.0)
CREATE_ANALYZER_POLLING = PollingConfig(timeout_seconds=300.0)
PRO_MODE_POLLING = PollingConfig(timeout_seconds=600.0)


class ClientSettings(BaseModel):
    endpoint: str
    api_version: str
    subscription_key: Optional[str] = None
    user_agent: str = "cu-sample-code"

    @classmethod
    def from_env(cls) -> "ClientSettings":
        """Reads AZURE_AI_ENDPOINT, AZURE_AI_API_VERSION, AZURE_AI_API_KEY and AZURE_AI_USER_AGENT"""
        return cls(
            endpoint=os.getenv("AZURE_AI_ENDPOINT", ""),
            api_version=os.getenv("AZURE_AI_API_VERSION", "2025-05-01-preview"),
            subscription_key=os.getenv("AZURE_AI_API_KEY") or None,
            user_agent=os.getenv("AZURE_AI_USER_AGENT", "cu-sample-code"),
        )
