from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AttachmentRecord(BaseModel):
    """An inbound attachment after path, MIME and transcode resolution."""

    attachment_id: str | None = None
    original_path: str
    mime_type: str | None = None
    missing: bool = False


class MessageRecord(BaseModel):
    """One inbound message as pushed to the host in a ``message`` notification."""

    id: int
    text: str = ""
    sender: str
    chat_id: int | None = None
    chat_identifier: str | None = None
    chat_name: str | None = None
    is_group: bool = False
    is_from_me: bool = False
    created_at: str
    date: str
    attachments: List[AttachmentRecord] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class SendParams(BaseModel):
    """Parameters accepted by the ``send`` method."""

    model_config = ConfigDict(extra="ignore")

    text: str | None = None
    file: str | None = None
    to: str | None = None
    chat_id: str | None = None
    chat_guid: str | None = None
    chat_identifier: str | None = None
    service: str | None = None

    @field_validator("to", "chat_id", "chat_guid", "chat_identifier", "text", "file", "service", mode="before")
    @classmethod
    def stringify(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class SubscribeParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    attachments: bool = False

    @field_validator("attachments", mode="before")
    @classmethod
    def truthy(cls, value: Any) -> bool:
        return bool(value)


class RpcRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    jsonrpc: str | None = None
    id: Any = None
    method: Any = None
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("params", mode="before")
    @classmethod
    def default_params(cls, value: Any) -> Any:
        return {} if value is None else value


__all__ = [
    "AttachmentRecord",
    "MessageRecord",
    "RpcRequest",
    "SendParams",
    "SubscribeParams",
]
