from typing import Any

from pydantic import Field

from dkg_publisher.schemas.base import ApiModel


class ToolDefinitionOut(ApiModel):
    name: str
    title: str
    description: str
    input_schema: dict[str, Any]


class ToolSessionOut(ApiModel):
    session_id: str
    ttl_seconds: float


class ToolInvokeRequest(ApiModel):
    arguments: Any = Field(default_factory=dict)


class ToolContentOut(ApiModel):
    type: str
    text: str


class ToolResultOut(ApiModel):
    content: list[ToolContentOut]
    structured_content: dict[str, Any] = Field(default_factory=dict)
    is_error: bool = False
