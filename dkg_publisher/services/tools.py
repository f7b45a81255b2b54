from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from dkg_publisher.services.intake import PublishIntakeService
from dkg_publisher.services.repository import RepositoryNotFoundError
from dkg_publisher.services.sessions import ToolSessionRegistry
from dkg_publisher.services.validator import PublishRequestValidationError, publish_request_json_schema

logger = logging.getLogger(__name__)

PUBLISH_TOOL_NAME = "knowledge-asset-publish"
STATUS_TOOL_NAME = "knowledge-asset-status"


class ToolNotFoundError(Exception):
    """Raised for an unknown tool name."""


class ToolSessionError(Exception):
    """Raised when a referenced session is unknown or expired."""


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    name: str
    title: str
    description: str
    input_schema: dict[str, Any]


def _publish_input_schema() -> dict[str, Any]:
    schema = publish_request_json_schema()
    schema["type"] = "object"
    properties = dict(schema.get("properties", {}))
    properties["privacy"] = {
        "type": "string",
        "enum": ["public", "private"],
        "description": "Shortcut for publishOptions.privacy.",
    }
    schema["properties"] = properties
    return schema


def _status_input_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {"jobId": {"type": "string", "description": "Identifier returned by the publish tool."}},
        "required": ["jobId"],
    }


class KnowledgeAssetTools:
    """Agent-facing tool facade over the intake service."""

    def __init__(self, intake: PublishIntakeService, sessions: ToolSessionRegistry) -> None:
        self.intake = intake
        self.sessions = sessions

    def definitions(self) -> list[ToolDefinition]:
        return [
            ToolDefinition(
                name=PUBLISH_TOOL_NAME,
                title="Publish Knowledge Asset",
                description="Register a JSON-LD asset for publishing to the DKG",
                input_schema=_publish_input_schema(),
            ),
            ToolDefinition(
                name=STATUS_TOOL_NAME,
                title="Knowledge Asset Status",
                description="Report the publishing status of a registered asset",
                input_schema=_status_input_schema(),
            ),
        ]

    async def invoke(self, name: str, arguments: Any, *, session_id: str | None = None) -> dict[str, Any]:
        if session_id is not None and self.sessions.touch(session_id) is None:
            raise ToolSessionError(f"unknown or expired session: {session_id}")

        if name == PUBLISH_TOOL_NAME:
            return await self._publish(arguments, session_id=session_id)
        if name == STATUS_TOOL_NAME:
            return await self._status(arguments)
        raise ToolNotFoundError(f"unknown tool: {name}")

    async def _publish(self, arguments: Any, *, session_id: str | None) -> dict[str, Any]:
        request = dict(arguments) if isinstance(arguments, dict) else arguments
        if isinstance(request, dict) and "privacy" in request:
            privacy = request.pop("privacy")
            options = request.get("publishOptions")
            options = dict(options) if isinstance(options, dict) else {}
            options.setdefault("privacy", privacy)
            request["publishOptions"] = options

        try:
            submission = await self.intake.submit(request, actor=f"tool-session:{session_id}" if session_id else None)
        except PublishRequestValidationError as exc:
            return _error_result(f"Invalid asset: {', '.join(exc.fields)}", {"fields": exc.fields, "errors": exc.errors})

        text = f"Asset registered for publishing: {submission.job_id} (Status: {submission.status})"
        if submission.duplicate:
            text += " [duplicate of an existing submission]"
        return {
            "content": [{"type": "text", "text": text}],
            "structuredContent": {
                "id": submission.job_id,
                "status": submission.status,
                "duplicate": submission.duplicate,
            },
            "isError": False,
        }

    async def _status(self, arguments: Any) -> dict[str, Any]:
        job_id = arguments.get("jobId") if isinstance(arguments, dict) else None
        if not isinstance(job_id, str) or not job_id.strip():
            return _error_result("jobId is required", {"fields": ["jobId"]})

        try:
            job = await self.intake.get_status(job_id.strip())
        except RepositoryNotFoundError:
            return _error_result(f"Asset not found: {job_id}", {"id": job_id})

        result = job.get("result") or {}
        text = f"Asset {job['id']} is {job['state']} after {job['attempts']} attempt(s)"
        if result.get("networkId"):
            text += f" (UAL: {result['networkId']})"
        return {
            "content": [{"type": "text", "text": text}],
            "structuredContent": {
                "id": job["id"],
                "status": job["state"],
                "attempts": job["attempts"],
                "networkId": result.get("networkId"),
                "lastError": job.get("last_error"),
            },
            "isError": False,
        }


def _error_result(text: str, structured: dict[str, Any]) -> dict[str, Any]:
    return {
        "content": [{"type": "text", "text": text}],
        "structuredContent": structured,
        "isError": True,
    }
