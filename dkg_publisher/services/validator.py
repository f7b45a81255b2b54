from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError, field_validator
from pydantic_core import PydanticCustomError

Priority = Annotated[StrictInt, Field(ge=0, le=100)]
PositiveCount = Annotated[StrictInt, Field(gt=0)]
Privacy = Literal["public", "private"]


class PublishMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    source: StrictStr = Field(description="Integration that submitted the asset.")
    source_id: StrictStr = Field(alias="sourceId", description="Caller identity used for deduplication.")
    priority: Priority | None = None

    @field_validator("source", "source_id")
    @classmethod
    def _require_text(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise PydanticCustomError("blank_string", "must be a non-empty string")
        return stripped


class PublishOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    privacy: Privacy | None = None
    epochs: PositiveCount | None = None
    max_attempts: PositiveCount | None = Field(default=None, alias="maxAttempts")
    priority: Priority | None = None


class PublishRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    content: dict[str, Any] | str = Field(description="JSON-LD document to publish.")
    # Validated even when absent so that source and sourceId are reported individually.
    metadata: PublishMetadata = Field(default_factory=dict, validate_default=True)
    publish_options: PublishOptions | None = Field(default=None, alias="publishOptions")

    @field_validator("metadata", mode="before")
    @classmethod
    def _default_metadata(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("content", mode="before")
    @classmethod
    def _require_content(cls, value: Any) -> Any:
        if value is None:
            raise PydanticCustomError("content_missing", "content is required")
        if isinstance(value, str):
            if not value.strip():
                raise PydanticCustomError("content_empty", "content must not be empty")
            return value
        if isinstance(value, dict):
            if not value:
                raise PydanticCustomError("content_empty", "content must not be empty")
            return value
        raise PydanticCustomError("content_type", "content must be a JSON object or string")


@dataclass(frozen=True, slots=True)
class PublishDefaults:
    priority: int = 50
    privacy: str = "public"
    epochs: int = 2
    max_attempts: int = 3


@dataclass(frozen=True, slots=True)
class ValidatedPublishRequest:
    content: dict[str, Any] | str
    source: str
    source_id: str
    priority: int
    privacy: str
    epochs: int
    max_attempts: int
    extra_metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "metadata": {
                **self.extra_metadata,
                "source": self.source,
                "sourceId": self.source_id,
                "priority": self.priority,
            },
            "publishOptions": {
                "privacy": self.privacy,
                "epochs": self.epochs,
                "maxAttempts": self.max_attempts,
            },
        }


class PublishRequestValidationError(Exception):
    """Raised with every violated field of a publish request."""

    def __init__(self, errors: list[dict[str, str]]) -> None:
        self.errors = errors
        super().__init__(f"invalid publish request: {', '.join(self.fields)}")

    @property
    def fields(self) -> list[str]:
        seen: list[str] = []
        for error in self.errors:
            if error["field"] not in seen:
                seen.append(error["field"])
        return seen


def validate_publish_request(raw: Any, defaults: PublishDefaults | None = None) -> ValidatedPublishRequest:
    resolved_defaults = defaults or PublishDefaults()
    if not isinstance(raw, dict):
        raise PublishRequestValidationError([{"field": "body", "message": "request body must be a JSON object"}])

    try:
        parsed = PublishRequest.model_validate(raw)
    except ValidationError as exc:
        raise PublishRequestValidationError(_field_errors(exc)) from exc

    options = parsed.publish_options or PublishOptions()
    priority = parsed.metadata.priority
    if priority is None:
        priority = options.priority if options.priority is not None else resolved_defaults.priority

    return ValidatedPublishRequest(
        content=parsed.content,
        source=parsed.metadata.source,
        source_id=parsed.metadata.source_id,
        priority=priority,
        privacy=options.privacy or resolved_defaults.privacy,
        epochs=options.epochs or resolved_defaults.epochs,
        max_attempts=options.max_attempts or resolved_defaults.max_attempts,
        extra_metadata=dict(parsed.metadata.model_extra or {}),
    )


def publish_request_json_schema() -> dict[str, Any]:
    return PublishRequest.model_json_schema(by_alias=True)


def _field_errors(exc: ValidationError) -> list[dict[str, str]]:
    errors: list[dict[str, str]] = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ())]
        # Union members add their type name to the location.
        if loc and loc[0] == "content":
            loc = ["content"]
        errors.append({"field": ".".join(loc) or "body", "message": error.get("msg", "invalid value")})
    return errors
