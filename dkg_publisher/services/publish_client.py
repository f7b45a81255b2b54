from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
from typing import Any, Protocol, Union

import httpx

from dkg_publisher.core.config import get_settings

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


@dataclass(frozen=True, slots=True)
class PublishSuccess:
    network_id: str
    transaction_hash: str | None = None


@dataclass(frozen=True, slots=True)
class RetryableFailure:
    reason: str
    code: str = "transient_error"


@dataclass(frozen=True, slots=True)
class FatalFailure:
    reason: str
    code: str = "rejected"


PublishOutcome = Union[PublishSuccess, RetryableFailure, FatalFailure]


class PublishClient(Protocol):
    @property
    def configured(self) -> bool: ...

    async def publish(self, content: dict[str, Any] | str, *, privacy: str, epochs: int) -> PublishOutcome: ...


class HttpPublishClient:
    """Submits one knowledge asset to a DKG node's HTTP publish endpoint."""

    def __init__(
        self,
        endpoint: str | None,
        *,
        publish_path: str = "/publish",
        blockchain: str,
        timeout_seconds: float = 120.0,
        api_token: str | None = None,
        finalization_confirmations: int = 3,
        node_replications: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/") if endpoint else None
        self.publish_path = "/" + publish_path.lstrip("/")
        self.blockchain = blockchain
        self.timeout_seconds = timeout_seconds
        self.finalization_confirmations = finalization_confirmations
        self.node_replications = node_replications
        self.headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.endpoint)

    async def publish(self, content: dict[str, Any] | str, *, privacy: str, epochs: int) -> PublishOutcome:
        if not self.endpoint:
            return FatalFailure(reason="publish endpoint is not configured", code="not_configured")

        body = {
            "content": {privacy: content},
            "epochs": epochs,
            "blockchain": self.blockchain,
            "minimumNumberOfFinalizationConfirmations": self.finalization_confirmations,
            "minimumNumberOfNodeReplications": self.node_replications,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(f"{self.endpoint}{self.publish_path}", json=body, headers=self.headers)
        except httpx.TimeoutException as exc:
            return RetryableFailure(reason=f"publish request timed out: {exc}", code="timeout")
        except httpx.HTTPError as exc:
            return RetryableFailure(reason=f"publish request failed: {exc}", code="network_error")

        return classify_response(response)


def classify_response(response: httpx.Response) -> PublishOutcome:
    status_code = response.status_code
    if status_code in _RETRYABLE_STATUS_CODES or status_code >= 500:
        return RetryableFailure(reason=f"publish endpoint returned {status_code}", code=f"http_{status_code}")
    if status_code >= 400:
        return FatalFailure(
            reason=f"publish endpoint rejected the asset with {status_code}: {_short_text(response)}",
            code=f"http_{status_code}",
        )

    try:
        payload = response.json()
    except ValueError:
        return RetryableFailure(reason="publish endpoint returned invalid JSON", code="invalid_response")
    if not isinstance(payload, dict):
        return RetryableFailure(reason="publish endpoint returned an unexpected body", code="invalid_response")

    operation = payload.get("operation") if isinstance(payload.get("operation"), dict) else {}
    publish_operation = operation.get("publish") if isinstance(operation.get("publish"), dict) else {}
    error_type = publish_operation.get("errorType")
    if error_type:
        message = f"{error_type}: {publish_operation.get('errorMessage') or 'publish operation failed'}"
        if "validation" in str(error_type).lower():
            return FatalFailure(reason=message, code="validation_error")
        return RetryableFailure(reason=message, code="operation_error")

    network_id = payload.get("UAL")
    if not isinstance(network_id, str) or not network_id.strip():
        logger.warning(
            "publish endpoint returned success without a network id status=%s operation_id=%s",
            status_code,
            publish_operation.get("operationId"),
        )
        return RetryableFailure(reason="publish endpoint returned success without a network id", code="missing_ual")

    mint_operation = operation.get("mintKnowledgeCollection")
    transaction_hash = mint_operation.get("transactionHash") if isinstance(mint_operation, dict) else None
    return PublishSuccess(network_id=network_id.strip(), transaction_hash=transaction_hash)


def _short_text(response: httpx.Response, limit: int = 200) -> str:
    text = response.text.strip()
    return text if len(text) <= limit else f"{text[:limit]}..."


@lru_cache
def get_publish_client() -> HttpPublishClient | None:
    settings = get_settings()
    if not settings.dkg_endpoint:
        return None
    return HttpPublishClient(
        settings.dkg_endpoint,
        publish_path=settings.dkg_publish_path,
        blockchain=settings.dkg_blockchain,
        timeout_seconds=settings.publish_timeout_seconds,
        api_token=settings.dkg_api_token,
        finalization_confirmations=settings.dkg_finalization_confirmations,
        node_replications=settings.dkg_node_replications,
    )
