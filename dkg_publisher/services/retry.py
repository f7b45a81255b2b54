from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import random
from typing import Any

from dkg_publisher.services.publish_client import FatalFailure, PublishOutcome, PublishSuccess, RetryableFailure
from dkg_publisher.services.states import JobState

# Claim columns are released whenever an attempt is recorded.
_RELEASED_CLAIM = {"claimed_by": None, "claim_token": None, "lease_expires_at": None}


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    base_seconds: int = 30
    max_seconds: int = 900
    jitter_ratio: float = 0.2


@dataclass(frozen=True, slots=True)
class TransitionPlan:
    to_state: JobState
    fields: dict[str, Any]
    event_type: str
    event_payload: dict[str, Any] = field(default_factory=dict)


def compute_retry_delay_seconds(
    attempt: int,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> float:
    if policy.base_seconds <= 0:
        return 0.0
    multiplier = max(0, attempt - 1)
    delay = float(policy.base_seconds * (2**multiplier))
    if policy.jitter_ratio > 0:
        spread = delay * policy.jitter_ratio
        delay += (rng or random).uniform(-spread, spread)
    return max(0.0, min(delay, float(policy.max_seconds)))


def resolve_outcome(
    job: dict[str, Any],
    outcome: PublishOutcome,
    policy: RetryPolicy,
    *,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> TransitionPlan:
    """Map one publish attempt onto the next job state.

    Every recorded outcome consumes an attempt. Retryable failures go to
    RETRY_PENDING until ``max_attempts`` is reached, then to FAILED.
    """
    current = now or datetime.now(timezone.utc)
    attempts = int(job["attempts"]) + 1
    max_attempts = int(job["max_attempts"])

    if isinstance(outcome, PublishSuccess):
        return TransitionPlan(
            to_state=JobState.COMPLETED,
            fields={
                **_RELEASED_CLAIM,
                "attempts": attempts,
                "result": {
                    "networkId": outcome.network_id,
                    "publishStatus": "published",
                    "transactionHash": outcome.transaction_hash,
                },
                "last_error": None,
                "next_attempt_at": None,
                "completed_at": current,
            },
            event_type="completed",
            event_payload={"attempt": attempts, "network_id": outcome.network_id},
        )

    if isinstance(outcome, RetryableFailure) and attempts < max_attempts:
        delay = compute_retry_delay_seconds(attempts, policy, rng)
        next_attempt_at = current + timedelta(seconds=delay)
        return TransitionPlan(
            to_state=JobState.RETRY_PENDING,
            fields={
                **_RELEASED_CLAIM,
                "attempts": attempts,
                "last_error": {"code": outcome.code, "message": outcome.reason, "retryable": True},
                "next_attempt_at": next_attempt_at,
            },
            event_type="retry_scheduled",
            event_payload={"attempt": attempts, "code": outcome.code, "delay_seconds": round(delay, 3)},
        )

    if isinstance(outcome, RetryableFailure):
        last_error = {
            "code": "retry_exhausted",
            "message": outcome.reason,
            "attempts": attempts,
            "retryable": True,
            "lastCode": outcome.code,
        }
    elif isinstance(outcome, FatalFailure):
        last_error = {"code": outcome.code, "message": outcome.reason, "retryable": False}
    else:
        raise TypeError(f"unsupported publish outcome: {type(outcome).__name__}")

    return TransitionPlan(
        to_state=JobState.FAILED,
        fields={
            **_RELEASED_CLAIM,
            "attempts": attempts,
            "last_error": last_error,
            "next_attempt_at": None,
        },
        event_type="failed",
        event_payload={"attempt": attempts, "code": last_error["code"]},
    )
