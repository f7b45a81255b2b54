import hashlib
import hmac
import json

from fastapi import Depends, HTTPException, Request, status

from dkg_publisher.core.auth import Principal, parse_scope_list
from dkg_publisher.core.config import Settings, get_settings


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def load_admin_key_scopes(raw: str | None) -> dict[str, set[str]]:
    """Parse ``{"<sha256 of key>": ["admin:read", ...]}``; raises ValueError on malformed input."""
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("admin key map must be a JSON object")
    return {str(key_hash).strip().lower(): parse_scope_list(scopes) for key_hash, scopes in parsed.items()}


async def get_admin_principal(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> Principal:
    try:
        key_scopes = load_admin_key_scopes(settings.admin_api_keys_json)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="admin auth is misconfigured",
        ) from exc

    if not key_scopes:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="admin auth is not configured")

    api_key = request.headers.get(settings.api_key_header)
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"admin auth requires {settings.api_key_header}",
        )

    key_hash = hash_api_key(api_key)
    matched = next((candidate for candidate in key_scopes if hmac.compare_digest(candidate, key_hash)), None)
    if matched is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid admin credentials")

    return Principal(
        subject=f"admin-key:{matched[:12]}",
        scopes=key_scopes[matched],
        actor_id=f"admin-key:{matched[:12]}",
    )
