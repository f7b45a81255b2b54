#!/usr/bin/env python3
"""Emit a DKGP_ADMIN_API_KEYS_JSON entry for an operator API key."""

from __future__ import annotations

import argparse
import hashlib
import json
import secrets

DEFAULT_SCOPES = ["admin:read", "admin:write"]


def render_env(*, api_key: str, scopes: list[str]) -> str:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    entry = json.dumps({key_hash: sorted(set(scopes))}, separators=(",", ":"))
    return f"DKGP_ADMIN_API_KEYS_JSON='{entry}'"


def main() -> None:
    parser = argparse.ArgumentParser(description="Hash an admin API key for DKGP_ADMIN_API_KEYS_JSON.")
    parser.add_argument("--key", help="API key to hash; a random one is generated when omitted")
    parser.add_argument(
        "--scope",
        action="append",
        choices=DEFAULT_SCOPES,
        help="Scope granted to the key (repeatable, defaults to all admin scopes)",
    )
    args = parser.parse_args()

    api_key = args.key or secrets.token_urlsafe(32)
    if not args.key:
        print(f"# generated key (store it now, it is not recoverable): {api_key}")
    print(render_env(api_key=api_key, scopes=args.scope or DEFAULT_SCOPES))


if __name__ == "__main__":
    main()
