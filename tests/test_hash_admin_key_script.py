from __future__ import annotations

import hashlib
import json
import subprocess
import sys
from pathlib import Path

SCRIPT_PATH = Path(__file__).resolve().parents[1] / "scripts" / "hash_admin_key.py"


def _run_script(*args: str) -> str:
    completed = subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def _parse_env_line(output: str) -> dict[str, list[str]]:
    line = next(line for line in output.splitlines() if line.startswith("DKGP_ADMIN_API_KEYS_JSON="))
    return json.loads(line.split("=", 1)[1].strip("'"))


def test_script_hashes_given_key_with_scopes() -> None:
    output = _run_script("--key", "operator-key", "--scope", "admin:read")

    parsed = _parse_env_line(output)
    assert parsed == {hashlib.sha256(b"operator-key").hexdigest(): ["admin:read"]}
    assert "generated key" not in output


def test_script_generates_key_with_all_scopes_by_default() -> None:
    output = _run_script()

    assert output.startswith("# generated key")
    generated = output.splitlines()[0].rsplit(": ", 1)[1]
    parsed = _parse_env_line(output)
    assert parsed == {hashlib.sha256(generated.encode("utf-8")).hexdigest(): ["admin:read", "admin:write"]}
