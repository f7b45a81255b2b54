from dataclasses import dataclass

ADMIN_READ_SCOPE = "admin:read"
ADMIN_WRITE_SCOPE = "admin:write"


@dataclass(slots=True)
class Principal:
    subject: str
    scopes: set[str]
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


def parse_scope_list(raw: object) -> set[str]:
    if isinstance(raw, str):
        return {chunk.strip() for chunk in raw.split(",") if chunk.strip()}
    if isinstance(raw, list):
        return {item.strip() for item in raw if isinstance(item, str) and item.strip()}
    return set()
