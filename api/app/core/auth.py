from dataclasses import dataclass

ADMIN_SCOPE = "jobs:admin"


@dataclass(slots=True)
class Principal:
    subject: str
    scopes: set[str]
    role: str | None = None
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return ADMIN_SCOPE in self.scopes

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")
