"""Request-scoped caller context passed explicitly into every mutation."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RequestContext:
    """Who is performing an operation, and from where."""

    admin_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def system(cls) -> RequestContext:
        """Context for seeding scripts and the CLI."""
        return cls(admin_id=None, ip_address=None, user_agent="workspace-registry/system")
