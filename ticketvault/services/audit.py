from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ticketvault.domain.actors import Actor
from ticketvault.domain.models import TicketHistory


_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "api_key"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub credential-like keys while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value



def add_ticket_history(
    session: AsyncSession,
    *,
    ticket_id: str,
    tenant_id: str,
    actor: Actor,
    action: str,
    metadata: dict[str, Any] | None = None,
) -> TicketHistory:
    """Stage an audit trail row in the caller's transaction.

    The row commits or rolls back together with the ticket change it describes.
    """
    entry = TicketHistory(
        ticket_id=ticket_id,
        tenant_id=tenant_id,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        actor_role=actor.role,
        action=action,
        metadata_json=sanitize_metadata(metadata or {}),
    )
    session.add(entry)
    return entry
