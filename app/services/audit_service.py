import logging
from typing import Any, List, Optional

from fastapi.encoders import jsonable_encoder
from psycopg.types.json import Jsonb

from ..core.config import settings
from ..core.database import execute, fetch
from ..models.audit import AuditEntry
from .roles_service import ensure_users_table

log = logging.getLogger(__name__)

audit_table_ready = False


async def _ensure_table():
    global audit_table_ready
    if audit_table_ready:
        return
    await ensure_users_table()
    await execute(
        """
        CREATE EXTENSION IF NOT EXISTS "pgcrypto";
        CREATE TABLE IF NOT EXISTS audit_logs (
          id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          actor_id TEXT NOT NULL,
          action_type TEXT NOT NULL,
          entity_type TEXT,
          entity_id TEXT,
          old_value JSONB,
          new_value JSONB,
          ip_address TEXT,
          user_agent TEXT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE INDEX IF NOT EXISTS audit_logs_entity_idx ON audit_logs(entity_type, entity_id);
        CREATE INDEX IF NOT EXISTS audit_logs_actor_idx ON audit_logs(actor_id, created_at DESC);
        """
    )
    audit_table_ready = True


def _json_or_none(value: Any) -> Optional[Jsonb]:
    if value is None:
        return None
    return Jsonb(jsonable_encoder(value))


async def log_action(
    actor_id: str,
    action_type: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    old_value: Any = None,
    new_value: Any = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
):
    """Append to the audit trail. A failed write is logged and never fails the caller."""
    try:
        await _ensure_table()
        await execute(
            """
            INSERT INTO audit_logs (
              actor_id, action_type, entity_type, entity_id, old_value, new_value, ip_address, user_agent
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            [
                actor_id,
                action_type,
                entity_type,
                entity_id,
                _json_or_none(old_value),
                _json_or_none(new_value),
                ip_address,
                user_agent,
            ],
        )
    except Exception:  # pragma: no cover - audit must not break the request
        log.exception("Failed to write audit log %s for %s %s", action_type, entity_type, entity_id)


async def get_entity_logs(entity_type: str, entity_id: str, limit: Optional[int] = None) -> List[AuditEntry]:
    await _ensure_table()
    rows = await fetch(
        """
        SELECT al.*, u.email AS actor_email
        FROM audit_logs al
        LEFT JOIN users u ON u.id = al.actor_id
        WHERE al.entity_type = %s AND al.entity_id = %s
        ORDER BY al.created_at DESC
        LIMIT %s
        """,
        [entity_type, entity_id, limit or settings.audit_log_limit],
    )
    return [
        AuditEntry(
            id=str(r["id"]),
            actor_id=r["actor_id"],
            actor=r.get("actor_email"),
            action_type=r["action_type"],
            entity_type=r.get("entity_type"),
            entity_id=r.get("entity_id"),
            old_value=r.get("old_value"),
            new_value=r.get("new_value"),
            created_at=r.get("created_at"),
        )
        for r in rows
    ]


def request_metadata(request) -> dict:
    """Client address and user agent of a FastAPI request, for ``log_action``."""
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
