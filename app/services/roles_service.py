from typing import Optional

from firebase_admin import auth as firebase_auth

from ..core.auth import VALID_ROLES, _init_firebase_app
from ..core.database import execute

users_table_ready = False


async def ensure_users_table():
    global users_table_ready
    if users_table_ready:
        return
    await execute(
        """
        CREATE TABLE IF NOT EXISTS users (
          id TEXT PRIMARY KEY,
          email TEXT NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """
    )
    users_table_ready = True


async def ensure_user(user_id: str, email: Optional[str]):
    """Keep a local row per Firebase user so submissions can show who acted."""
    await ensure_users_table()
    safe_email = email or f"{user_id}@placeholder.local"
    await execute(
        """
        INSERT INTO users (id, email)
        VALUES (%s, %s)
        ON CONFLICT (id) DO UPDATE SET email = EXCLUDED.email
        """,
        [user_id, safe_email],
    )


async def set_user_role(uid: str, role: str, department_id: Optional[str] = None):
    if role not in VALID_ROLES:
        raise ValueError(f"Role must be one of: {', '.join(sorted(VALID_ROLES))}")
    if role == "hod" and not department_id:
        raise ValueError("department_id is required for the hod role")

    claims = {"role": role}
    if department_id:
        claims["department_id"] = department_id

    _init_firebase_app()
    firebase_auth.set_custom_user_claims(uid, claims)
