"""Identity dependency for FastAPI.

Authentication happens upstream. The auth gateway forwards the caller's id
and role as headers and, when ``identity_header_secret`` is configured, signs
them so the service can reject headers injected by anyone else.
"""

import hmac
import uuid

from fastapi import Depends, HTTPException, Request

from campaign_escrow.config import settings
from campaign_escrow.utils.crypto import sign_identity

ROLES = {"user", "admin", "service"}


class AuthenticatedActor:
    """Container for the verified caller context."""

    def __init__(self, actor_id: uuid.UUID, role: str) -> None:
        self.actor_id = actor_id
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def verify_request(request: Request) -> AuthenticatedActor:
    """Read and verify the forwarded identity headers."""
    actor_header = request.headers.get("X-Actor-Id")
    role = (request.headers.get("X-Actor-Role") or "user").lower()

    if not actor_header:
        raise HTTPException(status_code=403, detail="Missing identity headers")

    try:
        actor_id = uuid.UUID(actor_header)
    except ValueError:
        raise HTTPException(status_code=403, detail="Malformed actor id")

    if role not in ROLES:
        raise HTTPException(status_code=403, detail="Unknown actor role")

    if settings.identity_header_secret:
        signature = request.headers.get("X-Actor-Signature", "")
        expected = sign_identity(settings.identity_header_secret, str(actor_id), role)
        if not signature or not hmac.compare_digest(expected, signature):
            raise HTTPException(status_code=403, detail="Invalid identity signature")

    return AuthenticatedActor(actor_id=actor_id, role=role)


async def require_admin(
    auth: AuthenticatedActor = Depends(verify_request),
) -> AuthenticatedActor:
    if auth.role != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return auth


async def require_service(
    auth: AuthenticatedActor = Depends(verify_request),
) -> AuthenticatedActor:
    """Campaign Service and payment pipeline callers (admins are let through too)."""
    if auth.role not in ("service", "admin"):
        raise HTTPException(status_code=403, detail="Service role required")
    return auth
