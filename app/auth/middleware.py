"""Actor context verification dependency for FastAPI."""

import enum
import uuid

from fastapi import HTTPException, Request

from app.config import settings
from app.utils.crypto import is_timestamp_valid, verify_actor_signature


class ActorRole(enum.Enum):
    CUSTOMER = "customer"
    HANDYMAN = "handyman"
    ADMIN = "admin"


class AuthenticatedActor:
    """Container for the verified actor context."""

    def __init__(self, actor_id: uuid.UUID, role: ActorRole) -> None:
        self.actor_id = actor_id
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role is ActorRole.ADMIN


async def verify_request(request: Request) -> AuthenticatedActor:
    """Verify the signed actor headers on an incoming request."""
    actor_header = request.headers.get("X-Actor-Id")
    role_header = request.headers.get("X-Actor-Role")
    timestamp = request.headers.get("X-Timestamp")
    signature = request.headers.get("X-Signature")

    if not actor_header or not role_header or not timestamp or not signature:
        raise HTTPException(status_code=403, detail="Missing authentication headers")

    try:
        actor_id = uuid.UUID(actor_header)
        role = ActorRole(role_header)
    except ValueError:
        raise HTTPException(status_code=403, detail="Malformed actor headers")

    if not is_timestamp_valid(timestamp, settings.signature_max_age_seconds):
        raise HTTPException(status_code=403, detail="Request timestamp expired")

    if not verify_actor_signature(
        settings.platform_signing_key, signature, timestamp, actor_header, role_header
    ):
        raise HTTPException(status_code=403, detail="Invalid signature")

    return AuthenticatedActor(actor_id=actor_id, role=role)
