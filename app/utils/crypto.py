"""HMAC signing of the actor context handed over by the identity provider."""

import hashlib
import hmac
from datetime import UTC, datetime


def build_actor_message(timestamp: str, actor_id: str, role: str) -> bytes:
    """Build the message to sign: timestamp.actor_id.role."""
    return f"{timestamp}.{actor_id}.{role}".encode()


def sign_actor_context(secret: str, timestamp: str, actor_id: str, role: str) -> str:
    """Return the hex HMAC-SHA256 signature for an actor context."""
    message = build_actor_message(timestamp, actor_id, role)
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_actor_signature(
    secret: str,
    signature_hex: str,
    timestamp: str,
    actor_id: str,
    role: str,
) -> bool:
    """Constant-time check of an actor context signature."""
    expected = sign_actor_context(secret, timestamp, actor_id, role)
    return hmac.compare_digest(expected, signature_hex)


def is_timestamp_valid(timestamp: str, max_age_seconds: int = 300) -> bool:
    """Check if a timestamp is within the allowed window."""
    try:
        ts = datetime.fromisoformat(timestamp)
        if ts.tzinfo is None:
            return False
        now = datetime.now(UTC)
        delta = abs((now - ts).total_seconds())
        return delta <= max_age_seconds
    except (ValueError, TypeError):
        return False
