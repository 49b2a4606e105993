"""Chat system-message notifications.

Every externally visible transition posts a human-readable system message
to the conversation between the two parties. Messages go through an outbox
(the system_messages table) after the authoritative commit; a background
dispatcher delivers them to the chat service. Notification failures are
logged and never undo or block the state change that triggered them.
"""

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from typing import Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.notification import MessageStatus, SystemMessage

logger = logging.getLogger(__name__)

DISPATCH_BATCH_SIZE = 50
DISPATCH_IDLE_SECONDS = 5


def conversation_key(party_a: uuid.UUID | str, party_b: uuid.UUID | str) -> str:
    """Deterministic conversation id for a pair of participants."""
    return "_".join(sorted([str(party_a), str(party_b)]))


async def post_system_message(
    db: AsyncSession,
    conversation: str,
    text: str,
    metadata: dict,
) -> SystemMessage | None:
    """Record a system message in the outbox. Best-effort: returns None on failure."""
    message = SystemMessage(
        message_id=uuid.uuid4(),
        conversation_key=conversation,
        event_type=str(metadata.get("type", "system")),
        text=text,
        metadata_=metadata,
        status=MessageStatus.PENDING,
    )
    try:
        db.add(message)
        await db.commit()
    except Exception:
        logger.exception("Failed to record system message for %s", conversation)
        await db.rollback()
        return None

    logger.info("System message queued: %s → %s", message.event_type, conversation)
    return message


async def notify_parties(
    db: AsyncSession,
    party_a: uuid.UUID,
    party_b: uuid.UUID,
    text: str,
    metadata: dict,
) -> SystemMessage | None:
    """Post a system message to the conversation between two parties."""
    return await post_system_message(db, conversation_key(party_a, party_b), text, metadata)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class MessageSender(Protocol):
    async def send(self, message: SystemMessage) -> None: ...


class LogMessageSender:
    """Development sender: logs the message instead of delivering it."""

    async def send(self, message: SystemMessage) -> None:
        logger.info("SYSTEM MESSAGE [%s] %s", message.conversation_key, message.text)


class HttpMessageSender:
    """Production sender: POSTs the message to the chat service."""

    def __init__(self, base_url: str, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    async def send(self, message: SystemMessage) -> None:
        async with httpx.AsyncClient(
            timeout=settings.notification_timeout_seconds, transport=self._transport
        ) as client:
            resp = await client.post(
                f"{self.base_url}/conversations/{message.conversation_key}/system-messages",
                json={
                    "messageId": str(message.message_id),
                    "text": message.text,
                    "systemData": message.metadata_ or {},
                },
            )
            resp.raise_for_status()


def get_message_sender() -> MessageSender:
    if settings.notification_backend == "http" and settings.chat_service_url:
        return HttpMessageSender(settings.chat_service_url)
    return LogMessageSender()


async def deliver_pending_messages(
    db: AsyncSession, sender: MessageSender, limit: int = DISPATCH_BATCH_SIZE
) -> int:
    """Attempt delivery of queued messages. Returns the number delivered."""
    result = await db.execute(
        select(SystemMessage)
        .where(SystemMessage.status == MessageStatus.PENDING)
        .order_by(SystemMessage.created_at)
        .limit(limit)
    )
    messages = list(result.scalars().all())

    delivered = 0
    for message in messages:
        message.attempts += 1
        try:
            await sender.send(message)
        except Exception as e:
            message.last_error = f"{type(e).__name__}: {e}"[:1000]
            if message.attempts >= settings.notification_max_retries:
                message.status = MessageStatus.FAILED
                logger.error(
                    "Giving up on system message %s after %d attempts: %s",
                    message.message_id, message.attempts, e,
                )
            else:
                logger.warning(
                    "System message %s delivery failed (attempt %d): %s",
                    message.message_id, message.attempts, e,
                )
            continue
        message.status = MessageStatus.DELIVERED
        message.delivered_at = datetime.now(UTC)
        delivered += 1

    await db.commit()
    return delivered


async def run_message_dispatcher() -> None:
    """Background loop draining the outbox."""
    from app.database import async_session_factory

    sender = get_message_sender()
    while True:
        try:
            async with async_session_factory() as db:
                delivered = await deliver_pending_messages(db, sender)
            if delivered == 0:
                await asyncio.sleep(DISPATCH_IDLE_SECONDS)
        except asyncio.CancelledError:
            logger.info("Message dispatcher shutting down")
            break
        except Exception:
            logger.exception("Message dispatcher error, retrying in 5s")
            await asyncio.sleep(5)
