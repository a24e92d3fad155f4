"""Digest agrupado para usuarios free, limitado por un cooldown."""
from datetime import datetime, timedelta
from typing import Optional

from pricewatch.database.connection import Database, utc_now
from pricewatch.database.reports import DeliveryRepository
from pricewatch.models.notification import (
    ChannelType, DigestRecipientPayload, DigestSendResult, EmailMessage, UserRole,
)
from pricewatch.notifications.templates import render_digest_email
from pricewatch.notifications.transport import EmailTransport
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_COOLDOWN_HOURS = 6


def digest_cutoff(now: datetime, cooldown_hours: int = DEFAULT_COOLDOWN_HOURS) -> datetime:
    """Último digest permitido: nulo o como máximo en este instante."""
    return now - timedelta(hours=cooldown_hours)


def _skip_all(db: Database, recipient: DigestRecipientPayload, message: str) -> int:
    with db.transaction() as conn:
        repo = DeliveryRepository(conn)
        for delivery in recipient.deliveries:
            repo.mark_skipped(delivery.delivery_id, message)
    logger.info(f"Digest for user {recipient.user.id} skipped ({message}): {len(recipient.deliveries)} deliveries")
    return len(recipient.deliveries)


def send_pending_digests(
    db: Database,
    transport: EmailTransport,
    now: Optional[datetime] = None,
    cooldown_hours: int = DEFAULT_COOLDOWN_HOURS,
) -> DigestSendResult:
    now = now or utc_now()
    with db.get_connection() as conn:
        recipients = DeliveryRepository(conn).digest_payloads(digest_cutoff(now, cooldown_hours))

    result = DigestSendResult(recipient_count=len(recipients))

    for recipient in recipients:
        if recipient.user.role != UserRole.FREE:
            continue

        if not recipient.user.is_active or not recipient.channel.is_active:
            result.skipped_count += _skip_all(db, recipient, "User or channel inactive")
            continue

        if recipient.channel.channel_type != ChannelType.EMAIL:
            result.skipped_count += _skip_all(db, recipient, "Unsupported channel type")
            continue

        if not recipient.deliveries:
            continue

        email = render_digest_email(recipient)
        try:
            transport.send(EmailMessage(
                to=recipient.channel.destination,
                subject=email.subject,
                html=email.html,
                text=email.text,
            ))
        except Exception as e:
            # Quedan PENDING para la próxima ejecución
            result.pending_count += len(recipient.deliveries)
            logger.error(f"Digest to {recipient.channel.destination} failed, will retry later: {e}")
            continue

        with db.transaction() as conn:
            DeliveryRepository(conn).mark_digest_sent(
                recipient.user.id,
                [delivery.delivery_id for delivery in recipient.deliveries],
                sent_at=now,
            )
        result.sent_count += len(recipient.deliveries)
        logger.info(
            f"Digest sent to {recipient.channel.destination}: "
            f"{len(recipient.deliveries)} reports"
        )

    logger.info(
        f"Digest run: {result.recipient_count} recipients, {result.sent_count} sent, "
        f"{result.skipped_count} skipped, {result.pending_count} pending"
    )
    return result
