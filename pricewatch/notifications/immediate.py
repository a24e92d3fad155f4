"""Envío inmediato de un reporte a usuarios paid/admin."""
from datetime import datetime
from typing import Callable

from pricewatch.database.connection import Database, utc_now
from pricewatch.database.reports import DeliveryRepository
from pricewatch.models.notification import (
    ChannelType, EmailMessage, ImmediateSendResult, UserRole,
)
from pricewatch.notifications.templates import render_immediate_email
from pricewatch.notifications.transport import EmailTransport
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)

IMMEDIATE_ROLES = (UserRole.PAID, UserRole.ADMIN)


def send_immediate_notifications(
    db: Database,
    change_report_id: int,
    transport: EmailTransport,
    clock: Callable[[], datetime] = utc_now,
) -> ImmediateSendResult:
    """
    Despachar las entregas PENDING del reporte, una por una.

    Los fallos de envío quedan en FAILED con el mensaje; no se reintentan aquí.
    """
    with db.get_connection() as conn:
        payloads = DeliveryRepository(conn).immediate_payloads(change_report_id)

    result = ImmediateSendResult(change_report_id=change_report_id, processed_count=len(payloads))

    for payload in payloads:
        if payload.user.role not in IMMEDIATE_ROLES:
            continue

        if not payload.user.is_active or not payload.channel.is_active:
            with db.transaction() as conn:
                DeliveryRepository(conn).mark_skipped(payload.delivery_id, "User or channel inactive")
            result.skipped_count += 1
            logger.info(f"Delivery {payload.delivery_id} skipped: user or channel inactive")
            continue

        if payload.channel.channel_type != ChannelType.EMAIL:
            with db.transaction() as conn:
                DeliveryRepository(conn).mark_skipped(payload.delivery_id, "Unsupported channel type")
            result.skipped_count += 1
            logger.info(
                f"Delivery {payload.delivery_id} skipped: unsupported channel "
                f"{payload.channel.channel_type.value}"
            )
            continue

        email = render_immediate_email(payload)
        try:
            transport.send(EmailMessage(
                to=payload.channel.destination,
                subject=email.subject,
                html=email.html,
                text=email.text,
            ))
        except Exception as e:
            with db.transaction() as conn:
                DeliveryRepository(conn).mark_failed(
                    payload.delivery_id, str(e) or "Immediate email send failed"
                )
            result.failed_count += 1
            logger.error(f"Delivery {payload.delivery_id} to {payload.channel.destination} failed: {e}")
            continue

        with db.transaction() as conn:
            DeliveryRepository(conn).mark_sent(payload.delivery_id, sent_at=clock())
        result.sent_count += 1
        logger.info(f"Delivery {payload.delivery_id} sent to {payload.channel.destination}")

    logger.info(
        f"Immediate dispatch for report {change_report_id}: "
        f"{result.sent_count} sent, {result.failed_count} failed, {result.skipped_count} skipped"
    )
    return result
