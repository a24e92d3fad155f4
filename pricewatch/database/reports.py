"""Repository para reportes de cambios, suscriptores y entregas."""
import sqlite3
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pricewatch.database.connection import to_db_timestamp, utc_now
from pricewatch.models.change import ChangeType, DeliveryRecipient, PendingChangeItem
from pricewatch.models.notification import (
    ChannelType, DeliveryStatus, DigestDeliveryPayload, DigestRecipientPayload,
    ImmediateDeliveryPayload, NotificationChannel, NotificationDelivery,
    ReportCategory, ReportChangeItem, ReportProduct, ReportSummary, User, UserRole,
)
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)


class ChangeReportRepository:
    """Repository para reportes e ítems de cambio."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get_by_run(self, scrape_run_id: int) -> Optional[Dict]:
        """Reporte existente de una corrida con sus contadores, o None."""
        row = self.conn.execute(
            'SELECT * FROM change_reports WHERE scrape_run_id = ?', (scrape_run_id,)
        ).fetchone()
        if not row:
            return None

        counts = self.conn.execute('''
            SELECT change_type, COUNT(*) AS count FROM change_items
            WHERE change_report_id = ?
            GROUP BY change_type
        ''', (row['id'],)).fetchall()
        by_type = {r['change_type']: r['count'] for r in counts}
        deliveries = self.conn.execute(
            'SELECT COUNT(*) AS count FROM notification_deliveries WHERE change_report_id = ?',
            (row['id'],),
        ).fetchone()

        return {
            'id': row['id'],
            'scrape_run_id': row['scrape_run_id'],
            'total_changes': row['total_changes'],
            'sold_out_count': by_type.get(ChangeType.SOLD_OUT.value, 0),
            'back_in_stock_count': by_type.get(ChangeType.BACK_IN_STOCK.value, 0),
            'delivery_count': deliveries['count'],
        }

    def create(self, scrape_run_id: int, total_changes: int, created_at: Optional[datetime] = None) -> int:
        cursor = self.conn.execute('''
            INSERT INTO change_reports (scrape_run_id, total_changes, created_at)
            VALUES (?, ?, ?)
        ''', (scrape_run_id, total_changes, to_db_timestamp(created_at or utc_now())))
        return cursor.lastrowid

    def add_items(self, change_report_id: int, items: Iterable[PendingChangeItem]) -> None:
        self.conn.executemany('''
            INSERT INTO change_items (
                change_report_id, product_id, change_type, old_price, new_price,
                old_stock_status, new_stock_status
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', [
            (
                change_report_id, item.product_id, item.change_type.value,
                None if item.old_price is None else str(item.old_price),
                None if item.new_price is None else str(item.new_price),
                item.old_stock_status, item.new_stock_status,
            )
            for item in items
        ])

    def count_reports(self, scrape_run_id: int) -> int:
        row = self.conn.execute(
            'SELECT COUNT(*) AS count FROM change_reports WHERE scrape_run_id = ?', (scrape_run_id,)
        ).fetchone()
        return row['count']

    def list_items(self, change_report_id: int) -> List[ReportChangeItem]:
        rows = self.conn.execute('''
            SELECT ci.*, p.name AS product_name, p.external_url, p.image_url
            FROM change_items ci
            JOIN products p ON p.id = ci.product_id
            WHERE ci.change_report_id = ?
            ORDER BY ci.id ASC
        ''', (change_report_id,)).fetchall()
        return [
            ReportChangeItem(
                id=row['id'],
                change_type=row['change_type'],
                old_price=row['old_price'],
                new_price=row['new_price'],
                old_stock_status=row['old_stock_status'],
                new_stock_status=row['new_stock_status'],
                product=ReportProduct(
                    id=row['product_id'],
                    name=row['product_name'],
                    external_url=row['external_url'],
                    image_url=row['image_url'],
                ),
            )
            for row in rows
        ]

    def get_summary(self, change_report_id: int) -> Optional[ReportSummary]:
        row = self.conn.execute('''
            SELECT cr.id, cr.created_at, cr.total_changes, cr.scrape_run_id,
                   sr.completed_at, c.id AS category_id, c.slug, c.name_et
            FROM change_reports cr
            JOIN scrape_runs sr ON sr.id = cr.scrape_run_id
            JOIN categories c ON c.id = sr.category_id
            WHERE cr.id = ?
        ''', (change_report_id,)).fetchone()
        if not row:
            return None
        return ReportSummary(
            id=row['id'],
            created_at=row['created_at'],
            total_changes=row['total_changes'],
            scrape_run_id=row['scrape_run_id'],
            completed_at=row['completed_at'],
            category=ReportCategory(id=row['category_id'], slug=row['slug'], name_et=row['name_et']),
        )


class UserRepository:
    """Usuarios, canales y suscripciones (la identidad llega desde la capa de auth)."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get(self, user_id: int) -> Optional[User]:
        row = self.conn.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
        return User(**dict(row)) if row else None

    def create_user(
        self,
        email: str,
        name: str,
        role: UserRole = UserRole.FREE,
        is_active: bool = True,
        last_digest_sent_at: Optional[datetime] = None,
    ) -> User:
        cursor = self.conn.execute('''
            INSERT INTO users (email, name, role, is_active, last_digest_sent_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (
            email, name, UserRole(role).value, is_active,
            to_db_timestamp(last_digest_sent_at), to_db_timestamp(utc_now()),
        ))
        return self.get(cursor.lastrowid)

    def add_channel(
        self,
        user_id: int,
        destination: str,
        channel_type: ChannelType = ChannelType.EMAIL,
        is_default: bool = True,
        is_active: bool = True,
    ) -> NotificationChannel:
        cursor = self.conn.execute('''
            INSERT INTO notification_channels (user_id, channel_type, destination, is_default, is_active)
            VALUES (?, ?, ?, ?, ?)
        ''', (user_id, ChannelType(channel_type).value, destination, is_default, is_active))
        row = self.conn.execute(
            'SELECT * FROM notification_channels WHERE id = ?', (cursor.lastrowid,)
        ).fetchone()
        return NotificationChannel(**dict(row))

    def subscribe(self, user_id: int, category_id: int, is_active: bool = True) -> None:
        self.conn.execute('''
            INSERT INTO user_subscriptions (user_id, category_id, is_active)
            VALUES (?, ?, ?)
            ON CONFLICT (user_id, category_id) DO UPDATE SET is_active = excluded.is_active
        ''', (user_id, category_id, is_active))

    def set_active(self, user_id: int, is_active: bool) -> None:
        self.conn.execute('UPDATE users SET is_active = ? WHERE id = ?', (is_active, user_id))

    def set_channel_active(self, channel_id: int, is_active: bool) -> None:
        self.conn.execute(
            'UPDATE notification_channels SET is_active = ? WHERE id = ?', (is_active, channel_id)
        )

    def set_last_digest_sent_at(self, user_id: int, sent_at: Optional[datetime]) -> None:
        self.conn.execute(
            'UPDATE users SET last_digest_sent_at = ? WHERE id = ?',
            (to_db_timestamp(sent_at), user_id),
        )

    def recipients_for_category(self, category_id: int) -> List[DeliveryRecipient]:
        """Usuarios activos suscritos con un canal email por defecto activo."""
        rows = self.conn.execute('''
            SELECT u.id AS user_id, u.role, nc.id AS notification_channel_id
            FROM user_subscriptions us
            JOIN users u ON u.id = us.user_id
            JOIN notification_channels nc ON nc.user_id = u.id
            WHERE us.category_id = ?
            AND us.is_active = 1
            AND u.is_active = 1
            AND nc.is_active = 1
            AND nc.is_default = 1
            AND nc.channel_type = ?
            ORDER BY u.id, nc.id
        ''', (category_id, ChannelType.EMAIL.value)).fetchall()
        return [DeliveryRecipient(**dict(row)) for row in rows]


class DeliveryRepository:
    """Entregas de notificaciones y sus transiciones de estado."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.reports = ChangeReportRepository(conn)

    def get(self, delivery_id: int) -> Optional[NotificationDelivery]:
        row = self.conn.execute(
            'SELECT * FROM notification_deliveries WHERE id = ?', (delivery_id,)
        ).fetchone()
        return NotificationDelivery(**dict(row)) if row else None

    def list_for_report(self, change_report_id: int) -> List[NotificationDelivery]:
        rows = self.conn.execute(
            'SELECT * FROM notification_deliveries WHERE change_report_id = ? ORDER BY id',
            (change_report_id,),
        ).fetchall()
        return [NotificationDelivery(**dict(row)) for row in rows]

    def create_pending(self, change_report_id: int, recipients: Iterable[DeliveryRecipient]) -> int:
        """Una entrega PENDING por (reporte, canal); duplicados se ignoran."""
        created = 0
        now = to_db_timestamp(utc_now())
        for recipient in recipients:
            cursor = self.conn.execute('''
                INSERT INTO notification_deliveries (
                    change_report_id, user_id, notification_channel_id, status, created_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (change_report_id, notification_channel_id) DO NOTHING
            ''', (
                change_report_id, recipient.user_id, recipient.notification_channel_id,
                DeliveryStatus.PENDING.value, now,
            ))
            created += cursor.rowcount
        return created

    def _row_user(self, row: sqlite3.Row) -> User:
        return User(
            id=row['user_id'],
            email=row['email'],
            name=row['user_name'],
            role=row['role'],
            is_active=row['user_active'],
            last_digest_sent_at=row['last_digest_sent_at'],
        )

    def _row_channel(self, row: sqlite3.Row) -> NotificationChannel:
        return NotificationChannel(
            id=row['notification_channel_id'],
            user_id=row['user_id'],
            channel_type=row['channel_type'],
            destination=row['destination'],
            is_default=row['is_default'],
            is_active=row['channel_active'],
        )

    _PAYLOAD_SELECT = '''
        SELECT d.id, d.change_report_id, d.user_id, d.notification_channel_id,
               u.email, u.name AS user_name, u.role, u.is_active AS user_active,
               u.last_digest_sent_at,
               nc.channel_type, nc.destination, nc.is_default, nc.is_active AS channel_active
        FROM notification_deliveries d
        JOIN users u ON u.id = d.user_id
        JOIN notification_channels nc ON nc.id = d.notification_channel_id
    '''

    def immediate_payloads(self, change_report_id: int) -> List[ImmediateDeliveryPayload]:
        """Entregas PENDING del reporte que pertenecen a usuarios paid/admin."""
        rows = self.conn.execute(self._PAYLOAD_SELECT + '''
            WHERE d.change_report_id = ?
            AND d.status = ?
            AND u.role IN (?, ?)
            ORDER BY d.created_at ASC, d.id ASC
        ''', (
            change_report_id, DeliveryStatus.PENDING.value,
            UserRole.PAID.value, UserRole.ADMIN.value,
        )).fetchall()
        if not rows:
            return []

        summary = self.reports.get_summary(change_report_id)
        items = self.reports.list_items(change_report_id)
        return [
            ImmediateDeliveryPayload(
                delivery_id=row['id'],
                user=self._row_user(row),
                channel=self._row_channel(row),
                report=summary,
                change_items=items,
            )
            for row in rows
        ]

    def digest_payloads(self, eligible_before: datetime) -> List[DigestRecipientPayload]:
        """
        Entregas PENDING de usuarios free activos cuyo último digest es nulo
        o anterior a `eligible_before`, agrupadas por destinatario.
        """
        rows = self.conn.execute(self._PAYLOAD_SELECT + '''
            WHERE d.status = ?
            AND u.is_active = 1
            AND u.role = ?
            AND (u.last_digest_sent_at IS NULL OR u.last_digest_sent_at <= ?)
            ORDER BY d.user_id ASC, d.created_at ASC, d.id ASC
        ''', (
            DeliveryStatus.PENDING.value, UserRole.FREE.value, to_db_timestamp(eligible_before),
        )).fetchall()

        summaries: Dict[int, ReportSummary] = {}
        items: Dict[int, List[ReportChangeItem]] = {}
        recipients: Dict[int, DigestRecipientPayload] = {}
        deliveries = defaultdict(list)

        for row in rows:
            report_id = row['change_report_id']
            if report_id not in summaries:
                summaries[report_id] = self.reports.get_summary(report_id)
                items[report_id] = self.reports.list_items(report_id)

            if row['user_id'] not in recipients:
                recipients[row['user_id']] = DigestRecipientPayload(
                    user=self._row_user(row),
                    channel=self._row_channel(row),
                )
            deliveries[row['user_id']].append(DigestDeliveryPayload(
                delivery_id=row['id'],
                report=summaries[report_id],
                change_items=items[report_id],
            ))

        for user_id, recipient in recipients.items():
            recipient.deliveries = deliveries[user_id]
        return list(recipients.values())

    def mark_sent(self, delivery_id: int, sent_at: Optional[datetime] = None) -> None:
        self._transition(delivery_id, DeliveryStatus.SENT, None, sent_at or utc_now())

    def mark_failed(self, delivery_id: int, message: str) -> None:
        self._transition(delivery_id, DeliveryStatus.FAILED, message, None)

    def mark_skipped(self, delivery_id: int, message: str) -> None:
        self._transition(delivery_id, DeliveryStatus.SKIPPED, message, None)

    def _transition(
        self,
        delivery_id: int,
        status: DeliveryStatus,
        error_message: Optional[str],
        sent_at: Optional[datetime],
    ) -> None:
        # Solo desde PENDING: los estados finales no se vuelven a tocar
        cursor = self.conn.execute('''
            UPDATE notification_deliveries
            SET status = ?, error_message = ?, sent_at = ?
            WHERE id = ? AND status = ?
        ''', (
            status.value, error_message, to_db_timestamp(sent_at),
            delivery_id, DeliveryStatus.PENDING.value,
        ))
        if cursor.rowcount == 0:
            logger.warning(f"Delivery {delivery_id} is not pending; {status.value} transition ignored")

    def mark_digest_sent(self, user_id: int, delivery_ids: List[int], sent_at: datetime) -> None:
        """Marcar entregas del digest como SENT y avanzar la marca del usuario (misma transacción)."""
        ts = to_db_timestamp(sent_at)
        placeholders = ','.join('?' for _ in delivery_ids)
        self.conn.execute(f'''
            UPDATE notification_deliveries
            SET status = ?, sent_at = ?, error_message = NULL
            WHERE id IN ({placeholders}) AND status = ?
        ''', (DeliveryStatus.SENT.value, ts, *delivery_ids, DeliveryStatus.PENDING.value))
        self.conn.execute(
            'UPDATE users SET last_digest_sent_at = ? WHERE id = ?', (ts, user_id)
        )
