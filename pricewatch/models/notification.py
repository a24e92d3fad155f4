"""Models de usuarios, canales y entregas de notificaciones."""
from enum import Enum
from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from decimal import Decimal

from pricewatch.models.change import ChangeType


class UserRole(str, Enum):
    FREE = "free"
    PAID = "paid"
    ADMIN = "admin"


class ChannelType(str, Enum):
    EMAIL = "email"
    DISCORD = "discord"
    WHATSAPP = "whatsapp"
    SIGNAL = "signal"
    SMS = "sms"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class User(BaseModel):
    id: int
    email: str
    name: str
    role: UserRole = UserRole.FREE
    is_active: bool = True
    last_digest_sent_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NotificationChannel(BaseModel):
    id: int
    user_id: int
    channel_type: ChannelType
    destination: str
    is_default: bool = False
    is_active: bool = True

    class Config:
        from_attributes = True


class NotificationDelivery(BaseModel):
    id: int
    change_report_id: int
    user_id: int
    notification_channel_id: int
    status: DeliveryStatus
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class EmailMessage(BaseModel):
    to: str
    subject: str
    html: str
    text: str


class RenderedEmail(BaseModel):
    subject: str
    text: str
    html: str


class ReportProduct(BaseModel):
    id: int
    name: str
    external_url: str
    image_url: str


class ReportChangeItem(BaseModel):
    id: int
    change_type: ChangeType
    old_price: Optional[Decimal] = None
    new_price: Optional[Decimal] = None
    old_stock_status: Optional[bool] = None
    new_stock_status: Optional[bool] = None
    product: ReportProduct


class ReportCategory(BaseModel):
    id: int
    slug: str
    name_et: str


class ReportSummary(BaseModel):
    id: int
    created_at: datetime
    total_changes: int
    scrape_run_id: int
    completed_at: Optional[datetime] = None
    category: ReportCategory


class ImmediateDeliveryPayload(BaseModel):
    delivery_id: int
    user: User
    channel: NotificationChannel
    report: ReportSummary
    change_items: list[ReportChangeItem] = []


class DigestDeliveryPayload(BaseModel):
    delivery_id: int
    report: ReportSummary
    change_items: list[ReportChangeItem] = []


class DigestRecipientPayload(BaseModel):
    user: User
    channel: NotificationChannel
    deliveries: list[DigestDeliveryPayload] = []


class ImmediateSendResult(BaseModel):
    change_report_id: int
    processed_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0


class DigestSendResult(BaseModel):
    recipient_count: int = 0
    sent_count: int = 0
    skipped_count: int = 0
    pending_count: int = 0
