"""Transportes de email. El concreto se elige una vez al iniciar el proceso.

SMTP soporta STARTTLS (587) o SSL (465). Sin SMTP_HOST configurado el
mensaje solo se escribe en el log (útil en desarrollo).
"""
import json
import smtplib
import ssl
from abc import ABC, abstractmethod
from email.message import EmailMessage as MimeMessage
from typing import Optional

import httpx

from pricewatch.config.settings import ConfigurationError, NotificationConfig
from pricewatch.models.notification import EmailMessage
from pricewatch.utils.logger import get_logger

logger = get_logger(__name__)


class TransportError(Exception):
    """El envío falló; se registra en la entrega."""


class EmailTransport(ABC):
    """Capacidad única: enviar un mensaje o lanzar TransportError."""

    @abstractmethod
    def send(self, message: EmailMessage) -> None:
        ...


class SmtpEmailTransport(EmailTransport):

    def __init__(self, config: NotificationConfig):
        self.config = config

    def _build(self, message: EmailMessage) -> MimeMessage:
        msg = MimeMessage()
        msg["Subject"] = message.subject
        msg["From"] = self.config.email_from
        msg["To"] = message.to
        msg.set_content(message.text)
        msg.add_alternative(message.html, subtype="html")
        return msg

    def send(self, message: EmailMessage) -> None:
        host, port = self.config.smtp_host, int(self.config.smtp_port or 587)
        msg = self._build(message)
        try:
            if port == 465:
                with smtplib.SMTP_SSL(host, port, context=ssl.create_default_context(),
                                      timeout=self.config.send_timeout) as s:
                    self._login(s)
                    s.send_message(msg)
            else:
                with smtplib.SMTP(host, port, timeout=self.config.send_timeout) as s:
                    s.ehlo()
                    if s.has_extn("starttls"):
                        s.starttls(context=ssl.create_default_context())
                        s.ehlo()
                    self._login(s)
                    s.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(f"SMTP send to {message.to} failed: {e}") from e
        logger.info(f"Email sent to {message.to} (subject={message.subject})")

    def _login(self, server: smtplib.SMTP) -> None:
        if self.config.smtp_user and self.config.smtp_password:
            server.login(self.config.smtp_user, self.config.smtp_password)


class LogEmailTransport(EmailTransport):
    """Sin servidor: serializa el mensaje al log."""

    def send(self, message: EmailMessage) -> None:
        logger.info(f"Email (log transport): {json.dumps(message.model_dump(), ensure_ascii=False)}")


class ResendEmailTransport(EmailTransport):
    """API HTTP de Resend."""

    def __init__(self, config: NotificationConfig, client: Optional[httpx.Client] = None):
        if not config.resend_api_key:
            raise ConfigurationError("RESEND_API_KEY is required when EMAIL_PROVIDER=resend")
        self.config = config
        self.client = client or httpx.Client(timeout=config.send_timeout)

    def send(self, message: EmailMessage) -> None:
        try:
            response = self.client.post(
                self.config.resend_api_url,
                headers={"Authorization": f"Bearer {self.config.resend_api_key}"},
                json={
                    "from": self.config.email_from,
                    "to": message.to,
                    "subject": message.subject,
                    "html": message.html,
                    "text": message.text,
                },
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Resend request failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            raise TransportError(f"Resend returned {response.status_code}: {detail}")
        logger.info(f"Email sent to {message.to} via Resend (subject={message.subject})")


def create_email_transport(config: NotificationConfig) -> EmailTransport:
    if config.email_provider == "resend":
        return ResendEmailTransport(config)
    if config.smtp_host and config.smtp_port:
        return SmtpEmailTransport(config)
    return LogEmailTransport()
