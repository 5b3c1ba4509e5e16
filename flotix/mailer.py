"""
Outbound ticket mail.

Delivery failures never undo issuance; the order manager records them on
the order for an operator to resend.
"""
from __future__ import annotations
import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.message import EmailMessage
from html import escape
from typing import List, Sequence

from .artifacts import Artifact

log = logging.getLogger(__name__)


class MailError(Exception):
    pass


@dataclass
class OutgoingMail:
    to: str
    subject: str
    html: str
    artifacts: List[Artifact] = field(default_factory=list)


class MailDispatcher(ABC):
    @abstractmethod
    async def send(self, mail: OutgoingMail) -> None: ...


class SmtpMailer(MailDispatcher):
    def __init__(self, host: str, port: int, user: str, password: str,
                 sender: str, timeout: float = 20.0) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout = timeout

    def _build(self, mail: OutgoingMail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = mail.to
        msg["Subject"] = mail.subject
        msg.set_content("Your tickets are attached.")
        msg.add_alternative(mail.html, subtype="html")
        for a in mail.artifacts:
            maintype, _, subtype = a.mime_type.partition("/")
            msg.add_attachment(a.content, maintype=maintype, subtype=subtype,
                               filename=a.filename)
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as s:
            s.starttls()
            if self.user:
                s.login(self.user, self.password)
            s.send_message(msg)

    async def send(self, mail: OutgoingMail) -> None:
        msg = self._build(mail)
        try:
            await asyncio.to_thread(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise MailError(f"smtp delivery to {mail.to} failed: {e}") from e
        log.info("mailed %d ticket(s) to %s", len(mail.artifacts), mail.to)


class OutboxMailer(MailDispatcher):
    """Keeps mails in memory. Used when no SMTP relay is configured."""

    def __init__(self) -> None:
        self.outbox: List[OutgoingMail] = []

    async def send(self, mail: OutgoingMail) -> None:
        self.outbox.append(mail)
        log.info("outbox: %d ticket(s) for %s", len(mail.artifacts), mail.to)


def ticket_mail(to: str, event_name: str,
                codes: Sequence[str], artifacts: List[Artifact]):
    return OutgoingMail(
        to=to,
        subject=f"Your tickets for {event_name}",
        html=(
            "<p>Hi,</p>"
            "<p>Thank you for your purchase! Attached are your tickets for "
            f"<b>{escape(event_name)}</b>.</p>"
            f"<p>Ticket IDs: {escape(', '.join(codes))}</p>"
            "<p>Enjoy the event!</p>"
        ),
        artifacts=artifacts,
    )
