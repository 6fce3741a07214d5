"""
Backup outcome notifications.

Notifications are best effort: every failure to build or send a message
is logged and counted, never raised to the backup that triggered it.
"""
import abc
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from html import escape
from typing import List, Optional, Sequence

from .logger import get_logger
from .metrics import NOTIFICATION_FAILURES_TOTAL

logger = get_logger(__name__)


@dataclass
class SuccessDetails:
    backup_name: str
    backup_id: str
    schedule_name: str
    file_size: str
    duration: str
    timestamp: str


@dataclass
class FailureDetails:
    schedule_name: str
    error: str
    timestamp: str


class EmailSender(abc.ABC):
    @abc.abstractmethod
    def send_email(self, to: Sequence[str], subject: str, text: str, html: str) -> bool:
        pass


class SmtpEmailSender(EmailSender):
    def __init__(self, host: str, port: int = 587, username: Optional[str] = None,
                 password: Optional[str] = None, use_tls: bool = True,
                 from_address: str = "backups@localhost", timeout: int = 30):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: dict) -> Optional["SmtpEmailSender"]:
        notifications = config.get("notifications", {})
        smtp = notifications.get("smtp", {})
        if not smtp.get("host"):
            return None
        return cls(
            host=smtp["host"],
            port=smtp.get("port", 587),
            username=smtp.get("username"),
            password=smtp.get("password"),
            use_tls=smtp.get("use_tls", True),
            from_address=notifications.get("from_address", "backups@localhost"),
        )

    def send_email(self, to: Sequence[str], subject: str, text: str, html: str) -> bool:
        msg = EmailMessage()
        msg["From"] = self.from_address
        msg["To"] = ", ".join(to)
        msg["Subject"] = subject
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)
        logger.info(f"Sent email '{subject}' to {len(to)} recipient(s).")
        return True


class NotificationDispatcher:
    def __init__(self, sender: Optional[EmailSender], recipients: List[str]):
        self.sender = sender
        self.recipients = list(recipients or [])

    @classmethod
    def from_config(cls, config: dict, sender: Optional[EmailSender] = None) -> "NotificationDispatcher":
        """Uses ``sender`` when given, otherwise SMTP from the configuration."""
        notifications = config.get("notifications", {})
        if sender is None:
            sender = SmtpEmailSender.from_config(config)
        return cls(sender, notifications.get("recipients", []))

    def notify_success(self, details: SuccessDetails) -> bool:
        subject = f"Backup completed: {details.schedule_name}"
        lines = [
            ("Schedule", details.schedule_name),
            ("Backup", details.backup_name),
            ("Backup ID", details.backup_id),
            ("Size", details.file_size),
            ("Duration", details.duration),
            ("Completed at", details.timestamp),
        ]
        return self._dispatch("success", subject, "The scheduled backup completed successfully.", lines)

    def notify_failure(self, details: FailureDetails) -> bool:
        subject = f"Backup FAILED: {details.schedule_name}"
        lines = [
            ("Schedule", details.schedule_name),
            ("Error", details.error),
            ("Failed at", details.timestamp),
        ]
        return self._dispatch("failure", subject, "The scheduled backup failed.", lines)

    def _dispatch(self, event: str, subject: str, summary: str, lines) -> bool:
        if self.sender is None or not self.recipients:
            logger.info(f"No email transport or recipients configured, skipping {event} notification.")
            return False

        text = summary + "\n\n" + "\n".join(f"{label}: {value}" for label, value in lines)
        rows = "".join(
            f"<tr><th align=\"left\">{escape(label)}</th><td>{escape(str(value))}</td></tr>"
            for label, value in lines
        )
        html = f"<p>{escape(summary)}</p><table>{rows}</table>"

        try:
            sent = self.sender.send_email(self.recipients, subject, text, html)
        except Exception as e:
            logger.error(f"Failed to send backup {event} email: {e}", exc_info=True)
            NOTIFICATION_FAILURES_TOTAL.labels(event=event).inc()
            return False

        if not sent:
            logger.warning(f"Email transport reported the backup {event} email as not sent.")
            NOTIFICATION_FAILURES_TOTAL.labels(event=event).inc()
        return bool(sent)
