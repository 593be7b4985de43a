"""
Notification Gateway Module

Email and SMS delivery for ledger events: money movement alerts, OTP codes,
loan and deletion request outcomes, lockouts. Delivery is fire-and-forget:
a failed send is logged and recorded, never raised to the operation that
triggered it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

import requests

from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class NotificationChannel(Enum):
    """Available notification channels"""
    EMAIL = "email"
    SMS = "sms"


class NotificationStatus(Enum):
    """Delivery status"""
    SENT = "sent"
    FAILED = "failed"


@dataclass
class Notification(StorageRecord):
    """Delivery record for one message"""
    channel: NotificationChannel
    recipient: str
    subject: str
    body: str
    status: NotificationStatus
    template: Optional[str] = None
    failed_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['channel'] = self.channel.value
        result['status'] = self.status.value
        return result


# Templates with {placeholders}: name -> (subject, body)
TEMPLATES: Dict[str, tuple] = {
    "account_opened": (
        "Welcome to AstroNova Bank",
        "Dear {holder_name},\n\nYour {account_type} account {account_number} is open "
        "at the {branch} branch (IFSC {ifsc_code}). Opening balance: {balance}.\n"
        "{pin_line}"
    ),
    "transaction_alert": (
        "Transaction alert: {transaction_type} {amount}",
        "Dear {holder_name},\n\n{direction} of {amount} on account {account_number}.\n"
        "Reference: {transaction_id}\nCategory: {category}\nAvailable balance: {balance}"
    ),
    "otp": (
        "Your one-time password",
        "Your OTP is {code}. It expires in {expiry_minutes} minutes. Do not share it with anyone."
    ),
    "otp_sms": (
        "OTP",
        "AstroNova OTP {code}, valid {expiry_minutes} min. Never share this code."
    ),
    "track_locked": (
        "Security alert: {track} locked",
        "Dear {holder_name},\n\nYour {track} access on account {account_number} was locked after "
        "repeated failed attempts. Contact your branch to unlock it."
    ),
    "loan_submitted": (
        "Loan request received",
        "Dear {holder_name},\n\nWe received your {loan_type} request for {amount} "
        "({emi_plan} plan). Request id: {request_id}."
    ),
    "loan_approved": (
        "Loan approved: {loan_type}",
        "Dear {holder_name},\n\nYour {loan_type} of {amount} was approved and credited.\n"
        "Interest rate: {interest_rate}%\nTotal due: {total_due}\nComment: {comment}"
    ),
    "loan_rejected": (
        "Loan request update",
        "Dear {holder_name},\n\nYour {loan_type} request for {amount} was not approved.\nComment: {comment}"
    ),
    "loan_closed": (
        "Loan closed",
        "Dear {holder_name},\n\nYour loan on account {account_number} is fully repaid. "
        "Amount paid: {amount}. Available balance: {balance}."
    ),
    "deletion_requested": (
        "Account deletion request received",
        "Dear {holder_name},\n\nWe received your request to delete account {account_number}. "
        "Request id: {request_id}."
    ),
    "deletion_approved": (
        "Account deleted",
        "Dear {holder_name},\n\nAccount {account_number} has been deleted. Comment: {comment}"
    ),
    "deletion_rejected": (
        "Account deletion request rejected",
        "Dear {holder_name},\n\nYour request to delete account {account_number} was rejected. "
        "Comment: {comment}"
    ),
}


class NotificationGateway(ABC):
    """Abstract delivery backend"""

    @abstractmethod
    def send_email(self, to: str, subject: str, body: str) -> None:
        """Deliver an email; raise on failure"""
        pass

    @abstractmethod
    def send_sms(self, to: str, text: str) -> None:
        """Deliver an SMS; raise on failure"""
        pass


class LogNotificationGateway(NotificationGateway):
    """Logs messages instead of sending them and keeps an outbox for inspection"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("bank_ledger.notifications.log")
        self.outbox: List[Dict[str, str]] = []

    def send_email(self, to: str, subject: str, body: str) -> None:
        self.outbox.append({"channel": "email", "to": to, "subject": subject, "body": body})
        self.logger.info(f"EMAIL to {to}: {subject}")

    def send_sms(self, to: str, text: str) -> None:
        self.outbox.append({"channel": "sms", "to": to, "subject": "", "body": text})
        self.logger.info(f"SMS to {to}: {text[:60]}")


class WebhookNotificationGateway(NotificationGateway):
    """Posts messages to an HTTP relay that owns the real email/SMS providers"""

    def __init__(self, url: str, timeout: float = 5.0, sender: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.sender = sender
        self.session = session or requests.Session()

    def _post(self, payload: Dict[str, Any]) -> None:
        response = self.session.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()

    def send_email(self, to: str, subject: str, body: str) -> None:
        self._post({
            "channel": NotificationChannel.EMAIL.value,
            "from": self.sender,
            "to": to,
            "subject": subject,
            "body": body,
        })

    def send_sms(self, to: str, text: str) -> None:
        self._post({"channel": NotificationChannel.SMS.value, "to": to, "body": text})


class Notifier:
    """
    Renders templates and hands them to a gateway. Never raises.
    """

    def __init__(self, gateway: NotificationGateway, storage: Optional[StorageInterface] = None,
                 enabled: bool = True, table_name: str = "notifications"):
        self.gateway = gateway
        self.storage = storage
        self.enabled = enabled
        self.table_name = table_name
        self.logger = get_logger("bank_ledger.notifications")

    def _record(self, channel: NotificationChannel, recipient: str, subject: str, body: str,
                template: Optional[str], error: Optional[Exception]) -> None:
        if not self.storage:
            return
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            channel=channel,
            recipient=recipient,
            subject=subject,
            body=body,
            status=NotificationStatus.FAILED if error else NotificationStatus.SENT,
            template=template,
            failed_reason=str(error) if error else None
        )
        try:
            self.storage.save(self.table_name, notification.id, notification.to_dict())
        except Exception:
            self.logger.warning("Could not store notification record", exc_info=True)

    def _deliver(self, channel: NotificationChannel, recipient: Optional[str], subject: str,
                 body: str, template: Optional[str] = None) -> bool:
        if not self.enabled or not recipient:
            return False
        error = None
        try:
            if channel == NotificationChannel.EMAIL:
                self.gateway.send_email(recipient, subject, body)
            else:
                self.gateway.send_sms(recipient, body)
        except Exception as e:
            error = e
            log_action(
                self.logger, "warning", f"{channel.value} delivery failed: {e}",
                action="send_notification", resource=f"{channel.value}:{recipient}",
                extra={"template": template}
            )
        self._record(channel, recipient, subject, body, template, error)
        return error is None

    def send_email(self, to: Optional[str], subject: str, body: str) -> bool:
        return self._deliver(NotificationChannel.EMAIL, to, subject, body)

    def send_sms(self, to: Optional[str], text: str) -> bool:
        return self._deliver(NotificationChannel.SMS, to, "", text)

    def notify(self, template: str, to: Optional[str], channel: NotificationChannel = NotificationChannel.EMAIL,
               **data) -> bool:
        """Render a named template and deliver it"""
        try:
            subject_template, body_template = TEMPLATES[template]
            subject = subject_template.format(**data)
            body = body_template.format(**data)
        except (KeyError, IndexError) as e:
            self.logger.warning(f"Cannot render notification template {template}: {e}")
            return False
        return self._deliver(channel, to, subject, body, template)

    def get_notifications(self, recipient: Optional[str] = None) -> List[Dict[str, Any]]:
        if not self.storage:
            return []
        filters = {'recipient': recipient} if recipient else {}
        return sorted(self.storage.find(self.table_name, filters), key=lambda n: n['created_at'])
