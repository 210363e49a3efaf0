"""
Notification Module

Outbound notices for MFA codes, password expiry warnings, expired passwords and
account lockouts. Delivery is fire-and-forget: a dispatcher hands every notice to a
thread pool so a slow or failing provider never blocks or fails the operation that
produced it.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from .clock import Clock, SystemClock
from .logging_config import get_logger, log_action
from .storage import StorageInterface


logger = get_logger("access_gate.notifier")


class NotificationKind(Enum):
    """Kinds of notices the gate sends"""
    MFA_CODE = "mfa_code"
    PASSWORD_EXPIRY_WARNING = "password_expiry_warning"
    PASSWORD_EXPIRED = "password_expired"
    ACCOUNT_LOCKED = "account_locked"


TEMPLATES: Dict[NotificationKind, Dict[str, str]] = {
    NotificationKind.MFA_CODE: {
        "subject": "Your verification code",
        "body": "Hello {name}, your verification code is {code}. "
                "It expires in {ttl_minutes} minutes.",
    },
    NotificationKind.PASSWORD_EXPIRY_WARNING: {
        "subject": "Your password expires in {days_remaining} days",
        "body": "Hello {name}, your password expires in {days_remaining} days. "
                "Please change it before it expires.",
    },
    NotificationKind.PASSWORD_EXPIRED: {
        "subject": "Your password has expired",
        "body": "Hello {name}, your password has expired. "
                "You will be asked to set a new one at your next login.",
    },
    NotificationKind.ACCOUNT_LOCKED: {
        "subject": "Your account has been locked",
        "body": "Hello {name}, your account was locked after {failed_attempts} failed "
                "login attempts. It unlocks at {locked_until}.",
    },
}


class _TemplateValues(dict):
    def __missing__(self, key):
        return ""


def render(kind: NotificationKind, data: Dict[str, Any]) -> Dict[str, str]:
    """Fill the subject and body templates for a notice. Missing values render empty."""
    values = _TemplateValues(data)
    return {key: text.format_map(values) for key, text in TEMPLATES[kind].items()}


class Notifier(ABC):
    """Abstract notification provider"""

    @abstractmethod
    def send(self, kind: NotificationKind, recipient: str, data: Dict[str, Any]) -> bool:
        """Deliver a notice. Returns True if the provider accepted it."""
        pass


class LogNotifier(Notifier):
    """Writes notices to the log instead of delivering them"""

    def __init__(self, log=None):
        self.logger = log or logger

    def send(self, kind: NotificationKind, recipient: str, data: Dict[str, Any]) -> bool:
        message = render(kind, data)
        log_action(self.logger, "info", f"{kind.value} to {recipient}: {message['subject']}",
                   action=kind.value, resource=recipient)
        return True


class WebhookNotifier(Notifier):
    """POSTs notices as JSON to an external delivery service"""

    def __init__(self, url: str, timeout: int = 10, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, kind: NotificationKind, recipient: str, data: Dict[str, Any]) -> bool:
        message = render(kind, data)
        payload = {
            "notification_id": str(uuid.uuid4()),
            "type": kind.value,
            "recipient": recipient,
            "subject": message["subject"],
            "body": message["body"],
            "metadata": {k: v for k, v in data.items() if k != "code"},
        }
        if kind == NotificationKind.MFA_CODE:
            payload["code"] = data.get("code")
        response = self.session.post(self.url, json=payload, timeout=self.timeout,
                                     headers={"Content-Type": "application/json"})
        return 200 <= response.status_code < 300


class StorageNotifier(Notifier):
    """Keeps an outbox of sent notices in storage. MFA codes are never stored."""

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None,
                 table: str = "notifications"):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.table = table

    def send(self, kind: NotificationKind, recipient: str, data: Dict[str, Any]) -> bool:
        notification_id = str(uuid.uuid4())
        self.storage.save(self.table, notification_id, {
            "id": notification_id,
            "created_at": self.clock.now().isoformat(),
            "kind": kind.value,
            "recipient": recipient,
            "data": {k: v for k, v in data.items() if k != "code"},
        })
        return True

    def sent(self, kind: Optional[NotificationKind] = None,
             recipient: Optional[str] = None) -> List[Dict[str, Any]]:
        filters = {}
        if kind is not None:
            filters["kind"] = kind.value
        if recipient is not None:
            filters["recipient"] = recipient
        return self.storage.find(self.table, filters)


class NotificationDispatcher:
    """
    Non-blocking fan-out of notices to one or more providers.

    ``dispatch`` returns immediately with a Future. Provider failures are logged and
    never propagate to the caller.
    """

    def __init__(self, providers: List[Notifier], max_workers: int = 2):
        self.providers = list(providers)
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="access-gate-notify")
        self._pending = set()
        self._lock = threading.Lock()

    def _deliver(self, kind: NotificationKind, recipient: str, data: Dict[str, Any]) -> bool:
        delivered = True
        for provider in self.providers:
            try:
                if not provider.send(kind, recipient, data):
                    delivered = False
                    log_action(logger, "warning", "Notification rejected by provider",
                               action=kind.value, resource=recipient,
                               extra={"provider": type(provider).__name__})
            except Exception as e:
                delivered = False
                log_action(logger, "error", f"Notification delivery failed: {e}",
                           action=kind.value, resource=recipient,
                           extra={"provider": type(provider).__name__})
        return delivered

    def dispatch(self, kind: NotificationKind, recipient: str,
                 data: Optional[Dict[str, Any]] = None) -> Optional[Future]:
        try:
            future = self._executor.submit(self._deliver, kind, recipient, dict(data or {}))
        except RuntimeError as e:
            # Executor already shut down
            log_action(logger, "error", f"Notification dropped: {e}",
                       action=kind.value, resource=recipient)
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for every notice dispatched so far"""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)
