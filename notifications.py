# Meterwise Notifications
# Drains the billing_events outbox and fans events out to listeners.
# Runs outside the money path: a failing listener only leaves its event
# undispatched (attempts += 1) for the next drain, it never touches the
# ledger. Email alerts go out for failed recharges and status changes.

import logging
import smtplib
import threading
import time
from collections import defaultdict
from email.mime.text import MIMEText
from typing import Callable, Optional

from config import ALERT_CONFIG
from db import BillingStore
from events import EventType
from repositories import OutboxRepo

log = logging.getLogger("meterwise")

MAX_ATTEMPTS = 5


def configure_alerts(**kwargs):
    """Update alert config at runtime."""
    ALERT_CONFIG.update(kwargs)


def send_email(subject, body):
    """Send an email alert over SMTP. Returns False when disabled or on failure."""
    cfg = ALERT_CONFIG
    if not cfg["email_enabled"]:
        return False

    try:
        msg = MIMEText(body)
        msg["Subject"] = f"[Meterwise] {subject}"
        msg["From"] = cfg["email_from"]
        msg["To"] = cfg["email_to"]

        with smtplib.SMTP(cfg["smtp_host"], cfg["smtp_port"]) as server:
            server.starttls()
            if cfg["smtp_user"]:
                server.login(cfg["smtp_user"], cfg["smtp_pass"])
            server.send_message(msg)

        log.info("EMAIL SENT: %s -> %s", subject, cfg["email_to"])
        return True
    except (smtplib.SMTPException, OSError) as e:
        log.error("EMAIL FAILED: %s | %s", subject, e)
        return False


def describe(event: dict) -> tuple[str, str]:
    """Subject and body for an alert-worthy event."""
    p = event["payload"]
    company = event["company_id"]
    if event["event_type"] == EventType.RECHARGE_FAILED.value:
        subject = f"Recharge failed for {company}"
        body = (
            f"Recharge {p.get('recharge_id')} of {p.get('amount')} was declined.\n"
            f"Reason: {p.get('error') or 'unknown'}\n"
            "New usage is blocked until a payment succeeds."
        )
    else:
        subject = f"Billing status for {company}: {p.get('old_status')} -> {p.get('new_status')}"
        body = f"Reason: {p.get('reason') or '-'}"
    return subject, body


class BillingNotifier:
    ALERT_EVENTS = (EventType.RECHARGE_FAILED.value, EventType.BILLING_STATUS_CHANGED.value)

    def __init__(self, store: BillingStore, send: Callable = send_email,
                 max_attempts: int = MAX_ATTEMPTS, clock=time.time):
        self.store = store
        self.send = send
        self.max_attempts = max_attempts
        self.clock = clock
        self._listeners = defaultdict(list)
        for event_type in self.ALERT_EVENTS:
            self.subscribe(event_type, self.email_alert)

    def subscribe(self, event_type: str, listener: Callable):
        """Register listener(event_dict) for one event type, or "*" for all."""
        key = event_type.value if isinstance(event_type, EventType) else event_type
        self._listeners[key].append(listener)

    def email_alert(self, event: dict):
        if not ALERT_CONFIG["email_enabled"]:
            log.debug("ALERT (no channels): %s %s", event["event_type"], event["company_id"])
            return
        subject, body = describe(event)
        if not self.send(subject, body):
            raise RuntimeError(f"email alert not delivered: {subject}")

    def drain(self, limit: int = 100) -> dict:
        """Dispatch pending events once. Returns counts."""
        with self.store.connection() as (conn, backend):
            pending = OutboxRepo.pending(conn, backend, limit=limit,
                                         max_attempts=self.max_attempts)

        dispatched = failed = 0
        for event in pending:
            listeners = self._listeners.get(event["event_type"], []) + self._listeners.get("*", [])
            error = None
            for listener in listeners:
                try:
                    listener(event)
                except Exception as e:
                    error = f"{getattr(listener, '__name__', 'listener')}: {e}"
                    log.error("NOTIFY %s %s failed: %s", event["event_type"],
                              event["event_id"], error)
                    break

            with self.store.transaction() as (conn, backend):
                if error is None:
                    OutboxRepo.mark_dispatched(conn, event["event_id"], self.clock(), backend)
                    dispatched += 1
                else:
                    OutboxRepo.mark_failed(conn, event["event_id"], error, backend)
                    failed += 1

        if dispatched or failed:
            log.info("NOTIFY drained %d event(s), %d failed", dispatched, failed)
        return {"dispatched": dispatched, "failed": failed}

    def run_forever(self, interval: float = 5.0, stop_event: Optional[threading.Event] = None):
        stop_event = stop_event or threading.Event()
        log.info("NOTIFY loop started (interval=%ss)", interval)
        while not stop_event.is_set():
            self.drain()
            stop_event.wait(interval)
        log.info("NOTIFY loop stopped")
