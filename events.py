# Meterwise Billing Events
# Transactional outbox: every ledger mutation appends its event rows in the
# same database transaction as the mutation itself. A separate notifier
# drains the table, so a crash can never produce a debit without its event
# or an event without its debit.
#
# Event flow for one usage record:
#   usage.recorded → wallet.debited → (recharge.requested → recharge.succeeded|failed)

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum

from repositories import OutboxRepo

log = logging.getLogger("meterwise")


class EventType(str, Enum):
    # Usage
    USAGE_RECORDED = "usage.recorded"

    # Wallet
    WALLET_DEBITED = "wallet.debited"
    WALLET_CREDITED = "wallet.credited"

    # Recharge
    RECHARGE_REQUESTED = "recharge.requested"
    RECHARGE_SUCCEEDED = "recharge.succeeded"
    RECHARGE_FAILED = "recharge.failed"

    # Account
    BILLING_STATUS_CHANGED = "billing.status_changed"

    # Invoicing
    INVOICE_GENERATED = "invoice.generated"
    INVOICE_SETTLED = "invoice.settled"


@dataclass
class Event:
    """One outbox row. Payload values must be JSON-safe (money as strings)."""
    event_type: str = ""
    company_id: str = ""
    payload: dict = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)


def _safe(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


def emit(conn, backend: str, event_type: EventType, company_id: str,
         now: float = None, **payload) -> Event:
    """Append an event inside the caller's open transaction."""
    event = Event(
        event_type=event_type.value if isinstance(event_type, EventType) else str(event_type),
        company_id=company_id,
        payload={k: _safe(v) for k, v in payload.items()},
    )
    if now is not None:
        event.created_at = now
    OutboxRepo.insert(conn, event, backend)
    log.debug("EVENT %s company=%s id=%s", event.event_type, company_id, event.event_id)
    return event
