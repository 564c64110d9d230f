# Meterwise Storage Layer
# BillingStore owns the connection lifecycle for one database and the
# per-company lock registry. Supports SQLite (dev/default) and
# PostgreSQL (production).
#
#   - SQLite: WAL mode, BEGIN IMMEDIATE write transactions
#   - PostgreSQL: psycopg3 pool, SELECT ... FOR UPDATE on company rows
#   - Money columns are TEXT in SQLite and NUMERIC in PostgreSQL;
#     both round-trip decimal.Decimal exactly

import logging
import sqlite3
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Optional

import config
from errors import ConcurrencyConflict

log = logging.getLogger("meterwise")

# Decimals are stored as their exact string form in SQLite
sqlite3.register_adapter(Decimal, str)

# PostgreSQL SQLSTATE for lock_timeout expiry
PG_LOCK_NOT_AVAILABLE = "55P03"


def sql(query: str, backend: str) -> str:
    """Repositories write `?` placeholders; psycopg wants `%s`."""
    if backend == "postgres":
        return query.replace("?", "%s")
    return query


# ── SQLite Schema ─────────────────────────────────────────────────────


SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS company_billing (
    company_id TEXT PRIMARY KEY,
    billing_status TEXT NOT NULL DEFAULT 'trial',
    wallet_balance TEXT NOT NULL DEFAULT '0',
    current_month_spent TEXT NOT NULL DEFAULT '0',
    total_spent TEXT NOT NULL DEFAULT '0',
    current_month_start REAL NOT NULL,
    monthly_spend_cap TEXT,
    auto_recharge_enabled INTEGER NOT NULL DEFAULT 1,
    auto_recharge_threshold TEXT NOT NULL DEFAULT '0',
    auto_recharge_amount TEXT NOT NULL DEFAULT '0',
    payment_provider TEXT,
    payment_method_id TEXT,
    payment_method_last4 TEXT,
    payment_method_brand TEXT,
    payment_method_exp TEXT,
    recharge_in_flight INTEGER NOT NULL DEFAULT 0,
    past_due_since REAL NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_billing_status
    ON company_billing(billing_status);

CREATE TABLE IF NOT EXISTS usage_records (
    id TEXT PRIMARY KEY,
    company_id TEXT NOT NULL,
    job_id TEXT,
    category TEXT NOT NULL,
    raw_quantity TEXT NOT NULL,
    base_cost TEXT NOT NULL,
    margin_percent TEXT NOT NULL,
    final_cost TEXT NOT NULL,
    idempotency_key TEXT,
    created_at REAL NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_usage_idempotency
    ON usage_records(company_id, idempotency_key);
CREATE INDEX IF NOT EXISTS idx_usage_company_time
    ON usage_records(company_id, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_company_job
    ON usage_records(company_id, job_id);

CREATE TABLE IF NOT EXISTS wallet_transactions (
    tx_id TEXT PRIMARY KEY,
    company_id TEXT NOT NULL,
    tx_type TEXT NOT NULL,
    amount TEXT NOT NULL,
    balance_before TEXT NOT NULL,
    balance_after TEXT NOT NULL,
    description TEXT DEFAULT '',
    usage_record_id TEXT,
    recharge_id TEXT,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_wallet_tx_company
    ON wallet_transactions(company_id, created_at);

CREATE TABLE IF NOT EXISTS recharges (
    recharge_id TEXT PRIMARY KEY,
    company_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    reason TEXT NOT NULL,
    status TEXT NOT NULL,
    provider_ref TEXT,
    error TEXT DEFAULT '',
    created_at REAL NOT NULL,
    completed_at REAL DEFAULT 0
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_recharges_provider_ref
    ON recharges(provider_ref);
CREATE INDEX IF NOT EXISTS idx_recharges_company
    ON recharges(company_id, created_at);

CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    invoice_number TEXT NOT NULL UNIQUE,
    company_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    line_items TEXT NOT NULL DEFAULT '[]',
    subtotal TEXT NOT NULL,
    tax_rate TEXT,
    tax_amount TEXT NOT NULL,
    total TEXT NOT NULL,
    period_start REAL NOT NULL,
    period_end REAL NOT NULL,
    description TEXT DEFAULT '',
    refunds_invoice_id TEXT,
    created_at REAL NOT NULL,
    paid_at REAL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_invoices_company
    ON invoices(company_id, created_at);
CREATE INDEX IF NOT EXISTS idx_invoices_status
    ON invoices(status);

CREATE TABLE IF NOT EXISTS invoice_sequence (
    name TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);
INSERT OR IGNORE INTO invoice_sequence (name, value) VALUES ('invoice_number', 0);

CREATE TABLE IF NOT EXISTS pricing_config (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    category TEXT NOT NULL,
    unit_price TEXT NOT NULL,
    unit TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pricing_active
    ON pricing_config(category, active);

CREATE TABLE IF NOT EXISTS margin_config (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    company_id TEXT,
    margin_percent TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_margin_active
    ON margin_config(company_id, active);

CREATE TABLE IF NOT EXISTS billing_events (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    company_id TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    dispatched_at REAL NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_events_pending
    ON billing_events(dispatched_at, created_at);
CREATE INDEX IF NOT EXISTS idx_events_company
    ON billing_events(company_id, created_at);
"""


# ── Per-company locks ─────────────────────────────────────────────────


class CompanyLocks:
    """One mutex per company. Two companies never contend on a Python lock."""

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, company_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(company_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[company_id] = lock
            return lock


# ── Store ─────────────────────────────────────────────────────────────


class BillingStore:
    """Connection factory and lock registry shared by every billing component.

    Built once by the process bootstrap and injected into the components;
    nothing here runs at import time.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        backend: Optional[str] = None,
        dsn: Optional[str] = None,
        lock_timeout: Optional[float] = None,
        busy_timeout: float = 30.0,
    ):
        self.backend = (backend or config.DB_BACKEND).lower()
        if self.backend not in ("sqlite", "postgres"):
            raise ValueError(f"Unsupported DB backend: {self.backend}")
        self.db_path = db_path or config.db_path()
        self.dsn = dsn or config.POSTGRES_DSN
        self.lock_timeout = config.LOCK_TIMEOUT_SEC if lock_timeout is None else lock_timeout
        self.busy_timeout = busy_timeout
        self.locks = CompanyLocks()
        self._pg_pool = None
        self._pg_pool_lock = threading.Lock()
        if self.backend == "sqlite":
            self._init_sqlite()

    # ── SQLite backend ────────────────────────────────────────────────

    def _init_sqlite(self):
        with self._sqlite_connection() as conn:
            conn.executescript(SQLITE_SCHEMA)

    @contextmanager
    def _sqlite_connection(self):
        conn = sqlite3.connect(
            self.db_path, timeout=self.busy_timeout,
            isolation_level=None, check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _sqlite_transaction(self):
        with self._sqlite_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise ConcurrencyConflict(f"database busy: {e}") from e
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    # ── PostgreSQL backend ────────────────────────────────────────────

    def _get_pg_pool(self):
        """Lazy-initialize the psycopg3 connection pool (schema comes from Alembic)."""
        if self._pg_pool is not None:
            return self._pg_pool

        with self._pg_pool_lock:
            if self._pg_pool is not None:
                return self._pg_pool

            from psycopg.rows import dict_row
            from psycopg_pool import ConnectionPool

            self._pg_pool = ConnectionPool(
                self.dsn,
                min_size=2,
                max_size=config.PG_POOL_SIZE,
                kwargs={"autocommit": False, "row_factory": dict_row},
            )
            log.info("PostgreSQL connection pool initialized (size=%d)", config.PG_POOL_SIZE)
            return self._pg_pool

    @contextmanager
    def _pg_connection(self):
        with self._get_pg_pool().connection() as conn:
            yield conn

    @contextmanager
    def _pg_transaction(self):
        with self._get_pg_pool().connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    # ── Unified interface ─────────────────────────────────────────────

    @contextmanager
    def connection(self):
        """Autocommit connection for read-committed queries."""
        if self.backend == "postgres":
            with self._pg_connection() as conn:
                yield conn, "postgres"
        else:
            with self._sqlite_connection() as conn:
                yield conn, "sqlite"

    @contextmanager
    def transaction(self):
        """Single write transaction; rolled back on any exception."""
        if self.backend == "postgres":
            with self._pg_transaction() as conn:
                yield conn, "postgres"
        else:
            with self._sqlite_transaction() as conn:
                yield conn, "sqlite"

    @contextmanager
    def company_transaction(self, company_id: str, timeout: Optional[float] = None):
        """Serialized atomic unit for one company's billing row.

        Holds the in-process company mutex for the whole transaction. On
        PostgreSQL the caller additionally row-locks company_billing with
        FOR UPDATE, bounded by the same timeout.
        """
        timeout = self.lock_timeout if timeout is None else timeout
        lock = self.locks.get(company_id)
        if not lock.acquire(timeout=timeout):
            raise ConcurrencyConflict(
                f"ledger lock for {company_id} not acquired within {timeout}s",
                company_id=company_id,
            )
        try:
            with self.transaction() as (conn, backend):
                if backend == "postgres":
                    conn.execute(f"SET LOCAL lock_timeout = '{int(timeout * 1000)}ms'")
                yield conn, backend
        except Exception as e:
            if getattr(e, "sqlstate", None) == PG_LOCK_NOT_AVAILABLE:
                raise ConcurrencyConflict(
                    f"row lock for {company_id} timed out", company_id=company_id,
                ) from e
            raise
        finally:
            lock.release()

    def healthcheck(self) -> dict:
        try:
            with self.connection() as (conn, _backend):
                conn.execute("SELECT 1").fetchone()
            return {"ok": True, "backend": self.backend}
        except Exception as e:
            return {"ok": False, "backend": self.backend, "error": str(e)}

    def close(self):
        if self._pg_pool is not None:
            self._pg_pool.close()
            self._pg_pool = None
