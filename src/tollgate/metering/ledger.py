"""SQLite-backed balance ledger and usage log.

The ledger is the only writer of balances and usage rows. Each usage commit
inserts the usage row, decrements the account balance and, when the balance
goes negative, pauses the instance, all inside one ``BEGIN IMMEDIATE``
transaction.
"""

from __future__ import annotations

import datetime as _dt
import logging
import secrets
import sqlite3
import threading
import uuid
from typing import Callable

from tollgate.core.errors import InsufficientCreditError, LedgerError
from tollgate.core.models import (
    Account,
    Balance,
    BillingMode,
    CommitResult,
    Instance,
    InstanceStatus,
    ModelUsage,
    UsageLog,
    UsageReport,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS accounts (
        id         TEXT PRIMARY KEY,
        email      TEXT,
        created_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS balances (
        account_id            TEXT PRIMARY KEY REFERENCES accounts(id) ON DELETE CASCADE,
        credits_cents         INTEGER NOT NULL DEFAULT 0,
        auto_topup_enabled    INTEGER NOT NULL DEFAULT 0,
        topup_threshold_cents INTEGER NOT NULL DEFAULT 500,
        topup_amount_cents    INTEGER NOT NULL DEFAULT 2000
    );
    CREATE TABLE IF NOT EXISTS instances (
        id           TEXT PRIMARY KEY,
        account_id   TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
        proxy_secret TEXT NOT NULL UNIQUE,
        status       TEXT NOT NULL,
        model        TEXT,
        channel_type TEXT NOT NULL DEFAULT 'TELEGRAM',
        billing_mode TEXT NOT NULL DEFAULT 'managed',
        created_at   TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS usage_logs (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        instance_id TEXT NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
        model       TEXT NOT NULL,
        tokens_in   INTEGER NOT NULL,
        tokens_out  INTEGER NOT NULL,
        cost_cents  INTEGER NOT NULL,
        timestamp   TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS usage_logs_instance_ts ON usage_logs(instance_id, timestamp);
"""


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(tz=_dt.timezone.utc)


def _ts(dt: _dt.datetime) -> str:
    """Fixed-width UTC ISO string; rows are compared as text."""
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.astimezone(_dt.timezone.utc).isoformat(timespec="microseconds")


def local_midnight(now: _dt.datetime | None = None) -> _dt.datetime:
    """Start of the current day in the server's local timezone."""
    now = (now or _dt.datetime.now()).astimezone()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class Ledger:
    """Accounts, instances, balances and usage logs in one SQLite database.

    Uses a single connection shared across request threads; every operation
    holds ``_lock`` for its duration. Pass ``":memory:"`` for a throwaway
    ledger.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        clock: Callable[[], _dt.datetime] = _utcnow,
    ) -> None:
        self.db_path = db_path
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._ensure_tables()

    def _ensure_tables(self) -> None:
        with self._lock:
            self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def ping(self) -> bool:
        try:
            with self._lock:
                self._conn.execute("SELECT 1").fetchone()
        except sqlite3.Error:
            logger.exception("Ledger health check failed")
            return False
        return True

    # -- accounts and instances ------------------------------------------------

    def create_account(
        self,
        account_id: str,
        credits_cents: int = 0,
        email: str | None = None,
    ) -> Account:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._conn.execute(
                    "INSERT INTO accounts (id, email, created_at) VALUES (?, ?, ?)",
                    (account_id, email, _ts(self._clock())),
                )
                self._conn.execute(
                    "INSERT INTO balances (account_id, credits_cents) VALUES (?, ?)",
                    (account_id, credits_cents),
                )
                self._conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                self._conn.execute("ROLLBACK")
                raise LedgerError(f"Account {account_id!r} already exists") from e
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
        return Account(id=account_id, email=email)

    def get_account(self, account_id: str) -> Account | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, email FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
        return Account(id=row["id"], email=row["email"]) if row else None

    def create_instance(
        self,
        account_id: str,
        model: str | None = None,
        status: InstanceStatus = InstanceStatus.ACTIVE,
        channel_type: str = "TELEGRAM",
        billing_mode: BillingMode = BillingMode.MANAGED,
        instance_id: str | None = None,
        proxy_secret: str | None = None,
    ) -> Instance:
        instance = Instance(
            id=instance_id or uuid.uuid4().hex,
            account_id=account_id,
            proxy_secret=proxy_secret or secrets.token_urlsafe(32),
            status=status,
            model=model,
            channel_type=channel_type,
            billing_mode=billing_mode,
        )
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO instances "
                    "(id, account_id, proxy_secret, status, model, channel_type, billing_mode, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        instance.id,
                        instance.account_id,
                        instance.proxy_secret,
                        instance.status.value,
                        instance.model,
                        instance.channel_type,
                        instance.billing_mode.value,
                        _ts(self._clock()),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise LedgerError(f"Cannot create instance for {account_id!r}: {e}") from e
        return instance

    def find_instance_by_secret(self, proxy_secret: str) -> Instance | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM instances WHERE proxy_secret = ?", (proxy_secret,)
            ).fetchone()
        return _row_to_instance(row) if row else None

    def get_instance(self, instance_id: str) -> Instance | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM instances WHERE id = ?", (instance_id,)
            ).fetchone()
        return _row_to_instance(row) if row else None

    def list_instances(self, account_id: str) -> list[Instance]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM instances WHERE account_id = ? ORDER BY created_at", (account_id,)
            ).fetchall()
        return [_row_to_instance(r) for r in rows]

    def set_instance_status(self, instance_id: str, status: InstanceStatus) -> None:
        with self._lock:
            cur = self._conn.execute(
                "UPDATE instances SET status = ? WHERE id = ?", (status.value, instance_id)
            )
        if cur.rowcount == 0:
            raise LedgerError(f"Unknown instance {instance_id!r}")

    # -- balances ----------------------------------------------------------------

    def get_balance(self, account_id: str) -> Balance:
        """Current balance; an account without a balance row has zero credit."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM balances WHERE account_id = ?", (account_id,)
            ).fetchone()
        if row is None:
            return Balance(account_id=account_id)
        return Balance(
            account_id=account_id,
            credits_cents=row["credits_cents"],
            auto_topup_enabled=bool(row["auto_topup_enabled"]),
            topup_threshold_cents=row["topup_threshold_cents"],
            topup_amount_cents=row["topup_amount_cents"],
        )

    def set_auto_topup(
        self,
        account_id: str,
        enabled: bool,
        threshold_cents: int | None = None,
        amount_cents: int | None = None,
    ) -> Balance:
        current = self.get_balance(account_id)
        with self._lock:
            cur = self._conn.execute(
                "UPDATE balances SET auto_topup_enabled = ?, topup_threshold_cents = ?, "
                "topup_amount_cents = ? WHERE account_id = ?",
                (
                    int(enabled),
                    current.topup_threshold_cents if threshold_cents is None else threshold_cents,
                    current.topup_amount_cents if amount_cents is None else amount_cents,
                    account_id,
                ),
            )
        if cur.rowcount == 0:
            raise LedgerError(f"No balance for account {account_id!r}")
        return self.get_balance(account_id)

    def credit(self, account_id: str, amount_cents: int) -> int:
        """Add credit (a payment event) and return the new balance.

        When the balance ends up positive, the account's paused instances are
        reactivated. This is the only path that un-pauses an instance.
        """
        if amount_cents <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount_cents}")
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                cur = self._conn.execute(
                    "UPDATE balances SET credits_cents = credits_cents + ? WHERE account_id = ?",
                    (amount_cents, account_id),
                )
                if cur.rowcount == 0:
                    raise LedgerError(f"No balance for account {account_id!r}")
                new_balance = self._conn.execute(
                    "SELECT credits_cents FROM balances WHERE account_id = ?", (account_id,)
                ).fetchone()[0]
                if new_balance > 0:
                    resumed = self._conn.execute(
                        "UPDATE instances SET status = ? WHERE account_id = ? AND status = ?",
                        (InstanceStatus.ACTIVE.value, account_id, InstanceStatus.PAUSED.value),
                    ).rowcount
                    if resumed:
                        logger.info("Resumed %d paused instance(s) for %s", resumed, account_id)
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
        logger.info("Credited %s with %dc, balance now %dc", account_id, amount_cents, new_balance)
        return new_balance

    # -- usage -------------------------------------------------------------------

    def commit_usage(
        self,
        instance: Instance,
        model: str,
        tokens_in: int,
        tokens_out: int,
        cost_cents: int,
        strict_floor: bool = False,
        timestamp: _dt.datetime | None = None,
    ) -> CommitResult:
        """Record usage and charge the account in one transaction.

        In the default mode the decrement is unconditional and a negative
        result pauses the instance. With ``strict_floor`` the decrement only
        applies while the balance covers the cost; otherwise the whole
        transaction is rolled back and ``InsufficientCreditError`` raised.
        """
        ts = _ts(timestamp or self._clock())
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                cur = self._conn.execute(
                    "INSERT INTO usage_logs (instance_id, model, tokens_in, tokens_out, cost_cents, timestamp) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (instance.id, model, tokens_in, tokens_out, cost_cents, ts),
                )
                usage_id = cur.lastrowid

                if strict_floor:
                    cur = self._conn.execute(
                        "UPDATE balances SET credits_cents = credits_cents - ? "
                        "WHERE account_id = ? AND credits_cents >= ?",
                        (cost_cents, instance.account_id, cost_cents),
                    )
                else:
                    cur = self._conn.execute(
                        "UPDATE balances SET credits_cents = credits_cents - ? WHERE account_id = ?",
                        (cost_cents, instance.account_id),
                    )
                row = self._conn.execute(
                    "SELECT credits_cents FROM balances WHERE account_id = ?", (instance.account_id,)
                ).fetchone()
                if row is None:
                    raise LedgerError(f"No balance for account {instance.account_id!r}")
                if cur.rowcount == 0:
                    raise InsufficientCreditError(instance.account_id, row[0], cost_cents)
                balance_cents = row[0]

                paused = False
                if balance_cents < 0:
                    self._conn.execute(
                        "UPDATE instances SET status = ? WHERE id = ?",
                        (InstanceStatus.PAUSED.value, instance.id),
                    )
                    paused = True
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
        return CommitResult(usage_id=usage_id, balance_cents=balance_cents, paused=paused)

    def today_spend_cents(self, account_id: str, now: _dt.datetime | None = None) -> int:
        """Sum of usage cost across all the account's instances since local midnight."""
        since = _ts(local_midnight(now or self._clock()))
        with self._lock:
            row = self._conn.execute(
                "SELECT COALESCE(SUM(u.cost_cents), 0) FROM usage_logs u "
                "JOIN instances i ON i.id = u.instance_id "
                "WHERE i.account_id = ? AND u.timestamp >= ?",
                (account_id, since),
            ).fetchone()
        return int(row[0])

    def usage_logs(self, instance_id: str) -> list[UsageLog]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM usage_logs WHERE instance_id = ? ORDER BY id", (instance_id,)
            ).fetchall()
        return [
            UsageLog(
                id=r["id"],
                instance_id=r["instance_id"],
                model=r["model"],
                tokens_in=r["tokens_in"],
                tokens_out=r["tokens_out"],
                cost_cents=r["cost_cents"],
                timestamp=_dt.datetime.fromisoformat(r["timestamp"]),
            )
            for r in rows
        ]

    def usage_report(
        self,
        account_id: str,
        start: _dt.datetime,
        end: _dt.datetime,
    ) -> UsageReport:
        """Usage between ``start`` and ``end`` (inclusive), by model and instance."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT u.model, u.tokens_in, u.tokens_out, u.cost_cents, u.instance_id "
                "FROM usage_logs u JOIN instances i ON i.id = u.instance_id "
                "WHERE i.account_id = ? AND u.timestamp >= ? AND u.timestamp <= ? "
                "ORDER BY u.id",
                (account_id, _ts(start), _ts(end)),
            ).fetchall()
            instance_rows = self._conn.execute(
                "SELECT id, status, channel_type FROM instances WHERE account_id = ? ORDER BY created_at",
                (account_id,),
            ).fetchall()

        report = UsageReport(account_id=account_id, start=start, end=end)
        by_model: dict[str, ModelUsage] = {}
        per_instance: dict[str, list[int]] = {}
        for r in rows:
            m = by_model.setdefault(r["model"], ModelUsage(model=r["model"]))
            m.tokens_in += r["tokens_in"]
            m.tokens_out += r["tokens_out"]
            m.cost_cents += r["cost_cents"]
            report.total_tokens_in += r["tokens_in"]
            report.total_tokens_out += r["tokens_out"]
            report.total_cost_cents += r["cost_cents"]
            per_instance.setdefault(r["instance_id"], []).append(r["cost_cents"])

        report.by_model = sorted(by_model.values(), key=lambda m: m.model)
        report.instances = [
            {
                "id": ir["id"],
                "status": ir["status"],
                "channel_type": ir["channel_type"],
                "usage_count": len(per_instance.get(ir["id"], [])),
                "cost_cents": sum(per_instance.get(ir["id"], [])),
            }
            for ir in instance_rows
        ]
        return report


def _row_to_instance(row: sqlite3.Row) -> Instance:
    return Instance(
        id=row["id"],
        account_id=row["account_id"],
        proxy_secret=row["proxy_secret"],
        status=InstanceStatus(row["status"]),
        model=row["model"],
        channel_type=row["channel_type"],
        billing_mode=BillingMode(row["billing_mode"]),
    )
