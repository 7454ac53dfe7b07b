"""tollgate error hierarchy."""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path
from typing import Generator


class TollgateError(Exception):
    """Base exception for all tollgate errors."""


class ConfigError(TollgateError):
    """Invalid or missing configuration."""


class LedgerError(TollgateError):
    """Error reading from or writing to the balance ledger."""


class InsufficientCreditError(LedgerError):
    """A strict-floor commit would take the balance below zero."""

    def __init__(self, account_id: str, balance_cents: int, cost_cents: int) -> None:
        self.account_id = account_id
        self.balance_cents = balance_cents
        self.cost_cents = cost_cents
        super().__init__(
            f"Insufficient credit for {account_id}: "
            f"balance={balance_cents}c, cost={cost_cents}c"
        )


class UpstreamError(TollgateError):
    """The upstream LLM API could not be reached."""


class ProxyRejection(TollgateError):
    """A request refused before it is forwarded upstream.

    Carries the HTTP status, a machine-readable code and any extra context
    fields (``currentBalance``, ``todaySpend``...) that end up in the JSON
    error body.
    """

    def __init__(
        self,
        status: int,
        error: str,
        code: str,
        message: str | None = None,
        **context: object,
    ) -> None:
        self.status = status
        self.error = error
        self.code = code
        self.message = message
        self.context = context
        super().__init__(f"{status} {code}: {error}")

    def to_body(self) -> dict:
        body: dict = {"error": self.error, "code": self.code}
        if self.message:
            body["message"] = self.message
        body.update(self.context)
        return body


@contextlib.contextmanager
def atomic_write(path: Path | str) -> Generator[Path, None, None]:
    """Write to a temp file then atomically rename to target path.

    Usage:
        with atomic_write("usage.json") as tmp:
            tmp.write_text(json.dumps(data))
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        os.close(fd)
        yield tmp
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
