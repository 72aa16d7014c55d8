"""Error types and helpers for the boardroom service."""

from __future__ import annotations

import re
from collections.abc import Iterator
from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from .usage import UsageViolation


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database tables have not been created."""


class DebateConfigError(ValueError):
    """Raised when a debate request cannot be scheduled."""


class CompletionError(RuntimeError):
    """Raised when the text-completion capability fails."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        self.transient = transient
        super().__init__(message)


class RateLimitExceededError(RuntimeError):
    """Raised when a user starts debates faster than the configured rate."""


class UsageLimitExceededError(RuntimeError):
    """Raised when a debate is blocked by the user's tier limits."""

    def __init__(self, message: str, violation: UsageViolation | None = None) -> None:
        self.violation = violation
        super().__init__(message)


class BillingError(RuntimeError):
    """Base class for billing engine failures."""


class SubscriptionNotFoundError(BillingError):
    """Raised when a subscription id does not exist."""


class SubscriptionConflictError(BillingError):
    """Raised when a user already holds a current subscription."""


class BillingCycleNotFoundError(BillingError):
    """Raised when a billing cycle id does not exist."""


class InvoiceNotFoundError(BillingError):
    """Raised when an invoice id does not exist."""


class InvalidStatusTransitionError(BillingError):
    """Raised when a billing record cannot move to the requested status."""


# Postgres (asyncpg) and SQLite phrasings of "table is missing".
_MISSING_TABLE_PATTERNS = (
    re.compile(r'relation "(?:\w+\.)?(?P<table>\w+)" does not exist', re.IGNORECASE),
    re.compile(r"no such table:\s*(?:\w+\.)?(?P<table>\w+)", re.IGNORECASE),
)


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def missing_table_name(exc: BaseException) -> str | None:
    """Name of the table a database error complains about, if any."""
    for error in _exception_chain(exc):
        for pattern in _MISSING_TABLE_PATTERNS:
            match = pattern.search(str(error))
            if match:
                return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    if missing_table_name(exc):
        return True
    return any(type(error).__name__ == "UndefinedTableError" for error in _exception_chain(exc))


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    where = f" (table `{table}` is missing)" if table else ""
    return f"The boardroom tables have not been created{where}.\nRun `boardroom init-db` first."
