from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol, Set

import aiohttp
import discord
from discord import app_commands

from .status import (
    AuthErrorMeta,
    ErrorMeta,
    NetworkErrorMeta,
    RateLimitMeta,
    StatusStore,
    UserInputMeta,
    coerce_meta,
)

LOGGER = logging.getLogger(__name__)

TRANSIENT_STATUSES = {401, 403, 429}
TRANSIENT_MESSAGE_MARKERS = (
    "timeout",
    "timed out",
    "rate limit",
    "connection reset",
    "econnreset",
    "socket hang up",
    "temporarily unavailable",
)
RESET_META_KINDS = {"network", "auth", "rate_limit"}


class ResetClassifier(Protocol):
    def __call__(self, error: Any, meta: Optional[ErrorMeta]) -> bool: ...


def unwrap_error(error: Any) -> Any:
    """Return the exception raised inside a command callback."""
    seen = 0
    while seen < 5 and getattr(error, "original", None) is not None:
        error = error.original
        seen += 1
    return error


def _status_of(error: Any) -> Optional[int]:
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status
    return None


def default_reset_classifier(error: Any, meta: Optional[ErrorMeta]) -> bool:
    """Decide whether a failure is transient enough to clear the error streak.

    Precedence: explicit meta kind, then HTTP status, then message markers.
    """
    if meta is not None:
        if isinstance(meta, UserInputMeta):
            return False
        if meta.kind in RESET_META_KINDS:
            return True
    error = unwrap_error(error)
    status = _status_of(error)
    if status is not None:
        return status in TRANSIENT_STATUSES or 500 <= status < 600
    text = str(error or "").lower()
    return any(marker in text for marker in TRANSIENT_MESSAGE_MARKERS)


def classify_error(error: Any) -> Optional[ErrorMeta]:
    error = unwrap_error(error)
    if isinstance(error, discord.RateLimited):
        return RateLimitMeta(retry_after=error.retry_after)
    if isinstance(error, asyncio.TimeoutError):
        return NetworkErrorMeta(code="timeout")
    if isinstance(error, aiohttp.ClientResponseError):
        return _meta_for_status(error.status)
    if isinstance(error, aiohttp.ClientError):
        return NetworkErrorMeta(code=error.__class__.__name__)
    if isinstance(error, discord.HTTPException):
        return _meta_for_status(error.status)
    if isinstance(error, (ValueError, app_commands.TransformerError)):
        return UserInputMeta()
    return None


def _meta_for_status(status: int) -> ErrorMeta:
    if status == 429:
        return RateLimitMeta()
    if status in (401, 403):
        return AuthErrorMeta(status=status)
    return NetworkErrorMeta(status=status)


class CommandResetPolicy:
    """Clears a command's counters once it recovers from a transient failure."""

    def __init__(
        self,
        store: StatusStore,
        classifier: ResetClassifier = default_reset_classifier,
    ):
        self.store = store
        self.classifier = classifier
        self._pending: Set[str] = set()

    def pending(self, name: str) -> bool:
        return name in self._pending

    def note_error(self, name: str, error: Any, meta: Any = None) -> bool:
        try:
            reset_worthy = bool(self.classifier(error, coerce_meta(meta)))
        except Exception:
            LOGGER.exception("Reset classifier failed for %s", name)
            return False
        if reset_worthy:
            self._pending.add(name)
        return reset_worthy

    def note_success(self, name: str) -> bool:
        if name not in self._pending:
            return False
        self._pending.discard(name)
        self.store.reset_command(name)
        return True
