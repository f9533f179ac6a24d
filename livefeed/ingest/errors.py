"""
Connection error taxonomy

Every failure that reaches an operator is first mapped to an ErrorCategory
with a retryable flag and a remedy suggestion. Classification looks at the
exception type first, then falls back to message patterns because the
upstream reports most failures as free text.
"""

from __future__ import annotations

import asyncio
import re
from enum import Enum
from typing import List, Optional

import httpx
from pydantic import BaseModel


class ErrorCategory(str, Enum):
    NOT_LIVE = "NOT_LIVE"
    ROOM_NOT_FOUND = "ROOM_NOT_FOUND"
    AUTH_INVALID = "AUTH_INVALID"
    CONFIG_INVALID = "CONFIG_INVALID"
    RATE_LIMITED = "RATE_LIMITED"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    BLOCKED = "BLOCKED"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN = "UNKNOWN"


# Categories that require operator action before any new attempt
AUTH_CATEGORIES = frozenset({ErrorCategory.AUTH_INVALID, ErrorCategory.CONFIG_INVALID})


class ErrorClassification(BaseModel):
    category: ErrorCategory
    retryable: bool
    message: str
    suggestion: str
    cooldown_seconds: Optional[float] = None

    @property
    def requires_operator(self) -> bool:
        return self.category in AUTH_CATEGORIES


class LiveFeedError(Exception):
    """Base class for errors raised by livefeed."""


class ConfigurationError(LiveFeedError):
    """No usable configuration or credential was found."""


class StrategyError(LiveFeedError):
    """A single room-id resolution attempt failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, terminal: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.terminal = terminal


class ResolutionAttempt(BaseModel):
    strategy: str
    attempt: int
    error: str


class ResolutionError(LiveFeedError):
    """Every resolution strategy was exhausted."""

    def __init__(self, handle: str, attempts: List[ResolutionAttempt]):
        self.handle = handle
        self.attempts = attempts
        summary = "\n  ".join(f"{a.strategy} ({a.attempt}): {a.error}" for a in attempts)
        super().__init__(
            f"Failed to resolve room ID for @{handle} after trying all methods:\n  {summary}"
        )

    @property
    def attempts_by_method(self) -> dict:
        grouped: dict = {}
        for attempt in self.attempts:
            grouped.setdefault(attempt.strategy, []).append(attempt)
        return grouped


class TransportError(LiveFeedError):
    """The live transport could not be opened."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransportClosed(TransportError):
    """The live transport closed; code/reason as reported by the relay."""

    def __init__(self, code: Optional[int] = None, reason: str = ""):
        self.code = code
        self.reason = reason or ""
        super().__init__(f"Transport closed (code={code}): {self.reason or 'no reason given'}", status_code=code)


class ConnectionFailedError(LiveFeedError):
    """Raised by ConnectionSupervisor.connect after classifying the cause."""

    def __init__(self, classification: ErrorClassification):
        super().__init__(f"{classification.category.value}: {classification.message}")
        self.classification = classification


# Relay close codes with a fixed meaning
_CLOSE_CODE_CATEGORIES = {
    4401: ErrorCategory.AUTH_INVALID,
    4403: ErrorCategory.AUTH_INVALID,
    4404: ErrorCategory.NOT_LIVE,
    4429: ErrorCategory.RATE_LIMITED,
    4504: ErrorCategory.GATEWAY_TIMEOUT,
}

_SUGGESTIONS = {
    ErrorCategory.NOT_LIVE: "Make sure the handle is correct and the broadcaster is currently live.",
    ErrorCategory.ROOM_NOT_FOUND: "Make sure the handle is correct and the broadcaster is currently live.",
    ErrorCategory.AUTH_INVALID: "Check the configured API key; it is missing, invalid, expired or lacks permission. Reconnect manually after fixing it.",
    ErrorCategory.CONFIG_INVALID: "Configure a valid API key in the settings store or the SIGN_API_KEY environment variable, then reconnect manually.",
    ErrorCategory.RATE_LIMITED: "The upstream is rate limiting this client. Wait for the cooldown before reconnecting.",
    ErrorCategory.GATEWAY_TIMEOUT: "The upstream signing or relay service is overloaded. Wait 2-5 minutes before retrying.",
    ErrorCategory.BLOCKED: "Do not retry immediately. Wait at least 5-10 minutes; repeated attempts extend the block. Consider another network or session credentials.",
    ErrorCategory.NETWORK_ERROR: "Check the internet connection and make sure firewalls allow outbound connections to the platform.",
    ErrorCategory.UNKNOWN: "Check the logs for details. If the problem persists, report it with the error text.",
}

_RETRYABLE = {
    ErrorCategory.NOT_LIVE: False,
    ErrorCategory.ROOM_NOT_FOUND: False,
    ErrorCategory.AUTH_INVALID: False,
    ErrorCategory.CONFIG_INVALID: False,
    ErrorCategory.RATE_LIMITED: True,
    ErrorCategory.GATEWAY_TIMEOUT: True,
    ErrorCategory.BLOCKED: False,
    ErrorCategory.NETWORK_ERROR: True,
    ErrorCategory.UNKNOWN: True,
}


def build_classification(
    category: ErrorCategory,
    message: str,
    cooldown_seconds: Optional[float] = None,
) -> ErrorClassification:
    if category == ErrorCategory.RATE_LIMITED and cooldown_seconds is None:
        cooldown_seconds = 60.0
    return ErrorClassification(
        category=category,
        retryable=_RETRYABLE[category],
        message=message,
        suggestion=_SUGGESTIONS[category],
        cooldown_seconds=cooldown_seconds,
    )


def _status_in_text(text: str, status: str) -> bool:
    # Whole numbers only, so close code 4010 or an id like 14035 do not match
    return re.search(rf"(?<!\d){status}(?!\d)", text) is not None


def _category_from_text(text: str) -> Optional[ErrorCategory]:
    lowered = text.lower()

    # Third-party service refusing the key: an auth problem, not a platform outage
    if "lack of permission" in lowered or ("euler" in lowered and "permission" in lowered):
        return ErrorCategory.AUTH_INVALID

    if "sigi_state" in lowered or "blocked by" in lowered or "captcha" in lowered:
        return ErrorCategory.BLOCKED

    if _status_in_text(lowered, "504") or "gateway" in lowered:
        return ErrorCategory.GATEWAY_TIMEOUT

    if (
        "not live" in lowered
        or "live_not_found" in lowered
        or "fetchislive" in lowered
        or "stream ended" in lowered
    ):
        return ErrorCategory.NOT_LIVE

    if "room id" in lowered or "roomid" in lowered or "room not found" in lowered:
        return ErrorCategory.ROOM_NOT_FOUND

    if (
        "invalid credential" in lowered
        or "api key" in lowered
        or "unauthorized" in lowered
        or "forbidden" in lowered
        or _status_in_text(lowered, "401")
        or _status_in_text(lowered, "403")
    ):
        return ErrorCategory.AUTH_INVALID

    if _status_in_text(lowered, "429") or "rate limit" in lowered or "too many requests" in lowered:
        return ErrorCategory.RATE_LIMITED

    if "timeout" in lowered or "timed out" in lowered:
        return ErrorCategory.GATEWAY_TIMEOUT

    if (
        "econnrefused" in lowered
        or "enotfound" in lowered
        or "network" in lowered
        or "connection refused" in lowered
        or "name resolution" in lowered
    ):
        return ErrorCategory.NETWORK_ERROR

    return None


def classify_error(exc: BaseException) -> ErrorClassification:
    """Map any exception raised while connecting to an ErrorClassification."""
    if isinstance(exc, ConnectionFailedError):
        return exc.classification

    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, ConfigurationError):
        return build_classification(ErrorCategory.CONFIG_INVALID, message)

    if isinstance(exc, TransportError) and exc.status_code is not None:
        code_category = _CLOSE_CODE_CATEGORIES.get(exc.status_code)
        if code_category is None and exc.status_code in (401, 403):
            code_category = ErrorCategory.AUTH_INVALID
        elif code_category is None and exc.status_code == 429:
            code_category = ErrorCategory.RATE_LIMITED
        if code_category is not None:
            return build_classification(code_category, message)

    if isinstance(exc, ResolutionError):
        terminal_texts = " ".join(a.error for a in exc.attempts)
        if "not live" in terminal_texts.lower():
            return build_classification(ErrorCategory.NOT_LIVE, message)
        text_category = _category_from_text(terminal_texts)
        return build_classification(text_category or ErrorCategory.ROOM_NOT_FOUND, message)

    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return build_classification(ErrorCategory.GATEWAY_TIMEOUT, message)

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (401, 403):
            return build_classification(ErrorCategory.AUTH_INVALID, message)
        if status == 429:
            return build_classification(ErrorCategory.RATE_LIMITED, message)
        if status >= 500:
            return build_classification(ErrorCategory.GATEWAY_TIMEOUT, message)

    text_category = _category_from_text(message)
    if text_category is not None:
        return build_classification(text_category, message)

    if isinstance(exc, (httpx.NetworkError, ConnectionError, OSError)):
        return build_classification(ErrorCategory.NETWORK_ERROR, message)

    return build_classification(ErrorCategory.UNKNOWN, message)
