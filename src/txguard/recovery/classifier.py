"""
Error classification for operation failures.

Maps any raised exception onto the ``ErrorCategory`` taxonomy and decides
whether it is worth retrying. This is the only place where provider
specific error shapes (``.code``, ``.status``, ``.response.status``,
free-form messages) are inspected.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import requests

from ..runtime.errors import (
    ErrorCategory, OperationError, USER_MESSAGES
)


logger = logging.getLogger(__name__)

Code = Union[int, str]


USER_REJECTED_CODES = frozenset({4001, "ACTION_REJECTED", "USER_REJECTED"})
USER_REJECTED_MESSAGES = ("user rejected", "user denied")

PERMANENT_CODES: Dict[Code, ErrorCategory] = {
    "INSUFFICIENT_FUNDS": ErrorCategory.INSUFFICIENT_RESOURCE,
    "UNPREDICTABLE_GAS_LIMIT": ErrorCategory.VALIDATION_FAILURE,
    "INVALID_ARGUMENT": ErrorCategory.VALIDATION_FAILURE,
    -32602: ErrorCategory.VALIDATION_FAILURE,
    "CALL_EXCEPTION": ErrorCategory.REVERTED,
    "EXECUTION_REVERTED": ErrorCategory.REVERTED,
    -32000: ErrorCategory.REVERTED,
}

TRANSIENT_CODES: Dict[Code, ErrorCategory] = {
    "ETIMEDOUT": ErrorCategory.NETWORK_TRANSIENT,
    "ECONNRESET": ErrorCategory.NETWORK_TRANSIENT,
    "ECONNREFUSED": ErrorCategory.NETWORK_TRANSIENT,
    "ENETUNREACH": ErrorCategory.NETWORK_TRANSIENT,
    "EAI_AGAIN": ErrorCategory.NETWORK_TRANSIENT,
    "NETWORK_ERROR": ErrorCategory.NETWORK_TRANSIENT,
    "TIMEOUT": ErrorCategory.NETWORK_TRANSIENT,
    "RATE_LIMIT": ErrorCategory.SERVER_TRANSIENT,
    "SERVER_ERROR": ErrorCategory.SERVER_TRANSIENT,
    -32005: ErrorCategory.SERVER_TRANSIENT,
}

TRANSIENT_STATUSES: Dict[int, ErrorCategory] = {
    408: ErrorCategory.NETWORK_TRANSIENT,
    429: ErrorCategory.SERVER_TRANSIENT,
    500: ErrorCategory.SERVER_TRANSIENT,
    502: ErrorCategory.SERVER_TRANSIENT,
    503: ErrorCategory.SERVER_TRANSIENT,
    504: ErrorCategory.SERVER_TRANSIENT,
}

# Ordered: permanent keywords are checked before transient ones
PERMANENT_KEYWORDS: Tuple[Tuple[str, ErrorCategory], ...] = (
    ("insufficient funds", ErrorCategory.INSUFFICIENT_RESOURCE),
    ("execution reverted", ErrorCategory.REVERTED),
    ("gas required exceeds", ErrorCategory.VALIDATION_FAILURE),
)

TRANSIENT_KEYWORDS: Tuple[Tuple[str, ErrorCategory], ...] = (
    ("network", ErrorCategory.NETWORK_TRANSIENT),
    ("timeout", ErrorCategory.NETWORK_TRANSIENT),
    ("timed out", ErrorCategory.NETWORK_TRANSIENT),
    ("econnreset", ErrorCategory.NETWORK_TRANSIENT),
    ("etimedout", ErrorCategory.NETWORK_TRANSIENT),
    ("rate limit", ErrorCategory.SERVER_TRANSIENT),
    ("too many requests", ErrorCategory.SERVER_TRANSIENT),
    ("service unavailable", ErrorCategory.SERVER_TRANSIENT),
    ("bad gateway", ErrorCategory.SERVER_TRANSIENT),
    ("gateway timeout", ErrorCategory.SERVER_TRANSIENT),
    ("nonce too low", ErrorCategory.SERVER_TRANSIENT),
    ("replacement transaction underpriced", ErrorCategory.SERVER_TRANSIENT),
)


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying a single failure."""
    category: ErrorCategory
    retryable: bool
    message: str
    code: Optional[Code] = None

    @classmethod
    def of(cls, category: ErrorCategory, code: Optional[Code] = None,
           retryable: Optional[bool] = None) -> "Classification":
        if retryable is None:
            retryable = category.is_transient
        return cls(category, retryable, USER_MESSAGES[category], code)


def _normalize_code(code: Any) -> Optional[Code]:
    if code is None or isinstance(code, bool):
        return None
    if isinstance(code, int):
        return code
    text = str(code).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return text.upper()


def _extract_codes(error: BaseException) -> Tuple[Code, ...]:
    codes = []
    for attr in ("code", "reason"):
        code = _normalize_code(getattr(error, attr, None))
        if code is not None:
            codes.append(code)
    return tuple(codes)


def _extract_status(error: BaseException) -> Optional[int]:
    candidates = [getattr(error, "status", None), getattr(error, "status_code", None)]
    response = getattr(error, "response", None)
    if response is not None:
        candidates.append(getattr(response, "status", None))
        candidates.append(getattr(response, "status_code", None))
    for status in candidates:
        if isinstance(status, int) and not isinstance(status, bool):
            return status
    return None


class ErrorClassifier:
    """
    Pure classifier for operation failures.

    Rules are applied in order and the first match wins:

    1. explicit user-declined signal
    2. known permanent codes
    3. known transient codes, HTTP statuses and exception types
    4. case-insensitive message keywords, otherwise ``UNKNOWN``

    Unknown errors are not retryable so that non-idempotent operations
    are never retried blindly.
    """

    def __init__(
        self,
        permanent_codes: Optional[Dict[Code, ErrorCategory]] = None,
        transient_codes: Optional[Dict[Code, ErrorCategory]] = None,
        transient_keywords: Optional[Iterable[Tuple[str, ErrorCategory]]] = None,
    ):
        """
        Initialize classifier.

        Args:
            permanent_codes: Extra permanent codes merged over the defaults
            transient_codes: Extra transient codes merged over the defaults
            transient_keywords: Extra message keywords for transient failures
        """
        self.permanent_codes = dict(PERMANENT_CODES)
        self.permanent_codes.update(permanent_codes or {})
        self.transient_codes = dict(TRANSIENT_CODES)
        self.transient_codes.update(transient_codes or {})
        self.transient_keywords = TRANSIENT_KEYWORDS + tuple(
            (keyword.lower(), category) for keyword, category in (transient_keywords or ())
        )

    def classify(self, error: BaseException) -> Classification:
        """
        Classify a failure.

        Args:
            error: Exception raised by an operation or lookup

        Returns:
            Classification with category, retry decision and display message
        """
        if isinstance(error, OperationError):
            return Classification(error.category, error.retryable, error.user_message, error.code)

        codes = _extract_codes(error)
        message = str(error).lower()

        # 1. user declined
        for code in codes:
            if code in USER_REJECTED_CODES:
                return Classification.of(ErrorCategory.USER_REJECTED, code)
        if any(marker in message for marker in USER_REJECTED_MESSAGES):
            return Classification.of(ErrorCategory.USER_REJECTED)

        # 2. permanent codes
        for code in codes:
            category = self.permanent_codes.get(code)
            if category is not None:
                return Classification.of(category, code, retryable=False)

        # 3. transient codes, statuses and exception types
        for code in codes:
            category = self.transient_codes.get(code)
            if category is not None:
                return Classification.of(category, code, retryable=True)

        status = _extract_status(error)
        if status is not None and status in TRANSIENT_STATUSES:
            return Classification.of(TRANSIENT_STATUSES[status], status, retryable=True)

        category = self._classify_type(error)
        if category is not None:
            return Classification.of(category, codes[0] if codes else status, retryable=True)

        # 4. message heuristics
        for keyword, category in PERMANENT_KEYWORDS:
            if keyword in message:
                return Classification.of(category, codes[0] if codes else None, retryable=False)
        for keyword, category in self.transient_keywords:
            if keyword in message:
                return Classification.of(category, codes[0] if codes else None, retryable=True)

        logger.debug(f"Unclassified error {type(error).__name__}: {error}")
        return Classification.of(ErrorCategory.UNKNOWN, codes[0] if codes else status, retryable=False)

    def is_retryable(self, error: BaseException) -> bool:
        return self.classify(error).retryable

    def to_error(self, error: BaseException) -> OperationError:
        """
        Wrap a raw exception in the tagged ``OperationError`` variant.

        ``OperationError`` instances are returned unchanged.
        """
        if isinstance(error, OperationError):
            return error
        classification = self.classify(error)
        return OperationError(
            str(error) or type(error).__name__,
            category=classification.category,
            code=classification.code,
            details={"type": type(error).__name__},
            cause=error,
            retryable=classification.retryable,
        )

    @staticmethod
    def _classify_type(error: BaseException) -> Optional[ErrorCategory]:
        if isinstance(error, requests.HTTPError):
            # Non-transient HTTP statuses already fell through the status table
            return None
        if isinstance(error, (requests.ConnectionError, requests.Timeout)):
            return ErrorCategory.NETWORK_TRANSIENT
        if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return ErrorCategory.NETWORK_TRANSIENT
        return None


__all__ = [
    "Classification",
    "ErrorClassifier",
    "USER_REJECTED_CODES",
    "PERMANENT_CODES",
    "TRANSIENT_CODES",
    "TRANSIENT_STATUSES",
]
