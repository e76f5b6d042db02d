# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from typing import Iterable, Optional

import httpx
from litellm.exceptions import RateLimitError

from .config import ENV_EXTRA_RETRY_SIGNATURES, _env_list

lib_logger = logging.getLogger("keypool")

# Lowercased substrings that mark an upstream failure as a quota / rate-limit
# condition. The upstream service has no single stable error code across the
# unary and streaming paths, so this table is the only place to correct
# false positives or negatives.
RETRYABLE_ERROR_SIGNATURES = (
    "quota",
    "resource_exhausted",
    "429",
    "rate limit",
    "too many requests",
    "exceeded",
    "limit",
)

# Signatures that mean the credential's allowance is gone, not just throttled
QUOTA_SIGNATURES = frozenset({"quota", "resource_exhausted", "exceeded"})


class KeyPoolError(Exception):
    """Base class for errors raised by the key pool and invoker."""

    def __init__(self, message: str = ""):
        self.message = message
        super().__init__(message)


class EmptyPoolError(KeyPoolError):
    """
    Raised when a credential was required but none is available.

    Fatal: never retried, raised before any remote call is attempted.

    Attributes:
        pool_name: Name of the pool that was empty (None in no-pool mode)
    """

    def __init__(self, pool_name: Optional[str] = None, message: str = ""):
        self.pool_name = pool_name
        super().__init__(
            message
            or (
                f"Credential pool '{pool_name}' has no keys"
                if pool_name
                else "No credential pool and no fallback credential configured"
            )
        )


class PoolRefreshError(KeyPoolError):
    """
    Raised when a pool source cannot supply a credential list.

    The pool keeps its previous state when this is raised.
    """

    def __init__(self, pool_name: str, message: str = ""):
        self.pool_name = pool_name
        super().__init__(message or f"Failed to refresh credential pool '{pool_name}'")


class RetryableUpstreamError(KeyPoolError):
    """
    An upstream failure known to be a quota / rate-limit condition.

    Operations may raise this explicitly when they detect exhaustion through
    a structured channel; it is always classified as retryable.
    """

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message or "Upstream quota or rate limit reached")


class FatalUpstreamError(KeyPoolError):
    """
    An upstream failure that rotation cannot fix (bad request, content
    policy, non-quota authorization failure). Never retried.
    """

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message or "Upstream request failed")


def mask_credential(credential: str) -> str:
    """Mask a secret for safe display in logs, keeping the last 6 characters."""
    if credential and len(credential) > 6:
        return f"...{credential[-6:]}"
    return "***"


class ClassifiedError:
    """A structured representation of a classified error."""

    def __init__(
        self,
        retryable: bool,
        error_type: str,
        original_exception: Optional[BaseException] = None,
        status_code: Optional[int] = None,
        matched_signature: Optional[str] = None,
    ):
        self.retryable = retryable
        self.error_type = error_type
        self.original_exception = original_exception
        self.status_code = status_code
        self.matched_signature = matched_signature

    def __str__(self):
        parts = [
            f"retryable={self.retryable}",
            f"type={self.error_type}",
            f"status={self.status_code}",
        ]
        if self.matched_signature:
            parts.append(f"signature={self.matched_signature!r}")
        parts.append(f"original_exc={self.original_exception!r}")
        return f"ClassifiedError({', '.join(parts)})"


def _get_status_code(error: object) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status_code = getattr(error, "status_code", None)
    return status_code if isinstance(status_code, int) else None


def _get_error_text(error: object) -> str:
    """
    Collect everything inspectable about a failure as one lowercased string.

    Covers plain messages, exception str(), litellm's ``message`` attribute
    and the body of an httpx error response.
    """
    if isinstance(error, str):
        return error.lower()

    parts = [str(error)]
    message = getattr(error, "message", None)
    if isinstance(message, str) and message not in parts[0]:
        parts.append(message)

    if isinstance(error, httpx.HTTPStatusError):
        try:
            parts.append(error.response.text)
        except httpx.ResponseNotRead:
            # Streamed responses have no body until read
            pass

    return " ".join(part for part in parts if part).lower()


class ErrorClassifier:
    """
    Decides whether a failed remote call is worth retrying on another key.

    Pure: classification never mutates any state. The signature table can be
    swapped per instance without touching the invocation logic.

    Usage:
        classifier = ErrorClassifier()
        if classifier.classify(error).retryable:
            ...

        # Narrower table for a backend with precise messages
        strict = ErrorClassifier(signatures=("resource_exhausted", "429"))
    """

    def __init__(
        self,
        signatures: Optional[Iterable[str]] = None,
        extra_signatures: Iterable[str] = (),
    ):
        base = RETRYABLE_ERROR_SIGNATURES if signatures is None else signatures
        table = [s.lower() for s in base]
        for signature in extra_signatures:
            if signature.lower() not in table:
                table.append(signature.lower())
        self.signatures = tuple(table)

    @classmethod
    def from_env(cls) -> "ErrorClassifier":
        """Default table extended by KEYPOOL_EXTRA_RETRY_SIGNATURES."""
        return cls(extra_signatures=_env_list(ENV_EXTRA_RETRY_SIGNATURES))

    def match_signature(self, text: str) -> Optional[str]:
        """Return the first signature found in the (lowercased) text."""
        for signature in self.signatures:
            if signature in text:
                return signature
        return None

    def classify(self, error: object) -> ClassifiedError:
        """
        Classify a failure object or message.

        Error types:
        - quota_exceeded: credential allowance exhausted, rotate
        - rate_limit: credential throttled, rotate
        - empty_pool / pool_refresh: pool problems, never retried
        - fatal: anything else, propagated on first occurrence
        """
        original = error if isinstance(error, BaseException) else None
        status_code = _get_status_code(error)

        if isinstance(error, EmptyPoolError):
            return ClassifiedError(False, "empty_pool", original)
        if isinstance(error, PoolRefreshError):
            return ClassifiedError(False, "pool_refresh", original)
        if isinstance(error, FatalUpstreamError):
            return ClassifiedError(False, "fatal", original, status_code)

        text = _get_error_text(error)
        signature = self.match_signature(text)

        if signature is None and (
            isinstance(error, (RetryableUpstreamError, RateLimitError))
            or status_code == 429
        ):
            signature = "429" if status_code == 429 else None
            return ClassifiedError(
                True, "rate_limit", original, status_code, signature
            )

        if signature is None:
            return ClassifiedError(False, "fatal", original, status_code)

        error_type = (
            "quota_exceeded"
            if any(s in text for s in QUOTA_SIGNATURES)
            else "rate_limit"
        )
        lib_logger.debug(
            f"Classified failure as {error_type} (matched signature '{signature}')"
        )
        return ClassifiedError(True, error_type, original, status_code, signature)


_default_classifier = ErrorClassifier()


def classify_error(error: object) -> ClassifiedError:
    """Classify with the default signature table."""
    return _default_classifier.classify(error)


def is_retryable_error(error: object) -> bool:
    """Checks if the failure is a quota / rate-limit condition."""
    return _default_classifier.classify(error).retryable
