# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/keypool/credential_pool.py
"""
In-memory pool of interchangeable credentials.

The pool holds an ordered credential list, a "current" pointer and a
session-scoped set of secrets marked as failed. Failure marks are advisory
bookkeeping for status display: they never remove a credential and never
move the pointer on their own.

All mutation happens under one lock so the pool can be shared by tasks on
an event loop and by worker threads alike.
"""

import inspect
import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Set, Tuple, Union

from .config import DEFAULT_POOL_NAME, DISABLED_STATUS, HEADER_LIKE_SECRETS
from .error_handler import EmptyPoolError, PoolRefreshError, mask_credential

lib_logger = logging.getLogger("keypool")


@dataclass(frozen=True)
class Credential:
    """An opaque secret plus an optional display label. Identity is the secret."""
    secret: str
    nickname: Optional[str] = None

    @property
    def masked(self) -> str:
        return mask_credential(self.secret)

    def __repr__(self) -> str:
        return f"Credential(secret={self.masked!r}, nickname={self.nickname!r})"


@dataclass
class PoolStatus:
    """Read-only snapshot of pool health for UI display."""
    total: int = 0
    current: int = 0  # 1-based position, 0 when the pool is empty
    failed: int = 0
    current_nickname: Optional[str] = None

    def as_dict(self) -> dict:
        data = {"total": self.total, "current": self.current, "failed": self.failed}
        if self.current_nickname:
            data["current_nickname"] = self.current_nickname
        return data


PoolEntry = Union[Credential, str, Mapping[str, Any]]


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _to_credential(entry: PoolEntry) -> Optional[Credential]:
    """Convert one source row into a Credential, or None if it should be skipped."""
    if isinstance(entry, Credential):
        secret, nickname, status = entry.secret, entry.nickname, ""
    elif isinstance(entry, str):
        secret, nickname, status = entry, None, ""
    elif isinstance(entry, Mapping):
        secret = entry.get("secret") or entry.get("apiKey") or entry.get("api_key")
        nickname = entry.get("nickname")
        status = entry.get("status")
    else:
        raise TypeError(f"Unsupported credential entry type: {type(entry).__name__}")

    secret = _clean(secret)
    if not secret or secret.lower() in HEADER_LIKE_SECRETS:
        return None
    if _clean(status).lower() == DISABLED_STATUS:
        return None
    return Credential(secret=secret, nickname=_clean(nickname) or None)


def normalize_entries(entries: Iterable[PoolEntry]) -> List[Credential]:
    """
    Turn raw source rows into an ordered, de-duplicated credential list.

    Blank secrets, header-like values and rows with status "disabled" are
    dropped. When a secret repeats, the first occurrence wins.
    """
    seen: Set[str] = set()
    credentials: List[Credential] = []
    for entry in entries:
        credential = _to_credential(entry)
        if credential is None or credential.secret in seen:
            continue
        seen.add(credential.secret)
        credentials.append(credential)
    return credentials


class CredentialPool:
    """
    Ordered credentials with a circular "current" pointer.

    Usage:
        pool = CredentialPool(name="shared")
        pool.load(StaticPoolSource(["key-a", "key-b"]))

        key = pool.get_current_key()
        pool.mark_key_as_failed(key.secret)
        pool.rotate_to_next()

        pool.get_status()  # PoolStatus(total=2, current=2, failed=1, ...)
    """

    def __init__(
        self,
        credentials: Optional[Iterable[PoolEntry]] = None,
        name: str = DEFAULT_POOL_NAME,
    ):
        self.name = name
        self._credentials: List[Credential] = []
        self._current_index = 0
        self._failed: Set[str] = set()
        # Bumped on every successful load so in-flight retries can spot a swap
        self._generation = 0
        self._lock = threading.RLock()

        if credentials is not None:
            self.replace(credentials)

    # ------------------------------------------------------------------ loading

    def replace(self, entries: Iterable[PoolEntry], allow_empty: bool = True) -> None:
        """
        Replace the whole credential list.

        Resets the pointer to the first credential and clears failure marks.
        """
        credentials = normalize_entries(entries)
        if not credentials and not allow_empty:
            raise PoolRefreshError(
                self.name, f"Credential pool '{self.name}' source returned no keys"
            )
        with self._lock:
            self._credentials = credentials
            self._current_index = 0
            self._failed.clear()
            self._generation += 1
        lib_logger.info(
            f"Loaded {len(credentials)} credential(s) into pool '{self.name}'"
        )

    def load(self, source: Any, allow_empty: bool = False) -> None:
        """
        Fetch a fresh credential list from a synchronous pool source.

        Any failure from the source, or an empty list when ``allow_empty`` is
        False, raises PoolRefreshError and leaves the current state untouched.
        """
        try:
            entries = source.load()
        except Exception as e:
            lib_logger.error(f"Pool '{self.name}' refresh failed: {e}")
            raise PoolRefreshError(self.name, f"Pool source failed: {e}") from e
        if inspect.isawaitable(entries):
            if inspect.iscoroutine(entries):
                entries.close()
            raise PoolRefreshError(
                self.name, "Pool source is asynchronous; use aload() instead"
            )
        self._replace_from_source(entries, allow_empty)

    async def aload(self, source: Any, allow_empty: bool = False) -> None:
        """Async variant of load() for sources whose load() is a coroutine."""
        try:
            entries = source.load()
            if inspect.isawaitable(entries):
                entries = await entries
        except Exception as e:
            lib_logger.error(f"Pool '{self.name}' refresh failed: {e}")
            raise PoolRefreshError(self.name, f"Pool source failed: {e}") from e
        self._replace_from_source(entries, allow_empty)

    def _replace_from_source(self, entries: Any, allow_empty: bool) -> None:
        if entries is None:
            entries = []
        try:
            self.replace(entries, allow_empty=allow_empty)
        except TypeError as e:
            raise PoolRefreshError(self.name, f"Malformed pool entry: {e}") from e

    # ------------------------------------------------------------------ queries

    def has_keys(self) -> bool:
        with self._lock:
            return bool(self._credentials)

    def __len__(self) -> int:
        with self._lock:
            return len(self._credentials)

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def credentials(self) -> Tuple[Credential, ...]:
        """Snapshot of all credentials in rotation order."""
        with self._lock:
            return tuple(self._credentials)

    def get_current_key(self) -> Credential:
        """Return the current credential; raises EmptyPoolError on an empty pool."""
        with self._lock:
            if not self._credentials:
                raise EmptyPoolError(self.name)
            return self._credentials[self._current_index]

    def get_current_with_generation(self) -> Tuple[Credential, int]:
        """Current credential and pool generation, read under one lock."""
        with self._lock:
            return self.get_current_key(), self._generation

    def is_failed(self, secret: str) -> bool:
        with self._lock:
            return secret in self._failed

    def get_status(self) -> PoolStatus:
        """Snapshot for display. An empty pool yields an all-zero status."""
        with self._lock:
            if not self._credentials:
                return PoolStatus()
            current = self._credentials[self._current_index]
            return PoolStatus(
                total=len(self._credentials),
                current=self._current_index + 1,
                failed=len(self._failed),
                current_nickname=current.nickname,
            )

    # ---------------------------------------------------------------- mutation

    def rotate_to_next(self) -> None:
        """Advance the pointer circularly. Failed credentials are not skipped."""
        with self._lock:
            if not self._credentials:
                return
            self._current_index = (self._current_index + 1) % len(self._credentials)
            lib_logger.debug(
                f"Pool '{self.name}' rotated to key "
                f"{self._current_index + 1}/{len(self._credentials)}"
            )

    def mark_key_as_failed(self, secret: str, generation: Optional[int] = None) -> bool:
        """
        Record a secret as failed for this session. Idempotent.

        With ``generation``, the mark is skipped when the pool has been
        reloaded since that generation was read.

        Returns:
            False if the mark was skipped for a stale generation
        """
        if not secret:
            return True
        with self._lock:
            if generation is not None and generation != self._generation:
                lib_logger.debug(
                    f"Pool '{self.name}' was reloaded; not marking {mask_credential(secret)}"
                )
                return False
            if secret in self._failed:
                return True
            self._failed.add(secret)
        lib_logger.warning(
            f"Pool '{self.name}': marked key {mask_credential(secret)} as failed"
        )
        return True

    def mark_failed_and_rotate(self, secret: str, generation: Optional[int] = None) -> bool:
        """
        Mark ``secret`` failed and move past it, atomically.

        Rotation only happens when the pool has not been reloaded since
        ``generation`` was read and ``secret`` is still the current key, so a
        concurrent caller that already rotated is not skipped over.

        Returns:
            True if the pointer moved
        """
        with self._lock:
            if generation is not None and generation != self._generation:
                lib_logger.debug(
                    f"Pool '{self.name}' was reloaded during retry; not rotating"
                )
                return False
            self.mark_key_as_failed(secret)
            if not self._credentials:
                return False
            if self._credentials[self._current_index].secret != secret:
                return False
            self.rotate_to_next()
            return True

    def clear_failed_marks(self) -> None:
        """Forget all failure marks without touching the credential list."""
        with self._lock:
            self._failed.clear()
        lib_logger.info(f"Pool '{self.name}': cleared failure marks")

    def __repr__(self) -> str:
        status = self.get_status()
        return (
            f"CredentialPool(name={self.name!r}, total={status.total}, "
            f"current={status.current}, failed={status.failed})"
        )
