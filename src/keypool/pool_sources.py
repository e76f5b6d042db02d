# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/keypool/pool_sources.py
"""
Boundary to whatever supplies the credential list.

A pool source only needs a ``load()`` method returning an ordered list of
entries (``Credential``, plain secret strings, or mappings with a secret
and optional nickname/status). ``load()`` may also be a coroutine, in which
case the pool must be refreshed with ``CredentialPool.aload()``.
"""

import json
import logging
from pathlib import Path
from typing import Any, Iterable, List, Optional, Protocol, Union, runtime_checkable

from .config import ENV_API_KEYS, _env_list
from .credential_pool import Credential, PoolEntry

lib_logger = logging.getLogger("keypool")


@runtime_checkable
class PoolSource(Protocol):
    def load(self) -> Any:
        ...


class StaticPoolSource:
    """Serves a fixed list, mostly useful for tests and hard-wired setups."""

    def __init__(self, entries: Iterable[PoolEntry] = ()):
        self._entries = list(entries)

    def load(self) -> List[PoolEntry]:
        return list(self._entries)


class EnvPoolSource:
    """
    Reads secrets from a comma-separated environment variable.

    Each item is either ``secret`` or ``nickname=secret``:

        export KEYPOOL_API_KEYS="alice=AIza...1,bob=AIza...2,AIza...3"
    """

    def __init__(self, var: str = ENV_API_KEYS):
        self.var = var

    def load(self) -> List[Credential]:
        credentials = []
        for item in _env_list(self.var):
            nickname, sep, secret = item.partition("=")
            if sep:
                credentials.append(Credential(secret=secret.strip(), nickname=nickname.strip() or None))
            else:
                credentials.append(Credential(secret=item))
        lib_logger.debug(f"Read {len(credentials)} key(s) from ${self.var}")
        return credentials


class JsonFilePoolSource:
    """
    Reads a JSON document from disk.

    Accepted shapes are a bare list of entries or ``{"keys": [...]}``, where
    each entry looks like ``{"apiKey": "...", "nickname": "...", "status": "active"}``.
    Missing files and malformed JSON propagate so the pool reports them as
    PoolRefreshError.
    """

    def __init__(self, path: Union[str, Path], encoding: Optional[str] = "utf-8"):
        self.path = Path(path)
        self.encoding = encoding

    def load(self) -> List[PoolEntry]:
        with open(self.path, "r", encoding=self.encoding) as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("keys", [])
        if not isinstance(data, list):
            raise ValueError(
                f"{self.path}: expected a list of keys, got {type(data).__name__}"
            )
        return data
