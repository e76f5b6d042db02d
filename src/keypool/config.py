# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/keypool/config.py
"""
Configuration defaults for the key pool.

Every value can be overridden through the environment; the helpers below
fall back to the default when a variable is unset or malformed.
"""

import os
from typing import List, Optional

# Comma-separated pool, entries are "secret" or "nickname=secret"
ENV_API_KEYS = "KEYPOOL_API_KEYS"
# Single credential used when no pool is configured (or the pool is empty)
ENV_FALLBACK_API_KEY = "KEYPOOL_FALLBACK_API_KEY"
# Comma-separated signatures appended to the retryable signature table
ENV_EXTRA_RETRY_SIGNATURES = "KEYPOOL_EXTRA_RETRY_SIGNATURES"
ENV_SUPPRESS_LITELLM_WARNINGS = "SUPPRESS_LITELLM_SERIALIZATION_WARNINGS"

DEFAULT_POOL_NAME = "default"
# Values that show up when a spreadsheet header row is read as data
HEADER_LIKE_SECRETS = frozenset({"apikey", "api key", "key"})
DISABLED_STATUS = "disabled"


def _env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get a stripped string from an environment variable, None if blank."""
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_bool(key: str, default: bool) -> bool:
    """Get boolean from environment variable."""
    return os.getenv(key, str(default).lower()).lower() in ("true", "1", "yes")


def _env_list(key: str) -> List[str]:
    """Split a comma-separated environment variable, dropping blank items."""
    raw = os.getenv(key, "")
    return [item.strip() for item in raw.split(",") if item.strip()]
