# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging

from .clients import LiteLLMClient, litellm_client_factory
from .credential_pool import Credential, CredentialPool, PoolStatus
from .error_handler import (
    ClassifiedError,
    EmptyPoolError,
    ErrorClassifier,
    FatalUpstreamError,
    KeyPoolError,
    PoolRefreshError,
    RetryableUpstreamError,
    classify_error,
)
from .invoker import InvocationState, PoolBoundClient, ResilientInvoker
from .pool_sources import EnvPoolSource, JsonFilePoolSource, PoolSource, StaticPoolSource

# Library logging stays silent unless the application configures handlers
logging.getLogger("keypool").addHandler(logging.NullHandler())

__all__ = [
    "Credential",
    "CredentialPool",
    "PoolStatus",
    "ResilientInvoker",
    "PoolBoundClient",
    "InvocationState",
    "ErrorClassifier",
    "ClassifiedError",
    "classify_error",
    # Errors
    "KeyPoolError",
    "EmptyPoolError",
    "PoolRefreshError",
    "RetryableUpstreamError",
    "FatalUpstreamError",
    # Pool sources
    "PoolSource",
    "StaticPoolSource",
    "EnvPoolSource",
    "JsonFilePoolSource",
    # LiteLLM client
    "LiteLLMClient",
    "litellm_client_factory",
]
