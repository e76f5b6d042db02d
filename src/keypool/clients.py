# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/keypool/clients.py
"""
Per-attempt clients bound to a single credential.

The invoker builds one client per attempt through a client factory; the
default factory is ``LiteLLMClient``, which forwards calls to LiteLLM with
the attempt's secret injected as ``api_key``. Clients hold no connections of
their own, so nothing needs closing when an attempt ends.
"""

import functools
import logging
import warnings
from typing import Any, Callable, Dict

import litellm

from .config import ENV_SUPPRESS_LITELLM_WARNINGS, _env_bool
from .credential_pool import Credential

lib_logger = logging.getLogger("keypool")

ClientFactory = Callable[[Credential], Any]

_warnings_configured = False


def suppress_litellm_serialization_warnings() -> None:
    """
    Silence litellm's harmless pydantic serialization warnings on streamed
    responses (https://github.com/BerriAI/litellm/issues/11759).

    Disabled by setting SUPPRESS_LITELLM_SERIALIZATION_WARNINGS=0.
    """
    global _warnings_configured
    if _warnings_configured:
        return
    _warnings_configured = True
    if _env_bool(ENV_SUPPRESS_LITELLM_WARNINGS, True):
        warnings.filterwarnings(
            "ignore",
            category=UserWarning,
            module=r"pydantic\.main",
            message=r"Pydantic serializer warnings:\s+PydanticSerializationUnexpectedValue",
        )


class LiteLLMClient:
    """
    A LiteLLM facade bound to one credential.

    Usage:
        client = LiteLLMClient(Credential("AIza..."), model="gemini/gemini-2.0-flash")
        response = await client.acompletion(messages=[...])
        stream = await client.acompletion(messages=[...], stream=True)

    Keyword defaults given at construction are merged under each call's
    keyword arguments; ``api_key`` always comes from the credential.
    """

    def __init__(self, credential: Credential, **defaults: Any):
        self.credential = credential
        self.defaults = defaults
        suppress_litellm_serialization_warnings()

    def _prepare(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        merged = {**self.defaults, **kwargs}
        merged["api_key"] = self.credential.secret
        return merged

    async def acompletion(self, **kwargs: Any) -> Any:
        return await litellm.acompletion(**self._prepare(kwargs))

    async def aembedding(self, **kwargs: Any) -> Any:
        return await litellm.aembedding(**self._prepare(kwargs))

    def completion(self, **kwargs: Any) -> Any:
        return litellm.completion(**self._prepare(kwargs))

    def __repr__(self) -> str:
        return f"LiteLLMClient(credential={self.credential!r})"


def litellm_client_factory(**defaults: Any) -> ClientFactory:
    """Build a factory that creates LiteLLMClients sharing call defaults."""
    return functools.partial(LiteLLMClient, **defaults)
