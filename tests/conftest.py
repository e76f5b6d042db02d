"""Shared fixtures: a fake per-key client and helpers to build pools around it."""

import asyncio
import os
from typing import Dict, List, Optional

import pytest

# Use litellm's bundled model cost map: its background remote-fetch retry
# thread races the litellm import when the network is unavailable.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from keypool import Credential, CredentialPool, ErrorClassifier, ResilientInvoker


class MidStreamFailure:
    """Outcome marker: stream yields one chunk, then raises ``error``."""

    def __init__(self, error: Exception):
        self.error = error


class FakeClient:
    """
    Stand-in for a generative AI client bound to one key.

    ``outcomes`` maps a secret to an exception to raise (or a
    MidStreamFailure for streams); keys without an entry succeed. Every call
    appends the key's secret to ``calls``.
    """

    def __init__(self, credential: Credential, outcomes: Dict[str, object], calls: List[str]):
        self.credential = credential
        self._outcomes = outcomes
        self._calls = calls

    @property
    def models(self):
        return self

    def _outcome(self):
        self._calls.append(self.credential.secret)
        return self._outcomes.get(self.credential.secret)

    async def generate(self, prompt: str) -> str:
        outcome = self._outcome()
        await asyncio.sleep(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return f"{prompt}:{self.credential.secret}"

    def generate_sync(self, prompt: str) -> str:
        outcome = self._outcome()
        if isinstance(outcome, BaseException):
            raise outcome
        return f"{prompt}:{self.credential.secret}"

    async def stream(self, count: int):
        outcome = self._outcome()
        if isinstance(outcome, BaseException):
            raise outcome
        for i in range(count):
            yield f"{self.credential.secret}-{i}"
            if isinstance(outcome, MidStreamFailure):
                raise outcome.error


@pytest.fixture
def calls() -> List[str]:
    return []


@pytest.fixture
def make_invoker(calls):
    """Build (invoker, pool) over FakeClients with the given failure outcomes."""

    def _make(
        secrets=("A", "B", "C"),
        outcomes: Optional[Dict[str, object]] = None,
        fallback: Optional[str] = None,
        with_pool: bool = True,
        **kwargs,
    ):
        outcomes = outcomes or {}
        pool = CredentialPool(list(secrets), name="test") if with_pool else None
        invoker = ResilientInvoker(
            pool=pool,
            client_factory=lambda credential: FakeClient(credential, outcomes, calls),
            fallback_credential=fallback,
            classifier=ErrorClassifier(),
            **kwargs,
        )
        return invoker, pool

    return _make
