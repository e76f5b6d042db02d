# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/keypool/invoker.py
"""
Bounded retry over a credential pool.

``ResilientInvoker`` wraps a remote operation so that a quota / rate-limit
failure marks the active key as failed, rotates the pool and tries again.
An episode makes at most ``len(pool)`` attempts (one in no-pool mode), and
the caller always gets either the result or the original terminal
exception, never a wrapper.

Operations take the per-attempt client as their first argument:

    async def generate(client, prompt):
        return await client.acompletion(model=MODEL, messages=[...])

    invoker = ResilientInvoker(pool)
    generate_with_rotation = invoker.wrap(generate)
    response = await generate_with_rotation("hello")

or go through the client proxy, which mirrors the real client's attributes:

    response = await invoker.client.acompletion(model=MODEL, messages=[...])

States of one episode:
- IDLE -> INVOKING on call start
- INVOKING -> SUCCEEDED on success (terminal)
- INVOKING -> ROTATING_RETRY on a retryable failure with attempts left
- ROTATING_RETRY -> INVOKING after mark + rotate
- ROTATING_RETRY -> FAILED when the pool was emptied before the next attempt
- INVOKING -> FAILED on a fatal failure or when attempts run out (terminal)
"""

import asyncio
import functools
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncGenerator,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
    Union,
)

from .clients import LiteLLMClient
from .config import ENV_FALLBACK_API_KEY, _env_str
from .credential_pool import Credential, CredentialPool, PoolStatus
from .error_handler import EmptyPoolError, ErrorClassifier, mask_credential
from .pool_sources import EnvPoolSource

lib_logger = logging.getLogger("keypool")


class InvocationState(Enum):
    """States of a single wrapped call."""
    IDLE = "idle"
    INVOKING = "invoking"
    SUCCEEDED = "succeeded"
    ROTATING_RETRY = "rotating_retry"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    InvocationState.IDLE: frozenset({InvocationState.INVOKING}),
    InvocationState.INVOKING: frozenset(
        {
            InvocationState.SUCCEEDED,
            InvocationState.ROTATING_RETRY,
            InvocationState.FAILED,
        }
    ),
    InvocationState.ROTATING_RETRY: frozenset(
        {InvocationState.INVOKING, InvocationState.FAILED}
    ),
    InvocationState.SUCCEEDED: frozenset(),
    InvocationState.FAILED: frozenset(),
}


@dataclass
class InvocationEpisode:
    """Bookkeeping for one logical call through the invoker."""
    operation_name: str
    max_attempts: int
    state: InvocationState = InvocationState.IDLE
    attempt: int = 0
    tried: List[str] = field(default_factory=list)  # masked secrets, in order
    last_error: Optional[Exception] = None

    def transition(self, new_state: InvocationState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal invocation transition {self.state.value} -> {new_state.value}"
            )
        lib_logger.debug(
            f"[{self.operation_name}] {self.state.value} -> {new_state.value} "
            f"(attempt {self.attempt + 1}/{self.max_attempts})"
        )
        self.state = new_state

    @property
    def finished(self) -> bool:
        return self.state in (InvocationState.SUCCEEDED, InvocationState.FAILED)


def _operation_name(operation: Callable) -> str:
    return getattr(operation, "__qualname__", None) or repr(operation)


def _drop_client_parameter(operation: Callable) -> Optional[inspect.Signature]:
    """Signature of ``operation`` as seen by callers, i.e. without the client."""
    try:
        signature = inspect.signature(operation)
    except (TypeError, ValueError):
        return None
    params = list(signature.parameters.values())
    if params and params[0].kind in (
        inspect.Parameter.POSITIONAL_ONLY,
        inspect.Parameter.POSITIONAL_OR_KEYWORD,
    ):
        params = params[1:]
    return signature.replace(parameters=params)


class ResilientInvoker:
    """
    Runs remote operations against a credential pool with bounded rotation.

    One invoker is built per application context and handed to every
    consumer; there is no process-wide instance.

    Args:
        pool: Pool to draw keys from. None (or an empty pool) means
            pass-through mode with the fallback credential.
        client_factory: Builds a client for one credential. Defaults to
            LiteLLMClient.
        fallback_credential: Key used when no pool key is available.
        classifier: Decides which failures rotate. Defaults to
            ErrorClassifier.from_env().
        should_cancel: Checked before every attempt; when it returns True
            the episode stops with asyncio.CancelledError.
    """

    def __init__(
        self,
        pool: Optional[CredentialPool] = None,
        client_factory: Optional[Callable[[Credential], Any]] = None,
        fallback_credential: Optional[Union[str, Credential]] = None,
        classifier: Optional[ErrorClassifier] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ):
        if client_factory is None:
            client_factory = LiteLLMClient
        if isinstance(fallback_credential, str):
            fallback_credential = (
                Credential(fallback_credential.strip())
                if fallback_credential.strip()
                else None
            )

        self.pool = pool
        self.client_factory = client_factory
        self.fallback_credential = fallback_credential
        self.classifier = classifier or ErrorClassifier.from_env()
        self.should_cancel = should_cancel
        # attribute path -> "stream" | "async" | "sync", for the client proxy
        self._call_kinds: Dict[Tuple[str, ...], str] = {}

    @classmethod
    def from_env(
        cls,
        client_factory: Optional[Callable[[Credential], Any]] = None,
        **kwargs: Any,
    ) -> "ResilientInvoker":
        """
        Build an invoker from KEYPOOL_API_KEYS and KEYPOOL_FALLBACK_API_KEY.

        An unset KEYPOOL_API_KEYS gives an empty pool, i.e. pass-through mode.
        """
        pool = CredentialPool(name="env")
        pool.load(EnvPoolSource(), allow_empty=True)
        return cls(
            pool=pool,
            client_factory=client_factory,
            fallback_credential=_env_str(ENV_FALLBACK_API_KEY),
            **kwargs,
        )

    # ------------------------------------------------------------ public API

    def wrap(self, operation: Callable) -> Callable:
        """
        Wrap ``operation(client, *args, **kwargs)`` into ``f(*args, **kwargs)``.

        Coroutine functions give an async wrapper, async generator functions
        a stream wrapper (only establishment is retried), anything else a
        synchronous wrapper.
        """
        if inspect.isasyncgenfunction(operation):

            @functools.wraps(operation)
            async def stream_wrapper(*args, **kwargs):
                async for item in self._run_stream(operation, args, kwargs):
                    yield item

            wrapper = stream_wrapper
        elif inspect.iscoroutinefunction(operation):

            @functools.wraps(operation)
            async def async_wrapper(*args, **kwargs):
                return await self._run_async(operation, args, kwargs)

            wrapper = async_wrapper
        else:

            @functools.wraps(operation)
            def sync_wrapper(*args, **kwargs):
                return self._run_sync(operation, args, kwargs)

            wrapper = sync_wrapper

        return self._finish_wrapper(wrapper, operation)

    def wrap_async(self, operation: Callable) -> Callable:
        """
        Force an async wrapper for callables that return an awaitable without
        being declared ``async`` (lambdas, partials, bound client methods).
        """

        @functools.wraps(operation)
        async def async_wrapper(*args, **kwargs):
            return await self._run_async(operation, args, kwargs)

        return self._finish_wrapper(async_wrapper, operation)

    def call(self, operation: Callable, *args: Any, **kwargs: Any) -> Any:
        """One-shot synchronous invocation."""
        return self._run_sync(operation, args, kwargs)

    async def acall(self, operation: Callable, *args: Any, **kwargs: Any) -> Any:
        """One-shot asynchronous invocation."""
        return await self._run_async(operation, args, kwargs)

    @property
    def client(self) -> "PoolBoundClient":
        """Proxy that looks like a client but retries every call over the pool."""
        return PoolBoundClient(self)

    def status(self) -> PoolStatus:
        """Pool status, or an all-zero status in no-pool mode."""
        if self.pool is None:
            return PoolStatus()
        return self.pool.get_status()

    # -------------------------------------------------------------- internals

    @staticmethod
    def _finish_wrapper(wrapper: Callable, operation: Callable) -> Callable:
        signature = _drop_client_parameter(operation)
        if signature is not None:
            wrapper.__signature__ = signature
        return wrapper

    def _uses_pool(self) -> bool:
        return self.pool is not None and self.pool.has_keys()

    def _start_episode(self, operation: Callable) -> InvocationEpisode:
        max_attempts = len(self.pool) if self._uses_pool() else 1
        episode = InvocationEpisode(
            operation_name=_operation_name(operation), max_attempts=max(1, max_attempts)
        )
        return episode

    def _select_credential(
        self, episode: Optional[InvocationEpisode] = None
    ) -> Tuple[Credential, Optional[int]]:
        """Current pool key with the pool generation, or the fallback key."""
        if self._uses_pool():
            return self.pool.get_current_with_generation()
        if self.fallback_credential is not None:
            return self.fallback_credential, None
        if episode is not None and episode.last_error is not None:
            # Pool was emptied between attempts; the caller gets the error
            # that triggered the retry
            episode.transition(InvocationState.FAILED)
            lib_logger.error(
                f"[{episode.operation_name}] no keys left after reload; "
                f"last error: {episode.last_error}"
            )
            raise episode.last_error
        raise EmptyPoolError(self.pool.name if self.pool is not None else None)

    def _call_kind(self, path: Tuple[str, ...]) -> str:
        """How the client attribute at ``path`` is called, cached per path."""
        kind = self._call_kinds.get(path)
        if kind is not None:
            return kind
        target = _resolve_on_factory(self.client_factory, path)
        if target is None:
            # Attribute only exists on instances; inspect one client, once
            credential, _ = self._select_credential()
            target = _resolve_path(self.client_factory(credential), path)
        if inspect.isasyncgenfunction(target):
            kind = "stream"
        elif inspect.iscoroutinefunction(target):
            kind = "async"
        else:
            kind = "sync"
        self._call_kinds[path] = kind
        return kind

    def _begin_attempt(self, episode: InvocationEpisode) -> Tuple[Credential, Optional[int], Any]:
        if self.should_cancel is not None and self.should_cancel():
            lib_logger.info(f"[{episode.operation_name}] cancelled before attempt")
            raise asyncio.CancelledError()
        credential, generation = self._select_credential(episode)
        client = self.client_factory(credential)
        episode.tried.append(credential.masked)
        episode.transition(InvocationState.INVOKING)
        return credential, generation, client

    def _handle_failure(
        self,
        episode: InvocationEpisode,
        error: Exception,
        credential: Credential,
        generation: Optional[int],
    ) -> bool:
        """
        Decide what to do after a failed attempt.

        Returns:
            True to try again, False when ``error`` is terminal and must be
            re-raised by the caller.
        """
        classified = self.classifier.classify(error)

        if not classified.retryable:
            episode.transition(InvocationState.FAILED)
            lib_logger.debug(
                f"[{episode.operation_name}] non-retryable failure with key "
                f"{credential.masked}: {classified}"
            )
            return False

        if episode.attempt >= episode.max_attempts - 1:
            episode.transition(InvocationState.FAILED)
            if generation is not None:
                # The last key tried is just as exhausted as the others
                self.pool.mark_key_as_failed(credential.secret, generation)
            lib_logger.error(
                f"[{episode.operation_name}] all {episode.max_attempts} key(s) exhausted "
                f"({', '.join(episode.tried)}); last error: {error}"
            )
            return False

        episode.transition(InvocationState.ROTATING_RETRY)
        episode.last_error = error
        if generation is not None:
            self.pool.mark_failed_and_rotate(credential.secret, generation)
        lib_logger.warning(
            f"[{episode.operation_name}] {classified.error_type} on key {credential.masked}, "
            f"rotating (attempt {episode.attempt + 1}/{episode.max_attempts})"
        )
        episode.attempt += 1
        return True

    def _record_success(self, episode: InvocationEpisode, credential: Credential) -> None:
        episode.transition(InvocationState.SUCCEEDED)
        if episode.attempt:
            lib_logger.info(
                f"[{episode.operation_name}] succeeded with key {credential.masked} "
                f"after {episode.attempt + 1} attempts"
            )

    def _run_sync(self, operation: Callable, args: tuple, kwargs: Dict[str, Any]) -> Any:
        episode = self._start_episode(operation)
        while True:
            credential, generation, client = self._begin_attempt(episode)
            try:
                result = operation(client, *args, **kwargs)
            except Exception as e:
                if not self._handle_failure(episode, e, credential, generation):
                    raise
                continue
            self._record_success(episode, credential)
            return result

    async def _run_async(self, operation: Callable, args: tuple, kwargs: Dict[str, Any]) -> Any:
        episode = self._start_episode(operation)
        while True:
            credential, generation, client = self._begin_attempt(episode)
            try:
                result = operation(client, *args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                if not self._handle_failure(episode, e, credential, generation):
                    raise
                continue
            self._record_success(episode, credential)
            return result

    async def _run_stream(
        self, operation: Callable, args: tuple, kwargs: Dict[str, Any]
    ) -> AsyncGenerator[Any, None]:
        """
        Retry only until the stream yields its first item. Failures after
        that belong to the consumer and propagate unchanged.
        """
        episode = self._start_episode(operation)
        while True:
            credential, generation, client = self._begin_attempt(episode)
            stream = operation(client, *args, **kwargs)
            try:
                first = await stream.__anext__()
            except StopAsyncIteration:
                self._record_success(episode, credential)
                return
            except Exception as e:
                if not self._handle_failure(episode, e, credential, generation):
                    raise
                continue
            self._record_success(episode, credential)
            break

        try:
            yield first
            async for item in stream:
                yield item
        finally:
            await stream.aclose()


def _resolve_path(target: Any, path: Tuple[str, ...]) -> Any:
    for name in path:
        target = getattr(target, name)
    return target


def _resolve_on_factory(factory: Callable, path: Tuple[str, ...]) -> Any:
    """Resolve ``path`` on the client class itself, None if it needs an instance."""
    if isinstance(factory, functools.partial):
        factory = factory.func
    if not isinstance(factory, type):
        return None
    target = factory
    for name in path:
        target = getattr(target, name, None)
        if target is None or isinstance(target, property):
            return None
    return target


class PoolBoundClient:
    """
    Attribute-path proxy over the clients an invoker builds.

    ``invoker.client.models.generate_content(...)`` resolves
    ``models.generate_content`` on a fresh client for each attempt and runs
    the call through the invoker, so callers can use it exactly like a
    client bound to a single key.
    """

    def __init__(self, invoker: ResilientInvoker, path: Tuple[str, ...] = ()):
        self._invoker = invoker
        self._path = path

    def __getattr__(self, name: str) -> "PoolBoundClient":
        if name.startswith("__"):
            raise AttributeError(name)
        return PoolBoundClient(self._invoker, self._path + (name,))

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        if not self._path:
            raise TypeError("PoolBoundClient root is not callable")
        path = self._path

        def operation(client, *call_args, **call_kwargs):
            return _resolve_path(client, path)(*call_args, **call_kwargs)

        operation.__qualname__ = ".".join(path)

        kind = self._invoker._call_kind(path)
        if kind == "stream":
            return self._invoker._run_stream(operation, args, kwargs)
        if kind == "async":
            return self._invoker._run_async(operation, args, kwargs)
        return self._invoker._run_sync(operation, args, kwargs)

    def __repr__(self) -> str:
        return f"PoolBoundClient(path={'.'.join(self._path) or '<root>'})"
