"""Resilient fetching: per-attempt timeout, exponential backoff, supersession.

run_with_retry() is the one-shot primitive. ResilientQuery wraps it in an
explicit state machine (see QueryPhase) owned by a single logical consumer:
every start() supersedes the previous attempt chain, and only the current
chain may publish state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import tenacity

from shopfloor.exceptions import AbortedError, QueryTimeoutError
from shopfloor.models.config import QueryConfig
from shopfloor.query.state import QueryPhase, QueryState

logger = logging.getLogger(__name__)

T = TypeVar("T")

QueryFn = Callable[[], Awaitable[T]]
SleepFn = Callable[[float], Awaitable[Any]]
StateListener = Callable[[QueryState], None]

_MISSING = object()


def _is_retryable(exc: BaseException) -> bool:
    """Everything except cancellation and supersession is worth retrying."""
    return not isinstance(exc, (asyncio.CancelledError, AbortedError))


async def run_with_retry(
    query_fn: QueryFn,
    *,
    retry_count: int = 3,
    retry_delay: float = 1.0,
    timeout: float = 10.0,
    sleep: SleepFn = asyncio.sleep,
    on_attempt: Callable[[int], None] | None = None,
    before_sleep: Callable[[tenacity.RetryCallState], None] | None = None,
) -> Any:
    """Call *query_fn* until it succeeds or ``retry_count + 1`` attempts fail.

    Each attempt races *query_fn* against *timeout*; losing the race raises
    QueryTimeoutError for that attempt. The wait before retry ``n``
    (0-indexed) is ``retry_delay * 2**n``.

    Args:
        query_fn: Zero-argument coroutine function.
        retry_count: Additional attempts after the first.
        retry_delay: Base backoff in seconds.
        timeout: Per-attempt timeout in seconds.
        sleep: Awaitable sleep used for backoff waits.
        on_attempt: Called with the 1-based attempt number before each attempt.
        before_sleep: Extra hook run before each backoff wait.

    Returns:
        The first successful result.

    Raises:
        The last attempt's exception once retries are exhausted.
        asyncio.CancelledError: If the surrounding task is cancelled; pending
            attempts and backoff waits are abandoned immediately.
    """
    attempt_no = 0

    async def _attempt() -> Any:
        nonlocal attempt_no
        attempt_no += 1
        if on_attempt is not None:
            on_attempt(attempt_no)
        try:
            return await asyncio.wait_for(query_fn(), timeout)
        except asyncio.TimeoutError:
            raise QueryTimeoutError(timeout) from None

    log_sleep = tenacity.before_sleep_log(logger, logging.WARNING)

    def _before_sleep(retry_state: tenacity.RetryCallState) -> None:
        log_sleep(retry_state)
        if before_sleep is not None:
            before_sleep(retry_state)

    retryer = tenacity.AsyncRetrying(
        retry=tenacity.retry_if_exception(_is_retryable),
        wait=tenacity.wait_exponential(multiplier=retry_delay, exp_base=2, min=0),
        stop=tenacity.stop_after_attempt(retry_count + 1),
        sleep=sleep,
        before_sleep=_before_sleep,
        reraise=True,
    )
    return await retryer(_attempt)


class ResilientQuery(Generic[T]):
    """A cancellable, retrying fetch with stale-data fallback.

    On final failure the state keeps serving data: this instance's last
    successful value if it has one, else whatever *fallback_provider*
    returns (if not None), else *fallback_data*. Any such substitution sets
    ``is_stale``.

    Usage::

        query = ResilientQuery(fetch_orders, fallback_data=[])
        state = await query.refetch()
        ...
        await query.aclose()
    """

    def __init__(
        self,
        query_fn: QueryFn,
        *,
        config: QueryConfig | None = None,
        fallback_data: Optional[T] = None,
        fallback_provider: Callable[[], Optional[T]] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._query_fn = query_fn
        self._config = config or QueryConfig()
        self._fallback_data = fallback_data
        self._fallback_provider = fallback_provider
        self._on_error = on_error
        self._sleep = sleep

        self._state = QueryState(data=fallback_data)
        self._generation = 0
        self._task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._last_success: Any = _MISSING
        self._listeners: list[StateListener] = []
        self._closed = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> QueryState:
        return self._state

    @property
    def config(self) -> QueryConfig:
        return self._config

    @property
    def generation(self) -> int:
        """Number of chains started so far; the current chain's id."""
        return self._generation

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call *listener* with every new state. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self, state: QueryState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as exc:
                logger.error("Query state listener raised %s: %s", type(exc).__name__, exc)

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Start a fresh attempt chain, superseding any chain in flight.

        Must be called from a running event loop.
        """
        if self._closed:
            raise RuntimeError("ResilientQuery is closed")
        self._supersede()
        self._generation += 1
        generation = self._generation
        self._publish(
            self._state.evolve(
                loading=True, error=None, phase=QueryPhase.FETCHING, attempts=0
            )
        )
        self._task = asyncio.get_running_loop().create_task(self._run(generation))
        if self._config.refetch_interval is not None and self._poll_task is None:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll())
        return self._task

    async def refetch(self) -> QueryState:
        """Start a new chain and wait for it.

        If the chain is itself superseded before finishing, returns whatever
        state is current at that point instead of raising.
        """
        task = self.start()
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return self._state
            raise
        return self._state

    async def _run(self, generation: int) -> None:
        def _on_attempt(attempt: int) -> None:
            self._commit(
                generation,
                self._state.evolve(loading=True, phase=QueryPhase.FETCHING, attempts=attempt),
            )

        def _before_sleep(retry_state: tenacity.RetryCallState) -> None:
            self._commit(generation, self._state.evolve(phase=QueryPhase.RETRYING))

        try:
            data = await run_with_retry(
                self._query_fn,
                retry_count=self._config.retry_count,
                retry_delay=self._config.retry_delay,
                timeout=self._config.timeout,
                sleep=self._sleep,
                on_attempt=_on_attempt,
                before_sleep=_before_sleep,
            )
        except asyncio.CancelledError:
            logger.debug("Query chain %d cancelled", generation)
            raise
        except AbortedError as exc:
            logger.debug("Query chain %d aborted: %s", generation, exc.reason)
            self._commit(generation, self._state.evolve(loading=False))
            return
        except Exception as exc:
            self._fail(generation, exc)
            return
        self._succeed(generation, data)

    def _commit(self, generation: int, state: QueryState) -> bool:
        """Publish *state* only if *generation* is still the current chain."""
        if generation != self._generation or self._closed:
            logger.debug(
                "Dropping result of superseded chain %d (current %d)",
                generation,
                self._generation,
            )
            return False
        self._publish(state)
        return True

    def _succeed(self, generation: int, data: Any) -> None:
        committed = self._commit(
            generation,
            QueryState(
                data=data,
                loading=False,
                error=None,
                is_stale=False,
                phase=QueryPhase.SUCCEEDED,
                attempts=self._state.attempts,
            ),
        )
        if committed:
            self._last_success = data

    def _fail(self, generation: int, exc: Exception) -> None:
        if generation != self._generation or self._closed:
            return
        data = self._fallback()
        logger.warning(
            "Query failed after %d attempt(s): %s; serving stale data",
            self._state.attempts,
            exc,
        )
        self._commit(
            generation,
            QueryState(
                data=data,
                loading=False,
                error=exc,
                is_stale=True,
                phase=QueryPhase.FAILED,
                attempts=self._state.attempts,
            ),
        )
        if self._on_error is not None:
            self._on_error(exc)

    def _fallback(self) -> Any:
        if self._last_success is not _MISSING:
            return self._last_success
        if self._fallback_provider is not None:
            provided = self._fallback_provider()
            if provided is not None:
                return provided
        return self._fallback_data

    async def _poll(self) -> None:
        interval = self._config.refetch_interval
        assert interval is not None
        while not self._closed:
            await asyncio.sleep(interval)
            if self._closed:
                return
            logger.debug("Interval refetch (every %gs)", interval)
            self.start()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _supersede(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def close(self) -> None:
        """Cancel the chain in flight and the interval timer. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        self._supersede()
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._listeners.clear()
        if self._state.loading:
            self._state = self._state.evolve(loading=False, phase=QueryPhase.IDLE)

    async def aclose(self) -> None:
        """close() and wait until cancelled tasks have unwound."""
        self.close()
        pending = [t for t in (self._task, self._poll_task) if t is not None and not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def __aenter__(self) -> ResilientQuery[T]:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
