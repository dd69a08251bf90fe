"""
Query cache for server state.

Cache entries are keyed by tuples such as ``("project-stories", project_id)``.
A :class:`QueryObserver` wraps a fetch function with a caching policy
(stale time, polling interval, enabled flag); :class:`QueryClient` holds
the entries and supports invalidation by key prefix, cancellation and
direct writes for optimistic updates; :class:`Mutation` runs a server
write with ``on_mutate``/``on_error``/``on_success`` hooks.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import weakref
from typing import Any, Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)

QueryKey = tuple[Any, ...]
QueryFn = Callable[[], Awaitable[Any]]
Listener = Callable[["QueryState"], None]

DEFAULT_RETRY = 3
MAX_RETRY_DELAY_MS = 30000

_sleep = asyncio.sleep


def to_query_key(key: Iterable[Any] | str) -> QueryKey:
    """Normalize a list/tuple (or a bare string) into a hashable key."""
    if isinstance(key, str):
        return (key,)
    return tuple(key)


def matches_key(key: QueryKey, prefix: QueryKey | None) -> bool:
    """Prefix match: ``("escalations",)`` matches ``("escalations", "pending")``."""
    if prefix is None:
        return True
    return key[: len(prefix)] == prefix


def retry_delay_ms(failure_count: int) -> int:
    return min(1000 * (2 ** failure_count), MAX_RETRY_DELAY_MS)


def _retry_count(retry: bool | int | None, default: bool | int) -> int:
    if retry is None:
        retry = default
    if retry is True:
        return DEFAULT_RETRY
    if retry is False:
        return 0
    return max(int(retry), 0)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class QueryState:
    """Snapshot of one cache entry."""

    def __init__(self) -> None:
        self.data: Any = None
        self.error: BaseException | None = None
        self.status = "pending"
        self.fetch_status = "idle"
        self.data_updated_at: float | None = None
        self.error_updated_at: float | None = None
        self.failure_count = 0
        self.is_invalidated = False

    def __repr__(self) -> str:
        return (
            f"QueryState(status={self.status!r}, fetch_status={self.fetch_status!r}, "
            f"invalidated={self.is_invalidated})"
        )


class Query:
    """A single cache entry plus its in-flight fetch."""

    def __init__(self, client: QueryClient, key: QueryKey) -> None:
        self.key = key
        self.state = QueryState()
        self._client = client
        self._fn: QueryFn | None = None
        self._retry: bool | int | None = None
        self._task: asyncio.Task[Any] | None = None
        self._observers: list[QueryObserver] = []
        # bumped on every invalidation; a fetch started before the latest
        # bump cannot make the entry fresh again
        self._generation = 0
        self._refetch_after = False

    @property
    def observer_count(self) -> int:
        """Number of enabled observers; disabled ones never trigger a fetch."""
        return sum(1 for observer in self._observers if observer.enabled)

    @property
    def is_fetching(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_observer(self, observer: QueryObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)
        # an observer served from fresh cache still needs to be refetchable
        if observer.enabled and self._fn is None:
            self._fn = observer.query_fn
            self._retry = observer.retry

    def remove_observer(self, observer: QueryObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def is_stale(self, stale_time: float = 0) -> bool:
        """``stale_time`` is in seconds."""
        if self.state.is_invalidated or self.state.data_updated_at is None:
            return True
        return time.monotonic() - self.state.data_updated_at >= stale_time

    def set_data(self, data: Any, *, invalidated: bool = False) -> None:
        self.state.data = data
        self.state.error = None
        self.state.status = "success"
        self.state.data_updated_at = time.monotonic()
        self.state.failure_count = 0
        self.state.is_invalidated = invalidated
        self._notify()

    def invalidate(self) -> None:
        """Mark stale; a fetch in flight is followed by one more fetch."""
        self._generation += 1
        self.state.is_invalidated = True
        if self.is_fetching:
            self._refetch_after = True

    def _on_fetch_done(self, task: asyncio.Task[Any]) -> None:
        if not self._refetch_after:
            return
        self._refetch_after = False
        # a cancelled fetch was cancelled on purpose (optimistic write)
        if task.cancelled() or not self.observer_count:
            return
        self._client._refetch_in_background(self, replace=True)

    def _notify(self) -> None:
        for observer in list(self._observers):
            observer._on_query_update(self.state)

    async def fetch(self, fn: QueryFn | None = None, retry: bool | int | None = None) -> Any:
        """Run the query function, joining a fetch that is already in flight.

        Returns the cached data if the in-flight fetch was cancelled through
        :meth:`QueryClient.cancel_queries`. Raises the last error when every
        attempt fails.
        """
        if fn is not None:
            self._fn = fn
            self._retry = retry
        if self._fn is None:
            raise ValueError(f"No query function registered for {self.key!r}")

        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(self._fn, self._retry))
            self._task.add_done_callback(self._on_fetch_done)
        task = self._task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return self.state.data
            raise

    async def _run(self, fn: QueryFn, retry: bool | int | None) -> Any:
        retries = _retry_count(retry, self._client.retry)
        generation = self._generation
        failures = 0
        self.state.fetch_status = "fetching"
        self._notify()
        try:
            while True:
                try:
                    data = await fn()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    failures += 1
                    self.state.failure_count = failures
                    if failures > retries:
                        self.state.error = exc
                        self.state.status = "error"
                        self.state.error_updated_at = time.monotonic()
                        logger.debug("Query %r failed: %s", self.key, exc)
                        raise
                    delay = retry_delay_ms(failures - 1)
                    logger.debug("Query %r failed, retrying in %dms", self.key, delay)
                    await _sleep(delay / 1000)
                    continue
                self.state.fetch_status = "idle"
                self.set_data(data, invalidated=generation != self._generation)
                return data
        finally:
            if self.state.fetch_status != "idle":
                self.state.fetch_status = "idle"
                self._notify()

    def cancel(self) -> asyncio.Task[Any] | None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            return self._task
        return None


class QueryClient:
    """Owns every cache entry."""

    def __init__(self, retry: bool | int = DEFAULT_RETRY) -> None:
        self.retry = retry
        self._queries: dict[QueryKey, Query] = {}
        self._background: dict[QueryKey, asyncio.Task[Any]] = {}
        self._mutation_locks: weakref.WeakValueDictionary[Any, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ---- Cache access ----

    def build(self, query_key: Iterable[Any]) -> Query:
        key = to_query_key(query_key)
        query = self._queries.get(key)
        if query is None:
            query = Query(self, key)
            self._queries[key] = query
        return query

    def find_all(self, query_key: Iterable[Any] | None = None) -> list[Query]:
        prefix = to_query_key(query_key) if query_key is not None else None
        return [q for key, q in self._queries.items() if matches_key(key, prefix)]

    def get_query_data(self, query_key: Iterable[Any]) -> Any:
        query = self._queries.get(to_query_key(query_key))
        return query.state.data if query else None

    def get_query_state(self, query_key: Iterable[Any]) -> QueryState | None:
        query = self._queries.get(to_query_key(query_key))
        return query.state if query else None

    def set_query_data(self, query_key: Iterable[Any], updater: Any) -> Any:
        """Write data directly. ``updater`` may be a value or ``old -> new``."""
        query = self.build(query_key)
        value = updater(query.state.data) if callable(updater) else updater
        query.set_data(value)
        return value

    # ---- Fetching ----

    async def fetch_query(
        self,
        query_key: Iterable[Any],
        query_fn: QueryFn,
        *,
        stale_time: float = 0,
        retry: bool | int | None = None,
    ) -> Any:
        """Return cached data when fresh, otherwise fetch. Raises on failure."""
        query = self.build(query_key)
        if not query.is_stale(stale_time):
            return query.state.data
        return await query.fetch(query_fn, retry)

    def invalidate_queries(self, query_key: Iterable[Any] | None = None) -> None:
        """Mark matching entries stale and refetch the ones being observed.

        An entry whose fetch is already in flight gets exactly one follow-up
        fetch once it settles, however many invalidations arrive meanwhile;
        the in-flight result is stored but stays stale.
        """
        for query in self.find_all(query_key):
            query.invalidate()
            logger.debug("Invalidated query %r", query.key)
            if query.observer_count and not query.is_fetching:
                self._refetch_in_background(query)

    async def refetch_queries(self, query_key: Iterable[Any] | None = None) -> None:
        queries = [q for q in self.find_all(query_key) if q._fn is not None]
        await asyncio.gather(*(self._safe_fetch(q) for q in queries))

    async def cancel_queries(self, query_key: Iterable[Any] | None = None) -> None:
        """Cancel in-flight fetches; their entries keep the last good data."""
        tasks = [t for t in (q.cancel() for q in self.find_all(query_key)) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def remove_queries(self, query_key: Iterable[Any] | None = None) -> None:
        for query in self.find_all(query_key):
            query.cancel()
            self._queries.pop(query.key, None)

    def clear(self) -> None:
        self.remove_queries()

    def is_fetching(self, query_key: Iterable[Any] | None = None) -> int:
        return sum(1 for q in self.find_all(query_key) if q.is_fetching)

    async def wait_for_refetches(self) -> None:
        """Wait for background refetches started by invalidation."""
        while self._background:
            await asyncio.gather(*list(self._background.values()), return_exceptions=True)

    def _refetch_in_background(self, query: Query, *, replace: bool = False) -> None:
        if query._fn is None:
            return
        scheduled = self._background.get(query.key)
        if not replace and scheduled is not None and not scheduled.done():
            return
        try:
            task = asyncio.get_running_loop().create_task(self._safe_fetch(query))
        except RuntimeError:
            return
        self._background[query.key] = task

        def _done(finished: asyncio.Task[Any], key: QueryKey = query.key) -> None:
            if self._background.get(key) is finished:
                del self._background[key]

        task.add_done_callback(_done)

    async def _safe_fetch(self, query: Query) -> None:
        try:
            await query.fetch()
        except Exception:
            logger.debug("Background refetch of %r failed", query.key, exc_info=True)

    # ---- Mutations ----

    def mutation_lock(self, scope: Any) -> asyncio.Lock:
        lock = self._mutation_locks.get(scope)
        if lock is None:
            lock = asyncio.Lock()
            self._mutation_locks[scope] = lock
        return lock


class QueryObserver:
    """A live view of one query with its caching policy.

    ``stale_time`` and ``refetch_interval`` are in seconds. A disabled
    observer never fetches.
    """

    def __init__(
        self,
        client: QueryClient,
        query_key: Iterable[Any],
        query_fn: QueryFn,
        *,
        stale_time: float = 0,
        refetch_interval: float | None = None,
        enabled: bool = True,
        retry: bool | int | None = None,
        select: Callable[[Any], Any] | None = None,
    ) -> None:
        self.client = client
        self.query_key = to_query_key(query_key)
        self.query_fn = query_fn
        self.stale_time = stale_time
        self.refetch_interval = refetch_interval
        self.enabled = enabled
        self.retry = retry
        self._select = select
        self._query = client.build(self.query_key)
        self._poll_task: asyncio.Task[None] | None = None
        self._listeners: list[Listener] = []
        self._started = False

    # ---- Result ----

    @property
    def data(self) -> Any:
        data = self._query.state.data
        if self._select is not None and data is not None:
            return self._select(data)
        return data

    @property
    def error(self) -> BaseException | None:
        return self._query.state.error

    @property
    def status(self) -> str:
        return self._query.state.status

    @property
    def fetch_status(self) -> str:
        return self._query.state.fetch_status

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @property
    def is_fetching(self) -> bool:
        return self.fetch_status == "fetching"

    @property
    def is_loading(self) -> bool:
        return self.is_pending and self.is_fetching

    @property
    def is_success(self) -> bool:
        return self.status == "success"

    @property
    def is_error(self) -> bool:
        return self.status == "error"

    @property
    def is_stale(self) -> bool:
        return self._query.is_stale(self.stale_time)

    @property
    def data_updated_at(self) -> float | None:
        return self._query.state.data_updated_at

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` whenever the underlying entry changes."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _on_query_update(self, state: QueryState) -> None:
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Error in query listener for %r", self.query_key)

    # ---- Lifecycle ----

    async def start(self) -> QueryObserver:
        """Attach to the cache, fetch if stale and start polling."""
        if self._started:
            return self
        self._started = True
        self._query.add_observer(self)
        if not self.enabled:
            return self
        if self._query.is_stale(self.stale_time):
            await self.refetch()
        if self.refetch_interval:
            self._poll_task = asyncio.create_task(self._poll_loop())
        return self

    def stop(self) -> None:
        self._started = False
        self._query.remove_observer(self)
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None

    async def refetch(self) -> QueryObserver:
        """Fetch now. Errors land in :attr:`error`, they are not raised."""
        if not self.enabled:
            return self
        try:
            await self._query.fetch(self.query_fn, self.retry)
        except Exception:
            logger.debug("Query %r failed", self.query_key, exc_info=True)
        return self

    async def _poll_loop(self) -> None:
        while True:
            await _sleep(self.refetch_interval)
            await self.refetch()

    async def __aenter__(self) -> QueryObserver:
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        self.stop()


class Mutation:
    """A server write with optimistic-update hooks.

    State machine: ``idle -> pending -> success | error``. Callbacks may be
    plain functions or coroutines:

    - ``on_mutate(variables) -> context`` runs before the request;
    - ``on_error(error, variables, context)`` runs on failure, then the
      error is re-raised to the caller of :meth:`mutate`;
    - ``on_success(data, variables, context)`` runs on success;
    - ``on_settled(data, error, variables, context)`` runs either way.

    When ``scope`` is given, mutations whose ``scope(variables)`` keys are
    equal run one at a time, in call order.
    """

    def __init__(
        self,
        client: QueryClient,
        mutation_fn: Callable[[Any], Awaitable[Any]],
        *,
        on_mutate: Callable[..., Any] | None = None,
        on_success: Callable[..., Any] | None = None,
        on_error: Callable[..., Any] | None = None,
        on_settled: Callable[..., Any] | None = None,
        scope: Callable[[Any], Any] | None = None,
    ) -> None:
        self.client = client
        self._fn = mutation_fn
        self._on_mutate = on_mutate
        self._on_success = on_success
        self._on_error = on_error
        self._on_settled = on_settled
        self._scope = scope
        self.reset()

    def reset(self) -> None:
        self.status = "idle"
        self.data: Any = None
        self.error: BaseException | None = None
        self.variables: Any = None

    @property
    def is_idle(self) -> bool:
        return self.status == "idle"

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @property
    def is_success(self) -> bool:
        return self.status == "success"

    @property
    def is_error(self) -> bool:
        return self.status == "error"

    async def mutate(self, variables: Any = None) -> Any:
        scope_key = self._scope(variables) if self._scope is not None else None
        if scope_key is None:
            return await self._execute(variables)
        async with self.client.mutation_lock(scope_key):
            return await self._execute(variables)

    async def _execute(self, variables: Any) -> Any:
        self.status = "pending"
        self.variables = variables
        self.error = None
        context: Any = None
        try:
            if self._on_mutate is not None:
                context = await _maybe_await(self._on_mutate(variables))
            data = await self._fn(variables)
        except Exception as exc:
            self.status = "error"
            self.error = exc
            logger.debug("Mutation failed: %s", exc)
            if self._on_error is not None:
                await _maybe_await(self._on_error(exc, variables, context))
            if self._on_settled is not None:
                await _maybe_await(self._on_settled(None, exc, variables, context))
            raise

        self.status = "success"
        self.data = data
        if self._on_success is not None:
            await _maybe_await(self._on_success(data, variables, context))
        if self._on_settled is not None:
            await _maybe_await(self._on_settled(data, None, variables, context))
        return data
