"""
Unit tests for the query cache, observers and mutations.
"""

from __future__ import annotations

import asyncio

import pytest

from dashboard_sync import query as query_module
from dashboard_sync.query import Mutation, QueryClient, QueryObserver, retry_delay_ms, to_query_key


class Counter:
    """Query function that counts calls and can be told to fail."""

    def __init__(self, fail_times: int = 0) -> None:
        self.calls = 0
        self.fail_times = fail_times

    async def __call__(self):
        self.calls += 1
        if self.fail_times:
            self.fail_times -= 1
            raise RuntimeError(f"fetch {self.calls} failed")
        return {"version": self.calls}


@pytest.fixture
def no_retry_delay(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_sleep(seconds: float) -> None:
        return None

    monkeypatch.setattr(query_module, "_sleep", fake_sleep)


# ============================================================
#  Keys
# ============================================================


def test_query_keys_are_normalized() -> None:
    assert to_query_key(["project", "p1"]) == ("project", "p1")
    assert to_query_key("projects") == ("projects",)


def test_retry_delay_is_capped() -> None:
    assert [retry_delay_ms(n) for n in range(6)] == [1000, 2000, 4000, 8000, 16000, 30000]


# ============================================================
#  Fetching
# ============================================================


@pytest.mark.asyncio
async def test_fetch_query_respects_stale_time() -> None:
    client = QueryClient(retry=False)
    fn = Counter()

    first = await client.fetch_query(["project", "p1"], fn, stale_time=60)
    second = await client.fetch_query(("project", "p1"), fn, stale_time=60)

    assert first == second == {"version": 1}
    assert fn.calls == 1
    assert client.get_query_state(("project", "p1")).status == "success"


@pytest.mark.asyncio
async def test_fetch_query_raises_and_records_error() -> None:
    client = QueryClient(retry=False)

    with pytest.raises(RuntimeError):
        await client.fetch_query(("project", "p1"), Counter(fail_times=1))

    state = client.get_query_state(("project", "p1"))
    assert state.status == "error"
    assert isinstance(state.error, RuntimeError)
    assert state.fetch_status == "idle"


@pytest.mark.asyncio
async def test_concurrent_fetches_are_deduplicated() -> None:
    client = QueryClient(retry=False)
    release = asyncio.Event()
    calls = []

    async def slow():
        calls.append(1)
        await release.wait()
        return "done"

    query = client.build(("slow",))
    first = asyncio.create_task(query.fetch(slow))
    second = asyncio.create_task(query.fetch(slow))
    await asyncio.sleep(0)
    release.set()

    assert await first == await second == "done"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_retries_before_giving_up(no_retry_delay: None) -> None:
    client = QueryClient(retry=2)
    fn = Counter(fail_times=2)

    assert await client.fetch_query(("flaky",), fn) == {"version": 3}
    assert fn.calls == 3

    failing = Counter(fail_times=5)
    with pytest.raises(RuntimeError):
        await client.fetch_query(("broken",), failing)
    assert failing.calls == 3


@pytest.mark.asyncio
async def test_cancel_queries_keeps_last_good_data() -> None:
    client = QueryClient(retry=False)
    client.set_query_data(("stories", "p1"), ["old"])
    started = asyncio.Event()

    async def never_finishes():
        started.set()
        await asyncio.Event().wait()

    query = client.build(("stories", "p1"))
    pending = asyncio.create_task(query.fetch(never_finishes))
    await started.wait()
    assert client.is_fetching(("stories",)) == 1

    await client.cancel_queries(("stories", "p1"))

    assert await pending == ["old"]
    assert client.get_query_data(("stories", "p1")) == ["old"]
    assert client.get_query_state(("stories", "p1")).fetch_status == "idle"
    assert client.is_fetching() == 0


def test_set_query_data_accepts_updater() -> None:
    client = QueryClient()
    client.set_query_data(("count",), 1)
    client.set_query_data(("count",), lambda old: old + 1)

    assert client.get_query_data(("count",)) == 2
    assert client.get_query_data(("missing",)) is None


# ============================================================
#  Invalidation
# ============================================================


@pytest.mark.asyncio
async def test_invalidate_matches_by_prefix() -> None:
    client = QueryClient()
    for key in [("escalations", None), ("escalations", "project", "p1", None), ("escalation", "e1")]:
        client.set_query_data(key, [])

    client.invalidate_queries(("escalations",))

    assert client.get_query_state(("escalations", None)).is_invalidated
    assert client.get_query_state(("escalations", "project", "p1", None)).is_invalidated
    assert not client.get_query_state(("escalation", "e1")).is_invalidated


@pytest.mark.asyncio
async def test_invalidate_refetches_only_observed_queries() -> None:
    client = QueryClient(retry=False)
    watched, unwatched = Counter(), Counter()

    observer = QueryObserver(client, ("watched",), watched, stale_time=60)
    await observer.start()
    await client.fetch_query(("unwatched",), unwatched)

    client.invalidate_queries()
    await client.wait_for_refetches()

    assert watched.calls == 2
    assert unwatched.calls == 1
    assert client.get_query_state(("unwatched",)).is_invalidated
    observer.stop()


@pytest.mark.asyncio
async def test_invalidation_during_fetch_runs_one_follow_up() -> None:
    """A fetch that started before the server changed must not look fresh."""
    client = QueryClient(retry=False)
    server = {"status": "old"}
    started = asyncio.Event()
    release = asyncio.Event()
    release.set()
    calls = []

    async def fetch_project():
        calls.append(1)
        answer = dict(server)
        started.set()
        await release.wait()
        return answer

    observer = QueryObserver(client, ("project", "p1"), fetch_project, stale_time=60)
    await observer.start()

    started.clear()
    release.clear()
    poll = asyncio.create_task(observer.refetch())
    await started.wait()

    server["status"] = "new"
    client.invalidate_queries(("project", "p1"))
    client.invalidate_queries(("project",))
    release.set()
    await poll

    # the in-flight answer is stored but stays stale
    assert observer.data == {"status": "old"}
    assert observer.is_stale

    await client.wait_for_refetches()

    assert len(calls) == 3
    assert observer.data == {"status": "new"}
    assert not observer.is_stale
    observer.stop()


@pytest.mark.asyncio
async def test_invalidation_during_unobserved_fetch_keeps_entry_stale() -> None:
    client = QueryClient(retry=False)
    release = asyncio.Event()
    calls = []

    async def fetch_once():
        calls.append(1)
        await release.wait()
        return "old"

    pending = asyncio.create_task(client.fetch_query(("projects",), fetch_once))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    client.invalidate_queries(("projects",))
    release.set()

    assert await pending == "old"
    await client.wait_for_refetches()
    assert len(calls) == 1
    assert client.get_query_state(("projects",)).is_invalidated


@pytest.mark.asyncio
async def test_stopped_observer_is_not_refetched() -> None:
    client = QueryClient(retry=False)
    fn = Counter()
    observer = QueryObserver(client, ("k",), fn)
    await observer.start()
    observer.stop()

    client.invalidate_queries(("k",))
    await client.wait_for_refetches()

    assert fn.calls == 1


# ============================================================
#  Observers
# ============================================================


@pytest.mark.asyncio
async def test_disabled_observer_never_fetches() -> None:
    client = QueryClient(retry=False)
    fn = Counter()

    async with QueryObserver(client, ("project", ""), fn, enabled=False) as observer:
        await observer.refetch()
        assert not observer.is_loading
        assert observer.is_pending
        assert observer.data is None

    assert fn.calls == 0


@pytest.mark.asyncio
async def test_observer_keeps_errors_in_state() -> None:
    client = QueryClient(retry=False)
    observer = QueryObserver(client, ("broken",), Counter(fail_times=1))

    await observer.start()

    assert observer.is_error
    assert str(observer.error) == "fetch 1 failed"
    assert not observer.is_loading

    await observer.refetch()
    assert observer.is_success
    assert observer.error is None
    observer.stop()


@pytest.mark.asyncio
async def test_observer_uses_fresh_cache() -> None:
    client = QueryClient(retry=False)
    client.set_query_data(("cached",), "warm")
    fn = Counter()

    observer = QueryObserver(client, ("cached",), fn, stale_time=60)
    await observer.start()

    assert observer.data == "warm"
    assert fn.calls == 0
    observer.stop()


@pytest.mark.asyncio
async def test_observer_select_and_listeners() -> None:
    client = QueryClient(retry=False)
    states = []
    observer = QueryObserver(client, ("items",), Counter(), select=lambda d: d["version"] * 10)
    observer.subscribe(lambda state: states.append(state.fetch_status))

    await observer.start()

    assert observer.data == 10
    assert states[0] == "fetching"
    assert states[-1] == "idle"
    observer.stop()


@pytest.mark.asyncio
async def test_polling_refetches_until_stopped() -> None:
    client = QueryClient(retry=False)
    fn = Counter()
    observer = QueryObserver(client, ("polled",), fn, refetch_interval=0.01)

    await observer.start()
    await asyncio.sleep(0.1)
    observer.stop()
    calls = fn.calls
    await asyncio.sleep(0.05)

    assert calls >= 3
    assert fn.calls == calls


# ============================================================
#  Mutations
# ============================================================


@pytest.mark.asyncio
async def test_mutation_success_path() -> None:
    client = QueryClient()
    order = []

    async def save(variables):
        order.append("request")
        return {"saved": variables}

    mutation = Mutation(
        client,
        save,
        on_mutate=lambda v: order.append("mutate") or "ctx",
        on_success=lambda data, v, ctx: order.append(f"success:{ctx}"),
        on_settled=lambda data, err, v, ctx: order.append(f"settled:{err}"),
    )
    assert mutation.is_idle

    result = await mutation.mutate(1)

    assert result == {"saved": 1}
    assert mutation.is_success
    assert mutation.data == {"saved": 1}
    assert order == ["mutate", "request", "success:ctx", "settled:None"]


@pytest.mark.asyncio
async def test_mutation_error_runs_rollback_and_reraises() -> None:
    client = QueryClient()
    seen = []

    async def save(variables):
        raise ValueError("rejected")

    async def on_error(error, variables, context):
        seen.append((str(error), variables, context))

    mutation = Mutation(client, save, on_mutate=lambda v: {"snapshot": 1}, on_error=on_error)

    with pytest.raises(ValueError):
        await mutation.mutate("x")

    assert mutation.is_error
    assert seen == [("rejected", "x", {"snapshot": 1})]

    mutation.reset()
    assert mutation.is_idle and mutation.error is None


@pytest.mark.asyncio
async def test_scoped_mutations_run_serially() -> None:
    client = QueryClient()
    log = []

    async def save(variables):
        log.append(f"start {variables['id']}:{variables['n']}")
        await asyncio.sleep(0.01)
        log.append(f"end {variables['id']}:{variables['n']}")

    mutation = Mutation(client, save, scope=lambda v: v["id"])

    await asyncio.gather(
        mutation.mutate({"id": "a", "n": 1}),
        mutation.mutate({"id": "a", "n": 2}),
    )

    assert log == ["start a:1", "end a:1", "start a:2", "end a:2"]


@pytest.mark.asyncio
async def test_unscoped_mutations_overlap() -> None:
    client = QueryClient()
    log = []

    async def save(variables):
        log.append(f"start {variables}")
        await asyncio.sleep(0.01)
        log.append(f"end {variables}")

    mutation = Mutation(client, save)
    await asyncio.gather(mutation.mutate(1), mutation.mutate(2))

    assert log[:2] == ["start 1", "start 2"]
