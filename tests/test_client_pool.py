from __future__ import annotations

import asyncio

import httpx

from app.services.client_pool import ClientPool


class FakeClient:
    def __init__(self, api_key: str) -> None:
        self.api_key = api_key
        self.closed = False


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def _close(client: FakeClient) -> None:
    client.closed = True


def _pool(**kwargs: object) -> ClientPool[FakeClient]:
    return ClientPool(FakeClient, closer=_close, **kwargs)  # type: ignore[arg-type]


def test_same_key_reuses_client() -> None:
    pool = _pool()

    async def runner() -> tuple[FakeClient, FakeClient, FakeClient]:
        return (
            await pool.acquire("key-a"),
            await pool.acquire("key-a"),
            await pool.acquire("key-b"),
        )

    first, again, other = asyncio.run(runner())

    assert first is again
    assert other is not first
    assert pool.stats()["created"] == 2


def test_concurrent_acquires_share_one_client() -> None:
    pool = _pool()

    async def runner() -> list[FakeClient]:
        return await asyncio.gather(*(pool.acquire("key-a") for _ in range(10)))

    clients = asyncio.run(runner())

    assert len({id(client) for client in clients}) == 1
    assert len(pool) == 1


def test_lru_eviction_keeps_borrowed_client_open_until_grace_passes() -> None:
    clock = FakeClock()
    pool = _pool(max_size=2, retire_grace=120, clock=clock)

    async def runner() -> tuple[FakeClient, FakeClient, FakeClient]:
        a = await pool.acquire("key-a")
        b = await pool.acquire("key-b")
        await pool.acquire("key-a")
        c = await pool.acquire("key-c")
        assert not b.closed
        clock.now = 120
        await pool.acquire("key-c")
        return a, b, c

    a, b, c = asyncio.run(runner())

    assert b.closed
    assert not a.closed
    assert not c.closed
    assert len(pool) == 2
    assert pool.stats()["evicted"] == 1


def test_evicted_http_client_still_serves_in_flight_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True})

    def factory(api_key: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url="https://upstream.test",
            transport=httpx.MockTransport(handler),
        )

    pool: ClientPool[httpx.AsyncClient] = ClientPool(factory, max_size=1)

    async def runner() -> int:
        borrowed = await pool.acquire("key-a")
        await pool.acquire("key-b")
        response = await borrowed.get("/ping")
        await pool.dispose()
        assert borrowed.is_closed
        return response.status_code

    assert asyncio.run(runner()) == 200


def test_idle_clients_are_retired() -> None:
    clock = FakeClock()
    pool = _pool(idle_ttl=60, retire_grace=30, clock=clock)

    async def runner() -> tuple[FakeClient, FakeClient]:
        first = await pool.acquire("key-a")
        clock.now = 61
        second = await pool.acquire("key-a")
        assert not first.closed
        clock.now = 91
        await pool.acquire("key-a")
        return first, second

    first, second = asyncio.run(runner())

    assert first.closed
    assert second is not first
    assert not second.closed


def test_dispose_closes_everything() -> None:
    pool = _pool(max_size=2)

    async def runner() -> list[FakeClient]:
        clients = [await pool.acquire(f"key-{n}") for n in range(3)]
        await pool.dispose()
        return clients

    clients = asyncio.run(runner())

    assert all(client.closed for client in clients)
    assert len(pool) == 0
    assert pool.stats()["retired"] == 0
