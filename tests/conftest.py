import asyncio
import json
from collections import Counter
from typing import Callable, Dict, List

import httpx
import pytest

from dramabox import DramaboxContext, Settings

BOOTSTRAP_PATH = "/drama-box/ap001/bootstrap"


def run(coro):
    return asyncio.run(coro)


class FakeSleep:
    """Records every requested pause instead of waiting."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def backoffs(self) -> List[float]:
        return [s for s in self.calls if s > 0]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def bootstrap_ok(token: str = "tok-1", uid: int = 77) -> httpx.Response:
    return httpx.Response(
        200,
        json={"success": True, "data": {"user": {"token": token, "uid": uid}, "attributionPubParam": {"a": 1}}},
    )


class FakeUpstream:
    """
    Path-routed stand-in for every upstream host.

    A route is either a callable taking the request or a list of responses /
    exceptions consumed in order (the last one repeats).
    """

    def __init__(self):
        self.routes: Dict[str, object] = {}
        self.calls: Counter = Counter()
        self.requests: List[httpx.Request] = []
        self.minted = 0
        self.route(BOOTSTRAP_PATH, self._mint)

    def _mint(self, request: httpx.Request) -> httpx.Response:
        self.minted += 1
        return bootstrap_ok(token=f"tok-{self.minted}")

    def route(self, path: str, handler) -> None:
        self.routes[path] = handler

    def requests_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] += 1
        self.requests.append(request)
        handler = self.routes.get(path)
        if handler is None:
            return httpx.Response(404, json={"message": "no route"})
        if isinstance(handler, list):
            outcome = handler.pop(0) if len(handler) > 1 else handler[0]
        else:
            outcome = handler(request)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, dict):
            return httpx.Response(200, json=outcome)
        return outcome


def body_of(request: httpx.Request) -> dict:
    return json.loads(request.content.decode("utf-8")) if request.content else {}


@pytest.fixture
def settings() -> Settings:
    return Settings(sign_secret="test-secret")


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_context(settings, upstream, sleep, clock) -> Callable[..., DramaboxContext]:
    def factory(**overrides) -> DramaboxContext:
        http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        return DramaboxContext(
            overrides.get("settings", settings),
            http=http,
            sleep=sleep,
            clock=clock,
            cache_timer=clock,
        )

    return factory
