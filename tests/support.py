"""Test doubles shared by the test modules: virtual time, scripted HTTP, fake wallets."""

import asyncio
import heapq
import itertools
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from wallet_client.models.auth_models import SignatureResult


async def settle(rounds: int = 100) -> None:
    """Lets every ready task on the loop run until nothing is left to do."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def until(condition: Callable[[], Any], timeout: float = 5.0) -> None:
    """Polls in real time until `condition()` is truthy; for work that leaves the loop."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class _VirtualHandle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualTimer:
    """Timer whose clock only moves when a test calls advance()."""

    def __init__(self) -> None:
        self._now = 0.0
        self._queue: List[Tuple[float, int, Callable[[], None], _VirtualHandle]] = []
        self._seq = itertools.count()
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _VirtualHandle:
        handle = _VirtualHandle()
        heapq.heappush(self._queue, (self._now + delay, next(self._seq), callback, handle))
        return handle

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        future = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not future.done():
                future.set_result(None)

        self.call_later(delay, wake)
        await future

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        await settle()
        while self._queue and self._queue[0][0] <= target:
            when, _, callback, handle = heapq.heappop(self._queue)
            self._now = when
            if not handle.cancelled:
                callback()
            await settle()
        self._now = target
        await settle()


class ImmediateTimer(VirtualTimer):
    """Records sleeps and returns at once, moving the clock forward."""

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self._now += delay


# A scripted reply: (status, json payload[, headers]), an exception to raise,
# or a callable taking the request and returning a Response (or awaitable).
Reply = Any


class ScriptedBackend:
    """
    Handler for httpx.MockTransport.

    Replies for a route are consumed in order; the last one repeats forever.
    Unknown routes answer 404.
    """

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], List[Reply]] = {}
        self.requests: List[httpx.Request] = []

    def on(self, method: str, path: str, *replies: Reply) -> None:
        self.routes[(method.upper(), path)] = list(replies)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def count(self, method: str, path: str) -> int:
        return len(self.calls(method, path))

    def json_bodies(self, method: str, path: str) -> List[Any]:
        return [json.loads(r.content) for r in self.calls(method, path)]

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        replies = self.routes.get((request.method, request.url.path))
        if not replies:
            return httpx.Response(404, json={"message": "Not Found"})
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(request)
        status_code, payload, *rest = reply
        headers = rest[0] if rest else None
        if payload is None:
            return httpx.Response(status_code, headers=headers)
        return httpx.Response(status_code, json=payload, headers=headers)


class FakeWallet:
    """Wallet provider double; the signing prompt can be held open with `gate`."""

    def __init__(self, address: str = "0xAAA", result: Optional[SignatureResult] = None, raises: Optional[BaseException] = None):
        self._address = address
        self.result = result or SignatureResult.ok("0xsig")
        self.raises = raises
        self.gate: Optional[asyncio.Future] = None
        self.sign_calls: List[str] = []
        self.disconnected = False

    @property
    def address(self) -> Optional[str]:
        return None if self.disconnected else self._address

    def hold_signing(self) -> asyncio.Future:
        self.gate = asyncio.get_running_loop().create_future()
        return self.gate

    async def sign_message(self, message: str) -> SignatureResult:
        self.sign_calls.append(message)
        if self.gate is not None:
            await self.gate
        if self.raises is not None:
            raise self.raises
        return self.result

    async def disconnect(self) -> None:
        self.disconnected = True


class RecordingNotifier:
    def __init__(self) -> None:
        self.notices: List[Tuple[str, str]] = []

    def __call__(self, level: str, message: str) -> None:
        self.notices.append((level, message))

    def levels(self) -> List[str]:
        return [level for level, _ in self.notices]
