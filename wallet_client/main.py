import logging
from dataclasses import dataclass

import httpx

from .response_cache import ResponseCache
from .services.auth_flow import AuthStateMachine, Notifier
from .services.transport import Transport
from .services.wallet import WalletProvider
from .session_store import SessionPersistence, SessionStore
from .timers import AsyncioTimer, Timer

_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: int | str = logging.INFO) -> None:
    """Configures basic logging once; leaves handlers installed by a host app alone."""
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return
    logging.basicConfig(level=level, format=_LOG_FORMAT)


@dataclass
class WalletClient:
    """Everything a presentation layer needs, wired together."""

    transport: Transport
    cache: ResponseCache
    session: SessionStore
    auth: AuthStateMachine

    async def aclose(self) -> None:
        await self.auth.close()
        self.session.close()
        await self.transport.aclose()

    async def __aenter__(self) -> "WalletClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def create_wallet_client(
    wallet: WalletProvider,
    *,
    base_url: str | None = None,
    timer: Timer | None = None,
    notifier: Notifier | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    persistence: SessionPersistence | None = None,
    **auth_options,
) -> WalletClient:
    """
    Builds transport, cache, session store and auth machine sharing one timer.

    `persistence` restores and saves the last known identity (see
    JsonFileSessionPersistence).

    `auth_options` are passed to AuthStateMachine (debounce, cooldown, retries,
    on_disconnect).
    """
    timer = timer or AsyncioTimer()
    transport = Transport(base_url, timer=timer, transport=http_transport)
    cache = ResponseCache(clock=timer.now)
    session = SessionStore(transport, persistence=persistence)
    auth = AuthStateMachine(
        transport,
        session,
        wallet,
        cache=cache,
        timer=timer,
        notifier=notifier,
        **auth_options,
    )
    return WalletClient(transport=transport, cache=cache, session=session, auth=auth)
