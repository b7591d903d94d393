import inspect
import json
import logging
import os
from typing import Any, Awaitable, Callable, List, Optional, Protocol

from pydantic import ValidationError

from . import config
from .errors import ApiError
from .models.api_models import RequestConfig
from .models.auth_models import GetUserResponse, PersistedSession, Session, UserRecord
from .services.fetch_controller import FetchController
from .services.transport import Transport

logger = logging.getLogger(__name__)

SessionListener = Callable[[Session], None]

# Called when verification finds no live session; may be sync or async
StaleSessionCallback = Callable[[], Optional[Awaitable[Any]]]


def requires_authentication(path: str) -> bool:
    """True when a page at `path` must be left once the wallet disconnects."""
    return any(
        path == prefix or path.startswith(prefix.rstrip("/") + "/")
        for prefix in config.PROTECTED_ROUTE_PREFIXES
    )


# --- Persistence ---

class SessionPersistence(Protocol):
    def load(self) -> Optional[PersistedSession]: ...

    def save(self, snapshot: PersistedSession) -> None: ...


class JsonFileSessionPersistence:
    """Keeps the last known identity in a small JSON file."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Optional[PersistedSession]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, 'r') as f:
                return PersistedSession.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            # pydantic's ValidationError is a ValueError
            logger.warning(f"Ignoring unreadable session file {self.path}: {e}")
            return None

    def save(self, snapshot: PersistedSession) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(snapshot.model_dump(mode="json", by_alias=True), f, indent=2)
        logger.debug(f"Session saved to: {self.path}")


class SessionStore:
    """
    Holds the authenticated identity for the whole application.

    Only the authentication flow and an explicit logout write to it; everything
    else reads `session` or subscribes to changes. With a persistence backend the
    user and is_authenticated flag are restored at construction and saved on
    every change.
    """

    def __init__(
        self,
        transport: Transport,
        verify_timeout: float | None = None,
        persistence: SessionPersistence | None = None,
    ):
        self._verify_timeout = verify_timeout or config.SESSION_VERIFY_TIMEOUT_SECONDS
        self._persistence = persistence
        self._session = Session()
        self._listeners: List[SessionListener] = []
        self._has_hydrated = False
        self._verify_generation = 0
        # One controller, so a newer verification supersedes an older one
        self._user_fetch = FetchController(
            transport,
            config.API_ENDPOINTS["GET_USER"],
            request_config=RequestConfig.for_method("GET", timeout=self._verify_timeout),
            use_cache=False,
        )
        self._hydrate()

    @property
    def session(self) -> Session:
        return self._session

    @property
    def user(self) -> UserRecord | None:
        return self._session.user

    @property
    def is_authenticated(self) -> bool:
        return self._session.is_authenticated

    @property
    def is_loading(self) -> bool:
        return self._session.is_loading

    @property
    def has_hydrated(self) -> bool:
        return self._has_hydrated

    def _hydrate(self) -> None:
        if self._persistence is None:
            return
        snapshot = self._persistence.load()
        if snapshot is not None:
            authenticated = snapshot.is_authenticated and snapshot.user is not None
            self._session = Session(user=snapshot.user if authenticated else None, is_authenticated=authenticated)
            if authenticated:
                logger.info(f"Restored session for {snapshot.user.address}")
        self._has_hydrated = True

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, session: Session) -> None:
        previous = self._session
        self._session = session
        if self._persistence is not None and (
            previous.user != session.user or previous.is_authenticated != session.is_authenticated
        ):
            try:
                self._persistence.save(PersistedSession(user=session.user, is_authenticated=session.is_authenticated))
            except OSError as e:
                logger.error(f"Failed to persist session: {e}", exc_info=True)
        for listener in list(self._listeners):
            listener(session)

    def set_loading(self, is_loading: bool) -> None:
        self._set(self._session.model_copy(update={"is_loading": is_loading}))

    def set_authenticated(self, user: UserRecord) -> None:
        logger.info(f"Session authenticated for {user.address}")
        self._set(Session(user=user, is_authenticated=True, is_loading=False, error=None))

    def clear_auth(self) -> None:
        if self._session.is_authenticated:
            logger.info("Clearing authenticated session")
        self._set(Session())

    async def verify_session(self, on_stale_session: StaleSessionCallback | None = None) -> Session:
        """
        Re-reads the canonical user record and overwrites the session with it.

        A response without a user means "not authenticated". Transport errors
        leave the session unauthenticated with the error recorded. A call
        superseded by a newer verify_session() leaves the session untouched.

        Args:
            on_stale_session: Invoked when no live session is found, e.g. to
                disconnect a wallet whose backend session has expired.

        Returns:
            The session after verification.
        """
        self._verify_generation += 1
        generation = self._verify_generation
        # A restored identity stays visible while it is being re-checked
        if not self._session.is_authenticated:
            self.set_loading(True)

        await self._user_fetch.execute()
        if generation != self._verify_generation or self._user_fetch.closed:
            logger.debug("Session verification superseded by a newer one")
            return self._session

        state = self._user_fetch.state
        if state.error is not None:
            error: ApiError = state.error
            logger.info(f"Session verification failed, user is not logged in ({error.kind.value}).")
            self._set(Session(user=None, is_authenticated=False, is_loading=False, error=error))
            await self._notify_stale(on_stale_session)
            return self._session

        try:
            user = GetUserResponse.model_validate(state.data or {}).user
        except ValidationError as e:
            logger.warning(f"Invalid user payload from {config.API_ENDPOINTS['GET_USER']}: {e}")
            self._set(Session(user=None, is_authenticated=False, is_loading=False, error=e))
            await self._notify_stale(on_stale_session)
            return self._session

        if user is None:
            logger.info("No active session on the backend.")
            self._set(Session(user=None, is_authenticated=False, is_loading=False, error=None))
            await self._notify_stale(on_stale_session)
        else:
            self.set_authenticated(user)
        return self._session

    async def _notify_stale(self, callback: StaleSessionCallback | None) -> None:
        if callback is None:
            return
        result = callback()
        if inspect.isawaitable(result):
            await result

    def close(self) -> None:
        self._verify_generation += 1
        self._user_fetch.close()
