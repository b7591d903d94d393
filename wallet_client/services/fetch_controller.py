import logging
from typing import Any, Callable, Generic, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict

from .. import config
from ..errors import ApiError, RequestCancelledError
from ..models.api_models import RequestConfig
from ..response_cache import ResponseCache, get_default_cache
from .transport import CancellationToken, Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FetchState(BaseModel, Generic[T]):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    data: Optional[T] = None
    loading: bool = False
    error: Optional[Any] = None
    success: bool = False


StateListener = Callable[[FetchState], None]


class _StatefulController:
    """Holds the four-state result and fans updates out to subscribers."""

    def __init__(
        self,
        transport: Transport,
        endpoint: str,
        on_success: Callable[[Any], None] | None = None,
        on_error: Callable[[ApiError], None] | None = None,
    ):
        self._transport = transport
        self.endpoint = endpoint
        self._on_success = on_success
        self._on_error = on_error
        self._state: FetchState = FetchState()
        self._listeners: List[StateListener] = []
        self._token: CancellationToken | None = None
        self._closed = False

    @property
    def state(self) -> FetchState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Registers a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def reset(self) -> None:
        self._publish(data=None, loading=False, error=None, success=False)

    def close(self) -> None:
        """Teardown: fires any outstanding token; no state update is applied afterwards."""
        self._cancel_pending()
        self._closed = True
        self._listeners.clear()

    def _cancel_pending(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None

    def _is_stale(self, token: CancellationToken) -> bool:
        return self._closed or token.cancelled

    def _publish(self, **changes: Any) -> None:
        if self._closed:
            return
        self._state = self._state.model_copy(update=changes)
        for listener in list(self._listeners):
            listener(self._state)


class FetchController(_StatefulController, Generic[T]):
    """
    Manages one logical read: loading/success/error state, cache, supersession.

    Each execute() supersedes the previous one; a superseded call's result is
    dropped. When a cache key is configured, a still-valid cached payload seeds the
    state at construction and every successful fetch replaces it.
    """

    def __init__(
        self,
        transport: Transport,
        endpoint: str,
        *,
        request_config: RequestConfig | None = None,
        cache: ResponseCache | None = None,
        cache_key: str | None = None,
        cache_ttl: float = config.DEFAULT_CACHE_TTL_SECONDS,
        use_cache: bool | None = None,
        transform: Callable[[Any], T] | None = None,
        on_success: Callable[[T], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        immediate: bool = False,
    ):
        super().__init__(transport, endpoint, on_success, on_error)
        self._request_config = request_config or RequestConfig.for_method("GET")
        self._cache = cache if cache is not None else get_default_cache()
        self._cache_key = cache_key
        self._cache_ttl = cache_ttl
        self._use_cache = config.API_ENABLE_CACHE if use_cache is None else use_cache
        self._transform = transform
        self.immediate = immediate
        self._deps: Tuple[Any, ...] = ()

        if self._cache_key and self._use_cache:
            cached = self._cache.get(self._cache_key)
            if cached is not None:
                logger.debug(f"Seeding {endpoint} from cache key {self._cache_key}")
                self._state = FetchState(data=cached, loading=False, error=None, success=True)

    async def __aenter__(self) -> "FetchController[T]":
        if self.immediate:
            await self.execute()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    async def execute(self) -> None:
        if self._closed:
            logger.debug(f"Ignoring execute() on closed controller for {self.endpoint}")
            return
        self._cancel_pending()
        token = CancellationToken()
        self._token = token
        self._publish(loading=True, error=None)

        try:
            envelope = await self._transport.get(self.endpoint, self._request_config, cancel_token=token)
        except RequestCancelledError:
            logger.debug(f"Discarded superseded response for {self.endpoint}")
            return
        except ApiError as e:
            if self._is_stale(token):
                return
            self._token = None
            self._publish(data=None, loading=False, error=e, success=False)
            if self._on_error:
                self._on_error(e)
            return

        if self._is_stale(token):
            logger.debug(f"Discarded superseded response for {self.endpoint}")
            return
        self._token = None

        data = envelope.data
        if self._transform:
            try:
                data = self._transform(data)
            except Exception as e:
                logger.error(f"Transform failed for {self.endpoint}: {e}", exc_info=True)
                self._publish(data=None, loading=False, error=e, success=False)
                if self._on_error:
                    self._on_error(e)
                return
        if self._cache_key and self._use_cache:
            self._cache.set(self._cache_key, data, self._cache_ttl)

        self._publish(data=data, loading=False, error=None, success=envelope.success)
        if self._on_success:
            self._on_success(data)

    async def refetch(self) -> None:
        await self.execute()

    async def update_dependencies(self, *deps: Any) -> None:
        """Fires the outstanding token when deps change; re-executes if immediate."""
        if deps == self._deps:
            return
        self._deps = deps
        self._cancel_pending()
        if self.immediate:
            await self.execute()


class MutationController(_StatefulController, Generic[T]):
    """Manages one logical write. Never touches the cache; retries default to zero."""

    def __init__(
        self,
        transport: Transport,
        endpoint: str,
        *,
        method: str = "POST",
        request_config: RequestConfig | None = None,
        on_success: Callable[[T], None] | None = None,
        on_error: Callable[[ApiError], None] | None = None,
    ):
        super().__init__(transport, endpoint, on_success, on_error)
        method = method.upper()
        base = request_config or RequestConfig.for_method(method)
        self._request_config = base.model_copy(update={"method": method})

    async def mutate(self, variables: Any = None) -> T | None:
        """
        Sends the write and returns the response payload.

        Raises the classified ApiError after publishing it, so callers can chain
        steps on success and stop on failure.
        """
        self._cancel_pending()
        token = CancellationToken()
        self._token = token
        self._publish(loading=True, error=None)

        request_config = self._request_config.model_copy(update={"body": variables})
        try:
            envelope = await self._transport.request(self.endpoint, request_config, cancel_token=token)
        except RequestCancelledError:
            raise
        except ApiError as e:
            if not self._is_stale(token):
                self._token = None
                self._publish(data=None, loading=False, error=e, success=False)
                if self._on_error:
                    self._on_error(e)
            raise

        if self._is_stale(token):
            raise RequestCancelledError()
        self._token = None
        self._publish(data=envelope.data, loading=False, error=None, success=envelope.success)
        if self._on_success:
            self._on_success(envelope.data)
        return envelope.data
