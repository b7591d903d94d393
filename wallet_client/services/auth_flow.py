"""
Client side of the wallet signature-challenge login.

Flow for one wallet connection:
    1. POST /create-nonce {address}          -> nonce
    2. wallet signs the nonce                 (user may cancel)
    3. POST /connect-wallet {address, signature, message=nonce}
    4. GET /user via SessionStore.verify_session()

The whole flow state lives in one AuthState value and only moves along
_TRANSITIONS. Disconnects are debounced because wallet providers briefly report
"disconnected" while their signing prompt is open.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from .. import config
from ..errors import ApiError, InvalidTransitionError, RequestCancelledError
from ..models.api_models import RequestConfig
from ..models.auth_models import (
    AuthEvent,
    AuthPhase,
    AuthState,
    ConnectWalletRequest,
    Nonce,
    NonceRequest,
    NonceResponse,
    SignatureOutcome,
    SignatureResult,
    WalletConnectionEvent,
)
from ..response_cache import ResponseCache, get_default_cache
from ..session_store import SessionStore
from ..timers import AsyncioTimer, Timer, TimerHandle
from .fetch_controller import MutationController
from .transport import Transport
from .wallet import WalletProvider

logger = logging.getLogger(__name__)

# (level, message) -> None; levels are "success" and "error"
Notifier = Callable[[str, str], None]

SIGNATURE_FAILED_NOTICE = "Could not sign the authentication message. Please reconnect your wallet and try again."
AUTH_SUCCESS_NOTICE = "Wallet connected."

_TRANSITIONS: Dict[Tuple[AuthPhase, AuthEvent], AuthPhase] = {
    (AuthPhase.IDLE, AuthEvent.START): AuthPhase.AWAITING_NONCE,
    (AuthPhase.AWAITING_NONCE, AuthEvent.NONCE_RECEIVED): AuthPhase.AWAITING_SIGNATURE,
    (AuthPhase.AWAITING_SIGNATURE, AuthEvent.SIGNATURE_OBTAINED): AuthPhase.AWAITING_VERIFICATION,
    (AuthPhase.AWAITING_VERIFICATION, AuthEvent.VERIFIED): AuthPhase.IDLE,
    (AuthPhase.AWAITING_SIGNATURE, AuthEvent.SIGNATURE_REJECTED): AuthPhase.IDLE,
    (AuthPhase.AWAITING_SIGNATURE, AuthEvent.SIGNATURE_FAILED): AuthPhase.IDLE,
    (AuthPhase.AWAITING_NONCE, AuthEvent.COOLDOWN_ELAPSED): AuthPhase.IDLE,
    (AuthPhase.AWAITING_VERIFICATION, AuthEvent.COOLDOWN_ELAPSED): AuthPhase.IDLE,
    **{(phase, AuthEvent.DISCONNECTED): AuthPhase.IDLE for phase in AuthPhase},
}


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    # Providers report the same account in checksum or lower case
    return a is not None and b is not None and a.lower() == b.lower()


def _log_notice(level: str, message: str) -> None:
    if level == "error":
        logger.warning(f"[notice] {message}")
    else:
        logger.info(f"[notice] {message}")


class AuthStateMachine:
    """
    Drives nonce -> sign -> connect -> verify for the active wallet connection.

    At most one nonce request is issued per connection: `attempted` is set before
    the request goes out and is only cleared by a confirmed disconnect, a user
    cancellation, a technical signing failure or the post-error cooldown.
    """

    def __init__(
        self,
        transport: Transport,
        session_store: SessionStore,
        wallet: WalletProvider,
        *,
        cache: ResponseCache | None = None,
        timer: Timer | None = None,
        notifier: Notifier | None = None,
        on_disconnect: Callable[[], None] | None = None,
        disconnect_debounce: float | None = None,
        error_cooldown: float | None = None,
        auth_retries: int | None = None,
    ):
        self._session = session_store
        self._wallet = wallet
        self._cache = cache if cache is not None else get_default_cache()
        self._timer = timer or AsyncioTimer()
        self._notify = notifier or _log_notice
        self._on_disconnect = on_disconnect
        self._debounce = config.DISCONNECT_DEBOUNCE_SECONDS if disconnect_debounce is None else disconnect_debounce
        self._cooldown = config.AUTH_ERROR_COOLDOWN_SECONDS if error_cooldown is None else error_cooldown

        retries = config.AUTH_REQUEST_RETRIES if auth_retries is None else auth_retries
        auth_request = RequestConfig.for_method("POST", max_retries=retries)
        self._create_nonce = MutationController(transport, config.API_ENDPOINTS["CREATE_NONCE"], request_config=auth_request)
        self._connect_wallet = MutationController(transport, config.API_ENDPOINTS["CONNECT_WALLET"], request_config=auth_request)
        self._disconnect_wallet = MutationController(transport, config.API_ENDPOINTS["DISCONNECT_WALLET"])

        self._state = AuthState()
        self._flow_task: Optional[asyncio.Task] = None
        self._pending_reset: Optional[TimerHandle] = None
        # Set by logout(); the wallet disconnect it triggers is already handled
        self._logged_out = False
        self._closed = False

    # --- Read-only state ---

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def phase(self) -> AuthPhase:
        return self._state.phase

    @property
    def attempted(self) -> bool:
        return self._state.attempted

    @property
    def disconnect_pending(self) -> bool:
        return self._pending_reset is not None

    def _transition(self, event: AuthEvent, **changes) -> None:
        current = self._state.phase
        next_phase = _TRANSITIONS.get((current, event))
        if next_phase is None:
            raise InvalidTransitionError(current, event)
        self._state = self._state.model_copy(update={"phase": next_phase, **changes})
        logger.debug(f"Auth {current.value} --{event.value}--> {next_phase.value}")

    # --- Wallet connection events ---

    def handle_connection_event(self, event: WalletConnectionEvent) -> None:
        """
        Feeds a wallet provider connection change into the machine.

        Must be called from the running event loop; the login flow itself runs
        as a background task (see wait_for_flow()).
        """
        if self._closed:
            return
        if not event.is_connected or not event.address:
            if self._logged_out:
                logger.debug("Ignoring wallet disconnect after explicit logout")
                return
            self._schedule_disconnect_reset()
            return
        self._logged_out = False

        if self._pending_reset is not None:
            self._cancel_pending_reset()
            if _same_address(event.address, self._state.address):
                logger.info(f"Wallet {event.address} reconnected within debounce window; keeping auth attempt")
            else:
                logger.info(f"Wallet switched to {event.address} during disconnect window; resetting")
                self._reset()
        elif self._state.address is not None and not _same_address(event.address, self._state.address):
            logger.info(f"Wallet account changed from {self._state.address} to {event.address}; resetting")
            self._reset()

        self._evaluate(event.address)

    def _evaluate(self, address: str) -> None:
        if self._state.attempted:
            logger.debug(f"Authentication already attempted for {address}; ignoring connection event")
            return
        if self._is_authenticated_as(address):
            self._state = self._state.model_copy(update={"address": address})
            return

        logger.info(f"Wallet connected with address: {address}. Starting authentication...")
        self._transition(AuthEvent.START, address=address, attempted=True, nonce=None)
        self._flow_task = asyncio.get_running_loop().create_task(self._run_flow(address))
        self._flow_task.add_done_callback(self._on_flow_done)

    def _is_authenticated_as(self, address: str) -> bool:
        user = self._session.user
        return (
            self._session.is_authenticated
            and user is not None
            and _same_address(user.address, address)
        )

    def _schedule_disconnect_reset(self) -> None:
        if self._pending_reset is not None:
            return
        logger.debug(f"Wallet reported disconnected; waiting {self._debounce}s before resetting")
        self._pending_reset = self._timer.call_later(self._debounce, self._on_disconnect_confirmed)

    def _cancel_pending_reset(self) -> None:
        if self._pending_reset is not None:
            self._pending_reset.cancel()
            self._pending_reset = None

    def _on_disconnect_confirmed(self) -> None:
        self._pending_reset = None
        logger.info("Wallet disconnect confirmed; resetting authentication state")
        self._reset()
        if self._on_disconnect:
            self._on_disconnect()

    def _reset(self) -> None:
        self._cancel_flow()
        self._transition(AuthEvent.DISCONNECTED, address=None, attempted=False, nonce=None)

    def _cancel_flow(self) -> None:
        task = self._flow_task
        self._flow_task = None
        if task is not None and not task.done():
            task.cancel()

    def _on_flow_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Authentication flow crashed: {exc!r}", exc_info=exc)

    async def wait_for_flow(self) -> None:
        """Waits for the current login flow task (if any) to finish."""
        task = self._flow_task
        if task is None:
            return
        await asyncio.wait({task})
        if not task.cancelled():
            task.result()

    # --- The login flow ---

    async def _run_flow(self, address: str) -> None:
        try:
            nonce = await self._request_nonce(address)
            if nonce is None:
                return
            self._transition(AuthEvent.NONCE_RECEIVED, nonce=nonce)

            result = await self._sign(nonce)
            if result.kind == SignatureOutcome.CANCELLED:
                logger.info(f"User cancelled the signature request for {address}")
                self._transition(AuthEvent.SIGNATURE_REJECTED, attempted=False, nonce=None)
                return
            if result.kind == SignatureOutcome.FAILED:
                await self._fail_signature(address, result)
                return
            self._transition(AuthEvent.SIGNATURE_OBTAINED, nonce=None)

            if not await self._submit_signature(address, result.signature, nonce):
                return

            # The connect payload may be partial; the session must mirror /user
            await self._session.verify_session()
            if not self._is_authenticated_as(address):
                logger.error(f"Backend accepted the signature but /user does not confirm {address}")
                self._notify("error", "We could not confirm your session. Please try again.")
                await self._cooldown_then_reset()
                return

            self._transition(AuthEvent.VERIFIED)
            logger.info(f"Authentication successful for {address}")
            self._notify("success", AUTH_SUCCESS_NOTICE)
        except asyncio.CancelledError:
            logger.debug(f"Authentication flow for {address} cancelled")
            raise

    async def _request_nonce(self, address: str) -> Optional[Nonce]:
        try:
            data = await self._create_nonce.mutate(NonceRequest(address=address))
            nonce = NonceResponse.model_validate(data).nonce
        except RequestCancelledError:
            return None
        except ApiError as e:
            logger.error(f"Failed to create nonce for {address}: {e!r}")
            self._notify("error", e.user_message)
            await self._cooldown_then_reset()
            return None
        except ValidationError as e:
            logger.error(f"Malformed nonce response for {address}: {e}")
            self._notify("error", "Unexpected response from the server. Please try again.")
            await self._cooldown_then_reset()
            return None
        logger.info(f"Nonce received for {address}")
        return Nonce(value=nonce)

    async def _sign(self, nonce: Nonce) -> SignatureResult:
        logger.info("Requesting signature for nonce...")
        try:
            return await self._wallet.sign_message(nonce.value)
        except Exception as e:
            # Adapters should return a SignatureResult; classify anything that escaped
            result = SignatureResult.from_exception(e)
            logger.warning(f"Wallet raised {type(e).__name__} while signing; classified as {result.kind.value}")
            return result

    async def _fail_signature(self, address: str, result: SignatureResult) -> None:
        logger.error(f"Failed to sign message for {address}: {result.detail}")
        self._session.clear_auth()
        self._transition(AuthEvent.SIGNATURE_FAILED, attempted=False, nonce=None)
        self._notify("error", SIGNATURE_FAILED_NOTICE)
        await self._force_wallet_disconnect()

    async def _submit_signature(self, address: str, signature: str, nonce: Nonce) -> bool:
        request = ConnectWalletRequest(address=address, signature=signature, message=nonce.value)
        try:
            await self._connect_wallet.mutate(request)
        except RequestCancelledError:
            return False
        except ApiError as e:
            logger.error(f"Failed to connect wallet {address}: {e!r}")
            self._notify("error", e.user_message)
            await self._cooldown_then_reset()
            return False
        logger.info(f"Signature accepted for {address}. Verifying session...")
        return True

    async def _cooldown_then_reset(self) -> None:
        await self._timer.sleep(self._cooldown)
        self._transition(AuthEvent.COOLDOWN_ELAPSED, attempted=False, nonce=None)
        logger.info(f"Authentication reset after {self._cooldown}s cooldown; waiting for next connection evaluation")

    async def _force_wallet_disconnect(self) -> None:
        try:
            await self._wallet.disconnect()
        except Exception as e:
            logger.error(f"Wallet disconnect failed: {e}", exc_info=True)

    # --- Explicit logout ---

    async def logout(self) -> None:
        """
        Ends the session: tells the backend, then always clears local state.

        Local cleanup runs even when /disconnect-wallet fails.
        """
        self._cancel_pending_reset()
        self._cancel_flow()
        try:
            await self._disconnect_wallet.mutate({})
            logger.info("Backend session cleared")
        except ApiError as e:
            logger.warning(f"disconnect-wallet failed, clearing local session anyway: {e!r}")
        finally:
            self._cache.clear()
            self._session.clear_auth()
            self._transition(AuthEvent.DISCONNECTED, address=None, attempted=False, nonce=None)
            self._logged_out = True
            await self._force_wallet_disconnect()
            self._cancel_pending_reset()
            if self._on_disconnect:
                self._on_disconnect()

    async def close(self) -> None:
        """Teardown: cancels timers and the running flow; no further updates."""
        self._closed = True
        self._cancel_pending_reset()
        task = self._flow_task
        self._cancel_flow()
        if task is not None:
            await asyncio.wait({task})
        for controller in (self._create_nonce, self._connect_wallet, self._disconnect_wallet):
            controller.close()
