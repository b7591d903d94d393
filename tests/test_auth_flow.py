"""
Tests for the wallet authentication state machine.

Time is virtual: debounce, backoff and cooldown only elapse through timer.advance().
"""

import pytest

from wallet_client.errors import InvalidTransitionError
from wallet_client.models.auth_models import (
    AuthEvent,
    AuthPhase,
    SignatureResult,
    UserRecord,
    WalletConnectionEvent,
)
from wallet_client.services.auth_flow import SIGNATURE_FAILED_NOTICE, AuthStateMachine, _TRANSITIONS

from support import FakeWallet, RecordingNotifier, settle

ADDRESS = "0xAAA"
CONNECTED = WalletConnectionEvent(address=ADDRESS, is_connected=True)
DISCONNECTED = WalletConnectionEvent(address=None, is_connected=False)


@pytest.fixture
def wallet():
    return FakeWallet(ADDRESS)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def disconnects():
    return []


@pytest.fixture
async def machine(transport, session_store, wallet, cache, timer, notifier, disconnects):
    auth = AuthStateMachine(
        transport,
        session_store,
        wallet,
        cache=cache,
        timer=timer,
        notifier=notifier,
        on_disconnect=lambda: disconnects.append(True),
        disconnect_debounce=3,
        error_cooldown=3,
        auth_retries=2,
    )
    yield auth
    await auth.close()


@pytest.fixture(autouse=True)
def happy_backend(backend):
    backend.on("POST", "/create-nonce", (200, {"nonce": "n1"}))
    backend.on("POST", "/connect-wallet", (200, {"message": "Wallet connected"}))
    backend.on("GET", "/user", (200, {"user": {"id": "u1", "address": ADDRESS}}))
    backend.on("POST", "/disconnect-wallet", (200, {"message": "Wallet disconnected"}))


# ============================================
# Happy path (scenario A)
# ============================================

class TestLogin:

    async def test_full_login(self, machine, backend, wallet, session_store, notifier):
        machine.handle_connection_event(CONNECTED)
        assert machine.phase == AuthPhase.AWAITING_NONCE

        await machine.wait_for_flow()

        assert backend.json_bodies("POST", "/create-nonce") == [{"address": ADDRESS}]
        assert wallet.sign_calls == ["n1"]
        assert backend.json_bodies("POST", "/connect-wallet") == [
            {"address": ADDRESS, "signature": "0xsig", "message": "n1"}
        ]
        assert session_store.is_authenticated is True
        assert session_store.user.address == ADDRESS
        assert machine.phase == AuthPhase.IDLE
        assert machine.state.nonce is None
        assert notifier.levels() == ["success"]

    async def test_session_comes_from_user_endpoint(self, machine, backend, session_store):
        backend.on("POST", "/connect-wallet", (200, {"message": "ok", "user": {"address": "0xPARTIAL"}}))

        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()

        assert backend.count("GET", "/user") == 1
        assert session_store.user.id == "u1"

    async def test_one_nonce_request_per_connection(self, machine, backend):
        machine.handle_connection_event(CONNECTED)
        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()
        machine.handle_connection_event(CONNECTED)
        await settle()

        assert backend.count("POST", "/create-nonce") == 1

    async def test_already_authenticated_wallet_skips_flow(self, machine, backend, session_store):
        session_store.set_authenticated(UserRecord(address=ADDRESS.lower()))

        machine.handle_connection_event(CONNECTED)
        await settle()

        assert backend.count("POST", "/create-nonce") == 0
        assert machine.phase == AuthPhase.IDLE

    async def test_account_switch_restarts_flow(self, machine, backend, wallet):
        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()

        machine.handle_connection_event(WalletConnectionEvent(address="0xBBB", is_connected=True))
        await settle()

        assert backend.json_bodies("POST", "/create-nonce")[-1] == {"address": "0xBBB"}
        assert machine.state.address == "0xBBB"


# ============================================
# Signature outcomes (scenario B, classification)
# ============================================

class TestSignatureOutcomes:

    async def test_user_rejection_resets_quietly(self, machine, backend, wallet, session_store, notifier):
        wallet.result = SignatureResult.cancelled("User rejected the request.")

        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()

        assert machine.phase == AuthPhase.IDLE
        assert machine.attempted is False
        assert backend.count("POST", "/connect-wallet") == 0
        assert session_store.is_authenticated is False
        assert wallet.disconnected is False
        assert notifier.notices == []

    async def test_rejection_text_is_case_insensitive(self, machine, backend, wallet, notifier):
        wallet.raises = Exception("MetaMask Tx Signature: USER REJECTED transaction signature.")

        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()

        assert machine.attempted is False
        assert wallet.disconnected is False
        assert backend.count("POST", "/connect-wallet") == 0
        assert notifier.notices == []

    async def test_technical_failure_clears_session_and_disconnects(self, machine, backend, wallet, session_store, notifier):
        session_store.set_authenticated(UserRecord(address="0xOLD"))
        wallet.raises = RuntimeError("Ledger device is locked")

        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()

        assert machine.phase == AuthPhase.IDLE
        assert machine.attempted is False
        assert session_store.is_authenticated is False
        assert wallet.disconnected is True
        assert backend.count("POST", "/connect-wallet") == 0
        assert notifier.notices == [("error", SIGNATURE_FAILED_NOTICE)]

    async def test_failed_result_takes_destructive_path(self, machine, wallet, session_store):
        wallet.result = SignatureResult.failed("chain mismatch")

        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()

        assert wallet.disconnected is True
        assert session_store.is_authenticated is False

    async def test_user_can_retry_after_rejection(self, machine, backend, wallet, session_store):
        wallet.result = SignatureResult.cancelled()
        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()

        wallet.result = SignatureResult.ok("0xsig")
        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()

        assert backend.count("POST", "/create-nonce") == 2
        assert session_store.is_authenticated is True


# ============================================
# Disconnect debounce
# ============================================

class TestDisconnectDebounce:

    async def test_reconnect_within_window_keeps_attempt(self, machine, backend, wallet, timer, session_store):
        gate = wallet.hold_signing()
        machine.handle_connection_event(CONNECTED)
        await settle()
        assert machine.phase == AuthPhase.AWAITING_SIGNATURE

        machine.handle_connection_event(DISCONNECTED)
        assert machine.disconnect_pending
        await timer.advance(2)
        machine.handle_connection_event(CONNECTED)
        await timer.advance(5)

        assert machine.attempted is True
        assert machine.phase == AuthPhase.AWAITING_SIGNATURE
        assert backend.count("POST", "/create-nonce") == 1

        gate.set_result(None)
        await machine.wait_for_flow()
        assert session_store.is_authenticated is True

    async def test_held_disconnect_resets(self, machine, backend, wallet, timer, disconnects):
        wallet.hold_signing()
        machine.handle_connection_event(CONNECTED)
        await settle()

        machine.handle_connection_event(DISCONNECTED)
        await timer.advance(2)
        assert machine.attempted is True

        await timer.advance(1)

        assert machine.phase == AuthPhase.IDLE
        assert machine.attempted is False
        assert machine.state.address is None
        assert disconnects == [True]

        wallet.gate = None
        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()
        assert backend.count("POST", "/create-nonce") == 2

    async def test_repeated_disconnect_events_schedule_one_reset(self, machine, timer, disconnects):
        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()

        machine.handle_connection_event(DISCONNECTED)
        await timer.advance(1)
        machine.handle_connection_event(DISCONNECTED)
        await timer.advance(2)

        assert disconnects == [True]

    async def test_reconnect_in_other_letter_case_keeps_attempt(self, machine, backend, wallet, timer):
        wallet.hold_signing()
        machine.handle_connection_event(WalletConnectionEvent(address="0xaaa", is_connected=True))
        await settle()

        machine.handle_connection_event(DISCONNECTED)
        await timer.advance(1)
        machine.handle_connection_event(WalletConnectionEvent(address="0xAAA", is_connected=True))
        await timer.advance(5)

        assert backend.count("POST", "/create-nonce") == 1
        assert machine.attempted is True
        assert machine.phase == AuthPhase.AWAITING_SIGNATURE

    async def test_letter_case_change_is_not_an_account_switch(self, machine, backend):
        machine.handle_connection_event(WalletConnectionEvent(address="0xaaa", is_connected=True))
        await machine.wait_for_flow()
        machine.handle_connection_event(WalletConnectionEvent(address="0xAAA", is_connected=True))
        await settle()

        assert backend.count("POST", "/create-nonce") == 1


# ============================================
# Network failures (scenario C)
# ============================================

class TestNetworkFailures:

    async def test_nonce_failure_cools_down_then_allows_retry(self, machine, backend, timer, notifier, session_store):
        backend.on("POST", "/create-nonce", (500, {"message": "Database unavailable"}))

        machine.handle_connection_event(CONNECTED)
        await timer.advance(0)
        assert backend.count("POST", "/create-nonce") == 1
        await timer.advance(1)
        assert backend.count("POST", "/create-nonce") == 2
        await timer.advance(2)
        assert backend.count("POST", "/create-nonce") == 3

        # Retries exhausted: cooling down, still guarded
        assert machine.phase == AuthPhase.AWAITING_NONCE
        assert machine.attempted is True
        assert notifier.notices == [("error", "Database unavailable")]
        machine.handle_connection_event(CONNECTED)
        await timer.advance(2)
        assert backend.count("POST", "/create-nonce") == 3

        await timer.advance(1)
        assert machine.phase == AuthPhase.IDLE
        assert machine.attempted is False
        assert timer.sleeps == [1.0, 2.0, 3]

        backend.on("POST", "/create-nonce", (200, {"nonce": "n2"}))
        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()

        assert backend.count("POST", "/create-nonce") == 4
        assert session_store.is_authenticated is True

    async def test_client_error_skips_retries_but_cools_down(self, machine, backend, timer):
        backend.on("POST", "/create-nonce", (400, {"message": "Invalid address"}))

        machine.handle_connection_event(CONNECTED)
        await timer.advance(3)

        assert backend.count("POST", "/create-nonce") == 1
        assert machine.phase == AuthPhase.IDLE
        assert machine.attempted is False

    async def test_connect_failure_cools_down_in_verification(self, machine, backend, timer, session_store):
        backend.on("POST", "/connect-wallet", (401, {"message": "Invalid signature"}))

        machine.handle_connection_event(CONNECTED)
        await timer.advance(0)

        assert machine.phase == AuthPhase.AWAITING_VERIFICATION
        assert backend.count("POST", "/connect-wallet") == 1

        await timer.advance(3)
        assert machine.phase == AuthPhase.IDLE
        assert machine.attempted is False
        assert session_store.is_authenticated is False

    async def test_unconfirmed_session_cools_down(self, machine, backend, timer, session_store, notifier):
        backend.on("GET", "/user", (200, {"user": None}))

        machine.handle_connection_event(CONNECTED)
        await timer.advance(0)
        assert machine.phase == AuthPhase.AWAITING_VERIFICATION

        await timer.advance(3)
        assert machine.phase == AuthPhase.IDLE
        assert session_store.is_authenticated is False
        assert notifier.levels() == ["error"]


# ============================================
# Logout and teardown
# ============================================

class TestLogout:

    async def test_logout_clears_everything(self, machine, backend, wallet, cache, session_store, disconnects):
        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()
        cache.set("user:tokens", ["t1"], ttl=60)

        await machine.logout()

        assert backend.count("POST", "/disconnect-wallet") == 1
        assert session_store.is_authenticated is False
        assert len(cache) == 0
        assert wallet.disconnected is True
        assert machine.phase == AuthPhase.IDLE
        assert machine.attempted is False
        assert disconnects == [True]

    async def test_logout_cleans_up_when_backend_fails(self, machine, backend, wallet, cache, session_store):
        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()
        cache.set("user:tokens", ["t1"], ttl=60)
        backend.on("POST", "/disconnect-wallet", (500, None))

        await machine.logout()

        assert backend.count("POST", "/disconnect-wallet") == 1
        assert session_store.is_authenticated is False
        assert len(cache) == 0
        assert wallet.disconnected is True

    async def test_wallet_disconnect_after_logout_is_reported_once(self, machine, backend, timer, disconnects):
        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()
        await machine.logout()

        machine.handle_connection_event(DISCONNECTED)
        await timer.advance(5)

        assert disconnects == [True]
        assert not machine.disconnect_pending

        machine.handle_connection_event(CONNECTED)
        await machine.wait_for_flow()
        assert backend.count("POST", "/create-nonce") == 2

    async def test_close_cancels_running_flow(self, machine, backend, wallet):
        wallet.hold_signing()
        machine.handle_connection_event(CONNECTED)
        await settle()

        await machine.close()
        machine.handle_connection_event(CONNECTED)
        await settle()

        assert backend.count("POST", "/create-nonce") == 1
        assert backend.count("POST", "/connect-wallet") == 0


class TestTransitionTable:

    def test_every_phase_can_disconnect(self):
        for phase in AuthPhase:
            assert _TRANSITIONS[(phase, AuthEvent.DISCONNECTED)] == AuthPhase.IDLE

    def test_signing_only_from_awaiting_signature(self):
        sources = {phase for (phase, event) in _TRANSITIONS if event == AuthEvent.SIGNATURE_OBTAINED}
        assert sources == {AuthPhase.AWAITING_SIGNATURE}

    async def test_illegal_transition_raises(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine._transition(AuthEvent.VERIFIED)
