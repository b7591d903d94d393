import logging
from typing import Optional, Protocol

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from ..models.auth_models import SignatureResult

logger = logging.getLogger(__name__)


class WalletProvider(Protocol):
    """
    Boundary to the user's wallet.

    sign_message() reports user cancellation and technical failure as distinct
    SignatureResult kinds instead of raising.
    """

    @property
    def address(self) -> Optional[str]: ...

    async def sign_message(self, message: str) -> SignatureResult: ...

    async def disconnect(self) -> None: ...


class LocalAccountWallet:
    """Signs EIP-191 personal messages with a locally held private key."""

    def __init__(self, private_key: str):
        try:
            self._account = Account.from_key(private_key)
        except ValueError as e:
            logger.error(f"Invalid wallet private key: {e}")
            raise
        self.connected = True
        logger.info(f"Local wallet loaded. Address: {self._account.address}")

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self.connected else None

    async def sign_message(self, message: str) -> SignatureResult:
        if not self.connected:
            return SignatureResult.failed("Wallet is not connected")
        try:
            signed = self._account.sign_message(encode_defunct(text=message))
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to sign message with local wallet: {e}", exc_info=True)
            return SignatureResult.failed(str(e))
        return SignatureResult.ok(Web3.to_hex(signed.signature))

    async def disconnect(self) -> None:
        if self.connected:
            logger.info(f"Disconnecting local wallet {self._account.address}")
        self.connected = False

    async def reconnect(self) -> None:
        self.connected = True


def recover_signer(message: str, signature: str) -> str:
    """Returns the checksum address that produced `signature` over `message`."""
    address = Account.recover_message(encode_defunct(text=message), signature=signature)
    return Web3.to_checksum_address(address)
