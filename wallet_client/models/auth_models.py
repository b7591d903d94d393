from pydantic import BaseModel, ConfigDict, Field
from typing import Any, List, Optional
from enum import Enum


class NonceRequest(BaseModel):
    address: str = Field(..., description="Wallet address requesting a challenge.")


class NonceResponse(BaseModel):
    nonce: str = Field(..., description="Single-use challenge issued by the backend.")


class ConnectWalletRequest(BaseModel):
    address: str
    signature: str = Field(..., description="Signature produced by the user's wallet.")
    message: str = Field(..., description="The signed message; the nonce exactly as issued.")


class ConnectWalletResponse(BaseModel):
    message: str


class Nonce(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str


class WalletConnectionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: Optional[str] = None
    is_connected: bool = False


class Social(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    type: str
    username: str
    account_id: Optional[str] = Field(None, alias="accountId")
    created_at: Optional[str] = Field(None, alias="createdAt")


class UserRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    address: str
    role: str = "user"
    name: Optional[str] = None
    username: Optional[str] = None
    socials: List[Social] = []
    last_login: Optional[str] = Field(None, alias="lastLogin")
    created_at: Optional[str] = Field(None, alias="createdAt")


class GetUserResponse(BaseModel):
    # A missing user means "not authenticated", not an error
    user: Optional[UserRecord] = None


class Session(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    user: Optional[UserRecord] = None
    is_authenticated: bool = False
    is_loading: bool = False
    error: Optional[Any] = None


class PersistedSession(BaseModel):
    """The part of a Session that survives a restart."""

    model_config = ConfigDict(populate_by_name=True)

    user: Optional[UserRecord] = None
    is_authenticated: bool = Field(False, alias="isAuthenticated")


# --- Authentication state ---

class AuthPhase(str, Enum):
    IDLE = "IDLE"
    AWAITING_NONCE = "AWAITING_NONCE"
    AWAITING_SIGNATURE = "AWAITING_SIGNATURE"
    AWAITING_VERIFICATION = "AWAITING_VERIFICATION"


class AuthEvent(str, Enum):
    START = "START"
    NONCE_RECEIVED = "NONCE_RECEIVED"
    SIGNATURE_OBTAINED = "SIGNATURE_OBTAINED"
    VERIFIED = "VERIFIED"
    DISCONNECTED = "DISCONNECTED"
    SIGNATURE_REJECTED = "SIGNATURE_REJECTED"
    SIGNATURE_FAILED = "SIGNATURE_FAILED"
    COOLDOWN_ELAPSED = "COOLDOWN_ELAPSED"


class AuthState(BaseModel):
    """The whole machine state for the active wallet connection."""

    model_config = ConfigDict(frozen=True)

    phase: AuthPhase = AuthPhase.IDLE
    address: Optional[str] = None
    attempted: bool = False
    nonce: Optional[Nonce] = None


# --- Wallet signing boundary ---

class SignatureOutcome(str, Enum):
    OK = "OK"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


# Lower-cased fragments wallets use when the user dismisses a signing prompt
USER_CANCELLATION_MARKERS = (
    "user rejected",
    "user denied",
    "user cancelled",
    "user canceled",
    "rejected the request",
    "userrejectedrequesterror",
    "action_rejected",
)

# EIP-1193 provider error code for "User Rejected Request"
USER_REJECTED_CODE = 4001


class SignatureResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: SignatureOutcome
    signature: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def ok(cls, signature: str) -> "SignatureResult":
        return cls(kind=SignatureOutcome.OK, signature=signature)

    @classmethod
    def cancelled(cls, detail: str | None = None) -> "SignatureResult":
        return cls(kind=SignatureOutcome.CANCELLED, detail=detail)

    @classmethod
    def failed(cls, detail: str | None = None) -> "SignatureResult":
        return cls(kind=SignatureOutcome.FAILED, detail=detail)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "SignatureResult":
        """Classifies a wallet error as a user cancellation or a technical failure."""
        detail = str(exc) or type(exc).__name__
        if getattr(exc, "code", None) == USER_REJECTED_CODE:
            return cls.cancelled(detail)
        haystack = f"{type(exc).__name__} {exc}".lower()
        if any(marker in haystack for marker in USER_CANCELLATION_MARKERS):
            return cls.cancelled(detail)
        return cls.failed(detail)
