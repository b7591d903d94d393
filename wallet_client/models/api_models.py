from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Generic, Literal, Optional, TypeVar

from .. import config

T = TypeVar("T")

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]

# Verbs with side effects never retry unless asked to explicitly
MUTATING_METHODS = ("POST", "PUT", "PATCH", "DELETE")


class RequestConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    method: HttpMethod = "GET"
    timeout: float = Field(default_factory=lambda: config.API_TIMEOUT_SECONDS, gt=0, description="Seconds before the attempt is aborted.")
    max_retries: int = Field(default_factory=lambda: config.API_RETRIES, ge=0, description="Retries after the first attempt.")
    base_retry_delay: float = Field(default_factory=lambda: config.API_RETRY_DELAY_SECONDS, ge=0, description="Backoff base in seconds, doubled per retry.")
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None

    @classmethod
    def for_method(cls, method: str, **overrides: Any) -> "RequestConfig":
        """Builds a config with the verb's default retry policy, then applies overrides."""
        method = method.upper()
        values: Dict[str, Any] = {"method": method}
        if method in MUTATING_METHODS:
            values["max_retries"] = 0
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


class ResponseEnvelope(BaseModel, Generic[T]):
    """Every successful response is normalized into this shape."""

    data: Optional[T] = None
    success: bool = True
    message: Optional[str] = None


class MultipartForm(BaseModel):
    """Form fields plus files; sent as multipart/form-data with a transport-chosen boundary."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    fields: Dict[str, str] = Field(default_factory=dict)
    files: Dict[str, Any] = Field(default_factory=dict, description="name -> file object, bytes or (filename, content, content_type)")


class MessageResponse(BaseModel):
    message: str
