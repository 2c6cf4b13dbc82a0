"""REST access to the Picsta API (httpx)."""
from .client import ApiClient
from .errors import (
    ApiError,
    PicstaError,
    RequestTimeoutError,
    TransportError,
    UnknownMessageError,
)
from .services import ChatApi, MessageApi, NotificationApi, PicstaApi, PostApi, UserApi

__all__ = [
    "ApiClient",
    "ApiError",
    "PicstaError",
    "RequestTimeoutError",
    "TransportError",
    "UnknownMessageError",
    "ChatApi",
    "MessageApi",
    "NotificationApi",
    "PicstaApi",
    "PostApi",
    "UserApi",
]
