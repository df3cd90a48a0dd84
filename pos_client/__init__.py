"""
Python client for the pharmacy POS API, with the session heartbeat the
server's inactivity timeout expects.
"""
from .client import ApiClient
from .exceptions import (
    ApiError, SessionExpired, AuthenticationError, ValidationError,
    ServerError, NetworkError,
)
from .session import InactivityTracker, LogoutCoordinator
from .storage import FileStorage, MemoryStorage

__all__ = [
    'ApiClient',
    'ApiError',
    'SessionExpired',
    'AuthenticationError',
    'ValidationError',
    'ServerError',
    'NetworkError',
    'InactivityTracker',
    'LogoutCoordinator',
    'FileStorage',
    'MemoryStorage',
]
