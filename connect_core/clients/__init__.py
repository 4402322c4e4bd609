"""Client modules for the authorization state service and authorization windows."""

from .authorization_window import (
    AuthorizationWindow,
    BrowserWindowOpener,
    WindowMonitor,
    WindowOpener,
)
from .state_client import AuthorizationStateClient, HttpStateClient, LocalStateClient

__all__ = [
    "AuthorizationWindow",
    "WindowOpener",
    "BrowserWindowOpener",
    "WindowMonitor",
    "AuthorizationStateClient",
    "HttpStateClient",
    "LocalStateClient",
]
