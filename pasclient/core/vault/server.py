"""Server information endpoints."""
from __future__ import annotations
from typing import Any, Dict

from .dispatcher import RequestDescriptor, RequestDispatcher

SERVER_PATH = "WebServices/PIMServices.svc/Server"
LOGGED_ON_USER_PATH = "api/LoggedOnUser"


def server_descriptor() -> RequestDescriptor:
    return RequestDescriptor("GET", SERVER_PATH, requires_auth=False, operation="get_server")


def get_server(dispatcher: RequestDispatcher) -> Dict[str, Any]:
    """Return server details (name, id, external version); no logon needed."""
    return dispatcher.execute(server_descriptor()).body or {}


def get_logged_on_user(dispatcher: RequestDispatcher) -> Dict[str, Any]:
    """Return the vault user that owns the current session."""
    descriptor = RequestDescriptor(
        "GET",
        LOGGED_ON_USER_PATH,
        min_version="12.1",
        operation="get_logged_on_user",
    )
    return dispatcher.execute(descriptor).body or {}
