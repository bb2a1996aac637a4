from __future__ import annotations

import logging

HTTP_METHODS = {
    "get",
    "post",
    "put",
    "patch",
    "delete",
    "options",
    "head",
}

LOGGER = logging.getLogger("apiclient.http")
APP_VERSION = "0.1.0"

SKIP_AUTH_HEADER = "X-Skip-Auth"
DEFAULT_REFRESH_PATH = "/auth/refresh"
DEFAULT_AUTH_ENDPOINTS = (
    "/auth/login",
    "/auth/register",
    DEFAULT_REFRESH_PATH,
    "/accounts",
)
DEFAULT_TOKEN_TTL_SECONDS = 3600

EVENT_REQUEST_FORBIDDEN = "request-forbidden"
EVENT_RATE_LIMITED = "rate-limited"
EVENT_SERVER_ERROR = "server-error"
EVENT_SESSION_EXPIRED = "session-expired"
EVENT_TOKEN_REFRESHED = "token-refreshed"
