from __future__ import annotations

from collections.abc import Mapping

REDACTED = "***REDACTED***"


_SENSITIVE_HEADER_NAMES = {
    "authorization",
    "proxy-authorization",
    "x-api-key",
    "cookie",
    "set-cookie",
}

_SENSITIVE_KEYWORDS = ("key", "token", "secret", "auth", "cookie")


def _is_sensitive(name: str) -> bool:
    lower_name = name.lower()
    if lower_name in _SENSITIVE_HEADER_NAMES:
        return True
    return any(word in lower_name for word in _SENSITIVE_KEYWORDS)


def sanitize_headers_for_log(
    headers: Mapping[str, str], *, mask_token: str = REDACTED
) -> dict[str, str]:
    """
    Mask credentials in request headers before they are written to the log.

    Headers with a known sensitive name (authorization / cookie ...) or whose
    name contains a sensitive keyword are masked; everything else is kept for
    troubleshooting.
    """
    return {
        name: (mask_token if _is_sensitive(name) else value)
        for name, value in headers.items()
    }


def sanitize_query_for_log(
    params: Mapping[str, str], *, mask_token: str = REDACTED
) -> dict[str, str]:
    """
    Same as sanitize_headers_for_log for query parameters.

    The WebSocket handshake carries its bearer credential as ``?token=``.
    """
    return {
        name: (mask_token if _is_sensitive(name) else value)
        for name, value in params.items()
    }


__all__ = ["REDACTED", "sanitize_headers_for_log", "sanitize_query_for_log"]
