"""
Shared helpers for calling the hosted backend service over HTTP.
"""

from __future__ import annotations

from typing import Optional

import requests


class BackendServiceError(RuntimeError):
    """A call to the hosted auth or edge-function API returned an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def service_headers(api_key: str, bearer: Optional[str] = None) -> dict:
    return {
        "apikey": api_key,
        "Authorization": f"Bearer {bearer or api_key}",
        "Content-Type": "application/json",
    }


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason or "Unknown error"
    if isinstance(payload, dict):
        for key in ("msg", "message", "error_description", "error"):
            value = payload.get(key)
            if value:
                return str(value)
    return response.text or "Unknown error"


def raise_for_service_error(response: requests.Response) -> None:
    """Raise :class:`BackendServiceError` carrying the provider's message."""
    if response.ok:
        return
    raise BackendServiceError(_error_message(response), status_code=response.status_code)
