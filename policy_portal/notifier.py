"""
Welcome-email delivery through the hosted edge function.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import requests

from policy_portal.service_http import service_headers

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send_welcome_email(self, *, email: str, name: str, temp_password: str) -> bool:
        """Return True when the provider confirms delivery."""
        ...


@dataclass
class InMemoryNotifier:
    """Records messages instead of sending them."""

    succeed: bool = True
    sent: list[dict] = field(default_factory=list)

    def send_welcome_email(self, *, email: str, name: str, temp_password: str) -> bool:
        self.sent.append(
            {"email": email, "name": name, "temp_password": temp_password}
        )
        return self.succeed


@dataclass
class EdgeFunctionNotifier:
    """
    Invokes the ``send-welcome-email`` edge function, which answers
    ``{"success": true, ...}`` once the mail provider accepts the message.
    Transport errors propagate to the caller.
    """

    base_url: str
    service_role_key: str
    function_name: str = "send-welcome-email"
    timeout: int = 30

    def send_welcome_email(self, *, email: str, name: str, temp_password: str) -> bool:
        response = requests.post(
            f"{self.base_url.rstrip('/')}/functions/v1/{self.function_name}",
            json={"email": email, "nombre": name, "tempPassword": temp_password},
            headers=service_headers(self.service_role_key),
            timeout=self.timeout,
        )
        if not response.ok:
            logger.error(
                "Edge function %s returned %s: %s",
                self.function_name,
                response.status_code,
                response.text,
            )
            return False
        try:
            payload = response.json()
        except ValueError:
            logger.error("Edge function %s returned non-JSON body", self.function_name)
            return False
        return bool(isinstance(payload, dict) and payload.get("success"))
