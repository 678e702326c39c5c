"""
Email gateway client for identity emails (codes, invites, reset links).

Messages are rendered by the gateway from a template name and variables.
Requests are authenticated with an API key and an HMAC-SHA256 signature of
the exact JSON body.
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime

import requests

logger = logging.getLogger(__name__)


class EmailGatewayError(Exception):
    """Raised when email gateway request fails."""


class EmailGatewayClient:
    """Send templated emails via HTTP gateway with HMAC signature verification."""

    def __init__(self, gateway_url: str, api_key: str, hmac_secret: str, timeout: int = 10):
        """
        Args:
            gateway_url: Full URL to the email gateway endpoint
            api_key: API key for X-API-Key header
            hmac_secret: Secret for HMAC-SHA256 signature
            timeout: Request timeout in seconds

        Raises:
            ValueError: If any credential is empty
        """
        if not gateway_url:
            raise ValueError("gateway_url is required")
        if not api_key:
            raise ValueError("api_key is required")
        if not hmac_secret:
            raise ValueError("hmac_secret is required")

        self.gateway_url = gateway_url
        self.api_key = api_key
        self.hmac_secret = hmac_secret
        self.timeout = timeout

    def _sign_and_send(self, payload: dict) -> None:
        """
        Sign payload with HMAC and send to gateway.

        Raises:
            EmailGatewayError: On any failure
        """
        payload_json = json.dumps(payload, separators=(",", ":"))

        signature = hmac.new(
            self.hmac_secret.encode("utf-8"),
            payload_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        headers = {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "X-Signature": signature,
        }

        try:
            response = requests.post(
                self.gateway_url,
                data=payload_json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Email gateway connection failed: {e}")
            raise EmailGatewayError(f"Connection failed: {e}")

        try:
            response_data = response.json()
        except ValueError:
            logger.error(f"Email gateway returned invalid JSON (status {response.status_code})")
            raise EmailGatewayError("Invalid response from gateway")

        if response.status_code != 200 or not response_data.get("success"):
            error_msg = response_data.get("message", "Unknown error")
            logger.error(f"Email gateway error: {error_msg}")
            raise EmailGatewayError(f"Gateway error: {error_msg}")

    def send_template(self, template: str, email: str, variables: dict) -> None:
        """
        Send a templated email.

        Args:
            template: Gateway template name (e.g. "login_code")
            email: Recipient email address
            variables: Values substituted into the template

        Raises:
            EmailGatewayError: On any failure
        """
        payload = {
            "type": "template",
            "template": template,
            "email": email,
            "variables": variables,
            "sender": "auth",
        }
        self._sign_and_send(payload)
        logger.info(f"Email '{template}' sent")

    def send_login_code(self, email: str, code: str, expires_at: datetime) -> None:
        self.send_template(
            "login_code", email, {"code": code, "expires_at": expires_at.isoformat()}
        )

    def send_password_reset_code(
        self, email: str, code: str, reset_url: str, expires_at: datetime
    ) -> None:
        self.send_template(
            "password_reset_code",
            email,
            {"code": code, "reset_url": reset_url, "expires_at": expires_at.isoformat()},
        )

    def send_invite(
        self, email: str, recipient_name: str, invite_url: str, expires_at: datetime
    ) -> None:
        self.send_template(
            "user_invite",
            email,
            {
                "recipient_name": recipient_name,
                "invite_url": invite_url,
                "expires_at": expires_at.isoformat(),
            },
        )

    def send_invite_code(self, email: str, code: str, expires_at: datetime) -> None:
        self.send_template(
            "invite_code", email, {"code": code, "expires_at": expires_at.isoformat()}
        )

    def send_change_password_code(self, email: str, code: str, expires_at: datetime) -> None:
        self.send_template(
            "change_password_code", email, {"code": code, "expires_at": expires_at.isoformat()}
        )
