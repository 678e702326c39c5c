"""EmailSender backed by the signed HTTP email gateway."""

import asyncio
import logging
from datetime import datetime

from clients.email_client import EmailGatewayClient, EmailGatewayError
from identity.exceptions import EmailDeliveryError

logger = logging.getLogger(__name__)


class GatewayEmailSender:
    """
    Sends identity emails through EmailGatewayClient.

    The gateway client is blocking (requests), so each send runs in a worker
    thread. Gateway failures surface as EmailDeliveryError.
    """

    def __init__(self, gateway: EmailGatewayClient):
        self._gateway = gateway

    async def _send(self, send, *args) -> None:
        try:
            await asyncio.to_thread(send, *args)
        except EmailGatewayError as e:
            raise EmailDeliveryError(str(e)) from e

    async def send_login_two_factor_code(self, email: str, code: str, expires_at: datetime) -> None:
        await self._send(self._gateway.send_login_code, email, code, expires_at)

    async def send_forgot_password_code(
        self, email: str, code: str, reset_url: str, expires_at: datetime
    ) -> None:
        await self._send(self._gateway.send_password_reset_code, email, code, reset_url, expires_at)

    async def send_user_invite(
        self, email: str, recipient_name: str, invite_url: str, expires_at: datetime
    ) -> None:
        await self._send(self._gateway.send_invite, email, recipient_name, invite_url, expires_at)

    async def send_invite_otp(self, email: str, code: str, expires_at: datetime) -> None:
        await self._send(self._gateway.send_invite_code, email, code, expires_at)

    async def send_change_password_otp(self, email: str, code: str, expires_at: datetime) -> None:
        await self._send(self._gateway.send_change_password_code, email, code, expires_at)
