"""
Outbound SMS and email transports.

Each channel has a small provider protocol (``send`` returning a result
object) and a service on top that normalizes recipients and renders the
message templates.  Providers:

* ``ConsoleSmsProvider`` / ``ConsoleEmailProvider`` -- log the message and
  report success.  Used in development and wherever no provider is set.
* ``TwilioSmsProvider`` -- posts to the Twilio Messages REST endpoint with
  ``httpx``.

Delivery is best-effort.  Services never raise for a failed delivery:
provider errors come back as ``success=False`` with an ``error`` string, and
the caller decides whether to log it.
"""

from __future__ import annotations

import logging
import re
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel

from safeshift.config import SmsConfig
from safeshift.errors import TransportError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class SmsResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# SMS providers
# ---------------------------------------------------------------------------

class SmsProvider(Protocol):
    async def send(self, to: str, message: str) -> SmsResult: ...


class ConsoleSmsProvider:
    """Logs each message instead of sending it."""

    def __init__(self) -> None:
        self._counter = 0

    async def send(self, to: str, message: str) -> SmsResult:
        self._counter += 1
        logger.info("SMS to %s:\n%s", to, message)
        return SmsResult(success=True, message_id=f"console-sms-{self._counter}")


class TwilioSmsProvider:
    """Sends SMS through the Twilio Messages API.

    Missing credentials do not fail construction; every send then reports
    ``success=False`` so a misconfigured deployment degrades to in-app
    notifications only.
    """

    def __init__(
        self,
        config: SmsConfig,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._client = client
        self.configured = bool(
            config.account_sid and config.auth_token and config.from_number
        )
        if not self.configured:
            logger.warning("Twilio credentials not configured. SMS will not be sent.")

    @property
    def messages_url(self) -> str:
        base = self._config.api_base_url.rstrip("/")
        return f"{base}/2010-04-01/Accounts/{self._config.account_sid}/Messages.json"

    async def send(self, to: str, message: str) -> SmsResult:
        if not self.configured:
            return SmsResult(success=False, error="Twilio client not initialized")
        try:
            sid = await self._post(to, message)
        except TransportError as exc:
            logger.error("Failed to send SMS to %s: %s", to, exc)
            return SmsResult(success=False, error=str(exc))
        logger.info("SMS sent to %s: %s", to, sid)
        return SmsResult(success=True, message_id=sid)

    async def _post(self, to: str, message: str) -> str:
        data = {"To": to, "From": self._config.from_number, "Body": message}
        auth = (self._config.account_sid, self._config.auth_token)
        try:
            if self._client is not None:
                response = await self._client.post(self.messages_url, data=data, auth=auth)
            else:
                async with httpx.AsyncClient(timeout=self._config.timeout_seconds) as client:
                    response = await client.post(self.messages_url, data=data, auth=auth)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(
                f"Twilio returned {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Twilio request failed: {exc}") from exc

        try:
            return response.json()["sid"]
        except (ValueError, KeyError) as exc:
            raise TransportError("Twilio response did not contain a message sid") from exc


def create_sms_provider(config: SmsConfig) -> SmsProvider:
    if config.provider == "twilio":
        return TwilioSmsProvider(config)
    return ConsoleSmsProvider()


# ---------------------------------------------------------------------------
# Phone numbers
# ---------------------------------------------------------------------------

_NON_DIAL_CHARS = re.compile(r"[^\d+]")


def normalize_phone_number(phone: str) -> Optional[str]:
    """Normalize to an E.164-like ``+<digits>`` form.

    Unprefixed 10-digit numbers are taken as North American (+1); an
    unprefixed 11-digit number starting with 1 just gains the ``+``.
    Returns None for anything else that cannot be made valid.
    """
    if not phone:
        return None

    normalized = _NON_DIAL_CHARS.sub("", phone)
    if not normalized.startswith("+"):
        if len(normalized) == 11 and normalized.startswith("1"):
            normalized = "+" + normalized
        elif len(normalized) == 10:
            normalized = "+1" + normalized
        else:
            return None

    digits = re.sub(r"\D", "", normalized)
    if len(digits) < 10:
        return None
    return normalized


# ---------------------------------------------------------------------------
# SMS service
# ---------------------------------------------------------------------------

class SmsService:
    """Templated SMS sending on top of an ``SmsProvider``."""

    def __init__(self, provider: SmsProvider, app_name: str = "Safe on Shift") -> None:
        self.provider = provider
        self.app_name = app_name

    async def send(self, to: str, message: str) -> SmsResult:
        normalized = normalize_phone_number(to)
        if normalized is None:
            return SmsResult(success=False, error="Invalid phone number")
        return await self.provider.send(normalized, message)

    async def send_emergency_alert(
        self, to: str, worker_name: str, message: Optional[str] = None
    ) -> SmsResult:
        text = (
            f"EMERGENCY ALERT - {self.app_name}\n\n"
            f"{worker_name} has triggered an emergency alert.\n\n"
            + (f"Message: {message}\n\n" if message else "")
            + "Please respond immediately."
        )
        return await self.send(to, text)

    async def send_missed_check_in_alert(self, to: str, worker_name: str) -> SmsResult:
        text = (
            f"MISSED CHECK-IN - {self.app_name}\n\n"
            f"{worker_name} has missed a scheduled check-in.\n\n"
            "Please attempt to contact them immediately."
        )
        return await self.send(to, text)

    async def send_alert_acknowledged(
        self, to: str, worker_name: str, acknowledger_name: str
    ) -> SmsResult:
        text = (
            f"Alert Acknowledged - {self.app_name}\n\n"
            f"The alert for {worker_name} has been acknowledged by {acknowledger_name}."
        )
        return await self.send(to, text)

    async def send_alert_resolved(self, to: str, worker_name: str) -> SmsResult:
        text = (
            f"Alert Resolved - {self.app_name}\n\n"
            f"The alert for {worker_name} has been resolved."
        )
        return await self.send(to, text)


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------

class EmailProvider(Protocol):
    async def send(
        self,
        to: str,
        subject: str,
        text: str,
        html: Optional[str] = None,
        from_address: str = "",
    ) -> EmailResult: ...


class ConsoleEmailProvider:
    """Logs each email instead of sending it."""

    def __init__(self) -> None:
        self._counter = 0

    async def send(
        self,
        to: str,
        subject: str,
        text: str,
        html: Optional[str] = None,
        from_address: str = "",
    ) -> EmailResult:
        self._counter += 1
        logger.info("Email from %s to %s | %s\n%s", from_address, to, subject, text)
        return EmailResult(success=True, message_id=f"console-email-{self._counter}")


class EmailService:
    """Email sending with the same result shape as ``SmsService``."""

    def __init__(
        self,
        provider: EmailProvider,
        from_address: str = "noreply@safeonshift.com",
        app_name: str = "Safe on Shift",
    ) -> None:
        self.provider = provider
        self.from_address = from_address
        self.app_name = app_name

    async def send(
        self, to: str, subject: str, text: str, html: Optional[str] = None
    ) -> EmailResult:
        if not to or "@" not in to:
            return EmailResult(success=False, error="Invalid email address")
        return await self.provider.send(
            to, subject, text, html=html, from_address=self.from_address
        )

    async def send_emergency_alert(
        self, to: str, worker_name: str, message: Optional[str] = None
    ) -> EmailResult:
        subject = f"[{self.app_name}] Emergency alert for {worker_name}"
        text = (
            f"{worker_name} has triggered an emergency alert.\n\n"
            + (f"Message: {message}\n\n" if message else "")
            + "Please respond immediately."
        )
        return await self.send(to, subject, text)

    async def send_missed_check_in_alert(self, to: str, worker_name: str) -> EmailResult:
        subject = f"[{self.app_name}] Missed check-in: {worker_name}"
        text = (
            f"{worker_name} has missed a scheduled check-in.\n\n"
            "Please attempt to contact them immediately."
        )
        return await self.send(to, subject, text)
