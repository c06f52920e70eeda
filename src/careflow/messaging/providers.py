"""Delivery providers and the prioritized provider chain.

Every provider speaks the same small interface (:class:`MessageProvider`) so
transports are interchangeable per channel. Chains are built once at startup
from :class:`~careflow.core.config.EngineConfig`; there is no global registry.
"""
from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from careflow.core.config import EngineConfig
from careflow.core.constants import Channel
from careflow.core.exceptions import ProviderError
from careflow.core.types import ProviderResult

logger = structlog.get_logger(__name__)


class MessageProvider(ABC):
    """Base class for outbound message transports.

    Args:
        priority: Position in the channel's chain; lower is tried first.
        http_client: Optional shared :class:`httpx.AsyncClient`. When omitted
            a short-lived client is opened per send.
        timeout: Request timeout in seconds.
    """

    name: str = "provider"
    channel: Channel = Channel.EMAIL

    def __init__(
        self,
        priority: int = 1,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self.priority = priority
        self._http_client = http_client
        self._timeout = timeout

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` when the provider has the credentials it needs."""

    @abstractmethod
    async def send_message(
        self, body: str, recipient: str, meta: dict[str, Any] | None = None
    ) -> ProviderResult:
        """Send one message.

        Raises:
            ProviderError: If the transport rejected the request.
        """

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        """POST with the shared client (or a temporary one) and check the status."""
        should_close = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient()
            should_close = True
        try:
            response = await client.post(url, timeout=self._timeout, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.name}: {exc}", code="PROVIDER_HTTP_ERROR") from exc
        finally:
            if should_close:
                await client.aclose()

        if response.status_code >= 400:  # noqa: PLR2004
            raise ProviderError(
                f"{self.name}: HTTP {response.status_code}",
                code="PROVIDER_REJECTED",
                details={"status": response.status_code, "body": response.text[:500]},
            )
        return response

    def __repr__(self) -> str:
        return f"{type(self).__name__}(priority={self.priority})"


# ---------------------------------------------------------------------------
# SMS
# ---------------------------------------------------------------------------


class TwilioSMSProvider(MessageProvider):
    """SMS through the Twilio REST API."""

    name = "twilio"
    channel = Channel.SMS
    BASE_URL = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: str | None,
        auth_token: str | None,
        from_number: str | None,
        *,
        max_message_length: int = 1600,
        priority: int = 1,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        super().__init__(priority=priority, http_client=http_client, timeout=timeout)
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._max_length = max_message_length

    def is_available(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    def _auth_header(self) -> str:
        creds = f"{self._account_sid}:{self._auth_token}"
        return f"Basic {base64.b64encode(creds.encode()).decode()}"

    async def send_message(
        self, body: str, recipient: str, meta: dict[str, Any] | None = None
    ) -> ProviderResult:
        response = await self._post(
            f"{self.BASE_URL}/Accounts/{self._account_sid}/Messages.json",
            headers={"Authorization": self._auth_header()},
            data={
                "To": recipient,
                "From": self._from_number or "",
                "Body": body[: self._max_length],
            },
        )
        data: dict[str, Any] = response.json()
        logger.info("sms_sent", provider=self.name, sid=data.get("sid", ""), status=data.get("status", ""))
        return ProviderResult(success=True, external_id=data.get("sid"))


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------


class _EmailProvider(MessageProvider):
    channel = Channel.EMAIL

    def __init__(
        self,
        api_key: str | None,
        from_email: str | None,
        *,
        priority: int = 1,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        super().__init__(priority=priority, http_client=http_client, timeout=timeout)
        self._api_key = api_key
        self._from_email = from_email

    def is_available(self) -> bool:
        return bool(self._api_key and self._from_email)

    @staticmethod
    def _subject(meta: dict[str, Any] | None) -> str:
        return str((meta or {}).get("subject") or "")


class SendGridEmailProvider(_EmailProvider):
    """Email through the SendGrid v3 mail API (managed-cloud primary)."""

    name = "sendgrid"
    URL = "https://api.sendgrid.com/v3/mail/send"

    async def send_message(
        self, body: str, recipient: str, meta: dict[str, Any] | None = None
    ) -> ProviderResult:
        response = await self._post(
            self.URL,
            headers={"Authorization": f"Bearer {self._api_key}"},
            json={
                "personalizations": [{"to": [{"email": recipient}]}],
                "from": {"email": self._from_email},
                "subject": self._subject(meta),
                "content": [{"type": "text/html", "value": body}],
            },
        )
        # SendGrid answers 202 with an empty body; the id travels in a header.
        return ProviderResult(success=True, external_id=response.headers.get("x-message-id"))


class ResendEmailProvider(_EmailProvider):
    """Email through the Resend API."""

    name = "resend"
    URL = "https://api.resend.com/emails"

    async def send_message(
        self, body: str, recipient: str, meta: dict[str, Any] | None = None
    ) -> ProviderResult:
        response = await self._post(
            self.URL,
            headers={"Authorization": f"Bearer {self._api_key}"},
            json={
                "from": self._from_email,
                "to": [recipient],
                "subject": self._subject(meta),
                "html": body,
            },
        )
        data: dict[str, Any] = response.json()
        return ProviderResult(success=True, external_id=data.get("id"))


class MailchimpTransactionalProvider(_EmailProvider):
    """Email through Mailchimp Transactional (Mandrill)."""

    name = "mailchimp"
    URL = "https://mandrillapp.com/api/1.0/messages/send"

    async def send_message(
        self, body: str, recipient: str, meta: dict[str, Any] | None = None
    ) -> ProviderResult:
        response = await self._post(
            self.URL,
            json={
                "key": self._api_key,
                "message": {
                    "from_email": self._from_email,
                    "subject": self._subject(meta),
                    "html": body,
                    "to": [{"email": recipient, "type": "to"}],
                },
            },
        )
        results: list[dict[str, Any]] = response.json() or [{}]
        first = results[0]
        status = first.get("status", "")
        if status in ("rejected", "invalid"):
            return ProviderResult(
                success=False,
                external_id=first.get("_id"),
                error=f"{status}: {first.get('reject_reason') or 'unknown'}",
            )
        return ProviderResult(success=True, external_id=first.get("_id"))


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------


class ProviderChain:
    """Providers for one channel, tried in ascending priority order."""

    def __init__(self, channel: Channel, providers: list[MessageProvider] | None = None) -> None:
        self.channel = channel
        self._providers: list[MessageProvider] = []
        for provider in providers or []:
            self.add(provider)

    def add(self, provider: MessageProvider) -> None:
        if provider.channel != self.channel:
            raise ValueError(
                f"Provider {provider.name} serves {provider.channel}, not {self.channel}"
            )
        self._providers.append(provider)
        # sort is stable, so equal priorities keep insertion order
        self._providers.sort(key=lambda p: p.priority)

    @property
    def providers(self) -> list[MessageProvider]:
        return list(self._providers)

    def __len__(self) -> int:
        return len(self._providers)


def build_provider_chains(
    config: EngineConfig, http_client: httpx.AsyncClient | None = None
) -> dict[Channel, ProviderChain]:
    """Construct the SMS and email chains from configuration."""
    timeout = config.http_timeout_seconds
    twilio = config.twilio
    sms = ProviderChain(
        Channel.SMS,
        [
            TwilioSMSProvider(
                twilio.account_sid,
                twilio.auth_token,
                twilio.from_number,
                max_message_length=twilio.max_message_length,
                http_client=http_client,
                timeout=timeout,
            )
        ],
    )

    email = ProviderChain(Channel.EMAIL)
    for cls, settings in (
        (SendGridEmailProvider, config.sendgrid),
        (ResendEmailProvider, config.resend),
        (MailchimpTransactionalProvider, config.mailchimp),
    ):
        email.add(
            cls(
                settings.api_key,
                settings.from_email or config.default_from_email,
                priority=settings.priority,
                http_client=http_client,
                timeout=timeout,
            )
        )

    logger.info(
        "provider_chains_built",
        sms=[p.name for p in sms.providers if p.is_available()],
        email=[p.name for p in email.providers if p.is_available()],
    )
    return {Channel.SMS: sms, Channel.EMAIL: email}
