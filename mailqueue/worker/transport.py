"""
Mail transports.

A transport takes a fully built EmailMessage and delivers it. Failures are
classified for the retry policy: TransientError for anything that may
succeed later, PermanentError for requests the mail service rejects.
"""

import logging
from typing import Protocol

import httpx

from mailqueue.config import Settings, get_settings
from mailqueue.constants import MailTransportKind
from mailqueue.errors import PermanentError, TransientError
from mailqueue.types.job import EmailMessage

logger = logging.getLogger(__name__)

# Statuses worth retrying even though they are client errors
RETRYABLE_STATUS_CODES = frozenset({408, 429})


class MailTransport(Protocol):
    """Delivers email messages."""

    async def send(self, message: EmailMessage) -> None: ...

    async def aclose(self) -> None: ...


class LogMailTransport:
    """Writes messages to the log instead of delivering them."""

    async def send(self, message: EmailMessage) -> None:
        logger.info(
            "Email delivered to log",
            extra={
                "from": message.sender,
                "to": message.to,
                "subject": message.subject,
                "text": message.text,
            },
        )

    async def aclose(self) -> None:
        pass


class HttpMailTransport:
    """
    Delivers messages through an HTTP email API.

    Sends a JSON body of the form
    {"from": ..., "to": [...], "subject": ..., "text": ...}
    with a bearer token, as accepted by Resend-style APIs.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Args:
            api_url: Endpoint that accepts message submissions.
            api_key: Bearer token for the API.
            timeout: Request timeout in seconds.
            client: Optional preconfigured client, owned by the caller.
        """
        self._api_url = api_url
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, message: EmailMessage) -> None:
        """
        Submit a message.

        Raises:
            TransientError: On network errors, timeouts, 429 or 5xx responses.
            PermanentError: On other 4xx responses.
        """
        body = {
            "from": message.sender,
            "to": [message.to],
            "subject": message.subject,
            "text": message.text,
        }

        try:
            response = await self._client.post(
                self._api_url,
                json=body,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"Mail API timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientError(f"Mail API unreachable: {e}") from e

        if response.is_success:
            logger.info(
                "Email submitted",
                extra={"to": message.to, "status_code": response.status_code},
            )
            return

        detail = f"Mail API returned HTTP {response.status_code}: {response.text[:500]}"
        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientError(detail)
        raise PermanentError(detail)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# Global transport instance
_transport: MailTransport | None = None


def create_mail_transport(settings: Settings | None = None) -> MailTransport:
    """
    Build the transport selected by configuration.

    Raises:
        ValueError: If the HTTP transport is selected without an API key.
    """
    settings = settings or get_settings()

    if settings.mail_transport == MailTransportKind.HTTP:
        if not settings.mail_api_key:
            raise ValueError("MAIL_API_KEY must be set to use the http mail transport")
        return HttpMailTransport(
            api_url=settings.mail_api_url,
            api_key=settings.mail_api_key,
            timeout=settings.mail_timeout_seconds,
        )

    return LogMailTransport()


def set_mail_transport(transport: MailTransport | None) -> None:
    """Install the transport used by email handlers."""
    global _transport
    _transport = transport


def get_mail_transport() -> MailTransport:
    """Get the installed transport, creating the configured one on first use."""
    global _transport
    if _transport is None:
        _transport = create_mail_transport()
    return _transport
