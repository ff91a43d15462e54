"""Telegram Bot API client for sending message blocks."""

from dataclasses import dataclass

import httpx
import structlog

log = structlog.get_logger()

HTTP_TOO_MANY_REQUESTS = 429


@dataclass
class SendResult:
    """Outcome of one sendMessage call.

    ``status`` is None when no response arrived at all.
    """

    status: int | None = None
    retry_after: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300

    @property
    def rate_limited(self) -> bool:
        return self.status == HTTP_TOO_MANY_REQUESTS


def parse_retry_after(response: httpx.Response) -> int | None:
    """Read ``parameters.retry_after`` from a Bot API error body."""
    try:
        body = response.json()
    except ValueError:
        log.warning("Could not parse Telegram error body", status=response.status_code)
        return None

    if not isinstance(body, dict):
        return None
    parameters = body.get("parameters")
    if not isinstance(parameters, dict):
        return None
    retry_after = parameters.get("retry_after")
    if isinstance(retry_after, int) and retry_after >= 0:
        return retry_after
    return None


class TelegramClient:
    """Async client for the Bot API ``sendMessage`` method."""

    def __init__(
        self,
        api_key: str,
        chat_id: str,
        api_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.chat_id = chat_id
        self._url = f"{api_url.rstrip('/')}/bot{api_key}/sendMessage"
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def send_message(self, text: str) -> SendResult:
        """Send HTML-formatted text to the configured chat.

        Never raises for delivery problems; the outcome is in the result.
        """
        try:
            response = await self._client.post(
                self._url,
                data={
                    "chat_id": self.chat_id,
                    "text": text,
                    "parse_mode": "HTML",
                },
            )
        except httpx.RequestError as e:
            # str(e) can carry the URL, which embeds the token
            log.error("Telegram request failed", error=type(e).__name__)
            return SendResult(error=type(e).__name__)

        if response.is_success:
            log.debug("Telegram message sent", length=len(text))
            return SendResult(status=response.status_code)

        if response.status_code == HTTP_TOO_MANY_REQUESTS:
            return SendResult(
                status=response.status_code,
                retry_after=parse_retry_after(response),
            )

        log.error(
            "Telegram API error",
            status=response.status_code,
            body=response.text[:500],
        )
        return SendResult(status=response.status_code, error=response.text[:500])

    async def aclose(self) -> None:
        await self._client.aclose()
