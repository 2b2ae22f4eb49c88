from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from q3report.report import to_markdown

logger = logging.getLogger("q3report.telegram")

TELEGRAM_API_URL = "https://api.telegram.org"

# Telegram rejects longer messages outright.
MAX_MESSAGE_CHARS = 4096


class SendError(RuntimeError):
    def __init__(self, message: str, *, retryable: bool = True, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.retry_after = retry_after


class Sender(Protocol):
    async def send(self, destination_id: str, text: str) -> None: ...


def _clip_message(text: str) -> str:
    if len(text) <= MAX_MESSAGE_CHARS:
        return text
    # Keep the code block closed so MarkdownV2 still parses.
    tail = "\n...\n```" if text.rstrip().endswith("```") else "\n..."
    return text[: MAX_MESSAGE_CHARS - len(tail)].rstrip("\\") + tail


def _retry_after(resp: httpx.Response) -> Optional[float]:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    params = body.get("parameters") if isinstance(body, dict) else None
    if isinstance(params, dict) and params.get("retry_after") is not None:
        try:
            return float(params["retry_after"])
        except (TypeError, ValueError):
            pass
    header = resp.headers.get("retry-after")
    if header:
        try:
            return float(header)
        except ValueError:
            return None
    return None


def _describe(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    desc = body.get("description") if isinstance(body, dict) else None
    return f"HTTP {resp.status_code}: {desc}" if desc else f"HTTP {resp.status_code}"


class TelegramBotClient:
    """Posts rendered reports to a chat through the Bot API `sendMessage` method.

    Makes a single attempt per call; retry and backoff belong to the delivery queue.
    """

    def __init__(
        self,
        token: str,
        *,
        api_url: str = TELEGRAM_API_URL,
        markdown: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._token = (token or "").strip()
        self._api_url = (api_url or TELEGRAM_API_URL).rstrip("/")
        self._markdown = markdown
        # Tight timeouts: the delivery queue bounds each attempt anyway.
        timeout = httpx.Timeout(12.0, connect=4.0)
        limits = httpx.Limits(max_keepalive_connections=5, max_connections=10)
        self._client = httpx.AsyncClient(timeout=timeout, limits=limits, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _payload(self, chat_id: str, text: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"chat_id": chat_id, "disable_web_page_preview": True}
        if self._markdown:
            payload["text"] = _clip_message(to_markdown(text))
            payload["parse_mode"] = "MarkdownV2"
        else:
            payload["text"] = _clip_message(text)
        return payload

    async def send(self, destination_id: str, text: str) -> None:
        if not self._token:
            raise SendError("Telegram bot token not configured", retryable=False)

        url = f"{self._api_url}/bot{self._token}/sendMessage"
        try:
            resp = await self._client.post(url, json=self._payload(destination_id, text))
        except httpx.RequestError as e:
            raise SendError(f"Telegram unreachable: {e.__class__.__name__}: {e}") from e

        if resp.status_code == 429:
            raise SendError(_describe(resp), retry_after=_retry_after(resp))
        if 500 <= resp.status_code < 600:
            raise SendError(_describe(resp))
        if resp.status_code >= 400:
            # Bad chat id, malformed markup, bot kicked: resending will not help.
            raise SendError(_describe(resp), retryable=False)

        logger.debug("Sent %d chars to chat %s", len(text), destination_id)


class LoggingSender:
    """Dry-run sender: writes the report to the log instead of a chat."""

    async def send(self, destination_id: str, text: str) -> None:
        logger.info("Report for %s:\n%s", destination_id or "-", text)
