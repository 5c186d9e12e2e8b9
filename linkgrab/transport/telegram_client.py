# linkgrab/transport/telegram_client.py
"""
Telegram Bot API client.

JSON requests for everything except media uploads, which go out as
multipart/form-data with the media body streamed from the ``MediaHandle``.

Error classification (TelegramApiError.retryable):
- Token invalid / bot blocked  → NOT retryable (needs human intervention)
- Bad request / chat not found → NOT retryable
- Rate limiting (429)          → retryable  (backoff then retry)
- Network / timeout            → retryable  (transient)
- Unknown server error         → retryable  (optimistic)

Only idempotent calls are retried here (``delete_message``); uploads never
are, since a retried upload would have to restart the acquisition.
"""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import aiohttp

from linkgrab.core.domain import MediaHandle, MediaKind
from linkgrab.infra.http_client import (
    get_api_session,
    get_poller_session,
    get_uploader_session,
)
from linkgrab.infra.logging_config import get_logger, mask_chat_id
from linkgrab.infra.metrics import inc_counter

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096

_MEDIA_METHODS = {MediaKind.AUDIO: "sendAudio", MediaKind.VIDEO: "sendVideo"}


class TelegramApiError(Exception):
    """Error calling the Telegram Bot API.

    Attributes:
        status:     HTTP status code (0 for connection-level errors).
        error_code: Telegram-specific error code from the response body.
        retryable:  Whether the caller may retry.
    """

    def __init__(
        self,
        status: int,
        error_code: int | None,
        message: str,
        *,
        retryable: bool = False,
    ):
        self.status = status
        self.error_code = error_code
        self.description = message
        self.retryable = retryable
        super().__init__(f"Telegram API error {status} (code={error_code}): {message}")


def extract_file_id(message: dict, kind: MediaKind) -> str:
    """Pull the reusable ``file_id`` out of a sendAudio/sendVideo result."""
    # Telegram may file a video as a document or animation depending on its codec.
    for key in (kind.value, "document", "animation"):
        media = message.get(key)
        if isinstance(media, dict) and media.get("file_id"):
            return media["file_id"]
    raise TelegramApiError(
        200, None, f"unexpected media kind in response (keys={sorted(message)})", retryable=False,
    )


class TelegramClient:
    """Thin async wrapper over the Bot API methods the bot uses."""

    def __init__(self, token: str, api_base: str = TELEGRAM_API_BASE):
        self._token = token
        self._api_base = api_base.rstrip("/")

    def _url(self, method: str) -> str:
        return f"{self._api_base}/bot{self._token}/{method}"

    # ------------------------------------------------------------------
    # Bot setup
    # ------------------------------------------------------------------

    async def get_me(self) -> dict:
        return await self._request("getMe", {})

    async def set_webhook(self, url: str, secret_token: str | None = None) -> Any:
        payload: dict = {"url": url, "drop_pending_updates": True}
        if secret_token:
            payload["secret_token"] = secret_token
        return await self._request("setWebhook", payload)

    async def delete_webhook(self) -> Any:
        return await self._request("deleteWebhook", {})

    async def set_my_commands(self, commands: list[tuple[str, str]]) -> Any:
        payload = {
            "commands": [
                {"command": command, "description": description}
                for command, description in commands
            ],
        }
        return await self._request("setMyCommands", payload)

    async def get_updates(self, offset: int | None = None, timeout: int = 30) -> list[dict]:
        payload: dict = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        return await self._request(
            "getUpdates",
            payload,
            session=get_poller_session(),
            timeout=aiohttp.ClientTimeout(total=timeout + 10, connect=5),
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        *,
        reply_to_message_id: int | None = None,
        disable_web_page_preview: bool = False,
    ) -> dict:
        payload: dict = {"chat_id": chat_id, "text": text[:MAX_MESSAGE_LENGTH]}
        if reply_to_message_id is not None:
            payload["reply_to_message_id"] = reply_to_message_id
        if disable_web_page_preview:
            payload["disable_web_page_preview"] = True
        return await self._request("sendMessage", payload)

    async def edit_message_text(self, chat_id: int | str, message_id: int, text: str) -> Any:
        payload = {"chat_id": chat_id, "message_id": message_id, "text": text[:MAX_MESSAGE_LENGTH]}
        return await self._request("editMessageText", payload)

    async def delete_message(
        self,
        chat_id: int | str,
        message_id: int,
        *,
        attempts: int = 3,
    ) -> Any:
        """Delete a message, retrying transient failures (deletion is idempotent)."""
        payload = {"chat_id": chat_id, "message_id": message_id}
        for attempt in range(attempts):
            try:
                return await self._request("deleteMessage", payload)
            except TelegramApiError as e:
                if not e.retryable or attempt == attempts - 1:
                    raise
                wait = attempt + 1
                logger.warning(
                    f"deleteMessage failed (attempt {attempt + 1}/{attempts}), "
                    f"retrying in {wait}s: {e}"
                )
                await asyncio.sleep(wait)

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    async def send_media(
        self,
        chat_id: int | str,
        kind: MediaKind,
        file_id: str,
        *,
        caption: str | None = None,
        reply_to_message_id: int | None = None,
    ) -> dict:
        """Re-send an already uploaded file by its ``file_id``."""
        payload: dict = {"chat_id": chat_id, kind.value: file_id}
        if caption:
            payload["caption"] = caption
        if reply_to_message_id is not None:
            payload["reply_to_message_id"] = reply_to_message_id
        return await self._request(_MEDIA_METHODS[kind], payload)

    async def upload_media(
        self,
        chat_id: int | str,
        media: MediaHandle,
        *,
        caption: str | None = None,
        reply_to_message_id: int | None = None,
    ) -> dict:
        """
        Upload the media body as multipart/form-data.

        The filename is taken out of the handle; the body is streamed, so
        memory stays bounded for process-backed handles.
        """
        kind = media.kind
        filename = media.take_filename()

        form = aiohttp.FormData()
        form.add_field("chat_id", str(chat_id))
        if caption:
            form.add_field("caption", caption)
        if reply_to_message_id is not None:
            form.add_field("reply_to_message_id", str(reply_to_message_id))
        form.add_field(
            kind.value,
            _body(media),
            filename=filename,
            content_type=kind.mime_type,
        )

        logger.info(
            f"Uploading {kind.value}: to={mask_chat_id(str(chat_id))}, "
            f"size={media.size}, filename={filename!r}"
        )
        return await self._request(
            _MEDIA_METHODS[kind], None, form=form, session=get_uploader_session(),
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        payload: dict | None,
        *,
        form: aiohttp.FormData | None = None,
        session: aiohttp.ClientSession | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
    ) -> Any:
        """Execute a Bot API call and return its ``result``."""
        session = session or get_api_session()
        kwargs: dict = {"data": form} if form is not None else {"json": payload}
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            async with session.post(self._url(method), **kwargs) as resp:
                body = await _safe_response_json(resp)

                if resp.status == 200 and body and body.get("ok"):
                    inc_counter("telegram_api_calls", method=method, status="ok")
                    return body.get("result")

                error_desc = (body or {}).get("description", "Unknown error")
                error_code = (body or {}).get("error_code")
                inc_counter("telegram_api_calls", method=method, status=str(resp.status))

                if resp.status in (400, 401, 403):
                    logger.warning(f"Telegram {method} rejected ({resp.status}): {error_desc}")
                    raise TelegramApiError(resp.status, error_code, error_desc, retryable=False)

                if resp.status == 429:
                    retry_after = (body or {}).get("parameters", {}).get("retry_after", 30)
                    logger.warning(f"Telegram {method} rate limited, retry_after={retry_after}s")
                    raise TelegramApiError(resp.status, error_code, error_desc, retryable=True)

                logger.error(f"Telegram {method} error: status={resp.status}, code={error_code}, msg={error_desc}")
                raise TelegramApiError(resp.status, error_code, error_desc, retryable=True)

        except TelegramApiError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error(f"Telegram {method} connection error: {exc!r}")
            inc_counter("telegram_api_calls", method=method, status="connection_error")
            raise TelegramApiError(0, None, repr(exc), retryable=True) from exc


async def _body(media: MediaHandle) -> AsyncIterator[bytes]:
    async for chunk in media:
        yield chunk


async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        logger.warning(f"Telegram API returned non-JSON body: status={resp.status}")
        return None
