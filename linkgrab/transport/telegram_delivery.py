# linkgrab/transport/telegram_delivery.py
"""
``DeliveryTransport`` bound to one Telegram chat message.

The progress indicator is a "Downloading video..." reply; its token is the
message id. Uploaded files reply to the user's command message and carry
the bot's ``@username`` as caption.
"""
from __future__ import annotations

from linkgrab.core.domain import MediaHandle, MediaKind
from linkgrab.core.texts import get_text
from linkgrab.transport.telegram_client import TelegramClient, extract_file_id


class TelegramChatTransport:
    def __init__(
        self,
        client: TelegramClient,
        *,
        chat_id: int,
        reply_to_message_id: int,
        caption: str,
    ):
        self._client = client
        self.chat_id = chat_id
        self.reply_to_message_id = reply_to_message_id
        self.caption = caption

    async def send_notice(self, text: str) -> None:
        await self._client.send_message(
            self.chat_id,
            text,
            reply_to_message_id=self.reply_to_message_id,
            disable_web_page_preview=True,
        )

    async def show_progress(self, kind: MediaKind) -> int:
        message = await self._client.send_message(
            self.chat_id,
            get_text("progress", kind),
            reply_to_message_id=self.reply_to_message_id,
        )
        return message["message_id"]

    async def replace_progress(self, token: int, text: str) -> None:
        await self._client.edit_message_text(self.chat_id, token, text)

    async def clear_progress(self, token: int) -> None:
        await self._client.delete_message(self.chat_id, token)

    async def upload(self, media: MediaHandle) -> str:
        message = await self._client.upload_media(
            self.chat_id,
            media,
            caption=self.caption,
            reply_to_message_id=self.reply_to_message_id,
        )
        return extract_file_id(message, media.kind)

    async def send_by_reference(self, destination_id: str, kind: MediaKind) -> None:
        await self._client.send_media(
            self.chat_id,
            kind,
            destination_id,
            caption=self.caption,
            reply_to_message_id=self.reply_to_message_id,
        )
