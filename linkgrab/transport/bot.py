# linkgrab/transport/bot.py
"""
Telegram bot: command routing on top of the delivery orchestrator.

Only plain messages starting with a ``bot_command`` entity are handled.
``/cmd@OtherBot`` is ignored; ``/cmd`` and ``/cmd@ThisBot`` are accepted.

Public commands: /help, /video <link>, /audio <link>
Owner-only:      /stats, /resetstats, /logs, /loglevel <LEVEL>
"""
from __future__ import annotations

import logging
from typing import Optional

from linkgrab.core.domain import MediaKind
from linkgrab.core.orchestrator import DeliveryOrchestrator
from linkgrab.core.texts import COMMANDS, get_text, help_text
from linkgrab.infra.log_relay import OwnerLogRelay
from linkgrab.infra.logging_config import LogContext, get_logger
from linkgrab.infra.metrics import get_metrics_collector
from linkgrab.infra.usage_stats import UsageStats
from linkgrab.transport.telegram_client import TelegramClient
from linkgrab.transport.telegram_delivery import TelegramChatTransport

logger = get_logger(__name__)


def parse_command(message: dict, username: str) -> Optional[tuple[str, str]]:
    """
    Split a message into ``(command, args)``.

    Returns None when the message doesn't start with a command or the
    command is addressed to a different bot.
    """
    text = message.get("text")
    entities = message.get("entities") or []
    if not text or not entities:
        return None

    first = entities[0]
    if first.get("type") != "bot_command" or first.get("offset") != 0:
        return None

    length = first.get("length", 0)
    command, args = text[:length], text[length:]
    if "@" in command:
        command, target = command.split("@", 1)
        if target != username:
            return None
    return command, args


class Bot:
    def __init__(
        self,
        client: TelegramClient,
        orchestrator: DeliveryOrchestrator,
        *,
        stats: UsageStats,
        owner_id: int | None = None,
        log_relay: OwnerLogRelay | None = None,
    ):
        self.client = client
        self.orchestrator = orchestrator
        self.stats = stats
        self.owner_id = owner_id
        self.log_relay = log_relay
        self.username = ""
        self.caption = ""
        self.is_active = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Identify the bot, publish the command list and greet the owner."""
        me = await self.client.get_me()
        username = me.get("username")
        if not username:
            raise RuntimeError("Telegram getMe returned no bot username")
        self.username = username
        # Inserted into every video and track the bot sends.
        self.caption = f"@{username}"

        await self.client.set_my_commands(list(COMMANDS))

        if self.owner_id is not None:
            if self.log_relay is not None:
                self.log_relay.bind(self._send_to_owner)
            await self._send_to_owner("ON")

        self.is_active = True
        logger.info(f"Bot started as @{username}")

    async def stop(self) -> None:
        """Flush relayed logs and say goodbye to the owner."""
        self.is_active = False
        if self.owner_id is None:
            return
        if self.log_relay is not None:
            await self.log_relay.send_all()
            self.log_relay.bind(None)
        await self._send_to_owner("OFF")

    async def _send_to_owner(self, text: str) -> None:
        await self.client.send_message(self.owner_id, text)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def handle_update(self, update: dict) -> None:
        message = update.get("message")
        if not message:
            return

        sender = message.get("from") or {}
        if "id" in sender:
            self.stats.record_bot_user(sender["id"])

        parsed = parse_command(message, self.username)
        if parsed is None:
            return

        chat_id = (message.get("chat") or {}).get("id")
        if chat_id is None:
            logger.warning("Telegram message: missing chat.id, ignoring")
            return

        command, args = parsed
        await self.handle_command(message["message_id"], chat_id, command, args)

    async def handle_command(self, msg_id: int, chat_id: int, command: str, args: str) -> None:
        is_owner = self.owner_id is not None and chat_id == self.owner_id

        if command == "/resetstats" and is_owner:
            await self.handle_resetstats_command(chat_id)
        elif command == "/stats" and is_owner:
            await self.handle_stats_command(chat_id)
        elif command == "/logs" and is_owner:
            await self.handle_logs_command()
        elif command == "/loglevel" and is_owner:
            await self.handle_loglevel_command(chat_id, args)
        elif command == "/help":
            await self.client.send_message(chat_id, help_text())
        elif command == "/video":
            await self.handle_media_command(msg_id, chat_id, args, MediaKind.VIDEO)
        elif command == "/audio":
            await self.handle_media_command(msg_id, chat_id, args, MediaKind.AUDIO)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def handle_media_command(
        self,
        msg_id: int,
        chat_id: int,
        args: str,
        kind: MediaKind,
    ) -> None:
        transport = TelegramChatTransport(
            self.client,
            chat_id=chat_id,
            reply_to_message_id=msg_id,
            caption=self.caption,
        )
        result = await self.orchestrator.deliver(args, kind, transport, chat_id=chat_id)
        LogContext(logger, chat_id=chat_id, media_kind=kind.value).info(
            f"/{kind.value} finished: status={result.status}, "
            f"error={result.error.value if result.error else None}"
        )

    async def handle_stats_command(self, chat_id: int) -> None:
        await self.client.send_message(chat_id, self.stats.render())

    async def handle_resetstats_command(self, chat_id: int) -> None:
        self.stats.reset()
        get_metrics_collector().reset()
        await self.handle_stats_command(chat_id)

    async def handle_logs_command(self) -> None:
        if self.log_relay is not None:
            await self.log_relay.send_all()

    async def handle_loglevel_command(self, chat_id: int, args: str) -> None:
        name = args.strip().upper()
        level = logging.getLevelName(name) if name else None
        if not isinstance(level, int):
            text = get_text("loglevel_error", error=f"unknown log level {args.strip()!r}")
        else:
            if self.log_relay is not None:
                self.log_relay.setLevel(level)
            text = get_text("loglevel_set", level=name)
        await self.client.send_message(chat_id, text)
