# linkgrab/transport/telegram_polling.py
"""
Telegram Bot API long-polling handler.

Alternative to webhook mode. Calls getUpdates in a loop with long-polling.
Simpler ops (no public URL or SSL required).

Usage:
    poller = TelegramPoller(bot)
    await poller.start()
    # ... on shutdown:
    await poller.stop()
"""
from __future__ import annotations

import asyncio

from linkgrab.infra.logging_config import get_logger
from linkgrab.infra.metrics import inc_counter
from linkgrab.infra.tasks import safe_create_task
from linkgrab.transport.bot import Bot
from linkgrab.transport.telegram_client import TelegramApiError

logger = get_logger(__name__)


class TelegramPoller:
    """
    Long-polling loop for receiving Telegram updates.

    Each update is handled in its own task, so one slow download doesn't
    hold up the rest of the chat traffic.

    Error handling:
    - On API errors: exponential backoff (1s → 2s → 4s → ... → 30s max)
    - On processing errors: logged by the update task, offset still advances
    - On cancellation: graceful shutdown
    """

    def __init__(self, bot: Bot, poll_timeout: int = 30):
        self.bot = bot
        self.poll_timeout = poll_timeout
        self._task: asyncio.Task | None = None
        self._offset: int | None = None
        self._running = False
        self._backoff = 1  # seconds, doubles on error, max 30

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._running:
            logger.warning("Telegram poller already running")
            return

        # Remove any existing webhook so polling can work
        try:
            await self.bot.client.delete_webhook()
            logger.info("Telegram webhook removed (switching to polling mode)")
        except TelegramApiError as e:
            logger.warning(f"Could not delete Telegram webhook: {e}")

        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="tg_poller")
        logger.info(f"Telegram poller started (timeout={self.poll_timeout}s)")

    async def stop(self) -> None:
        """Stop the polling loop gracefully."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Telegram poller stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                updates = await self.bot.client.get_updates(
                    offset=self._offset,
                    timeout=self.poll_timeout,
                )

                # Reset backoff on successful poll
                self._backoff = 1

                for update in updates or []:
                    self._offset = update.get("update_id", 0) + 1
                    inc_counter("inbound_updates_total", mode="polling")
                    safe_create_task(
                        self._process_update(update),
                        name=f"tg_update_{update.get('update_id')}",
                    )

            except TelegramApiError as e:
                if not self._running:
                    break
                logger.error(f"Telegram polling error: {e}, backing off {self._backoff}s")
                await asyncio.sleep(self._backoff)
                self._backoff = min(self._backoff * 2, 30)

            except asyncio.CancelledError:
                break

            except Exception as e:
                if not self._running:
                    break
                logger.error(f"Telegram polling unexpected error: {e}", exc_info=True)
                await asyncio.sleep(self._backoff)
                self._backoff = min(self._backoff * 2, 30)

    async def _process_update(self, update: dict) -> None:
        try:
            await self.bot.handle_update(update)
        except Exception as exc:
            logger.error(
                f"Telegram bot error\nUpdate id: {update.get('update_id')}\nError: {exc}",
                exc_info=True,
            )
