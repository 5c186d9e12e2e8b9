# linkgrab/transport/telegram_webhook.py
"""
Telegram Bot API webhook handler.

Handles:
- POST {telegram_webhook_path}: inbound Updates from Telegram

Security features:
- X-Telegram-Bot-Api-Secret-Token header validation (if configured)
- Fast 200 response; the update is processed in a background task, since a
  download can easily outlive Telegram's webhook timeout
"""
from __future__ import annotations

import hmac

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse

from linkgrab.config import settings
from linkgrab.infra.logging_config import get_logger
from linkgrab.infra.metrics import inc_counter
from linkgrab.infra.tasks import safe_create_task
from linkgrab.transport.bot import Bot

logger = get_logger(__name__)


def _verify_secret_token(request: Request) -> bool:
    """
    Verify X-Telegram-Bot-Api-Secret-Token header.
    Returns True if valid or if secret token verification is disabled.
    """
    if not settings.telegram_webhook_secret:
        return True

    header_token = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
    if not header_token:
        logger.warning("Telegram webhook: missing X-Telegram-Bot-Api-Secret-Token header")
        return False

    return hmac.compare_digest(header_token, settings.telegram_webhook_secret)


async def _handle_update(bot: Bot, update: dict) -> None:
    try:
        await bot.handle_update(update)
    except Exception as exc:
        logger.error(
            f"Telegram bot error\nUpdate id: {update.get('update_id')}\nError: {exc}",
            exc_info=True,
        )


async def telegram_webhook_handler(request: Request) -> JSONResponse:
    """Handle a Telegram webhook Update (POST). Always 200 unless the secret is wrong."""
    if not _verify_secret_token(request):
        logger.error("Telegram webhook: secret token verification failed")
        inc_counter("webhook_validation_failures_total")
        raise HTTPException(status_code=403, detail="Invalid secret token")

    bot: Bot | None = getattr(request.app.state, "bot", None)
    if bot is None:
        logger.warning("Telegram webhook hit while the bot is disabled")
        return JSONResponse({"ok": True}, status_code=200)

    try:
        update = await request.json()
    except ValueError:
        logger.warning("Telegram webhook: invalid JSON payload, returning 200 to suppress retries")
        inc_counter("telegram_webhook_malformed_payload")
        return JSONResponse({"ok": True}, status_code=200)

    if not isinstance(update, dict):
        inc_counter("telegram_webhook_malformed_payload")
        return JSONResponse({"ok": True}, status_code=200)

    inc_counter("inbound_updates_total", mode="webhook")
    safe_create_task(
        _handle_update(bot, update),
        name=f"tg_update_{update.get('update_id')}",
    )
    return JSONResponse({"ok": True}, status_code=200)
