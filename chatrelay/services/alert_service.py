"""Failure reporting: structured log line plus an optional Telegram alert."""

from typing import Optional

import httpx

from chatrelay.config import settings
from chatrelay.logging_config import get_logger

logger = get_logger("alert_service")

_LEVEL_LOG = {"INFO": "info", "WARNING": "warning", "ERROR": "error", "CRITICAL": "critical"}


async def send_alert(
    level: str,
    message: str,
    context: Optional[dict] = None,
    *,
    bot_token: Optional[str] = None,
    chat_id: Optional[str] = None,
) -> bool:
    """Report a failure.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict

    Returns:
        True if the Telegram alert was delivered
    """
    log = getattr(logger, _LEVEL_LOG.get(level, "error"))
    log(message, extra={"context": {"alert_level": level, **(context or {})}})

    bot_token = bot_token or settings.alert_bot_token
    chat_id = chat_id or settings.alert_chat_id
    if not bot_token or not chat_id:
        return False

    emoji = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}

    text = f"{emoji.get(level, '📢')} *{level}*\n\n{message}"

    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(
                f"https://api.telegram.org/bot{bot_token}/sendMessage",
                json={"chat_id": chat_id, "text": text, "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


async def alert_error(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for ERROR level alert."""
    return await send_alert("ERROR", message, context)


async def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for CRITICAL level alert."""
    return await send_alert("CRITICAL", message, context)


async def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for WARNING level alert."""
    return await send_alert("WARNING", message, context)


async def alert_info(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for INFO level alert."""
    return await send_alert("INFO", message, context)
