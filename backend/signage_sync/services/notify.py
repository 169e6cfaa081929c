"""
Operator alerts over Telegram.

Env:
  TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID

The same (level, title) pair is sent at most once per `THROTTLE_SEC`.
Unconfigured alerts are a debug log, never an error.
"""
from __future__ import annotations

import html
import logging
import time
from typing import Any

import httpx

from signage_sync.integrations.yodeck_api import sanitize_text
from signage_sync.settings import get_settings

logger = logging.getLogger(__name__)

THROTTLE_SEC = 15 * 60

_LEVEL_MARKERS = {"error": "🔴", "warn": "🟡", "info": "🟢"}
_last_sent: dict[str, float] = {}


def _should_send(key: str) -> bool:
    now = time.monotonic()
    if key in _last_sent and now - _last_sent[key] < THROTTLE_SEC:
        return False
    _last_sent[key] = now
    return True


def reset_throttle() -> None:
    _last_sent.clear()


def format_alert(level: str, title: str, payload: Any = None) -> str:
    body = f"{_LEVEL_MARKERS.get(level, '')} <b>{html.escape(title)}</b>".strip()
    if payload:
        body += f"\n<pre>{html.escape(sanitize_text(str(payload)) or '')[:500]}</pre>"
    return body


async def _send_telegram(text: str) -> bool:
    settings = get_settings()
    if not settings.telegram_bot_token or not settings.telegram_chat_id:
        logger.debug("[notify] Telegram not configured, skipping")
        return False
    url = f"https://api.telegram.org/bot{settings.telegram_bot_token}/sendMessage"
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            r = await client.post(url, json={
                "chat_id": settings.telegram_chat_id,
                "text": text[:4000],
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            })
    except httpx.HTTPError as e:
        logger.warning(f"[notify] Telegram send failed: {e}")
        return False
    if r.status_code != 200:
        logger.warning(f"[notify] Telegram API {r.status_code}: {r.text[:200]}")
        return False
    return True


async def _notify(level: str, title: str, payload: Any = None) -> bool:
    if not _should_send(f"{level}:{title}"):
        logger.debug(f"[notify] throttled {level}: {title}")
        return False
    return await _send_telegram(format_alert(level, title, payload))


async def notify_error(title: str, payload: Any = None) -> bool:
    return await _notify("error", title, payload)


async def notify_warn(title: str, payload: Any = None) -> bool:
    return await _notify("warn", title, payload)
