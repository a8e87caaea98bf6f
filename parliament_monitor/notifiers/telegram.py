from __future__ import annotations

import json

import httpx

from parliament_monitor.notifiers.base import FieldDescriptor, NotifierRegistry


NAME = "telegram"

TELEGRAM_MAX_MESSAGE_LEN = 3900

FIELDS = (
    FieldDescriptor(name="bot_token", required=True, type="secret", description="Telegram bot token"),
    FieldDescriptor(name="chat_id", required=True, description="Chat id that receives the alerts"),
)


class TelegramSendError(RuntimeError):
    pass


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        chunk = s[:cut].rstrip()
        parts.append(chunk)
        s = s[cut:].lstrip()
    return parts


def redact_telegram_response(data: dict) -> str:
    safe = {"ok": data.get("ok")}
    if isinstance(data.get("result"), dict):
        safe["result"] = {"message_id": data["result"].get("message_id")}
    if data.get("description"):
        safe["description"] = data.get("description")
    return json.dumps(safe, ensure_ascii=False)


async def send_telegram_message(client: httpx.AsyncClient, *, bot_token: str, chat_id: str, text: str) -> dict:
    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    try:
        resp = await client.post(url, json={"chat_id": chat_id, "text": text}, timeout=15.0)
        data = resp.json()
    except Exception as e:
        # The token is part of the URL and ends up in httpx error strings.
        msg = f"{type(e).__name__}: {e}".replace(bot_token, "<redacted>")
        raise TelegramSendError(msg) from None
    if not isinstance(data, dict) or not data.get("ok"):
        raise TelegramSendError(f"Telegram rejected message: {redact_telegram_response(data if isinstance(data, dict) else {})}")
    return data


async def send_alert(config: dict[str, str], message: str, *, client: httpx.AsyncClient | None = None) -> None:
    bot_token = config["bot_token"]
    chat_id = config["chat_id"]
    if client is not None:
        for part in split_telegram_message(message):
            await send_telegram_message(client, bot_token=bot_token, chat_id=chat_id, text=part)
        return
    async with httpx.AsyncClient() as own_client:
        for part in split_telegram_message(message):
            await send_telegram_message(own_client, bot_token=bot_token, chat_id=chat_id, text=part)


def init(registry: NotifierRegistry) -> None:
    registry.register(NAME, fields=FIELDS, send_alert=send_alert)
