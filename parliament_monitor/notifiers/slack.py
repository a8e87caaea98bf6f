from __future__ import annotations

import httpx

from parliament_monitor.notifiers.base import FieldDescriptor, NotifierRegistry


NAME = "slack"

FIELDS = (
    FieldDescriptor(
        name="slack_webhook_url",
        required=True,
        type="secret",
        description="Incoming webhook url for the channel that receives the alerts",
    ),
)


async def send_alert(config: dict[str, str], message: str, *, client: httpx.AsyncClient | None = None) -> None:
    payload = {"text": message}
    url = config["slack_webhook_url"]
    if client is not None:
        resp = await client.post(url, json=payload, timeout=10.0)
        resp.raise_for_status()
        return
    async with httpx.AsyncClient() as own_client:
        resp = await own_client.post(url, json=payload, timeout=10.0)
        resp.raise_for_status()


def init(registry: NotifierRegistry) -> None:
    registry.register(NAME, fields=FIELDS, send_alert=send_alert)
