"""Best-effort operational alerts delivered through a Slack webhook."""

from __future__ import annotations

from enum import Enum
from typing import Protocol

import httpx
from loguru import logger

from app.core.config import Settings, get_settings


class AlertChannel(str, Enum):
    INDEXER = "indexer"
    JOBS = "jobs"
    GENERAL = "general"


class AlertSink(Protocol):
    def notify(
        self, message: str, urgent: bool = False, channel: AlertChannel = AlertChannel.GENERAL
    ) -> None:
        """Deliver an alert; implementations must never raise."""


class SlackAlertSink:
    """Post alerts to Slack; delivery failures are logged and swallowed."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client

    def _payload(self, message: str, urgent: bool, channel: AlertChannel) -> dict[str, str]:
        text = f"*[{self.settings.environment}]* *[{channel.value.upper()}]*: {message}"
        if urgent:
            text = f"<!channel> {text}"
        return {
            "channel": self.settings.slack_channel,
            "username": self.settings.slack_username,
            "text": text,
            "icon_emoji": ":robot_face:",
        }

    def notify(
        self, message: str, urgent: bool = False, channel: AlertChannel = AlertChannel.GENERAL
    ) -> None:
        webhook_url = self.settings.slack_webhook_url
        if not webhook_url:
            logger.warning("Alert ({}, urgent={}): {}", channel.value, urgent, message)
            return

        payload = self._payload(message, urgent, channel)
        try:
            if self._client is not None:
                response = self._client.post(webhook_url, json=payload)
            else:
                response = httpx.post(
                    webhook_url, json=payload, timeout=self.settings.alert_timeout_seconds
                )
            response.raise_for_status()
        except Exception:  # noqa: BLE001
            logger.exception("Error while sending alert to Slack (channel={})", channel.value)
            return
        logger.debug("Slack alert delivered (channel={})", channel.value)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
