"""
Discord notification client using webhooks.

Used for the few events an operator must see without tailing the log: startup,
forced closes of residual positions, escalations and shutdown.
"""
from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, List, Optional
import requests

log = logging.getLogger("notifications.discord")


class DiscordNotifier:
    """Discord notification client via webhooks. Every method is a no-op when disabled."""

    COLOR_GREEN = 0x00FF00
    COLOR_ORANGE = 0xFFA500
    COLOR_RED = 0xFF0000
    COLOR_BLUE = 0x0099FF

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        enabled: bool = True,
        session: Optional[requests.Session] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        """
        Args:
            webhook_url: Fallback URL; DISCORD_WEBHOOK_URL in the environment wins.
            enabled: If False, nothing is ever sent.
            session: Optional requests session (tests inject one).
            stop_event: Shutdown event; a rate-limit wait ends early (without a retry) once it is set.
        """
        self.enabled = enabled
        self.session = session or requests.Session()
        self.stop_event = stop_event or threading.Event()
        self.webhook_url = os.environ.get("DISCORD_WEBHOOK_URL") or webhook_url if enabled else None

        if enabled and not self.webhook_url:
            log.warning(
                "Discord notifier enabled but no webhook URL available. "
                "Set DISCORD_WEBHOOK_URL or notifications.discord.webhook_url"
            )

    @classmethod
    def from_config(cls, discord_cfg, stop_event: Optional[threading.Event] = None) -> "DiscordNotifier":
        return cls(webhook_url=discord_cfg.webhook_url, enabled=bool(discord_cfg.enabled), stop_event=stop_event)

    def _should_send(self) -> bool:
        return bool(self.enabled and self.webhook_url)

    def _post(self, payload: Dict[str, Any]) -> bool:
        try:
            response = self.session.post(self.webhook_url, json=payload, timeout=10)
            if response.status_code == 429:
                retry_after = response.headers.get("Retry-After", "5")
                try:
                    wait_seconds = min(30.0, float(retry_after))
                except ValueError:
                    wait_seconds = 5.0
                log.warning(f"Discord rate limited, retrying after {wait_seconds}s")
                if self.stop_event.wait(wait_seconds):
                    log.warning("Discord retry dropped: shutdown requested")
                    return False
                response = self.session.post(self.webhook_url, json=payload, timeout=10)
            response.raise_for_status()
            return True
        except requests.exceptions.RequestException as e:
            log.error(f"Discord request failed: {e}")
            return False

    def send_message(self, content: str) -> bool:
        """Plain text message (truncated to Discord's 2000 char limit)."""
        if not self._should_send():
            return False
        if len(content) > 2000:
            content = content[:1997] + "..."
        return self._post({"content": content})

    def send_embed(
        self,
        title: str,
        description: str = "",
        fields: Optional[List[Dict[str, Any]]] = None,
        color: Optional[int] = None,
    ) -> bool:
        if not self._should_send():
            return False
        embed: Dict[str, Any] = {
            "title": title[:256],
            "description": description[:4096],
            "color": self.COLOR_BLUE if color is None else color,
        }
        if fields:
            embed["fields"] = [
                {"name": str(f["name"])[:256], "value": str(f["value"])[:1024], "inline": bool(f.get("inline", True))}
                for f in fields[:25]
            ]
        return self._post({"embeds": [embed]})
