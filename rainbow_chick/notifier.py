from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.request
from typing import Sequence

from rainbow_chick.config import Settings

logger = logging.getLogger(__name__)

PRIORITY_LEVELS = {"low": "2", "normal": "3", "high": "4"}

# Discord embed side bar colors.
EMBED_COLORS = {"low": 0x95A5A6, "normal": 0xF7D046, "high": 0xE74C3C}

DEFAULT_TAGS = ("hatched_chick",)


class Notifier:
    def send(self, title: str, body: str, priority: str = "normal", tags: Sequence[str] = ()) -> None:
        raise NotImplementedError


class NoopNotifier(Notifier):
    def send(self, title: str, body: str, priority: str = "normal", tags: Sequence[str] = ()) -> None:
        return


class RecordingNotifier(Notifier):
    """Keeps messages in memory instead of sending them."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str, str, tuple[str, ...]]] = []

    def send(self, title: str, body: str, priority: str = "normal", tags: Sequence[str] = ()) -> None:
        self.messages.append((title, body, priority, tuple(tags)))


def discord_payload(title: str, body: str, priority: str = "normal", tags: Sequence[str] = ()) -> dict:
    embed = {
        "title": title,
        "description": body,
        "color": EMBED_COLORS.get(priority, EMBED_COLORS["normal"]),
    }
    if tags:
        embed["footer"] = {"text": " ".join(f"#{t}" for t in tags)}
    return {"username": "Rainbow Chick", "embeds": [embed]}


def ntfy_headers(title: str, priority: str = "normal", tags: Sequence[str] = ()) -> dict:
    return {
        "Title": title,
        "Priority": PRIORITY_LEVELS.get(priority, PRIORITY_LEVELS["normal"]),
        "Tags": ",".join(tuple(tags) or DEFAULT_TAGS),
    }


class WebhookNotifier(Notifier):
    """POSTs to a webhook with backoff.

    Client errors other than 429 are not retried. After the last attempt the
    message is logged and dropped; callers never see delivery failures.
    """

    max_attempts = 3
    timeout_s = 5
    backoff_s = 0.5

    def _deliver(self, req: urllib.request.Request) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                    resp.read()
                return True
            except urllib.error.HTTPError as exc:
                if exc.code < 500 and exc.code != 429:
                    logger.warning("Webhook %s rejected notification: HTTP %d", req.full_url, exc.code)
                    return False
                error: Exception = exc
            except (urllib.error.URLError, TimeoutError, OSError) as exc:
                error = exc
            if attempt < self.max_attempts:
                time.sleep(self.backoff_s * 2 ** (attempt - 1))
        logger.warning("Notification to %s dropped after %d attempts: %s", req.full_url, self.max_attempts, error)
        return False


class DiscordNotifier(WebhookNotifier):
    def __init__(self, webhook_url: str) -> None:
        self.webhook_url = webhook_url

    def send(self, title: str, body: str, priority: str = "normal", tags: Sequence[str] = ()) -> None:
        req = urllib.request.Request(
            self.webhook_url,
            data=json.dumps(discord_payload(title, body, priority, tags)).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        self._deliver(req)


class NtfyNotifier(WebhookNotifier):
    def __init__(self, topic_url: str) -> None:
        self.topic_url = topic_url

    def send(self, title: str, body: str, priority: str = "normal", tags: Sequence[str] = ()) -> None:
        req = urllib.request.Request(
            self.topic_url,
            data=body.encode("utf-8"),
            headers=ntfy_headers(title, priority, tags),
            method="POST",
        )
        self._deliver(req)


def build_notifier(settings: Settings) -> Notifier:
    if settings.discord_webhook_url:
        return DiscordNotifier(settings.discord_webhook_url)
    if settings.ntfy_topic_url:
        return NtfyNotifier(settings.ntfy_topic_url)
    return NoopNotifier()
