from __future__ import annotations

import json
import unittest
import urllib.error
from unittest.mock import MagicMock, patch

from rainbow_chick.config import Settings
from rainbow_chick.notifier import (
    DiscordNotifier,
    NoopNotifier,
    NtfyNotifier,
    build_notifier,
    discord_payload,
    ntfy_headers,
)


class PayloadTests(unittest.TestCase):
    def test_discord_embed(self) -> None:
        payload = discord_payload("Stage up: p1 is baby/red", "Grew into baby.", "high", ("tada",))
        embed = payload["embeds"][0]
        self.assertEqual(embed["title"], "Stage up: p1 is baby/red")
        self.assertEqual(embed["color"], 0xE74C3C)
        self.assertEqual(embed["footer"]["text"], "#tada")

    def test_ntfy_headers(self) -> None:
        self.assertEqual(
            ntfy_headers("Missed study days", "high", ("warning",)),
            {"Title": "Missed study days", "Priority": "4", "Tags": "warning"},
        )
        self.assertEqual(ntfy_headers("Paid")["Tags"], "hatched_chick")
        self.assertEqual(ntfy_headers("Paid", "unknown")["Priority"], "3")


class DeliveryTests(unittest.TestCase):
    @patch("rainbow_chick.notifier.time.sleep")
    @patch("rainbow_chick.notifier.urllib.request.urlopen")
    def test_posts_json_to_discord(self, urlopen, sleep) -> None:
        DiscordNotifier("https://discord.test/hook").send("Settlement paid: p1", "Week paid.")

        req = urlopen.call_args[0][0]
        self.assertEqual(req.full_url, "https://discord.test/hook")
        self.assertEqual(json.loads(req.data)["embeds"][0]["description"], "Week paid.")
        sleep.assert_not_called()

    @patch("rainbow_chick.notifier.time.sleep")
    @patch("rainbow_chick.notifier.urllib.request.urlopen")
    def test_network_errors_retry_then_drop(self, urlopen, sleep) -> None:
        urlopen.side_effect = urllib.error.URLError("unreachable")
        with self.assertLogs("rainbow_chick.notifier", level="WARNING"):
            NtfyNotifier("https://ntfy.test/chick").send("t", "b")
        self.assertEqual(urlopen.call_count, 3)
        self.assertEqual([c.args[0] for c in sleep.call_args_list], [0.5, 1.0])

    @patch("rainbow_chick.notifier.time.sleep")
    @patch("rainbow_chick.notifier.urllib.request.urlopen")
    def test_client_errors_are_not_retried(self, urlopen, sleep) -> None:
        urlopen.side_effect = urllib.error.HTTPError("https://ntfy.test/chick", 403, "Forbidden", {}, None)
        with self.assertLogs("rainbow_chick.notifier", level="WARNING"):
            NtfyNotifier("https://ntfy.test/chick").send("t", "b")
        self.assertEqual(urlopen.call_count, 1)
        sleep.assert_not_called()

    @patch("rainbow_chick.notifier.time.sleep")
    @patch("rainbow_chick.notifier.urllib.request.urlopen")
    def test_server_errors_are_retried(self, urlopen, sleep) -> None:
        ok = MagicMock()
        urlopen.side_effect = [urllib.error.HTTPError("https://ntfy.test/chick", 503, "Unavailable", {}, None), ok]
        NtfyNotifier("https://ntfy.test/chick").send("t", "b")
        self.assertEqual(urlopen.call_count, 2)


class BuildNotifierTests(unittest.TestCase):
    def test_picks_configured_transport(self) -> None:
        self.assertIsInstance(build_notifier(Settings(discord_webhook_url="https://d")), DiscordNotifier)
        self.assertIsInstance(build_notifier(Settings(ntfy_topic_url="https://n")), NtfyNotifier)
        self.assertIsInstance(build_notifier(Settings()), NoopNotifier)


if __name__ == "__main__":
    unittest.main()
