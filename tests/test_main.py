"""
Tests for Telegram notification delivery and formatting.
"""
from unittest.mock import MagicMock, patch

from event_bus import NotificationEvent
from main import TelegramNotifier, format_notification


def response(status_code: int, text: str = "", payload=None):
    mock = MagicMock()
    mock.status_code = status_code
    mock.text = text
    mock.json.return_value = payload or {}
    return mock


class TestFormatting:
    def test_level_icon(self):
        event = NotificationEvent(level="success", title="Take-Profit Hit", message="SpeedBot stopped")
        assert format_notification(event) == "✅ **Take-Profit Hit**\nSpeedBot stopped"

    def test_unknown_level(self):
        event = NotificationEvent(level="debug", title="x", message="y")
        assert format_notification(event).startswith("🔔")


class TestTelegramNotifier:
    def test_no_chat_id(self):
        notifier = TelegramNotifier("token")
        with patch("main.requests.post") as post:
            assert notifier.send_message_sync("hello") is False
            post.assert_not_called()

    def test_duplicate_messages_are_sent_once(self):
        notifier = TelegramNotifier("token", chat_id=42)
        with patch("main.requests.post", return_value=response(200)) as post:
            assert notifier.send_message_sync("hello") is True
            assert notifier.send_message_sync("hello") is True
        assert post.call_count == 1
        assert post.call_args.kwargs["json"]["chat_id"] == 42
        assert post.call_args.kwargs["json"]["parse_mode"] == "Markdown"

    def test_markdown_fallback(self):
        notifier = TelegramNotifier("token", chat_id=42)
        replies = [response(400, "Bad Request: can't parse entities"), response(200)]
        with patch("main.requests.post", side_effect=replies) as post:
            assert notifier.send_message_sync("**bold") is True

        retry = post.call_args_list[1].kwargs["json"]
        assert "parse_mode" not in retry
        assert retry["text"] == "bold"

    def test_set_chat_id(self):
        notifier = TelegramNotifier("token")
        notifier.set_chat_id(7)
        assert notifier.chat_id == 7

    def test_notifications_share_one_worker(self):
        notifier = TelegramNotifier("token", chat_id=42)
        events = [NotificationEvent(level="info", title="First", message="a"),
                  NotificationEvent(level="warning", title="Second", message="b")]
        with patch.object(notifier, "send_message_sync", return_value=True) as send:
            notifier.notify(events[0])
            worker = notifier._worker
            notifier.notify(events[1])
            notifier._queue.join()

        assert notifier._worker is worker
        assert [c.args[0] for c in send.call_args_list] == [format_notification(e) for e in events]

    def test_worker_survives_send_errors(self):
        notifier = TelegramNotifier("token", chat_id=42)
        with patch.object(notifier, "send_message_sync", side_effect=[RuntimeError("boom"), True]) as send:
            notifier.notify(NotificationEvent(level="info", title="First", message="a"))
            notifier.notify(NotificationEvent(level="info", title="Second", message="b"))
            notifier._queue.join()

        assert send.call_count == 2
        assert notifier._worker.is_alive()
