import unittest
from typing import Any, Dict, List, Optional

from tvplayer.errors import SourceUnavailable
from tvplayer.models import DisplaySettings, EmergencyMessage
from tvplayer.source import ContentSource


def empty_responses() -> Dict[str, Any]:
    return {
        "emergency": {"success": True, "messages": []},
        "playlists_all": {"success": True, "playlists": []},
        "playlists_scheduled": {"success": True, "playlists": []},
        "fallback": {"success": True, "fallbackImage": None},
        "feed": {"success": True, "files": []},
        "content": {"success": True, "files": []},
        "media": {"success": True, "media": []},
        "settings": {"success": True, "settings": {}},
    }


class FakeApi:
    def __init__(self, responses: Optional[Dict[str, Any]] = None) -> None:
        self.responses = empty_responses()
        self.responses.update(responses or {})
        self.calls: List[str] = []

    def _answer(self, key: str) -> Dict[str, Any]:
        self.calls.append(key)
        value = self.responses[key]
        if isinstance(value, Exception):
            raise value
        return value

    def get_active_emergencies(self) -> Dict[str, Any]:
        return self._answer("emergency")

    def get_playlists(self, playlist_filter: str = "all") -> Dict[str, Any]:
        return self._answer(f"playlists_{playlist_filter}")

    def get_default_fallback_image(self) -> Dict[str, Any]:
        return self._answer("fallback")

    def get_live_message_feed(self, limit: Optional[int] = None) -> Dict[str, Any]:
        return self._answer("feed")

    def get_general_content(self) -> Dict[str, Any]:
        return self._answer("content")

    def list_media(self) -> Dict[str, Any]:
        return self._answer("media")

    def get_display_settings(self) -> Dict[str, Any]:
        return self._answer("settings")


MEDIA = {
    "success": True,
    "media": [
        {"id": "m1", "fileName": "a.jpg", "mimeType": "image/jpeg", "objectUrl": "http://cdn/a.jpg"},
        {"id": "m2", "fileName": "b.jpg", "mimeType": "image/jpeg", "objectUrl": "http://cdn/b.jpg"},
        {"id": "m3", "fileName": "c.mp4", "mimeType": "video/mp4", "objectUrl": "http://cdn/c.mp4"},
    ],
}


def playlist_row(playlist_id: str, media_ids: List[str], active: bool = True, duration: int = 10) -> Dict[str, Any]:
    return {
        "id": playlist_id,
        "name": f"Playlist {playlist_id}",
        "isActive": active,
        "duration": duration,
        "items": [{"mediaObjectId": m, "name": f"Slide {m}"} for m in media_ids],
    }


def every_source() -> Dict[str, Any]:
    return {
        "emergency": {"success": True, "messages": [{"id": "e1", "message": "Fire drill", "priority": "high"}]},
        "playlists_all": {"success": True, "playlists": [playlist_row("p1", ["m1", "m2"])]},
        "playlists_scheduled": {"success": True, "playlists": [playlist_row("s1", ["m3"], active=False)]},
        "fallback": {"success": True, "fallbackImage": {"id": "f1", "url": "http://cdn/fallback.jpg"}},
        "feed": {"success": True, "files": [{"id": "q1", "title": "Cliq", "content": "Standup at 10"}]},
        "content": {"success": True, "files": [{"id": "g1", "title": "News", "content": "Welcome", "isActive": True}]},
        "media": MEDIA,
    }


class PriorityOrderTests(unittest.TestCase):
    def test_highest_available_source_wins(self) -> None:
        responses = every_source()
        expected = [
            ("emergency", None),
            ("playlists_all", "playlist"),
            ("playlists_scheduled", "playlist"),
            ("fallback", "fallback"),
            ("feed", "zoho_cliq"),
            ("content", "content"),
        ]
        empty = empty_responses()
        for key, source_tag in expected:
            result = ContentSource(FakeApi(responses)).resolve_next()
            if source_tag is None:
                self.assertIsInstance(result, EmergencyMessage)
            else:
                self.assertEqual(result.source, source_tag, key)
            responses[key] = empty[key]

        result = ContentSource(FakeApi(responses)).resolve_next()
        self.assertEqual(result.id, "no-content")

    def test_steps_run_in_order_and_stop_at_first_success(self) -> None:
        fake_api = FakeApi({"fallback": every_source()["fallback"]})
        ContentSource(fake_api).resolve_next()
        self.assertEqual(fake_api.calls, ["emergency", "playlists_all", "playlists_scheduled", "fallback"])

    def test_inactive_playlists_are_ignored(self) -> None:
        fake_api = FakeApi(
            {
                "playlists_all": {"success": True, "playlists": [playlist_row("p1", ["m1"], active=False)]},
                "media": MEDIA,
            }
        )
        result = ContentSource(fake_api).resolve_next()
        self.assertEqual(result.id, "no-content")

    def test_first_active_playlist_wins(self) -> None:
        fake_api = FakeApi(
            {
                "playlists_all": {
                    "success": True,
                    "playlists": [playlist_row("p1", ["m1"]), playlist_row("p2", ["m3"])],
                },
                "media": MEDIA,
            }
        )
        source = ContentSource(fake_api)
        result = source.resolve_next()
        self.assertEqual(result.id, "m1")
        self.assertEqual(source.rotation.identity, "playlist:p1")

    def test_all_empty_yields_static_card_repeatedly(self) -> None:
        source = ContentSource(FakeApi())
        for _ in range(5):
            result = source.resolve_next()
            self.assertEqual(result.id, "no-content")
            self.assertEqual(result.source, "fallback")
            self.assertEqual(result.type, "text")
            self.assertFalse(source.last_resolution_unreachable)

    def test_all_failing_marks_resolution_unreachable(self) -> None:
        down = SourceUnavailable("connection refused")
        fake_api = FakeApi({key: down for key in empty_responses()})
        source = ContentSource(fake_api)
        result = source.resolve_next()
        self.assertEqual(result.id, "no-content")
        self.assertTrue(source.last_resolution_unreachable)

    def test_partial_failure_is_not_unreachable(self) -> None:
        fake_api = FakeApi({"playlists_all": SourceUnavailable("timeout")})
        source = ContentSource(fake_api)
        source.resolve_next()
        self.assertFalse(source.last_resolution_unreachable)

    def test_malformed_payloads_fall_through(self) -> None:
        fake_api = FakeApi(
            {
                "playlists_all": {"success": True, "playlists": "not-a-list"},
                "fallback": {"success": True, "fallbackImage": "broken"},
                "content": every_source()["content"],
            }
        )
        result = ContentSource(fake_api).resolve_next()
        self.assertEqual(result.source, "content")


class PlaylistRotationTests(unittest.TestCase):
    def test_three_content_ends_yield_b_c_a(self) -> None:
        fake_api = FakeApi(
            {
                "playlists_all": {"success": True, "playlists": [playlist_row("p1", ["m1", "m2", "m3"])]},
                "media": MEDIA,
            }
        )
        source = ContentSource(fake_api)
        ids = [source.resolve_next().id for _ in range(3)]
        self.assertEqual(ids, ["m2", "m3", "m1"])

    def test_cycle_visits_each_item_once_per_round(self) -> None:
        fake_api = FakeApi(
            {
                "playlists_all": {"success": True, "playlists": [playlist_row("p1", ["m1", "m2", "m3"])]},
                "media": MEDIA,
            }
        )
        source = ContentSource(fake_api)
        first_round = [source.resolve_rotation().id for _ in range(3)]
        second_round = [source.resolve_rotation().id for _ in range(3)]
        self.assertEqual(sorted(first_round), ["m1", "m2", "m3"])
        self.assertEqual(first_round, second_round)

    def test_playlist_item_carries_media_and_duration(self) -> None:
        fake_api = FakeApi(
            {
                "playlists_all": {"success": True, "playlists": [playlist_row("p1", ["m1", "m3"], duration=25)]},
                "media": MEDIA,
            }
        )
        item = ContentSource(fake_api).resolve_next()
        self.assertEqual(item.id, "m3")
        self.assertEqual(item.type, "video")
        self.assertEqual(item.url, "http://cdn/c.mp4")
        self.assertEqual(item.duration, 25)
        self.assertEqual(item.source, "playlist")

    def test_missing_media_synthesizes_text_item_on_seventh_encounter(self) -> None:
        fake_api = FakeApi(
            {
                "playlists_all": {"success": True, "playlists": [playlist_row("p1", ["m1", "m9", "m3"])]},
                "media": MEDIA,
            }
        )
        source = ContentSource(fake_api)
        results = [source.resolve_rotation() for _ in range(12)]
        self.assertEqual([r.id for r in results], ["m3", "m1"] * 6)
        self.assertEqual(source.skip_count, 6)

        fallback = source.resolve_rotation()
        self.assertEqual(fallback.source, "playlist-fallback")
        self.assertEqual(fallback.type, "text")
        self.assertEqual(fallback.title, "Slide m9")
        self.assertEqual(fallback.text, "Content: Slide m9")
        self.assertEqual(source.skip_count, 0)
        self.assertEqual(source.resolve_rotation().id, "m3")

    def test_empty_playlist_falls_through(self) -> None:
        fake_api = FakeApi(
            {
                "playlists_all": {"success": True, "playlists": [playlist_row("p1", [])]},
                "playlists_scheduled": {"success": True, "playlists": [playlist_row("s1", ["m1", "m2"])]},
                "media": MEDIA,
            }
        )
        source = ContentSource(fake_api)
        self.assertEqual(source.resolve_next().id, "m2")
        self.assertEqual(source.rotation.identity, "scheduled:s1")

    def test_upcoming_follows_cycle_order(self) -> None:
        fake_api = FakeApi(
            {
                "playlists_all": {"success": True, "playlists": [playlist_row("p1", ["m1", "m2", "m3"])]},
                "media": MEDIA,
            }
        )
        source = ContentSource(fake_api)
        self.assertEqual(source.upcoming(3), [])
        source.resolve_next()
        self.assertEqual([i.id for i in source.upcoming(3)], ["m3", "m1", "m2"])


class ScenarioTests(unittest.TestCase):
    def test_high_priority_emergency_beats_low(self) -> None:
        fake_api = FakeApi(
            {
                "emergency": {
                    "success": True,
                    "messages": [
                        {"id": "low-1", "message": "Parking lot closed", "priority": "low"},
                        {"id": "high-1", "message": "Evacuate building", "priority": "high"},
                    ],
                }
            }
        )
        result = ContentSource(fake_api).resolve_next()
        self.assertIsInstance(result, EmergencyMessage)
        self.assertEqual(result.id, "high-1")

    def test_playlist_network_error_falls_through_to_scheduled(self) -> None:
        fake_api = FakeApi(
            {
                "playlists_all": SourceUnavailable("connection reset"),
                "playlists_scheduled": {"success": True, "playlists": [playlist_row("s1", ["m1", "m2"])]},
                "media": MEDIA,
            }
        )
        source = ContentSource(fake_api)
        result = source.resolve_next()
        self.assertEqual(result.id, "m2")
        self.assertIn("playlists_scheduled", fake_api.calls)

    def test_fallback_image_is_rendered_as_image(self) -> None:
        fake_api = FakeApi(
            {"fallback": {"success": True, "fallbackImage": {"id": "f1", "url": "http://cdn/fallback.jpg"}}}
        )
        result = ContentSource(fake_api).resolve_next()
        self.assertEqual(result.type, "image")
        self.assertEqual(result.source, "fallback")
        self.assertEqual(result.url, "http://cdn/fallback.jpg")

    def test_emergency_check_alone(self) -> None:
        fake_api = FakeApi(every_source())
        message = ContentSource(fake_api).check_emergency()
        self.assertEqual(message.id, "e1")
        self.assertEqual(fake_api.calls, ["emergency"])

    def test_rotation_skips_emergency_step(self) -> None:
        fake_api = FakeApi(every_source())
        result = ContentSource(fake_api).resolve_rotation()
        self.assertEqual(result.source, "playlist")
        self.assertNotIn("emergency", fake_api.calls)


class FeedAndContentTests(unittest.TestCase):
    def test_live_feed_playlist_rotates_with_own_cycle(self) -> None:
        fake_api = FakeApi(
            {
                "feed": {"success": True, "playlist": {"id": "cliq", "name": "Cliq", "items": [{"id": "m1"}, {"id": "m2"}]}},
                "media": MEDIA,
            }
        )
        source = ContentSource(fake_api)
        first = source.resolve_next()
        self.assertEqual(first.id, "m2")
        self.assertEqual(first.source, "zoho_cliq_playlist")
        self.assertEqual(source.cycles.current("feed-playlist:cliq"), 1)

    def test_legacy_feed_messages_newest_first_and_clamped(self) -> None:
        fake_api = FakeApi(
            {
                "feed": {
                    "success": True,
                    "files": [
                        {"id": "older", "content": "Older", "createdAt": "2024-01-01T00:00:00Z"},
                        {"id": "newer", "content": "Newer", "createdAt": "2024-06-01T00:00:00Z"},
                    ],
                }
            }
        )
        settings = DisplaySettings(
            enable_default_timer_override=False,
            cliq_message_min_duration=20,
            cliq_message_max_duration=40,
        )
        source = ContentSource(fake_api, settings=settings)
        first = source.resolve_next()
        second = source.resolve_next()
        self.assertEqual([first.id, second.id], ["older", "newer"])
        self.assertEqual(first.type, "text")
        self.assertEqual(first.source, "zoho_cliq")
        self.assertEqual(first.duration, 20)

    def test_general_content_uses_active_items_only(self) -> None:
        fake_api = FakeApi(
            {
                "content": {
                    "success": True,
                    "files": [
                        {"id": "g1", "title": "Hidden", "content": "x", "isActive": False},
                        {"id": "g2", "title": "Shown", "content": "Hello", "isActive": True},
                    ],
                }
            }
        )
        source = ContentSource(fake_api, settings=DisplaySettings(enable_default_timer_override=False))
        for _ in range(3):
            result = source.resolve_next()
            self.assertEqual(result.id, "g2")
            self.assertEqual(result.duration, 8)

    def test_refresh_settings_merges_server_values(self) -> None:
        fake_api = FakeApi({"settings": {"success": True, "settings": {"default_slide_timer": 25}}})
        source = ContentSource(fake_api)
        self.assertTrue(source.refresh_settings())
        self.assertEqual(source.settings.default_slide_timer, 25)

    def test_refresh_settings_keeps_values_on_failure(self) -> None:
        fake_api = FakeApi({"settings": SourceUnavailable("timeout")})
        source = ContentSource(fake_api, settings=DisplaySettings(default_slide_timer=14))
        self.assertFalse(source.refresh_settings())
        self.assertEqual(source.settings.default_slide_timer, 14)


if __name__ == "__main__":
    unittest.main()
