import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Union

from .api import ApiClient
from .cycle import PlaybackCycles
from .errors import AllSourcesExhausted, SourceUnavailable
from .media import MediaResolver
from .models import (
    SOURCE_CONTENT,
    SOURCE_ERROR,
    SOURCE_FALLBACK,
    SOURCE_FEED_MESSAGE,
    SOURCE_FEED_PLAYLIST,
    SOURCE_PLAYLIST,
    SOURCE_PLAYLIST_FALLBACK,
    TYPE_IMAGE,
    TYPE_TEXT,
    TYPE_VIDEO,
    ContentItem,
    DisplaySettings,
    EmergencyMessage,
    FeedMessages,
    FeedPlaylist,
    MediaObject,
    Playlist,
    PlaylistItemRef,
    ResolvedMedia,
    emergencies_from_payload,
    live_feed_from_payload,
    media_index_from_payload,
    messages_from_rows,
    newest_first,
    optional_str,
    playlists_from_payload,
)

PLAYLIST_DEFAULT_SECONDS = 10
FEED_PLAYLIST_DEFAULT_SECONDS = 15
FEED_MESSAGE_DEFAULT_SECONDS = 15
GENERAL_CONTENT_DEFAULT_SECONDS = 8

Resolution = Union[EmergencyMessage, ContentItem]


@dataclass(frozen=True)
class RotationContext:
    identity: str
    playlist: Playlist
    media_index: Sequence[MediaObject]
    source: str
    default_seconds: int


def no_content_item(duration: int = 10) -> ContentItem:
    return ContentItem(
        id="no-content",
        type=TYPE_TEXT,
        text="No content available at this time. Please check your content management system.",
        title="No Content Available",
        duration=max(int(duration), 1),
        source=SOURCE_FALLBACK,
    )


def connection_error_item(duration: int = 10) -> ContentItem:
    return ContentItem(
        id="connection-error",
        type=TYPE_TEXT,
        text="Connection error. Please check your network connection.",
        title="Connection Error",
        duration=max(int(duration), 1),
        source=SOURCE_ERROR,
    )


def unreachable_item(duration: int = 10) -> ContentItem:
    return ContentItem(
        id="server-unreachable",
        type=TYPE_TEXT,
        text="Unable to connect to the content server. Please check your connection.",
        title="Connection Error",
        duration=max(int(duration), 1),
        source=SOURCE_ERROR,
    )


class ContentSource:
    def __init__(
        self,
        api: ApiClient,
        cfg: Optional[Dict] = None,
        settings: Optional[DisplaySettings] = None,
        cycles: Optional[PlaybackCycles] = None,
        resolver: Optional[MediaResolver] = None,
    ) -> None:
        cfg = cfg or {}
        self._api = api
        self._feed_limit = int(cfg.get("live_feed_limit") or 10)
        self._no_content_seconds = int(cfg.get("no_content_duration_sec") or 10)
        self._settings = settings or DisplaySettings()
        self.cycles = cycles or PlaybackCycles()
        self.resolver = resolver or MediaResolver()
        self.skip_count = 0
        self.last_resolution_unreachable = False
        self._rotation: Optional[RotationContext] = None
        self._lock = threading.RLock()
        self._calls = 0
        self._failures = 0

    @property
    def settings(self) -> DisplaySettings:
        return self._settings

    @property
    def rotation(self) -> Optional[RotationContext]:
        return self._rotation

    def refresh_settings(self) -> bool:
        try:
            payload = self._api.get_display_settings()
        except SourceUnavailable as exc:
            logging.warning("Display settings unavailable, keeping current values: %s", exc)
            return False
        settings = self._settings.merged(payload.get("settings"))
        if settings != self._settings:
            logging.info("Display settings updated: %s", settings)
        self._settings = settings
        return True

    def resolve_next(self) -> Resolution:
        with self._lock:
            self._calls = 0
            self._failures = 0
            try:
                emergency = self._run_step("emergency", self._emergency_step)
                if emergency is not None:
                    return emergency
                return self._rotate()
            finally:
                self.last_resolution_unreachable = self._calls > 0 and self._failures == self._calls

    def resolve_rotation(self) -> ContentItem:
        with self._lock:
            self._calls = 0
            self._failures = 0
            try:
                return self._rotate()
            finally:
                self.last_resolution_unreachable = self._calls > 0 and self._failures == self._calls

    def check_emergency(self) -> Optional[EmergencyMessage]:
        with self._lock:
            return self._run_step("emergency", self._emergency_step)

    def upcoming(self, count: int) -> List[ContentItem]:
        with self._lock:
            ctx = self._rotation
            if ctx is None or count <= 0:
                return []
            current = self.cycles.current(ctx.identity)
            length = len(ctx.playlist.items)
            if current is None or length == 0:
                return []
            upcoming: List[ContentItem] = []
            for step in range(1, count + 1):
                ref = ctx.playlist.items[(current + step) % length]
                resolved = self.resolver.resolve(ref, ctx.media_index)
                if resolved is not None:
                    upcoming.append(self._media_item(resolved, ref, ctx))
            return upcoming

    def _fetch(self, label: str, call: Callable[..., Dict], *args: object) -> Optional[Dict]:
        self._calls += 1
        try:
            return call(*args)
        except SourceUnavailable as exc:
            self._failures += 1
            logging.warning("%s unavailable, falling through: %s", label, exc)
            return None

    def _run_step(self, label: str, step: Callable[[], Optional[Resolution]]) -> Optional[Resolution]:
        try:
            return step()
        except Exception:
            logging.exception("Content step %s failed, falling through", label)
            return None

    def _rotate(self) -> ContentItem:
        self._rotation = None
        steps = (
            ("active playlist", self._active_playlist_step),
            ("scheduled playlist", self._scheduled_playlist_step),
            ("fallback image", self._fallback_image_step),
            ("live message feed", self._live_feed_step),
            ("general content", self._general_content_step),
        )
        for label, step in steps:
            item = self._run_step(label, step)
            if item is not None:
                logging.info("Resolved %s from %s: %s", item.type, label, item.title)
                return item
        logging.info("No content available from any source")
        try:
            return no_content_item(self._no_content_seconds)
        except Exception as exc:
            raise AllSourcesExhausted("static fallback could not be built") from exc

    def _emergency_step(self) -> Optional[EmergencyMessage]:
        payload = self._fetch("Emergency feed", self._api.get_active_emergencies)
        if payload is None:
            return None
        messages = emergencies_from_payload(payload)
        if not messages:
            return None
        ranked = sorted(messages, key=lambda m: -m.rank)
        chosen = ranked[0]
        logging.warning("Emergency message active (%s): %s", chosen.priority, chosen.message)
        return chosen

    def _active_playlist_step(self) -> Optional[ContentItem]:
        payload = self._fetch("Playlists", self._api.get_playlists, "all")
        if payload is None:
            return None
        active = [p for p in playlists_from_payload(payload) if p.is_active]
        if not active:
            return None
        if len(active) > 1:
            logging.warning(
                "%d playlists flagged active; using the first one (%s)",
                len(active),
                active[0].name or active[0].id,
            )
        playlist = active[0]
        return self._play_from_playlist(
            playlist,
            identity=f"playlist:{playlist.id}",
            source=SOURCE_PLAYLIST,
            default_seconds=PLAYLIST_DEFAULT_SECONDS,
        )

    def _scheduled_playlist_step(self) -> Optional[ContentItem]:
        payload = self._fetch("Scheduled playlists", self._api.get_playlists, "scheduled")
        if payload is None:
            return None
        scheduled = playlists_from_payload(payload)
        if not scheduled:
            return None
        playlist = scheduled[0]
        return self._play_from_playlist(
            playlist,
            identity=f"scheduled:{playlist.id}",
            source=SOURCE_PLAYLIST,
            default_seconds=PLAYLIST_DEFAULT_SECONDS,
        )

    def _fallback_image_step(self) -> Optional[ContentItem]:
        payload = self._fetch("Fallback image", self._api.get_default_fallback_image)
        if payload is None:
            return None
        image = payload.get("fallbackImage")
        if not isinstance(image, dict):
            return None
        url = optional_str(image.get("url"))
        if not url:
            return None
        media_type = TYPE_VIDEO if str(image.get("type") or "").lower() == TYPE_VIDEO else TYPE_IMAGE
        return ContentItem(
            id=optional_str(image.get("id")) or "fallback-image",
            type=media_type,
            url=url,
            title=str(image.get("title") or "Fallback Image"),
            duration=self._settings.duration_for(image.get("duration"), PLAYLIST_DEFAULT_SECONDS),
            source=SOURCE_FALLBACK,
        )

    def _live_feed_step(self) -> Optional[ContentItem]:
        payload = self._fetch("Live message feed", self._api.get_live_message_feed, self._feed_limit)
        if payload is None:
            return None
        feed = live_feed_from_payload(payload)
        if isinstance(feed, FeedPlaylist):
            playlist = feed.playlist
            return self._play_from_playlist(
                playlist,
                identity=f"feed-playlist:{playlist.id}",
                source=SOURCE_FEED_PLAYLIST,
                default_seconds=FEED_PLAYLIST_DEFAULT_SECONDS,
            )
        if isinstance(feed, FeedMessages) and feed.messages:
            index = self.cycles.advance("feed-messages", len(feed.messages))
            record = feed.messages[index]
            duration = self._settings.duration_for(None, FEED_MESSAGE_DEFAULT_SECONDS)
            return ContentItem(
                id=record.id or f"feed-message:{index}",
                type=TYPE_TEXT,
                text=record.content or record.title or "Zoho Cliq Message",
                title=record.title or "Zoho Cliq",
                duration=self._settings.clamp_feed_duration(duration),
                source=SOURCE_FEED_MESSAGE,
                created_at=record.created_at,
            )
        return None

    def _general_content_step(self) -> Optional[ContentItem]:
        payload = self._fetch("General content", self._api.get_general_content)
        if payload is None:
            return None
        files = payload.get("files")
        if not isinstance(files, list):
            return None
        active = newest_first(r for r in messages_from_rows(files) if r.is_active)
        if not active:
            return None
        index = self.cycles.advance("content", len(active))
        record = active[index]
        return ContentItem(
            id=record.id or f"content:{index}",
            type=TYPE_TEXT,
            text=record.content or record.title or "Digital Signage Message",
            title=record.title or "Digital Signage",
            duration=self._settings.duration_for(None, GENERAL_CONTENT_DEFAULT_SECONDS),
            source=SOURCE_CONTENT,
            created_at=record.created_at,
        )

    def _play_from_playlist(
        self,
        playlist: Playlist,
        identity: str,
        source: str,
        default_seconds: int,
    ) -> Optional[ContentItem]:
        items = playlist.items
        if not items:
            logging.info("Playlist %s is empty, falling through", playlist.name or playlist.id)
            return None
        media_payload = self._fetch("Media index", self._api.list_media)
        if media_payload is None:
            return None
        ctx = RotationContext(
            identity=identity,
            playlist=playlist,
            media_index=media_index_from_payload(media_payload),
            source=source,
            default_seconds=default_seconds,
        )
        length = len(items)
        # each miss raises skip_count, so this ends within 2 * length + 1 passes
        while True:
            index = self.cycles.advance(identity, length)
            ref = items[index]
            resolved = self.resolver.resolve(ref, ctx.media_index)
            if resolved is not None:
                self._rotation = ctx
                return self._media_item(resolved, ref, ctx)
            self.skip_count += 1
            logging.warning(
                "No media object for item %r of playlist %s (index=%d, misses=%d)",
                ref.label,
                playlist.name or playlist.id,
                index,
                self.skip_count,
            )
            if self.skip_count > 2 * length:
                self.skip_count = 0
                self._rotation = ctx
                logging.error("Too many unresolved items in %s; showing text card for %r", identity, ref.label)
                return ContentItem(
                    id=ref.id or f"{identity}:{index}",
                    type=TYPE_TEXT,
                    text=f"Content: {ref.label}",
                    title=ref.label,
                    duration=self._item_seconds(ref, ctx),
                    source=SOURCE_PLAYLIST_FALLBACK,
                )

    def _item_seconds(self, ref: PlaylistItemRef, ctx: RotationContext) -> int:
        return self._settings.duration_for(ctx.playlist.duration_per_item or ref.duration, ctx.default_seconds)

    def _media_item(self, resolved: ResolvedMedia, ref: PlaylistItemRef, ctx: RotationContext) -> ContentItem:
        return ContentItem(
            id=resolved.media_id,
            type=resolved.type,
            url=resolved.url,
            title=resolved.title,
            duration=self._item_seconds(ref, ctx),
            source=ctx.source,
        )
