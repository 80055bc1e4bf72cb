import json
import logging
import re
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple, Union

TYPE_IMAGE = "image"
TYPE_VIDEO = "video"
TYPE_TEXT = "text"
CONTENT_TYPES = (TYPE_IMAGE, TYPE_VIDEO, TYPE_TEXT)

SOURCE_PLAYLIST = "playlist"
SOURCE_PLAYLIST_FALLBACK = "playlist-fallback"
SOURCE_FEED_MESSAGE = "zoho_cliq"
SOURCE_FEED_PLAYLIST = "zoho_cliq_playlist"
SOURCE_CONTENT = "content"
SOURCE_FALLBACK = "fallback"
SOURCE_ERROR = "error"

PRIORITY_RANK = {"high": 3, "medium": 2, "low": 1}


@dataclass(frozen=True)
class ContentItem:
    id: str
    type: str
    title: str
    duration: int
    source: str
    url: Optional[str] = None
    text: Optional[str] = None
    created_at: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type not in CONTENT_TYPES:
            raise ValueError(f"Unsupported content type: {self.type!r}")
        if int(self.duration) < 1:
            raise ValueError(f"Content duration must be >= 1s, got {self.duration!r}")
        if self.type != TYPE_TEXT and not self.url:
            raise ValueError(f"{self.type} content requires a url")

    @property
    def is_media(self) -> bool:
        return self.type in (TYPE_IMAGE, TYPE_VIDEO)

    @property
    def is_placeholder(self) -> bool:
        return self.type == TYPE_TEXT and self.source in (SOURCE_FALLBACK, SOURCE_ERROR)


@dataclass(frozen=True)
class PlaylistItemRef:
    id: Optional[str] = None
    media_object_id: Optional[str] = None
    name: Optional[str] = None
    title: Optional[str] = None
    file_name: Optional[str] = None
    duration: Optional[int] = None

    @property
    def label(self) -> str:
        return self.title or self.name or self.file_name or "Digital Signage Content"


@dataclass(frozen=True)
class Playlist:
    id: str
    name: str
    duration_per_item: Optional[int]
    is_active: bool
    items: Tuple[PlaylistItemRef, ...] = ()


@dataclass(frozen=True)
class EmergencyMessage:
    id: str
    message: str
    priority: str
    display_duration_seconds: Optional[int]
    is_active: bool = True

    @property
    def rank(self) -> int:
        return PRIORITY_RANK.get(self.priority, PRIORITY_RANK["low"])


@dataclass(frozen=True)
class MediaObject:
    id: str
    file_name: str
    mime_type: str
    url: str


@dataclass(frozen=True)
class ResolvedMedia:
    url: str
    type: str
    title: str
    media_id: str


@dataclass(frozen=True)
class MessageRecord:
    id: str
    title: str
    content: str
    is_active: bool
    created_at: Optional[str]
    created_ts: Optional[float]
    source: Optional[str] = None


@dataclass(frozen=True)
class FeedPlaylist:
    playlist: Playlist


@dataclass(frozen=True)
class FeedMessages:
    messages: Tuple[MessageRecord, ...]


LiveFeed = Union[FeedPlaylist, FeedMessages]


SETTINGS_ALIASES = {
    "default_slide_timer": ("default_slide_timer", "defaultSlideTimerSeconds", "default_slide_timer_seconds"),
    "cliq_message_min_duration": (
        "cliq_message_min_duration",
        "cliqMessageMinDurationSeconds",
        "cliq_message_min_duration_seconds",
    ),
    "cliq_message_max_duration": (
        "cliq_message_max_duration",
        "cliqMessageMaxDurationSeconds",
        "cliq_message_max_duration_seconds",
    ),
    "emergency_message_default_duration": (
        "emergency_message_default_duration",
        "emergencyDefaultDurationSeconds",
        "emergency_default_duration_seconds",
    ),
    "enable_default_timer_override": ("enable_default_timer_override", "enableDefaultTimerOverride"),
}


@dataclass(frozen=True)
class DisplaySettings:
    default_slide_timer: int = 10
    cliq_message_min_duration: int = 5
    cliq_message_max_duration: int = 30
    emergency_message_default_duration: int = 30
    enable_default_timer_override: bool = True

    def merged(self, payload: Optional[Dict]) -> "DisplaySettings":
        if not isinstance(payload, dict):
            return self
        changes: Dict[str, object] = {}
        for spec in fields(self):
            raw = first_value(payload, *SETTINGS_ALIASES[spec.name])
            if raw is None:
                continue
            if spec.name == "enable_default_timer_override":
                changes[spec.name] = as_bool(raw)
                continue
            value = positive_int(raw)
            if value is None:
                logging.warning("Ignoring invalid display setting %s=%r", spec.name, raw)
                continue
            changes[spec.name] = value
        return replace(self, **changes)

    def duration_for(self, raw: object, fallback: int) -> int:
        value = positive_int(raw)
        if value is not None:
            return value
        if self.enable_default_timer_override:
            return max(int(self.default_slide_timer), 1)
        return max(int(fallback), 1)

    def clamp_feed_duration(self, seconds: int) -> int:
        low = max(int(self.cliq_message_min_duration), 1)
        high = int(self.cliq_message_max_duration)
        if high < low:
            return max(int(seconds), 1)
        return min(max(int(seconds), low), high)

    def emergency_duration(self, message: EmergencyMessage) -> int:
        if message.display_duration_seconds:
            return int(message.display_duration_seconds)
        return max(int(self.emergency_message_default_duration), 1)


def first_value(row: Dict, *keys: str) -> Optional[object]:
    for key in keys:
        value = row.get(key)
        if value is not None and value != "":
            return value
    return None


def unwrap_row(row: Dict, wrapper: str) -> Dict:
    inner = row.get(wrapper)
    if isinstance(inner, dict):
        return inner
    return row


def as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "y", "on"}
    return False


def positive_int(value: object) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return None
    return parsed if parsed >= 1 else None


def optional_str(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


CATALYST_TS = re.compile(r"^(\d{4}-\d{2}-\d{2})[ T](\d{2}:\d{2}:\d{2})(?::(\d{1,3}))?$")


def parse_timestamp(value: object) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        ts = float(value)
        return ts / 1000.0 if ts > 1e11 else ts
    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return parse_timestamp(int(text))
    match = CATALYST_TS.match(text)
    if match:
        stamp = datetime.strptime(f"{match.group(1)} {match.group(2)}", "%Y-%m-%d %H:%M:%S")
        millis = int(match.group(3) or 0)
        return stamp.replace(tzinfo=timezone.utc).timestamp() + millis / 1000.0
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        stamp = datetime.fromisoformat(text)
    except ValueError:
        return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp.timestamp()


def parse_playlist_items(raw: object) -> List[PlaylistItemRef]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            logging.warning("Playlist items are not valid JSON: %s", exc)
            return []
    if not isinstance(raw, list):
        logging.warning("Playlist items have unexpected shape: %s", type(raw).__name__)
        return []
    items: List[PlaylistItemRef] = []
    for entry in raw:
        if isinstance(entry, dict):
            items.append(playlist_item_from_row(entry))
        elif isinstance(entry, (str, int)):
            items.append(PlaylistItemRef(id=str(entry)))
    return items


def playlist_item_from_row(row: Dict) -> PlaylistItemRef:
    return PlaylistItemRef(
        id=optional_str(first_value(row, "id", "ROWID")),
        media_object_id=optional_str(first_value(row, "mediaObjectId", "media_object_id")),
        name=optional_str(row.get("name")),
        title=optional_str(row.get("title")),
        file_name=optional_str(first_value(row, "fileName", "file_name")),
        duration=positive_int(first_value(row, "duration", "display_duration")),
    )


def playlist_from_row(row: object) -> Optional[Playlist]:
    if not isinstance(row, dict):
        return None
    data = unwrap_row(row, "playlists")
    playlist_id = optional_str(first_value(data, "id", "ROWID")) or optional_str(data.get("name")) or ""
    return Playlist(
        id=playlist_id,
        name=str(data.get("name") or ""),
        duration_per_item=positive_int(first_value(data, "durationPerItem", "duration", "duration_per_item")),
        is_active=as_bool(first_value(data, "isActive", "is_active")),
        items=tuple(parse_playlist_items(data.get("items"))),
    )


def playlists_from_payload(payload: Dict) -> List[Playlist]:
    rows = payload.get("playlists")
    if not isinstance(rows, list):
        return []
    playlists: List[Playlist] = []
    for row in rows:
        playlist = playlist_from_row(row)
        if playlist is not None:
            playlists.append(playlist)
    return playlists


def emergency_from_row(row: object) -> Optional[EmergencyMessage]:
    if not isinstance(row, dict):
        return None
    data = unwrap_row(row, "emergency_messages")
    message = optional_str(first_value(data, "message", "description", "title"))
    if not message:
        return None
    priority = str(first_value(data, "priority", "importance") or "medium").strip().lower()
    if priority not in PRIORITY_RANK:
        priority = "medium"
    active_raw = first_value(data, "isActive", "is_active")
    return EmergencyMessage(
        id=optional_str(first_value(data, "id", "ROWID")) or message,
        message=message,
        priority=priority,
        display_duration_seconds=positive_int(
            first_value(data, "displayDurationSeconds", "display_duration", "duration")
        ),
        is_active=True if active_raw is None else as_bool(active_raw),
    )


def emergencies_from_payload(payload: Dict) -> List[EmergencyMessage]:
    rows = payload.get("messages")
    if rows is None:
        rows = payload.get("emergencies")
    if not isinstance(rows, list):
        return []
    messages: List[EmergencyMessage] = []
    for row in rows:
        message = emergency_from_row(row)
        if message is not None and message.is_active:
            messages.append(message)
    return messages


def media_from_row(row: object) -> Optional[MediaObject]:
    if not isinstance(row, dict):
        return None
    media_id = optional_str(first_value(row, "id", "ROWID"))
    url = optional_str(first_value(row, "objectUrl", "object_url", "url"))
    if not media_id or not url:
        return None
    return MediaObject(
        id=media_id,
        file_name=str(first_value(row, "fileName", "file_name", "name") or ""),
        mime_type=str(first_value(row, "mimeType", "mime_type") or ""),
        url=url,
    )


def media_index_from_payload(payload: Dict) -> List[MediaObject]:
    rows = payload.get("media")
    if not isinstance(rows, list):
        return []
    index: List[MediaObject] = []
    for row in rows:
        media = media_from_row(row)
        if media is not None:
            index.append(media)
    return index


def message_from_row(row: object) -> Optional[MessageRecord]:
    if not isinstance(row, dict):
        return None
    created_at = first_value(row, "createdAt", "CREATEDTIME", "createdtime", "created_at", "timestamp")
    active_raw = first_value(row, "isActive", "is_active")
    return MessageRecord(
        id=optional_str(first_value(row, "id", "ROWID")) or "",
        title=str(row.get("title") or ""),
        content=str(first_value(row, "content", "description", "text") or ""),
        is_active=True if active_raw is None else as_bool(active_raw),
        created_at=str(created_at) if created_at is not None else None,
        created_ts=parse_timestamp(created_at),
        source=optional_str(row.get("source")),
    )


def messages_from_rows(rows: Iterable[object]) -> List[MessageRecord]:
    records: List[MessageRecord] = []
    for row in rows:
        record = message_from_row(row)
        if record is not None:
            records.append(record)
    return records


def newest_first(records: Iterable[MessageRecord]) -> List[MessageRecord]:
    # unparseable timestamps sort last; ties keep server order
    return sorted(records, key=lambda r: (r.created_ts is None, -(r.created_ts or 0.0)))


def live_feed_from_payload(payload: Dict) -> Optional[LiveFeed]:
    playlist_row = payload.get("playlist")
    if isinstance(playlist_row, dict):
        playlist = playlist_from_row(playlist_row)
        if playlist is not None:
            return FeedPlaylist(playlist=playlist)
    files = payload.get("files")
    if isinstance(files, list) and files:
        return FeedMessages(messages=tuple(newest_first(messages_from_rows(files))))
    return None
