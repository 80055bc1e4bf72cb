from typing import Iterable, Optional, Sequence

from .models import TYPE_IMAGE, TYPE_VIDEO, MediaObject, PlaylistItemRef, ResolvedMedia


def media_type_from_mime(mime_type: str) -> str:
    if str(mime_type or "").lower().startswith("video/"):
        return TYPE_VIDEO
    return TYPE_IMAGE


class MediaResolver:
    def find(self, item_ref: PlaylistItemRef, media_index: Sequence[MediaObject]) -> Optional[MediaObject]:
        if item_ref.media_object_id:
            found = _by_id(media_index, item_ref.media_object_id)
            if found is not None:
                return found
        if item_ref.id:
            found = _by_id(media_index, item_ref.id)
            if found is not None:
                return found
        for name in (item_ref.name, item_ref.title, item_ref.file_name):
            if not name:
                continue
            for media in media_index:
                if media.file_name == name:
                    return media
        return None

    def resolve(self, item_ref: PlaylistItemRef, media_index: Sequence[MediaObject]) -> Optional[ResolvedMedia]:
        media = self.find(item_ref, media_index)
        if media is None:
            return None
        return ResolvedMedia(
            url=media.url,
            type=media_type_from_mime(media.mime_type),
            title=media.file_name or item_ref.label,
            media_id=media.id,
        )


def _by_id(media_index: Iterable[MediaObject], wanted: str) -> Optional[MediaObject]:
    for media in media_index:
        if media.id == wanted:
            return media
    return None
