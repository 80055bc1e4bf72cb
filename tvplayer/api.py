import logging
from typing import Dict, Optional

import requests

from .errors import SourceUnavailable

PLAYLIST_ACTIONS = {
    "all": "getAll",
    "active": "getActive",
    "scheduled": "getScheduled",
}


class ApiClient:
    def __init__(self, cfg: Dict) -> None:
        self._base_url = str(cfg.get("api_base_url") or "").rstrip("/")
        self._timeout = int(cfg.get("request_timeout_sec") or 15)
        self._user_id = str(cfg.get("user_id") or "")
        self._location_id = str(cfg.get("location_id") or "")
        self._api_key = str(cfg.get("api_key") or "")

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["X-TV-Player-API-Key"] = self._api_key
        if self._user_id:
            headers["X-TV-Player-User-ID"] = self._user_id
        if self._location_id:
            headers["X-TV-Player-Location-ID"] = self._location_id
        return headers

    def call(self, function_name: str, action: str, **params: object) -> Dict:
        payload: Dict[str, object] = {"action": action}
        payload.update(params)
        if self._user_id:
            payload["user_id"] = self._user_id
        if self._location_id:
            payload["location_id"] = self._location_id
        url = f"{self._base_url}/{function_name}"
        try:
            resp = requests.post(url, json=payload, headers=self._headers(), timeout=self._timeout)
            resp.raise_for_status()
            data = resp.json()
        except Exception as exc:
            raise SourceUnavailable(f"{function_name}/{action} failed: {exc}") from exc
        if not isinstance(data, dict):
            raise SourceUnavailable(f"{function_name}/{action} returned {type(data).__name__}, expected object")
        if data.get("success") is False:
            message = data.get("message") or data.get("error") or "success=false"
            raise SourceUnavailable(f"{function_name}/{action} rejected: {message}")
        logging.debug("API %s/%s ok", function_name, action)
        return data

    def get_active_emergencies(self) -> Dict:
        return self.call("emergency", "getActive")

    def get_playlists(self, playlist_filter: str = "all") -> Dict:
        action = PLAYLIST_ACTIONS.get(playlist_filter)
        if action is None:
            raise ValueError(f"Unknown playlist filter: {playlist_filter}")
        return self.call("playlist", action)

    def get_default_fallback_image(self) -> Dict:
        return self.call("content", "getDefaultFallbackImage")

    def get_live_message_feed(self, limit: Optional[int] = None) -> Dict:
        if limit is None:
            return self.call("content", "getLiveCliqMessages")
        return self.call("content", "getLiveCliqMessages", limit=int(limit))

    def get_general_content(self) -> Dict:
        return self.call("content", "getAll")

    def list_media(self) -> Dict:
        return self.call("media-upload", "listMedia")

    def get_display_settings(self) -> Dict:
        return self.call("settings", "getDisplaySettings")
