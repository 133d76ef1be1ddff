"""Twitch Helix client for listing archived VODs and their muted segments."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from db.connection import parse_timestamp
from db.models import MuteInterval, parse_mute_intervals
from engine.errors import CatalogError, ConfigurationError

logger = logging.getLogger(__name__)

PAGE_SIZE = 100

_DURATION_RE = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


def parse_twitch_duration(value: str | None) -> int:
    """Convert a Helix duration such as ``3h2m1s`` to seconds."""
    match = _DURATION_RE.match((value or "").strip())
    if not match:
        return 0
    hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


@dataclass(frozen=True)
class CatalogVideo:
    id: str
    title: str
    url: str
    duration_seconds: int
    created_at: str
    muted_segments: list[MuteInterval] = field(default_factory=list)

    @classmethod
    def from_helix(cls, payload: dict[str, Any]) -> "CatalogVideo":
        return cls(
            id=str(payload["id"]),
            title=payload.get("title") or f"VOD {payload['id']}",
            url=payload.get("url") or f"https://www.twitch.tv/videos/{payload['id']}",
            duration_seconds=parse_twitch_duration(payload.get("duration")),
            created_at=payload.get("created_at") or "",
            muted_segments=parse_mute_intervals(payload.get("muted_segments")),
        )


class TwitchClient:
    _TOKEN_URL = "https://id.twitch.tv/oauth2/token"
    _API_URL = "https://api.twitch.tv/helix/{endpoint}"

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        timeout_sec: int = 20,
        session: requests.Session | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout_sec = timeout_sec
        self._session = session or requests.Session()
        self._access_token: str | None = None
        self._access_token_expire_at: float = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _get_access_token(self) -> str:
        if not self.configured:
            raise ConfigurationError("TWITCH_CLIENT_ID and TWITCH_CLIENT_SECRET are required")

        now = time.time()
        if self._access_token and now < self._access_token_expire_at:
            return self._access_token

        response = self._session.post(
            self._TOKEN_URL,
            params={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            },
            timeout=self.timeout_sec,
        )
        if response.status_code != 200:
            raise CatalogError(f"Twitch token request failed ({response.status_code})")

        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise CatalogError("Twitch token response missing access_token")

        expires_in = int(payload.get("expires_in") or 0)
        self._access_token = token
        self._access_token_expire_at = now + max(0, expires_in - 60)
        return token

    def _request_json(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = self._API_URL.format(endpoint=endpoint)
        response = None
        for _ in range(2):
            token = self._get_access_token()
            headers = {"Client-ID": self.client_id, "Authorization": f"Bearer {token}"}
            response = self._session.get(url, params=params, headers=headers, timeout=self.timeout_sec)
            if response.status_code != 401:
                break
            self._access_token = None
        if response.status_code != 200:
            raise CatalogError(f"Twitch request failed: {endpoint} ({response.status_code})")
        return response.json()

    def get_channel_id(self, login: str) -> str | None:
        payload = self._request_json("users", {"login": login})
        users = payload.get("data") or []
        return str(users[0]["id"]) if users else None

    def list_recent_videos(self, user_id: str, days_back: int = 30, *, now: datetime | None = None) -> list[CatalogVideo]:
        """Archived VODs created within the last ``days_back`` days, newest first."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days_back)
        videos: list[CatalogVideo] = []
        cursor = None
        while True:
            params = {"user_id": user_id, "type": "archive", "first": PAGE_SIZE}
            if cursor:
                params["after"] = cursor
            payload = self._request_json("videos", params)
            page = payload.get("data") or []
            recent = [item for item in page if _created_after(item, cutoff)]
            videos.extend(CatalogVideo.from_helix(item) for item in recent)
            if len(page) < PAGE_SIZE or len(recent) < len(page):
                break
            cursor = (payload.get("pagination") or {}).get("cursor")
            if not cursor:
                break
        return videos

    def get_muted_segments(self, video_id: str) -> list[MuteInterval]:
        """Mute hints for one VOD; an unreachable API yields no hints."""
        try:
            payload = self._request_json("videos", {"id": video_id})
        except (CatalogError, requests.RequestException) as exc:
            logger.warning("Failed to get muted segments for VOD %s: %s", video_id, exc)
            return []
        items = payload.get("data") or []
        if not items:
            return []
        return parse_mute_intervals(items[0].get("muted_segments"))


def _created_after(item: dict[str, Any], cutoff: datetime) -> bool:
    created = parse_timestamp(item.get("created_at"))
    return created is not None and created >= cutoff
