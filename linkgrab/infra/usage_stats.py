# linkgrab/infra/usage_stats.py
from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock


@dataclass
class _Counts:
    website_visitors: set[str] = field(default_factory=set)
    audio_downloaders: set[str] = field(default_factory=set)
    video_downloaders: set[str] = field(default_factory=set)
    bot_users: set[int] = field(default_factory=set)


class UsageStats:
    """Unique visitors/users since startup (or the last reset)."""

    def __init__(self):
        self._counts = _Counts()
        self._lock = Lock()

    def record_website_visitor(self, addr: str) -> None:
        with self._lock:
            self._counts.website_visitors.add(addr)

    def record_downloader(self, kind: str, addr: str) -> None:
        with self._lock:
            if kind == "audio":
                self._counts.audio_downloaders.add(addr)
            else:
                self._counts.video_downloaders.add(addr)

    def record_bot_user(self, user_id: int) -> None:
        with self._lock:
            self._counts.bot_users.add(user_id)

    def reset(self) -> None:
        with self._lock:
            self._counts = _Counts()

    def summary(self) -> dict[str, int]:
        with self._lock:
            return {
                "website visitors": len(self._counts.website_visitors),
                "audio downloaders": len(self._counts.audio_downloaders),
                "video downloaders": len(self._counts.video_downloaders),
                "bot users": len(self._counts.bot_users),
            }

    def render(self) -> str:
        return "\n".join(f"{name}: {count}" for name, count in self.summary().items())
