# linkgrab/core/resolver.py
"""
Link resolution.

Turns whatever the user pasted into a canonical long-form link, or rejects
it with ``ErrorKind.INVALID_LINK``. Purely syntactic, no network access.

Rules are tried in order, first match wins:

==========================================  ===================================
input                                       canonical form
==========================================  ===================================
www.youtube.com/watch?v=ID                  https://youtu.be/ID
music.youtube.com/watch?v=ID                https://youtu.be/ID
youtu.be/ID                                 https://youtu.be/ID
www.instagram.com/reel/ID                   https://www.instagram.com/reel/ID
vm.tiktok.com, vk.com, twitter.com, x.com   https://{host}{path}
==========================================  ===================================
"""
from __future__ import annotations

from typing import Callable, Optional
from urllib.parse import urlsplit

from linkgrab.core.domain import (
    AcquisitionError,
    ErrorKind,
    SourceDescriptor,
    SourceSite,
)

_Rule = Callable[[str, str, str], Optional[SourceDescriptor]]

_PASS_THROUGH_HOSTS: dict[str, SourceSite] = {
    "vm.tiktok.com": SourceSite.TIKTOK,
    "vk.com": SourceSite.VK,
    "twitter.com": SourceSite.TWITTER,
    "x.com": SourceSite.X,
}


def _youtube_watch(host: str, path: str, query: str) -> Optional[SourceDescriptor]:
    if host not in ("www.youtube.com", "music.youtube.com") or path != "/watch":
        return None
    for pair in query.split("&"):
        if pair.startswith("v="):
            video_id = pair[2:]
            if not video_id:
                return None
            return SourceDescriptor(f"https://youtu.be/{video_id}", SourceSite.YOUTUBE)
    return None


def _youtube_short(host: str, path: str, query: str) -> Optional[SourceDescriptor]:
    if host != "youtu.be":
        return None
    video_id = path[1:] if path.startswith("/") else ""
    if not video_id:
        return None
    return SourceDescriptor(f"https://youtu.be/{video_id}", SourceSite.YOUTUBE)


def _instagram_reel(host: str, path: str, query: str) -> Optional[SourceDescriptor]:
    if host != "www.instagram.com" or not path.startswith("/reel/"):
        return None
    reel_id = path[len("/reel/"):]
    if not reel_id:
        return None
    return SourceDescriptor(f"https://www.instagram.com/reel/{reel_id}", SourceSite.INSTAGRAM)


def _pass_through(host: str, path: str, query: str) -> Optional[SourceDescriptor]:
    site = _PASS_THROUGH_HOSTS.get(host)
    if site is None:
        return None
    return SourceDescriptor(f"https://{host}{path}", site)


RULES: tuple[_Rule, ...] = (
    _youtube_watch,
    _youtube_short,
    _instagram_reel,
    _pass_through,
)


def resolve(text: str) -> SourceDescriptor:
    """
    Resolve user input to a canonical source.

    Raises:
        AcquisitionError: with ``ErrorKind.INVALID_LINK`` for anything that
            isn't a link to a supported site. Nothing else is ever raised.
    """
    if not isinstance(text, str):
        raise AcquisitionError(ErrorKind.INVALID_LINK, "input is not a string")

    link = text.strip()
    if not link:
        raise AcquisitionError(ErrorKind.INVALID_LINK, "empty link")

    try:
        parts = urlsplit(link)
        host = parts.hostname
    except ValueError as exc:
        raise AcquisitionError(ErrorKind.INVALID_LINK, f"unparseable link: {exc}") from exc

    if parts.scheme not in ("http", "https") or not host:
        raise AcquisitionError(ErrorKind.INVALID_LINK, "not an http(s) link")

    for rule in RULES:
        descriptor = rule(host, parts.path, parts.query)
        if descriptor is not None:
            return descriptor

    raise AcquisitionError(ErrorKind.INVALID_LINK, f"unsupported host/path: {host}{parts.path}")
