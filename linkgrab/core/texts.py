# linkgrab/core/texts.py
"""
User-facing texts.

``get_text(key, kind)`` resolves a message for the bot, ``web_error_text``
for the direct-download website. Both surfaces map every ``ErrorKind`` to a
message; operator detail never leaks into these strings.
"""
from __future__ import annotations

from linkgrab.core.domain import ErrorKind, MediaKind

EXAMPLE_LINK = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

COMMANDS: tuple[tuple[str, str], ...] = (
    ("/help", "Show this message"),
    ("/video", "Download a video via the provided link"),
    ("/audio", "Download audio via the provided link"),
)

_NOUN = {MediaKind.VIDEO: "video", MediaKind.AUDIO: "track"}

TEXTS: dict[str, str] = {
    "no_link": (
        "No link provided\n"
        "An example of using the command:\n"
        "\t/{command} {example}"
    ),
    "progress": "Downloading {kind}...",
    "too_large": "The {noun} is too large",
    "is_stream": "Live streams can't be downloaded while they're ongoing",
    "not_found": (
        "The provided link doesn't point to an existing video/track.\n"
        "Make sure the link is copied correctly and try again.\n"
        "Keep in mind that shortened links are not accepted."
    ),
    "fetch_failed": "An unexpected error occured while downloading",
    "loglevel_set": "Max log level is now {level}",
    "loglevel_error": "Error: {error}",
}

_ERROR_KEYS = {
    ErrorKind.INVALID_LINK: "not_found",
    ErrorKind.NOT_FOUND: "not_found",
    ErrorKind.IS_STREAM: "is_stream",
    ErrorKind.TOO_LARGE: "too_large",
    ErrorKind.METADATA_FETCH_FAILED: "fetch_failed",
    ErrorKind.DATA_FETCH_FAILED: "fetch_failed",
}

_WEB_ERRORS = {
    ErrorKind.TOO_LARGE: "The media is too big",
    ErrorKind.IS_STREAM: "Livestreams can't be downloaded",
    ErrorKind.NOT_FOUND: "Invalid video ID, make sure the link is copied & pasted correctly",
    ErrorKind.INVALID_LINK: "Invalid link, make sure the link is copied & pasted correctly",
    ErrorKind.METADATA_FETCH_FAILED: "Server error",
    ErrorKind.DATA_FETCH_FAILED: "Server error",
}


def get_text(key: str, kind: MediaKind | None = None, **params: str) -> str:
    """
    Get a bot text by key.

    ``{kind}``, ``{noun}`` and ``{command}`` are filled from *kind* when
    given; extra placeholders come from *params*.
    """
    template = TEXTS.get(key)
    if template is None:
        return key
    if kind is not None:
        params.setdefault("kind", kind.value)
        params.setdefault("noun", _NOUN[kind])
        params.setdefault("command", kind.value)
    params.setdefault("example", EXAMPLE_LINK)
    return template.format(**params)


def error_text(error: ErrorKind, kind: MediaKind) -> str:
    """Bot message for a failed request."""
    return get_text(_ERROR_KEYS[error], kind)


def web_error_text(error: ErrorKind) -> str:
    """Plain-text body for a failed direct download."""
    return _WEB_ERRORS[error]


def help_text() -> str:
    lines = ["Available commands:", ""]
    lines.extend(f"{command} - {description}" for command, description in COMMANDS)
    return "\n".join(lines) + "\n"
