"""Track fingerprints for duplicate detection.

Hey future me - a playlist can hold the "same" song twice under different Spotify
ids (single vs album release, remaster, regional relink). Two tracks whose
fingerprints are equal are considered the same recording:

- same ISRC (or both missing)
- same normalized title ("Song (feat. X) - Radio Edit" -> "song")
- same lowercase artist names, in credit order
- same duration in whole seconds

Examples:
    >>> normalize_title("Levels (feat. Etta James) - Radio Edit")
    'levels'
"""

import re
from dataclasses import dataclass, field

from spotify_assistant.domain.entities import Track

_FEATURING = re.compile(r"\s*[(\[]\s*(feat\.|featuring)[^)\]]*[)\]]|\s+(feat\.|featuring)\s.*$", re.I)
_WHITESPACE = re.compile(r"\s+")
_VERSION_SUFFIXES: tuple[str, ...] = (" - radio edit", " - remastered")


def normalize_title(title: str) -> str:
    """Lowercase a title and strip featuring credits and edit/remaster suffixes."""
    normalized = _FEATURING.sub("", title.lower())
    for suffix in _VERSION_SUFFIXES:
        normalized = normalized.replace(suffix, "")
    return _WHITESPACE.sub(" ", normalized.strip())


@dataclass(frozen=True)
class TrackFingerprint:
    """Identity of a recording independent of its provider id."""

    isrc: str | None
    title: str
    artists: tuple[str, ...]
    duration_bucket: int
    track_id: str | None = field(default=None, compare=False)

    @classmethod
    def of(cls, track: Track) -> "TrackFingerprint":
        """Compute the fingerprint of a track."""
        return cls(
            isrc=track.isrc.upper() if track.isrc else None,
            title=normalize_title(track.title),
            artists=tuple(name.lower() for name in track.artists),
            duration_bucket=track.duration_ms // 1000,
            track_id=track.id,
        )
