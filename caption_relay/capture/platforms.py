"""Per-platform selector profiles. Selectors are configuration data, tried in order."""
from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlparse


@dataclass(frozen=True)
class PlatformProfile:
    name: str
    container_selectors: tuple[str, ...]
    caption_text_selectors: tuple[str, ...]
    speaker_selectors: tuple[str, ...]
    meeting_hosts: tuple[str, ...] = ()
    meeting_path_markers: tuple[str, ...] = field(default_factory=tuple)

    def is_meeting_url(self, url: str) -> bool:
        """True when url is on a meeting host and contains a meeting path marker."""
        if not url:
            return False
        parsed = urlparse(url)
        host = (parsed.hostname or "").lower()
        if not any(host == h or host.endswith("." + h) for h in self.meeting_hosts):
            return False
        # path, query and fragment (Teams routes meetings through the fragment)
        rest = url.split(parsed.netloc, 1)[-1]
        return any(marker in rest for marker in self.meeting_path_markers)


TEAMS = PlatformProfile(
    name="teams",
    container_selectors=(
        '[data-tid="closed-captions-v2-container"]',
        '[class*="caption"]',
        '[class*="subtitle"]',
        '[class*="transcription"]',
        ".fui-StyledText",
        '[role="log"]',
    ),
    caption_text_selectors=(
        '[data-tid="closed-caption-text"]',
        ".caption-text",
        ".subtitle-text",
        "p",
        "span",
        "div",
    ),
    speaker_selectors=(
        '[data-tid="closed-caption-speaker"]',
        ".caption-speaker",
        ".speaker-name",
        "strong",
        "b",
    ),
    meeting_hosts=("teams.microsoft.com",),
    meeting_path_markers=("/meet", "/calling"),
)

_PROFILES: dict[str, PlatformProfile] = {TEAMS.name: TEAMS}


def get_profile(name: str) -> PlatformProfile:
    """Look up a built-in profile by platform name (case-insensitive)."""
    key = (name or "").strip().lower()
    try:
        return _PROFILES[key]
    except KeyError:
        raise ValueError(f"Unknown platform {name!r}; known: {', '.join(sorted(_PROFILES))}") from None


def register_profile(profile: PlatformProfile) -> None:
    _PROFILES[profile.name.lower()] = profile
