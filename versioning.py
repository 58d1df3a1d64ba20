"""
Semantic version parsing, ordering and tag selection.

Tags look like ``1.2.3``, ``v17.2.0``, ``2.0.0-rc.1`` or ``1.0.0+build.5``.
Anything that is not a dotted triple (``latest``, ``17``, ``1.2``) is not a
version; callers get ``None`` back and fall back to plain string handling.
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

SEMVER_REGEX = re.compile(
    r"v?([0-9]+)\.([0-9]+)\.([0-9]+)"
    r"(?:-([0-9A-Za-z\-.]+))?"
    r"(?:\+([0-9A-Za-z\-.]+))?"
)


class TagSelectionError(ValueError):
    """No tag could be selected from a registry listing."""


class NoTags(TagSelectionError):
    """The registry returned an empty tag listing."""


class NoStableTags(TagSelectionError):
    """Every tag was removed by the exclude patterns."""


@dataclass(frozen=True)
class Version:
    """A parsed ``major.minor.patch[-prerelease][+build]`` tag."""
    major: int
    minor: int
    patch: int
    prerelease: Optional[str]
    build: Optional[str]
    original: str

    def sort_key(self) -> Tuple[int, int, int, bool, str]:
        # Stable sorts above any prerelease of the same triple; build is ignored
        return (self.major, self.minor, self.patch,
                self.prerelease is None, self.prerelease or "")

    def core(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    def __str__(self) -> str:
        return self.original


def parse_version(tag: str) -> Optional[Version]:
    """Parse a tag into a Version, or return None if it is not one."""
    match = SEMVER_REGEX.fullmatch(tag)
    if not match:
        return None

    major, minor, patch, prerelease, build = match.groups()
    return Version(
        major=int(major),
        minor=int(minor),
        patch=int(patch),
        prerelease=prerelease,
        build=build,
        original=tag,
    )


def compare(a: Version, b: Version) -> int:
    """Compare two versions.

    Returns:
        -1 if a < b, 0 if they are equal in precedence, 1 if a > b
    """
    key_a, key_b = a.sort_key(), b.sort_key()
    if key_a < key_b:
        return -1
    if key_a > key_b:
        return 1
    return 0


def filter_tags(tags: Iterable[str], exclude_patterns: Sequence[str]) -> List[str]:
    """Drop tags containing any of the exclude patterns (plain substring match)."""
    return [
        tag for tag in tags
        if not any(pattern in tag for pattern in exclude_patterns)
    ]


def select_latest_tag(tags: Iterable[str], exclude_patterns: Sequence[str] = ()) -> str:
    """Pick the newest tag from a registry listing.

    Version tags always win over aliases such as ``stable`` or ``edge``;
    only when nothing parses as a version is the lexicographically greatest
    tag returned.

    Args:
        tags: Raw tag names from the registry
        exclude_patterns: Substrings that disqualify a tag (e.g. '-alpha')

    Returns:
        The selected tag name

    Raises:
        NoTags: The tag listing was empty
        NoStableTags: Nothing survived the exclude patterns
    """
    tags = list(tags)
    if not tags:
        raise NoTags("no tags found")

    filtered = filter_tags(tags, exclude_patterns)
    if not filtered:
        raise NoStableTags(
            f"no stable tags left after filtering {len(tags)} tags "
            f"with exclude patterns {list(exclude_patterns)}"
        )

    versions = [v for v in (parse_version(tag) for tag in filtered) if v is not None]
    if versions:
        return max(versions, key=lambda v: (v.sort_key(), v.original)).original

    return max(filtered)
