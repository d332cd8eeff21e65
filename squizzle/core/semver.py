"""
Semantic version handling for migration artifacts.

Versions follow ``MAJOR.MINOR.PATCH[-prerelease][+buildmeta]``. Ordering
compares the numeric core first, then prerelease identifiers segment by
segment (numeric identifiers numerically, alphanumeric ones lexically,
numeric before alphanumeric). A release is greater than any of its
prereleases. Build metadata never takes part in ordering or equality.
"""

import re
from functools import total_ordering
from typing import Iterable, List, Optional, Tuple, Union

from ..exceptions import InvalidVersionError

VERSION_PATTERN = r"^\d+\.\d+\.\d+(-[\w.]+)?(\+[\w.]+)?$"
_VERSION_RE = re.compile(
    r"^(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)"
    r"(?:-(?P<prerelease>[\w.]+))?"
    r"(?:\+(?P<build>[\w.]+))?$"
)


@total_ordering
class Version:
    """Immutable semantic version."""

    __slots__ = ("major", "minor", "patch", "prerelease", "build")

    def __init__(
        self,
        major: int,
        minor: int,
        patch: int,
        prerelease: Optional[str] = None,
        build: Optional[str] = None,
    ):
        object.__setattr__(self, "major", major)
        object.__setattr__(self, "minor", minor)
        object.__setattr__(self, "patch", patch)
        object.__setattr__(self, "prerelease", prerelease)
        object.__setattr__(self, "build", build)

    def __setattr__(self, name, value):
        raise AttributeError("Version is immutable")

    @classmethod
    def parse(cls, value: Union[str, "Version"]) -> "Version":
        """
        Parse a version string.

        Raises:
            InvalidVersionError: If the string is not a semantic version
        """
        if isinstance(value, Version):
            return value
        match = _VERSION_RE.match(value.strip()) if isinstance(value, str) else None
        if not match:
            raise InvalidVersionError(f"Invalid version: {value!r}", version=str(value))
        return cls(
            int(match.group("major")),
            int(match.group("minor")),
            int(match.group("patch")),
            match.group("prerelease"),
            match.group("build"),
        )

    def _prerelease_key(self) -> Tuple:
        # A release sorts after every prerelease of the same core
        if self.prerelease is None:
            return (1,)
        identifiers = []
        for part in self.prerelease.split("."):
            if part.isdigit():
                identifiers.append((0, int(part), ""))
            else:
                identifiers.append((1, 0, part))
        return (0, tuple(identifiers))

    def sort_key(self) -> Tuple:
        return (self.major, self.minor, self.patch, self._prerelease_key())

    def __eq__(self, other) -> bool:
        if isinstance(other, str):
            if not is_valid_version(other):
                return False
            other = Version.parse(other)
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key() == other.sort_key()

    def __lt__(self, other) -> bool:
        if isinstance(other, str):
            other = Version.parse(other)
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __hash__(self) -> int:
        return hash(self.sort_key())

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += f"-{self.prerelease}"
        if self.build:
            text += f"+{self.build}"
        return text

    def __repr__(self) -> str:
        return f"Version('{self}')"

    def bump(self, part: str = "patch") -> "Version":
        """Return the next release for ``part`` (major, minor or patch)."""
        if part == "major":
            return Version(self.major + 1, 0, 0)
        if part == "minor":
            return Version(self.major, self.minor + 1, 0)
        if part == "patch":
            return Version(self.major, self.minor, self.patch + 1)
        raise ValueError(f"Unknown version part: {part}")


def is_valid_version(value: str) -> bool:
    """Check whether ``value`` is a semantic version string."""
    return isinstance(value, str) and _VERSION_RE.match(value) is not None


def compare_versions(a: Union[str, Version], b: Union[str, Version]) -> int:
    """Three-way comparison: negative if a < b, zero if equal, positive if a > b."""
    va, vb = Version.parse(a), Version.parse(b)
    if va == vb:
        return 0
    return -1 if va < vb else 1


def next_version(current: Union[str, Version], bump: str = "patch") -> str:
    """Compute the next version string, dropping any prerelease."""
    return str(Version.parse(current).bump(bump))


def sort_versions(values: Iterable[str]) -> List[str]:
    """Sort version strings ascending, discarding anything that does not parse."""
    parsed = [Version.parse(v) for v in values if is_valid_version(v)]
    return [str(v) for v in sorted(parsed)]
