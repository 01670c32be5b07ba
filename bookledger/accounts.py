"""
Account Path Module

Hierarchical, delimiter-separated account names ("Assets:Receivable")
with whole-segment prefix matching used for balance rollups.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .exceptions import InvalidInputError

DEFAULT_DELIMITER = ":"


@dataclass(frozen=True)
class AccountPath:
    """
    Immutable account path made of non-empty name segments.

    A path contains another when its segments are a leading prefix of the
    other's segments: "Assets" contains "Assets:Receivable" but not
    "AssetsHeld".
    """
    segments: Tuple[str, ...]
    delimiter: str = DEFAULT_DELIMITER

    def __post_init__(self):
        if not self.delimiter:
            raise InvalidInputError("account delimiter must not be empty")
        if not self.segments:
            raise InvalidInputError("account path must not be empty")
        for segment in self.segments:
            if not isinstance(segment, str) or not segment.strip():
                raise InvalidInputError(f"account path has an empty segment: {self.segments!r}")
            if self.delimiter in segment:
                raise InvalidInputError(f"account segment {segment!r} contains the delimiter")

    @classmethod
    def parse(cls, value: Union[str, "AccountPath", Sequence[str]],
              delimiter: str = DEFAULT_DELIMITER) -> "AccountPath":
        """
        Build an AccountPath from a string, a segment sequence or another path

        Raises:
            InvalidInputError: If the value is empty or has empty segments
        """
        if isinstance(value, AccountPath):
            if value.delimiter == delimiter:
                return value
            return cls(value.segments, delimiter)
        if isinstance(value, str):
            if not value.strip():
                raise InvalidInputError("account path must not be empty")
            return cls(tuple(part.strip() for part in value.split(delimiter)), delimiter)
        if isinstance(value, (list, tuple)):
            return cls(tuple(value), delimiter)
        raise InvalidInputError(f"invalid account path: {value!r}")

    def __str__(self) -> str:
        return self.delimiter.join(self.segments)

    @property
    def depth(self) -> int:
        return len(self.segments)

    @property
    def parent(self) -> Optional["AccountPath"]:
        """Enclosing path, or None for a top-level account"""
        if len(self.segments) == 1:
            return None
        return AccountPath(self.segments[:-1], self.delimiter)

    def ancestors(self) -> List["AccountPath"]:
        """All enclosing paths, outermost first, excluding self"""
        return [
            AccountPath(self.segments[:i], self.delimiter)
            for i in range(1, len(self.segments))
        ]

    def contains(self, other: Union[str, "AccountPath"]) -> bool:
        """True if other is this path or lies in its subtree"""
        other = AccountPath.parse(other, self.delimiter)
        return other.segments[:len(self.segments)] == self.segments

    def child(self, name: str) -> "AccountPath":
        return AccountPath(self.segments + (name,), self.delimiter)


def expand_with_ancestors(paths: Iterable[str], delimiter: str = DEFAULT_DELIMITER) -> List[str]:
    """Sorted distinct paths plus every ancestor of each path"""
    seen = set()
    for raw in paths:
        if not raw:
            continue
        path = AccountPath.parse(raw, delimiter)
        seen.add(str(path))
        for ancestor in path.ancestors():
            seen.add(str(ancestor))
    return sorted(seen)
