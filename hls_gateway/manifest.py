"""Typed line model for HLS master and media playlists."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class LineKind(str, Enum):
    """Classification of a single playlist line."""

    BLANK = "blank"
    COMMENT = "comment"
    DIRECTIVE = "directive"
    REFERENCE = "reference"


@dataclass(frozen=True)
class ManifestLine:
    """
    One line of a playlist.

    `text` is the line without its terminator; `carriage_return` records a
    CRLF terminator so the line can be written back byte for byte.
    """

    kind: LineKind
    text: str
    carriage_return: bool = False

    @property
    def uri(self) -> Optional[str]:
        """URI of a reference line (surrounding whitespace removed)."""
        if self.kind is LineKind.REFERENCE:
            return self.text.strip()
        return None

    @property
    def tag(self) -> Optional[str]:
        """Tag name of a directive, e.g. `#EXT-X-STREAM-INF`."""
        if self.kind is not LineKind.DIRECTIVE:
            return None
        return self.text.split(":", 1)[0].strip()

    def with_uri(self, uri: str) -> "ManifestLine":
        """Return a copy of this reference line pointing at `uri`."""
        if self.kind is not LineKind.REFERENCE:
            raise ValueError(f"Cannot replace the URI of a {self.kind.value} line")
        return replace(self, text=uri)

    def render(self) -> str:
        return self.text + ("\r" if self.carriage_return else "")


def classify_line(raw: str) -> ManifestLine:
    """
    Classify a raw line (without the newline) by its leading token.

    A line starting with `#EXT` is a directive, any other `#` line is a
    comment, and every other non-blank line is a URI reference. Substrings
    are never inspected, so `# note: segment0.ts` stays a comment.
    """
    carriage_return = raw.endswith("\r")
    text = raw[:-1] if carriage_return else raw

    if not text.strip():
        return ManifestLine(LineKind.BLANK, text, carriage_return)
    if text.startswith("#EXT"):
        return ManifestLine(LineKind.DIRECTIVE, text, carriage_return)
    if text.startswith("#"):
        return ManifestLine(LineKind.COMMENT, text, carriage_return)
    return ManifestLine(LineKind.REFERENCE, text, carriage_return)


@dataclass(frozen=True)
class Manifest:
    """An ordered sequence of classified lines."""

    lines: tuple[ManifestLine, ...]

    @classmethod
    def parse(cls, content: str) -> "Manifest":
        """
        Parse playlist text.

        Splitting on `\\n` only keeps a trailing newline as a final blank
        line, so `render()` reproduces the input exactly.
        """
        return cls(tuple(classify_line(raw) for raw in content.split("\n")))

    def render(self) -> str:
        return "\n".join(line.render() for line in self.lines)

    def references(self) -> list[ManifestLine]:
        return [line for line in self.lines if line.kind is LineKind.REFERENCE]

    @property
    def is_master(self) -> bool:
        return any(line.tag == "#EXT-X-STREAM-INF" for line in self.lines)

    def __len__(self) -> int:
        return len(self.lines)
