"""Pixel payload parsing.

The canvas front end sends a drawn digit as the first path segment of a GET
request: 784 comma-separated numbers, one per pixel of the 28x28 grayscale
image, row by row.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

IMAGE_SIDE = 28
PIXEL_COUNT = IMAGE_SIDE * IMAGE_SIDE

_NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_INTEGER_RE = re.compile(r"[+-]?\d+")


class MalformedPixelValue(ValueError):
    """A pixel token is not a number."""

    def __init__(self, position: int, token: str) -> None:
        super().__init__(f"Malformed pixel value at position {position}: {token!r}")
        self.position = position
        self.token = token


@dataclass(frozen=True)
class PixelVector:
    """The 784 pixel values of one digit image."""

    values: tuple[int | float, ...]

    def __post_init__(self) -> None:
        if len(self.values) != PIXEL_COUNT:
            raise ValueError(
                f"PixelVector needs {PIXEL_COUNT} values, got {len(self.values)}"
            )

    def __len__(self) -> int:
        return len(self.values)

    def __getitem__(self, index: int) -> int | float:
        return self.values[index]

    def __iter__(self):
        return iter(self.values)

    def render(self) -> str:
        """Draw the image as text: '·' for blank pixels, a space for ink."""
        lines = []
        for row in range(IMAGE_SIDE):
            start = row * IMAGE_SIDE
            cells = self.values[start:start + IMAGE_SIDE]
            lines.append("".join(" " if v > 0 else "·" for v in cells))
        return "\n".join(lines)


def _parse_token(position: int, token: str) -> int | float:
    text = token.strip()
    if _INTEGER_RE.fullmatch(text):
        return int(text)
    if _NUMBER_RE.fullmatch(text):
        return float(text)
    raise MalformedPixelValue(position, token)


def parse_pixels(identifier: str) -> PixelVector | None:
    """Parse a comma-separated identifier into a PixelVector.

    Returns None when the token count is not 784: the identifier is simply
    not an image (a typo'd route, a probe, a truncated drawing). Values are
    not range-checked.

    Raises:
        MalformedPixelValue: the count is right but a token is not numeric.
    """
    tokens = identifier.split(",")
    if len(tokens) != PIXEL_COUNT:
        return None
    return PixelVector(
        tuple(_parse_token(i, token) for i, token in enumerate(tokens, start=1))
    )
