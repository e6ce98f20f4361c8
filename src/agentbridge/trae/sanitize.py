"""Strip terminal decoration from text captured from the Trae CLI."""

from __future__ import annotations

import re

_ANSI = re.compile(
    r"[\u001B\u009B][\[()#;?]*(?:[0-9]{1,4}(?:;[0-9]{0,4})*)?[0-9A-ORZcf-nqry=><]"
)

# Each pattern is removed outright, in order.
_STRIP_PATTERNS: tuple[re.Pattern[str], ...] = (
    _ANSI,
    # rich-style markup: [bold], [/bold], [link=https://...]
    re.compile(r"\[/?[a-zA-Z][\w-]*(?:=[^\]]+)?\]"),
    # box-drawing block U+2500..U+257F
    re.compile(r"[\u2500-\u257F]"),
)

_CRLF = re.compile(r"\r\n")


def sanitize_output(text: str) -> str:
    """Remove ANSI escapes, style tags and box-drawing characters.

    Every other character is preserved; ``\\r\\n`` is normalised to ``\\n``.
    """
    if not text:
        return text
    for pattern in _STRIP_PATTERNS:
        text = pattern.sub("", text)
    return _CRLF.sub("\n", text)
