"""Error signature normalization.

Reduces raw error messages to a short, stable string so that the same
failure reported by different runs compares equal.
"""

import re

MAX_SIGNATURE_LENGTH = 160

_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_URL_PATTERN = re.compile(r"https?://\S+")
_UUID_PATTERN = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"
)
_HEX_PATTERN = re.compile(r"\b0x[0-9a-fA-F]+\b")
_NUMBER_PATTERN = re.compile(r"\d+(?:\.\d+)?")
_WHITESPACE_PATTERN = re.compile(r"\s+")

# Checked in order; first match wins
_CATEGORIES: list[tuple[str, re.Pattern[str]]] = [
    ("timeout", re.compile(r"timeout|timed out|exceeded", re.IGNORECASE)),
    (
        "crash",
        re.compile(r"target (page, context or browser )?(has been )?closed|crashed", re.IGNORECASE),
    ),
    ("network", re.compile(r"net::ERR_|ECONNREFUSED|ECONNRESET|ENOTFOUND|fetch failed")),
    ("assertion", re.compile(r"expect\(|AssertionError|assert|toBe|toEqual|toHave")),
    ("locator", re.compile(r"locator|selector|strict mode violation", re.IGNORECASE)),
]


def categorize_error(message: str) -> str:
    """Coarse category of an error message."""
    for category, pattern in _CATEGORIES:
        if pattern.search(message):
            return category
    return "error"


def normalize_error(message: str | None) -> str:
    """Build the error signature for a raw error message.

    The signature is ``"<category>: <first line>"`` with colour codes stripped
    and volatile tokens (URLs, ids, addresses, numbers) replaced.

    Args:
        message: Raw error text, possibly multi-line.

    Returns:
        Normalized signature, or "" when there is no message.
    """
    if not message:
        return ""
    text = _ANSI_PATTERN.sub("", message).strip()
    if not text:
        return ""
    first_line = text.splitlines()[0].strip()
    first_line = _URL_PATTERN.sub("<url>", first_line)
    first_line = _UUID_PATTERN.sub("<uuid>", first_line)
    first_line = _HEX_PATTERN.sub("<hex>", first_line)
    first_line = _NUMBER_PATTERN.sub("N", first_line)
    first_line = _WHITESPACE_PATTERN.sub(" ", first_line)
    signature = f"{categorize_error(text)}: {first_line}"
    return signature[:MAX_SIGNATURE_LENGTH]
