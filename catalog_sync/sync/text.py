"""
Text normalization and the "additional key information" block.

normalize_text() is the comparison form used everywhere a current value is
checked against a candidate: markup stripped, entities decoded, whitespace
collapsed. Two values that differ only in formatting normalize equal.

The additional-information block is an HTML fragment of labelled values:

    <strong>Load Capacitance:</strong> 18pF<br><strong>Aging:</strong> 3ppm<br>

It is never replaced wholesale; see merge_additional_info().
"""

from __future__ import annotations

import re
import warnings
from dataclasses import dataclass

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

_WHITESPACE_RE = re.compile(r"\s+")
_NEEDS_PARSE_RE = re.compile(r"[<&]")

# Mis-decoded registered sign seen in vendor exports
_MOJIBAKE = {"¬Æ": "®"}


def normalize_text(value: object) -> str:
    """
    Canonical comparison form of a text value.

    >>> normalize_text("<b> 3.3 V &deg; </b>")
    '3.3 V °'
    """
    if value is None:
        return ""
    text = value if isinstance(value, str) else str(value)
    if not text:
        return ""
    for bad, good in _MOJIBAKE.items():
        text = text.replace(bad, good)
    text = text.replace("&deg;", "°")
    if _NEEDS_PARSE_RE.search(text):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
            text = BeautifulSoup(text, "html.parser").get_text(" ")
    return _WHITESPACE_RE.sub(" ", text).strip()


def is_blank(value: object) -> bool:
    return not normalize_text(value)


def format_label(key: str) -> str:
    """snake_case column key -> display label ("load_capacitance" -> "Load Capacitance")."""
    words = re.sub(r"[_\-]+", " ", key).split()
    return " ".join(w[:1].upper() + w[1:] for w in words)


def normalize_info_key(key: str) -> str:
    """Key used to decide whether two labels are the same entry."""
    key = re.sub(r"[_\-]", " ", key.lower())
    key = re.sub(r"[^a-z0-9 ]", "", key)
    return _WHITESPACE_RE.sub(" ", key).strip()


# =============================================================================
# Additional key information
# =============================================================================


@dataclass(frozen=True)
class InfoEntry:
    label: str
    value: str


_BLOCK_REWRITES = (
    (re.compile(r"\s+"), " "),
    (re.compile(r"<b>", re.IGNORECASE), "<strong>"),
    (re.compile(r"</b>", re.IGNORECASE), "</strong>"),
    (re.compile(r"<p[^>]*>", re.IGNORECASE), ""),
    (re.compile(r"</p>", re.IGNORECASE), "<br>"),
    (re.compile(r"<br\s*/?>", re.IGNORECASE), "<br>"),
    (re.compile(r"</?span[^>]*>", re.IGNORECASE), ""),
    (re.compile(r"<div[^>]*>", re.IGNORECASE), ""),
    (re.compile(r"</div>", re.IGNORECASE), "<br>"),
)
_STRONG_ENTRY_RE = re.compile(
    r"<strong>([^<]+?):\s*</strong>\s*([^<]*?)\s*(?=<br>|<strong>|$)",
    re.IGNORECASE,
)
_PLAIN_ENTRY_RE = re.compile(r"([^:<>]+):\s*([^<]*?)\s*(?=<br>|$)")


def parse_additional_info(html: str | None) -> dict[str, InfoEntry]:
    """
    Parse an additional-information block into normalized key -> entry.

    Accepts <strong>/<b> labels, <p>/<div>/<br> separators, or plain
    "Key: value" lines. Order of first appearance is preserved.
    """
    entries: dict[str, InfoEntry] = {}
    if not html or not isinstance(html, str):
        return entries

    text = html
    for pattern, replacement in _BLOCK_REWRITES:
        text = pattern.sub(replacement, text)

    for match in _STRONG_ENTRY_RE.finditer(text):
        label = match.group(1).strip()
        key = normalize_info_key(label)
        if key:
            entries[key] = InfoEntry(label, match.group(2).strip())

    if entries:
        return entries

    for match in _PLAIN_ENTRY_RE.finditer(text):
        label = match.group(1).strip()
        if not label or "http" in label or "&" in label or len(label) >= 50:
            continue
        key = normalize_info_key(label)
        if key and key not in entries:
            entries[key] = InfoEntry(label, match.group(2).strip())
    return entries


def render_info_entry(label: str, value: str) -> str:
    return f"<strong>{label}:</strong> {value}<br>"


def render_additional_info(entries: dict[str, InfoEntry]) -> str:
    return "".join(render_info_entry(e.label, e.value) for e in entries.values())


def _same_entries(a: dict[str, InfoEntry], b: dict[str, InfoEntry]) -> bool:
    if a.keys() != b.keys():
        return False
    return all(normalize_text(a[k].value) == normalize_text(b[k].value) for k in a)


def merge_additional_info(current: str | None, candidate: str | None) -> tuple[str, bool]:
    """
    Merge a candidate block into the current one.

    Keys are unioned; on a key present in both, the candidate's value wins.
    Returns (merged_text, changed) where changed is False when the merged
    entries equal the current entries (the current text is then returned
    untouched).

    When the current text carries no parseable entries, new entries are
    appended after it rather than replacing it.
    """
    current = current or ""
    current_entries = parse_additional_info(current)
    candidate_entries = parse_additional_info(candidate)

    merged = dict(current_entries)
    for key, entry in candidate_entries.items():
        merged[key] = entry

    if _same_entries(merged, current_entries):
        return current, False

    if current_entries or not current.strip():
        return render_additional_info(merged), True

    prefix = re.sub(r"(<br\s*/?>)+$", "", current.strip(), flags=re.IGNORECASE)
    return f"{prefix}<br>{render_additional_info(merged)}", True
