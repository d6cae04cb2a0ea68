"""BibTeX entry parsing and ``\\cite`` usage scanning.

Entries are stored per library; cite counts are recorded per citing document
and summed at read time, so the usage of a key changes as documents are added
or removed rather than being fixed when the .bib file is parsed.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field

_ENTRY_RE: re.Pattern[str] = re.compile(r"@(\w+)\s*\{\s*([^,\s]+)\s*,")
_FIELD_NAME_RE: re.Pattern[str] = re.compile(r"\s*,?\s*([\w\-]+)\s*=\s*")
_CITE_RE: re.Pattern[str] = re.compile(r"\\cite[a-zA-Z]*\*?(?:\[[^\]]*\])*\{([^}]+)\}")

_SKIPPED_TYPES = frozenset(["comment", "preamble", "string"])


@dataclass
class BibEntry:
    """One parsed ``@type{key, ...}`` entry. Field names are lower-cased."""

    entry_type: str
    key: str
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return self.fields.get("title", "")

    @property
    def author(self) -> str:
        return self.fields.get("author", "")

    @property
    def year(self) -> str:
        return self.fields.get("year", "")

    @property
    def journal(self) -> str:
        return self.fields.get("journal") or self.fields.get("booktitle", "")

    def citation_text(self) -> str:
        """Human-readable reference line: ``Authors (Year). Title. Venue.``"""
        parts: list[str] = []
        authors = " and ".join(a.strip() for a in self.author.split(" and ") if a.strip())
        head = authors or self.key
        if self.year:
            head += f" ({self.year})"
        parts.append(head)
        if self.title:
            parts.append(self.title)
        if self.journal:
            parts.append(self.journal)
        return ". ".join(parts) + "."


def _read_value(body: str, pos: int) -> tuple[str, int]:
    """Read one field value starting at *pos*; returns (value, position after it).

    Accepts brace-delimited values (nested braces balanced), quote-delimited
    values, and bare tokens (numbers, @string macros).
    """
    if pos >= len(body):
        return "", pos
    opener = body[pos]
    if opener == "{":
        depth = 1
        i = pos + 1
        while i < len(body) and depth:
            if body[i] == "\\":
                i += 2
                continue
            if body[i] == "{":
                depth += 1
            elif body[i] == "}":
                depth -= 1
            i += 1
        return body[pos + 1 : i - 1], i
    if opener == '"':
        i = pos + 1
        while i < len(body) and not (body[i] == '"' and body[i - 1] != "\\"):
            i += 1
        return body[pos + 1 : i], i + 1
    match = re.match(r"[^,}\s]+", body[pos:])
    if match is None:
        return "", pos
    return match.group(0), pos + match.end()


def _clean_value(value: str) -> str:
    value = value.replace("{", "").replace("}", "")
    return re.sub(r"\s+", " ", value).strip()


def _parse_fields(body: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    pos = 0
    while True:
        match = _FIELD_NAME_RE.match(body, pos)
        if match is None:
            break
        value, pos = _read_value(body, match.end())
        fields[match.group(1).lower()] = _clean_value(value)
    return fields


def parse_bibtex(content: str) -> list[BibEntry]:
    """Parse every ``@type{key, field = {value}, ...}`` entry in *content*.

    ``@comment``, ``@preamble`` and ``@string`` blocks are skipped. Later
    duplicates of a key replace earlier ones.

    Args:
        content: Raw .bib file text.

    Returns:
        Entries in file order.
    """
    entries: dict[str, BibEntry] = {}
    matches = list(_ENTRY_RE.finditer(content))
    for i, match in enumerate(matches):
        entry_type = match.group(1).lower()
        if entry_type in _SKIPPED_TYPES:
            continue
        end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
        body = content[match.end() : end]
        entries[match.group(2)] = BibEntry(
            entry_type=entry_type,
            key=match.group(2),
            fields=_parse_fields(body),
        )
    return list(entries.values())


def scan_cite_usage(content: str) -> Counter[str]:
    """Count cite keys referenced by ``\\cite``-family commands in *content*.

    ``\\cite{a, b}`` counts one use each of ``a`` and ``b``; optional
    arguments such as ``\\citep[p.~3]{a}`` are skipped.
    """
    usage: Counter[str] = Counter()
    for match in _CITE_RE.finditer(content):
        for key in match.group(1).split(","):
            key = key.strip()
            if key:
                usage[key] += 1
    return usage
