"""Document metadata extraction from LaTeX preambles and Markdown front matter."""

from __future__ import annotations

import datetime
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_FRONT_MATTER_RE: re.Pattern[str] = re.compile(
    r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL
)
_COMMENT_RE: re.Pattern[str] = re.compile(r"(?<!\\)%.*$", re.MULTILINE)
_FORMAT_RE: re.Pattern[str] = re.compile(
    r"\\(?:textbf|textit|emph|textrm|textsf|texttt|textsc|underline)\{([^{}]*)\}"
)
_NOTE_RE: re.Pattern[str] = re.compile(r"\\(?:thanks|footnote|inst|IEEEauthorrefmark)\{[^{}]*\}")
_AUTHOR_SPLIT_RE: re.Pattern[str] = re.compile(r"\\and\b|,")
_ABSTRACT_RE: re.Pattern[str] = re.compile(r"\\begin\{abstract\}(.*?)\\end\{abstract\}", re.DOTALL)
_KEYWORDS_ENV_RE: re.Pattern[str] = re.compile(
    r"\\begin\{(?:keywords|IEEEkeywords)\}(.*?)\\end\{(?:keywords|IEEEkeywords)\}", re.DOTALL
)
_YEAR_RE: re.Pattern[str] = re.compile(r"\b(1[5-9]\d\d|2\d\d\d)\b")
_MD_HEADING_RE: re.Pattern[str] = re.compile(r"^#\s+(.+)$", re.MULTILINE)

_TITLE_FALLBACK_MAX = 100


@dataclass
class DocumentMetadata:
    """Bibliographic metadata of one document; every field is optional."""

    title: str | None = None
    authors: list[str] = field(default_factory=list)
    abstract: str | None = None
    keywords: list[str] = field(default_factory=list)
    year: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return only the fields that were found."""
        return {k: v for k, v in asdict(self).items() if v not in (None, [], "")}


# ---------------------------------------------------------------------------
# LaTeX
# ---------------------------------------------------------------------------


def clean_latex_text(text: str) -> str:
    """Strip comments, unwrap inline formatting commands, and collapse whitespace."""
    text = _COMMENT_RE.sub("", text)
    previous = None
    while previous != text:
        previous = text
        text = _FORMAT_RE.sub(r"\1", text)
    text = text.replace("\\\\", " ").replace("~", " ")
    return re.sub(r"\s+", " ", text).strip()


def read_braced(text: str, open_pos: int) -> str | None:
    """Return the content of the balanced group opened by the ``{`` at *open_pos*.

    Escaped braces (``\\{``, ``\\}``) do not count. Returns None when the
    group is never closed.
    """
    depth = 1
    pos = open_pos + 1
    while pos < len(text):
        char = text[pos]
        if char == "\\":
            pos += 2
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[open_pos + 1 : pos]
        pos += 1
    return None


def _braced_argument(text: str, command: str) -> str | None:
    """Return the balanced ``{...}`` argument of the first ``\\command``, or None.

    An optional ``[...]`` argument before the braces is skipped.
    """
    match = re.search(rf"\\{command}\*?\s*(?:\[[^\]]*\])?\s*\{{", text)
    if match is None:
        return None
    return read_braced(text, match.end() - 1)


def _split_list(value: str) -> list[str]:
    return [v.strip() for v in re.split(r"[,;]", value) if v.strip()]


def extract_latex_metadata(content: str) -> DocumentMetadata:
    """Pull title, authors, abstract, keywords and year from LaTeX source.

    Authors are split on ``\\and`` or commas; ``\\thanks``/``\\footnote``
    notes and affiliation lines after ``\\\\`` are dropped.
    """
    uncommented = _COMMENT_RE.sub("", content)
    meta = DocumentMetadata()

    title = _braced_argument(uncommented, "title")
    if title:
        meta.title = clean_latex_text(title) or None

    author_block = _braced_argument(uncommented, "author")
    if author_block:
        author_block = _NOTE_RE.sub("", author_block)
        for part in _AUTHOR_SPLIT_RE.split(author_block):
            name = clean_latex_text(part.split("\\\\")[0])
            if name:
                meta.authors.append(name)

    abstract = _ABSTRACT_RE.search(uncommented)
    if abstract:
        meta.abstract = clean_latex_text(abstract.group(1)) or None

    keywords = _braced_argument(uncommented, "keywords")
    if keywords is None:
        env = _KEYWORDS_ENV_RE.search(uncommented)
        keywords = env.group(1) if env else None
    if keywords:
        meta.keywords = _split_list(clean_latex_text(keywords))

    date = _braced_argument(uncommented, "date")
    if date:
        year = _YEAR_RE.search(date)
        if year:
            meta.year = int(year.group(1))
    return meta


# ---------------------------------------------------------------------------
# Markdown
# ---------------------------------------------------------------------------


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _parse_front_matter_lines(block: str) -> dict[str, Any]:
    """Line-based ``key: value`` parser used when the block is not valid YAML."""
    data: dict[str, Any] = {}
    for line in block.splitlines():
        if ":" not in line or line.lstrip().startswith("#"):
            continue
        key, value = line.split(":", 1)
        data[key.strip().lower()] = _strip_quotes(value)
    return data


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [_strip_quotes(str(v)) for v in value if str(v).strip()]
    return [_strip_quotes(v) for v in str(value).split(",") if v.strip()]


def _as_year(value: Any) -> int | None:
    """Year from an int, a date, or a numeric string; anything else is ignored."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.year
    text = _strip_quotes(str(value)) if value is not None else ""
    if text.isdigit():
        return int(text)
    match = re.match(r"^(\d{4})-\d{1,2}(?:-\d{1,2})?$", text)
    return int(match.group(1)) if match else None


def parse_front_matter(content: str) -> dict[str, Any]:
    """Return the leading ``---`` front-matter block as a dict (empty if absent)."""
    match = _FRONT_MATTER_RE.match(content)
    if match is None:
        return {}
    block = match.group(1)
    try:
        data = yaml.safe_load(block)
    except yaml.YAMLError as exc:
        logger.debug("Front matter is not valid YAML (%s); using line parser", exc)
        data = None
    if not isinstance(data, dict):
        return _parse_front_matter_lines(block)
    return {str(k).lower(): v for k, v in data.items()}


def strip_front_matter(content: str) -> str:
    """Return *content* without its leading front-matter block."""
    match = _FRONT_MATTER_RE.match(content)
    return content[match.end() :] if match else content


def extract_markdown_metadata(content: str) -> DocumentMetadata:
    """Read title/author(s)/date/keywords(tags)/abstract from Markdown front matter.

    Falls back to the first H1 heading, then the first short line, for the title.
    """
    data = parse_front_matter(content)
    meta = DocumentMetadata()
    if data.get("title") is not None:
        meta.title = _strip_quotes(str(data["title"])) or None
    meta.authors = _as_list(data.get("authors", data.get("author")))
    if "date" in data or "year" in data:
        meta.year = _as_year(data.get("date", data.get("year")))
    meta.keywords = _as_list(data.get("keywords", data.get("tags")))
    if data.get("abstract") is not None:
        meta.abstract = _strip_quotes(str(data["abstract"])) or None

    if meta.title is None:
        body = strip_front_matter(content)
        heading = _MD_HEADING_RE.search(body)
        meta.title = heading.group(1).strip() if heading else first_line_title(body)
    return meta


def first_line_title(content: str) -> str | None:
    """First non-blank line, if it is short enough to pass for a title."""
    for line in content.splitlines():
        line = line.strip()
        if line:
            return line if len(line) <= _TITLE_FALLBACK_MAX else None
    return None
