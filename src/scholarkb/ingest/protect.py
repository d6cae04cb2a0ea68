"""Placeholder arena for atomic LaTeX spans.

Math environments, display/inline math, and other units that must never be
split are swapped out for opaque placeholder tokens before any structural or
size-based splitting runs. The token is only an index into the arena's side
table (``\\uE000<n>\\uE001``, private-use code points), so splitting logic never
sees the protected text. Restoring substitutes every token back, recursing
into spans because an outer span may itself contain tokens of spans protected
earlier.

Private-use sentinels already present in the source are shielded (stored as
one-character spans) before protection, so source text can never be mistaken
for a token.

An arena belongs to exactly one segmentation call; handles increase
monotonically and are never reused.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

PLACEHOLDER_OPEN = "\ue000"
PLACEHOLDER_CLOSE = "\ue001"
PLACEHOLDER_RE: re.Pattern[str] = re.compile(f"{PLACEHOLDER_OPEN}(\\d+){PLACEHOLDER_CLOSE}")
_SENTINEL_RE: re.Pattern[str] = re.compile(f"[{PLACEHOLDER_OPEN}{PLACEHOLDER_CLOSE}]")

# Protected environment families, in protection order.
VERBATIM_ENVIRONMENTS: tuple[str, ...] = (
    "lstlisting", "verbatim", "verbatim*", "Verbatim", "minted", "comment",
)
MATH_ENVIRONMENTS: tuple[str, ...] = (
    "equation", "equation*", "align", "align*", "alignat", "alignat*",
    "gather", "gather*", "multline", "multline*", "flalign", "flalign*",
    "eqnarray", "eqnarray*", "split", "subequations", "displaymath", "math",
    "matrix", "pmatrix", "bmatrix", "Bmatrix", "vmatrix", "Vmatrix", "smallmatrix",
    "cases", "aligned", "gathered", "alignedat", "array",
)
THEOREM_ENVIRONMENTS: tuple[str, ...] = (
    "theorem", "lemma", "corollary", "proposition", "definition", "proof",
    "remark", "example", "conjecture", "claim",
)
FLOAT_ENVIRONMENTS: tuple[str, ...] = (
    "figure", "figure*", "table", "table*", "tabular", "tabular*", "tabularx",
    "longtable", "subfigure",
)
LIST_ENVIRONMENTS: tuple[str, ...] = ("itemize", "enumerate", "description")
CODE_ENVIRONMENTS: tuple[str, ...] = ("algorithm", "algorithmic")

_BEGIN_RE: re.Pattern[str] = re.compile(r"\\begin\{([A-Za-z]+\*?)\}")

# \verb|...| with any non-letter delimiter.
_VERB_RE: re.Pattern[str] = re.compile(r"\\verb\*?([^A-Za-z\s*])[^\n]*?\1")
# % to end of line, unless the percent sign is escaped.
_LATEX_COMMENT_RE: re.Pattern[str] = re.compile(r"(?<!\\)%[^\n]*")
# Display math \[...\]; a preceding backslash means a \\[2pt] line break.
_BRACKET_MATH_RE: re.Pattern[str] = re.compile(r"(?<!\\)\\\[(.+?)\\\]", re.DOTALL)
# $$...$$ with neither delimiter escaped.
_DOUBLE_DOLLAR_RE: re.Pattern[str] = re.compile(r"(?<!\\)\$\$(.+?)(?<!\\)\$\$", re.DOTALL)
# $...$ within one paragraph; \$ is a literal dollar sign, never a delimiter.
_INLINE_DOLLAR_RE: re.Pattern[str] = re.compile(
    r"(?<![\\$])\$(?!\$)((?:[^$\\\n]|\\.|\n(?![ \t]*\n))+?)\$"
)
# \(...\) inline math.
_PAREN_MATH_RE: re.Pattern[str] = re.compile(r"(?<!\\)\\\((.+?)\\\)", re.DOTALL)
# \cite{a,b}, \citep[p.~3]{a}, \citet*{a}: keys stay atomic.
_CITE_RE: re.Pattern[str] = re.compile(r"\\cite[a-zA-Z]*\*?(?:\[[^\]]*\])*\{[^}]*\}")


class PlaceholderArena:
    """Ordered side table from integer handle to protected span."""

    def __init__(self) -> None:
        self._spans: dict[int, str] = {}
        self._next = 0

    def __len__(self) -> int:
        return len(self._spans)

    @property
    def spans(self) -> list[str]:
        """Protected spans in protection order (placeholders not expanded)."""
        return list(self._spans.values())

    def store(self, span: str) -> str:
        """Record *span* and return its placeholder token."""
        handle = self._next
        self._next += 1
        self._spans[handle] = span
        return f"{PLACEHOLDER_OPEN}{handle}{PLACEHOLDER_CLOSE}"

    def shield(self, text: str) -> str:
        """Store every sentinel character already in *text* as its own span."""
        return _SENTINEL_RE.sub(lambda m: self.store(m.group(0)), text)

    def restore(self, text: str) -> str:
        """Substitute every placeholder in *text* with its span, recursively.

        Only issued spans are expanded further; text produced by a restore is
        never rescanned.

        Raises:
            KeyError: If *text* contains a token this arena never issued.
        """
        return PLACEHOLDER_RE.sub(lambda m: self.restore(self._spans[int(m.group(1))]), text)

    def expanded(self) -> list[str]:
        """Protected spans with nested placeholders restored."""
        return [self.restore(s) for s in self._spans.values()]


# ---------------------------------------------------------------------------
# Protection passes
# ---------------------------------------------------------------------------


def _find_environment_end(text: str, name: str, body_start: int) -> int:
    """Return the index just past the ``\\end{name}`` matching an opened environment.

    Nested environments of the same name are balanced. Returns -1 when the
    environment is never closed.
    """
    begin_tok = f"\\begin{{{name}}}"
    end_tok = f"\\end{{{name}}}"
    depth = 1
    pos = body_start
    while depth:
        next_end = text.find(end_tok, pos)
        if next_end == -1:
            return -1
        next_begin = text.find(begin_tok, pos)
        if next_begin != -1 and next_begin < next_end:
            depth += 1
            pos = next_begin + len(begin_tok)
        else:
            depth -= 1
            pos = next_end + len(end_tok)
    return pos


def protect_environments(text: str, names: Iterable[str], arena: PlaceholderArena) -> str:
    """Replace every balanced ``\\begin{X}...\\end{X}`` for X in *names*.

    Open and close must use the same environment name. Outermost spans win;
    an unclosed environment is left untouched.
    """
    wanted = frozenset(names)
    out: list[str] = []
    pos = 0
    while True:
        match = _BEGIN_RE.search(text, pos)
        if match is None:
            break
        name = match.group(1)
        if name not in wanted:
            out.append(text[pos : match.end()])
            pos = match.end()
            continue
        end = _find_environment_end(text, name, match.end())
        if end == -1:
            out.append(text[pos : match.end()])
            pos = match.end()
            continue
        out.append(text[pos : match.start()])
        out.append(arena.store(text[match.start() : end]))
        pos = end
    out.append(text[pos:])
    return "".join(out)


def _blank_comments(text: str) -> str:
    """Replace ``%`` comments with spaces, keeping every offset in place."""
    return _LATEX_COMMENT_RE.sub(lambda m: " " * len(m.group(0)), text)


def _protect_pattern(
    text: str,
    pattern: re.Pattern[str],
    arena: PlaceholderArena,
    *,
    skip_comments: bool = False,
) -> str:
    if not skip_comments:
        return pattern.sub(lambda m: arena.store(m.group(0)), text)
    out: list[str] = []
    pos = 0
    for match in pattern.finditer(_blank_comments(text)):
        out.append(text[pos : match.start()])
        out.append(arena.store(text[match.start() : match.end()]))
        pos = match.end()
    out.append(text[pos:])
    return "".join(out)


def _math_passes(text: str, arena: PlaceholderArena, *, skip_comments: bool) -> str:
    text = protect_environments(text, MATH_ENVIRONMENTS, arena)
    for pattern in (_BRACKET_MATH_RE, _DOUBLE_DOLLAR_RE, _INLINE_DOLLAR_RE, _PAREN_MATH_RE):
        text = _protect_pattern(text, pattern, arena, skip_comments=skip_comments)
    return text


def protect_math(text: str, arena: PlaceholderArena) -> str:
    """Protect math only, in priority order: environments, ``\\[``, ``$$``, ``$``, ``\\(``.

    ``%`` is ordinary text here (Markdown); see protect_latex_blocks for LaTeX.
    """
    return _math_passes(arena.shield(text), arena, skip_comments=False)


def protect_latex_blocks(
    text: str, arena: PlaceholderArena | None = None
) -> tuple[str, PlaceholderArena]:
    """Protect all atomic LaTeX units of *text*.

    Verbatim-like environments and ``\\verb`` go first, since their content is
    literal. Math follows, with delimiters inside ``%`` comments ignored; then
    theorem-like, float, list and algorithm environments; then citation
    commands.

    Args:
        text: Raw LaTeX source.
        arena: Arena to record spans in; a fresh one is created when omitted.

    Returns:
        ``(protected_text, arena)``. ``arena.restore(protected_text) == text``.
    """
    arena = arena if arena is not None else PlaceholderArena()
    text = arena.shield(text)
    text = protect_environments(text, VERBATIM_ENVIRONMENTS, arena)
    text = _protect_pattern(text, _VERB_RE, arena, skip_comments=True)
    text = _math_passes(text, arena, skip_comments=True)
    text = protect_environments(
        text,
        THEOREM_ENVIRONMENTS + FLOAT_ENVIRONMENTS + LIST_ENVIRONMENTS + CODE_ENVIRONMENTS,
        arena,
    )
    text = _protect_pattern(text, _CITE_RE, arena)
    return text, arena


def safe_cut(text: str, pos: int) -> int:
    """Move *pos* forward so it does not fall inside a placeholder token."""
    if pos <= 0 or pos >= len(text):
        return pos
    open_idx = text.rfind(PLACEHOLDER_OPEN, 0, pos)
    if open_idx == -1:
        return pos
    close_idx = text.find(PLACEHOLDER_CLOSE, open_idx)
    if close_idx != -1 and close_idx >= pos:
        return close_idx + 1
    return pos


def safe_start(text: str, pos: int) -> int:
    """Move *pos* back to a placeholder's start when it falls inside one."""
    if pos <= 0 or pos >= len(text):
        return pos
    open_idx = text.rfind(PLACEHOLDER_OPEN, 0, pos)
    if open_idx == -1:
        return pos
    close_idx = text.find(PLACEHOLDER_CLOSE, open_idx)
    if close_idx != -1 and close_idx >= pos:
        return open_idx
    return pos
