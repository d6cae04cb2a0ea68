"""Tests for split_by_headings and MarkdownSegmenter."""

from __future__ import annotations

from scholarkb.config import ChunkingCfg
from scholarkb.ingest.markdown import MarkdownSegmenter, split_by_headings

# ------------------------------------------------------------------
# split_by_headings
# ------------------------------------------------------------------


def test_no_headings_single_section():
    sections = split_by_headings("\n  Just some text.\nMore.  \n")
    assert len(sections) == 1
    assert sections[0].heading == ""
    assert sections[0].level == 0
    assert sections[0].content == "Just some text.\nMore."


def test_n_headings_n_sections_with_levels():
    content = "".join(f"{'#' * n} H{n}\ntext {n}\n" for n in range(1, 7))
    sections = split_by_headings(content)
    assert [(s.heading, s.level) for s in sections] == [(f"H{n}", n) for n in range(1, 7)]
    assert [s.content for s in sections] == [f"text {n}" for n in range(1, 7)]


def test_seven_hashes_is_not_heading():
    sections = split_by_headings("# Top\n####### deep\n")
    assert [s.heading for s in sections] == ["Top"]
    assert sections[0].content == "####### deep"


def test_section_contents_reproduce_body_text():
    content = (
        "Preamble text.\n\n"
        "# A\nalpha line\n\n"
        "## Empty\n"
        "### C\n```\n# not a heading\n```\ngamma\n"
    )
    sections = split_by_headings(content)
    assert [s.heading for s in sections] == ["", "A", "Empty", "C"]

    joined = "\n".join(s.content for s in sections)
    assert [line for line in joined.splitlines() if line.strip()] == [
        "Preamble text.",
        "alpha line",
        "```",
        "# not a heading",
        "```",
        "gamma",
    ]


def test_preamble_before_first_heading():
    sections = split_by_headings("Intro line.\n# Title\nBody")
    assert [s.heading for s in sections] == ["", "Title"]
    assert sections[0].content == "Intro line."


def test_blank_preamble_dropped():
    sections = split_by_headings("\n\n# Title\nBody")
    assert [s.heading for s in sections] == ["Title"]


def test_heading_without_body_kept():
    sections = split_by_headings("# A\n# B\nbody")
    assert [(s.heading, s.content) for s in sections] == [("A", ""), ("B", "body")]


def test_headings_inside_code_fence_ignored():
    content = "# Real\n```python\n# not a heading\n```\n## Also real\nx"
    sections = split_by_headings(content)
    assert [s.heading for s in sections] == ["Real", "Also real"]
    assert "# not a heading" in sections[0].content


def test_hash_without_space_is_not_heading():
    sections = split_by_headings("#hashtag\ntext")
    assert len(sections) == 1
    assert sections[0].heading == ""


def test_section_line_ranges():
    sections = split_by_headings("# A\none\ntwo\n# B\nthree")
    assert (sections[0].start_line, sections[0].end_line) == (1, 3)
    assert (sections[1].start_line, sections[1].end_line) == (4, 5)


# ------------------------------------------------------------------
# MarkdownSegmenter
# ------------------------------------------------------------------


def test_empty_input_one_empty_chunk():
    chunks = MarkdownSegmenter().segment("")
    assert len(chunks) == 1
    assert chunks[0].text == ""


def test_no_headings_main_chunk():
    chunks = MarkdownSegmenter().segment("Plain paragraph.")
    assert [(c.chunk_type, c.text) for c in chunks] == [("main", "Plain paragraph.")]


def test_chunk_types_with_headings():
    chunks = MarkdownSegmenter().segment("Lead.\n# One\nBody one\n## Two\nBody two")
    assert [c.chunk_type for c in chunks] == ["preamble", "section", "section"]
    assert [c.heading for c in chunks] == ["", "One", "Two"]


def test_display_math_kept_whole_in_oversized_section():
    formula = "$$\n" + " + ".join(f"a_{i}" for i in range(40)) + "\n$$"
    content = "# Derivation\n" + "Words before. " * 5 + "\n" + formula + "\nWords after. " * 5
    chunks = MarkdownSegmenter(ChunkingCfg(chunk_size=50, chunk_overlap=0)).segment(content)
    assert len(chunks) > 1
    assert sum(formula in c.text for c in chunks) == 1
    for chunk in chunks:
        assert chunk.text.count("$$") % 2 == 0
