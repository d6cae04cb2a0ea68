"""Tests for BibTeX parsing and cite-usage scanning."""

from __future__ import annotations

from scholarkb.ingest.bibtex import parse_bibtex, scan_cite_usage

_BIB = """
@article{vaswani2017,
  title = {Attention Is {All} You Need},
  author = {Vaswani, Ashish and Shazeer, Noam},
  journal = "NeurIPS",
  year = 2017
}

@comment{ignored, note = {skip me}}

@inproceedings{he2016, title={Deep Residual Learning}, booktitle={CVPR}, year={2016}}
"""


def test_parse_entries_in_order():
    entries = parse_bibtex(_BIB)
    assert [e.key for e in entries] == ["vaswani2017", "he2016"]
    assert [e.entry_type for e in entries] == ["article", "inproceedings"]


def test_field_value_forms():
    entry = parse_bibtex(_BIB)[0]
    assert entry.title == "Attention Is All You Need"
    assert entry.journal == "NeurIPS"
    assert entry.year == "2017"
    assert entry.author == "Vaswani, Ashish and Shazeer, Noam"


def test_booktitle_used_as_venue():
    assert parse_bibtex(_BIB)[1].journal == "CVPR"


def test_citation_text():
    entry = parse_bibtex(_BIB)[0]
    assert entry.citation_text() == (
        "Vaswani, Ashish and Shazeer, Noam (2017). Attention Is All You Need. NeurIPS."
    )


def test_citation_text_without_author_uses_key():
    [entry] = parse_bibtex("@misc{anon, title={Untitled}}")
    assert entry.citation_text() == "anon. Untitled."


def test_duplicate_key_later_wins():
    entries = parse_bibtex("@misc{k, title={Old}}\n@misc{k, title={New}}")
    assert len(entries) == 1
    assert entries[0].title == "New"


def test_empty_input():
    assert parse_bibtex("") == []


def test_scan_cite_usage_counts_every_key():
    text = "\\cite{a, b} then \\citep[p.~3]{a} and \\citet*{c}."
    assert scan_cite_usage(text) == {"a": 2, "b": 1, "c": 1}


def test_scan_cite_usage_none():
    assert not scan_cite_usage("No citations here.")
