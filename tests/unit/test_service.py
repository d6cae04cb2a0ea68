"""Tests for the KnowledgeService facade."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from scholarkb.db.repository import Repository
from scholarkb.service import KnowledgeService

_PAPER_MD = """\
# Attention Models

Transformers rely on self attention to relate tokens.

## Training

Residual connections stabilise deep network training.
"""

_REFS_BIB = """\
@article{vaswani2017,
  title = {Attention Is All You Need},
  author = {Vaswani, Ashish},
  year = {2017},
  journal = {NeurIPS}
}
@book{goodfellow2016, title = {Deep Learning}, year = {2016}}
"""

_PAPER_TEX = r"""\documentclass{article}
\title{Residual Notes}
\begin{document}
\section{Intro}
As shown in \cite{vaswani2017} and again \citep{vaswani2017, goodfellow2016}.
\end{document}
"""


@pytest.fixture
def service(tmp_db, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    return KnowledgeService(Repository(tmp_db))


@pytest.fixture
def library(service):
    return service.create_library("papers")["library"]


@pytest.fixture
def paper(tmp_path):
    path = tmp_path / "paper.md"
    path.write_text(_PAPER_MD, encoding="utf-8")
    return path


def _embedding_response(**kwargs):
    response = MagicMock()
    response.data = [{"embedding": [0.1, 0.2], "index": i} for i in range(len(kwargs["input"]))]
    return response


# ------------------------------------------------------------------
# Libraries
# ------------------------------------------------------------------


def test_create_library_snapshots_config(service):
    result = service.create_library("papers", "ML papers", {"chunking": {"chunk_size": 800}})
    assert result["success"]
    lib = result["library"]
    assert lib["name"] == "papers"
    assert lib["config"]["chunking"]["chunk_size"] == 800
    assert lib["config"]["embedding"]["model"] == "text-embedding-3-small"


def test_create_library_rejects_duplicate_and_empty(service, library):
    assert "already exists" in service.create_library("papers")["error"]
    assert not service.create_library("  ")["success"]


def test_create_library_rejects_invalid_config(service):
    result = service.create_library("bad", config={"chunking": {"chunk_overlap": 5000}})
    assert not result["success"]
    assert "chunk_overlap" in result["error"]


def test_get_library_by_name_or_id(service, library):
    assert service.get_library("papers")["library"]["id"] == library["id"]
    assert service.get_library(library["id"])["library"]["name"] == "papers"
    assert "not found" in service.get_library("missing")["error"]


def test_update_library_config(service, library):
    result = service.update_library_config("papers", {"retrieval": {"max_results": 9}})
    assert result["config"]["retrieval"]["max_results"] == 9
    stored = service.get_library("papers")["library"]["config"]
    assert stored["retrieval"]["max_results"] == 9
    assert not service.update_library_config("papers", {"llm": {"model": "x"}})["success"]


def test_delete_library_cancels_embedding_jobs(service, library, paper):
    service.add_document(paper, "papers")
    event = service._cancel_event(library["id"])

    assert service.delete_library("papers")["success"]
    assert event.is_set()
    assert service.list_libraries()["libraries"] == []
    assert service.repo.count_chunks() == 0


# ------------------------------------------------------------------
# Ingestion
# ------------------------------------------------------------------


def test_add_document_indexes_without_embedding_key(service, library, paper):
    result = service.add_document(paper, "papers")

    assert result["success"]
    assert result["status"] == "completed"
    assert result["chunkCount"] >= 1
    assert "OPENAI_API_KEY" in result["embedding"]["skipped"]
    doc = service.repo.get_document(result["documentId"])
    assert doc.media_type == "markdown"
    assert doc.metadata_dict["title"] == "Attention Models"
    listed = service.list_libraries()["libraries"][0]
    assert listed["documentCount"] == 1
    assert listed["chunkCount"] == result["chunkCount"]


def test_add_unchanged_document_skipped(service, library, paper):
    first = service.add_document(paper, "papers")
    second = service.add_document(paper, "papers")
    assert second["skipped"]
    assert second["reason"] == "unchanged"
    assert second["documentId"] == first["documentId"]


def test_changed_document_replaced(service, library, paper):
    first = service.add_document(paper, "papers")
    paper.write_text("# Rewritten\n\nEntirely new body text.\n", encoding="utf-8")
    second = service.add_document(paper, "papers")

    assert second["documentId"] != first["documentId"]
    assert service.repo.get_document(first["documentId"]) is None
    assert len(service.list_documents("papers")["documents"]) == 1


def test_same_content_elsewhere_is_duplicate(service, library, paper, tmp_path):
    service.add_document(paper, "papers")
    copy = tmp_path / "copy.md"
    copy.write_text(_PAPER_MD, encoding="utf-8")
    assert service.add_document(copy, "papers")["reason"] == "duplicate"


@pytest.mark.parametrize(
    "name, message",
    [
        ("notes.xyz", "Unsupported file type"),
        ("missing.md", "File not found"),
    ],
)
def test_add_document_errors(service, library, tmp_path, name, message):
    path = tmp_path / name
    if name.endswith(".xyz"):
        path.write_text("data", encoding="utf-8")
    assert message in service.add_document(path, "papers")["error"]


def test_add_document_rejects_traversal(service, library):
    assert not service.add_document("../etc/passwd.md", "papers")["success"]


def test_add_document_unknown_library(service, paper):
    assert "not found" in service.add_document(paper, "nope")["error"]


def test_pending_documents_processed_later(service, library, paper):
    result = service.add_document(paper, "papers", process_immediately=False)
    assert result["status"] == "pending"
    assert service.repo.count_chunks() == 0

    summary = service.process_pending("papers", embed=False)

    assert summary == {"success": True, "processed": 1, "failed": 0}
    assert service.repo.get_document(result["documentId"]).process_status == "completed"


def test_unexpected_indexing_failure_marks_document_failed(service, library):
    added = service.add_text("Some notes.", "papers", process_immediately=False)

    with patch("scholarkb.service.segment", side_effect=RuntimeError("boom")):
        result = service.process_document(added["documentId"], embed=False)

    assert result["success"] is False
    assert "boom" in result["error"]
    doc = service.repo.get_document(added["documentId"])
    assert doc.process_status == "failed"
    assert "boom" in doc.error_message


def test_text_with_private_use_sentinels_indexed_verbatim(service, library):
    content = "Odd export \ue0007\ue001 and \ue0000\ue001 markers with $x$."
    result = service.add_text(content, "papers", media_type="latex", embed=False)

    assert result["success"]
    [chunk] = service.repo.list_chunks(result["documentId"])
    assert chunk.text == content


def test_add_text(service, library):
    result = service.add_text(
        "# Notes\n\nSome markdown notes.", "papers", title="notes", media_type="markdown"
    )
    assert result["success"]
    doc = service.repo.get_document(result["documentId"])
    assert doc.filename == "notes"
    assert doc.path is None
    assert service.add_text("# Notes\n\nSome markdown notes.", "papers")["reason"] == "duplicate"


def test_reprocess_uses_current_chunking(service, library):
    body = "\n\n".join(f"Paragraph {i} " + "word " * 60 for i in range(6))
    result = service.add_text(body, "papers", embed=False)
    before = result["chunkCount"]
    service.update_library_config("papers", {"chunking": {"chunk_size": 2000, "chunk_overlap": 0}})

    after = service.reprocess_document(result["documentId"], embed=False)["chunkCount"]

    assert after < before


def test_remove_document(service, library, paper):
    added = service.add_document(paper, "papers")
    result = service.remove_document(added["documentId"])
    assert result["removedChunks"] == added["chunkCount"]
    assert service.list_documents()["documents"] == []
    assert service.repo.count_fts() == 0
    assert not service.remove_document(added["documentId"])["success"]


def test_bibtex_and_cite_usage(service, library, tmp_path):
    bib = tmp_path / "refs.bib"
    bib.write_text(_REFS_BIB, encoding="utf-8")
    tex = tmp_path / "notes.tex"
    tex.write_text(_PAPER_TEX, encoding="utf-8")

    service.add_document(bib, "papers")
    service.add_document(tex, "papers")

    citations = service.search_citations("papers")["citations"]
    assert [c["key"] for c in citations] == ["vaswani2017", "goodfellow2016"]
    assert citations[0]["usageCount"] == 2
    assert citations[0]["journal"] == "NeurIPS"
    filtered = service.search_citations("papers", "Deep")["citations"]
    assert [c["key"] for c in filtered] == ["goodfellow2016"]


# ------------------------------------------------------------------
# Query
# ------------------------------------------------------------------


def test_search_keyword_only_without_embeddings(service, library, paper):
    service.add_document(paper, "papers")
    result = service.search("residual training", ["papers"])

    assert result["success"]
    assert result["results"]
    assert "Residual" in result["results"][0]["content"]
    assert result["results"][0]["filename"] == "paper.md"
    assert result["contextDecision"]["contextType"] == "partial"


def test_search_empty_index_hint(service, library):
    result = service.search("residual training", ["papers"], retriever_type="keyword")
    assert result["results"] == []
    assert result["noResultsHint"] == "empty_index"


def test_search_rejects_empty_query_and_unknown_library(service, library):
    assert not service.search("   ")["success"]
    assert "not found" in service.search("x", ["nope"])["error"]


def test_vector_search_without_key_reports_error(service, library, paper):
    service.add_document(paper, "papers")
    result = service.search("residual", ["papers"], retriever_type="vector")
    assert not result["success"]
    assert "OPENAI_API_KEY" in result["error"]


def test_build_context(service, library, paper):
    service.add_document(paper, "papers")
    with patch(
        "scholarkb.rag.assembler.count_tokens", side_effect=lambda model, text: len(text.split())
    ):
        result = service.build_context("residual training", ["papers"], token_budget=500)

    assert result["success"]
    assert result["context"].startswith("[Reference 1] paper.md")
    assert result["totalTokens"] > 0
    assert result["citations"] == []


def test_route(service):
    result = service.route("Hello!")
    assert result["decision"]["contextType"] == "none"
    assert result["retrievalParams"]["topK"] == 0


# ------------------------------------------------------------------
# Maintenance
# ------------------------------------------------------------------


def test_diagnostics_after_ingest(service, library, paper):
    added = service.add_document(paper, "papers")
    report = service.get_diagnostics("papers")
    assert report["totalChunks"] == added["chunkCount"]
    assert report["missingEmbeddings"] == added["chunkCount"]
    assert report["issues"] == []


def test_rebuild_fts(service, library, paper):
    added = service.add_document(paper, "papers")
    assert service.rebuild_fts("papers")["recordCount"] == added["chunkCount"]


def test_generate_embeddings_requires_key(service, library, paper):
    service.add_document(paper, "papers")
    result = service.generate_embeddings("papers")
    assert not result["success"]
    assert "OPENAI_API_KEY" in result["error"]


def test_generate_embeddings_converges(service, library, paper, monkeypatch):
    added = service.add_document(paper, "papers", embed=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    with patch(
        "scholarkb.rag.llm_client.litellm.embedding", side_effect=_embedding_response
    ) as mock_embed:
        first = service.generate_embeddings()
        second = service.generate_embeddings()
        rebuilt = service.generate_embeddings("papers", rebuild=True)

    assert first["processed"] == added["chunkCount"]
    assert second["processed"] == 0
    assert rebuilt["processed"] == added["chunkCount"]
    assert mock_embed.call_count == 2
    assert service.repo.count_embeddings() == added["chunkCount"]
