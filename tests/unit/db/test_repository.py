"""Tests for the Repository pattern."""

from __future__ import annotations

import json

import pytest

from scholarkb.db.models import Chunk, Citation, Document, Library
from scholarkb.db.repository import Repository, build_fts_query


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


def _library(id="lib-1", name="papers", config="{}"):
    return Library(id=id, name=name, config=config)


def _document(id="doc-1", library_id="lib-1", path="/data/a.tex", hash="abc123"):
    return Document(
        id=id,
        library_id=library_id,
        filename=path.rsplit("/", 1)[-1],
        path=path,
        media_type="latex",
        content_hash=hash,
    )


def _chunk(document_id="doc-1", library_id="lib-1", index=0, text="hello world", meta="{}"):
    return Chunk(
        document_id=document_id,
        library_id=library_id,
        chunk_index=index,
        text=text,
        metadata=meta,
    )


@pytest.fixture
def seeded(repo):
    """One library with one document."""
    repo.add_library(_library())
    repo.add_document(_document())
    return repo


# ------------------------------------------------------------------
# Libraries
# ------------------------------------------------------------------


def test_add_and_get_library(repo):
    repo.add_library(_library(config='{"chunking": {"chunk_size": 800}}'))
    lib = repo.get_library("lib-1")
    assert lib is not None
    assert lib.name == "papers"
    assert lib.config_obj.chunking.chunk_size == 800


def test_get_library_by_name(repo):
    repo.add_library(_library())
    assert repo.get_library_by_name("papers").id == "lib-1"
    assert repo.get_library_by_name("missing") is None


def test_library_exists(repo):
    assert not repo.library_exists("lib-1")
    repo.add_library(_library())
    assert repo.library_exists("lib-1")


def test_update_library_replaces_config_only(repo):
    repo.add_library(_library())
    repo.update_library("lib-1", config='{"retrieval": {"max_results": 9}}')
    lib = repo.get_library("lib-1")
    assert lib.name == "papers"
    assert json.loads(lib.config) == {"retrieval": {"max_results": 9}}


def test_delete_library_removes_everything(seeded, tmp_db):
    [chunk_id] = seeded.replace_document_chunks("doc-1", [_chunk()])
    seeded.add_embedding(chunk_id, "lib-1", "m", [0.1, 0.2])
    seeded.delete_library("lib-1")
    assert seeded.get_document("doc-1") is None
    assert seeded.count_chunks() == 0
    assert seeded.count_embeddings() == 0
    assert seeded.count_fts() == 0


# ------------------------------------------------------------------
# Documents
# ------------------------------------------------------------------


def test_get_document_by_path_and_hash(seeded):
    assert seeded.get_document_by_path("lib-1", "/data/a.tex").id == "doc-1"
    assert seeded.get_document_by_hash("lib-1", "abc123").id == "doc-1"
    assert seeded.get_document_by_hash("lib-1", "other") is None


def test_get_documents_returns_mapping(seeded):
    seeded.add_document(_document(id="doc-2", path="/data/b.tex", hash="def"))
    docs = seeded.get_documents(["doc-1", "doc-2", "nope"])
    assert set(docs) == {"doc-1", "doc-2"}


def test_update_document_status(seeded):
    seeded.update_document_status("doc-1", "failed", "boom")
    doc = seeded.get_document("doc-1")
    assert doc.process_status == "failed"
    assert doc.error_message == "boom"


def test_delete_document_returns_removed_chunk_count(seeded):
    seeded.replace_document_chunks("doc-1", [_chunk(index=0), _chunk(index=1, text="more")])
    assert seeded.delete_document("doc-1") == 2
    assert seeded.count_fts() == 0


# ------------------------------------------------------------------
# Chunks
# ------------------------------------------------------------------


def test_replace_document_chunks_sets_ids(seeded):
    chunks = [_chunk(index=0), _chunk(index=1, text="second")]
    ids = seeded.replace_document_chunks("doc-1", chunks)
    assert [c.id for c in chunks] == ids
    assert ids[1] > ids[0]


def test_replace_document_chunks_replaces_previous(seeded):
    seeded.replace_document_chunks("doc-1", [_chunk(text="old text")])
    seeded.replace_document_chunks("doc-1", [_chunk(text="new text")])
    texts = [c.text for c in seeded.list_chunks("doc-1")]
    assert texts == ["new text"]
    assert seeded.count_fts() == 1


def test_replace_document_chunks_drops_embeddings(seeded):
    [chunk_id] = seeded.replace_document_chunks("doc-1", [_chunk()])
    seeded.add_embedding(chunk_id, "lib-1", "m", [1.0, 0.0])
    seeded.replace_document_chunks("doc-1", [_chunk(text="changed")])
    assert seeded.count_embeddings("lib-1") == 0


def test_get_chunk_at(seeded):
    seeded.replace_document_chunks("doc-1", [_chunk(index=0), _chunk(index=1, text="two")])
    assert seeded.get_chunk_at("doc-1", 1).text == "two"
    assert seeded.get_chunk_at("doc-1", 5) is None


def test_chunks_missing_embeddings(seeded):
    ids = seeded.replace_document_chunks(
        "doc-1", [_chunk(index=0), _chunk(index=1, text="two")]
    )
    seeded.add_embedding(ids[0], "lib-1", "m", [1.0, 0.0])
    missing = seeded.chunks_missing_embeddings("lib-1")
    assert [c.id for c in missing] == [ids[1]]


# ------------------------------------------------------------------
# FTS5
# ------------------------------------------------------------------


def test_build_fts_query_quotes_tokens():
    assert build_fts_query("attention, is all?") == '"attention" OR "is" OR "all"'


def test_build_fts_query_empty_for_punctuation():
    assert build_fts_query("?!,") == ""


def test_search_fts_ranks_matches(seeded):
    seeded.replace_document_chunks(
        "doc-1",
        [
            _chunk(index=0, text="Transformers rely on self-attention layers."),
            _chunk(index=1, text="Convolutional networks use local filters."),
        ],
    )
    hits = seeded.search_fts("attention", ["lib-1"], limit=5)
    assert len(hits) == 1
    chunk, score = hits[0]
    assert "self-attention" in chunk.text
    assert score < 0


def test_search_fts_porter_stemming(seeded):
    seeded.replace_document_chunks("doc-1", [_chunk(text="The models were training slowly.")])
    assert seeded.search_fts("trained", ["lib-1"])


def test_search_fts_filters_library(seeded):
    seeded.replace_document_chunks("doc-1", [_chunk(text="entropy coding")])
    assert seeded.search_fts("entropy", ["other-lib"]) == []


def test_rebuild_fts_repairs_missing_rows(seeded, tmp_db):
    seeded.replace_document_chunks("doc-1", [_chunk(index=0), _chunk(index=1, text="b")])
    tmp_db.execute("DELETE FROM chunks_fts")
    tmp_db.commit()
    assert seeded.count_fts("lib-1") == 0
    assert seeded.rebuild_fts("lib-1") == 2
    assert seeded.count_fts("lib-1") == 2


def test_rebuild_fts_global_drops_orphans(seeded, tmp_db):
    seeded.replace_document_chunks("doc-1", [_chunk()])
    tmp_db.execute("INSERT INTO chunks_fts(rowid, text) VALUES (999, 'ghost')")
    tmp_db.commit()
    assert seeded.count_orphan_fts() == 1
    seeded.rebuild_fts()
    assert seeded.count_orphan_fts() == 0


# ------------------------------------------------------------------
# Embeddings
# ------------------------------------------------------------------


def test_search_vec_orders_by_similarity(seeded):
    ids = seeded.replace_document_chunks(
        "doc-1", [_chunk(index=0, text="near"), _chunk(index=1, text="far")]
    )
    seeded.add_embedding(ids[0], "lib-1", "m", [1.0, 0.0, 0.0])
    seeded.add_embedding(ids[1], "lib-1", "m", [0.0, 1.0, 0.0])
    hits = seeded.search_vec([0.9, 0.1, 0.0], ["lib-1"], limit=2)
    assert [c.text for c, _ in hits] == ["near", "far"]
    assert hits[0][1] > hits[1][1]
    assert 0.0 <= hits[1][1] <= 1.0


def test_search_vec_ignores_other_dimensions(seeded):
    ids = seeded.replace_document_chunks(
        "doc-1", [_chunk(index=0), _chunk(index=1, text="other")]
    )
    seeded.add_embedding(ids[0], "lib-1", "small", [1.0, 0.0])
    seeded.add_embedding(ids[1], "lib-1", "large", [1.0, 0.0, 0.0])
    hits = seeded.search_vec([1.0, 0.0], ["lib-1"])
    assert [c.id for c, _ in hits] == [ids[0]]
    assert seeded.embedding_dimensions("lib-1") == [2, 3]


def test_delete_embeddings_subset(seeded):
    ids = seeded.replace_document_chunks(
        "doc-1", [_chunk(index=0), _chunk(index=1, text="two")]
    )
    for cid in ids:
        seeded.add_embedding(cid, "lib-1", "m", [1.0, 0.0])
    assert seeded.delete_embeddings("lib-1", [ids[0]]) == 1
    assert seeded.count_embeddings("lib-1") == 1
    assert seeded.embedding_models("lib-1") == ["m"]


# ------------------------------------------------------------------
# Citations
# ------------------------------------------------------------------


def test_search_citations_ordered_by_usage(seeded):
    seeded.upsert_citations(
        [
            Citation(library_id="lib-1", key="vaswani2017", entry_type="article",
                     title="Attention Is All You Need", author="Vaswani", year="2017"),
            Citation(library_id="lib-1", key="he2016", entry_type="inproceedings",
                     title="Deep Residual Learning", author="He", year="2016"),
        ]
    )
    seeded.set_citation_usage("lib-1", "doc-1", {"he2016": 3, "vaswani2017": 1})
    found = seeded.search_citations("lib-1")
    assert [c.key for c in found] == ["he2016", "vaswani2017"]
    assert found[0].usage_count == 3


def test_search_citations_filters_text(seeded):
    seeded.upsert_citations(
        [Citation(library_id="lib-1", key="vaswani2017", entry_type="article", year="2017")]
    )
    assert [c.key for c in seeded.search_citations("lib-1", "2017")] == ["vaswani2017"]
    assert seeded.search_citations("lib-1", "1999") == []


def test_set_citation_usage_replaces_counts(seeded):
    seeded.set_citation_usage("lib-1", "doc-1", {"a": 2})
    seeded.set_citation_usage("lib-1", "doc-1", {"b": 1})
    assert seeded.citation_usage("lib-1") == {"b": 1}
