import math

import pytest

from klyra.retrieval import (
    EMBEDDING_DIMENSIONS,
    RetrievalChunk,
    RetrievalConfig,
    build_retrieval_cart,
    chunk_text,
    collect_retrieval_chunks,
    cosine_sparse,
    embedding_vector,
    indent_snippet,
    inverse_document_frequency,
    looks_binary,
    repo_map_hints,
    retrieval_terms,
    score_chunk,
    select_retrieval_chunks,
    stable_feature_index,
    term_counts,
)


def _write(root, rel, content):
    target = root / rel
    target.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        target.write_bytes(content)
    else:
        target.write_text(content, encoding="utf-8")


def test_term_counts_lowercases_and_drops_short_words():
    counts = term_counts("Parser parser a my_var x")
    assert counts == {"parser": 2, "my_var": 1}


def test_retrieval_terms_sorted_and_at_least_three_bytes():
    terms = retrieval_terms("zeta Alpha go beta alpha")
    assert terms == ["alpha", "beta", "zeta"]


def test_retrieval_terms_empty_query():
    assert retrieval_terms("  a b ") == []


def test_chunk_text_single_chunk_lines():
    chunks = chunk_text("src/main.go", "package main\n\nfunc main() {}\n")
    assert len(chunks) == 1
    chunk = chunks[0]
    assert chunk.start_line == 1
    assert chunk.end_line == 3
    assert chunk.text == "package main\n\nfunc main() {}"
    assert chunk.terms["main"] >= 2
    assert "src" in chunk.terms


def test_chunk_text_splits_large_text_and_covers_lines():
    text = "\n".join("line number %d with words" % i for i in range(400))
    chunks = chunk_text("big.txt", text)
    assert len(chunks) > 1
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start_line > previous.end_line
    assert chunks[0].start_line == 1


def test_chunk_text_blank_text_has_no_chunks():
    assert chunk_text("empty.txt", "\n \n") == []


def test_stable_feature_index_deterministic_and_bounded():
    first = stable_feature_index("tok:parser")
    assert first == stable_feature_index("tok:parser")
    assert 0 <= first < EMBEDDING_DIMENSIONS


def test_embedding_vector_is_unit_length():
    vec = embedding_vector("parseConfig loads settings")
    norm = math.sqrt(sum(value * value for value in vec.values()))
    assert norm == pytest.approx(1.0)


def test_cosine_of_identical_vectors_is_one():
    vec = embedding_vector("retrievalCart buildChunks")
    assert cosine_sparse(vec, vec) == pytest.approx(1.0)


def test_cosine_with_empty_vector_is_zero():
    assert cosine_sparse({}, embedding_vector("hello world")) == 0.0
    assert embedding_vector("") == {}


def test_similar_text_scores_higher_than_unrelated():
    query = embedding_vector("parser config")
    close = cosine_sparse(query, embedding_vector("parseConfig parser configuration"))
    far = cosine_sparse(query, embedding_vector("zebra umbrella"))
    assert close > far


def test_looks_binary():
    assert looks_binary(b"abc\x00def")
    assert not looks_binary(b"plain text")
    assert not looks_binary(b"a" * 5000 + b"\x00")


def test_indent_snippet_limits_lines_and_width():
    text = "\n".join(["x" * 200] + ["line"] * 20)
    out = indent_snippet(text, "   ").split("\n")
    assert len(out) == 15
    assert out[-1] == "   ..."
    assert out[0].endswith("...")
    assert len(out[0]) == 3 + 160


def test_repo_map_hints_collects_paths():
    repo_map = "files: 2\n- pkg/agent/agent.go Run New\n- README.md\n- symbols\n"
    hints = repo_map_hints(repo_map)
    assert hints == {"pkg/agent/agent.go", "README.md"}


def test_inverse_document_frequency_rarer_term_is_higher():
    chunks = [
        RetrievalChunk("a.txt", 1, 1, "", terms={"common": 1, "rare": 1}),
        RetrievalChunk("b.txt", 1, 1, "", terms={"common": 1}),
        RetrievalChunk("c.txt", 1, 1, "", terms={"common": 1}),
    ]
    idf = inverse_document_frequency(chunks)
    assert idf["rare"] > idf["common"] > 0


def test_score_chunk_without_match():
    chunk = RetrievalChunk("a.txt", 1, 1, "hello", terms={"hello": 1})
    score, reason = score_chunk(chunk, ["parser"], {}, 1.0, set(), 0.0)
    assert score == 0
    assert reason == "no lexical or AST match"


def test_score_chunk_reports_matches_and_boosts():
    chunk = RetrievalChunk("pkg/parser.go", 1, 1, "parser", terms={"parser": 2, "pkg": 1})
    idf = {"parser": 1.0}
    score, reason = score_chunk(chunk, ["parser"], idf, 3.0, {"pkg/parser.go"}, 0.5)
    assert score > 0
    assert reason.startswith("bm25 terms: parser; boosts: ")
    assert "repo-map path" in reason
    assert "path:parser" in reason
    assert "local-embedding=0.50" in reason


def test_select_respects_per_path_and_token_limits():
    chunks = [RetrievalChunk("a.go", i, i, "x", tokens=10, score=5.0) for i in range(1, 6)]
    chunks.append(RetrievalChunk("b.go", 1, 1, "x", tokens=10, score=4.0))
    chunks.append(RetrievalChunk("c.go", 1, 1, "x", tokens=10, score=0.0))
    selected = select_retrieval_chunks(chunks, 10, 1000)
    assert [c.path for c in selected] == ["a.go", "a.go", "a.go", "b.go"]
    limited = select_retrieval_chunks(chunks, 10, 25)
    assert sum(c.tokens for c in limited) <= 25
    assert len(select_retrieval_chunks(chunks, 1, 1000)) == 1


def test_collect_skips_secrets_vendor_and_binaries(tmp_path):
    _write(tmp_path, "main.go", "package main\n")
    _write(tmp_path, ".env", "TOKEN=token\n")
    _write(tmp_path, "node_modules/lib/index.js", "module.exports = 1\n")
    _write(tmp_path, "image.png", "not really an image")
    _write(tmp_path, "go.sum", "checksum\n")
    _write(tmp_path, "data.bin", b"abc\x00def")
    chunks, warnings = collect_retrieval_chunks(str(tmp_path), 60)
    assert warnings == []
    assert {c.path for c in chunks} == {"main.go"}


def test_collect_limits_file_count_preferring_shallow_files(tmp_path):
    _write(tmp_path, "top.txt", "top level\n")
    _write(tmp_path, "deep/nested/inner.txt", "deep file\n")
    chunks, _ = collect_retrieval_chunks(str(tmp_path), 1)
    assert [c.path for c in chunks] == ["top.txt"]


def test_build_retrieval_cart_renders_selected_chunks(tmp_path):
    _write(tmp_path, "pkg/parser/parser.go", "package parser\n\nfunc Parse() {}\n")
    _write(tmp_path, "notes.txt", "unrelated zebra content\n")
    cfg = RetrievalConfig(use_embeddings=True)
    cart, warnings = build_retrieval_cart(cfg, str(tmp_path), "fix the parser")
    assert warnings == []
    lines = cart.split("\n")
    assert lines[0] == "query: fix the parser"
    assert lines[1] == "budget: 1000 tokens / 10 chunks"
    assert lines[2] == "embeddings: local-hash"
    assert lines[3] == "reranker: off"
    assert lines[4].startswith("1. pkg/parser/parser.go:1-3 score=")
    assert "   why: bm25 terms:" in cart


def test_build_retrieval_cart_reranker_note_and_embeddings_off(tmp_path):
    _write(tmp_path, "parser.go", "package parser\n")
    cfg = RetrievalConfig(use_reranker=True)
    cart, _ = build_retrieval_cart(cfg, str(tmp_path), "parser")
    assert "embeddings: off" in cart
    assert "reranker: on" in cart
    assert "note: reranker is configured on, but no external reranker is wired in this MVP" in cart


def test_build_retrieval_cart_empty_query_or_no_match(tmp_path):
    _write(tmp_path, "a.txt", "hello world\n")
    assert build_retrieval_cart(RetrievalConfig(), str(tmp_path), "a b") == ("", [])
    cart, _ = build_retrieval_cart(RetrievalConfig(), str(tmp_path), "quantum")
    assert cart == ""


def test_build_retrieval_cart_does_not_mutate_config(tmp_path):
    _write(tmp_path, "parser.go", "package parser\n")
    cfg = RetrievalConfig()
    build_retrieval_cart(cfg, str(tmp_path), "parser")
    assert cfg.max_tokens == 0 and cfg.max_chunks == 0 and cfg.max_files == 0