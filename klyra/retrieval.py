"""Lexical and local-embedding retrieval of workspace chunks for the context cockpit."""

from __future__ import annotations

import dataclasses
import math
import os
import posixpath
import time
from dataclasses import dataclass, field

from klyra.compact import estimate_tokens

MAX_CHUNK_BYTES = 2400
MIN_CHUNK_BYTES = 320
EMBEDDING_DIMENSIONS = 384

_DEFAULT_MAX_TOKENS = 1000
_DEFAULT_MAX_CHUNKS = 10
_DEFAULT_MAX_FILES = 60
_WALK_TIMEOUT = 2.0
_MAX_FILE_SIZE = 256 * 1024
_MAX_CHUNKS_PER_PATH = 3
_SNIPPET_LINES = 14
_SNIPPET_LINE_BYTES = 160

_BM25_K1 = 1.2
_BM25_B = 0.75
_AST_BOOST = 1.4
_PATH_BOOST = 1.0
_EMBEDDING_THRESHOLD = 0.08
_EMBEDDING_WEIGHT = 4.0

_FNV_OFFSET = 2166136261
_FNV_PRIME = 16777619

_SKIP_DIRS = frozenset(
    {".git", ".agentcli", "node_modules", "dist", "build", ".cache", ".next",
     "vendor", "coverage", "target", ".venv", "venv"}
)
_LOCKFILES = frozenset(
    {"package-lock.json", "yarn.lock", "pnpm-lock.yaml", "bun.lockb", "go.sum",
     "cargo.lock", "poetry.lock", "gemfile.lock"}
)
_BINARY_EXTS = frozenset(
    {".png", ".jpg", ".jpeg", ".gif", ".webp", ".ico", ".pdf", ".zip", ".gz",
     ".tar", ".mp4", ".mov", ".wasm"}
)


@dataclass
class RetrievalConfig:
    """Budgets and switches for building a retrieval cart."""

    max_tokens: int = 0
    max_chunks: int = 0
    max_files: int = 0
    use_embeddings: bool = False
    use_reranker: bool = False
    repo_map: str = ""


@dataclass
class RetrievalChunk:
    """A contiguous slice of a workspace file with its term statistics."""

    path: str
    start_line: int
    end_line: int
    text: str
    terms: dict[str, int] = field(default_factory=dict)
    tokens: int = 0
    score: float = 0.0
    reason: str = ""


class _WalkTimeout(Exception):
    pass


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _ext(name: str) -> str:
    idx = name.rfind(".")
    return name[idx:] if idx >= 0 else ""


def build_retrieval_cart(cfg: RetrievalConfig, cwd: str, query: str) -> tuple[str, list[str]]:
    """Rank workspace chunks against ``query`` and render the selected ones.

    Returns the rendered cart (empty when nothing matched) and any warnings.
    """
    query_terms = retrieval_terms(query)
    if not query_terms:
        return "", []
    cfg = dataclasses.replace(
        cfg,
        max_tokens=cfg.max_tokens if cfg.max_tokens > 0 else _DEFAULT_MAX_TOKENS,
        max_chunks=cfg.max_chunks if cfg.max_chunks > 0 else _DEFAULT_MAX_CHUNKS,
        max_files=cfg.max_files if cfg.max_files > 0 else _DEFAULT_MAX_FILES,
    )

    chunks, warnings = collect_retrieval_chunks(cwd, cfg.max_files)
    if not chunks:
        return "", warnings
    ast_hints = repo_map_hints(cfg.repo_map)
    idf = inverse_document_frequency(chunks)
    avg_len = _average_chunk_terms(chunks)
    query_embedding = embedding_vector(query)
    for chunk in chunks:
        embedding_score = 0.0
        if cfg.use_embeddings:
            embedding_score = cosine_sparse(
                query_embedding, embedding_vector(chunk.path + " " + chunk.text)
            )
        chunk.score, chunk.reason = score_chunk(
            chunk, query_terms, idf, avg_len, ast_hints, embedding_score
        )
    chunks.sort(key=lambda c: (-c.score, c.path, c.start_line))

    selected = select_retrieval_chunks(chunks, cfg.max_chunks, cfg.max_tokens)
    if not selected:
        return "", warnings

    lines = [
        f"query: {query.strip()}",
        f"budget: {cfg.max_tokens} tokens / {cfg.max_chunks} chunks",
        f"embeddings: {'local-hash' if cfg.use_embeddings else 'off'}",
        f"reranker: {'on' if cfg.use_reranker else 'off'}",
    ]
    if cfg.use_reranker:
        lines.append("note: reranker is configured on, but no external reranker is wired in this MVP")
    for number, chunk in enumerate(selected, start=1):
        lines.append(
            f"{number}. {chunk.path}:{chunk.start_line}-{chunk.end_line} "
            f"score={chunk.score:.2f} tokens={chunk.tokens}"
        )
        lines.append("   why: " + chunk.reason)
        lines.append(indent_snippet(chunk.text, "   "))
    return "\n".join(lines), warnings


def _walk_candidates(cwd: str, deadline: float, warnings: list[str]) -> list[tuple[str, int]]:
    candidates: list[tuple[str, int]] = []

    def visit(directory: str) -> None:
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            warnings.append(f"retrieval walk: {exc}")
            return
        for entry in entries:
            if time.monotonic() > deadline:
                raise _WalkTimeout
            if entry.is_dir(follow_symlinks=False):
                if not _retrieval_skip_dir(entry.name):
                    visit(entry.path)
                continue
            try:
                size = entry.stat(follow_symlinks=False).st_size
            except OSError as exc:
                warnings.append(f"retrieval stat: {exc}")
                continue
            rel = os.path.relpath(entry.path, cwd).replace(os.sep, "/")
            if _retrieval_skip_path(rel, size):
                continue
            candidates.append((rel, size))

    try:
        visit(cwd)
    except _WalkTimeout:
        pass
    return candidates


def collect_retrieval_chunks(cwd: str, max_files: int) -> tuple[list[RetrievalChunk], list[str]]:
    """Walk the workspace, pick the most relevant files and split them into chunks."""
    deadline = time.monotonic() + _WALK_TIMEOUT
    warnings: list[str] = []
    candidates = _walk_candidates(cwd, deadline, warnings)
    candidates.sort(key=lambda c: (-_retrieval_file_score(c[0]), c[1], c[0]))
    candidates = candidates[:max_files]

    chunks: list[RetrievalChunk] = []
    for rel, _ in candidates:
        if time.monotonic() > deadline:
            warnings.append("retrieval timed out")
            break
        try:
            with open(os.path.join(cwd, *rel.split("/")), "rb") as handle:
                data = handle.read()
        except OSError as exc:
            warnings.append(f"retrieval read: {exc}")
            continue
        if looks_binary(data):
            continue
        chunks.extend(chunk_text(rel, data.decode("utf-8", errors="replace")))
    return chunks, warnings


def chunk_text(path: str, text: str) -> list[RetrievalChunk]:
    """Split text into chunks at blank lines or size limits."""
    lines = text.split("\n")
    chunks: list[RetrievalChunk] = []
    start = 0
    size = 0
    for index, line in enumerate(lines):
        size += _byte_len(line) + 1
        blank_boundary = not line.strip() and size >= MIN_CHUNK_BYTES
        if size >= MAX_CHUNK_BYTES or blank_boundary:
            _append_chunk(chunks, path, lines[start:index + 1], start + 1)
            start = index + 1
            size = 0
    if start < len(lines):
        _append_chunk(chunks, path, lines[start:], start + 1)
    return chunks


def _append_chunk(chunks: list[RetrievalChunk], path: str, lines: list[str], start_line: int) -> None:
    text = "\n".join(lines).strip()
    if not text:
        return
    chunks.append(
        RetrievalChunk(
            path=path,
            start_line=start_line,
            end_line=start_line + text.count("\n"),
            text=text,
            terms=term_counts(text + " " + path),
            tokens=estimate_tokens(text),
        )
    )


def score_chunk(
    chunk: RetrievalChunk,
    query_terms: list[str],
    idf: dict[str, float],
    avg_len: float,
    ast_hints: set[str],
    embedding_score: float,
) -> tuple[float, str]:
    """BM25 score plus repo-map, path and embedding boosts, with a reason."""
    doc_len = float(sum(chunk.terms.values()))
    if avg_len <= 0:
        avg_len = 1.0
    score = 0.0
    matches: list[str] = []
    for term in query_terms:
        tf = float(chunk.terms.get(term, 0))
        if tf == 0:
            continue
        norm = tf + _BM25_K1 * (1 - _BM25_B + _BM25_B * doc_len / avg_len)
        score += idf.get(term, 0.0) * (tf * (_BM25_K1 + 1)) / norm
        matches.append(term)
    boosts: list[str] = []
    if chunk.path in ast_hints:
        score += _AST_BOOST
        boosts.append("repo-map path")
    lower_path = chunk.path.lower()
    for term in query_terms:
        if term in lower_path:
            score += _PATH_BOOST
            boosts.append("path:" + term)
    if embedding_score >= _EMBEDDING_THRESHOLD:
        score += embedding_score * _EMBEDDING_WEIGHT
        boosts.append(f"local-embedding={embedding_score:.2f}")
    if not matches and not boosts:
        return 0.0, "no lexical or AST match"
    reason = "bm25 terms: " + ", ".join(matches)
    if boosts:
        reason += "; boosts: " + ", ".join(boosts)
    return score, reason


def embedding_vector(text: str) -> dict[int, float]:
    """Unit-length sparse hashed feature vector of the text."""
    vec: dict[int, float] = {}
    for feature, weight in _embedding_features(text).items():
        if not feature or weight == 0:
            continue
        idx = stable_feature_index(feature)
        vec[idx] = vec.get(idx, 0.0) + weight
    norm = sum(value * value for value in vec.values())
    if norm == 0:
        return vec
    norm = math.sqrt(norm)
    return {idx: value / norm for idx, value in vec.items()}


def _embedding_features(text: str) -> dict[str, float]:
    features: dict[str, float] = {}
    for token in _raw_embedding_tokens(text):
        token_lower = token.lower()
        _add_feature(features, "tok:" + token_lower, 2.0)
        for part in _split_identifier_token(token):
            if _byte_len(part) >= 2:
                _add_feature(features, "part:" + part, 1.8)
            _add_char_ngrams(features, part, 3, 4, 0.35)
        _add_char_ngrams(features, token_lower, 3, 5, 0.25)
    return features


def _add_feature(features: dict[str, float], key: str, weight: float) -> None:
    if key:
        features[key] = features.get(key, 0.0) + weight


def _add_char_ngrams(features: dict[str, float], token: str, min_n: int, max_n: int, weight: float) -> None:
    if len(token) < min_n:
        return
    for n in range(min_n, min(max_n, len(token)) + 1):
        for i in range(len(token) - n + 1):
            _add_feature(features, f"ng{n}:{token[i:i + n]}", weight)


def _split_words(text: str, keep) -> list[str]:
    words: list[str] = []
    current: list[str] = []
    for char in text:
        if keep(char):
            current.append(char)
            continue
        if current:
            words.append("".join(current))
            current = []
    if current:
        words.append("".join(current))
    return words


def _is_alnum(char: str) -> bool:
    return char.isalpha() or char.isdecimal()


def _raw_embedding_tokens(text: str) -> list[str]:
    return [t for t in _split_words(text, _is_alnum) if _byte_len(t.lower()) >= 2]


def _split_identifier_token(token: str) -> list[str]:
    parts: list[str] = []
    current: list[str] = []

    def flush() -> None:
        if current:
            part = "".join(current).lower()
            current.clear()
            if _byte_len(part) >= 2:
                parts.append(part)

    for index, char in enumerate(token):
        if index > 0 and char.isupper():
            flush()
        current.append(char)
    flush()
    token_lower = token.lower()
    if not parts and _byte_len(token_lower) >= 2:
        parts.append(token_lower)
    return parts


def stable_feature_index(feature: str) -> int:
    """FNV-1a hash of the feature folded into the embedding dimensions."""
    value = _FNV_OFFSET
    for byte in feature.encode("utf-8"):
        value ^= byte
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return value % EMBEDDING_DIMENSIONS


def cosine_sparse(left: dict[int, float], right: dict[int, float]) -> float:
    """Dot product of two sparse unit vectors."""
    if not left or not right:
        return 0.0
    if len(left) > len(right):
        left, right = right, left
    return sum(value * right.get(idx, 0.0) for idx, value in left.items())


def select_retrieval_chunks(
    chunks: list[RetrievalChunk], max_chunks: int, max_tokens: int
) -> list[RetrievalChunk]:
    """Take ranked chunks within chunk, token and per-file limits."""
    selected: list[RetrievalChunk] = []
    tokens = 0
    per_path: dict[str, int] = {}
    for chunk in chunks:
        if chunk.score <= 0:
            continue
        if len(selected) >= max_chunks:
            break
        if per_path.get(chunk.path, 0) >= _MAX_CHUNKS_PER_PATH:
            continue
        if tokens + chunk.tokens > max_tokens:
            continue
        selected.append(chunk)
        tokens += chunk.tokens
        per_path[chunk.path] = per_path.get(chunk.path, 0) + 1
    return selected


def inverse_document_frequency(chunks: list[RetrievalChunk]) -> dict[str, float]:
    """BM25 inverse document frequency of every term across the chunks."""
    df: dict[str, int] = {}
    for chunk in chunks:
        for term in chunk.terms:
            df[term] = df.get(term, 0) + 1
    total = float(len(chunks))
    return {term: math.log(1 + (total - count + 0.5) / (count + 0.5)) for term, count in df.items()}


def _average_chunk_terms(chunks: list[RetrievalChunk]) -> float:
    if not chunks:
        return 0.0
    return sum(sum(chunk.terms.values()) for chunk in chunks) / len(chunks)


def repo_map_hints(repo_map: str) -> set[str]:
    """Paths listed in a repo map rendering."""
    hints: set[str] = set()
    for line in repo_map.split("\n"):
        if line.startswith("- "):
            line = line[2:]
        line = line.strip()
        if not line or ": " in line:
            continue
        fields = line.split()
        if not fields:
            continue
        path = fields[0]
        if "/" in path or "." in path:
            hints.add(path)
    return hints


def retrieval_terms(query: str) -> list[str]:
    """Sorted distinct query terms of at least three bytes."""
    return sorted(term for term in term_counts(query) if _byte_len(term) >= 3)


def term_counts(text: str) -> dict[str, int]:
    """Lower-case word counts; words are letters, digits and underscores."""
    counts: dict[str, int] = {}
    for word in _split_words(text, lambda c: _is_alnum(c) or c == "_"):
        term = word.lower()
        if _byte_len(term) < 2:
            continue
        counts[term] = counts.get(term, 0) + 1
    return counts


def indent_snippet(text: str, prefix: str) -> str:
    """Indent up to fourteen lines, shortening overly long ones."""
    lines = text.strip().split("\n")
    if len(lines) > _SNIPPET_LINES:
        lines = lines[:_SNIPPET_LINES] + ["..."]
    out = []
    for line in lines:
        raw = line.encode("utf-8")
        if len(raw) > _SNIPPET_LINE_BYTES:
            line = raw[:_SNIPPET_LINE_BYTES - 3].decode("utf-8", errors="ignore") + "..."
        out.append(prefix + line)
    return "\n".join(out)


def _retrieval_file_score(path: str) -> int:
    depth = posixpath.normpath(path).count("/")
    return 0 if depth >= 12 else 12 - depth


def _retrieval_skip_dir(name: str) -> bool:
    return name.lower() in _SKIP_DIRS


def _retrieval_skip_path(path: str, size: int | None) -> bool:
    lower = path.replace(os.sep, "/").lower()
    name = posixpath.basename(lower)
    if (
        name == ".env"
        or name.startswith(".env.")
        or name.endswith((".pem", ".key", ".p12", ".pfx"))
    ):
        return True
    if name in _LOCKFILES:
        return True
    if name.endswith((".min.js", ".min.css", ".snap")):
        return True
    if "__snapshots__/" in lower or ".generated." in name or ".gen." in name:
        return True
    if _ext(name) in _BINARY_EXTS:
        return True
    return size is not None and size > _MAX_FILE_SIZE


def looks_binary(data: bytes) -> bool:
    """True when the first 4 KiB contain a NUL byte."""
    return b"\x00" in data[:4096]