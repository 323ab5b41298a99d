"""The context cockpit: compact fact cards describing the workspace for a task."""

from __future__ import annotations

import dataclasses
import os
import posixpath
import time
from dataclasses import dataclass, field
from typing import Callable, Union

from klyra.compact import estimate_tokens
from klyra.instructions import DEFAULT_MAX_BYTES
from klyra.instructions import load as load_instructions
from klyra.instructions import load_scoped
from klyra.retrieval import RetrievalConfig, build_retrieval_cart

DEFAULT_MAX_TOKENS = 1200
DEFAULT_MAX_FILES = 60
DEFAULT_MAX_CARDS = 10

_NEGATIVE_LIMIT = 40
_DIFF_MAX_LINES = 80
_NO_DIFF = "no tracked diff"

_AGENT_RAILS = "\n".join(
    [
        "- map/search/outline before reading files",
        "- read one symbol or about 100 lines",
        "- edit existing files with replace_symbol/replace_lines/insert_lines/diff_patch",
        "- create new files with create_file; never rewrite existing files from scratch",
        "- check git diff and run focused tests after edits",
        "- do not open Negative Context unless asked",
    ]
)

_DEPENDENCY_DIRS = frozenset({".git", "node_modules", "vendor"})
_BUILD_DIRS = frozenset({"dist", "build", "coverage", ".next", ".nuxt", ".cache", "target", "out"})
_LOCKFILES = frozenset(
    {"package-lock.json", "yarn.lock", "pnpm-lock.yaml", "bun.lockb", "go.sum", "cargo.lock", "poetry.lock"}
)
_BINARY_EXTS = frozenset(
    {".png", ".jpg", ".jpeg", ".gif", ".webp", ".ico", ".pdf", ".zip", ".gz", ".tar", ".mp4", ".mov", ".wasm"}
)
_LARGE_JSON = 64 * 1024
_LARGE_FILE = 256 * 1024

#: A tool output given either as ready text or as a callable producing it.
Source = Union[str, Callable[..., str], None]


@dataclass
class CockpitConfig:
    """Switches and budgets for building a cockpit snapshot."""

    enabled: bool = False
    inject: bool = False
    max_tokens: int = 0
    max_files: int = 0
    max_cards: int = 0
    include_diff: bool = False
    include_recipes: bool = False
    include_negative: bool = False
    include_retrieval: bool = False
    retrieval_tokens: int = 0
    retrieval_chunks: int = 0
    use_embeddings: bool = False
    use_reranker: bool = False
    max_instructions: int = 0


@dataclass
class Card:
    """One fact card of the cockpit."""

    kind: str
    title: str
    reason: str
    freshness: str
    tokens: int = 0
    content: str = ""


@dataclass
class Snapshot:
    """The cards built for one task, with budget figures and warnings."""

    enabled: bool = False
    injected: bool = False
    max_tokens: int = 0
    estimated_tokens: int = 0
    cards: list[Card] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def markdown(self) -> str:
        """Human-readable rendering of the snapshot."""
        if not self.enabled:
            return "context cockpit disabled"
        parts = [
            f"- budget: `{self.max_tokens} tokens`\n",
            f"- estimated: `{self.estimated_tokens} tokens`\n",
            f"- inject: `{_on_off(self.injected)}`\n",
        ]
        parts.extend(f"- warning: `{warning}`\n" for warning in self.warnings)
        for card in self.cards:
            parts.append(f"\n{card.title}\n\n")
            parts.append(f"- kind: `{card.kind}`\n")
            parts.append(f"- why: {card.reason}\n")
            parts.append(f"- freshness: `{card.freshness}`\n")
            parts.append(f"- tokens: `{card.tokens}`\n\n")
            parts.append("```text\n" + card.content.strip() + "\n```\n")
        return "".join(parts).strip()

    def prompt_text(self) -> str:
        """Compact rendering of the snapshot for a system prompt."""
        if not self.enabled:
            return ""
        parts = [f"budget={self.max_tokens} estimated={self.estimated_tokens}\n"]
        parts.extend(f"warning: {warning}\n" for warning in self.warnings)
        for card in self.cards:
            parts.append(f"\n[{card.title}] {card.reason}\n")
            parts.append(card.content.strip() + "\n")
        return "".join(parts).strip()


def _on_off(value: bool) -> str:
    return "on" if value else "off"


def _resolve(source: Source, **kwargs: object) -> str | None:
    if source is None or isinstance(source, str):
        return source
    return source(**kwargs)


def build(
    cfg: CockpitConfig,
    cwd: str,
    focus: str,
    context_files: list[str] | None = None,
    repo_map: Source = None,
    git_status: Source = None,
    git_diff: Source = None,
) -> Snapshot:
    """Build the cockpit snapshot for a task.

    ``repo_map``, ``git_status`` and ``git_diff`` are tool outputs, given as
    text or as callables; a callable that raises becomes a snapshot warning.
    The repo-map callable receives ``max_files``, ``max_tokens`` and ``focus``;
    the diff callable receives ``max_lines``.
    """
    cfg = normalize_config(cfg)
    context_files = list(context_files or [])
    snapshot = Snapshot(enabled=cfg.enabled, injected=cfg.inject, max_tokens=cfg.max_tokens)
    if not cfg.enabled:
        return snapshot

    now = time.strftime("%H:%M:%S")

    def add_card_budget(kind: str, title: str, reason: str, content: str, budget: int) -> None:
        content = trim_to_token_budget(content.strip(), budget)
        if not content:
            return
        snapshot.cards.append(
            Card(
                kind=kind,
                title=title,
                reason=reason,
                freshness="built " + now,
                tokens=estimate_tokens(content),
                content=content,
            )
        )

    def add_card(kind: str, title: str, reason: str, content: str) -> None:
        add_card_budget(kind, title, reason, content, card_budget(cfg.max_tokens))

    repo_map_text = ""
    try:
        repo_map_text = _resolve(
            repo_map,
            max_files=cfg.max_files,
            max_tokens=max(250, cfg.max_tokens * 55 // 100),
            focus=focus,
        ) or ""
    except Exception as exc:  # tool failures are reported, not fatal
        snapshot.warnings.append(f"project_map: {exc}")
    else:
        add_card("repo_map", "Repo Map", "ranked files and symbols for the task", repo_map_text)

    if cfg.include_retrieval and focus.strip():
        retrieval, warnings = build_retrieval_cart(
            RetrievalConfig(
                max_tokens=cfg.retrieval_tokens,
                max_chunks=cfg.retrieval_chunks,
                max_files=cfg.max_files,
                use_embeddings=cfg.use_embeddings,
                use_reranker=cfg.use_reranker,
                repo_map=repo_map_text,
            ),
            cwd,
            focus,
        )
        snapshot.warnings.extend(warnings)
        add_card_budget(
            "retrieval_cart",
            "Retrieval Cart",
            "BM25 chunks boosted by local embeddings and AST repo-map hints; "
            "selected context with token prices",
            retrieval,
            cfg.retrieval_tokens,
        )

    add_card("aci", "Agent Rails", "preferred low-token workflow", _AGENT_RAILS)

    if cfg.include_recipes:
        try:
            scoped = load_scoped(cwd, focus, context_files, cfg.max_instructions // 2)
        except OSError as exc:
            snapshot.warnings.append(f"scoped recipes: {exc}")
        else:
            if scoped.files:
                lines = [
                    f"- {file.path} ({file.bytes} bytes{' truncated' if file.truncated else ''}): {file.reason}"
                    for file in scoped.files
                ]
                if scoped.truncated:
                    lines.append("- scoped recipes truncated by configured byte budget")
                add_card("recipes", "Context Recipes", "scoped rules matched for this task", "\n".join(lines))

    if context_files:
        add_card(
            "cart",
            "Context Cart",
            "files allowed for edit/refactor tools",
            "\n".join("- " + file for file in context_files),
        )

    try:
        status_text = _resolve(git_status) or ""
    except Exception as exc:
        snapshot.warnings.append(f"git_status: {exc}")
    else:
        if status_text.strip():
            add_card("git_status", "Workspace Changes", "current dirty state", status_text)

    if cfg.include_diff:
        try:
            diff_text = _resolve(git_diff, max_lines=_DIFF_MAX_LINES) or ""
        except Exception as exc:
            snapshot.warnings.append(f"git_diff: {exc}")
        else:
            if diff_text.strip() and diff_text.strip() != _NO_DIFF:
                add_card("diff", "Related Diff", "tracked changes already present", diff_text)

    try:
        loaded = load_instructions(cwd, cfg.max_instructions)
    except OSError as exc:
        snapshot.warnings.append(f"instructions: {exc}")
    else:
        if loaded.files:
            lines = [
                f"- {file.path} ({file.bytes} bytes{' truncated' if file.truncated else ''})"
                for file in loaded.files
            ]
            if loaded.truncated:
                lines.append("- instruction set truncated by configured byte budget")
            add_card(
                "rules",
                "Project Rules",
                "instruction sources loaded into the system prompt",
                "\n".join(lines),
            )

    if cfg.include_negative:
        negative = detect_negative_context(cwd, _NEGATIVE_LIMIT)
        if negative.strip():
            add_card("negative_context", "Negative Context", "files withheld to save tokens", negative)

    return trim_snapshot(snapshot, cfg.max_tokens, cfg.max_cards)


def normalize_config(cfg: CockpitConfig) -> CockpitConfig:
    """Return a copy of the configuration with unset budgets filled in."""
    max_tokens = cfg.max_tokens if cfg.max_tokens > 0 else DEFAULT_MAX_TOKENS
    return dataclasses.replace(
        cfg,
        max_tokens=max_tokens,
        max_files=cfg.max_files if cfg.max_files > 0 else DEFAULT_MAX_FILES,
        max_cards=cfg.max_cards if cfg.max_cards > 0 else DEFAULT_MAX_CARDS,
        retrieval_tokens=(
            cfg.retrieval_tokens if cfg.retrieval_tokens > 0 else min(1000, max(350, max_tokens * 2 // 3))
        ),
        retrieval_chunks=cfg.retrieval_chunks if cfg.retrieval_chunks > 0 else 10,
        max_instructions=cfg.max_instructions if cfg.max_instructions > 0 else DEFAULT_MAX_BYTES,
    )


def trim_snapshot(snapshot: Snapshot, max_tokens: int, max_cards: int) -> Snapshot:
    """Drop trailing cards until the snapshot fits the card and token limits."""
    if max_cards <= 0:
        max_cards = DEFAULT_MAX_CARDS
    cards = snapshot.cards[:max_cards]
    while True:
        for card in cards:
            card.tokens = estimate_tokens(card.content)
        total = sum(card.tokens for card in cards)
        if total <= max_tokens or not cards:
            break
        cards = cards[:-1]
    snapshot.cards = cards
    snapshot.estimated_tokens = total
    return snapshot


def card_budget(total: int) -> int:
    """Token budget of a single card given the snapshot's total budget."""
    if total <= 0:
        return 300
    return max(120, total // 2)


def trim_to_token_budget(text: str, max_tokens: int) -> str:
    """Drop trailing lines until the text fits the token budget."""
    lines = text.split("\n")
    while lines and estimate_tokens("\n".join(lines)) > max_tokens:
        lines.pop()
    return "\n".join(lines)


def _deny_dir_reason(name: str) -> str:
    lower = name.lower()
    if lower in _DEPENDENCY_DIRS:
        return "vendored/dependency directory"
    if lower in _BUILD_DIRS:
        return "generated build output"
    return ""


def _ext(name: str) -> str:
    idx = name.rfind(".")
    return name[idx:] if idx >= 0 else ""


def _deny_file_reason(path: str, size: int | None) -> str:
    lower = path.replace(os.sep, "/").lower()
    name = posixpath.basename(lower)
    if name.endswith((".min.js", ".min.css")) or ".generated." in name or ".gen." in name:
        return "generated/minified asset"
    if name.endswith(".snap") or "__snapshots__/" in lower:
        return "test snapshot"
    if name in _LOCKFILES:
        return "lockfile"
    ext = _ext(name)
    if ext in _BINARY_EXTS:
        return "binary/large asset"
    if ext == ".json" and size is not None and size > _LARGE_JSON:
        return "large json"
    if size is not None and size > _LARGE_FILE:
        return "large file"
    return ""


def detect_negative_context(cwd: str, limit: int) -> str:
    """List workspace files and directories withheld from the model, with reasons."""
    blocked: list[tuple[str, str]] = []

    def visit(directory: str) -> None:
        try:
            with os.scandir(directory) as it:
                entries = list(it)
        except OSError:
            return
        for entry in entries:
            rel = os.path.relpath(entry.path, cwd).replace(os.sep, "/")
            if entry.is_dir(follow_symlinks=False):
                reason = _deny_dir_reason(entry.name)
                if reason:
                    blocked.append((rel + "/", reason))
                else:
                    visit(entry.path)
                continue
            try:
                size: int | None = entry.stat(follow_symlinks=False).st_size
            except OSError:
                size = None
            reason = _deny_file_reason(rel, size)
            if reason:
                blocked.append((rel, reason))

    visit(cwd)
    blocked.sort(key=lambda item: (item[1], item[0]))
    if len(blocked) > limit:
        hidden = len(blocked) - limit
        blocked = blocked[:limit] + [(f"... {hidden} more", "hidden")]
    return "\n".join(f"- {path}: {reason}" for path, reason in blocked)