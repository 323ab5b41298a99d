"""Loading of project instruction files and task-scoped rule files."""

from __future__ import annotations

import fnmatch
import os
import posixpath
import re
from dataclasses import dataclass, field

DEFAULT_MAX_BYTES = 12_000

_TRUNCATION_MARKER = "[truncated]"

_ORDERED_CANDIDATES = (
    "AGENTS.md",
    "CLAUDE.md",
    "GEMINI.md",
    "CONTEXT.md",
    ".agentcli/instructions.md",
    ".agentcli/rules.md",
    ".cursorrules",
    ".github/copilot-instructions.md",
)

_SCOPED_PATTERNS = (
    ".klyra/rules/*.md",
    ".klyra/recipes/*.md",
    ".agentcli/context/*.md",
    ".agentcli/recipes/*.md",
    ".agentcli/rules/*.md",
    ".cursor/rules/*.md",
)

_FOCUS_WORD = re.compile(r"\w+")
_PATH_WORD = re.compile(r"[^\W_]+")


@dataclass
class InstructionFile:
    """An instruction file that was loaded."""

    path: str
    bytes: int
    truncated: bool = False


@dataclass
class InstructionSet:
    """Project instructions gathered from the workspace."""

    content: str = ""
    files: list[InstructionFile] = field(default_factory=list)
    bytes: int = 0
    truncated: bool = False


@dataclass
class ScopedFile:
    """A scoped rule file that matched the task."""

    path: str
    bytes: int
    truncated: bool = False
    reason: str = ""


@dataclass
class ScopedInstructionSet:
    """Scoped rules matched for a task."""

    content: str = ""
    files: list[ScopedFile] = field(default_factory=list)
    bytes: int = 0
    truncated: bool = False


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _ext(name: str) -> str:
    idx = name.rfind(".")
    return name[idx:] if idx >= 0 else ""


def _stem(path: str) -> str:
    base = posixpath.basename(path)
    ext = _ext(base)
    return base[: len(base) - len(ext)] if ext else base


def _glob(root: str, pattern: str) -> list[str]:
    directory, _, name_pattern = pattern.rpartition("/")
    base = os.path.join(root, *directory.split("/")) if directory else root
    try:
        names = [entry.name for entry in os.scandir(base)]
    except OSError:
        return []
    matches = sorted(name for name in names if fnmatch.fnmatchcase(name, name_pattern))
    return [f"{directory}/{name}" if directory else name for name in matches]


def _read_content(root: str, rel: str, label: str) -> str | None:
    try:
        with open(os.path.join(root, *rel.split("/")), "rb") as handle:
            data = handle.read()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise OSError(f"{label} {rel}: {exc}") from exc
    return data.decode("utf-8", errors="replace").replace("\r\n", "\n").strip()


def _fit(content: str, remaining: int) -> tuple[str, bool]:
    if _byte_len(content) > remaining:
        return trim_to_bytes(content, remaining), True
    return content, False


def _candidate_paths(root: str) -> list[str]:
    out = [rel for rel in _ORDERED_CANDIDATES if os.path.isfile(os.path.join(root, *rel.split("/")))]
    for rel in _glob(root, ".cursor/rules/*.md"):
        if rel not in out:
            out.append(rel)
    return out


def load(cwd: str, max_bytes: int = DEFAULT_MAX_BYTES) -> InstructionSet:
    """Load the workspace's project instruction files within a byte budget."""
    root = os.path.abspath(cwd)
    if max_bytes <= 0:
        max_bytes = DEFAULT_MAX_BYTES

    result = InstructionSet()
    sections: list[str] = []
    for path in _candidate_paths(root):
        if result.bytes >= max_bytes:
            result.truncated = True
            break
        content = _read_content(root, path, "read project instructions")
        if not content:
            continue
        content, truncated = _fit(content, max_bytes - result.bytes)
        if truncated:
            result.truncated = True
        size = _byte_len(content)
        result.files.append(InstructionFile(path=path, bytes=size, truncated=truncated))
        result.bytes += size
        sections.append(f"Source: {path}\n{content}")
    result.content = "\n\n".join(sections)
    return result


def _scoped_candidate_paths(root: str) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for pattern in _SCOPED_PATTERNS:
        for rel in _glob(root, pattern):
            if rel not in seen:
                out.append(rel)
                seen.add(rel)
    return out


def _scoped_terms(focus: str, context_files: list[str]) -> dict[str, str]:
    terms: dict[str, str] = {}

    def add(term: str, reason: str) -> None:
        term = term.strip().lower()
        if _byte_len(term) < 3:
            return
        terms.setdefault(term, reason)
        if _byte_len(term) > 4 and term.endswith("s"):
            terms.setdefault(term[:-1], reason)

    for raw in _FOCUS_WORD.findall(focus.lower()):
        add(raw, "task mentions " + raw)
    for file in context_files:
        path = file.replace(os.sep, "/").lower()
        for part in _PATH_WORD.findall(path + " " + _stem(path)):
            add(part, "context path matches " + file)
    return terms


def _match_scoped_rule(path: str, terms: dict[str, str]) -> str:
    lower = path.lower()
    base = _stem(lower)
    for term, reason in terms.items():
        if term in lower or term in base:
            return reason
    return ""


def load_scoped(
    cwd: str, focus: str, context_files: list[str] | None = None, max_bytes: int = 0
) -> ScopedInstructionSet:
    """Load rule files whose names match the task text or context files."""
    root = os.path.abspath(cwd)
    if max_bytes <= 0:
        max_bytes = DEFAULT_MAX_BYTES // 2
    paths = _scoped_candidate_paths(root)
    terms = _scoped_terms(focus, list(context_files or []))
    if not terms:
        return ScopedInstructionSet()

    result = ScopedInstructionSet()
    sections: list[str] = []
    for path in paths:
        reason = _match_scoped_rule(path, terms)
        if not reason:
            continue
        if result.bytes >= max_bytes:
            result.truncated = True
            break
        content = _read_content(root, path, "read scoped instruction")
        if not content:
            continue
        content, truncated = _fit(content, max_bytes - result.bytes)
        if truncated:
            result.truncated = True
        size = _byte_len(content)
        result.files.append(ScopedFile(path=path, bytes=size, truncated=truncated, reason=reason))
        result.bytes += size
        sections.append(f"Scoped rule: {path}\nReason: {reason}\n{content}")
    result.content = "\n\n".join(sections)
    return result


def _cut_bytes(data: bytes, limit: int) -> str:
    return data[:limit].decode("utf-8", errors="ignore")


def trim_to_bytes(content: str, max_bytes: int) -> str:
    """Cut text to at most ``max_bytes`` UTF-8 bytes, ending with a truncation marker."""
    if max_bytes <= 0:
        return ""
    data = content.encode("utf-8")
    if len(data) <= max_bytes:
        return content
    if max_bytes <= len(_TRUNCATION_MARKER):
        return _TRUNCATION_MARKER[:max_bytes]
    limit = max_bytes - len(_TRUNCATION_MARKER) - 1
    cut = data[:limit]
    idx = cut.rfind(b"\n")
    if idx > limit // 2:
        cut = cut[:idx]
    out = cut.decode("utf-8", errors="ignore").strip() + "\n" + _TRUNCATION_MARKER
    encoded = out.encode("utf-8")
    if len(encoded) > max_bytes:
        return _cut_bytes(encoded, max_bytes)
    return out