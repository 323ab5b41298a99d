# klyra

klyra keeps the context of a coding agent small and useful. It does not
talk to a model itself. It prepares what goes into the prompt: the message
history, the project's rule files, ranked snippets of source code and a set
of short "fact cards" that describe the workspace.

All of it is plain Python with no third-party dependencies.

## What is inside

| Module | Purpose |
| --- | --- |
| `klyra.compact` | Messages, tool calls, token estimates and history packing |
| `klyra.window` | A bounded conversation window that packs itself to a token budget |
| `klyra.instructions` | Loads project rule files and task-scoped recipes |
| `klyra.config` | Agent settings, named profiles, JSON load and save |
| `klyra.retrieval` | BM25 retrieval over workspace files, boosted by local hash embeddings |
| `klyra.cockpit` | Builds a budgeted snapshot of context cards |

## Packing a conversation

Token counts are estimated as one token per four characters. When a history
is too long, older messages are folded into a single
`Context summary: ...` assistant message while the system prompt and the
newest messages are kept. Tool results whose call is no longer present are
dropped.

```python
from klyra.compact import Message, Role, pack_messages

history = [
    Message(role=Role.SYSTEM, content="system"),
    Message(role=Role.USER, content="old " * 200),
    Message(role=Role.ASSISTANT, content="older " * 200),
    Message(role=Role.USER, content="recent question"),
]

packed, stats = pack_messages(history, 80, 10)
print(packed[1].content.splitlines()[0])
print(stats.original_tokens, "->", stats.packed_tokens)
```

`compact_messages(messages, max_tokens, keep_tail)` does the same with a
message limit derived from how many recent messages to keep, and
`drop_orphan_tool_messages(messages)` removes only the stray tool results.

A `Window` holds a running conversation. It never keeps more than
`max_messages` entries (at least four), always keeps the first system
message, and when `max_tokens` is positive its `messages()` are packed to
that budget:

```python
from klyra.window import Window

window = Window(40, 24000)
window.add(Message(role=Role.SYSTEM, content="You are helpful."))
window.add(Message(role=Role.USER, content="hello"))
prompt = window.messages()
```

## Project rules

`klyra.instructions.load(cwd, max_bytes)` reads the usual rule files from a
project root in a fixed order (`AGENTS.md`, `CLAUDE.md`, `GEMINI.md`,
`CONTEXT.md`, `.agentcli/instructions.md`, `.agentcli/rules.md`,
`.cursorrules`, `.github/copilot-instructions.md`, then
`.cursor/rules/*.md`). The result lists each file with its size and whether
it was cut to fit the byte budget; cut content ends in `[truncated]`.

`load_scoped(cwd, focus, context_files, max_bytes)` looks in
`.klyra/rules`, `.klyra/recipes`, `.agentcli/context`, `.agentcli/recipes`,
`.agentcli/rules` and `.cursor/rules`, and keeps only the files whose path
matches a word of the task or of the files being edited, together with the
reason for the match:

```python
from klyra.instructions import load_scoped

scoped = load_scoped(".", "change schema",
                     ["db/migrations/202605270001_add_users.sql"], 4000)
for file in scoped.files:
    print(file.path, "-", file.reason)
```

## Configuration

`default_config()` returns the built-in settings; `load(path)` reads a JSON
file on top of them and returns the defaults when the file does not exist.
`default_path()` points into the user's configuration directory, and
`write_default(path)` writes a fresh default file there.

Profiles override selected settings. Switching to a profile with a
different provider clears an inherited model name so that it can be chosen
for the new provider.

```python
from klyra.config import load

cfg = load("")
coding = cfg.with_profile("coding")
print(coding.provider, coding.reasoning, coding.approval_mode)
coding.save("my-config.json")
```

`Config.to_dict()` and `Config.from_dict(data)` convert to and from the JSON
shape used on disk.

## Retrieval

`klyra.retrieval` walks a workspace (skipping dependency folders, secrets,
lockfiles, binaries and files over 256 KiB), splits files into chunks at
blank lines, ranks them with BM25 and adds boosts for repo-map paths, path
matches and a local 384-dimension hash embedding. The best chunks are
selected within a token and chunk budget, at most three per file.

```python
from klyra.retrieval import RetrievalConfig, build_retrieval_cart

text, warnings = build_retrieval_cart(
    RetrievalConfig(max_tokens=800, max_chunks=6, use_embeddings=True),
    ".",
    "token budget packing",
)
print(text)
```

## Context cockpit

`klyra.cockpit.build(...)` gathers a repo map, a retrieval cart, the
preferred workflow, matched recipes, the files in the edit cart, workspace
changes, the loaded project rules and a list of files withheld to save
tokens ("negative context"). Each becomes a `Card`; the resulting
`Snapshot` is trimmed to the configured number of cards and token budget.
The repo map, git status and git diff text are passed in by the caller.

`Snapshot.markdown()` renders the snapshot for people, and
`Snapshot.prompt_text()` renders the compact form meant for a system prompt.