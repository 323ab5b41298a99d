[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "klyra"
version = "0.1.0"
description = "Context management for coding agents: message packing, project rules, retrieval and context cockpit cards."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "agent",
    "llm",
    "context",
    "retrieval",
    "bm25",
    "prompt",
    "token-budget",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["klyra"]

[tool.hatch.build.targets.sdist]
include = ["klyra", "tests", "README.md"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
strict = true
