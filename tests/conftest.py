"""
Pytest configuration and shared fixtures for the Atlas test suite.
"""
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


SAMPLE_DOCUMENT = """\
# Toy Compiler

The toy compiler turns `.toy` files into bytecode. This prose is narrative
and is never interpreted.

## System

```yaml
system:
  id: SYS-toy
  title: Toy compiler
  purpose: Compiles toy source files into bytecode
  entrypoints:
    - kind: code
      target: src/cli.py#main
      why: command line entry
  config:
    - kind: config
      target: config/toy.yaml#yaml:compiler.optimize
```

## Components

```yaml
components:
  - id: CMP-lexer
    title: Lexer
    purpose: Splits source text into tokens and rejects tabs
    anchors:
      - kind: code
        target: src/lexer.py#Lexer.tokenize
  - id: CMP-parser
    title: Parser
    purpose: Builds the syntax tree from tokens
    anchors:
      - kind: code
        target: src/parser.py#Parser.parse
```

## Behaviour

```yaml
flows:
  - id: FLOW-compile
    title: Compile a file
    purpose: End-to-end compilation of one source file
    steps:
      - description: Read the source file
        anchors:
          - kind: file
            target: src/cli.py
      - Tokenize the source text
invariants:
  - id: INV-no-tabs
    title: No tabs
    statement: Token streams never contain tab characters
    anchors:
      - kind: code
        target: src/lexer.py#Lexer.reject_tabs
evidences:
  - id: EVD-lexer-tests
    title: Lexer tests
    statement: The lexer suite covers tab rejection
    anchors:
      - kind: test
        target: tests/test_lexer.py#TestLexer.test_rejects_tabs
      - kind: command
        target: pytest tests/test_lexer.py
```

## Relations

```yaml
relations:
  - id: REL-1
    from: SYS-toy
    to: FLOW-compile
    kind: contains
  - id: REL-2
    from: FLOW-compile
    to: CMP-lexer
    kind: calls
    note: tokenizes the input
    refs:
      - kind: code
        target: src/cli.py#main
  - id: REL-3
    from: CMP-parser
    to: CMP-lexer
    kind: uses
    note: pulls tokens one at a time
  - id: REL-4
    from: CMP-lexer
    to: INV-no-tabs
    kind: guards
  - id: REL-5
    from: EVD-lexer-tests
    to: INV-no-tabs
    kind: evidences
```

```yaml
glossary:
  token: smallest meaningful unit
```
"""


REPO_FILES = {
    "src/cli.py": "from src.lexer import Lexer\n\n\ndef main():\n    return Lexer().tokenize(open('a.toy').read())\n",
    "src/lexer.py": (
        "class Lexer:\n"
        "    def tokenize(self, text):\n"
        "        self.reject_tabs(text)\n"
        "        return text.split()\n\n"
        "    def reject_tabs(self, text):\n"
        "        if '\\t' in text:\n"
        "            raise ValueError('tab')\n"
    ),
    "src/parser.py": "class Parser:\n    def parse(self, tokens):\n        return list(tokens)\n",
    "config/toy.yaml": "compiler:\n  optimize: true\n  passes:\n    - fold\n    - inline\n",
    "config/toy.json": '{"compiler": {"optimize": true}}\n',
    "config/toy.toml": "[compiler]\noptimize = true\n",
    "tests/test_lexer.py": "class TestLexer:\n    def test_rejects_tabs(self):\n        assert True\n",
}


@pytest.fixture(autouse=True)
def reset_global_state():
    """Clear the process-wide event bus so subscribers never leak between tests."""
    from infrastructure.event_bus import get_event_bus

    get_event_bus().clear_subscribers()
    yield
    get_event_bus().clear_subscribers()


@pytest.fixture
def fresh_db():
    """Provide a fresh AtlasDB instance."""
    from core.graph_db import AtlasDB
    return AtlasDB()


@pytest.fixture
def sample_document():
    """A valid document: zero fatal findings, zero warnings."""
    return SAMPLE_DOCUMENT


@pytest.fixture
def sample_build(sample_document):
    from domain.graph_builder import build_graph
    return build_graph(sample_document, source="docs/atlas.md")


@pytest.fixture
def repo_tree(tmp_path):
    """A small checkout that satisfies every anchor of the sample document."""
    root = tmp_path / "repo"
    for relative, content in REPO_FILES.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


@pytest.fixture
def make_db():
    """Build an AtlasDB from plain node and relation tuples."""
    from core.graph_db import create_db
    from core.schemas import Anchor, ComponentNode, RelationData, SystemNode

    def _make(components, relations=(), anchored=(), system="SYS-root"):
        nodes = [SystemNode(id=system, title="Root")] if system else []
        for node_id in components:
            anchors = [Anchor(kind="file", target=f"src/{node_id}.py")] if node_id in anchored else []
            nodes.append(ComponentNode(id=node_id, title=node_id, anchors=anchors))
        rels = []
        for spec in relations:
            rel_id, source, target, kind = spec[:4]
            refs = [Anchor(kind="file", target="src/x.py")] if len(spec) > 4 and spec[4] else []
            rels.append(RelationData(id=rel_id, source=source, target=target, kind=kind, refs=refs))
        return create_db(nodes, rels)

    return _make
