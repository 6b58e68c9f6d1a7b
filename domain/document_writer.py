"""
DOCUMENT WRITER - Graph back to a fenced-block document.

The inverse of the block extractor, used for round-tripping: rendering a
graph and extracting the result yields a graph with equal content, so
merging it against the original produces an empty changelog.

Output layout:

    # <title>

    ## System            ```yaml  system: {...}
    ## Components        ```yaml  components: [...]
    ## Flows / Invariants / Evidence / Relations
    ## Other blocks      opaque records, as they were declared

Empty strings and empty lists are omitted; decoding restores them as the
schema defaults.
"""
import re
from typing import Any, Dict, Iterable, List, Optional

import msgspec
import yaml

from core.graph_db import AtlasDB
from core.ontology import PLURAL_KEYS, RELATION_RECORD, NodeKind
from core.schemas import Node, OpaqueRecord, RelationData


SECTION_TITLES = {
    NodeKind.SYSTEM: "System",
    NodeKind.COMPONENT: "Components",
    NodeKind.FLOW: "Flows",
    NodeKind.INVARIANT: "Invariants",
    NodeKind.EVIDENCE: "Evidence",
}

_LEADING_KEYS = ("id", "title", "from", "to", "kind")
_BOOKKEEPING_KEYS = ("provenance", "stale")
_BACKTICK_RUN_RE = re.compile(r"`{3,}")


def _prune(value: Any) -> Any:
    """Drop empty strings, empty lists and None from nested mappings."""
    if isinstance(value, dict):
        return {
            k: _prune(v) for k, v in value.items()
            if v not in ("", None) and v != []
        }
    if isinstance(value, list):
        return [_prune(v) for v in value]
    return value


def _ordered(record: Dict[str, Any]) -> Dict[str, Any]:
    leading = {k: record[k] for k in _LEADING_KEYS if k in record}
    rest = {k: v for k, v in record.items() if k not in leading}
    return {**leading, **rest}


def node_to_record(node: Node) -> Dict[str, Any]:
    """Document form of a node: no kind tag, no bookkeeping."""
    data = msgspec.to_builtins(node)
    for key in ("kind",) + _BOOKKEEPING_KEYS:
        data.pop(key, None)
    return _ordered(_prune(data))


def relation_to_record(relation: RelationData) -> Dict[str, Any]:
    data = msgspec.to_builtins(relation)
    data.pop("provenance", None)
    return _ordered(_prune(data))


def _dump(payload: Any) -> str:
    return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True, default_flow_style=False)


def _block(payload: Any) -> str:
    body = _dump(payload)
    # The fence must outlast any backtick line inside a string value
    fence = "`" * max([3] + [len(run) + 1 for run in _BACKTICK_RUN_RE.findall(body)])
    return f"{fence}yaml\n{body}{fence}\n"


def render_document(db: AtlasDB, opaque: Optional[Iterable[OpaqueRecord]] = None,
                    title: Optional[str] = None, include_stale: bool = True) -> str:
    """
    Render a graph as Markdown with one fenced YAML block per kind.

    Args:
        db: The graph to render
        opaque: Opaque records to carry along
        title: Document heading (defaults to the system node's title)
        include_stale: Also render nodes kept alive by merge conflicts
    """
    systems = db.get_nodes_by_kind(NodeKind.SYSTEM)
    heading = title or (systems[0].title if systems and systems[0].title else "Repository Atlas")
    parts: List[str] = [f"# {heading}\n"]

    for kind in NodeKind:
        nodes = [n for n in db.get_nodes_by_kind(kind) if include_stale or not n.stale]
        if not nodes:
            continue
        records = [node_to_record(n) for n in nodes]
        if kind == NodeKind.SYSTEM:
            payload = {"system": records[0]} if len(records) == 1 else {"systems": records}
        else:
            payload = {PLURAL_KEYS[kind.value]: records}
        parts.append(f"## {SECTION_TITLES[kind]}\n\n{_block(payload)}")

    relations = db.get_all_relations()
    if relations:
        payload = {PLURAL_KEYS[RELATION_RECORD]: [relation_to_record(r) for r in relations]}
        parts.append(f"## Relations\n\n{_block(payload)}")

    extras = list(opaque or [])
    if extras:
        blocks = [
            _block(record.data if record.key is None else {record.key: record.data})
            for record in extras
        ]
        parts.append("## Other blocks\n\n" + "\n".join(blocks))

    return "\n".join(parts)
