"""
BLOCK EXTRACTOR - Pull typed records out of a narrative document.

Two-phase parsing:
1. A tolerant, line-based scanner finds fenced blocks (``` or ~~~) whose
   info string is yaml/yml/json, and Markdown headings. Everything else is
   narrative and is never interpreted, so prose edits cannot break the
   structural extraction.
2. Each structured block is decoded with PyYAML. Top-level keys that name a
   record kind (system, components, relations, ...) yield raw records; other
   keys are kept as opaque records.

Every record carries a SourceSpan: byte range, line and nearest heading,
computed from the YAML node marks so an error points at the item, not just
the block.

Failure mode: problems become ParseError values in the result. Extraction
always continues past a bad block.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import msgspec
import yaml

from core.errors import ParseError
from core.ontology import BLOCK_KEYS, STRUCTURED_FENCE_LANGUAGES
from core.schemas import OpaqueRecord, SourceSpan

logger = logging.getLogger(__name__)


_FENCE_OPEN_RE = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})[ \t]*(?P<info>[^\n`]*?)[ \t]*$")
_HEADING_RE = re.compile(r"^ {0,3}(?P<hashes>#{1,6})[ \t]+(?P<title>.*?)[ \t]*#*[ \t]*$")


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class RawRecord(msgspec.Struct, kw_only=True, frozen=True):
    """One record as declared in the document, not yet schema-decoded."""
    kind: str                       # NodeKind value or "relation"
    key: str                        # Top-level key it was declared under
    data: Dict[str, Any]
    span: SourceSpan
    index: Optional[int] = None     # Position under a plural key


class NarrativeSection(msgspec.Struct, kw_only=True, frozen=True):
    """A Markdown heading and the byte range it governs."""
    title: str
    level: int
    span: SourceSpan


@dataclass
class ExtractionResult:
    """Everything pulled from one document."""
    source: str = ""
    records: List[RawRecord] = field(default_factory=list)
    opaque: List[OpaqueRecord] = field(default_factory=list)
    sections: List[NarrativeSection] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)
    block_count: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class _Line:
    text: str          # Line without its terminator
    raw: str           # Line as written, terminator included
    start: int         # Byte offset of line start
    end: int           # Byte offset after the terminator
    number: int        # 1-based


@dataclass
class _Block:
    info: str
    content: str
    content_start: int     # Byte offset of the first content line
    content_line: int      # 1-based line of the first content line
    start: int             # Byte offset of the opening fence
    end: int               # Byte offset after the closing fence
    line: int
    section: str


# =============================================================================
# BLOCK EXTRACTOR
# =============================================================================

class BlockExtractor:
    """
    Scans a document for structured blocks and narrative sections.

    Usage:
        result = BlockExtractor().extract(text, source="docs/architecture.md")
        for record in result.records:
            print(record.kind, record.data.get("id"), record.span)
        for error in result.errors:
            print(error)
    """

    def extract(self, text: str, source: str = "") -> ExtractionResult:
        result = ExtractionResult(source=source)
        lines = _split_lines(text)

        blocks, sections = self._scan(lines, source, result)
        result.sections = sections
        result.block_count = len(blocks)

        for block in blocks:
            self._decode_block(block, source, result)

        logger.debug(
            f"Extracted {len(result.records)} records, {len(result.opaque)} opaque, "
            f"{len(result.errors)} errors from {len(blocks)} blocks in {source or '<document>'}"
        )
        return result

    # =========================================================================
    # PHASE 1: TOLERANT SCAN
    # =========================================================================

    def _scan(self, lines: List[_Line], source: str,
              result: ExtractionResult) -> Tuple[List[_Block], List[NarrativeSection]]:
        blocks: List[_Block] = []
        headings: List[Tuple[str, int, _Line]] = []
        current_section = ""
        i = 0

        while i < len(lines):
            line = lines[i]
            opening = _FENCE_OPEN_RE.match(line.text)

            if opening is None:
                heading = _HEADING_RE.match(line.text)
                if heading:
                    current_section = heading.group("title")
                    headings.append((current_section, len(heading.group("hashes")), line))
                i += 1
                continue

            fence = opening.group("fence")
            info = opening.group("info").split()[0].lower() if opening.group("info").strip() else ""
            close_at = self._find_close(lines, i + 1, fence)

            if close_at is None:
                if info in STRUCTURED_FENCE_LANGUAGES:
                    span = SourceSpan(source=source, start=line.start, end=lines[-1].end,
                                      line=line.number, section=current_section)
                    result.errors.append(ParseError(f"Unterminated {fence[:3]}{info} block", span))
                # An unterminated fence swallows the rest of the document
                break

            if info in STRUCTURED_FENCE_LANGUAGES:
                body = lines[i + 1:close_at]
                content_start = body[0].start if body else lines[close_at].start
                blocks.append(_Block(
                    info=info,
                    content="".join(l.raw for l in body),
                    content_start=content_start,
                    content_line=line.number + 1,
                    start=line.start,
                    end=lines[close_at].end,
                    line=line.number,
                    section=current_section,
                ))
            i = close_at + 1

        end_of_doc = lines[-1].end if lines else 0
        sections = []
        for n, (title, level, line) in enumerate(headings):
            end = headings[n + 1][2].start if n + 1 < len(headings) else end_of_doc
            sections.append(NarrativeSection(
                title=title,
                level=level,
                span=SourceSpan(source=source, start=line.start, end=end,
                                line=line.number, section=title),
            ))
        return blocks, sections

    @staticmethod
    def _find_close(lines: List[_Line], start: int, fence: str) -> Optional[int]:
        char = fence[0]
        for j in range(start, len(lines)):
            stripped = lines[j].text.strip()
            if len(stripped) >= len(fence) and stripped == char * len(stripped):
                return j
        return None

    # =========================================================================
    # PHASE 2: PER-BLOCK DECODE
    # =========================================================================

    def _decode_block(self, block: _Block, source: str, result: ExtractionResult) -> None:
        block_span = SourceSpan(source=source, start=block.start, end=block.end,
                                line=block.line, section=block.section)

        loader = yaml.SafeLoader(block.content)
        try:
            root = loader.get_single_node()
            data = loader.construct_document(root) if root is not None else None
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            where = f" (block line {mark.line + 1})" if mark is not None else ""
            result.errors.append(ParseError(f"Malformed {block.info} block{where}: {_first_line(e)}", block_span))
            return
        finally:
            loader.dispose()

        if data is None:
            return

        if not isinstance(data, dict):
            result.opaque.append(OpaqueRecord(key=None, data=data, provenance=block_span))
            return

        key_nodes = {
            k.value: v for k, v in root.value
            if isinstance(k, yaml.ScalarNode)
        }

        for key, value in data.items():
            if not isinstance(key, str) or key not in BLOCK_KEYS:
                result.opaque.append(OpaqueRecord(
                    key=str(key),
                    data=value,
                    provenance=self._span(block, key_nodes.get(str(key)), source, block_span),
                ))
                continue

            kind, is_list = BLOCK_KEYS[key]
            value_node = key_nodes.get(key)
            value_span = self._span(block, value_node, source, block_span)

            if is_list:
                if not isinstance(value, list):
                    result.errors.append(ParseError(
                        f"'{key}' must hold a list of records, got {type(value).__name__}", value_span))
                    continue
                item_nodes = value_node.value if isinstance(value_node, yaml.SequenceNode) else []
                for index, item in enumerate(value):
                    item_node = item_nodes[index] if index < len(item_nodes) else None
                    item_span = self._span(block, item_node, source, value_span)
                    if not isinstance(item, dict):
                        result.errors.append(ParseError(
                            f"'{key}[{index}]' must be a mapping, got {type(item).__name__}", item_span))
                        continue
                    result.records.append(RawRecord(kind=kind, key=key, data=item, span=item_span, index=index))
            else:
                if not isinstance(value, dict):
                    result.errors.append(ParseError(
                        f"'{key}' must hold a single record mapping, got {type(value).__name__}", value_span))
                    continue
                result.records.append(RawRecord(kind=kind, key=key, data=value, span=value_span))

    @staticmethod
    def _span(block: _Block, node: Optional[yaml.Node], source: str, fallback: SourceSpan) -> SourceSpan:
        """Translate YAML character marks into document byte offsets."""
        if node is None or node.start_mark is None:
            return fallback
        start_chars = node.start_mark.index
        end_chars = node.end_mark.index if node.end_mark is not None else start_chars
        start = block.content_start + len(block.content[:start_chars].encode("utf-8"))
        end = block.content_start + len(block.content[:end_chars].encode("utf-8"))
        return SourceSpan(
            source=source,
            start=start,
            end=max(end, start),
            line=block.content_line + node.start_mark.line,
            section=block.section,
        )


# =============================================================================
# HELPERS
# =============================================================================

def _split_lines(text: str) -> List[_Line]:
    """Split on \\n only, keeping terminators, so byte offsets stay exact."""
    pieces = text.split("\n")
    raws = [p + "\n" for p in pieces[:-1]]
    if pieces[-1]:
        raws.append(pieces[-1])

    lines = []
    offset = 0
    for number, raw in enumerate(raws, start=1):
        size = len(raw.encode("utf-8"))
        lines.append(_Line(text=raw.rstrip("\r\n"), raw=raw, start=offset, end=offset + size, number=number))
        offset += size
    return lines


def _first_line(error: Exception) -> str:
    return str(error).strip().splitlines()[0] if str(error).strip() else type(error).__name__


def extract_blocks(text: str, source: str = "") -> ExtractionResult:
    """Convenience wrapper around BlockExtractor().extract()."""
    return BlockExtractor().extract(text, source=source)
