"""
Anchor target syntax.

Target conventions by kind:
    code     path#Dotted.Symbol.Path
    config   path#yaml:dotted.key      (json: and toml: are accepted too)
    test     path#Group.testName
    file     relative path
    command  free-form shell string

Path-bearing targets must be repository-relative: no absolute paths, no
drive letters, no home expansion, no `..` segments.
"""
import re
from typing import List, Optional

import msgspec

from core.ontology import AnchorKind, CONFIG_FORMATS, PATH_BEARING_KINDS
from core.schemas import Anchor


_SYMBOL_RE = re.compile(r"^[A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*)*$")
_TEST_NAME_RE = re.compile(r"^[\w\-\[\]]+(?:\.[\w\-\[\]]+)*$")
_CONFIG_KEY_RE = re.compile(r"^[\w\-]+(?:\.[\w\-]+)*$")
_DRIVE_RE = re.compile(r"^[A-Za-z]:[\\/]")


class AnchorTarget(msgspec.Struct, kw_only=True, frozen=True):
    """A target split into its parts. Fields not used by the kind stay empty."""
    path: str = ""
    symbol: str = ""          # code / test fragment
    config_format: str = ""   # yaml / json / toml
    config_key: str = ""      # dotted key

    @property
    def leaf(self) -> str:
        """Last segment of the symbol path (what the resolver searches for)."""
        return self.symbol.rsplit(".", 1)[-1] if self.symbol else ""

    @property
    def key_parts(self) -> List[str]:
        return self.config_key.split(".") if self.config_key else []


def parse_target(anchor: Anchor) -> AnchorTarget:
    """
    Split an anchor target into path and fragment.

    Never raises: a malformed target yields whatever parts could be read.
    Use `syntax_problem` to decide whether the target is well formed.
    """
    kind = anchor.kind
    target = anchor.target.strip()

    if kind == AnchorKind.COMMAND.value:
        return AnchorTarget()

    if kind == AnchorKind.FILE.value:
        return AnchorTarget(path=target)

    path, _, fragment = target.partition("#")

    if kind == AnchorKind.CONFIG.value:
        fmt, sep, key = fragment.partition(":")
        if not sep:
            return AnchorTarget(path=path, config_key=fragment)
        return AnchorTarget(path=path, config_format=fmt.lower(), config_key=key)

    return AnchorTarget(path=path, symbol=fragment)


def path_problem(path: str) -> Optional[str]:
    """Return why a path escapes the repository root, or None if it is safe."""
    if not path:
        return "empty path"
    if path.startswith(("/", "\\", "~")) or _DRIVE_RE.match(path):
        return f"path {path!r} is absolute"
    segments = re.split(r"[\\/]", path)
    if ".." in segments:
        return f"path {path!r} contains a '..' segment"
    return None


def syntax_problem(anchor: Anchor) -> Optional[str]:
    """
    Regex-level check of the target conventions for the anchor's kind.

    Returns:
        A human-readable problem description, or None if well formed.
    """
    kind = anchor.kind
    target = anchor.target.strip() if anchor.target else ""

    if kind not in {k.value for k in AnchorKind}:
        return f"unknown anchor kind {kind!r}"
    if not target:
        return "target is empty"
    if kind == AnchorKind.COMMAND.value:
        return None

    parts = parse_target(anchor)
    problem = path_problem(parts.path)
    if problem:
        return problem
    if kind not in PATH_BEARING_KINDS or kind == AnchorKind.FILE.value:
        return None

    if "#" not in target:
        if kind == AnchorKind.CODE.value:
            return "code anchor needs 'path#Symbol.Path'"
        if kind == AnchorKind.TEST.value:
            return "test anchor needs 'path#Group.testName'"
        return "config anchor needs 'path#yaml:dotted.key'"

    if kind == AnchorKind.CODE.value and not _SYMBOL_RE.match(parts.symbol):
        return f"symbol path {parts.symbol!r} is not dot-delimited identifiers"
    if kind == AnchorKind.TEST.value and not _TEST_NAME_RE.match(parts.symbol):
        return f"test name {parts.symbol!r} is not 'Group.testName'"
    if kind == AnchorKind.CONFIG.value:
        if parts.config_format not in CONFIG_FORMATS:
            return f"config anchor format {parts.config_format or '(none)'!r} is not one of yaml, json, toml"
        if not _CONFIG_KEY_RE.match(parts.config_key):
            return f"config key {parts.config_key!r} is not a dotted key path"
    return None
