"""
ATLAS ANCHOR RESOLVER - Do the anchors point at anything real?

Checks each anchor against a repository checkout (read-only):

    file          path exists                                   -> verified / path_missing
    code, test    path is a file; with symbol checks on, the
                  symbol's leaf name appears as a word in it    -> verified / path_missing / symbol_not_found
    config        file exists, loads as YAML/JSON/TOML and the
                  dotted key resolves (digits index lists)      -> verified / path_missing / symbol_not_found
    command       external action, never checked                -> unverifiable

Anything that escapes the repository root, cannot be read, or times out is
`unverifiable` with the cause in `detail`. Symbol checks are textual: a
confidence signal, not a parse.

Batches run on at most `max_workers` daemon threads. A check's timeout
starts when a worker picks it up; an overrunning check is abandoned and its
worker replaced, so anchors still queued behind it get checked. Results are
returned as a new table only once every anchor in the batch has an outcome.
"""
import json
import logging
import re
import threading
import time
import tomllib
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from core.anchors import AnchorTarget, parse_target, path_problem
from core.errors import AnchorResolutionError, FilesystemIOError
from core.graph_db import AtlasDB
from core.ontology import AnchorKind, ResolutionStatus
from core.schemas import Anchor, LocatedAnchor, Resolution

logger = logging.getLogger(__name__)

ResolutionTable = Dict[str, Resolution]

_SUFFIX_FORMATS = {
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".toml": "toml",
}


class AnchorResolver:
    """
    Verifies anchors against a filesystem root.

    Usage:
        resolver = AnchorResolver("/path/to/checkout", max_workers=8)
        table = resolver.resolve_graph(db)
        table[la.key].status   # "verified", "path_missing", ...
    """

    def __init__(self, repo_root: Union[str, Path] = ".", max_workers: int = 8,
                 timeout_seconds: float = 5.0, retries: int = 2, check_symbols: bool = True,
                 max_file_bytes: int = 2_000_000, retry_delay: float = 0.05):
        self.repo_root = Path(repo_root).resolve()
        self.max_workers = max(1, max_workers)
        self.timeout_seconds = timeout_seconds
        self.retries = max(0, retries)
        self.check_symbols = check_symbols
        self.max_file_bytes = max_file_bytes
        self.retry_delay = retry_delay

    @classmethod
    def from_config(cls, config) -> "AnchorResolver":
        """Build from a ResolverConfig."""
        return cls(
            repo_root=config.repo_root,
            max_workers=config.max_workers,
            timeout_seconds=config.timeout_seconds,
            retries=config.retries,
            check_symbols=config.check_symbols,
            max_file_bytes=config.max_file_bytes,
        )

    # =========================================================================
    # SINGLE ANCHOR
    # =========================================================================

    def resolve(self, anchor: Anchor) -> Tuple[ResolutionStatus, Optional[str]]:
        """
        Resolve one anchor.

        Returns:
            (status, detail)

        Raises:
            AnchorResolutionError: If the anchor cannot be checked at all
            FilesystemIOError: If reading failed after all retries
        """
        kind = anchor.kind
        if kind == AnchorKind.COMMAND.value:
            return ResolutionStatus.UNVERIFIABLE, "command anchors denote external actions"
        if kind not in {k.value for k in AnchorKind}:
            raise AnchorResolutionError(anchor.target, f"unknown anchor kind {kind!r}")

        parts = parse_target(anchor)
        full_path = self._locate(anchor, parts)

        if not self._exists(anchor, full_path):
            return ResolutionStatus.PATH_MISSING, f"{parts.path} does not exist"
        if kind == AnchorKind.FILE.value:
            return ResolutionStatus.VERIFIED, None

        if not full_path.is_file():
            return ResolutionStatus.PATH_MISSING, f"{parts.path} is not a file"

        if kind == AnchorKind.CONFIG.value:
            return self._resolve_config(anchor, parts, full_path)
        return self._resolve_symbol(anchor, parts, full_path)

    def resolve_located(self, located: LocatedAnchor) -> Resolution:
        """Resolve one anchor into a side-table entry. Never raises."""
        anchor = located.anchor
        try:
            status, detail = self.resolve(anchor)
        except AnchorResolutionError as e:
            logger.warning(f"Anchor {located.key} is unverifiable: {e}")
            status, detail = ResolutionStatus.UNVERIFIABLE, str(e)
        logger.debug(f"{located.key} -> {status.value}")
        return _resolution(located, status, detail)

    def _locate(self, anchor: Anchor, parts: AnchorTarget) -> Path:
        problem = path_problem(parts.path)
        if problem:
            raise AnchorResolutionError(anchor.target, f"escapes the repository root: {problem}")
        try:
            full_path = (self.repo_root / parts.path).resolve()
        except (OSError, RuntimeError) as e:
            # RuntimeError: symlink loop on Python < 3.13
            raise FilesystemIOError(anchor.target, e) from e
        if not full_path.is_relative_to(self.repo_root):
            raise AnchorResolutionError(anchor.target, "escapes the repository root through a link")
        return full_path

    def _exists(self, anchor: Anchor, full_path: Path) -> bool:
        try:
            full_path.stat()
        except (FileNotFoundError, NotADirectoryError):
            return False
        except OSError as e:
            raise FilesystemIOError(anchor.target, e) from e
        return True

    def _resolve_symbol(self, anchor: Anchor, parts: AnchorTarget,
                        full_path: Path) -> Tuple[ResolutionStatus, Optional[str]]:
        leaf = parts.leaf.split("[", 1)[0]
        if not self.check_symbols or not leaf:
            return ResolutionStatus.VERIFIED, None
        text = self._read_text(anchor, full_path)
        pattern = re.compile(r"(?<![\w$])" + re.escape(leaf) + r"(?![\w$])")
        if pattern.search(text):
            return ResolutionStatus.VERIFIED, None
        return ResolutionStatus.SYMBOL_NOT_FOUND, f"{leaf!r} does not appear in {parts.path}"

    def _resolve_config(self, anchor: Anchor, parts: AnchorTarget,
                        full_path: Path) -> Tuple[ResolutionStatus, Optional[str]]:
        fmt = parts.config_format or _SUFFIX_FORMATS.get(full_path.suffix.lower())
        if fmt is None:
            raise AnchorResolutionError(anchor.target, f"cannot tell the format of {parts.path}")

        text = self._read_text(anchor, full_path)
        try:
            data = _load_structured(fmt, text)
        except (yaml.YAMLError, json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
            raise AnchorResolutionError(anchor.target, f"{parts.path} is not loadable as {fmt}: {e}")

        if not parts.key_parts:
            return ResolutionStatus.VERIFIED, None
        missing = _walk_key(data, parts.key_parts)
        if missing is None:
            return ResolutionStatus.VERIFIED, None
        return ResolutionStatus.SYMBOL_NOT_FOUND, f"key {parts.config_key!r} stops at {missing!r}"

    def _read_text(self, anchor: Anchor, full_path: Path) -> str:
        """Read with retries on I/O errors."""
        retrying = Retrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type(OSError),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )
        try:
            return retrying(self._read_once, anchor, full_path)
        except OSError as e:
            raise FilesystemIOError(anchor.target, e) from e

    def _read_once(self, anchor: Anchor, full_path: Path) -> str:
        size = full_path.stat().st_size
        if size > self.max_file_bytes:
            raise AnchorResolutionError(
                anchor.target, f"file is {size} bytes, over the {self.max_file_bytes} byte limit")
        return full_path.read_bytes().decode("utf-8", errors="replace")

    # =========================================================================
    # BATCHES
    # =========================================================================

    def resolve_batch(self, anchors: Iterable[LocatedAnchor]) -> ResolutionTable:
        """
        Resolve many anchors on the worker threads.

        Each anchor gets its own timeout, counted from when a worker starts
        on it. A stuck check becomes unverifiable, its worker is replaced,
        and the rest of the batch keeps moving.
        """
        unique: Dict[str, LocatedAnchor] = {}
        for located in anchors:
            unique.setdefault(located.key, located)
        if not unique:
            return {}

        batch = _Batch(unique)
        for _ in range(min(self.max_workers, len(unique))):
            self._start_worker(batch)

        with batch.cond:
            while len(batch.results) < len(unique):
                now = time.monotonic()
                for key, started in sorted(batch.running.items()):
                    if now - started < self.timeout_seconds:
                        continue
                    logger.warning(f"Resolving {key} timed out after {self.timeout_seconds}s")
                    del batch.running[key]
                    batch.results[key] = _resolution(
                        unique[key], ResolutionStatus.UNVERIFIABLE,
                        f"timed out after {self.timeout_seconds}s")
                    if batch.pending:
                        self._start_worker(batch)
                if len(batch.results) == len(unique):
                    break
                wait = None
                if batch.running:
                    wait = max(0.0, min(batch.running.values()) + self.timeout_seconds - now)
                batch.cond.wait(timeout=wait)

        counts: Dict[str, int] = {}
        for resolution in batch.results.values():
            counts[resolution.status] = counts.get(resolution.status, 0) + 1
        logger.info(f"Resolved {len(batch.results)} anchors: {dict(sorted(counts.items()))}")
        return dict(sorted(batch.results.items()))

    def _start_worker(self, batch: "_Batch") -> None:
        worker = threading.Thread(
            target=self._work,
            args=(batch,),
            name="atlas-resolver",
            daemon=True,
        )
        worker.start()

    def _work(self, batch: "_Batch") -> None:
        """Take anchors off the batch queue until it is empty or a result comes back too late."""
        while True:
            key = batch.take()
            if key is None:
                return
            located = batch.items[key]
            try:
                resolution = self.resolve_located(located)
            except Exception as e:
                logger.error(f"Resolving {key} failed: {e}", exc_info=True)
                resolution = _resolution(located, ResolutionStatus.UNVERIFIABLE, f"{type(e).__name__}: {e}")
            if not batch.finish(key, resolution):
                logger.debug(f"Dropping late result for {key}")
                return

    def resolve_graph(self, db: AtlasDB) -> ResolutionTable:
        """Resolve every anchor of every node and relation in the graph."""
        return self.resolve_batch(graph_anchors(db))


class _Batch:
    """Shared state of one resolve_batch call. Every field is guarded by `cond`."""

    def __init__(self, items: Dict[str, LocatedAnchor]):
        self.items = items
        self.pending: Deque[str] = deque(sorted(items))
        self.running: Dict[str, float] = {}
        self.results: ResolutionTable = {}
        self.cond = threading.Condition()

    def take(self) -> Optional[str]:
        with self.cond:
            if not self.pending:
                return None
            key = self.pending.popleft()
            self.running[key] = time.monotonic()
            self.cond.notify_all()
            return key

    def finish(self, key: str, resolution: Resolution) -> bool:
        """Record an outcome. False if the check was already given up on."""
        with self.cond:
            if self.running.pop(key, None) is None:
                return False
            self.results[key] = resolution
            self.cond.notify_all()
            return True


# =============================================================================
# HELPERS
# =============================================================================

def graph_anchors(db: AtlasDB) -> List[LocatedAnchor]:
    located: List[LocatedAnchor] = []
    for node in db.iter_nodes():
        located += node.located_anchors()
    for relation in db.get_all_relations():
        located += relation.located_anchors()
    return located


def merge_resolutions(table: Mapping[str, Resolution], batch: Mapping[str, Resolution]) -> ResolutionTable:
    """A new table with the batch applied on top. Neither input is modified."""
    merged = dict(table)
    merged.update(batch)
    return dict(sorted(merged.items()))


def _resolution(located: LocatedAnchor, status: ResolutionStatus, detail: Optional[str]) -> Resolution:
    return Resolution(
        key=located.key,
        owner_id=located.owner_id,
        slot=located.slot,
        kind=located.anchor.kind,
        target=located.anchor.target,
        status=status.value,
        detail=detail,
    )


def _load_structured(fmt: str, text: str) -> Any:
    if fmt == "json":
        return json.loads(text)
    if fmt == "toml":
        return tomllib.loads(text)
    return yaml.safe_load(text)


def _walk_key(data: Any, parts: List[str]) -> Optional[str]:
    """Follow a dotted key. Returns the first segment that fails, or None."""
    current = data
    for part in parts:
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return part
    return None
