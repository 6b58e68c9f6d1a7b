"""
ATLAS GRAPH INVARIANTS - The Schema Validator

This module decides whether a populated graph may be persisted. It never
mutates the graph; it returns findings tagged fatal or warning.

Checks run in a fixed order so diagnostics are reproducible:
1. Root cardinality        exactly one System node               (fatal)
2. Id uniqueness           re-verified after the build            (fatal)
3. Relation endpoints      no dangling edges                      (fatal)
   Root has no incoming    the System node is the graph root      (fatal)
4. Anchor syntax           target conventions per anchor kind     (warning)
5. Unanchored nodes        components/flows with zero anchors     (warning)
6. Evidence coverage       evidence must evidence an invariant    (warning)
7. Relation vocabulary     unknown relation kinds                 (warning)
8. Id prefixes             ids follow their kind's namespace      (warning)

Within a check, subjects are visited in sorted id order.
"""
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from core.anchors import syntax_problem
from core.graph_db import AtlasDB
from core.ontology import (
    EVIDENCE_ANCHOR_KINDS,
    EVIDENCES_RELATION,
    RELATION_ID_PREFIX,
    FindingCode,
    NodeKind,
    Severity,
    expected_prefix,
    is_known_relation_kind,
)
from core.schemas import Finding, LocatedAnchor, SourceSpan


# =============================================================================
# REPORT
# =============================================================================

@dataclass
class ValidationReport:
    """All findings of one validation run, in check order."""
    findings: List[Finding] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def fatal(self) -> List[Finding]:
        return [f for f in self.findings if f.is_fatal]

    @property
    def warnings(self) -> List[Finding]:
        return [f for f in self.findings if not f.is_fatal]

    @property
    def is_valid(self) -> bool:
        """True if nothing blocks persistence."""
        return not self.fatal

    def by_code(self, code: FindingCode) -> List[Finding]:
        return [f for f in self.findings if f.code == code.value]


def _fatal(code: FindingCode, message: str, subject_id: Optional[str] = None,
           related_ids: Iterable[str] = (), provenance: Optional[SourceSpan] = None) -> Finding:
    return Finding(
        severity=Severity.FATAL.value,
        code=code.value,
        message=message,
        subject_id=subject_id,
        related_ids=list(related_ids),
        provenance=provenance,
    )


def _warning(code: FindingCode, message: str, subject_id: Optional[str] = None,
             related_ids: Iterable[str] = (), provenance: Optional[SourceSpan] = None) -> Finding:
    return Finding(
        severity=Severity.WARNING.value,
        code=code.value,
        message=message,
        subject_id=subject_id,
        related_ids=list(related_ids),
        provenance=provenance,
    )


# =============================================================================
# SCHEMA VALIDATOR
# =============================================================================

class SchemaValidator:
    """
    Structural and referential checks over an AtlasDB.

    Usage:
        report = SchemaValidator().validate(db, prior_findings=build.findings)
        if not report.is_valid:
            for finding in report.fatal:
                print(finding.code, finding.subject_id, finding.provenance)
    """

    def __init__(self, extra_relation_kinds: Optional[Iterable[str]] = None):
        """
        Args:
            extra_relation_kinds: Project-specific relation kinds to accept on
                top of the curated vocabulary.
        """
        self.extra_relation_kinds: FrozenSet[str] = frozenset(extra_relation_kinds or ())

    def validate(self, db: AtlasDB, prior_findings: Optional[List[Finding]] = None) -> ValidationReport:
        """
        Run every check and return the findings in fixed order.

        Args:
            db: The populated graph
            prior_findings: Findings produced while extracting/building the
                graph. Parse and decode problems are reported first; duplicate
                ids are folded into check 2.
        """
        prior = list(prior_findings or [])
        duplicates = [f for f in prior if f.code == FindingCode.DUPLICATE_ID.value]
        upstream = [f for f in prior if f.code != FindingCode.DUPLICATE_ID.value]

        findings: List[Finding] = list(upstream)
        findings += self.check_root_cardinality(db)
        findings += self.check_id_uniqueness(db, duplicates)
        findings += self.check_relation_endpoints(db)
        findings += self.check_root_incoming(db)
        findings += self.check_anchor_syntax(db)
        findings += self.check_unanchored_nodes(db)
        findings += self.check_evidence_coverage(db)
        findings += self.check_relation_vocabulary(db)
        findings += self.check_id_prefixes(db)

        kind_counts = Counter(n.node_kind.value for n in db.iter_nodes())
        metrics = {
            "node_count": db.node_count,
            "relation_count": db.relation_count,
            "detached_relation_count": len(db.get_detached_relations()),
            "nodes_by_kind": dict(sorted(kind_counts.items())),
            "fatal_count": sum(1 for f in findings if f.is_fatal),
            "warning_count": sum(1 for f in findings if not f.is_fatal),
        }
        return ValidationReport(findings=findings, metrics=metrics)

    # =========================================================================
    # FATAL CHECKS
    # =========================================================================

    @staticmethod
    def check_root_cardinality(db: AtlasDB) -> List[Finding]:
        """Check 1: exactly one System node."""
        systems = db.get_nodes_by_kind(NodeKind.SYSTEM)
        if not systems:
            return [_fatal(FindingCode.NO_ROOT, "No root: the graph declares no system node")]
        if len(systems) > 1:
            ids = [s.id for s in systems]
            return [_fatal(
                FindingCode.AMBIGUOUS_ROOT,
                f"Ambiguous root: {len(ids)} system nodes declared ({', '.join(ids)})",
                subject_id=ids[0],
                related_ids=ids[1:],
                provenance=systems[1].provenance,
            )]
        return []

    @staticmethod
    def check_id_uniqueness(db: AtlasDB, build_duplicates: Optional[List[Finding]] = None) -> List[Finding]:
        """
        Check 2: ids are unique.

        AtlasDB already rejects duplicates at insert time; the rejections are
        passed in by the builder. The stored payloads are re-scanned as well.
        """
        findings = list(build_duplicates or [])
        counts = Counter(n.id for n in db.iter_nodes())
        for node_id, count in sorted(counts.items()):
            if count > 1:
                findings.append(_fatal(
                    FindingCode.DUPLICATE_ID,
                    f"Node id {node_id} is stored {count} times",
                    subject_id=node_id,
                ))
        return findings

    @staticmethod
    def check_relation_endpoints(db: AtlasDB) -> List[Finding]:
        """Check 3: every relation endpoint resolves to a live node."""
        findings = []
        for relation in db.get_detached_relations():
            missing = [
                node_id for node_id in (relation.source, relation.target)
                if not db.has_node(node_id)
            ]
            # A self-loop on a missing node names it once
            missing = list(dict.fromkeys(missing))
            findings.append(_fatal(
                FindingCode.DANGLING_EDGE_ENDPOINT,
                f"Dangling edge endpoint: relation {relation.id} "
                f"({relation.source} -> {relation.target}) references missing "
                f"node(s) {', '.join(missing)}",
                subject_id=relation.id,
                related_ids=missing,
                provenance=relation.provenance,
            ))
        return findings

    @staticmethod
    def check_root_incoming(db: AtlasDB) -> List[Finding]:
        """The System node is the graph root: nothing may point at it."""
        findings = []
        for system in db.get_nodes_by_kind(NodeKind.SYSTEM):
            incoming = db.get_incoming(system.id)
            if incoming:
                rel_ids = [r.id for r in incoming]
                findings.append(_fatal(
                    FindingCode.ROOT_HAS_INCOMING_EDGE,
                    f"System node {system.id} is the graph root but is the target of "
                    f"{', '.join(rel_ids)}",
                    subject_id=system.id,
                    related_ids=rel_ids,
                    provenance=incoming[0].provenance,
                ))
        return findings

    # =========================================================================
    # WARNING CHECKS
    # =========================================================================

    @staticmethod
    def check_anchor_syntax(db: AtlasDB) -> List[Finding]:
        """Check 4: anchor targets follow the conventions of their kind."""
        findings = []

        def inspect(located: List[LocatedAnchor], provenance: Optional[SourceSpan], evidence: bool):
            for la in located:
                problem = syntax_problem(la.anchor)
                if problem:
                    findings.append(_warning(
                        FindingCode.MALFORMED_ANCHOR,
                        f"Malformed {la.anchor.kind} anchor {la.anchor.target!r} "
                        f"at {la.owner_id}.{la.slot}: {problem}",
                        subject_id=la.owner_id,
                        provenance=provenance,
                    ))
                if evidence and la.anchor.kind not in EVIDENCE_ANCHOR_KINDS:
                    findings.append(_warning(
                        FindingCode.EVIDENCE_ANCHOR_KIND,
                        f"Evidence {la.owner_id} anchors a {la.anchor.kind!r} target at "
                        f"{la.slot}; evidence may only point at test, command or file",
                        subject_id=la.owner_id,
                        provenance=provenance,
                    ))

        for node in db.iter_nodes():
            inspect(node.located_anchors(), node.provenance, node.node_kind == NodeKind.EVIDENCE)
        for relation in db.get_all_relations():
            inspect(relation.located_anchors(), relation.provenance, False)
        return findings

    @staticmethod
    def check_unanchored_nodes(db: AtlasDB) -> List[Finding]:
        """Check 5: components and flows should point at something real."""
        findings = []
        for node in db.iter_nodes():
            if node.node_kind not in (NodeKind.COMPONENT, NodeKind.FLOW):
                continue
            if not node.has_anchors():
                findings.append(_warning(
                    FindingCode.UNANCHORED_NODE,
                    f"Unanchored node: {node.node_kind.value} {node.id} has no anchors",
                    subject_id=node.id,
                    provenance=node.provenance,
                ))
        return findings

    @staticmethod
    def check_evidence_coverage(db: AtlasDB) -> List[Finding]:
        """Check 6: each evidence has an outgoing `evidences` edge to an invariant."""
        findings = []
        for evidence in db.get_nodes_by_kind(NodeKind.EVIDENCE):
            backs_invariant = any(
                r.kind == EVIDENCES_RELATION
                and db.get_node(r.target).node_kind == NodeKind.INVARIANT
                for r in db.get_outgoing(evidence.id)
            )
            if not backs_invariant:
                findings.append(_warning(
                    FindingCode.EVIDENCE_WITHOUT_INVARIANT,
                    f"Evidence {evidence.id} does not evidence any invariant",
                    subject_id=evidence.id,
                    provenance=evidence.provenance,
                ))
        return findings

    def check_relation_vocabulary(self, db: AtlasDB) -> List[Finding]:
        """Check 7: relation kinds come from the curated vocabulary."""
        findings = []
        for relation in db.get_all_relations():
            if not is_known_relation_kind(relation.kind, self.extra_relation_kinds):
                findings.append(_warning(
                    FindingCode.UNKNOWN_RELATION_KIND,
                    f"Relation {relation.id} uses unrecognized kind {relation.kind!r} "
                    f"(treated as low confidence)",
                    subject_id=relation.id,
                    provenance=relation.provenance,
                ))
        return findings

    @staticmethod
    def check_id_prefixes(db: AtlasDB) -> List[Finding]:
        """Check 8: ids carry their namespace prefix."""
        findings = []
        for node in db.iter_nodes():
            prefix = expected_prefix(node.node_kind)
            if not node.id.startswith(prefix):
                findings.append(_warning(
                    FindingCode.ID_PREFIX_MISMATCH,
                    f"{node.node_kind.value} id {node.id!r} should start with {prefix!r}",
                    subject_id=node.id,
                    provenance=node.provenance,
                ))
        for relation in db.get_all_relations():
            if not relation.id.startswith(RELATION_ID_PREFIX):
                findings.append(_warning(
                    FindingCode.ID_PREFIX_MISMATCH,
                    f"relation id {relation.id!r} should start with {RELATION_ID_PREFIX!r}",
                    subject_id=relation.id,
                    provenance=relation.provenance,
                ))
        return findings


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def validate_graph(db: AtlasDB, **kwargs) -> ValidationReport:
    """Validate a graph with the default vocabulary."""
    prior = kwargs.pop("prior_findings", None)
    return SchemaValidator(**kwargs).validate(db, prior_findings=prior)


def has_referential_integrity(db: AtlasDB) -> bool:
    """Quick check: no relation dangles."""
    return not db.get_detached_relations()
