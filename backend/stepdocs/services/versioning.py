"""Session grouping, deduplication, version assignment and supersession linking.

Everything here is a pure function over a snapshot of document rows. Rows only
need the attributes ``id``, ``document_type``, ``created_at``,
``completion_session_id`` and ``withdrawn_at``, so ORM objects, ``DocumentView``
instances and test doubles are all accepted. Nothing is written; the service
layer applies the resulting ``RebuildPlan`` to the store.
"""

from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Mapping


OrderKey = Callable[[Any], tuple]
SessionKey = Callable[[Any], tuple]


def chronological_key(doc) -> tuple:
    """Total order over documents: creation time, then id."""
    return (doc.created_at, doc.id)


def session_start_key(session) -> tuple:
    """Total order over sessions: earliest document time, then session id."""
    return (session.created_at, session.session_id)


def is_versioned(doc) -> bool:
    return doc.completion_session_id is not None and getattr(doc, "withdrawn_at", None) is None


@dataclass
class CompletionSession:
    session_id: str
    documents: list
    created_at: str


@dataclass(frozen=True)
class VersionFields:
    document_version: int | None = None
    is_current_version: bool = False
    superseded_by: str | None = None
    superseded_at: str | None = None


UNVERSIONED = VersionFields()


@dataclass
class ConsistencyViolation:
    session_id: str
    document_type: str
    document_ids: list[str]
    reason: str

    def describe(self) -> str:
        return f"session {self.session_id} / {self.document_type}: {self.reason} ({', '.join(self.document_ids)})"


# ---------------------------------------------------------------------------
# Session grouping
# ---------------------------------------------------------------------------

def _order_sessions(
    groups: Mapping[str, list],
    order_key: OrderKey,
    session_key: SessionKey,
) -> list[CompletionSession]:
    sessions = []
    for session_id, docs in groups.items():
        if not docs:
            continue
        docs = sorted(docs, key=order_key)
        sessions.append(CompletionSession(session_id=session_id, documents=docs, created_at=docs[0].created_at))
    sessions.sort(key=session_key)
    return sessions


def group_sessions(
    documents: Iterable,
    order_key: OrderKey = chronological_key,
    session_key: SessionKey = session_start_key,
) -> list[CompletionSession]:
    """Partition versioned documents into sessions ordered oldest first.

    Documents without a session id (or withdrawn ones) are skipped. Sessions
    starting at the same instant are ordered by session id.
    """
    groups: dict[str, list] = defaultdict(list)
    for doc in documents:
        if is_versioned(doc):
            groups[doc.completion_session_id].append(doc)
    return _order_sessions(groups, order_key, session_key)


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------

def keep_earliest(candidates: list, order_key: OrderKey):
    return min(candidates, key=order_key)


def keep_latest(candidates: list, order_key: OrderKey):
    return max(candidates, key=order_key)


DedupPolicy = Callable[[list, OrderKey], Any]

DEDUP_POLICIES: dict[str, DedupPolicy] = {
    "keep_earliest": keep_earliest,
    "keep_latest": keep_latest,
}


def get_dedup_policy(name: str) -> DedupPolicy:
    try:
        return DEDUP_POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown dedup policy {name!r}. Must be one of: {sorted(DEDUP_POLICIES)}") from None


@dataclass
class DedupResult:
    session: CompletionSession
    discarded: list = field(default_factory=list)
    violations: list[ConsistencyViolation] = field(default_factory=list)


def deduplicate_session(
    session: CompletionSession,
    policy: DedupPolicy = keep_earliest,
    order_key: OrderKey = chronological_key,
) -> DedupResult:
    """Keep one document per type within a session; everything else is discarded."""
    by_type: dict[str, list] = defaultdict(list)
    for doc in session.documents:
        by_type[doc.document_type].append(doc)

    kept = []
    discarded = []
    violations = []
    for document_type, docs in by_type.items():
        if len(docs) == 1:
            kept.append(docs[0])
            continue

        timestamps = [d.created_at for d in docs]
        tied = [d.id for d in docs if timestamps.count(d.created_at) > 1]
        if tied:
            violations.append(ConsistencyViolation(
                session_id=session.session_id,
                document_type=document_type,
                document_ids=sorted(tied),
                reason="identical creation timestamps, resolved by document id",
            ))

        keeper = policy(docs, order_key)
        kept.append(keeper)
        discarded.extend(d for d in docs if d is not keeper)

    kept.sort(key=order_key)
    discarded.sort(key=order_key)
    deduped = CompletionSession(
        session_id=session.session_id,
        documents=kept,
        created_at=kept[0].created_at if kept else session.created_at,
    )
    return DedupResult(session=deduped, discarded=discarded, violations=violations)


# ---------------------------------------------------------------------------
# Version assignment and supersession
# ---------------------------------------------------------------------------

@dataclass
class VersionAssignment:
    # Per document type, documents ordered by version (index 0 is version 1).
    chains: dict[str, list]
    fields: dict[str, VersionFields]


def assign_versions(sessions: list[CompletionSession]) -> VersionAssignment:
    """Number each type's documents 1..N in session order and flag the last as current.

    A session that has no document of a given type does not consume a version
    for that type.
    """
    chains: dict[str, list] = defaultdict(list)
    for session in sessions:
        for doc in session.documents:
            chains[doc.document_type].append(doc)

    fields = {}
    for chain in chains.values():
        for index, doc in enumerate(chain):
            fields[doc.id] = VersionFields(
                document_version=index + 1,
                is_current_version=index == len(chain) - 1,
            )
    return VersionAssignment(chains=dict(chains), fields=fields)


def link_supersession(assignment: VersionAssignment) -> dict[str, VersionFields]:
    """Point every non-current version at its successor of the same type."""
    linked = dict(assignment.fields)
    for chain in assignment.chains.values():
        for doc, successor in zip(chain, chain[1:]):
            linked[doc.id] = replace(
                linked[doc.id],
                superseded_by=successor.id,
                superseded_at=successor.created_at,
            )
    return linked


def walk_chain(successors: Mapping[str, str | None], start_id: str) -> list[str]:
    """Follow superseded_by links from ``start_id``; raises ValueError on a cycle."""
    seen = []
    current = start_id
    while current is not None:
        if current in seen:
            raise ValueError(f"Supersession cycle detected at {current}")
        seen.append(current)
        current = successors.get(current)
    return seen


# ---------------------------------------------------------------------------
# Rebuild plan
# ---------------------------------------------------------------------------

@dataclass
class RebuildPlan:
    sessions: list[CompletionSession]
    delete_ids: list[str]
    fields: dict[str, VersionFields]
    violations: list[ConsistencyViolation]
    # (session_id, document_type) -> id of the document kept for that slot.
    survivors: dict[tuple[str, str], str] = field(default_factory=dict)

    @property
    def session_numbers(self) -> dict[str, int]:
        return {s.session_id: index + 1 for index, s in enumerate(self.sessions)}


def plan_rebuild(
    documents: Iterable,
    policy: DedupPolicy = keep_earliest,
    order_key: OrderKey = chronological_key,
    session_key: SessionKey = session_start_key,
) -> RebuildPlan:
    """Compute the derived state of one step from its raw document rows.

    Sessions are re-ordered after deduplication so that a plan computed from
    the rows it leaves behind is identical to this one.
    """
    documents = list(documents)
    groups = {}
    delete_ids = []
    violations = []
    for session in group_sessions(documents, order_key, session_key):
        result = deduplicate_session(session, policy, order_key)
        groups[session.session_id] = result.session.documents
        delete_ids.extend(d.id for d in result.discarded)
        violations.extend(result.violations)

    sessions = _order_sessions(groups, order_key, session_key)
    survivors = {(s.session_id, d.document_type): d.id for s in sessions for d in s.documents}
    fields = link_supersession(assign_versions(sessions))

    # Withdrawn documents drop out of versioning entirely.
    for doc in documents:
        if doc.completion_session_id is not None and not is_versioned(doc):
            fields[doc.id] = UNVERSIONED

    return RebuildPlan(
        sessions=sessions,
        delete_ids=delete_ids,
        fields=fields,
        violations=violations,
        survivors=survivors,
    )
