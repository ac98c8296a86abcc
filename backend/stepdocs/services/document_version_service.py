import logging
import secrets
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from stepdocs.config import settings
from stepdocs.errors import NotFound, StorageUnavailable
from stepdocs.models.document import TimelineDocument
from stepdocs.models.step import TimelineStep
from stepdocs.schemas.document import (
    DocumentCreate,
    DocumentResponse,
    SessionHistory,
    SessionInfo,
    SessionSummary,
    StepDocumentsResponse,
)
from stepdocs.schemas.step import CompletionSessionResponse
from stepdocs.services.locking import step_lock
from stepdocs.services.versioning import (
    ConsistencyViolation,
    VersionFields,
    chronological_key,
    get_dedup_policy,
    group_sessions,
    is_versioned,
    plan_rebuild,
    session_start_key,
    walk_chain,
)
from stepdocs.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RebuildReport:
    step_id: str
    session_count: int = 0
    deleted_ids: list[str] = field(default_factory=list)
    updated_ids: list[str] = field(default_factory=list)
    violations: list[ConsistencyViolation] = field(default_factory=list)
    survivors: dict[tuple[str, str], str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.deleted_ids or self.updated_ids)


@dataclass
class UploadOutcome:
    document: TimelineDocument
    kept: bool
    report: RebuildReport


@dataclass
class ConsistencyReport:
    step_id: str
    problems: list[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.problems


@dataclass
class SweepReport:
    rebuilt: list[RebuildReport] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


@dataclass
class DocumentView:
    """A document row paired with the version fields a query should report."""

    row: TimelineDocument
    fields: VersionFields

    @property
    def id(self) -> str:
        return self.row.id

    @property
    def document_type(self) -> str:
        return self.row.document_type

    @property
    def created_at(self) -> str:
        return self.row.created_at

    @property
    def completion_session_id(self) -> str | None:
        return self.row.completion_session_id

    @property
    def withdrawn_at(self) -> str | None:
        return self.row.withdrawn_at


def stored_fields(doc: TimelineDocument) -> VersionFields:
    return VersionFields(
        document_version=doc.document_version,
        is_current_version=bool(doc.is_current_version),
        superseded_by=doc.superseded_by,
        superseded_at=doc.superseded_at,
    )


def _view_to_response(view: DocumentView, session_info: SessionInfo | None = None) -> DocumentResponse:
    doc = view.row
    return DocumentResponse(
        id=doc.id,
        step_id=doc.step_id,
        document_type=doc.document_type,
        original_name=doc.original_name,
        storage_key=doc.storage_key,
        download_url=doc.download_url,
        size_bytes=doc.size_bytes,
        mime_type=doc.mime_type,
        uploaded_by=doc.uploaded_by,
        created_at=doc.created_at,
        completion_session_id=doc.completion_session_id,
        document_version=view.fields.document_version,
        is_current_version=view.fields.is_current_version,
        superseded_by=view.fields.superseded_by,
        superseded_at=view.fields.superseded_at,
        session_info=session_info,
    )


def document_to_response(doc: TimelineDocument) -> DocumentResponse:
    return _view_to_response(DocumentView(doc, stored_fields(doc)))


class DocumentVersionService:
    """Owns every write to the derived version columns of timeline documents.

    Upload, deletion and withdrawal only touch raw rows and then call the
    rebuild inside the same transaction, under the step's lock.
    """

    def __init__(
        self,
        policy_name: str | None = None,
        order_key=chronological_key,
        session_key=session_start_key,
    ):
        self._policy_name = policy_name
        self.order_key = order_key
        self.session_key = session_key

    @property
    def policy(self):
        return get_dedup_policy(self._policy_name or settings.dedup_policy)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def create_step(self, db: Session, timeline_id: str, title: str) -> TimelineStep:
        now = utcnow()
        step = TimelineStep(
            id=str(uuid.uuid4()),
            timeline_id=timeline_id,
            title=title,
            is_completed=0,
            created_at=now,
            updated_at=now,
        )
        db.add(step)
        db.commit()
        db.refresh(step)
        return step

    def get_step(self, db: Session, step_id: str, for_update: bool = False) -> TimelineStep:
        query = db.query(TimelineStep).filter(TimelineStep.id == step_id)
        if for_update:
            # Row lock on server databases; SQLite serialises writers on its own.
            query = query.with_for_update()
        step = query.first()
        if not step:
            raise NotFound("Step", step_id)
        return step

    def set_step_completed(self, db: Session, step_id: str, completed: bool) -> TimelineStep:
        """Toggle completion; reopening a completed step withdraws its latest session."""
        with step_lock(step_id):
            try:
                step = self.get_step(db, step_id, for_update=True)
                was_completed = bool(step.is_completed)
                step.is_completed = int(completed)
                step.updated_at = utcnow()
                if was_completed and not completed:
                    self._withdraw_latest_session(db, step_id)
                db.commit()
            except Exception:
                db.rollback()
                raise
        db.refresh(step)
        return step

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(self, db: Session, step_id: str) -> str:
        self.get_step(db, step_id)
        return f"session_{step_id}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"

    def list_sessions(self, db: Session, step_id: str, live: bool = False) -> list[CompletionSessionResponse]:
        views = self._views(db, step_id, live)
        sessions = group_sessions(views, self.order_key, self.session_key)
        return [
            CompletionSessionResponse(
                session_id=session.session_id,
                step_id=step_id,
                session_number=number,
                created_at=session.created_at,
                document_count=len(session.documents),
            )
            for number, session in enumerate(sessions, start=1)
        ]

    def withdraw_latest_session(self, db: Session, step_id: str) -> RebuildReport | None:
        with step_lock(step_id):
            try:
                self.get_step(db, step_id, for_update=True)
                report = self._withdraw_latest_session(db, step_id)
                db.commit()
            except Exception:
                db.rollback()
                raise
        return report

    def _withdraw_latest_session(self, db: Session, step_id: str) -> RebuildReport | None:
        docs = self._step_documents(db, step_id)
        sessions = plan_rebuild(docs, self.policy, self.order_key, self.session_key).sessions
        if not sessions:
            return None

        latest = sessions[-1].session_id
        now = utcnow()
        for doc in docs:
            if doc.completion_session_id == latest and doc.withdrawn_at is None:
                doc.withdrawn_at = now
        db.flush()
        logger.info("Withdrew session %s of step %s", latest, step_id)
        return self._rebuild_locked(db, step_id)

    # ------------------------------------------------------------------
    # Uploads and deletion
    # ------------------------------------------------------------------

    def add_document(
        self,
        db: Session,
        step_id: str,
        req: DocumentCreate,
        uploaded_by: str,
        created_at: str | None = None,
    ) -> UploadOutcome:
        """Persist a finalized upload and bring the step's versions up to date.

        ``created_at`` defaults to the current time; tests pass explicit
        timestamps to get a deterministic order.
        """
        if not req.storage_key.strip() or not req.download_url.strip():
            raise StorageUnavailable(f"Upload {req.original_name!r} has no storage key or download URL")

        with step_lock(step_id):
            try:
                self.get_step(db, step_id, for_update=True)
                doc = TimelineDocument(
                    id=str(uuid.uuid4()),
                    step_id=step_id,
                    document_type=req.document_type.value,
                    original_name=req.original_name,
                    storage_key=req.storage_key,
                    download_url=req.download_url,
                    size_bytes=req.size_bytes,
                    mime_type=req.mime_type,
                    uploaded_by=uploaded_by,
                    created_at=created_at or utcnow(),
                    completion_session_id=req.completion_session_id,
                    document_version=None,
                    is_current_version=0,
                )
                doc_id = doc.id
                db.add(doc)
                db.flush()
                report = self._rebuild_locked(db, step_id)
                db.commit()
            except Exception:
                db.rollback()
                raise

        if doc_id not in report.deleted_ids:
            db.refresh(doc)
            return UploadOutcome(document=doc, kept=True, report=report)

        survivor_id = report.survivors[(req.completion_session_id, req.document_type.value)]
        survivor = db.get(TimelineDocument, survivor_id)
        logger.info(
            "Upload %s folded into %s (step %s, session %s, %s)",
            doc_id, survivor.id, step_id, req.completion_session_id, req.document_type.value,
        )
        return UploadOutcome(document=survivor, kept=False, report=report)

    def delete_document(self, db: Session, step_id: str, document_id: str) -> RebuildReport:
        with step_lock(step_id):
            try:
                self.get_step(db, step_id, for_update=True)
                doc = db.query(TimelineDocument).filter(
                    TimelineDocument.id == document_id,
                    TimelineDocument.step_id == step_id,
                ).first()
                if not doc:
                    raise NotFound("Document", document_id)
                db.delete(doc)
                db.flush()
                report = self._rebuild_locked(db, step_id)
                db.commit()
            except Exception:
                db.rollback()
                raise
        return report

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def rebuild(self, db: Session, step_id: str) -> RebuildReport:
        """Recompute versions and supersession links for one step.

        Idempotent: on a consistent step nothing is written.
        """
        with step_lock(step_id):
            try:
                self.get_step(db, step_id, for_update=True)
                report = self._rebuild_locked(db, step_id)
                db.commit()
            except NotFound:
                db.rollback()
                raise
            except Exception:
                db.rollback()
                logger.exception("Rebuild of step %s failed, rolled back", step_id)
                raise

        if report.changed:
            logger.info(
                "Rebuilt step %s: %d sessions, %d updated, %d duplicates deleted",
                step_id, report.session_count, len(report.updated_ids), len(report.deleted_ids),
            )
        else:
            logger.debug("Step %s already consistent", step_id)
        return report

    def _rebuild_locked(self, db: Session, step_id: str) -> RebuildReport:
        docs = self._step_documents(db, step_id)
        plan = plan_rebuild(docs, self.policy, self.order_key, self.session_key)
        report = RebuildReport(
            step_id=step_id,
            session_count=len(plan.sessions),
            violations=plan.violations,
            survivors=plan.survivors,
        )

        for violation in plan.violations:
            logger.warning("Step %s: %s", step_id, violation.describe())

        doomed = set(plan.delete_ids)
        for doc in docs:
            if doc.id in doomed:
                logger.warning(
                    "Deleting duplicate %s document %s from session %s of step %s",
                    doc.document_type, doc.id, doc.completion_session_id, step_id,
                )
                db.delete(doc)
                report.deleted_ids.append(doc.id)
                continue

            target = plan.fields.get(doc.id)
            if target is None or stored_fields(doc) == target:
                continue
            doc.document_version = target.document_version
            doc.is_current_version = int(target.is_current_version)
            doc.superseded_by = target.superseded_by
            doc.superseded_at = target.superseded_at
            report.updated_ids.append(doc.id)

        db.flush()
        return report

    def sweep(self, db: Session) -> SweepReport:
        """Rebuild every step holding versioned documents, one transaction each."""
        step_ids = [
            row[0]
            for row in db.query(TimelineDocument.step_id)
            .filter(TimelineDocument.completion_session_id.isnot(None))
            .distinct()
            .order_by(TimelineDocument.step_id)
            .all()
        ]
        result = SweepReport()
        for step_id in step_ids:
            try:
                result.rebuilt.append(self.rebuild(db, step_id))
            except Exception as exc:
                result.failed[step_id] = str(exc)
        logger.info("Sweep finished: %d steps rebuilt, %d failed", len(result.rebuilt), len(result.failed))
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _step_documents(self, db: Session, step_id: str) -> list[TimelineDocument]:
        return db.query(TimelineDocument).filter(TimelineDocument.step_id == step_id).all()

    def _views(self, db: Session, step_id: str, live: bool) -> list[DocumentView]:
        self.get_step(db, step_id)
        docs = self._step_documents(db, step_id)
        if not live:
            return [DocumentView(doc, stored_fields(doc)) for doc in docs]

        plan = plan_rebuild(docs, self.policy, self.order_key, self.session_key)
        doomed = set(plan.delete_ids)
        return [
            DocumentView(doc, plan.fields.get(doc.id, stored_fields(doc)))
            for doc in docs
            if doc.id not in doomed
        ]

    def get_current_documents(self, db: Session, step_id: str, live: bool = False) -> list[DocumentResponse]:
        """Current document of every type, newest first.

        With ``live`` the versions are recomputed from the raw rows instead of
        read from the stored columns; on a rebuilt step both agree.
        """
        versioned = [v for v in self._views(db, step_id, live) if is_versioned(v)]
        total_sessions = len(group_sessions(versioned, self.order_key, self.session_key))
        current = sorted(
            (v for v in versioned if v.fields.is_current_version),
            key=self.order_key,
            reverse=True,
        )
        return [
            _view_to_response(v, SessionInfo(
                session_id=v.completion_session_id,
                session_number=v.fields.document_version,
                total_sessions=total_sessions,
                is_latest_session=True,
            ))
            for v in current
        ]

    def get_version_history(
        self,
        db: Session,
        step_id: str,
        newest_first: bool = True,
        live: bool = False,
    ) -> list[SessionHistory]:
        versioned = [v for v in self._views(db, step_id, live) if is_versioned(v)]
        sessions = group_sessions(versioned, self.order_key, self.session_key)
        total_sessions = len(sessions)

        history = []
        for number, session in enumerate(sessions, start=1):
            superseded = [v for v in session.documents if not v.fields.is_current_version]
            if not superseded:
                continue
            info = SessionInfo(
                session_id=session.session_id,
                session_number=number,
                total_sessions=total_sessions,
                is_latest_session=False,
            )
            history.append(SessionHistory(
                session=SessionSummary(
                    session_id=session.session_id,
                    session_number=number,
                    total_sessions=total_sessions,
                    is_latest_session=False,
                    document_count=len(superseded),
                    created_at=session.created_at,
                ),
                documents=[_view_to_response(v, info) for v in superseded],
            ))

        if newest_first:
            history.reverse()
        return history

    def get_step_documents(self, db: Session, step_id: str, live: bool = False) -> StepDocumentsResponse:
        return StepDocumentsResponse(
            current_documents=self.get_current_documents(db, step_id, live=live),
            previous_sessions=self.get_version_history(db, step_id, newest_first=True, live=live),
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def check_consistency(self, db: Session, step_id: str) -> ConsistencyReport:
        """Audit the stored rows of a step without changing them."""
        self.get_step(db, step_id)
        docs = self._step_documents(db, step_id)
        report = ConsistencyReport(step_id=step_id)

        by_type: dict[str, list[TimelineDocument]] = defaultdict(list)
        by_session_type: dict[tuple[str, str], list[str]] = defaultdict(list)
        for doc in docs:
            if is_versioned(doc):
                by_type[doc.document_type].append(doc)
                by_session_type[(doc.completion_session_id, doc.document_type)].append(doc.id)
            elif doc.withdrawn_at is not None and stored_fields(doc) != VersionFields():
                report.problems.append(f"withdrawn document {doc.id} still carries version fields")

        for (session_id, document_type), ids in sorted(by_session_type.items()):
            if len(ids) > 1:
                report.problems.append(f"{len(ids)} {document_type} documents in session {session_id}")

        for document_type, type_docs in sorted(by_type.items()):
            report.problems.extend(self._check_chain(document_type, type_docs))

        plan = plan_rebuild(docs, self.policy, self.order_key, self.session_key)
        drifted = [
            doc.id for doc in docs
            if doc.id in plan.fields and doc.id not in plan.delete_ids and stored_fields(doc) != plan.fields[doc.id]
        ]
        if drifted:
            report.problems.append(f"{len(drifted)} documents differ from a fresh rebuild")

        if report.problems:
            logger.warning("Step %s inconsistent: %s", step_id, "; ".join(report.problems))
        return report

    def _check_chain(self, document_type: str, docs: list[TimelineDocument]) -> list[str]:
        problems = []
        current = [d for d in docs if d.is_current_version]
        if len(current) != 1:
            problems.append(f"{document_type} has {len(current)} current documents")

        versions = sorted(d.document_version or 0 for d in docs)
        if versions != list(range(1, len(docs) + 1)):
            problems.append(f"{document_type} versions {versions} are not 1..{len(docs)}")
            return problems

        by_id = {d.id: d for d in docs}
        head = next(d for d in docs if d.document_version == 1)
        try:
            visited = walk_chain({d.id: d.superseded_by for d in docs}, head.id)
        except ValueError as exc:
            problems.append(f"{document_type} chain: {exc}")
            return problems

        if set(visited) != set(by_id) or len(visited) != len(docs):
            problems.append(f"{document_type} chain visits {len(visited)} of {len(docs)} documents")
            return problems
        if not by_id[visited[-1]].is_current_version:
            problems.append(f"{document_type} chain does not end at the current document")

        for doc_id, successor_id in zip(visited, visited[1:]):
            doc, successor = by_id[doc_id], by_id[successor_id]
            if successor.document_version != doc.document_version + 1:
                problems.append(f"{document_type} v{doc.document_version} links to v{successor.document_version}")
            if doc.superseded_at != successor.created_at:
                problems.append(f"{document_type} v{doc.document_version} superseded_at does not match its successor")
        tail = by_id[visited[-1]]
        if tail.superseded_at is not None:
            problems.append(f"{document_type} current document has superseded_at set")
        return problems


document_version_service = DocumentVersionService()
