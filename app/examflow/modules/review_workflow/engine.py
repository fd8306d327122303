"""
Review workflow engine.

DRAFT -> PENDING_DEPT_REVIEW -> PENDING_FINAL_REVIEW -> APPROVED, with rejects
going to NEEDS_REVISION and new uploads resetting to DRAFT.

Every transition is looked up in ``TRANSITIONS`` and checked in a fixed order:
document exists, actor is authorized, source state is allowed, required inputs
are present, expected revision is current. The commit is a compare-and-swap
on ``documents.revision``; version, feedback and audit rows ride in the same
transaction. Notifications are enqueued only after the commit succeeded.
"""
from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.examflow.audit import record_event
from app.examflow.directory import RoleDirectory
from app.examflow.errors import ConflictError, InvalidTransition, NotFound, Unauthorized, ValidationError
from app.examflow.models import UserRole
from app.examflow.modules.notifications.dispatcher import NotificationDispatcher
from app.examflow.modules.notifications.models import NotificationType
from app.examflow.utils import SystemClock

from . import feedback as feedback_ledger
from . import versions as version_manager
from .models import Document, DocumentVersion, Feedback, FeedbackAction, WorkflowState

logger = logging.getLogger(__name__)


class Action(str, enum.Enum):
    SUBMIT_FOR_REVIEW = "submit_for_review"
    DEPT_APPROVE = "dept_approve"
    DEPT_REJECT = "dept_reject"
    FINAL_APPROVE = "final_approve"
    FINAL_REJECT = "final_reject"
    UPLOAD_NEW_VERSION = "upload_new_version"


_ACTION_ALIASES = {
    "submitforreview": Action.SUBMIT_FOR_REVIEW,
    "deptapprove": Action.DEPT_APPROVE,
    "deptreject": Action.DEPT_REJECT,
    "finalapprove": Action.FINAL_APPROVE,
    "finalreject": Action.FINAL_REJECT,
    "uploadnewversion": Action.UPLOAD_NEW_VERSION,
}


def parse_action(raw: str | Action | None) -> Action:
    """Accepts ``dept_approve`` as well as ``deptApprove``."""
    if isinstance(raw, Action):
        return raw
    if raw is not None and not isinstance(raw, str):
        raise ValidationError("action must be a string.", field="action", allowed=[a.value for a in Action])
    key = (raw or "").strip().replace("_", "").replace("-", "").lower()
    action = _ACTION_ALIASES.get(key)
    if action is None:
        raise ValidationError(
            f"Unknown action: {raw!r}.",
            field="action",
            allowed=[a.value for a in Action],
        )
    return action


@dataclass(frozen=True)
class NewVersionPayload:
    content_locator: str
    key_handle: str
    description: str = ""
    filename: str | None = None
    content_type: str | None = None
    size_bytes: int | None = None
    sha256: str | None = None


@dataclass(frozen=True)
class TransitionRequest:
    document_id: int
    action: Action
    actor_id: int
    expected_revision: int
    comments: str | None = None
    new_version: NewVersionPayload | None = None


@dataclass(frozen=True)
class TransitionResult:
    document_id: int
    action: Action
    new_state: WorkflowState
    new_revision: int
    version_number: int | None = None
    feedback_id: int | None = None


# --- actor predicates ---

def _is_owner(directory: RoleDirectory, doc: Document, actor_id: int) -> bool:
    return doc.owner_id == actor_id and directory.get_user(actor_id) is not None


def _is_department_approver(directory: RoleDirectory, doc: Document, actor_id: int) -> bool:
    return directory.is_department_approver(actor_id, doc.department_id)


def _is_final_approver(directory: RoleDirectory, doc: Document, actor_id: int) -> bool:
    return directory.is_final_approver(actor_id)


# --- required-input predicates (return an error message or None) ---

def _nothing_required(req: TransitionRequest) -> str | None:
    return None


def _comments_required(req: TransitionRequest) -> str | None:
    if not (req.comments or "").strip():
        return "Comments are required when rejecting a document."
    return None


def _version_payload_required(req: TransitionRequest) -> str | None:
    p = req.new_version
    if p is None:
        return "A new version requires uploaded content and a key handle."
    if not (p.content_locator or "").strip():
        return "A new version requires a content locator."
    if not (p.key_handle or "").strip():
        return "A new version requires a key handle."
    return None


@dataclass(frozen=True)
class TransitionRule:
    action: Action
    sources: frozenset[WorkflowState]
    target: WorkflowState
    actor_label: str
    actor_allowed: Callable[[RoleDirectory, Document, int], bool]
    missing_input: Callable[[TransitionRequest], str | None] = _nothing_required
    required_fields: tuple[str, ...] = field(default_factory=tuple)


TRANSITIONS: dict[Action, TransitionRule] = {
    Action.SUBMIT_FOR_REVIEW: TransitionRule(
        action=Action.SUBMIT_FOR_REVIEW,
        sources=frozenset({WorkflowState.DRAFT, WorkflowState.NEEDS_REVISION}),
        target=WorkflowState.PENDING_DEPT_REVIEW,
        actor_label="the document owner",
        actor_allowed=_is_owner,
    ),
    Action.DEPT_APPROVE: TransitionRule(
        action=Action.DEPT_APPROVE,
        sources=frozenset({WorkflowState.PENDING_DEPT_REVIEW}),
        target=WorkflowState.PENDING_FINAL_REVIEW,
        actor_label="the department approver of the document's department",
        actor_allowed=_is_department_approver,
    ),
    Action.DEPT_REJECT: TransitionRule(
        action=Action.DEPT_REJECT,
        sources=frozenset({WorkflowState.PENDING_DEPT_REVIEW}),
        target=WorkflowState.NEEDS_REVISION,
        actor_label="the department approver of the document's department",
        actor_allowed=_is_department_approver,
        missing_input=_comments_required,
        required_fields=("comments",),
    ),
    Action.FINAL_APPROVE: TransitionRule(
        action=Action.FINAL_APPROVE,
        sources=frozenset({WorkflowState.PENDING_FINAL_REVIEW}),
        target=WorkflowState.APPROVED,
        actor_label="the final approver",
        actor_allowed=_is_final_approver,
    ),
    Action.FINAL_REJECT: TransitionRule(
        action=Action.FINAL_REJECT,
        sources=frozenset({WorkflowState.PENDING_FINAL_REVIEW}),
        target=WorkflowState.NEEDS_REVISION,
        actor_label="the final approver",
        actor_allowed=_is_final_approver,
        missing_input=_comments_required,
        required_fields=("comments",),
    ),
    Action.UPLOAD_NEW_VERSION: TransitionRule(
        action=Action.UPLOAD_NEW_VERSION,
        sources=frozenset(
            set(WorkflowState) - {WorkflowState.PENDING_DEPT_REVIEW, WorkflowState.PENDING_FINAL_REVIEW}
        ),
        target=WorkflowState.DRAFT,
        actor_label="the document owner",
        actor_allowed=_is_owner,
        missing_input=_version_payload_required,
        required_fields=("content_locator", "key_handle"),
    ),
}

PENDING_STATES_BY_ROLE: dict[UserRole, tuple[WorkflowState, ...]] = {
    UserRole.ORIGINATOR: (WorkflowState.DRAFT, WorkflowState.NEEDS_REVISION),
    UserRole.DEPARTMENT_APPROVER: (WorkflowState.PENDING_DEPT_REVIEW,),
    UserRole.FINAL_APPROVER: (WorkflowState.PENDING_FINAL_REVIEW,),
}


@dataclass(frozen=True)
class _PlannedNotification:
    recipient_id: int
    type: NotificationType
    title: str
    message: str


class WorkflowEngine:
    def __init__(
        self,
        s: Session,
        *,
        directory: RoleDirectory | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: SystemClock | None = None,
    ) -> None:
        self.s = s
        self.directory = directory or RoleDirectory(s)
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()

    # --- queries ---

    def get_document(self, document_id: int) -> Document:
        doc = self.s.get(Document, document_id, populate_existing=True)
        if doc is None:
            raise NotFound(f"Document {document_id} not found.", document_id=document_id)
        return doc

    def get_version_history(self, document_id: int) -> list[DocumentVersion]:
        self.get_document(document_id)
        return version_manager.list_versions(self.s, document_id)

    def get_version(self, document_id: int, version_number: int) -> DocumentVersion:
        self.get_document(document_id)
        return version_manager.get_version(self.s, document_id, version_number)

    def get_latest_version(self, document_id: int) -> DocumentVersion:
        self.get_document(document_id)
        v = version_manager.latest_version(self.s, document_id)
        if v is None:
            raise NotFound(f"Document {document_id} has no versions.", document_id=document_id)
        return v

    def get_feedback(self, document_id: int) -> list[Feedback]:
        self.get_document(document_id)
        return feedback_ledger.list_for_document(self.s, document_id)

    def list_pending_for(
        self,
        role: UserRole | str,
        department_id: int | None = None,
        *,
        owner_id: int | None = None,
    ) -> list[Document]:
        """
        Documents waiting on ``role``. The originator queue holds the caller's own
        drafts, so it needs ``owner_id``; the departmental queue needs a department.
        """
        try:
            role = UserRole(role)
        except ValueError:
            raise ValidationError(f"Unknown role: {role!r}.", field="role", allowed=[r.value for r in UserRole]) from None
        states = PENDING_STATES_BY_ROLE.get(role)
        if not states:
            return []
        if role == UserRole.DEPARTMENT_APPROVER and department_id is None:
            raise ValidationError("A department is required to list departmental reviews.", field="department_id")
        if role == UserRole.ORIGINATOR and owner_id is None:
            raise ValidationError("An owner is required to list documents awaiting revision.", field="owner_id")

        stmt = select(Document).where(Document.state.in_(states))
        if owner_id is not None:
            stmt = stmt.where(Document.owner_id == owner_id)
        if department_id is not None:
            stmt = stmt.where(Document.department_id == department_id)
        stmt = stmt.order_by(Document.updated_at.desc(), Document.id.desc())
        return list(self.s.scalars(stmt).all())

    # --- commands ---

    def create_document(
        self,
        *,
        actor_id: int,
        title: str,
        content_locator: str,
        key_handle: str,
        department_id: int | None = None,
        description: str = "",
        filename: str | None = None,
        content_type: str | None = None,
        size_bytes: int | None = None,
        sha256: str | None = None,
    ) -> Document:
        if self.directory.role_of(actor_id) != UserRole.ORIGINATOR:
            raise Unauthorized("Only originators may create exam documents.", actor_id=actor_id, required_role=UserRole.ORIGINATOR.value)

        title = (title or "").strip()
        if not title:
            raise ValidationError("A title is required.", field="title")
        if not (content_locator or "").strip() or not (key_handle or "").strip():
            raise ValidationError("Uploaded content and a key handle are required.", field="content")

        if department_id is None:
            department_id = self.directory.department_of(actor_id)
        if department_id is None:
            raise ValidationError("A department is required.", field="department_id")
        self.directory.get_department(department_id)

        now = self.clock.now()
        try:
            doc = Document(
                title=title,
                owner_id=actor_id,
                department_id=department_id,
                state=WorkflowState.DRAFT,
                current_version=1,
                revision=0,
                created_at=now,
                updated_at=now,
            )
            self.s.add(doc)
            self.s.flush()
            version_manager.create_version(
                self.s,
                document_id=doc.id,
                version_number=1,
                actor_id=actor_id,
                content_locator=content_locator,
                key_handle=key_handle,
                description=description or "Initial version",
                filename=filename,
                content_type=content_type,
                size_bytes=size_bytes,
                sha256=sha256,
                created_at=now,
            )
            record_event(
                self.s,
                actor_id=actor_id,
                action="review.create",
                entity_type="Document",
                entity_id=str(doc.id),
                metadata={"title": title, "department_id": department_id, "version": 1},
            )
            self.s.commit()
        except Exception:
            self.s.rollback()
            raise

        logger.info("Document created id=%s owner=%s department=%s", doc.id, actor_id, department_id)
        self.s.refresh(doc)
        return doc

    def _check(
        self,
        rule: TransitionRule,
        doc: Document,
        actor_id: int,
        expected_revision: int,
        req: TransitionRequest | None,
    ) -> None:
        action = rule.action
        if not rule.actor_allowed(self.directory, doc, actor_id):
            raise Unauthorized(
                f"Only {rule.actor_label} may perform {action.value}.",
                action=action.value,
                actor_id=actor_id,
                required_actor=rule.actor_label,
            )

        if doc.state not in rule.sources:
            raise InvalidTransition(
                f"Cannot {action.value} a document in state {doc.state.value}.",
                action=action.value,
                current_state=doc.state.value,
                allowed_from=sorted(st.value for st in rule.sources),
            )

        if req is not None:
            problem = rule.missing_input(req)
            if problem:
                raise ValidationError(problem, action=action.value, required=list(rule.required_fields))

        if doc.revision != expected_revision:
            raise ConflictError(
                "Document was changed by someone else; refresh and retry.",
                expected_revision=expected_revision,
                current_revision=doc.revision,
            )

    def precheck(self, document_id: int, action: Action | str, actor_id: int, expected_revision: int) -> Document:
        """
        Run the actor, state and revision checks without the input check or any write.
        Callers use it before producing inputs that cost something, e.g. storing content.
        """
        rule = TRANSITIONS[parse_action(action)]
        doc = self.get_document(document_id)
        self._check(rule, doc, actor_id, expected_revision, None)
        return doc

    def transition(self, req: TransitionRequest) -> TransitionResult:
        action = parse_action(req.action)
        if req.comments is not None and not isinstance(req.comments, str):
            raise ValidationError("comments must be a string.", field="comments", action=action.value)
        rule = TRANSITIONS[action]
        doc = self.get_document(req.document_id)
        self._check(rule, doc, req.actor_id, req.expected_revision, req)

        now = self.clock.now()
        values: dict[str, Any] = {"state": rule.target, "updated_at": now}
        new_version_number: int | None = None
        payload = req.new_version
        if action == Action.SUBMIT_FOR_REVIEW:
            values["submitted_at"] = now
        if action == Action.UPLOAD_NEW_VERSION:
            if payload is None:
                raise ValidationError("A new version requires uploaded content and a key handle.", action=action.value)
            new_version_number = doc.current_version + 1
            values["current_version"] = new_version_number

        reviewed_version = doc.current_version
        previous_state = doc.state
        feedback_id: int | None = None
        try:
            if not self._compare_and_swap(doc.id, req.expected_revision, values):
                self.s.rollback()
                current = self.s.scalar(select(Document.revision).where(Document.id == doc.id))
                logger.info(
                    "Transition conflict doc=%s action=%s expected_revision=%s current_revision=%s",
                    doc.id,
                    action.value,
                    req.expected_revision,
                    current,
                )
                raise ConflictError(
                    "Document was changed by someone else; refresh and retry.",
                    expected_revision=req.expected_revision,
                    current_revision=current,
                )

            if new_version_number is not None and payload is not None:
                version_manager.create_version(
                    self.s,
                    document_id=doc.id,
                    version_number=new_version_number,
                    actor_id=req.actor_id,
                    content_locator=payload.content_locator.strip(),
                    key_handle=payload.key_handle.strip(),
                    description=(payload.description or "").strip(),
                    filename=payload.filename,
                    content_type=payload.content_type,
                    size_bytes=payload.size_bytes,
                    sha256=payload.sha256,
                    created_at=now,
                )

            comments = (req.comments or "").strip()
            if rule.target == WorkflowState.NEEDS_REVISION or (
                action in (Action.DEPT_APPROVE, Action.FINAL_APPROVE) and comments
            ):
                feedback_id = feedback_ledger.append_feedback(
                    self.s,
                    document_id=doc.id,
                    version_number=reviewed_version,
                    reviewer_id=req.actor_id,
                    reviewer_role=self.directory.role_of(req.actor_id),
                    action=FeedbackAction.REJECTED if rule.target == WorkflowState.NEEDS_REVISION else FeedbackAction.APPROVED,
                    comments=comments,
                    created_at=now,
                )

            record_event(
                self.s,
                actor_id=req.actor_id,
                action=f"review.{action.value}",
                entity_type="Document",
                entity_id=str(doc.id),
                reason=comments or None,
                metadata={
                    "from": previous_state.value,
                    "to": rule.target.value,
                    "revision": req.expected_revision + 1,
                    "version": new_version_number or reviewed_version,
                },
            )
            planned = self._plan_notifications(action, doc, comments)
            self.s.commit()
        except ConflictError:
            raise
        except IntegrityError as e:
            self.s.rollback()
            logger.info("Transition conflict on insert doc=%s action=%s: %s", doc.id, action.value, e.orig)
            raise ConflictError(
                "Document was changed by someone else; refresh and retry.",
                expected_revision=req.expected_revision,
            ) from e
        except Exception:
            self.s.rollback()
            raise

        logger.info(
            "Transition committed doc=%s action=%s %s->%s revision=%s actor=%s",
            doc.id,
            action.value,
            previous_state.value,
            rule.target.value,
            req.expected_revision + 1,
            req.actor_id,
        )
        self._emit(doc.id, planned)
        self.s.refresh(doc)

        return TransitionResult(
            document_id=doc.id,
            action=action,
            new_state=rule.target,
            new_revision=req.expected_revision + 1,
            version_number=new_version_number,
            feedback_id=feedback_id,
        )

    def _compare_and_swap(self, document_id: int, expected_revision: int, values: dict[str, Any]) -> bool:
        """Apply ``values`` and bump the revision only if it still equals ``expected_revision``."""
        res = self.s.execute(
            update(Document)
            .where(Document.id == document_id, Document.revision == expected_revision)
            .values(revision=Document.revision + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    # --- notifications ---

    def _plan_notifications(self, action: Action, doc: Document, comments: str) -> list[_PlannedNotification]:
        title = doc.title
        approver_id = self.directory.approver_for(doc.department_id)
        planned: list[_PlannedNotification] = []

        if action == Action.SUBMIT_FOR_REVIEW:
            if approver_id is None:
                logger.warning("Department %s has no bound approver; review request for doc=%s not sent", doc.department_id, doc.id)
            else:
                owner = self.directory.get_user(doc.owner_id)
                owner_name = (owner.display_name or owner.email) if owner else f"User {doc.owner_id}"
                planned.append(
                    _PlannedNotification(
                        approver_id,
                        NotificationType.REVIEW_REQUEST,
                        "New Review Request",
                        f'{owner_name} has submitted "{title}" for review',
                    )
                )
        elif action in (Action.DEPT_REJECT, Action.FINAL_REJECT):
            planned.append(
                _PlannedNotification(
                    doc.owner_id,
                    NotificationType.REJECTION,
                    "Revision Needed",
                    f'Your document "{title}" needs revision. Reason: {comments}',
                )
            )
        elif action == Action.DEPT_APPROVE:
            planned.append(
                _PlannedNotification(
                    doc.owner_id,
                    NotificationType.APPROVAL,
                    "Department Approved",
                    f'Your document "{title}" has been approved by the department and sent for final review',
                )
            )
        elif action == Action.FINAL_APPROVE:
            planned.append(
                _PlannedNotification(
                    doc.owner_id,
                    NotificationType.APPROVAL,
                    "Document Approved",
                    f'Your document "{title}" has received final approval',
                )
            )
            if approver_id is not None:
                planned.append(
                    _PlannedNotification(
                        approver_id,
                        NotificationType.INFO,
                        "Document Approved",
                        f'Document "{title}" has received final approval',
                    )
                )
        # UPLOAD_NEW_VERSION is silent; resubmission notifies.
        return planned

    def _emit(self, document_id: int, planned: list[_PlannedNotification]) -> None:
        if self.dispatcher is None:
            return
        for p in planned:
            try:
                self.dispatcher.enqueue(p.recipient_id, p.type, document_id, p.message, title=p.title)
            except Exception:
                logger.exception(
                    "Notification enqueue failed doc=%s recipient=%s type=%s (transition already committed)",
                    document_id,
                    p.recipient_id,
                    p.type.value,
                )
