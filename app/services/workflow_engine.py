"""
Workflow Engine — the file state machine.

Every action runs as one unit of work:

  1. Lock the file row (SELECT … FOR UPDATE) and re-read it, so a racing
     caller observes the already-committed state.
  2. Validate the action against the locked state (STATE_TRANSITIONS).
  3. Authorize the caller:
       SAVE_DRAFT, SUBMIT, RESUBMIT  → file creator only
       ARCHIVE                       → creator, or Admin in the file's department
       APPROVE, RETURN, HOLD,
       RESUME, REJECT                → holder, in the file's department, of the
                                       role recorded on the active level
  4. Compute the next {state, level}; reconcile FileWorkflowLevel statuses.
  5. Append a FileWorkflowParticipant row (approval-chain actions) and one
     FileAuditTrail row (always).
  6. Commit. Any failure rolls the whole unit back and propagates.

allowed_actions() uses the same authorization predicate, so what is shown
as available is exactly what execute() accepts.

Usage:
    from app.services.workflow_engine import execute, allowed_actions

    file = execute(file_id=12, caller_id=4, action="APPROVE", remarks="OK")
    actions = allowed_actions(file, caller_id=4)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select

from app.core.exceptions import (
    ForbiddenError,
    IllegalTransitionError,
    NotFoundError,
    UnknownActionError,
)
from app.models import db
from app.models.file import (
    APPROVAL_CHAIN_ACTIONS,
    AUDIT_AUTO_APPROVED,
    STATE_TRANSITIONS,
    File,
    FileState,
    FileWorkflowLevel,
    FileWorkflowParticipant,
    LevelStatus,
    WorkflowAction,
    write_file_audit,
)
from app.services.authority import Role, department_roles, parse_role, role_label

logger = logging.getLogger(__name__)

CREATOR_ACTIONS = frozenset({
    WorkflowAction.SAVE_DRAFT,
    WorkflowAction.SUBMIT,
    WorkflowAction.RESUBMIT,
})

AUTO_APPROVED_DETAIL = "auto-approved: creator authority exceeds all levels"


# ═════════════════════════════════════════════════════════════════════════════
# Value objects
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CallerContext:
    """Everything the authorization predicate needs about one caller/file pair."""
    user_id: int
    is_creator: bool
    roles: tuple[str, ...]
    active_level: int | None
    active_role: str | None

    @property
    def is_admin(self) -> bool:
        return any(parse_role(r) is Role.ADMIN for r in self.roles)

    @property
    def has_role_for_level(self) -> bool:
        if self.active_role is None:
            return False
        required = parse_role(self.active_role)
        for held in self.roles:
            parsed = parse_role(held)
            if parsed is not None and parsed is required:
                return True
            if parsed is None and held == self.active_role:
                return True
        return False


@dataclass(frozen=True)
class Transition:
    state: FileState
    level: int
    auto_approved: bool = False


# ═════════════════════════════════════════════════════════════════════════════
# Pure helpers
# ═════════════════════════════════════════════════════════════════════════════

def parse_action(action: str | WorkflowAction) -> WorkflowAction:
    if isinstance(action, WorkflowAction):
        return action
    try:
        return WorkflowAction(str(action or "").strip().upper())
    except ValueError:
        raise UnknownActionError(str(action)) from None


def is_action_allowed(state: str | FileState, action: WorkflowAction) -> bool:
    """True if *action* is legal from *state* (ownership not considered)."""
    try:
        return action in STATE_TRANSITIONS[FileState(state)]
    except ValueError:
        return False


def _active_level_row(file: File) -> FileWorkflowLevel | None:
    row = file.level_row(file.current_level)
    if row is not None and row.status == LevelStatus.ACTIVE.value:
        return row
    return None


def _first_pending_level(file: File, above: int = 0) -> int | None:
    for row in file.levels:
        if row.level > above and row.status != LevelStatus.SKIPPED.value:
            return row.level
    return None


def compute_transition(file: File, action: WorkflowAction) -> Transition:
    """Next {state, level} for *action*; assumes the action is legal."""
    current = file.current_level
    if action is WorkflowAction.SAVE_DRAFT:
        return Transition(FileState.DRAFT, current)
    if action is WorkflowAction.SUBMIT:
        first = _first_pending_level(file)
        if first is None:
            return Transition(FileState.APPROVED, file.max_levels, auto_approved=True)
        return Transition(FileState.IN_REVIEW, first)
    if action is WorkflowAction.APPROVE:
        nxt = _first_pending_level(file, above=current)
        if nxt is None:
            return Transition(FileState.APPROVED, current)
        return Transition(FileState.IN_REVIEW, nxt)
    if action is WorkflowAction.RETURN:
        return Transition(FileState.RETURNED, current)
    if action in (WorkflowAction.RESUBMIT, WorkflowAction.RESUME):
        return Transition(FileState.IN_REVIEW, current)
    if action is WorkflowAction.HOLD:
        return Transition(FileState.CABINET, current)
    if action is WorkflowAction.REJECT:
        return Transition(FileState.REJECTED, current)
    if action is WorkflowAction.ARCHIVE:
        return Transition(FileState.ARCHIVED, current)
    raise UnknownActionError(action.value)


def audit_details(action: WorkflowAction, from_level: int, transition: Transition, remarks: str | None) -> str:
    if action is WorkflowAction.SUBMIT and transition.auto_approved:
        detail = f"File submitted; {AUTO_APPROVED_DETAIL}"
    elif action is WorkflowAction.APPROVE:
        detail = (
            "Final approval granted - File APPROVED"
            if transition.state is FileState.APPROVED
            else f"Approved at Level {from_level}, moved to Level {transition.level}"
        )
    else:
        detail = {
            WorkflowAction.SAVE_DRAFT: "File saved as draft",
            WorkflowAction.SUBMIT: f"File submitted, moved to Level {transition.level} approval",
            WorkflowAction.RETURN: f"Returned from Level {from_level} for corrections",
            WorkflowAction.RESUBMIT: f"File resubmitted to Level {transition.level}",
            WorkflowAction.HOLD: f"Placed in Cabinet (on hold) at Level {from_level}",
            WorkflowAction.RESUME: f"Resumed from Cabinet at Level {from_level}",
            WorkflowAction.REJECT: f"Rejected at Level {from_level}",
            WorkflowAction.ARCHIVE: "File archived - now read-only",
        }.get(action, f"Action: {action.value}")
    if remarks:
        detail += f" | Remarks: {remarks}"
    return detail


# ═════════════════════════════════════════════════════════════════════════════
# Authorization
# ═════════════════════════════════════════════════════════════════════════════

def caller_context(file: File, caller_id: int) -> CallerContext:
    active = _active_level_row(file)
    return CallerContext(
        user_id=caller_id,
        is_creator=file.created_by == caller_id,
        roles=tuple(department_roles(caller_id, file.department_id)),
        active_level=active.level if active else None,
        active_role=active.role_required if active else None,
    )


def is_authorized(action: WorkflowAction, ctx: CallerContext) -> bool:
    """The single authorization predicate used by execute and allowed_actions."""
    if action in CREATOR_ACTIONS:
        return ctx.is_creator
    if action is WorkflowAction.ARCHIVE:
        return ctx.is_creator or ctx.is_admin
    return ctx.has_role_for_level


def _forbidden_message(action: WorkflowAction, ctx: CallerContext, file: File) -> str:
    if action in CREATOR_ACTIONS:
        return f"Only the file creator can perform {action.value}"
    if action is WorkflowAction.ARCHIVE:
        return "Only the file creator or an Administrator of the department can archive"
    if not ctx.roles:
        return (
            "You do not have any role in this file's department. "
            "Cross-department actions are not allowed."
        )
    held = ", ".join(f'"{role_label(r)}"' for r in ctx.roles)
    return (
        f'Access denied. Level {file.current_level} requires "{role_label(ctx.active_role)}" role. '
        f"Your role(s) in this department: {held}."
    )


def _performed_as(action: WorkflowAction, ctx: CallerContext) -> str:
    if action in APPROVAL_CHAIN_ACTIONS:
        return ctx.active_role or "Unknown"
    if action is WorkflowAction.ARCHIVE and not ctx.is_creator:
        return Role.ADMIN.value
    return "Creator"


# ═════════════════════════════════════════════════════════════════════════════
# Level reconciliation
# ═════════════════════════════════════════════════════════════════════════════

def _reconcile_levels(
    file: File,
    action: WorkflowAction,
    from_level: int,
    transition: Transition,
    caller_id: int,
    remarks: str | None,
    now: datetime,
) -> None:
    current = file.level_row(from_level)

    if action is WorkflowAction.APPROVE and current is not None:
        current.status = LevelStatus.COMPLETED.value
        current.completed_by = caller_id
        current.completed_at = now
        current.remarks = remarks or None
    elif action in (WorkflowAction.RETURN, WorkflowAction.REJECT) and current is not None:
        current.status = LevelStatus.RETURNED.value
        current.remarks = remarks or None

    if transition.state is FileState.IN_REVIEW:
        target = file.level_row(transition.level)
        if target is not None:
            target.status = LevelStatus.ACTIVE.value


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════

def lock_file(file_id: int) -> File:
    """Load *file_id* under a row lock, refreshing any cached instance."""
    file = db.session.execute(
        select(File)
        .where(File.id == file_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if file is None:
        raise NotFoundError(resource="File", resource_id=file_id)
    return file


def execute(
    file_id: int,
    caller_id: int,
    action: str | WorkflowAction,
    remarks: str | None = "",
    origin_ip: str | None = None,
) -> File:
    """Execute a workflow action atomically and return the updated File.

    Raises:
        UnknownActionError, NotFoundError, IllegalTransitionError, ForbiddenError.
        Storage errors propagate after rollback.
    """
    remarks = (remarks or "").strip()
    try:
        act = parse_action(action)
        file = lock_file(file_id)
        db.session.expire(file, ["levels"])

        from_state = file.current_state
        from_level = file.current_level
        if not is_action_allowed(from_state, act):
            raise IllegalTransitionError(act.value, from_state, file_id=file.id)

        ctx = caller_context(file, caller_id)
        if not is_authorized(act, ctx):
            raise ForbiddenError(_forbidden_message(act, ctx, file), user_id=caller_id, action=act.value)

        transition = compute_transition(file, act)
        now = datetime.now(timezone.utc)

        file.current_state = transition.state.value
        file.current_level = transition.level
        file.updated_at = now
        _reconcile_levels(file, act, from_level, transition, caller_id, remarks, now)

        if act in APPROVAL_CHAIN_ACTIONS:
            db.session.add(FileWorkflowParticipant(
                file_id=file.id,
                level=from_level,
                role=ctx.active_role or "Unknown",
                department_id=file.department_id,
                action=act.value,
                action_by=caller_id,
                action_at=now,
                remarks=remarks or None,
            ))

        write_file_audit(
            file_id=file.id,
            action=act.value,
            performed_by=caller_id,
            details=audit_details(act, from_level, transition, remarks),
            metadata={
                "fromState": from_state,
                "toState": transition.state.value,
                "fromLevel": from_level,
                "toLevel": transition.level,
                "performedAs": _performed_as(act, ctx),
            },
            ip_address=origin_ip,
        )
        if transition.auto_approved:
            write_file_audit(
                file_id=file.id,
                action=AUDIT_AUTO_APPROVED,
                performed_by=caller_id,
                details=AUTO_APPROVED_DETAIL,
                metadata={
                    "creatorAuthority": file.creator_authority_level,
                    "maxLevels": file.max_levels,
                },
                ip_address=origin_ip,
            )

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Workflow action %s: %s@L%s -> %s@L%s",
        act.value, from_state, from_level, transition.state.value, transition.level,
        extra={"file_id": file_id, "action": act.value, "user_id": caller_id},
    )
    return file


def allowed_actions(file: File, caller_id: int) -> list[str]:
    """Actions legal in the file's state that *caller_id* may perform. Read-only."""
    try:
        candidates = STATE_TRANSITIONS[FileState(file.current_state)]
    except ValueError:
        return []
    if not candidates:
        return []
    ctx = caller_context(file, caller_id)
    return [a.value for a in candidates if is_authorized(a, ctx)]


def check_consistency(file: File) -> list[str]:
    """Return violations of the level invariants for *file* (empty when consistent)."""
    problems = []
    active = [row.level for row in file.levels if row.status == LevelStatus.ACTIVE.value]
    if len(file.levels) != file.max_levels:
        problems.append(f"max_levels={file.max_levels} but {len(file.levels)} level rows")
    if len(active) > 1:
        problems.append(f"more than one ACTIVE level: {active}")
    if file.current_state in (FileState.IN_REVIEW.value, FileState.CABINET.value):
        if active != [file.current_level]:
            problems.append(
                f"state {file.current_state} expects level {file.current_level} ACTIVE, found {active}"
            )
        for row in file.levels:
            if row.level < file.current_level and row.status not in (
                LevelStatus.COMPLETED.value, LevelStatus.SKIPPED.value,
            ):
                problems.append(f"level {row.level} below current is {row.status}")
    return problems
