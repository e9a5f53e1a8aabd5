"""Borrowing workflow API endpoints."""

from typing import List, Optional
from uuid import UUID
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from sqlalchemy.orm import Session

from labflow.api.deps import get_db, get_current_user, get_revalidator
from labflow.api.schemas.common import CamelModel
from labflow.core.approval import (
    ApprovalEngine,
    BorrowingService,
    ConsumableRequest,
    DecisionOutcome,
    OverdueDetector,
    ReturnLine,
)
from labflow.core.config import get_settings
from labflow.core.errors import LabflowError
from labflow.core.rbac import AppRole, OPERATOR_ROLES, parse_role, require_role
from labflow.db.models import User, AuditOutcome
from labflow.services.audit import write_security_audit_log
from labflow.services.revalidation import CacheRevalidator

router = APIRouter(prefix="/borrowings", tags=["borrowings"])

BORROWING_VIEWS = ("", "/borrowing")
INVENTORY_VIEWS = ("/tools", "/consumables")


# Schemas
class ConsumableLine(CamelModel):
    consumable_item_id: UUID
    qty: int = Field(1, ge=1)


class BorrowingCreate(CamelModel):
    lab_id: UUID
    requester_user_id: Optional[UUID] = None
    purpose: str = Field(..., min_length=1, max_length=2000)
    tool_asset_ids: List[UUID] = Field(default_factory=list)
    consumables: List[ConsumableLine] = Field(default_factory=list)


class BorrowingCreated(CamelModel):
    ok: bool
    message: str
    transaction_id: UUID
    code: str


class DecisionBody(CamelModel):
    note: Optional[str] = Field(None, max_length=500)
    step: Optional[int] = Field(None, ge=1, le=2)


class HandoverBody(CamelModel):
    due_date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    note: Optional[str] = Field(None, max_length=500)


class ReturnItemBody(CamelModel):
    transaction_item_id: UUID
    return_condition: str = Field(..., pattern="^(good|maintenance|damaged)$")


class ReturnBody(CamelModel):
    items: List[ReturnItemBody] = Field(default_factory=list)
    note: Optional[str] = Field(None, max_length=500)


class TransitionResult(CamelModel):
    ok: bool
    message: str
    status: str


class OverdueAlertResponse(CamelModel):
    transaction_id: UUID
    code: str
    lab_id: UUID
    requester_user_id: UUID
    requester_name: Optional[str]
    due_date: datetime
    days_overdue: int


def _stale(revalidator: CacheRevalidator, *views: str) -> None:
    base = get_settings().dashboard_base_path.rstrip("/")
    revalidator.revalidate(*(base + view for view in views))


def _audit(db: Session, user: User, action: str, outcome: AuditOutcome, target_type: str, target_id, **metadata):
    write_security_audit_log(
        db,
        category="borrowing",
        action=action,
        outcome=outcome,
        user_id=user.id,
        actor_role=user.role,
        target_type=target_type,
        target_id=target_id,
        metadata=metadata or None,
    )


@router.post("", response_model=BorrowingCreated, status_code=201)
async def create_borrowing(
    body: BorrowingCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    revalidator: CacheRevalidator = Depends(get_revalidator),
):
    """Submit a borrowing request."""
    requester_id = body.requester_user_id or current_user.id
    try:
        tx = BorrowingService(db).create_request(
            current_user,
            lab_id=body.lab_id,
            requester_user_id=requester_id,
            purpose=body.purpose,
            tool_asset_ids=body.tool_asset_ids,
            consumables=[ConsumableRequest(c.consumable_item_id, c.qty) for c in body.consumables],
        )
    except LabflowError as e:
        _audit(db, current_user, "create_request", AuditOutcome.FAILURE, "lab", body.lab_id, message=e.message)
        raise

    _audit(
        db, current_user, "create_request", AuditOutcome.SUCCESS, "lab", body.lab_id,
        requesterUserId=str(requester_id),
        toolCount=len(body.tool_asset_ids),
        consumableCount=len(body.consumables),
    )
    _stale(revalidator, *BORROWING_VIEWS)
    return BorrowingCreated(
        ok=True,
        message="Borrowing request created.",
        transaction_id=tx.id,
        code=tx.code,
    )


async def _decide(
    transaction_id: UUID,
    body: DecisionBody,
    decision: DecisionOutcome,
    db: Session,
    current_user: User,
    revalidator: CacheRevalidator,
) -> TransitionResult:
    action = "approve" if decision == DecisionOutcome.APPROVED else "reject"
    try:
        result = ApprovalEngine(db).record_decision(
            transaction_id,
            current_user.id,
            decision,
            step=body.step,
            note=body.note,
        )
    except LabflowError as e:
        _audit(db, current_user, action, AuditOutcome.FAILURE, "borrowing_transaction", transaction_id,
               message=e.message)
        raise

    _audit(
        db, current_user, action, AuditOutcome.SUCCESS, "borrowing_transaction", transaction_id,
        step=result.step, adminFallback=result.admin_fallback,
    )
    _stale(revalidator, *BORROWING_VIEWS)

    if decision == DecisionOutcome.REJECTED:
        message = "Borrowing request rejected."
    else:
        message = f"Step {result.step} approval recorded."
    return TransitionResult(ok=True, message=message, status=result.status.value)


@router.post("/{transaction_id}/approve", response_model=TransitionResult)
@require_role(AppRole.INSTRUCTOR, AppRole.LAB_STAFF, AppRole.ADMIN)
async def approve_borrowing(
    transaction_id: UUID,
    body: DecisionBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    revalidator: CacheRevalidator = Depends(get_revalidator),
):
    """Approve the pending step of a borrowing request."""
    return await _decide(transaction_id, body, DecisionOutcome.APPROVED, db, current_user, revalidator)


@router.post("/{transaction_id}/reject", response_model=TransitionResult)
@require_role(AppRole.INSTRUCTOR, AppRole.LAB_STAFF, AppRole.ADMIN)
async def reject_borrowing(
    transaction_id: UUID,
    body: DecisionBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    revalidator: CacheRevalidator = Depends(get_revalidator),
):
    """Reject a borrowing request at its pending step."""
    return await _decide(transaction_id, body, DecisionOutcome.REJECTED, db, current_user, revalidator)


@router.post("/{transaction_id}/handover", response_model=TransitionResult)
@require_role(*OPERATOR_ROLES)
async def handover_borrowing(
    transaction_id: UUID,
    body: HandoverBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    revalidator: CacheRevalidator = Depends(get_revalidator),
):
    """Hand approved items to the requester and start the borrowing."""
    try:
        tx = BorrowingService(db).hand_over(current_user, transaction_id, body.due_date, note=body.note)
    except LabflowError as e:
        _audit(db, current_user, "handover", AuditOutcome.FAILURE, "borrowing_transaction", transaction_id,
               message=e.message)
        raise

    _audit(db, current_user, "handover", AuditOutcome.SUCCESS, "borrowing_transaction", transaction_id)
    _stale(revalidator, *BORROWING_VIEWS, *INVENTORY_VIEWS)
    return TransitionResult(ok=True, message="Handover processed; borrowing is active.", status=tx.status)


@router.post("/{transaction_id}/returns", response_model=TransitionResult)
@require_role(*OPERATOR_ROLES)
async def return_borrowing(
    transaction_id: UUID,
    body: ReturnBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    revalidator: CacheRevalidator = Depends(get_revalidator),
):
    """Record returned tools."""
    lines = [ReturnLine(i.transaction_item_id, i.return_condition) for i in body.items]
    try:
        tx = BorrowingService(db).record_return(current_user, transaction_id, lines, note=body.note)
    except LabflowError as e:
        _audit(db, current_user, "return", AuditOutcome.FAILURE, "borrowing_transaction", transaction_id,
               message=e.message)
        raise

    _audit(
        db, current_user, "return", AuditOutcome.SUCCESS, "borrowing_transaction", transaction_id,
        itemCount=len(lines), status=tx.status,
    )
    _stale(revalidator, *BORROWING_VIEWS, "/tools")
    return TransitionResult(ok=True, message="Return recorded.", status=tx.status)


@router.get("/overdue", response_model=List[OverdueAlertResponse])
async def list_overdue(
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Overdue borrowings visible to the current user, most overdue first."""
    role = parse_role(current_user.role)
    detector = OverdueDetector(db)

    if role == AppRole.ADMIN:
        alerts = detector.list_overdue(limit=limit)
    elif role in (AppRole.LAB_STAFF, AppRole.INSTRUCTOR):
        lab_ids = BorrowingService(db).assigned_lab_ids(current_user.id)
        alerts = detector.list_overdue(lab_ids=lab_ids, limit=limit)
    elif role == AppRole.REQUESTER:
        alerts = detector.list_overdue(requester_user_id=current_user.id, limit=limit)
    else:
        alerts = []

    return [OverdueAlertResponse(**alert._asdict()) for alert in alerts]
