"""Approval matrix API endpoints."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from labflow.api.deps import get_db, get_current_user, get_revalidator
from labflow.api.schemas.common import ActionResult, CamelModel
from labflow.core.approval import ApprovalMatrixRegistry
from labflow.core.config import get_settings
from labflow.core.errors import LabflowError
from labflow.core.rbac import AppRole, require_role
from labflow.db.models import User, AuditOutcome
from labflow.services.audit import write_security_audit_log
from labflow.services.revalidation import CacheRevalidator

router = APIRouter(prefix="/approval-matrix", tags=["approval-matrix"])


class MatrixSave(CamelModel):
    is_active: bool
    step1_approver_user_id: Optional[UUID] = None
    step2_approver_user_id: Optional[UUID] = None


class MatrixResponse(CamelModel):
    lab_id: UUID
    is_active: bool
    step1_approver_user_id: Optional[UUID]
    step2_approver_user_id: Optional[UUID]


@router.get("/{lab_id}", response_model=Optional[MatrixResponse])
@require_role(AppRole.ADMIN)
async def get_matrix(
    lab_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Current matrix for a lab, or null."""
    matrix = ApprovalMatrixRegistry(db).get_lab_matrix(lab_id)
    if matrix is None:
        return None
    return MatrixResponse(
        lab_id=matrix.lab_id,
        is_active=matrix.is_active,
        step1_approver_user_id=matrix.step1_approver_user_id,
        step2_approver_user_id=matrix.step2_approver_user_id,
    )


@router.put("/{lab_id}", response_model=ActionResult)
@require_role(AppRole.ADMIN)
async def save_matrix(
    lab_id: UUID,
    body: MatrixSave,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    revalidator: CacheRevalidator = Depends(get_revalidator),
):
    """Create or update the approval matrix of a lab."""
    registry = ApprovalMatrixRegistry(
        db, revalidator=revalidator, dashboard_base_path=get_settings().dashboard_base_path
    )
    audit = dict(
        category="borrowing_matrix",
        action="save_matrix",
        user_id=current_user.id,
        actor_role=current_user.role,
        target_type="lab",
        target_id=lab_id,
    )
    try:
        registry.save_matrix(
            lab_id,
            body.is_active,
            body.step1_approver_user_id,
            body.step2_approver_user_id,
        )
    except LabflowError as e:
        write_security_audit_log(db, outcome=AuditOutcome.FAILURE, metadata={"message": e.message}, **audit)
        raise

    write_security_audit_log(
        db,
        outcome=AuditOutcome.SUCCESS,
        metadata={"isActive": body.is_active, "flow": "instructor->lab-staff"},
        **audit,
    )
    return ActionResult(ok=True, message="Approval matrix saved.")
