"""Approval matrix registry.

One matrix per lab routes step 1 to an instructor and step 2 to a lab
staff member, both assigned to the lab.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID
import uuid

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from labflow.core.errors import (
    ApproverNotAssigned,
    InvalidApprover,
    MatrixCannotActivate,
    PersistenceError,
    ValidationError,
)
from labflow.core.rbac.roles import AppRole
from labflow.db.models import ApprovalMatrix, User, UserLabAssignment

logger = logging.getLogger(__name__)

MATRIX_VIEWS = ("/approval-matrix", "/borrowing")


class ApprovalMatrixRegistry:
    """Reads and writes per-lab approval matrices."""

    def __init__(self, db: Session, revalidator=None, dashboard_base_path: str = "/dashboard"):
        self.db = db
        self.revalidator = revalidator
        self.dashboard_base_path = dashboard_base_path.rstrip("/")

    def get_matrix(self, matrix_id: UUID) -> Optional[ApprovalMatrix]:
        return self.db.query(ApprovalMatrix).filter(ApprovalMatrix.id == matrix_id).first()

    def get_lab_matrix(self, lab_id: UUID) -> Optional[ApprovalMatrix]:
        return self.db.query(ApprovalMatrix).filter(ApprovalMatrix.lab_id == lab_id).first()

    def get_active_matrix(self, lab_id: UUID) -> Optional[ApprovalMatrix]:
        """Matrix usable for new requests: active with both approvers set."""
        matrix = self.get_lab_matrix(lab_id)
        if matrix is None or not matrix.is_active or not matrix.is_complete:
            return None
        return matrix

    def count_assigned(self, lab_id: UUID, role: AppRole) -> int:
        return self.db.query(UserLabAssignment).join(
            User, User.id == UserLabAssignment.user_id
        ).filter(
            and_(
                UserLabAssignment.lab_id == lab_id,
                User.role == role.value,
            )
        ).count()

    def save_matrix(
        self,
        lab_id: UUID,
        is_active: bool,
        step1_approver_user_id: Optional[UUID],
        step2_approver_user_id: Optional[UUID],
    ) -> ApprovalMatrix:
        """
        Validate and upsert the matrix for a lab.

        Raises:
            ValidationError: An approver id is missing
            InvalidApprover: Approver not found, inactive or wrong role
            ApproverNotAssigned: Approver not assigned to the lab
            MatrixCannotActivate: Activation without instructor or lab staff
            PersistenceError: Store failure
        """
        if not step1_approver_user_id or not step2_approver_user_id:
            raise ValidationError("Both step 1 and step 2 approvers are required.")

        self._require_approver(step1_approver_user_id, AppRole.INSTRUCTOR)
        self._require_approver(step2_approver_user_id, AppRole.LAB_STAFF)

        # Checked before approver assignment so an unstaffed lab reports why it cannot activate
        if is_active:
            if self.count_assigned(lab_id, AppRole.INSTRUCTOR) == 0:
                raise MatrixCannotActivate("No instructor is assigned to this lab. Matrix cannot be activated.")
            if self.count_assigned(lab_id, AppRole.LAB_STAFF) == 0:
                raise MatrixCannotActivate("No lab staff is assigned to this lab. Matrix cannot be activated.")

        assigned = {
            row[0] for row in self.db.query(UserLabAssignment.user_id).filter(
                UserLabAssignment.lab_id == lab_id
            ).all()
        }
        if step1_approver_user_id not in assigned or step2_approver_user_id not in assigned:
            raise ApproverNotAssigned()

        try:
            matrix = self._upsert(lab_id, is_active, step1_approver_user_id, step2_approver_user_id)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to save approval matrix for lab %s", lab_id)
            raise PersistenceError("Failed to save the approval matrix.") from exc

        logger.info("Approval matrix saved for lab %s (active=%s)", lab_id, is_active)

        if self.revalidator is not None:
            self.revalidator.revalidate(*(self.dashboard_base_path + view for view in MATRIX_VIEWS))

        return matrix

    def _require_approver(self, user_id: UUID, role: AppRole) -> User:
        user = self.db.query(User).filter(
            and_(
                User.id == user_id,
                User.role == role.value,
                User.is_active.is_(True),
            )
        ).first()
        if not user:
            raise InvalidApprover(f"Approver {user_id} is not an active {role.value}.")
        return user

    def _upsert(self, lab_id, is_active, step1_id, step2_id) -> ApprovalMatrix:
        matrix = self.get_lab_matrix(lab_id)
        if matrix is None:
            matrix = ApprovalMatrix(
                id=uuid.uuid4(),
                lab_id=lab_id,
                is_active=is_active,
                step1_approver_user_id=step1_id,
                step2_approver_user_id=step2_id,
            )
            self.db.add(matrix)
            try:
                self.db.flush()
                return matrix
            except IntegrityError:
                # Another writer created it first; nothing else is pending, so update theirs
                self.db.rollback()
                logger.info("Concurrent matrix insert for lab %s, updating instead", lab_id)
                matrix = self.get_lab_matrix(lab_id)
                if matrix is None:
                    raise

        matrix.is_active = is_active
        matrix.step1_approver_user_id = step1_id
        matrix.step2_approver_user_id = step2_id
        matrix.updated_at = datetime.utcnow()
        self.db.flush()
        return matrix
