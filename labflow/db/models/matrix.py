import uuid
from datetime import datetime
from sqlalchemy import Column, DateTime, Boolean, ForeignKey, Uuid
from sqlalchemy.orm import relationship

from labflow.db.base import Base


class ApprovalMatrix(Base):
    """
    Per-lab approver routing for borrowing requests.

    Step 1 is decided by an instructor, step 2 by lab staff. At most one
    matrix exists per lab (unique lab_id).
    """
    __tablename__ = "borrowing_approval_matrices"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lab_id = Column(Uuid(as_uuid=True), ForeignKey("labs.id", ondelete="CASCADE"), nullable=False, unique=True)
    is_active = Column(Boolean, default=False, nullable=False)

    step1_approver_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    step2_approver_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    lab = relationship("Lab", back_populates="approval_matrix")
    step1_approver = relationship("User", foreign_keys=[step1_approver_user_id])
    step2_approver = relationship("User", foreign_keys=[step2_approver_user_id])

    def approver_for_step(self, step: int):
        """Designated approver id for step 1 or 2."""
        if step == 1:
            return self.step1_approver_user_id
        if step == 2:
            return self.step2_approver_user_id
        return None

    @property
    def is_complete(self) -> bool:
        return bool(self.step1_approver_user_id and self.step2_approver_user_id)

    def __repr__(self) -> str:
        return f"<ApprovalMatrix lab={self.lab_id} active={self.is_active}>"
