"""Lab and lab assignment models.

A user assignment scopes instructors and lab staff to the labs they serve.
Approval routing and lab-staff notifications are both derived from it.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Uuid
from sqlalchemy.orm import relationship

from labflow.db.base import Base


class Lab(Base):
    __tablename__ = "labs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String(50), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    assignments = relationship("UserLabAssignment", back_populates="lab", cascade="all, delete-orphan")
    approval_matrix = relationship("ApprovalMatrix", back_populates="lab", uselist=False)

    def __repr__(self) -> str:
        return f"<Lab {self.code}>"


class UserLabAssignment(Base):
    __tablename__ = "user_lab_assignments"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    lab_id = Column(Uuid(as_uuid=True), ForeignKey("labs.id", ondelete="CASCADE"), primary_key=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="lab_assignments")
    lab = relationship("Lab", back_populates="assignments")

    def __repr__(self) -> str:
        return f"<UserLabAssignment lab={self.lab_id} user={self.user_id}>"
