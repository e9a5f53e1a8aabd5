"""Borrowing workflow database models.

Stores borrowing transactions, their requested lines, approval decisions,
the handover record and return records.
"""

import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, DateTime, ForeignKey, Text, Integer, SmallInteger, Uuid, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from labflow.db.base import Base


class BorrowingTransaction(Base):
    """
    A borrowing request and its lifecycle.

    `status` only changes through the borrowing state machine; overdue is
    never stored and is derived from `due_date` at read time.
    """
    __tablename__ = "borrowing_transactions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String(50), nullable=False, unique=True)
    lab_id = Column(Uuid(as_uuid=True), ForeignKey("labs.id", ondelete="RESTRICT"), nullable=False, index=True)
    requester_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    created_by_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    approval_matrix_id = Column(
        Uuid(as_uuid=True), ForeignKey("borrowing_approval_matrices.id", ondelete="SET NULL"), nullable=True
    )

    purpose = Column(Text, nullable=False)

    # Workflow state
    status = Column(String(50), nullable=False, default="submitted", index=True)
    requested_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    approved_at = Column(DateTime, nullable=True)
    handed_over_at = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=True, index=True)
    rejection_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    lab = relationship("Lab")
    requester = relationship("User", foreign_keys=[requester_user_id])
    created_by = relationship("User", foreign_keys=[created_by_user_id])
    approval_matrix = relationship("ApprovalMatrix")
    items = relationship("BorrowingTransactionItem", back_populates="transaction", cascade="all, delete-orphan")
    decisions = relationship(
        "ApprovalDecision", back_populates="transaction", order_by="ApprovalDecision.step", cascade="all, delete-orphan"
    )
    handover = relationship("BorrowingHandover", back_populates="transaction", uselist=False)
    returns = relationship("BorrowingReturn", back_populates="transaction", order_by="BorrowingReturn.returned_at")

    def __repr__(self) -> str:
        return f"<BorrowingTransaction {self.code} [{self.status}]>"


class BorrowingTransactionItem(Base):
    __tablename__ = "borrowing_transaction_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(
        Uuid(as_uuid=True), ForeignKey("borrowing_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_type = Column(String(20), nullable=False)  # tool_asset, consumable
    tool_asset_id = Column(Uuid(as_uuid=True), ForeignKey("tool_assets.id", ondelete="RESTRICT"), nullable=True, index=True)
    consumable_item_id = Column(
        Uuid(as_uuid=True), ForeignKey("consumable_items.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    qty_requested = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    transaction = relationship("BorrowingTransaction", back_populates="items")
    tool_asset = relationship("ToolAsset")
    consumable_item = relationship("ConsumableItem")


class ApprovalDecision(Base):
    """
    One approval decision per approver per transaction.

    The (transaction_id, step) constraint makes concurrent decisions on the
    same step collide in the database; only one of them can commit.
    """
    __tablename__ = "borrowing_approvals"
    __table_args__ = (
        UniqueConstraint("transaction_id", "approver_user_id", name="uq_borrowing_approvals_tx_approver"),
        UniqueConstraint("transaction_id", "step", name="uq_borrowing_approvals_tx_step"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(
        Uuid(as_uuid=True), ForeignKey("borrowing_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    approver_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    decision = Column(String(20), nullable=False)  # approved, rejected
    step = Column(SmallInteger, nullable=False)
    note = Column(Text, nullable=True)
    decided_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    transaction = relationship("BorrowingTransaction", back_populates="decisions")
    approver = relationship("User")

    def __repr__(self) -> str:
        return f"<ApprovalDecision step={self.step} {self.decision}>"


class BorrowingHandover(Base):
    __tablename__ = "borrowing_handovers"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(
        Uuid(as_uuid=True), ForeignKey("borrowing_transactions.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    handed_over_by_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    handed_over_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    due_date = Column(DateTime, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    transaction = relationship("BorrowingTransaction", back_populates="handover")
    handed_over_by = relationship("User")


class BorrowingReturn(Base):
    __tablename__ = "borrowing_returns"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(
        Uuid(as_uuid=True), ForeignKey("borrowing_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    received_by_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    returned_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    transaction = relationship("BorrowingTransaction", back_populates="returns")
    items = relationship("BorrowingReturnItem", back_populates="borrowing_return", cascade="all, delete-orphan")


class BorrowingReturnItem(Base):
    __tablename__ = "borrowing_return_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    return_id = Column(Uuid(as_uuid=True), ForeignKey("borrowing_returns.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_item_id = Column(
        Uuid(as_uuid=True), ForeignKey("borrowing_transaction_items.id", ondelete="RESTRICT"), nullable=False, unique=True
    )
    tool_asset_id = Column(Uuid(as_uuid=True), ForeignKey("tool_assets.id", ondelete="RESTRICT"), nullable=False)
    return_condition = Column(String(20), nullable=False)  # good, maintenance, damaged
    qty_returned = Column(Integer, nullable=False, default=1)
    note = Column(Text, nullable=True)

    # Relationships
    borrowing_return = relationship("BorrowingReturn", back_populates="items")
    transaction_item = relationship("BorrowingTransactionItem")
