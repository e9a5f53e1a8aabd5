"""Inventory models touched by the borrowing workflow.

Tool assets change status on handover and return; consumables are issued
from stock at handover. Generic inventory CRUD lives outside this service.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from labflow.db.base import Base


class ToolAsset(Base):
    __tablename__ = "tool_assets"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lab_id = Column(Uuid(as_uuid=True), ForeignKey("labs.id", ondelete="RESTRICT"), nullable=False, index=True)
    asset_code = Column(String(100), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    status = Column(String(20), nullable=False, default="available", index=True)
    condition = Column(String(20), nullable=False, default="good")
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lab = relationship("Lab")

    def __repr__(self) -> str:
        return f"<ToolAsset {self.asset_code} [{self.status}]>"


class ConsumableItem(Base):
    __tablename__ = "consumable_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lab_id = Column(Uuid(as_uuid=True), ForeignKey("labs.id", ondelete="RESTRICT"), nullable=False, index=True)
    code = Column(String(50), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    unit = Column(String(50), nullable=False, default="pcs")
    stock_qty = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lab = relationship("Lab")

    def __repr__(self) -> str:
        return f"<ConsumableItem {self.code} stock={self.stock_qty}>"


class ConsumableStockMovement(Base):
    """Append-only ledger of consumable stock changes."""
    __tablename__ = "consumable_stock_movements"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    consumable_item_id = Column(
        Uuid(as_uuid=True), ForeignKey("consumable_items.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    movement_type = Column(String(50), nullable=False)
    qty_delta = Column(Integer, nullable=False)
    qty_before = Column(Integer, nullable=False)
    qty_after = Column(Integer, nullable=False)
    note = Column(Text, nullable=True)
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(Uuid(as_uuid=True), nullable=True)
    actor_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
