"""Notification summary API endpoints."""

from typing import List
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from labflow.api.deps import get_db, get_current_user
from labflow.api.schemas.common import CamelModel
from labflow.core.config import get_settings
from labflow.db.models import User
from labflow.services.notifications import NotificationAggregator

router = APIRouter(prefix="/notifications", tags=["notifications"])


# Schemas
class NotificationItemResponse(CamelModel):
    id: str
    title: str
    description: str
    count: int
    href: str
    tone: str


class NotificationSummaryResponse(CamelModel):
    total_unread: int
    items: List[NotificationItemResponse]
    generated_at: datetime


class MarkReadResponse(CamelModel):
    ok: bool
    read_at: datetime


def _aggregator(db: Session) -> NotificationAggregator:
    return NotificationAggregator(db, base_path=get_settings().dashboard_base_path)


@router.get("/summary", response_model=NotificationSummaryResponse)
async def get_summary(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Outstanding borrowing work for the current user."""
    summary = _aggregator(db).summarize(current_user.role, current_user.id)
    return NotificationSummaryResponse(
        total_unread=summary.total_unread,
        items=[NotificationItemResponse(**item._asdict()) for item in summary.items],
        generated_at=summary.generated_at,
    )


@router.post("/mark-read", response_model=MarkReadResponse)
async def mark_read(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Acknowledge the current summary."""
    read_at = _aggregator(db).mark_read(current_user.id)
    return MarkReadResponse(ok=True, read_at=read_at)
