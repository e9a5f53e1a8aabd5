from datetime import datetime
from sqlalchemy import Column, DateTime, ForeignKey, Uuid

from labflow.db.base import Base


class UserNotificationState(Base):
    """
    Per-user notification watermark.

    Only records when the user last acknowledged the borrowing summary.
    Outstanding items are always recomputed from live data.
    """
    __tablename__ = "user_notification_states"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    borrowing_last_read_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<UserNotificationState user={self.user_id} read_at={self.borrowing_last_read_at}>"
