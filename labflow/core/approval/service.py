"""Borrowing service: request creation, handover and returns.

Provides the high-level flows around the state machine. Each flow checks
every precondition first, then writes in a single database transaction.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional, Iterable, NamedTuple
from uuid import UUID
import uuid

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from labflow.core.config import Settings, get_settings
from labflow.core.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransition,
    LabflowError,
    MatrixNotFound,
    PersistenceError,
    TransactionNotFound,
    ValidationError,
)
from labflow.core.rbac.roles import AppRole, parse_role, can_access_lab
from labflow.db.models import (
    ApprovalDecision,
    BorrowingHandover,
    BorrowingReturn,
    BorrowingReturnItem,
    BorrowingTransaction,
    BorrowingTransactionItem,
    ConsumableItem,
    ConsumableStockMovement,
    Lab,
    ToolAsset,
    User,
    UserLabAssignment,
)

from .machine import BorrowingStateMachine
from .matrix import ApprovalMatrixRegistry
from .states import BorrowingStatus, BorrowingTransition, can_transition

logger = logging.getLogger(__name__)

ITEM_TOOL = "tool_asset"
ITEM_CONSUMABLE = "consumable"

# Return condition -> resulting tool asset status
RETURN_ASSET_STATUS = {
    "good": "available",
    "maintenance": "maintenance",
    "damaged": "damaged",
}

PURPOSE_MIN_LENGTH = 3
NOTE_MAX_LENGTH = 500
CODE_ATTEMPTS = 3
HANDOVER_ISSUE_NOTE = "Consumables issued at borrowing handover"


class ConsumableRequest(NamedTuple):
    consumable_item_id: UUID
    qty: int


class ReturnLine(NamedTuple):
    transaction_item_id: UUID
    return_condition: str


def generate_borrowing_code(prefix: str = "BRW", now: Optional[datetime] = None) -> str:
    """Human-readable code such as BRW-20250301-4821."""
    now = now or datetime.utcnow()
    return f"{prefix}-{now:%Y%m%d}-{secrets.randbelow(9000) + 1000}"


def parse_due_date(value: str, utc_offset_hours: int = 7) -> datetime:
    """
    Convert a YYYY-MM-DD date into the end of that day in lab local time.

    Returns a naive UTC datetime.
    """
    try:
        day = datetime.strptime(value, "%Y-%m-%d")
    except (TypeError, ValueError):
        raise ValidationError("Due date must be a date in YYYY-MM-DD format.")
    local_end = day.replace(hour=23, minute=59, second=59)
    return local_end - timedelta(hours=utc_offset_hours)


def _clean_note(note: Optional[str]) -> Optional[str]:
    note = (note or "").strip() or None
    if note and len(note) > NOTE_MAX_LENGTH:
        raise ValidationError(f"Note must be at most {NOTE_MAX_LENGTH} characters.")
    return note


class BorrowingService:
    """
    High-level service for the borrowing lifecycle outside approvals.

    Handles:
    - Creating borrowing requests routed through the lab's approval matrix
    - Handing approved requests over (assets out, consumables issued)
    - Recording tool returns and closing the transaction
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def assigned_lab_ids(self, user_id: UUID) -> list[UUID]:
        return [
            row[0] for row in self.db.query(UserLabAssignment.lab_id).filter(
                UserLabAssignment.user_id == user_id
            ).all()
        ]

    def require_lab_access(self, actor: User, lab_id: UUID) -> None:
        """Admins reach every lab; other operators only their assigned labs."""
        role = parse_role(actor.role)
        assigned = self.assigned_lab_ids(actor.id) if role != AppRole.ADMIN else None
        if not can_access_lab(role, lab_id, assigned):
            raise AuthorizationError("You do not have access to this lab.")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_request(
        self,
        actor: User,
        *,
        lab_id: UUID,
        requester_user_id: UUID,
        purpose: str,
        tool_asset_ids: Iterable[UUID] = (),
        consumables: Iterable[ConsumableRequest] = (),
    ) -> BorrowingTransaction:
        """
        Create a borrowing request in status submitted.

        Raises:
            ValidationError: Bad items, purpose, requester or lab
            AuthorizationError: Actor may not create for this lab/requester
            MatrixNotFound: Lab has no active complete approval matrix
            PersistenceError: Store failure
        """
        role = parse_role(actor.role)
        tool_asset_ids = list(dict.fromkeys(tool_asset_ids))
        consumables = [ConsumableRequest(*c) for c in consumables]
        purpose = (purpose or "").strip()

        if len(purpose) < PURPOSE_MIN_LENGTH:
            raise ValidationError(f"Purpose must be at least {PURPOSE_MIN_LENGTH} characters.")
        if not tool_asset_ids and not consumables:
            raise ValidationError("Select at least one item (tool or consumable).")
        if any(c.qty < 1 for c in consumables):
            raise ValidationError("Consumable quantity must be at least 1.")
        if len({c.consumable_item_id for c in consumables}) != len(consumables):
            raise ValidationError("Each consumable may only be requested once.")

        if role == AppRole.REQUESTER and requester_user_id != actor.id:
            raise AuthorizationError("Requesters can only create requests for themselves.")
        if role not in (AppRole.REQUESTER, AppRole.LAB_STAFF, AppRole.ADMIN):
            raise AuthorizationError("Your role cannot create borrowing requests.")

        lab = self.db.query(Lab).filter(and_(Lab.id == lab_id, Lab.is_active.is_(True))).first()
        if not lab:
            raise ValidationError("Lab not found or inactive.")

        requester = self.db.query(User).filter(
            and_(User.id == requester_user_id, User.is_active.is_(True))
        ).first()
        if not requester:
            raise ValidationError("Requester not found.")
        if parse_role(requester.role) != AppRole.REQUESTER:
            raise ValidationError("Borrowings can only be requested for requester accounts.")

        if role == AppRole.LAB_STAFF:
            self.require_lab_access(actor, lab_id)

        matrix = ApprovalMatrixRegistry(self.db).get_active_matrix(lab_id)
        if matrix is None:
            raise MatrixNotFound("The lab's approval matrix is inactive or incomplete. Contact an administrator.")
        if requester.id in (matrix.step1_approver_user_id, matrix.step2_approver_user_id):
            raise ValidationError("The requester cannot be an approver of their own borrowing.")

        if tool_asset_ids:
            tools = self.db.query(ToolAsset).filter(ToolAsset.id.in_(tool_asset_ids)).all()
            if len(tools) != len(tool_asset_ids):
                raise ValidationError("Some tools were not found.")
            if any(t.lab_id != lab_id for t in tools):
                raise ValidationError("All tools must belong to the transaction's lab.")
            if any(t.status != "available" for t in tools):
                raise ConflictError("Some tools are not available.")

        if consumables:
            ids = [c.consumable_item_id for c in consumables]
            items = self.db.query(ConsumableItem).filter(ConsumableItem.id.in_(ids)).all()
            if len(items) != len(ids):
                raise ValidationError("Some consumables were not found.")
            if any(i.lab_id != lab_id for i in items):
                raise ValidationError("All consumables must belong to the transaction's lab.")

        for attempt in range(1, CODE_ATTEMPTS + 1):
            try:
                tx = self._insert_request(
                    actor, lab_id, requester.id, matrix.id, purpose, tool_asset_ids, consumables
                )
                self.db.commit()
                break
            except IntegrityError as exc:
                self.db.rollback()
                if "code" in str(exc.orig) and attempt < CODE_ATTEMPTS:
                    logger.warning("Borrowing code collision, retrying (attempt %d)", attempt)
                    continue
                logger.exception("Failed to create borrowing request for lab %s", lab_id)
                raise PersistenceError("Failed to save the borrowing request.") from exc
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Failed to create borrowing request for lab %s", lab_id)
                raise PersistenceError("Failed to save the borrowing request.") from exc

        logger.info("Borrowing %s created for lab %s by %s", tx.code, lab_id, actor.id)
        return tx

    def _insert_request(self, actor, lab_id, requester_id, matrix_id, purpose, tool_asset_ids, consumables):
        tx = BorrowingTransaction(
            id=uuid.uuid4(),
            code=generate_borrowing_code(self.settings.borrowing_code_prefix),
            lab_id=lab_id,
            requester_user_id=requester_id,
            created_by_user_id=actor.id,
            approval_matrix_id=matrix_id,
            purpose=purpose,
            status=BorrowingStatus.SUBMITTED.value,
        )
        self.db.add(tx)
        for tool_id in tool_asset_ids:
            self.db.add(BorrowingTransactionItem(
                transaction_id=tx.id, item_type=ITEM_TOOL, tool_asset_id=tool_id, qty_requested=1,
            ))
        for line in consumables:
            self.db.add(BorrowingTransactionItem(
                transaction_id=tx.id,
                item_type=ITEM_CONSUMABLE,
                consumable_item_id=line.consumable_item_id,
                qty_requested=line.qty,
            ))
        self.db.flush()
        return tx

    # ------------------------------------------------------------------
    # Handover
    # ------------------------------------------------------------------

    def _lock_transaction(self, transaction_id: UUID) -> BorrowingTransaction:
        tx = self.db.query(BorrowingTransaction).filter(
            BorrowingTransaction.id == transaction_id
        ).with_for_update().first()
        if not tx:
            raise TransactionNotFound()
        return tx

    def hand_over(
        self,
        actor: User,
        transaction_id: UUID,
        due_date: str,
        *,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BorrowingTransaction:
        """
        Hand approved assets to the requester.

        Tools become borrowed, consumable stock is issued, and the
        transaction becomes active with its due date.
        """
        now = now or datetime.utcnow()
        note = _clean_note(note)
        due = parse_due_date(due_date, self.settings.due_date_utc_offset_hours)
        if due <= now:
            raise ValidationError("Due date must be later than the current time.")

        try:
            tx = self._hand_over(actor, transaction_id, due, note, now)
            self.db.commit()
        except LabflowError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Handover failed for transaction %s", transaction_id)
            raise PersistenceError("Handover could not be processed.") from exc

        logger.info("Borrowing %s handed over by %s, due %s", tx.code, actor.id, due.isoformat())
        return tx

    def _hand_over(self, actor, transaction_id, due, note, now) -> BorrowingTransaction:
        tx = self._lock_transaction(transaction_id)
        if not can_transition(BorrowingStatus(tx.status), BorrowingTransition.HAND_OVER):
            raise InvalidTransition("Transaction is not ready for handover.", tx.status, BorrowingTransition.HAND_OVER)
        self.require_lab_access(actor, tx.lab_id)

        approvals = self.db.query(ApprovalDecision).filter(
            and_(
                ApprovalDecision.transaction_id == tx.id,
                ApprovalDecision.decision == "approved",
            )
        ).count()
        if approvals < 2:
            raise InvalidTransition("Approval is not complete.", tx.status, BorrowingTransition.HAND_OVER)

        machine = BorrowingStateMachine(tx.id, tx.status, actor_role=actor.role)
        new_status = machine.transition(BorrowingTransition.HAND_OVER, user_id=actor.id)

        tool_ids = [i.tool_asset_id for i in tx.items if i.item_type == ITEM_TOOL and i.tool_asset_id]
        consumable_lines = [i for i in tx.items if i.item_type == ITEM_CONSUMABLE and i.consumable_item_id]

        tools = []
        if tool_ids:
            tools = self.db.query(ToolAsset).filter(ToolAsset.id.in_(tool_ids)).with_for_update().all()
            if len(tools) != len(tool_ids):
                raise ConflictError("Some tools were not found.")
            if any(t.status != "available" for t in tools):
                raise ConflictError("Some tools are no longer available. Handover cancelled.")

        stock = {}
        if consumable_lines:
            ids = [line.consumable_item_id for line in consumable_lines]
            stock = {
                c.id: c for c in self.db.query(ConsumableItem).filter(
                    ConsumableItem.id.in_(ids)
                ).with_for_update().all()
            }
            for line in consumable_lines:
                item = stock.get(line.consumable_item_id)
                if item is None or item.stock_qty < line.qty_requested:
                    raise ConflictError("Not enough consumable stock for handover.")

        self.db.add(BorrowingHandover(
            transaction_id=tx.id,
            handed_over_by_user_id=actor.id,
            handed_over_at=now,
            due_date=due,
            note=note,
        ))

        for tool in tools:
            tool.status = "borrowed"
            tool.updated_at = now

        for line in consumable_lines:
            item = stock[line.consumable_item_id]
            before = item.stock_qty
            item.stock_qty = before - line.qty_requested
            item.updated_at = now
            self.db.add(ConsumableStockMovement(
                consumable_item_id=item.id,
                movement_type="borrowing_handover_issue",
                qty_delta=-line.qty_requested,
                qty_before=before,
                qty_after=item.stock_qty,
                note=note or HANDOVER_ISSUE_NOTE,
                reference_type="borrowing_transaction",
                reference_id=tx.id,
                actor_user_id=actor.id,
            ))

        tx.status = new_status.value
        tx.handed_over_at = now
        tx.due_date = due
        tx.updated_at = now
        self.db.flush()
        return tx

    # ------------------------------------------------------------------
    # Returns
    # ------------------------------------------------------------------

    def record_return(
        self,
        actor: User,
        transaction_id: UUID,
        lines: Iterable[ReturnLine],
        *,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BorrowingTransaction:
        """
        Record returned tools and advance to partially_returned or returned.

        Only tool lines take part in return accounting. An empty return is
        accepted only when no tool line is outstanding, and closes the
        transaction.
        """
        now = now or datetime.utcnow()
        note = _clean_note(note)

        # Keep the first condition given for each line
        by_item = {}
        for line in (ReturnLine(*raw) for raw in lines):
            if line.return_condition not in RETURN_ASSET_STATUS:
                raise ValidationError(f"Unknown return condition: {line.return_condition}.")
            by_item.setdefault(line.transaction_item_id, line.return_condition)

        try:
            tx = self._record_return(actor, transaction_id, by_item, note, now)
            self.db.commit()
        except LabflowError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Return failed for transaction %s", transaction_id)
            raise PersistenceError("Return could not be processed.") from exc

        logger.info("Borrowing %s return recorded by %s -> %s", tx.code, actor.id, tx.status)
        return tx

    def _record_return(self, actor, transaction_id, by_item, note, now) -> BorrowingTransaction:
        tx = self._lock_transaction(transaction_id)
        if tx.status not in (BorrowingStatus.ACTIVE.value, BorrowingStatus.PARTIALLY_RETURNED.value):
            raise InvalidTransition(
                "Transaction is not in a state that accepts returns.", tx.status, BorrowingTransition.RETURN_ALL
            )
        self.require_lab_access(actor, tx.lab_id)

        tool_lines = {i.id: i for i in tx.items if i.item_type == ITEM_TOOL and i.tool_asset_id}
        returned_ids = set()
        if tool_lines:
            returned_ids = {
                row[0] for row in self.db.query(BorrowingReturnItem.transaction_item_id).filter(
                    BorrowingReturnItem.transaction_item_id.in_(list(tool_lines))
                ).all()
            }
        outstanding = set(tool_lines) - returned_ids

        if not by_item and outstanding:
            raise ValidationError("Select at least one tool to return.")

        items = {i.id: i for i in tx.items}
        for item_id in by_item:
            item = items.get(item_id)
            if item is None:
                raise ValidationError("Some return items do not belong to this transaction.")
            if item_id not in tool_lines:
                raise ValidationError("Only tool items can be returned.")
            if item_id in returned_ids:
                raise ConflictError("Some tools have already been returned.")

        tools = {}
        if by_item:
            asset_ids = [tool_lines[i].tool_asset_id for i in by_item]
            tools = {
                t.id: t for t in self.db.query(ToolAsset).filter(
                    ToolAsset.id.in_(asset_ids)
                ).with_for_update().all()
            }
            if len(tools) != len(asset_ids):
                raise ConflictError("Some tool assets were not found.")
            if any(t.status != "borrowed" for t in tools.values()):
                raise ConflictError("Some tool assets are not currently borrowed.")

        fully_returned = not (outstanding - set(by_item))
        transition = BorrowingTransition.RETURN_ALL if fully_returned else BorrowingTransition.RETURN_PARTIAL
        machine = BorrowingStateMachine(tx.id, tx.status, actor_role=actor.role)
        new_status = machine.transition(transition, user_id=actor.id)

        header = BorrowingReturn(
            id=uuid.uuid4(),
            transaction_id=tx.id,
            received_by_user_id=actor.id,
            returned_at=now,
            note=note,
        )
        self.db.add(header)

        for item_id, condition in by_item.items():
            line = tool_lines[item_id]
            self.db.add(BorrowingReturnItem(
                return_id=header.id,
                transaction_item_id=item_id,
                tool_asset_id=line.tool_asset_id,
                return_condition=condition,
                qty_returned=line.qty_requested,
                note=note,
            ))
            tool = tools[line.tool_asset_id]
            tool.status = RETURN_ASSET_STATUS[condition]
            tool.condition = condition
            tool.updated_at = now

        tx.status = new_status.value
        tx.updated_at = now
        self.db.flush()
        return tx
