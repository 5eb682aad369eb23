"""
Trade Activity Repository

Append-mostly log of every mutating trade call. The partial unique index on
(user_id, action, idempotency_key) over PENDING/SUCCEEDED rows makes claim() the
de-duplication point for retried placements.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from utils.db.db_client import session_scope
from utils.db.models import TradeActivityLog

logger = logging.getLogger(__name__)

PENDING = "PENDING"
SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"
DEDUPLICATED = "DEDUPLICATED"


@dataclass
class ActivityClaim:
    """Result of claiming an idempotency key."""
    activity_id: Optional[int]
    existing: Optional[Dict[str, Any]] = None

    @property
    def claimed(self) -> bool:
        return self.existing is None


class TradeActivityRepository:
    """Repository for the trade activity log."""

    def claim(
        self,
        user_id: str,
        action: str,
        idempotency_key: str,
        account_id: Optional[str] = None,
        order_id: Optional[str] = None,
        trade_id: Optional[str] = None,
        request_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> ActivityClaim:
        """
        Claim an idempotency key by inserting a PENDING row.

        Returns:
            ActivityClaim with activity_id set when the key was claimed, or with
            `existing` holding the live (PENDING or SUCCEEDED) row that owns it.
        """
        existing = self._find_live(user_id, action, idempotency_key)
        if existing is not None:
            return ActivityClaim(activity_id=None, existing=existing)

        try:
            with session_scope() as session:
                row = TradeActivityLog(
                    user_id=user_id,
                    action=action,
                    account_id=account_id,
                    order_id=order_id,
                    trade_id=trade_id,
                    idempotency_key=idempotency_key,
                    outcome=PENDING,
                    request_id=request_id,
                    detail=detail,
                )
                session.add(row)
                session.flush()
                return ActivityClaim(activity_id=row.id)
        except IntegrityError:
            # Lost the race to a concurrent claim of the same key.
            logger.warning(f"⚠️ Concurrent claim detected for {action} key {idempotency_key} (user {user_id})")
            existing = self._find_live(user_id, action, idempotency_key)
            if existing is None:
                raise
            return ActivityClaim(activity_id=None, existing=existing)

    def complete(
        self,
        activity_id: int,
        outcome: str,
        order_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with session_scope() as session:
            row = session.get(TradeActivityLog, activity_id)
            if row is None:
                logger.error(f"Activity {activity_id} vanished before completion")
                return
            row.outcome = outcome
            if order_id is not None:
                row.order_id = order_id
            if detail is not None:
                row.detail = detail
            row.error_kind = error_kind
            row.error_message = error_message

    def record(
        self,
        user_id: str,
        action: str,
        idempotency_key: str,
        outcome: str,
        account_id: Optional[str] = None,
        order_id: Optional[str] = None,
        trade_id: Optional[str] = None,
        request_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> int:
        """Write a single finished row (DEDUPLICATED or FAILED outcomes)."""
        with session_scope() as session:
            row = TradeActivityLog(
                user_id=user_id,
                action=action,
                account_id=account_id,
                order_id=order_id,
                trade_id=trade_id,
                idempotency_key=idempotency_key,
                outcome=outcome,
                request_id=request_id,
                detail=detail,
                error_kind=error_kind,
                error_message=error_message,
            )
            session.add(row)
            session.flush()
            return row.id

    def list_for_user(self, user_id: str, account_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with session_scope() as session:
            query = select(TradeActivityLog).where(TradeActivityLog.user_id == user_id)
            if account_id:
                query = query.where(TradeActivityLog.account_id == account_id)
            rows = session.execute(query.order_by(TradeActivityLog.id)).scalars()
            return [row.to_dict() for row in rows]

    def _find_live(self, user_id: str, action: str, idempotency_key: str) -> Optional[Dict[str, Any]]:
        with session_scope() as session:
            row = session.execute(
                select(TradeActivityLog).where(
                    TradeActivityLog.user_id == user_id,
                    TradeActivityLog.action == action,
                    TradeActivityLog.idempotency_key == idempotency_key,
                    TradeActivityLog.outcome.in_([PENDING, SUCCEEDED]),
                )
            ).scalars().first()
            return row.to_dict() if row is not None else None


_trade_activity_repository: Optional[TradeActivityRepository] = None


def get_trade_activity_repository() -> TradeActivityRepository:
    """Get the global trade activity repository instance."""
    global _trade_activity_repository
    if _trade_activity_repository is None:
        _trade_activity_repository = TradeActivityRepository()
    return _trade_activity_repository
