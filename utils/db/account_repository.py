"""
Account Repository

Repository for connected accounts, the per-section provider mirrors and the
whole-view account snapshots. Every public method runs in its own transaction.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from utils.db.db_client import session_scope, utc_now
from utils.db.models import (
    AccountSnapshot, ConnectedAccount, ProviderAccount, ProviderActivity,
    ProviderBalance, ProviderConnection, ProviderOrder, ProviderPosition,
)

logger = logging.getLogger(__name__)

SECTIONS = ("details", "balances", "positions", "orders", "activities")

# Cache mirrors are replaced wholesale; history mirrors only ever grow.
_MIRROR_MODELS = {
    "balances": ProviderBalance,
    "positions": ProviderPosition,
    "orders": ProviderOrder,
    "activities": ProviderActivity,
}
_REPLACED_SECTIONS = {"balances", "positions"}


class AccountRepository:
    """
    Repository for account-level data.

    Follows the Repository pattern: services never touch sessions directly.
    """

    # ------------------------------------------------------------------
    # Connected accounts
    # ------------------------------------------------------------------

    def get_active_account(self, user_id: str, account_id: str) -> Optional[ConnectedAccount]:
        with session_scope() as session:
            return session.execute(
                select(ConnectedAccount).where(
                    ConnectedAccount.user_id == user_id,
                    ConnectedAccount.external_account_id == account_id,
                    ConnectedAccount.is_active.is_(True),
                )
            ).scalars().first()

    def find_account(self, user_id: str, account_id: str, provider: Optional[str] = None) -> Optional[ConnectedAccount]:
        """Find an account in any lifecycle state, preferring the active row."""
        with session_scope() as session:
            query = select(ConnectedAccount).where(
                ConnectedAccount.user_id == user_id,
                ConnectedAccount.external_account_id == account_id,
            )
            if provider:
                query = query.where(ConnectedAccount.provider == provider)
            query = query.order_by(ConnectedAccount.is_active.desc(), ConnectedAccount.updated_at.desc())
            return session.execute(query).scalars().first()

    def list_active_accounts(self, user_id: str) -> List[ConnectedAccount]:
        with session_scope() as session:
            return list(session.execute(
                select(ConnectedAccount).where(
                    ConnectedAccount.user_id == user_id,
                    ConnectedAccount.is_active.is_(True),
                ).order_by(ConnectedAccount.provider, ConnectedAccount.id)
            ).scalars())

    def upsert_connected_account(
        self,
        user_id: str,
        provider: str,
        external_account_id: str,
        **fields: Any,
    ) -> ConnectedAccount:
        """
        Insert or update the active account for (user, provider, external id).

        Args:
            user_id: Platform user ID
            provider: Provider tag
            external_account_id: Provider's native account ID
            **fields: Any ConnectedAccount column (account_name, balance, ...)

        Returns:
            The stored ConnectedAccount
        """
        with session_scope() as session:
            account = session.execute(
                select(ConnectedAccount).where(
                    ConnectedAccount.user_id == user_id,
                    ConnectedAccount.provider == provider,
                    ConnectedAccount.external_account_id == external_account_id,
                    ConnectedAccount.is_active.is_(True),
                )
            ).scalars().first()

            if account is None:
                account = ConnectedAccount(
                    user_id=user_id,
                    provider=provider,
                    external_account_id=external_account_id,
                    status="connected",
                    is_active=True,
                )
                session.add(account)
                logger.info(f"Linking new {provider} account {external_account_id} for user {user_id}")

            for key, value in fields.items():
                if value is not None:
                    setattr(account, key, value)
            session.flush()
            return account

    def mark_account_refreshed(self, user_id: str, account_id: str, **fields: Any) -> None:
        """Stamp last_synced_at (and any refreshed display fields) on the active row."""
        with session_scope() as session:
            account = session.execute(
                select(ConnectedAccount).where(
                    ConnectedAccount.user_id == user_id,
                    ConnectedAccount.external_account_id == account_id,
                    ConnectedAccount.is_active.is_(True),
                )
            ).scalars().first()
            if account is None:
                return
            for key, value in fields.items():
                if value is not None:
                    setattr(account, key, value)
            account.status = "connected"
            account.last_synced_at = utc_now()

    def mark_account_expired(self, user_id: str, account_id: str) -> None:
        with session_scope() as session:
            account = session.execute(
                select(ConnectedAccount).where(
                    ConnectedAccount.user_id == user_id,
                    ConnectedAccount.external_account_id == account_id,
                    ConnectedAccount.is_active.is_(True),
                )
            ).scalars().first()
            if account is not None and account.status != "expired":
                account.status = "expired"
                logger.warning(f"⚠️ Account {account_id} for user {user_id} marked expired")

    # ------------------------------------------------------------------
    # Provider mirrors
    # ------------------------------------------------------------------

    def get_section_sync_times(self, user_id: str, provider: str, account_id: str) -> Dict[str, Optional[datetime]]:
        with session_scope() as session:
            mirror = _find_provider_account(session, user_id, provider, account_id)
            if mirror is None:
                return {section: None for section in SECTIONS}
            return {section: getattr(mirror, f"{section}_synced_at") for section in SECTIONS}

    def write_section(
        self,
        user_id: str,
        provider: str,
        account_id: str,
        section: str,
        data: Any,
        authorization_id: Optional[str] = None,
    ) -> datetime:
        """
        Write a freshly fetched section through to its mirror.

        details replaces the account's detail blob, balances and positions are
        replaced wholesale (vanished rows deleted) and orders and activities are
        upserted without pruning.

        Returns:
            The new synced-at timestamp for the section
        """
        if section not in SECTIONS:
            raise ValueError(f"Unknown section: {section}")

        synced_at = utc_now()
        with session_scope() as session:
            mirror = _get_or_create_provider_account(session, user_id, provider, account_id, authorization_id)

            if section == "details":
                mirror.details = data
            else:
                _write_mirror_rows(session, mirror.id, section, data or [], synced_at)

            setattr(mirror, f"{section}_synced_at", synced_at)
        return synced_at

    def read_section(self, user_id: str, provider: str, account_id: str, section: str) -> Any:
        with session_scope() as session:
            mirror = _find_provider_account(session, user_id, provider, account_id)
            if section == "details":
                return mirror.details if mirror is not None else None
            if mirror is None:
                return []
            model = _MIRROR_MODELS[section]
            rows = session.execute(
                select(model).where(model.account_id == mirror.id).order_by(model.id)
            ).scalars()
            return [row.payload for row in rows]

    def get_mirrored_order(self, user_id: str, provider: str, account_id: str,
                           order_id: str) -> Optional[Dict[str, Any]]:
        with session_scope() as session:
            mirror = _find_provider_account(session, user_id, provider, account_id)
            if mirror is None:
                return None
            row = session.execute(
                select(ProviderOrder).where(
                    ProviderOrder.account_id == mirror.id,
                    ProviderOrder.resource_id == str(order_id),
                )
            ).scalars().first()
            return dict(row.payload) if row is not None else None

    def upsert_orders(self, user_id: str, provider: str, account_id: str, orders: Iterable[Dict[str, Any]]) -> None:
        """Upsert individual order rows without touching the section clock."""
        with session_scope() as session:
            mirror = _get_or_create_provider_account(session, user_id, provider, account_id)
            _write_mirror_rows(session, mirror.id, "orders", list(orders), utc_now())

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def get_live_snapshot(self, user_id: str, account_id: str,
                          now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        now = now or utc_now()
        with session_scope() as session:
            snapshot = session.execute(
                select(AccountSnapshot).where(
                    AccountSnapshot.user_id == user_id,
                    AccountSnapshot.account_id == account_id,
                    AccountSnapshot.expires_at > now,
                )
            ).scalars().first()
            return dict(snapshot.payload) if snapshot is not None else None

    def save_snapshot(self, user_id: str, account_id: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
        """Upsert the snapshot for an account. Last writer wins."""
        now = utc_now()
        with session_scope() as session:
            snapshot = session.execute(
                select(AccountSnapshot).where(
                    AccountSnapshot.user_id == user_id,
                    AccountSnapshot.account_id == account_id,
                )
            ).scalars().first()
            if snapshot is None:
                snapshot = AccountSnapshot(user_id=user_id, account_id=account_id)
                session.add(snapshot)
            snapshot.payload = payload
            snapshot.created_at = now
            snapshot.expires_at = now + timedelta(seconds=ttl_seconds)

    def delete_snapshot(self, user_id: str, account_id: str) -> None:
        with session_scope() as session:
            snapshot = session.execute(
                select(AccountSnapshot).where(
                    AccountSnapshot.user_id == user_id,
                    AccountSnapshot.account_id == account_id,
                )
            ).scalars().first()
            if snapshot is not None:
                session.delete(snapshot)


def _find_provider_account(session: Session, user_id: str, provider: str,
                           account_id: str) -> Optional[ProviderAccount]:
    return session.execute(
        select(ProviderAccount).where(
            ProviderAccount.user_id == user_id,
            ProviderAccount.provider == provider,
            ProviderAccount.external_account_id == account_id,
        )
    ).scalars().first()


def _get_or_create_provider_account(
    session: Session,
    user_id: str,
    provider: str,
    account_id: str,
    authorization_id: Optional[str] = None,
) -> ProviderAccount:
    mirror = _find_provider_account(session, user_id, provider, account_id)
    if mirror is None:
        mirror = ProviderAccount(user_id=user_id, provider=provider, external_account_id=account_id)
        session.add(mirror)

    if authorization_id and mirror.connection_id is None:
        connection = session.execute(
            select(ProviderConnection).where(
                ProviderConnection.user_id == user_id,
                ProviderConnection.authorization_id == authorization_id,
            )
        ).scalars().first()
        if connection is not None:
            mirror.connection_id = connection.id

    session.flush()
    return mirror


def _write_mirror_rows(session: Session, mirror_id: int, section: str, items: List[Dict[str, Any]], synced_at: datetime) -> None:
    model = _MIRROR_MODELS[section]
    existing = {
        row.resource_id: row
        for row in session.execute(select(model).where(model.account_id == mirror_id)).scalars()
    }

    seen = set()
    for item in items:
        resource_id = str(item.get("id"))
        seen.add(resource_id)
        row = existing.get(resource_id)
        if row is None:
            row = model(account_id=mirror_id, resource_id=resource_id)
            session.add(row)
        row.payload = item
        row.synced_at = synced_at
        if section == "positions":
            row.symbol = item.get("symbol")
        elif section == "orders":
            row.status = item.get("status")
        elif section == "activities":
            row.trade_date = item.get("trade_date")

    if section in _REPLACED_SECTIONS:
        for resource_id, row in existing.items():
            if resource_id not in seen:
                session.delete(row)


_account_repository: Optional[AccountRepository] = None


def get_account_repository() -> AccountRepository:
    """Get the global account repository instance."""
    global _account_repository
    if _account_repository is None:
        _account_repository = AccountRepository()
    return _account_repository
