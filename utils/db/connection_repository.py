"""
Connection Repository

Repository for provider credentials and brokerage connections, including the
cascading removal used by disconnect, admin cleanup and the scheduled
orphan sweep.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from utils.db.db_client import session_scope, utc_now
from utils.db.models import (
    AccountSnapshot, ConnectedAccount, ProviderAccount, ProviderActivity,
    ProviderBalance, ProviderConnection, ProviderCredential, ProviderOrder,
    ProviderPosition,
)

logger = logging.getLogger(__name__)


class ConnectionRepository:
    """
    Repository for provider credentials and connections.

    Cascading deletes are performed explicitly, child tables first, inside a
    single transaction so that a failure at any step leaves the store as it was.
    """

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def get_credential(self, user_id: str, provider: str) -> Optional[ProviderCredential]:
        with session_scope() as session:
            return _find_credential(session, user_id, provider)

    def save_credential(self, user_id: str, provider: str, provider_user_id: str, secret: Optional[str]) -> ProviderCredential:
        """Create the credential or rotate it in place."""
        with session_scope() as session:
            credential = _find_credential(session, user_id, provider)
            if credential is None:
                credential = ProviderCredential(user_id=user_id, provider=provider)
                session.add(credential)
                logger.info(f"Storing new {provider} credential for user {user_id}")
            else:
                logger.info(f"Rotating {provider} credential for user {user_id}")
            credential.provider_user_id = provider_user_id
            credential.secret = secret
            session.flush()
            return credential

    def delete_credential(self, user_id: str, provider: str) -> bool:
        with session_scope() as session:
            result = session.execute(
                delete(ProviderCredential).where(
                    ProviderCredential.user_id == user_id,
                    ProviderCredential.provider == provider,
                )
            )
            return result.rowcount > 0

    def find_user_by_provider_user_id(self, provider: str, provider_user_id: str) -> Optional[str]:
        """Platform user holding the given upstream identity, if any."""
        with session_scope() as session:
            return session.execute(
                select(ProviderCredential.user_id).where(
                    ProviderCredential.provider == provider,
                    ProviderCredential.provider_user_id == provider_user_id,
                )
            ).scalars().first()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def list_connections(self, user_id: str) -> List[ProviderConnection]:
        with session_scope() as session:
            return list(session.execute(
                select(ProviderConnection)
                .where(ProviderConnection.user_id == user_id)
                .order_by(ProviderConnection.id)
            ).scalars())

    def upsert_connections(self, user_id: str, authorizations: Iterable[Any]) -> Dict[str, int]:
        """
        Upsert upstream authorizations keyed by authorization id. Never deletes.

        Args:
            user_id: Platform user ID
            authorizations: UpstreamAuthorization objects

        Returns:
            {'inserted': int, 'updated': int}
        """
        inserted = updated = 0
        with session_scope() as session:
            for auth in authorizations:
                connection = session.execute(
                    select(ProviderConnection).where(ProviderConnection.authorization_id == auth.id)
                ).scalars().first()

                if connection is None:
                    connection = ProviderConnection(user_id=user_id, authorization_id=auth.id, provider="brokerage")
                    session.add(connection)
                    inserted += 1
                elif (
                    connection.brokerage_name != auth.brokerage_name
                    or connection.brokerage_type != auth.brokerage_type
                    or connection.disabled != auth.disabled
                    or (auth.updated_at is not None and connection.last_refreshed_at != auth.updated_at)
                ):
                    updated += 1
                else:
                    continue

                connection.brokerage_name = auth.brokerage_name
                connection.brokerage_type = auth.brokerage_type
                connection.disabled = bool(auth.disabled)
                connection.last_refreshed_at = auth.updated_at or connection.last_refreshed_at or utc_now()

        return {"inserted": inserted, "updated": updated}

    def set_connection_state(
        self,
        user_id: str,
        authorization_id: str,
        disabled: Optional[bool],
        brokerage_name: Optional[str] = None,
        create: bool = False,
    ) -> str:
        """
        Flag one connection as disabled or active, optionally creating it.
        A disabled value of None keeps the current flag and only stamps the refresh time.

        Returns:
            'inserted', 'updated' or 'missing'
        """
        with session_scope() as session:
            connection = session.execute(
                select(ProviderConnection).where(
                    ProviderConnection.user_id == user_id,
                    ProviderConnection.authorization_id == authorization_id,
                )
            ).scalars().first()

            if connection is None:
                if not create:
                    return "missing"
                connection = ProviderConnection(user_id=user_id, authorization_id=authorization_id, provider="brokerage")
                session.add(connection)
                outcome = "inserted"
            else:
                outcome = "updated"

            if disabled is not None:
                connection.disabled = disabled
            if brokerage_name:
                connection.brokerage_name = brokerage_name
            connection.last_refreshed_at = utc_now()
        return outcome

    def has_remaining_connections(self, user_id: str, provider: str) -> bool:
        """Whether the user still holds any live link to the provider."""
        with session_scope() as session:
            if provider == "brokerage":
                connection = session.execute(
                    select(ProviderConnection.id).where(ProviderConnection.user_id == user_id).limit(1)
                ).first()
                if connection is not None:
                    return True
            account = session.execute(
                select(ConnectedAccount.id).where(
                    ConnectedAccount.user_id == user_id,
                    ConnectedAccount.provider == provider,
                    ConnectedAccount.is_active.is_(True),
                ).limit(1)
            ).first()
            return account is not None

    def remove_authorization_locally(
        self,
        user_id: str,
        provider: str,
        account_id: Optional[str],
        authorization_id: Optional[str],
    ) -> Dict[str, int]:
        """
        Soft-remove the accounts under an authorization and drop its mirror tree.

        Without an authorization id only the single account is affected.
        Safe to repeat: a second call finds nothing left to remove.

        Returns:
            {'accounts_removed': int, 'connections_removed': int}
        """
        with session_scope() as session:
            account_filter = [
                ConnectedAccount.user_id == user_id,
                ConnectedAccount.provider == provider,
                ConnectedAccount.is_active.is_(True),
            ]
            if authorization_id:
                account_filter.append(ConnectedAccount.authorization_id == authorization_id)
            else:
                account_filter.append(ConnectedAccount.external_account_id == account_id)

            external_ids = [
                row for row in session.execute(
                    select(ConnectedAccount.external_account_id).where(*account_filter)
                ).scalars()
            ]
            removed_ids = external_ids or ([account_id] if account_id else [])
            session.execute(
                update(ConnectedAccount)
                .where(*account_filter)
                .values(is_active=False, status="disconnected", updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )

            mirror_ids = [
                row for row in session.execute(
                    select(ProviderAccount.id).where(
                        ProviderAccount.user_id == user_id,
                        ProviderAccount.provider == provider,
                        ProviderAccount.external_account_id.in_(removed_ids),
                    )
                ).scalars()
            ]

            connections_removed = 0
            if authorization_id and provider == "brokerage":
                connection = session.execute(
                    select(ProviderConnection).where(
                        ProviderConnection.user_id == user_id,
                        ProviderConnection.authorization_id == authorization_id,
                    )
                ).scalars().first()
                if connection is not None:
                    children = session.execute(
                        select(ProviderAccount.id).where(ProviderAccount.connection_id == connection.id)
                    ).scalars()
                    mirror_ids = sorted(set(mirror_ids) | set(children))

            _delete_mirror_rows(session, mirror_ids)
            _delete_provider_accounts(session, mirror_ids)
            if authorization_id and provider == "brokerage":
                connections_removed = session.execute(
                    delete(ProviderConnection).where(
                        ProviderConnection.user_id == user_id,
                        ProviderConnection.authorization_id == authorization_id,
                    )
                ).rowcount
            _delete_snapshots(session, user_id, removed_ids)

        return {"accounts_removed": len(external_ids), "connections_removed": connections_removed}

    def cleanup_user_connections(self, user_id: str) -> Dict[str, int]:
        """
        Hard-delete every brokerage connection of a user with all dependent rows.

        Runs as one transaction: balances, positions, orders and activities
        first, then provider accounts, then connected accounts and finally the
        connections themselves.

        Returns:
            {'connections_removed': int, 'accounts_removed': int}
        """
        with session_scope() as session:
            connection_ids = list(session.execute(
                select(ProviderConnection.id).where(ProviderConnection.user_id == user_id)
            ).scalars())
            accounts = list(session.execute(
                select(ProviderAccount.id, ProviderAccount.external_account_id).where(
                    (ProviderAccount.connection_id.in_(connection_ids))
                    | ((ProviderAccount.user_id == user_id) & (ProviderAccount.provider == "brokerage"))
                )
            ).all())
            mirror_ids = [row.id for row in accounts]
            external_ids = [row.external_account_id for row in accounts]

            _delete_mirror_rows(session, mirror_ids)
            accounts_removed = _delete_provider_accounts(session, mirror_ids)
            _delete_connected_accounts(session, user_id, "brokerage")
            _delete_snapshots(session, user_id, external_ids)
            connections_removed = _delete_connections(session, connection_ids)

        logger.info(
            f"✅ Cleaned up {connections_removed} connections and {accounts_removed} accounts for user {user_id}"
        )
        return {"connections_removed": connections_removed, "accounts_removed": accounts_removed}

    def delete_connection_tree(self, connection_id: int) -> int:
        """Delete one connection with its accounts and mirrors. Returns accounts removed."""
        with session_scope() as session:
            connection = session.get(ProviderConnection, connection_id)
            if connection is None:
                return 0
            accounts = list(session.execute(
                select(ProviderAccount.id, ProviderAccount.external_account_id)
                .where(ProviderAccount.connection_id == connection_id)
            ).all())
            mirror_ids = [row.id for row in accounts]
            external_ids = [row.external_account_id for row in accounts]

            _delete_mirror_rows(session, mirror_ids)
            removed = _delete_provider_accounts(session, mirror_ids)
            if external_ids:
                session.execute(
                    delete(ConnectedAccount).where(
                        ConnectedAccount.user_id == connection.user_id,
                        ConnectedAccount.provider == "brokerage",
                        ConnectedAccount.external_account_id.in_(external_ids),
                    )
                )
            _delete_snapshots(session, connection.user_id, external_ids)
            _delete_connections(session, [connection_id])
            return removed

    def find_orphaned_connections(self) -> List[ProviderConnection]:
        """Connections whose user no longer has a brokerage credential."""
        with session_scope() as session:
            credentialed_users = select(ProviderCredential.user_id).where(ProviderCredential.provider == "brokerage")
            return list(session.execute(
                select(ProviderConnection).where(ProviderConnection.user_id.not_in(credentialed_users))
            ).scalars())

    def find_stale_connections(self, cutoff: datetime) -> List[ProviderConnection]:
        """Connections not refreshed since the cutoff (or never)."""
        with session_scope() as session:
            return list(session.execute(
                select(ProviderConnection).where(
                    (ProviderConnection.last_refreshed_at.is_(None))
                    | (ProviderConnection.last_refreshed_at < cutoff)
                )
            ).scalars())


def _find_credential(session: Session, user_id: str, provider: str) -> Optional[ProviderCredential]:
    return session.execute(
        select(ProviderCredential).where(
            ProviderCredential.user_id == user_id,
            ProviderCredential.provider == provider,
        )
    ).scalars().first()


def _delete_mirror_rows(session: Session, mirror_ids: List[int]) -> None:
    if not mirror_ids:
        return
    for model in (ProviderBalance, ProviderPosition, ProviderOrder, ProviderActivity):
        session.execute(delete(model).where(model.account_id.in_(mirror_ids)))


def _delete_provider_accounts(session: Session, mirror_ids: List[int]) -> int:
    if not mirror_ids:
        return 0
    result = session.execute(delete(ProviderAccount).where(ProviderAccount.id.in_(mirror_ids)))
    return result.rowcount


def _delete_connected_accounts(session: Session, user_id: str, provider: str) -> int:
    result = session.execute(
        delete(ConnectedAccount).where(
            ConnectedAccount.user_id == user_id,
            ConnectedAccount.provider == provider,
        )
    )
    return result.rowcount


def _delete_snapshots(session: Session, user_id: str, account_ids: List[str]) -> None:
    if account_ids:
        session.execute(
            delete(AccountSnapshot).where(
                AccountSnapshot.user_id == user_id,
                AccountSnapshot.account_id.in_(account_ids),
            )
        )


def _delete_connections(session: Session, connection_ids: List[int]) -> int:
    if not connection_ids:
        return 0
    result = session.execute(delete(ProviderConnection).where(ProviderConnection.id.in_(connection_ids)))
    return result.rowcount


_connection_repository: Optional[ConnectionRepository] = None


def get_connection_repository() -> ConnectionRepository:
    """Get the global connection repository instance."""
    global _connection_repository
    if _connection_repository is None:
        _connection_repository = ConnectionRepository()
    return _connection_repository
