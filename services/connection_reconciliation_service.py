"""
Connection Reconciliation Service

Keeps the local record of brokerage connections converged with what the
provider actually holds.

- check_sync: read-only diff (upstream only / local only / both)
- force_sync: upsert upstream authorizations, never delete
- disconnect: revoke upstream first, then remove locally, then drop the
  provider credential once the last connection is gone
- cleanup_provider: admin cascade delete in one transaction
- handle_webhook: apply SnapTrade connection events (added, broken, fixed, deleted)
- run_orphan_cleanup: scheduled removal of connections whose user lost the
  credential, plus a report of stale connections (never auto-deleted)
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from utils.db.account_repository import AccountRepository, get_account_repository
from utils.db.connection_repository import ConnectionRepository, get_connection_repository
from utils.db.db_client import utc_now
from utils.portfolio import constants
from utils.portfolio.abstract_provider import ProviderCredential, ProviderKind
from utils.portfolio.error_classifier import (
    ClassifiedError, ErrorKind, call_with_retry, classify_provider_error, to_classified,
)
from utils.portfolio.provider_registry import ProviderRegistry, get_provider_registry

from services.account_aggregation_service import AccountNotFoundError

logger = logging.getLogger(__name__)

BROKERAGE = ProviderKind.BROKERAGE

# SnapTrade webhook event types -> local action
WEBHOOK_ACTIONS = {
    'CONNECTION_ADDED': 'added',
    'CONNECTION.CREATED': 'added',
    'CONNECTION_FIXED': 'fixed',
    'CONNECTION_UPDATED': 'updated',
    'CONNECTION.REFRESHED': 'updated',
    'CONNECTION_BROKEN': 'broken',
    'CONNECTION.BROKEN': 'broken',
    'CONNECTION_DELETED': 'deleted',
}


class ReconciliationError(Exception):
    """A local reconciliation step failed; the store was rolled back."""


def _bucket(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {'count': len(items), 'items': items}


@dataclass
class SyncReport:
    """Diff between upstream authorizations and local connections."""
    registered: bool
    authorizations: List[Dict[str, Any]] = field(default_factory=list)
    connections: List[Dict[str, Any]] = field(default_factory=list)
    in_snaptrade_only: List[Dict[str, Any]] = field(default_factory=list)
    in_database_only: List[Dict[str, Any]] = field(default_factory=list)
    synced: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'registered': self.registered,
            'snaptrade_authorizations': _bucket(self.authorizations),
            'database_connections': _bucket(self.connections),
            'sync': {
                'in_snaptrade_only': _bucket(self.in_snaptrade_only),
                'in_database_only': _bucket(self.in_database_only),
                'synced': _bucket(self.synced),
            },
        }


class ConnectionReconciliationService:
    """Service for diagnosing and converging connection drift."""

    def __init__(self, registry: Optional[ProviderRegistry] = None,
                 connection_repository: Optional[ConnectionRepository] = None,
                 account_repository: Optional[AccountRepository] = None):
        self.registry = registry or get_provider_registry()
        self.connections = connection_repository or get_connection_repository()
        self.accounts = account_repository or get_account_repository()

    def _credential(self, user_id: str, kind: ProviderKind = BROKERAGE) -> Optional[ProviderCredential]:
        record = self.connections.get_credential(user_id, kind.value)
        return ProviderCredential.from_record(record) if record is not None else None

    # === Registration ===

    async def register_user(self, user_id: str, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Register the user with the brokerage provider, reusing an existing credential."""
        existing = self._credential(user_id)
        if existing is not None:
            return {'registered': True, 'created': False, 'provider_user_id': existing.provider_user_id}

        provider = self.registry.get(BROKERAGE)
        try:
            credential = await call_with_retry('brokerage.register_user', provider.register_user, user_id)
        except Exception as e:
            raise to_classified(e, 'brokerage.register_user', request_id=request_id) from e

        self.connections.save_credential(user_id, BROKERAGE.value, credential.provider_user_id, credential.secret)
        logger.info(f"✅ User {user_id} registered with {provider.get_provider_name()}")
        return {'registered': True, 'created': True, 'provider_user_id': credential.provider_user_id}

    # === Diagnostics ===

    async def check_sync(self, user_id: str, request_id: Optional[str] = None) -> SyncReport:
        """
        Compare upstream authorizations with local connections. Read-only.

        Returns:
            SyncReport; registered=False when the user has no brokerage credential

        Raises:
            ClassifiedError: The authorization listing failed
        """
        credential = self._credential(user_id)
        if credential is None:
            logger.info(f"User {user_id} is not registered with the brokerage provider")
            return SyncReport(registered=False)

        authorizations = await self._list_authorizations(credential, request_id)
        connections = self.connections.list_connections(user_id)

        upstream = {auth.id: auth.to_dict() for auth in authorizations}
        local = {conn.authorization_id: conn.to_dict() for conn in connections}

        report = SyncReport(
            registered=True,
            authorizations=list(upstream.values()),
            connections=list(local.values()),
            in_snaptrade_only=[item for key, item in upstream.items() if key not in local],
            in_database_only=[item for key, item in local.items() if key not in upstream],
            synced=[local[key] for key in upstream if key in local],
        )
        logger.info(
            f"Sync check for user {user_id}: {len(report.in_snaptrade_only)} upstream-only, "
            f"{len(report.in_database_only)} local-only, {len(report.synced)} synced"
        )
        return report

    async def force_sync(self, user_id: str, request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Upsert every upstream authorization locally. Never deletes.

        Accounts under those authorizations are linked best-effort; a failure
        there is reported but does not undo the connection upsert.
        """
        credential = self._credential(user_id)
        if credential is None:
            raise ClassifiedError(ErrorKind.NOT_REGISTERED,
                                  'No brokerage registration found. Please connect a brokerage first.')

        provider = self.registry.get(BROKERAGE)
        authorizations = await self._list_authorizations(credential, request_id)
        counts = self.connections.upsert_connections(user_id, authorizations)

        accounts_synced = 0
        accounts_error = None
        try:
            accounts = await call_with_retry('brokerage.list_accounts', provider.list_accounts, credential)
            for account in accounts:
                self.accounts.upsert_connected_account(
                    user_id, BROKERAGE.value, account.id,
                    authorization_id=account.authorization_id,
                    account_name=account.name,
                    institution_name=account.institution_name,
                    account_subtype=account.account_type,
                    account_mask=account.number[-4:] if account.number else None,
                    currency=account.currency,
                    balance=account.balance,
                )
                accounts_synced += 1
        except Exception as e:
            classified = to_classified(e, 'brokerage.list_accounts', request_id=request_id)
            accounts_error = classified.to_dict()
            logger.warning(f"⚠️ Connections synced but account sync failed for user {user_id}: {classified.message}")

        connections = [conn.to_dict() for conn in self.connections.list_connections(user_id)]
        logger.info(
            f"✅ Force sync for user {user_id}: {counts['inserted']} inserted, {counts['updated']} updated, "
            f"{accounts_synced} accounts linked"
        )
        return {
            'inserted': counts['inserted'],
            'updated': counts['updated'],
            'total': len(connections),
            'connections': connections,
            'accounts_synced': accounts_synced,
            'accounts_error': accounts_error,
        }

    # === Disconnect ===

    async def disconnect(self, user_id: str, account_id: str, provider_kind: str,
                         request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Disconnect an account: revoke upstream, then remove locally.

        Local rows are only touched once the upstream revoke succeeded or the
        authorization was already gone. Repeating a disconnect is harmless.

        Raises:
            AccountNotFoundError: The user never had this account
            ClassifiedError: Upstream revoke failed; nothing local was changed
        """
        kind = ProviderKind(provider_kind)
        account = self.accounts.find_account(user_id, account_id, kind.value)
        if account is None:
            raise AccountNotFoundError(account_id)

        provider = self.registry.get(kind)
        credential = self._credential(user_id, kind)
        authorization_id = account.authorization_id
        result = {
            'account_id': account_id,
            'provider': kind.value,
            'authorization_id': authorization_id,
            'already_disconnected': not account.is_active,
            'accounts_removed': 0,
            'connections_removed': 0,
            'credential_removed': False,
        }

        if account.is_active:
            if authorization_id and (credential is not None or not provider.requires_credential):
                try:
                    await call_with_retry(
                        f"{kind.value}.remove_authorization", provider.remove_authorization,
                        credential, authorization_id,
                        mutating=True, idempotency_key=f"revoke:{authorization_id}", removal=True,
                    )
                    logger.info(f"✅ Revoked authorization {authorization_id} upstream")
                except Exception as e:
                    if classify_provider_error(e, removal=True) != ErrorKind.ALREADY_GONE:
                        raise to_classified(e, f"{kind.value}.remove_authorization", removal=True,
                                            request_id=request_id) from e
                    logger.info(f"Authorization {authorization_id} already gone upstream")
            elif authorization_id:
                logger.warning(f"⚠️ No {kind.value} credential for user {user_id}; treating {authorization_id} as gone")

            removed = self.connections.remove_authorization_locally(user_id, kind.value, account_id, authorization_id)
            result.update(removed)

        if not self.connections.has_remaining_connections(user_id, kind.value) and credential is not None:
            await self._delete_upstream_user(provider, credential, kind, request_id)
            result['credential_removed'] = self.connections.delete_credential(user_id, kind.value)

        logger.info(f"✅ Disconnected {kind.value} account {account_id} for user {user_id}: {result}")
        return result

    async def _delete_upstream_user(self, provider, credential: ProviderCredential, kind: ProviderKind,
                                    request_id: Optional[str]) -> None:
        # The credential row is deleted whatever happens here
        try:
            await call_with_retry(
                f"{kind.value}.delete_user", provider.delete_user, credential,
                mutating=True, idempotency_key=f"delete-user:{credential.provider_user_id}", removal=True,
            )
            logger.info(f"✅ Deleted upstream {kind.value} user {credential.provider_user_id}")
        except Exception as e:
            if classify_provider_error(e, removal=True) == ErrorKind.ALREADY_GONE:
                logger.info(f"Upstream {kind.value} user {credential.provider_user_id} already gone")
            else:
                logger.warning(
                    f"⚠️ Could not delete upstream {kind.value} user {credential.provider_user_id} "
                    f"(request_id={request_id}): {e}"
                )

    # === Webhooks ===

    async def handle_webhook(self, payload: Dict[str, Any], request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Apply a verified SnapTrade webhook to the local connection records.

        Unknown event types, unknown users and events without an authorization
        id are acknowledged and ignored so SnapTrade does not keep retrying.

        Returns:
            {'event_type', 'action', 'authorization_id', 'outcome'}
        """
        event_type = str(payload.get('eventType') or payload.get('type') or '').upper()
        action = WEBHOOK_ACTIONS.get(event_type)
        authorization_id = (
            payload.get('brokerageAuthorizationId')
            or payload.get('authorizationId')
            or payload.get('brokerage_authorization_id')
        )
        result = {'event_type': event_type, 'action': action, 'authorization_id': authorization_id,
                  'outcome': 'ignored'}

        if action is None:
            logger.info(f"Ignoring SnapTrade webhook {event_type or '<none>'}")
            return result

        snaptrade_user_id = payload.get('userId') or payload.get('user_id')
        user_id = (
            self.connections.find_user_by_provider_user_id(BROKERAGE.value, str(snaptrade_user_id))
            if snaptrade_user_id else None
        )
        if user_id is None:
            logger.warning(f"⚠️ SnapTrade webhook {event_type} for unknown user {snaptrade_user_id}")
            return result
        if not authorization_id:
            logger.warning(f"⚠️ SnapTrade webhook {event_type} for user {user_id} has no authorization id")
            return result

        authorization_id = str(authorization_id)
        brokerage_name = payload.get('brokerageName') or payload.get('institutionName')

        if action == 'deleted':
            removed = self.connections.remove_authorization_locally(user_id, BROKERAGE.value, None, authorization_id)
            result['outcome'] = 'removed' if removed['connections_removed'] or removed['accounts_removed'] else 'missing'
            result.update(removed)
        elif action == 'broken':
            result['outcome'] = self.connections.set_connection_state(user_id, authorization_id, disabled=True)
        elif action == 'updated':
            result['outcome'] = self.connections.set_connection_state(
                user_id, authorization_id, disabled=None, brokerage_name=brokerage_name, create=True,
            )
        else:
            result['outcome'] = self.connections.set_connection_state(
                user_id, authorization_id, disabled=False, brokerage_name=brokerage_name, create=True,
            )

        if action == 'added':
            # Accounts under the new authorization are linked best-effort
            try:
                synced = await self.force_sync(user_id, request_id=request_id)
                result['accounts_synced'] = synced['accounts_synced']
            except Exception as e:
                classified = to_classified(e, 'brokerage.force_sync', request_id=request_id)
                result['sync_error'] = classified.to_dict()
                logger.warning(f"⚠️ Connection {authorization_id} recorded but sync failed: {classified.message}")

        logger.info(f"✅ SnapTrade webhook {event_type} applied to {authorization_id} for user {user_id}: {result['outcome']}")
        return result

    # === Cleanup ===

    def cleanup_provider(self, user_id: str) -> Dict[str, int]:
        """
        Admin cascade: delete every brokerage connection of a user and all
        dependent rows in one transaction.

        Raises:
            ReconciliationError: A step failed and the transaction was rolled back
        """
        try:
            result = self.connections.cleanup_user_connections(user_id)
        except Exception as e:
            logger.error(f"❌ Cleanup failed for user {user_id}; rolled back: {e}", exc_info=True)
            raise ReconciliationError(f"Cleanup failed for user {user_id}") from e
        return result

    def run_orphan_cleanup(self) -> Dict[str, Any]:
        """
        Remove connections whose user has no brokerage credential and report
        stale connections. Each orphan is removed in its own transaction.
        """
        summary = {'orphaned_found': 0, 'orphaned_removed': 0, 'accounts_removed': 0,
                   'stale_connections': [], 'errors': []}

        orphans = self.connections.find_orphaned_connections()
        summary['orphaned_found'] = len(orphans)
        for connection in orphans:
            try:
                summary['accounts_removed'] += self.connections.delete_connection_tree(connection.id)
                summary['orphaned_removed'] += 1
                logger.info(f"🗑️ Removed orphaned connection {connection.authorization_id} (user {connection.user_id})")
            except Exception as e:
                logger.error(f"❌ Failed to remove orphaned connection {connection.authorization_id}: {e}", exc_info=True)
                summary['errors'].append({'authorization_id': connection.authorization_id, 'error': str(e)})

        cutoff = utc_now() - timedelta(days=constants.STALE_CONNECTION_DAYS)
        for connection in self.connections.find_stale_connections(cutoff):
            stale = connection.to_dict()
            stale['user_id'] = connection.user_id
            summary['stale_connections'].append(stale)
        if summary['stale_connections']:
            logger.warning(
                f"⚠️ {len(summary['stale_connections'])} connections not refreshed in "
                f"{constants.STALE_CONNECTION_DAYS}+ days (reported only)"
            )

        logger.info(f"✅ Orphan cleanup complete: {summary['orphaned_removed']}/{summary['orphaned_found']} removed")
        return summary

    async def _list_authorizations(self, credential: ProviderCredential, request_id: Optional[str]):
        provider = self.registry.get(BROKERAGE)
        try:
            return await call_with_retry('brokerage.list_authorizations', provider.list_authorizations, credential)
        except Exception as e:
            raise to_classified(e, 'brokerage.list_authorizations', request_id=request_id) from e


_connection_reconciliation_service: Optional[ConnectionReconciliationService] = None


def get_connection_reconciliation_service() -> ConnectionReconciliationService:
    """Get the global connection reconciliation service instance."""
    global _connection_reconciliation_service
    if _connection_reconciliation_service is None:
        _connection_reconciliation_service = ConnectionReconciliationService()
    return _connection_reconciliation_service
