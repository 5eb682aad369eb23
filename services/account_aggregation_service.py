"""
Account Aggregation Service

Assembles the unified view of one connected account from five independent
sections (details, balances, positions, orders, activities).

Architecture:
- Whole-view snapshot: a live AccountSnapshot is returned as-is
- Per-section freshness: each section's mirror has its own synced-at clock;
  fresh sections are read from the store, stale ones are fetched upstream,
  written through, and read back from the store
- Partial failure: a failed section carries an error descriptor instead of data;
  only a failed details section fails the whole request
- Fetches are shielded so an abandoned request still warms the mirrors
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from utils.db.account_repository import SECTIONS, AccountRepository, get_account_repository
from utils.db.connection_repository import ConnectionRepository, get_connection_repository
from utils.db.db_client import utc_now
from utils.portfolio import constants
from utils.portfolio.abstract_provider import AbstractAccountProvider, ProviderCredential, ProviderKind
from utils.portfolio.error_classifier import ClassifiedError, ErrorKind, call_with_retry, to_classified
from utils.portfolio.provider_registry import ProviderRegistry, get_provider_registry

logger = logging.getLogger(__name__)


class AccountNotFoundError(Exception):
    """No active connected account with that id belongs to the user."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


def mirror_ttl_seconds(kind: ProviderKind) -> int:
    return {
        ProviderKind.BROKERAGE: constants.BROKERAGE_MIRROR_TTL_SECONDS,
        ProviderKind.BANKING: constants.BANKING_MIRROR_TTL_SECONDS,
        ProviderKind.WALLET: constants.WALLET_MIRROR_TTL_SECONDS,
    }[kind]


@dataclass
class SectionResult:
    """One section of an account view."""
    name: str
    data: Any = None
    error: Optional[Dict[str, Any]] = None
    from_cache: bool = False
    last_synced: Optional[str] = None
    classified: Optional[ClassifiedError] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'data': self.data,
            'error': self.error,
            'cached': self.from_cache,
            'last_synced': self.last_synced,
        }


class AccountAggregationService:
    """
    Service for assembling account views across providers.

    All collaborators are injectable; the defaults are the process-wide
    singletons.
    """

    def __init__(self, registry: Optional[ProviderRegistry] = None,
                 account_repository: Optional[AccountRepository] = None,
                 connection_repository: Optional[ConnectionRepository] = None):
        self.registry = registry or get_provider_registry()
        self.accounts = account_repository or get_account_repository()
        self.connections = connection_repository or get_connection_repository()

    async def get_account_view(self, user_id: str, account_id: str, force_refresh: bool = False,
                               request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Get the assembled view of one account.

        Args:
            user_id: Platform user ID
            account_id: Provider's native account ID
            force_refresh: Treat every section as stale and skip the snapshot
            request_id: Correlation id for logs

        Returns:
            {'account_id', 'provider', 'account', 'cached', 'generated_at',
             'details'|'balances'|'positions'|'orders'|'activities': {data, error, cached, last_synced}}

        Raises:
            AccountNotFoundError: Unknown or inactive account
            ClassifiedError: Credential missing, or the details section failed
        """
        account = self.accounts.get_active_account(user_id, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        kind = ProviderKind(account.provider)
        provider = self.registry.get(kind)
        credential = self._resolve_credential(user_id, kind, provider)

        if not force_refresh:
            snapshot = self.accounts.get_live_snapshot(user_id, account_id)
            if snapshot is not None:
                logger.info(f"Serving account {account_id} from snapshot")
                snapshot['cached'] = True
                return snapshot

        ttl = timedelta(seconds=mirror_ttl_seconds(kind))
        sync_times = self.accounts.get_section_sync_times(user_id, kind.value, account_id)

        tasks = [
            asyncio.ensure_future(self._load_section(
                section, user_id, account, kind, provider, credential,
                sync_times.get(section), ttl, force_refresh, request_id,
            ))
            for section in SECTIONS
        ]
        results: List[SectionResult] = await asyncio.gather(*(asyncio.shield(task) for task in tasks))
        sections = {result.name: result for result in results}

        details = sections['details']
        if not details.ok:
            if details.classified is not None and details.classified.kind == ErrorKind.AUTH_EXPIRED:
                self.accounts.mark_account_expired(user_id, account_id)
            logger.error(f"❌ Account {account_id} view failed: details unavailable ({details.error['code']})")
            raise details.classified

        self._refresh_connected_account(user_id, account, sections)

        view = {
            'account_id': account_id,
            'provider': kind.value,
            'account': self.accounts.get_active_account(user_id, account_id).to_dict(),
            'cached': False,
            'generated_at': utc_now().isoformat(),
        }
        for name in SECTIONS:
            view[name] = sections[name].to_dict()

        failed = [name for name in SECTIONS if not sections[name].ok]
        if failed:
            logger.warning(f"⚠️ Account {account_id} assembled with failed sections: {', '.join(failed)}")
        else:
            self.accounts.save_snapshot(user_id, account_id, view, constants.ACCOUNT_SNAPSHOT_TTL_SECONDS)
            logger.info(f"✅ Account {account_id} assembled and snapshotted")
        return view

    async def refresh_account(self, user_id: str, account_id: str, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Manual refresh: drop the snapshot and refetch every section."""
        self.accounts.delete_snapshot(user_id, account_id)
        return await self.get_account_view(user_id, account_id, force_refresh=True, request_id=request_id)

    def list_accounts(self, user_id: str) -> Dict[str, Any]:
        """Active connected accounts with per-provider totals."""
        accounts = [account.to_dict() for account in self.accounts.list_active_accounts(user_id)]
        totals: Dict[str, float] = {}
        for account in accounts:
            if account['balance'] is not None and account['currency'] in (None, 'USD'):
                totals[account['provider']] = totals.get(account['provider'], 0.0) + account['balance']
        return {
            'accounts': accounts,
            'count': len(accounts),
            'totals_by_provider': totals,
            'total_balance': sum(totals.values()),
        }

    def _resolve_credential(self, user_id: str, kind: ProviderKind,
                            provider: AbstractAccountProvider) -> Optional[ProviderCredential]:
        record = self.connections.get_credential(user_id, kind.value)
        if record is None:
            if provider.requires_credential:
                raise ClassifiedError(
                    ErrorKind.NOT_REGISTERED,
                    f"No {kind.value} registration found for this user. Please connect an account first.",
                    provider=kind.value,
                )
            return None
        return ProviderCredential.from_record(record)

    async def _load_section(self, section: str, user_id: str, account, kind: ProviderKind,
                            provider: AbstractAccountProvider, credential: Optional[ProviderCredential],
                            last_synced, ttl: timedelta, force_refresh: bool,
                            request_id: Optional[str]) -> SectionResult:
        account_id = account.external_account_id
        now = utc_now()

        if not force_refresh and last_synced is not None and now - last_synced < ttl:
            data = self.accounts.read_section(user_id, kind.value, account_id, section)
            return SectionResult(section, data=data, from_cache=True, last_synced=last_synced.isoformat())

        operation = f"{kind.value}.{section}"
        try:
            fetched = await call_with_retry(
                operation,
                getattr(provider, f"get_account_{section}"),
                credential,
                account_id,
            )
            synced_at = self.accounts.write_section(
                user_id, kind.value, account_id, section, fetched,
                authorization_id=account.authorization_id,
            )
            data = self.accounts.read_section(user_id, kind.value, account_id, section)
        except Exception as e:
            classified = to_classified(e, operation, request_id=request_id)
            return SectionResult(section, error=classified.to_dict(), classified=classified)

        return SectionResult(section, data=data, last_synced=synced_at.isoformat())

    def _refresh_connected_account(self, user_id: str, account, sections: Dict[str, SectionResult]) -> None:
        account_id = account.external_account_id
        details = sections['details'].data or {}
        fields = {
            'account_name': details.get('name'),
            'institution_name': details.get('institution_name'),
            'account_subtype': details.get('account_type'),
            'account_mask': details.get('number')[-4:] if details.get('number') else None,
            'currency': details.get('currency'),
            'balance': details.get('total_value'),
        }
        # A name given at link time wins over the provider's default label
        if account.account_name:
            fields['account_name'] = None
        if sections['details'].from_cache:
            fields = {}
        balances = sections['balances']
        if balances.ok and not balances.from_cache and balances.data:
            primary = balances.data[0]
            balance = primary.get('current', primary.get('cash'))
            if balance is not None and fields.get('balance') is None:
                fields['balance'] = balance
        if fields or not all(result.from_cache for result in sections.values()):
            self.accounts.mark_account_refreshed(user_id, account_id, **fields)


_account_aggregation_service: Optional[AccountAggregationService] = None


def get_account_aggregation_service() -> AccountAggregationService:
    """Get the global account aggregation service instance."""
    global _account_aggregation_service
    if _account_aggregation_service is None:
        _account_aggregation_service = AccountAggregationService()
    return _account_aggregation_service
