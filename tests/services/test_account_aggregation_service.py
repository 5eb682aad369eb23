"""
Tests for AccountAggregationService

Covers the assembled account view: per-section freshness, partial failure,
whole-view snapshots and credential resolution.
"""

import pytest

from services.account_aggregation_service import (
    AccountAggregationService, AccountNotFoundError, mirror_ttl_seconds,
)
from utils.portfolio.abstract_provider import ProviderError, ProviderKind
from utils.portfolio.error_classifier import ClassifiedError, ErrorKind

USER_ID = "user-1"
ACCOUNT_ID = "acct-1"


@pytest.fixture
def service(registry, account_repository, connection_repository):
    return AccountAggregationService(
        registry=registry,
        account_repository=account_repository,
        connection_repository=connection_repository,
    )


def _unavailable():
    return ProviderError("balances failed: Service Unavailable", "fake-brokerage", status_code=503)


class TestAccountView:
    """Assembling the five sections of an account."""

    @pytest.mark.asyncio
    async def test_full_view_from_upstream(self, service, registered_user, fake_brokerage):
        view = await service.get_account_view(USER_ID, ACCOUNT_ID)

        assert view['account_id'] == ACCOUNT_ID
        assert view['provider'] == 'brokerage'
        assert view['cached'] is False
        for section in ('details', 'balances', 'positions', 'orders', 'activities'):
            assert view[section]['error'] is None
            assert view[section]['cached'] is False
            assert view[section]['last_synced'] is not None
        assert view['details']['data']['institution_name'] == 'Robinhood'
        assert [p['symbol'] for p in view['positions']['data']] == ['AAPL', 'MSFT']
        assert view['account']['last_synced_at'] is not None

    @pytest.mark.asyncio
    async def test_failed_section_does_not_fail_the_view(self, service, registered_user, fake_brokerage,
                                                         account_repository):
        fake_brokerage.fail('get_account_balances', _unavailable())

        view = await service.get_account_view(USER_ID, ACCOUNT_ID)

        assert view['balances']['data'] is None
        assert view['balances']['error']['code'] == ErrorKind.TRANSIENT.value
        assert view['positions']['error'] is None
        assert len(view['positions']['data']) == 2
        assert view['orders']['error'] is None
        # TRANSIENT reads are retried before giving up
        assert fake_brokerage.count('get_account_balances') == 3
        # A partial view is never snapshotted
        assert account_repository.get_live_snapshot(USER_ID, ACCOUNT_ID) is None

    @pytest.mark.asyncio
    async def test_fresh_sections_are_served_from_the_mirror(self, service, registered_user, fake_brokerage):
        fake_brokerage.fail('get_account_balances', _unavailable(), times=3)
        await service.get_account_view(USER_ID, ACCOUNT_ID)

        view = await service.get_account_view(USER_ID, ACCOUNT_ID)

        # Only the section that failed the first time goes upstream again
        assert fake_brokerage.count('get_account_positions') == 1
        assert fake_brokerage.count('get_account_details') == 1
        assert fake_brokerage.count('get_account_balances') == 4
        assert view['positions']['cached'] is True
        assert view['balances']['cached'] is False
        assert view['balances']['data'][0]['cash'] == 2500.0

    @pytest.mark.asyncio
    async def test_mirror_reflects_latest_positions(self, service, registered_user, fake_brokerage):
        await service.get_account_view(USER_ID, ACCOUNT_ID)
        fake_brokerage.positions = fake_brokerage.positions[:1]

        view = await service.refresh_account(USER_ID, ACCOUNT_ID)

        assert [p['symbol'] for p in view['positions']['data']] == ['AAPL']

    @pytest.mark.asyncio
    async def test_details_failure_fails_the_request(self, service, registered_user, fake_brokerage):
        fake_brokerage.fail('get_account_details', ProviderError("boom", "fake-brokerage", status_code=503))

        with pytest.raises(ClassifiedError) as exc_info:
            await service.get_account_view(USER_ID, ACCOUNT_ID)

        assert exc_info.value.kind == ErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_expired_authorization_marks_account(self, service, registered_user, fake_brokerage,
                                                       account_repository):
        fake_brokerage.fail('get_account_details',
                            ProviderError("Unauthorized", "fake-brokerage", "3003", status_code=401))

        with pytest.raises(ClassifiedError) as exc_info:
            await service.get_account_view(USER_ID, ACCOUNT_ID)

        assert exc_info.value.kind == ErrorKind.AUTH_EXPIRED
        assert fake_brokerage.count('get_account_details') == 1
        assert account_repository.get_active_account(USER_ID, ACCOUNT_ID).status == 'expired'


class TestSnapshots:
    """Whole-view snapshot behavior."""

    @pytest.mark.asyncio
    async def test_complete_view_is_snapshotted(self, service, registered_user, fake_brokerage,
                                                account_repository):
        await service.get_account_view(USER_ID, ACCOUNT_ID)
        assert account_repository.get_live_snapshot(USER_ID, ACCOUNT_ID) is not None

        view = await service.get_account_view(USER_ID, ACCOUNT_ID)

        assert view['cached'] is True
        assert fake_brokerage.count('get_account_details') == 1

    @pytest.mark.asyncio
    async def test_refresh_bypasses_snapshot_and_mirror(self, service, registered_user, fake_brokerage):
        await service.get_account_view(USER_ID, ACCOUNT_ID)

        view = await service.refresh_account(USER_ID, ACCOUNT_ID)

        assert view['cached'] is False
        assert view['positions']['cached'] is False
        assert fake_brokerage.count('get_account_details') == 2
        assert fake_brokerage.count('get_account_activities') == 2


class TestAccountResolution:
    """Account lookup and credentials."""

    @pytest.mark.asyncio
    async def test_unknown_account(self, service, registered_user):
        with pytest.raises(AccountNotFoundError):
            await service.get_account_view(USER_ID, 'does-not-exist')

    @pytest.mark.asyncio
    async def test_other_users_account_is_not_visible(self, service, registered_user):
        with pytest.raises(AccountNotFoundError):
            await service.get_account_view('someone-else', ACCOUNT_ID)

    @pytest.mark.asyncio
    async def test_missing_credential_is_not_registered(self, service, registered_user, connection_repository,
                                                        fake_brokerage):
        connection_repository.delete_credential(USER_ID, 'brokerage')

        with pytest.raises(ClassifiedError) as exc_info:
            await service.get_account_view(USER_ID, ACCOUNT_ID)

        assert exc_info.value.kind == ErrorKind.NOT_REGISTERED
        assert fake_brokerage.calls == []


class TestListAccounts:

    def test_totals_by_provider(self, service, registered_user, account_repository):
        account_repository.upsert_connected_account(USER_ID, 'banking', 'chk-1', balance=1500.0, currency='USD')
        account_repository.upsert_connected_account(USER_ID, 'wallet', '0xabc', balance=2.5, currency='ETH')

        result = service.list_accounts(USER_ID)

        assert result['count'] == 3
        assert result['totals_by_provider'] == {'banking': 1500.0, 'brokerage': 12500.0}
        assert result['total_balance'] == 14000.0

    def test_mirror_ttls(self):
        assert mirror_ttl_seconds(ProviderKind.WALLET) < mirror_ttl_seconds(ProviderKind.BROKERAGE)
