"""
Tests for the SQLAlchemy repositories: section mirrors, snapshots,
connection upserts and idempotency claims.
"""

from datetime import timedelta

import pytest

from utils.db.db_client import utc_now
from utils.db.trade_activity_repository import DEDUPLICATED, FAILED, SUCCEEDED
from utils.portfolio.abstract_provider import UpstreamAuthorization


class TestSectionMirrors:

    def test_positions_are_replaced(self, account_repository):
        account_repository.write_section('user-1', 'brokerage', 'acct-1', 'positions', [
            {'id': 'sym-aapl', 'symbol': 'AAPL'}, {'id': 'sym-msft', 'symbol': 'MSFT'},
        ])
        account_repository.write_section('user-1', 'brokerage', 'acct-1', 'positions', [
            {'id': 'sym-aapl', 'symbol': 'AAPL', 'units': 3},
        ])

        positions = account_repository.read_section('user-1', 'brokerage', 'acct-1', 'positions')
        assert positions == [{'id': 'sym-aapl', 'symbol': 'AAPL', 'units': 3}]

    def test_orders_are_upserted_without_pruning(self, account_repository):
        account_repository.write_section('user-1', 'brokerage', 'acct-1', 'orders', [
            {'id': 'ord-1', 'status': 'PENDING'},
        ])
        account_repository.write_section('user-1', 'brokerage', 'acct-1', 'orders', [
            {'id': 'ord-1', 'status': 'EXECUTED'}, {'id': 'ord-2', 'status': 'PENDING'},
        ])
        account_repository.write_section('user-1', 'brokerage', 'acct-1', 'orders', [])

        orders = account_repository.read_section('user-1', 'brokerage', 'acct-1', 'orders')
        assert [(o['id'], o['status']) for o in orders] == [('ord-1', 'EXECUTED'), ('ord-2', 'PENDING')]
        assert account_repository.get_mirrored_order('user-1', 'brokerage', 'acct-1', 'ord-2')['status'] == 'PENDING'

    def test_details_and_sync_times(self, account_repository):
        assert account_repository.read_section('user-1', 'brokerage', 'acct-1', 'details') is None
        assert account_repository.get_section_sync_times('user-1', 'brokerage', 'acct-1')['details'] is None

        synced_at = account_repository.write_section('user-1', 'brokerage', 'acct-1', 'details', {'name': 'IRA'})

        assert account_repository.read_section('user-1', 'brokerage', 'acct-1', 'details') == {'name': 'IRA'}
        times = account_repository.get_section_sync_times('user-1', 'brokerage', 'acct-1')
        assert times['details'] == synced_at
        assert times['positions'] is None

    def test_mirrors_are_per_user(self, account_repository):
        account_repository.write_section('user-1', 'wallet', '0xabc', 'details', {'name': 'Mine'})
        account_repository.write_section('user-2', 'wallet', '0xabc', 'details', {'name': 'Theirs'})

        assert account_repository.read_section('user-1', 'wallet', '0xabc', 'details') == {'name': 'Mine'}
        assert account_repository.read_section('user-2', 'wallet', '0xabc', 'details') == {'name': 'Theirs'}
        assert account_repository.get_section_sync_times('user-3', 'wallet', '0xabc')['details'] is None

    def test_unknown_section(self, account_repository):
        with pytest.raises(ValueError):
            account_repository.write_section('user-1', 'brokerage', 'acct-1', 'quotes', [])


class TestSnapshots:

    def test_snapshot_expires(self, account_repository):
        account_repository.save_snapshot('user-1', 'acct-1', {'account_id': 'acct-1'}, ttl_seconds=60)

        assert account_repository.get_live_snapshot('user-1', 'acct-1') == {'account_id': 'acct-1'}
        assert account_repository.get_live_snapshot('user-1', 'acct-1', now=utc_now() + timedelta(seconds=61)) is None

    def test_last_writer_wins(self, account_repository):
        account_repository.save_snapshot('user-1', 'acct-1', {'version': 1}, ttl_seconds=60)
        account_repository.save_snapshot('user-1', 'acct-1', {'version': 2}, ttl_seconds=60)
        assert account_repository.get_live_snapshot('user-1', 'acct-1') == {'version': 2}

        account_repository.delete_snapshot('user-1', 'acct-1')
        assert account_repository.get_live_snapshot('user-1', 'acct-1') is None

    def test_snapshots_are_per_user(self, account_repository):
        account_repository.save_snapshot('user-1', 'acct-1', {'owner': 'user-1'}, ttl_seconds=60)

        assert account_repository.get_live_snapshot('user-2', 'acct-1') is None

        account_repository.save_snapshot('user-2', 'acct-1', {'owner': 'user-2'}, ttl_seconds=60)
        account_repository.delete_snapshot('user-2', 'acct-1')

        assert account_repository.get_live_snapshot('user-1', 'acct-1') == {'owner': 'user-1'}


class TestConnectedAccounts:

    def test_upsert_keeps_one_active_row(self, account_repository):
        account_repository.upsert_connected_account('user-1', 'banking', 'chk-1', balance=100.0)
        account_repository.upsert_connected_account('user-1', 'banking', 'chk-1', account_name='Checking')

        accounts = account_repository.list_active_accounts('user-1')
        assert len(accounts) == 1
        assert accounts[0].balance == 100.0
        assert accounts[0].account_name == 'Checking'

    def test_expired_status(self, account_repository):
        account_repository.upsert_connected_account('user-1', 'brokerage', 'acct-1')
        account_repository.mark_account_expired('user-1', 'acct-1')
        assert account_repository.get_active_account('user-1', 'acct-1').status == 'expired'

        account_repository.mark_account_refreshed('user-1', 'acct-1', balance=10.0)
        account = account_repository.get_active_account('user-1', 'acct-1')
        assert account.status == 'connected'
        assert account.last_synced_at is not None


class TestConnections:

    def test_upsert_counts(self, connection_repository):
        first = [UpstreamAuthorization(id='auth-1', brokerage_name='Robinhood'),
                 UpstreamAuthorization(id='auth-2', brokerage_name='Schwab')]
        assert connection_repository.upsert_connections('user-1', first) == {'inserted': 2, 'updated': 0}

        second = [UpstreamAuthorization(id='auth-1', brokerage_name='Robinhood'),
                  UpstreamAuthorization(id='auth-2', brokerage_name='Schwab', disabled=True)]
        assert connection_repository.upsert_connections('user-1', second) == {'inserted': 0, 'updated': 1}
        assert len(connection_repository.list_connections('user-1')) == 2

    def test_credential_lifecycle(self, connection_repository):
        connection_repository.save_credential('user-1', 'brokerage', 'user-1', 'secret-1')
        connection_repository.save_credential('user-1', 'brokerage', 'user-1', 'secret-2')

        assert connection_repository.get_credential('user-1', 'brokerage').secret == 'secret-2'
        assert connection_repository.delete_credential('user-1', 'brokerage') is True
        assert connection_repository.get_credential('user-1', 'brokerage') is None
        assert connection_repository.delete_credential('user-1', 'brokerage') is False


class TestActivityClaims:

    def test_key_is_claimed_once(self, activity_repository):
        first = activity_repository.claim('user-1', 'PLACE', 'key-1', account_id='acct-1')
        second = activity_repository.claim('user-1', 'PLACE', 'key-1', account_id='acct-1')

        assert first.claimed
        assert not second.claimed
        assert second.existing['outcome'] == 'PENDING'

    def test_same_key_different_action(self, activity_repository):
        assert activity_repository.claim('user-1', 'PLACE', 'key-1').claimed
        assert activity_repository.claim('user-1', 'CANCEL', 'key-1').claimed

    def test_same_key_different_user(self, activity_repository):
        assert activity_repository.claim('user-1', 'PLACE', 'key-1').claimed
        other = activity_repository.claim('user-2', 'PLACE', 'key-1')

        assert other.claimed
        assert other.activity_id is not None

    def test_failed_claim_frees_the_key(self, activity_repository):
        claim = activity_repository.claim('user-1', 'PLACE', 'key-1')
        activity_repository.complete(claim.activity_id, FAILED, error_kind='VALIDATION', error_message='bad')

        retry = activity_repository.claim('user-1', 'PLACE', 'key-1')
        assert retry.claimed
        activity_repository.complete(retry.activity_id, SUCCEEDED, order_id='ord-9')

        duplicate = activity_repository.claim('user-1', 'PLACE', 'key-1')
        assert duplicate.existing['order_id'] == 'ord-9'

    def test_list_for_user(self, activity_repository):
        activity_repository.record('user-1', 'PLACE', 'key-1', DEDUPLICATED, account_id='acct-1')
        activity_repository.record('user-1', 'PLACE', 'key-2', FAILED, account_id='acct-2')
        activity_repository.record('user-2', 'PLACE', 'key-3', FAILED, account_id='acct-1')

        assert len(activity_repository.list_for_user('user-1')) == 2
        assert [a['idempotency_key'] for a in activity_repository.list_for_user('user-1', 'acct-1')] == ['key-1']
