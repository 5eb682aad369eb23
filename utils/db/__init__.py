"""
Relational store for connected accounts, provider mirrors, snapshots and the
trade activity log.
"""

from .db_client import Base, configure_database, get_session_factory, init_db, session_scope, utc_now
from .account_repository import AccountRepository, get_account_repository
from .connection_repository import ConnectionRepository, get_connection_repository
from .trade_activity_repository import TradeActivityRepository, get_trade_activity_repository

__all__ = [
    'Base',
    'configure_database',
    'get_session_factory',
    'init_db',
    'session_scope',
    'utc_now',
    'AccountRepository',
    'get_account_repository',
    'ConnectionRepository',
    'get_connection_repository',
    'TradeActivityRepository',
    'get_trade_activity_repository',
]
