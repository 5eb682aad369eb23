"""
Shared constants for aggregation, reconciliation and trading services.

This module centralizes tunables so every service reads the same values.
All of them can be overridden through the environment (.env supported).
"""

from decouple import Csv, config

# Per-section mirror freshness, by provider kind
BROKERAGE_MIRROR_TTL_SECONDS = config('BROKERAGE_MIRROR_TTL_SECONDS', default=300, cast=int)
BANKING_MIRROR_TTL_SECONDS = config('BANKING_MIRROR_TTL_SECONDS', default=300, cast=int)
WALLET_MIRROR_TTL_SECONDS = config('WALLET_MIRROR_TTL_SECONDS', default=60, cast=int)

# Whole-view snapshot lifetime, independent of the mirrors
ACCOUNT_SNAPSHOT_TTL_SECONDS = config('ACCOUNT_SNAPSHOT_TTL_SECONDS', default=60, cast=int)

# Retries apply to TRANSIENT failures only
PROVIDER_MAX_RETRIES = config('PROVIDER_MAX_RETRIES', default=2, cast=int)
PROVIDER_RETRY_BASE_DELAY_SECONDS = config('PROVIDER_RETRY_BASE_DELAY_SECONDS', default=0.5, cast=float)
DEFAULT_RETRY_AFTER_SECONDS = 60

ACTIVITIES_LOOKBACK_DAYS = config('ACTIVITIES_LOOKBACK_DAYS', default=90, cast=int)

RECONCILIATION_INTERVAL_HOURS = config('RECONCILIATION_INTERVAL_HOURS', default=6, cast=int)
STALE_CONNECTION_DAYS = config('STALE_CONNECTION_DAYS', default=30, cast=int)

# Symbol search prefers listings on these exchanges
US_EXCHANGES = frozenset({'NYSE', 'NASDAQ', 'ARCA', 'BATS', 'AMEX', 'NYSEARCA'})

# SnapTrade security type codes -> our schema
SECURITY_TYPE_MAP = {
    'cs': 'equity',      # Common Stock
    'ad': 'equity',      # ADR (American Depositary Receipt)
    'et': 'etf',         # ETF
    'mf': 'mutual_fund', # Mutual Fund
    'bd': 'bond',        # Bond
    'op': 'option',      # Option
    'cr': 'crypto',      # Crypto
}

# Plaid Link settings for new banking items
PLAID_CLIENT_NAME = config('PLAID_CLIENT_NAME', default='Account Aggregation')
PLAID_LINK_PRODUCTS = config('PLAID_LINK_PRODUCTS', default='transactions', cast=Csv())
PLAID_COUNTRY_CODES = config('PLAID_COUNTRY_CODES', default='US,CA', cast=Csv())
