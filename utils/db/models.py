"""
ORM models for connected accounts, provider mirrors, snapshots and the trade
activity log.

Timestamps are naive UTC (see db_client.utc_now).
"""

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String,
    Text, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship

from utils.db.db_client import Base, utc_now


class ConnectedAccount(Base):
    """User-facing record of one linked external account."""
    __tablename__ = "connected_accounts"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(16), nullable=False)             # banking | brokerage | wallet
    external_account_id = Column(String(128), nullable=False)
    authorization_id = Column(String(128), index=True)        # upstream grant the account lives under
    account_name = Column(String(255))
    institution_name = Column(String(255))
    account_subtype = Column(String(64))
    account_mask = Column(String(32))
    currency = Column(String(8), default="USD")
    balance = Column(Float)
    status = Column(String(16), nullable=False, default="connected")   # connected | disconnected | expired
    is_active = Column(Boolean, nullable=False, default=True)
    last_synced_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index(
            "uq_connected_accounts_active",
            "user_id", "provider", "external_account_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    def to_dict(self):
        return {
            "account_id": self.external_account_id,
            "provider": self.provider,
            "authorization_id": self.authorization_id,
            "account_name": self.account_name,
            "institution_name": self.institution_name,
            "account_subtype": self.account_subtype,
            "account_mask": self.account_mask,
            "currency": self.currency,
            "balance": self.balance,
            "status": self.status,
            "is_active": self.is_active,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }


class ProviderCredential(Base):
    """Provider-side identity for a user (brokerage user secret, banking access token)."""
    __tablename__ = "provider_credentials"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False)
    provider = Column(String(16), nullable=False)
    provider_user_id = Column(String(128), nullable=False)
    secret = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_provider_credentials_user_provider"),
    )


class ProviderConnection(Base):
    """One brokerage authorization; parent of the accounts granted through it."""
    __tablename__ = "provider_connections"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(16), nullable=False, default="brokerage")
    authorization_id = Column(String(128), nullable=False, unique=True)
    brokerage_name = Column(String(255))
    brokerage_type = Column(String(64))
    disabled = Column(Boolean, nullable=False, default=False)
    last_refreshed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    accounts = relationship("ProviderAccount", back_populates="connection")

    def to_dict(self):
        return {
            "authorization_id": self.authorization_id,
            "brokerage_name": self.brokerage_name,
            "brokerage_type": self.brokerage_type,
            "disabled": self.disabled,
            "status": "disabled" if self.disabled else "active",
            "last_refreshed_at": self.last_refreshed_at.isoformat() if self.last_refreshed_at else None,
        }


class ProviderAccount(Base):
    """
    Mirror of an upstream account.

    The *_synced_at columns are the per-section freshness clock.
    """
    __tablename__ = "provider_accounts"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(16), nullable=False)
    external_account_id = Column(String(128), nullable=False)
    connection_id = Column(Integer, ForeignKey("provider_connections.id", ondelete="CASCADE"), index=True)
    details = Column(JSON)
    details_synced_at = Column(DateTime)
    balances_synced_at = Column(DateTime)
    positions_synced_at = Column(DateTime)
    orders_synced_at = Column(DateTime)
    activities_synced_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    connection = relationship("ProviderConnection", back_populates="accounts")

    __table_args__ = (
        UniqueConstraint("user_id", "provider", "external_account_id", name="uq_provider_accounts_external"),
    )


class _MirrorRowMixin:
    id = Column(Integer, primary_key=True)
    resource_id = Column(String(128), nullable=False)
    payload = Column(JSON, nullable=False)
    synced_at = Column(DateTime, nullable=False, default=utc_now)


class ProviderBalance(_MirrorRowMixin, Base):
    __tablename__ = "provider_balances"

    account_id = Column(Integer, ForeignKey("provider_accounts.id", ondelete="CASCADE"), nullable=False, index=True)

    __table_args__ = (UniqueConstraint("account_id", "resource_id", name="uq_provider_balances_resource"),)


class ProviderPosition(_MirrorRowMixin, Base):
    __tablename__ = "provider_positions"

    account_id = Column(Integer, ForeignKey("provider_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    symbol = Column(String(64))

    __table_args__ = (UniqueConstraint("account_id", "resource_id", name="uq_provider_positions_resource"),)


class ProviderOrder(_MirrorRowMixin, Base):
    __tablename__ = "provider_orders"

    account_id = Column(Integer, ForeignKey("provider_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(32))

    __table_args__ = (UniqueConstraint("account_id", "resource_id", name="uq_provider_orders_resource"),)


class ProviderActivity(_MirrorRowMixin, Base):
    __tablename__ = "provider_activities"

    account_id = Column(Integer, ForeignKey("provider_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    trade_date = Column(String(32))

    __table_args__ = (UniqueConstraint("account_id", "resource_id", name="uq_provider_activities_resource"),)


class AccountSnapshot(Base):
    """Whole-view cache of the last assembled account view."""
    __tablename__ = "account_snapshots"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False)
    account_id = Column(String(128), nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    expires_at = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("user_id", "account_id", name="uq_account_snapshots_user_account"),
    )


class TradeActivityLog(Base):
    """One row per mutating trade call; doubles as the idempotency guard."""
    __tablename__ = "trade_activity_log"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    action = Column(String(16), nullable=False)            # place | cancel | replace
    account_id = Column(String(128))
    order_id = Column(String(128))
    trade_id = Column(String(128))
    idempotency_key = Column(String(128), nullable=False)
    outcome = Column(String(16), nullable=False, default="PENDING")   # PENDING | SUCCEEDED | FAILED | DEDUPLICATED
    error_kind = Column(String(32))
    error_message = Column(Text)
    request_id = Column(String(64))
    detail = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index(
            "uq_trade_activity_live_key",
            "user_id", "action", "idempotency_key",
            unique=True,
            sqlite_where=text("outcome IN ('PENDING', 'SUCCEEDED')"),
            postgresql_where=text("outcome IN ('PENDING', 'SUCCEEDED')"),
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "account_id": self.account_id,
            "order_id": self.order_id,
            "trade_id": self.trade_id,
            "idempotency_key": self.idempotency_key,
            "outcome": self.outcome,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "request_id": self.request_id,
            "detail": self.detail,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
