"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
Timestamps are stored as ISO-8601 UTC strings.
"""

from sqlalchemy import Column, Integer, String, BigInteger

from app.storage import Base


class Wallet(Base):
    """
    One wallet per registered phone number.

    Table: wallets
    Primary Key: user_id ("user_<canonical phone>")
    Unique: phone (ensures idempotent registration)
    """
    __tablename__ = "wallets"

    user_id = Column(String, primary_key=True)
    address = Column(String, nullable=False, unique=True)
    phone = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(String, nullable=False)


class AuthToken(Base):
    """
    Single-use verification tokens, append-only.

    A token is consumed by setting used_at; consumed or expired rows
    are never reactivated.
    """
    __tablename__ = "auth_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone_number = Column(String, nullable=False, index=True)
    token = Column(String, nullable=False, index=True)
    expires_at = Column(String, nullable=False)
    used_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


class Connection(Base):
    """
    Bank connection lifecycle for a token.

    Table: connections
    Primary Key: token_address (at most one connection per token)
    status: pending -> connected, item_id immutable once set
    """
    __tablename__ = "connections"

    token_address = Column(String, primary_key=True)
    status = Column(String, nullable=False, index=True)
    connect_token = Column(String, nullable=False, index=True)
    connect_url = Column(String, nullable=False)
    expires_at = Column(String, nullable=True)
    account_id = Column(String, nullable=True)
    item_id = Column(String, nullable=True, index=True)
    last_balance_minor = Column(BigInteger, nullable=True)
    balance_observed_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class Transfer(Base):
    """Transfers between registered wallets, keyed by transaction reference."""
    __tablename__ = "transfers"

    reference = Column(String, primary_key=True)
    from_phone = Column(String, nullable=False, index=True)
    to_phone = Column(String, nullable=False, index=True)
    from_address = Column(String, nullable=False)
    to_address = Column(String, nullable=False)
    amount_minor = Column(BigInteger, nullable=False)
    created_at = Column(String, nullable=False, index=True)
