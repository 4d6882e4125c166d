"""
Connection registry: bank-connection lifecycle per token.

A connection is created as pending when the token owner starts the bank
connect flow and becomes connected once the aggregator confirms the item.
Token addresses are stored in checksum form so each token maps to exactly
one row.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import sessionmaker
from web3 import Web3

from app import storage
from app.aggregator import ConnectSession, PluggyClient
from app.errors import ConfigurationError, ValidationError
from app.utils import format_timestamp, is_valid_address, utc_now

logger = logging.getLogger(__name__)


def canonical_token_address(token_address: str) -> str:
    return Web3.to_checksum_address(token_address)


class ConnectionRegistry:
    def __init__(
        self,
        session_factory: sessionmaker,
        aggregator: PluggyClient,
        base_url: Optional[str],
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._aggregator = aggregator
        self._base_url = (base_url or "").rstrip("/")
        self._clock = clock

    def initiate_connection(self, token_address: str) -> ConnectSession:
        """
        Open an aggregator connect session for a token.

        Raises:
            ValidationError: malformed address, or token already connected
            ConfigurationError: aggregator or BASE_URL not configured
        """
        if not is_valid_address(token_address):
            raise ValidationError("Invalid token address provided")
        if not self._aggregator.configured:
            raise ConfigurationError("Pluggy not configured")
        if not self._base_url:
            raise ConfigurationError("BASE_URL environment variable is required")

        token_address = canonical_token_address(token_address)
        existing = self.get(token_address)
        if existing is not None and existing.status == "connected":
            raise ValidationError("Token already connected to a bank account")

        session = self._aggregator.create_connect_session(
            webhook_url=f"{self._base_url}/api/webhooks/pluggy",
            redirect_url=f"{self._base_url}/callback/pluggy",
        )

        with self._session_factory() as db:
            storage.save_pending_connection(
                db,
                token_address=token_address,
                connect_token=session.connect_token,
                connect_url=session.connect_url,
                expires_at=session.expires_at,
                now=format_timestamp(self._clock()),
            )

        logger.info(f"Bank connection initiated for token {token_address}")
        return session

    def get(self, token_address: str):
        with self._session_factory() as db:
            return storage.get_connection(db, canonical_token_address(token_address))

    def find_by_connect_token(self, connect_token: str):
        with self._session_factory() as db:
            return storage.find_connection_by_connect_token(db, connect_token)

    def find_by_item_id(self, item_id: str):
        with self._session_factory() as db:
            return storage.find_connection_by_item_id(db, item_id)

    def list_connected(self) -> List:
        with self._session_factory() as db:
            return storage.list_connected_connections(db)

    def mark_connected(self, token_address: str, account_id: str, item_id: str) -> bool:
        with self._session_factory() as db:
            updated = storage.mark_connection_connected(
                db,
                token_address=token_address,
                account_id=account_id,
                item_id=item_id,
                now=format_timestamp(self._clock()),
            )
        if not updated:
            logger.error(f"Refusing to rebind token {token_address} to item {item_id}")
        return updated

    def record_balance(self, token_address: str, balance_minor: int, observed_at: str) -> bool:
        with self._session_factory() as db:
            return storage.record_connection_balance(db, token_address, balance_minor, observed_at)

    def count(self) -> int:
        with self._session_factory() as db:
            return storage.count_connections(db)
