"""
Oracle sync worker: keeps the on-chain oracle in step with bank balances.

Two triggers feed the same balance routine:
- aggregator webhooks (CONNECTION_SUCCESS, ACCOUNTS_UPDATED)
- a polling timer that re-syncs every connected token

Balance writes are absolute "set balance" calls. Work on one token is
serialized in-process and observations older than the last recorded write
are dropped, so overlapping webhook and poll updates keep the newest value.
Negative or missing balances are never written.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from fastapi.concurrency import run_in_threadpool

from app.aggregator import PluggyClient
from app.connections import ConnectionRegistry
from app.errors import ConfigurationError, ProtocolError, ServiceError, ValidationError
from app.metrics import record_oracle_sync
from app.utils import KeyedLock, format_timestamp, to_minor_units, utc_now

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 600


class WebhookEventType(str, Enum):
    CONNECTION_SUCCESS = "CONNECTION_SUCCESS"
    ACCOUNTS_UPDATED = "ACCOUNTS_UPDATED"
    UNKNOWN = "UNKNOWN"


# Aggregator event names mapped onto the variants we act on
EVENT_TYPES = {
    "CONNECTION_SUCCESS": WebhookEventType.CONNECTION_SUCCESS,
    "item/created": WebhookEventType.CONNECTION_SUCCESS,
    "ACCOUNTS_UPDATED": WebhookEventType.ACCOUNTS_UPDATED,
    "item/updated": WebhookEventType.ACCOUNTS_UPDATED,
}


@dataclass(frozen=True)
class WebhookEvent:
    type: WebhookEventType
    raw_type: str
    item_id: Optional[str] = None


def parse_webhook_event(payload: Any) -> WebhookEvent:
    """
    Parse an aggregator webhook body into a WebhookEvent.

    Raises:
        ValidationError: missing type, or missing itemId on a known event type
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid webhook event: body must be an object")

    raw_type = payload.get("type") or payload.get("event")
    if not raw_type or not isinstance(raw_type, str):
        raise ValidationError("Invalid webhook event: missing type")

    event_type = EVENT_TYPES.get(raw_type, WebhookEventType.UNKNOWN)
    item_id = payload.get("itemId")
    if event_type is not WebhookEventType.UNKNOWN and (not item_id or not isinstance(item_id, str)):
        raise ValidationError(f"Invalid {raw_type} event: missing itemId")

    return WebhookEvent(type=event_type, raw_type=raw_type, item_id=item_id if isinstance(item_id, str) else None)


class SyncOutcome(str, Enum):
    UPDATED = "updated"
    UNKNOWN_ITEM = "unknown_item"
    INACTIVE = "inactive"
    NO_ACCOUNTS = "no_accounts"
    ACCOUNT_MISSING = "account_missing"
    INVALID_BALANCE = "invalid_balance"
    STALE = "stale"
    FAILED = "failed"


class OracleSyncWorker:
    def __init__(
        self,
        registry: ConnectionRegistry,
        aggregator: PluggyClient,
        oracle=None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._registry = registry
        self._aggregator = aggregator
        self._oracle = oracle
        self._poll_interval = poll_interval
        self._clock = clock
        self._locks = KeyedLock()

    def _require_oracle(self):
        if self._oracle is None:
            raise ConfigurationError("Oracle contract not configured")
        return self._oracle

    # -------------------------------------------------------------------------
    # Webhook path
    # -------------------------------------------------------------------------

    def handle_webhook(self, event: WebhookEvent) -> str:
        """
        Dispatch a parsed webhook event.

        Returns:
            Result label: "processed", "ignored" or a SyncOutcome value
        """
        if not self._aggregator.configured:
            raise ConfigurationError("Pluggy not configured")

        if event.type is WebhookEventType.CONNECTION_SUCCESS:
            return self.on_connection_success(event.item_id)
        elif event.type is WebhookEventType.ACCOUNTS_UPDATED:
            return self.sync_account_balance(event.item_id, trigger="webhook").value
        else:
            logger.info(f"Unhandled webhook event type: {event.raw_type}")
            return "ignored"

    def on_connection_success(self, item_id: str) -> str:
        """
        Bind a freshly connected bank item to its token on the oracle.

        Raises:
            ProtocolError: no usable account data for the item
            TransientExternalError: aggregator or ledger call failed
            ConfigurationError: oracle not configured
        """
        connection = self._registry.find_by_connect_token(item_id)
        if connection is None:
            logger.error(f"No token address found for itemId: {item_id}")
            record_oracle_sync("webhook", SyncOutcome.UNKNOWN_ITEM.value)
            return SyncOutcome.UNKNOWN_ITEM.value

        oracle = self._require_oracle()
        token_address = connection.token_address

        with self._locks.hold(token_address):
            # Re-read under the lock so redelivered events link only once
            connection = self._registry.get(token_address)
            if connection.status == "connected":
                bound_item_id = connection.item_id
            else:
                bound_item_id = None
                self._link(oracle, token_address, item_id)

        if bound_item_id is not None:
            logger.info(f"Token {token_address} already connected, refreshing balance")
            return self.sync_account_balance(bound_item_id, trigger="webhook").value

        record_oracle_sync("webhook", "connected")
        return "processed"

    def _link(self, oracle, token_address: str, item_id: str) -> None:
        observed_at = format_timestamp(self._clock(), precise=True)
        accounts = self._aggregator.list_accounts(item_id)
        if not accounts:
            raise ProtocolError("No accounts found for the connected item")

        primary = accounts[0]
        if primary.balance is None or primary.balance < 0:
            raise ProtocolError("Invalid account data received from Pluggy")
        balance_minor = to_minor_units(primary.balance)

        oracle.link_account(token_address, primary.id)
        oracle.update_balance(token_address, primary.id, balance_minor)

        if not self._registry.mark_connected(token_address, primary.id, item_id):
            raise ProtocolError("Connection already bound to another item")
        self._registry.record_balance(token_address, balance_minor, observed_at)
        logger.info(f"Successfully connected account {primary.id} to token {token_address}")

    # -------------------------------------------------------------------------
    # Balance sync shared by webhook and polling
    # -------------------------------------------------------------------------

    def sync_account_balance(self, item_id: str, trigger: str = "webhook") -> SyncOutcome:
        """
        Fetch the linked account's balance and write it to the oracle.

        Non-actionable situations (unknown item, empty account list, bad
        balance, stale observation) are logged and reported as outcomes.
        Aggregator and ledger failures raise so the caller decides whether
        to fail the request or move on.
        """
        outcome = self._sync(item_id)
        record_oracle_sync(trigger, outcome.value)
        return outcome

    def _sync(self, item_id: str) -> SyncOutcome:
        connection = self._registry.find_by_item_id(item_id)
        if connection is None:
            logger.error(f"No token address found for itemId: {item_id}")
            return SyncOutcome.UNKNOWN_ITEM
        if connection.status != "connected":
            logger.warning(f"Connection not active for token: {connection.token_address}")
            return SyncOutcome.INACTIVE

        oracle = self._require_oracle()
        token_address = connection.token_address

        with self._locks.hold(token_address):
            observed_at = format_timestamp(self._clock(), precise=True)
            accounts = self._aggregator.list_accounts(item_id)
            if not accounts:
                logger.warning(f"No accounts found for itemId: {item_id}")
                return SyncOutcome.NO_ACCOUNTS

            account = next((a for a in accounts if a.id == connection.account_id), None)
            if account is None:
                logger.warning(f"Linked account {connection.account_id} missing for itemId: {item_id}")
                return SyncOutcome.ACCOUNT_MISSING
            if account.balance is None or account.balance < 0:
                logger.error(f"Invalid balance data for account {account.id}")
                return SyncOutcome.INVALID_BALANCE

            current = self._registry.get(token_address)
            if current is not None and current.balance_observed_at and current.balance_observed_at > observed_at:
                logger.warning(f"Dropping stale balance for token {token_address}")
                return SyncOutcome.STALE

            balance_minor = to_minor_units(account.balance)
            oracle.update_balance(token_address, account.id, balance_minor)
            if not self._registry.record_balance(token_address, balance_minor, observed_at):
                logger.warning(f"Newer balance already recorded for token {token_address}")
                return SyncOutcome.STALE

        logger.info(f"Updated balance for account {account.id}: {account.balance} BRL")
        return SyncOutcome.UPDATED

    # -------------------------------------------------------------------------
    # Polling path
    # -------------------------------------------------------------------------

    def poll_once(self) -> Dict[str, str]:
        """
        Re-sync every connected token once.

        Each token is isolated: a failure is logged and the pass continues.

        Returns:
            Mapping of token address to outcome label
        """
        self._require_oracle()
        results: Dict[str, str] = {}
        for connection in self._registry.list_connected():
            try:
                outcome = self.sync_account_balance(connection.item_id, trigger="poll")
                results[connection.token_address] = outcome.value
            except ConfigurationError:
                raise
            except ServiceError as e:
                logger.error(f"Balance sync failed for token {connection.token_address}: {e.message}")
                record_oracle_sync("poll", SyncOutcome.FAILED.value)
                results[connection.token_address] = SyncOutcome.FAILED.value
            except Exception:
                logger.exception(f"Unexpected error syncing token {connection.token_address}")
                record_oracle_sync("poll", SyncOutcome.FAILED.value)
                results[connection.token_address] = SyncOutcome.FAILED.value
        logger.info(f"Polling pass finished for {len(results)} connected tokens")
        return results

    async def run_polling(self) -> None:
        """Run poll_once on a fixed interval until cancelled."""
        logger.info(f"Balance polling started, interval={self._poll_interval}s")
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                await run_in_threadpool(self.poll_once)
            except ConfigurationError as e:
                logger.error(f"Balance polling skipped: {e.message}")
            except Exception:
                logger.exception("Balance polling pass failed")
