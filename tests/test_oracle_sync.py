"""
Tests for the oracle sync worker.

Tests cover:
- Webhook event parsing (known types, aliases, unknown types)
- CONNECTION_SUCCESS linking and redelivery
- Balance sync outcomes (idempotency, stale and invalid balances)
- Polling isolation between tokens
"""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from app.connections import ConnectionRegistry
from app.errors import ConfigurationError, ProtocolError, TransientExternalError, ValidationError
from app.models import Connection
from app.oracle_sync import (
    OracleSyncWorker,
    SyncOutcome,
    WebhookEventType,
    parse_webhook_event,
)
from app.storage import SessionLocal
from conftest import TOKEN_ADDRESS, FakeAggregator, connect_token

OTHER_TOKEN = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


class TestParseWebhookEvent:
    """Test aggregator webhook parsing."""

    def test_connection_success(self):
        event = parse_webhook_event({"type": "CONNECTION_SUCCESS", "itemId": "item-1"})
        assert event.type is WebhookEventType.CONNECTION_SUCCESS
        assert event.item_id == "item-1"

    @pytest.mark.parametrize("raw_type,expected", [
        ("item/created", WebhookEventType.CONNECTION_SUCCESS),
        ("item/updated", WebhookEventType.ACCOUNTS_UPDATED),
        ("ACCOUNTS_UPDATED", WebhookEventType.ACCOUNTS_UPDATED),
    ])
    def test_aliases(self, raw_type, expected):
        assert parse_webhook_event({"type": raw_type, "itemId": "item-1"}).type is expected

    def test_unknown_type_without_item_id(self):
        event = parse_webhook_event({"type": "item/deleted"})
        assert event.type is WebhookEventType.UNKNOWN
        assert event.raw_type == "item/deleted"

    @pytest.mark.parametrize("payload", [
        {},
        {"itemId": "item-1"},
        {"type": "ACCOUNTS_UPDATED"},
        {"type": "CONNECTION_SUCCESS", "itemId": 42},
        ["not", "an", "object"],
    ])
    def test_invalid_events(self, payload):
        with pytest.raises(ValidationError):
            parse_webhook_event(payload)


class TestConnectionSuccess:
    """Test binding a bank item to its token."""

    def test_links_account_and_writes_balance(self, registry, aggregator, oracle, worker):
        item_id = connect_token(registry, aggregator, worker, "1234.56", "99")

        account_id = f"acc-{item_id}-0"
        assert oracle.links == [(TOKEN_ADDRESS, account_id)]
        assert oracle.updates == [(TOKEN_ADDRESS, account_id, 123456)]

        connection = registry.get(TOKEN_ADDRESS)
        assert connection.status == "connected"
        assert connection.item_id == item_id
        assert connection.account_id == account_id
        assert connection.last_balance_minor == 123456

    def test_zero_balance_is_written(self, registry, aggregator, oracle, worker):
        connect_token(registry, aggregator, worker, "0")
        assert oracle.updates[0][2] == 0

    def test_unknown_item_is_a_noop(self, registry, oracle, worker):
        result = worker.on_connection_success("never-issued")

        assert result == SyncOutcome.UNKNOWN_ITEM.value
        assert oracle.links == []
        assert registry.count() == 0

    def test_no_accounts_is_protocol_error(self, registry, aggregator, oracle, worker):
        session = registry.initiate_connection(TOKEN_ADDRESS)
        with pytest.raises(ProtocolError):
            worker.on_connection_success(session.connect_token)
        assert oracle.links == []
        assert registry.get(TOKEN_ADDRESS).status == "pending"

    @pytest.mark.parametrize("balance", [None, "-1"])
    def test_invalid_primary_balance_is_protocol_error(self, registry, aggregator, oracle, worker, balance):
        session = registry.initiate_connection(TOKEN_ADDRESS)
        aggregator.set_accounts(session.connect_token, balance)

        with pytest.raises(ProtocolError):
            worker.on_connection_success(session.connect_token)
        assert oracle.updates == []

    def test_redelivery_only_refreshes_balance(self, registry, aggregator, oracle, worker):
        item_id = connect_token(registry, aggregator, worker, "10")
        aggregator.set_accounts(item_id, "20")

        worker.on_connection_success(item_id)

        assert len(oracle.links) == 1
        assert [u[2] for u in oracle.updates] == [1000, 2000]

    def test_oracle_required(self, registry, aggregator):
        worker = OracleSyncWorker(registry, aggregator, oracle=None)
        session = registry.initiate_connection(TOKEN_ADDRESS)
        aggregator.set_accounts(session.connect_token, "10")

        with pytest.raises(ConfigurationError):
            worker.on_connection_success(session.connect_token)


class TestSyncAccountBalance:
    """Test ACCOUNTS_UPDATED and polling balance sync."""

    def test_updates_oracle(self, registry, aggregator, oracle, worker):
        item_id = connect_token(registry, aggregator, worker, "10")
        aggregator.set_accounts(item_id, "25.75")

        assert worker.sync_account_balance(item_id) is SyncOutcome.UPDATED
        assert oracle.updates[-1][2] == 2575
        assert registry.get(TOKEN_ADDRESS).last_balance_minor == 2575

    def test_repeated_sync_is_idempotent(self, registry, aggregator, oracle, worker):
        item_id = connect_token(registry, aggregator, worker, "10")

        worker.sync_account_balance(item_id)
        worker.sync_account_balance(item_id)

        assert {u[2] for u in oracle.updates} == {1000}
        assert registry.get(TOKEN_ADDRESS).last_balance_minor == 1000

    def test_negative_balance_is_never_written(self, registry, aggregator, oracle, worker):
        item_id = connect_token(registry, aggregator, worker, "10")
        aggregator.set_accounts(item_id, "-5")

        assert worker.sync_account_balance(item_id) is SyncOutcome.INVALID_BALANCE
        assert all(u[2] >= 0 for u in oracle.updates)
        assert registry.get(TOKEN_ADDRESS).last_balance_minor == 1000

    def test_unmatched_item_leaves_registry_unchanged(self, registry, aggregator, oracle, worker):
        connect_token(registry, aggregator, worker, "10")
        before = registry.count()

        assert worker.sync_account_balance("unknown-item") is SyncOutcome.UNKNOWN_ITEM
        assert registry.count() == before
        assert len(oracle.updates) == 1

    def test_empty_account_list(self, registry, aggregator, oracle, worker):
        item_id = connect_token(registry, aggregator, worker, "10")
        aggregator.accounts[item_id] = []

        assert worker.sync_account_balance(item_id) is SyncOutcome.NO_ACCOUNTS

    def test_linked_account_missing(self, registry, aggregator, oracle, worker):
        item_id = connect_token(registry, aggregator, worker, "10")
        aggregator.set_accounts("elsewhere", "10")
        aggregator.accounts[item_id] = aggregator.accounts["elsewhere"]

        assert worker.sync_account_balance(item_id) is SyncOutcome.ACCOUNT_MISSING

    def test_pending_connection_is_inactive(self, registry, aggregator, oracle, worker):
        registry.initiate_connection(TOKEN_ADDRESS)
        # Pending rows normally have no item id; bind one to reach the status check
        with SessionLocal() as db:
            db.get(Connection, TOKEN_ADDRESS).item_id = "item-x"
            db.commit()

        assert worker.sync_account_balance("item-x") is SyncOutcome.INACTIVE

    def test_stale_observation_is_dropped(self, registry, aggregator, oracle):
        late = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
        early = late - timedelta(minutes=5)
        times = iter([late, early])

        worker = OracleSyncWorker(registry, aggregator, oracle=oracle, clock=lambda: next(times))
        item_id = connect_token(registry, aggregator, worker, "10")
        aggregator.set_accounts(item_id, "5")

        assert worker.sync_account_balance(item_id) is SyncOutcome.STALE
        assert registry.get(TOKEN_ADDRESS).last_balance_minor == 1000
    def test_concurrent_syncs_keep_latest_balance(self, registry, aggregator, oracle, worker):
        item_id = connect_token(registry, aggregator, worker, "10")
        aggregator.set_accounts(item_id, "25")
        start = threading.Barrier(4)
        outcomes = []

        def sync():
            start.wait()
            outcomes.append(worker.sync_account_balance(item_id))

        threads = [threading.Thread(target=sync) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert set(outcomes) <= {SyncOutcome.UPDATED, SyncOutcome.STALE}
        assert [u[2] for u in oracle.updates[1:]] == [2500] * len(oracle.updates[1:])
        assert len(oracle.updates) >= 2
        assert registry.get(TOKEN_ADDRESS).last_balance_minor == 2500


def database_down():
    return OperationalError("SELECT 1", {}, Exception("database is locked"))


class FlakyAggregator(FakeAggregator):
    def __init__(self, failing_item: str):
        super().__init__()
        self.failing_item = failing_item

    def list_accounts(self, item_id):
        if item_id == self.failing_item:
            raise TransientExternalError("Bank aggregator request failed: /accounts")
        return super().list_accounts(item_id)


class BrokenAggregator(FakeAggregator):
    def __init__(self, failing_item: str):
        super().__init__()
        self.failing_item = failing_item

    def list_accounts(self, item_id):
        if item_id == self.failing_item:
            raise database_down()
        return super().list_accounts(item_id)


class TestPolling:
    """Test the polling pass."""

    def test_poll_isolates_failures(self, db_tables, oracle):
        aggregator = FlakyAggregator(failing_item=None)
        registry = ConnectionRegistry(SessionLocal, aggregator, "https://token.example.com")
        worker = OracleSyncWorker(registry, aggregator, oracle=oracle)

        for token in (TOKEN_ADDRESS, OTHER_TOKEN):
            session = registry.initiate_connection(token)
            aggregator.set_accounts(session.connect_token, "10")
            worker.on_connection_success(session.connect_token)
        aggregator.failing_item = "connect-1"
        aggregator.set_accounts("connect-2", "30")

        results = worker.poll_once()

        assert results[TOKEN_ADDRESS] == SyncOutcome.FAILED.value
        assert results[OTHER_TOKEN] == SyncOutcome.UPDATED.value
        assert oracle.updates[-1] == (OTHER_TOKEN, "acc-connect-2-0", 3000)

    def test_poll_isolates_unexpected_errors(self, db_tables, oracle):
        aggregator = BrokenAggregator(failing_item=None)
        registry = ConnectionRegistry(SessionLocal, aggregator, "https://token.example.com")
        worker = OracleSyncWorker(registry, aggregator, oracle=oracle)

        for token in (TOKEN_ADDRESS, OTHER_TOKEN):
            session = registry.initiate_connection(token)
            aggregator.set_accounts(session.connect_token, "10")
            worker.on_connection_success(session.connect_token)
        aggregator.failing_item = "connect-1"
        aggregator.set_accounts("connect-2", "30")

        results = worker.poll_once()

        assert results[TOKEN_ADDRESS] == SyncOutcome.FAILED.value
        assert results[OTHER_TOKEN] == SyncOutcome.UPDATED.value

    def test_poll_requires_oracle(self, registry, aggregator):
        worker = OracleSyncWorker(registry, aggregator, oracle=None)
        with pytest.raises(ConfigurationError):
            worker.poll_once()

    def test_run_polling_survives_missing_oracle(self, registry, aggregator):
        worker = OracleSyncWorker(registry, aggregator, oracle=None, poll_interval=0.01)

        async def run_briefly():
            task = asyncio.create_task(worker.run_polling())
            await asyncio.sleep(0.05)
            assert not task.done()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run_briefly())
    def test_run_polling_survives_unexpected_errors(self, registry, aggregator, oracle, monkeypatch):
        attempts = []

        def failing_list_connected():
            attempts.append(1)
            raise database_down()

        monkeypatch.setattr(registry, "list_connected", failing_list_connected)
        worker = OracleSyncWorker(registry, aggregator, oracle=oracle, poll_interval=0.01)

        async def run_briefly():
            task = asyncio.create_task(worker.run_polling())
            await asyncio.sleep(0.2)
            assert not task.done()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run_briefly())
        assert len(attempts) >= 2


class TestHandleWebhook:
    def test_unknown_event_is_ignored(self, worker):
        event = parse_webhook_event({"type": "item/deleted", "itemId": "x"})
        assert worker.handle_webhook(event) == "ignored"

    def test_aggregator_must_be_configured(self, registry, oracle):
        worker = OracleSyncWorker(registry, FakeAggregator(configured=False), oracle=oracle)
        event = parse_webhook_event({"type": "ACCOUNTS_UPDATED", "itemId": "x"})
        with pytest.raises(ConfigurationError):
            worker.handle_webhook(event)

    def test_accounts_updated_dispatch(self, registry, aggregator, worker):
        item_id = connect_token(registry, aggregator, worker, "10")
        event = parse_webhook_event({"type": "ACCOUNTS_UPDATED", "itemId": item_id})
        assert worker.handle_webhook(event) == SyncOutcome.UPDATED.value
