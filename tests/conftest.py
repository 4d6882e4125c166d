"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any app import so the
cached settings and the database engine pick them up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_bank_token.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("BASE_URL", "https://token.example.com")
os.environ.pop("REDIS_URL", None)
os.environ.pop("PLUGGY_CLIENT_ID", None)
os.environ.pop("PLUGGY_WEBHOOK_SECRET", None)
os.environ.pop("ENABLE_ONCHAIN_DEPLOY", None)

from decimal import Decimal
from typing import Dict, List

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings
get_settings.cache_clear()

from app import models  # noqa: F401,E402
from app.aggregator import BankAccount, ConnectSession  # noqa: E402
from app.connections import ConnectionRegistry  # noqa: E402
from app.conversation import ConversationEngine  # noqa: E402
from app.deployer import DeploymentGateway, SyntheticDeployer  # noqa: E402
from app.errors import ConfigurationError  # noqa: E402
from app.oracle_sync import OracleSyncWorker  # noqa: E402
from app.services import Services  # noqa: E402
from app.sessions import InMemorySessionStore  # noqa: E402
from app.storage import Base, SessionLocal, engine  # noqa: E402
from app.wallets import AuthService, WalletService  # noqa: E402


TOKEN_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"

DEPLOY_PAYLOAD = {
    "name": "Real Comunitário",
    "symbol": "BRLC",
    "masterMinter": "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
    "pauser": "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
    "blacklister": "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC",
    "owner": "0x90F79bf6EB2c4f870365E785982E1f101E93b906",
}


class FakeAggregator:
    """In-memory stand-in for the Pluggy client."""

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.accounts: Dict[str, List[BankAccount]] = {}
        self.connect_sessions: List[ConnectSession] = []
        self.webhook_urls: List[str] = []
        self.list_calls: List[str] = []

    def set_accounts(self, item_id: str, *balances) -> None:
        self.accounts[item_id] = [
            BankAccount(id=f"acc-{item_id}-{i}", balance=None if b is None else Decimal(str(b)))
            for i, b in enumerate(balances)
        ]

    def create_connect_session(self, webhook_url: str, redirect_url: str) -> ConnectSession:
        token = f"connect-{len(self.connect_sessions) + 1}"
        session = ConnectSession(
            connect_token=token,
            connect_url=f"https://connect.pluggy.ai/?connect_token={token}",
            expires_at="2030-01-01T00:00:00Z",
        )
        self.webhook_urls.append(webhook_url)
        self.connect_sessions.append(session)
        return session

    def list_accounts(self, item_id: str) -> List[BankAccount]:
        self.list_calls.append(item_id)
        return list(self.accounts.get(item_id, []))


class FakeOracle:
    """Records oracle writes instead of sending transactions."""

    def __init__(self):
        self.links: List[tuple] = []
        self.updates: List[tuple] = []

    def link_account(self, token_address: str, account_id: str) -> str:
        self.links.append((token_address, account_id))
        return "0x" + "ab" * 32

    def update_balance(self, token_address: str, account_id: str, balance_minor: int) -> str:
        self.updates.append((token_address, account_id, balance_minor))
        return "0x" + "cd" * 32


class FakeMessenger:
    def __init__(self, configured: bool = True):
        self.configured = configured
        self.sent: List[tuple] = []

    def send_text(self, to: str, body: str) -> None:
        if not self.configured:
            raise ConfigurationError("WHATSAPP_API_URL is not configured.")
        self.sent.append((to, body))


class FakeDeployer:
    """Live-mode deployer double that counts ledger calls."""

    mode = "live"

    def __init__(self):
        self.calls = 0

    def deploy(self, params):
        self.calls += 1
        return SyntheticDeployer().deploy(params)


@pytest.fixture
def db_tables():
    """Create tables for a test and drop them afterwards."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def aggregator() -> FakeAggregator:
    return FakeAggregator()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def wallets(db_tables) -> WalletService:
    return WalletService(SessionLocal)


@pytest.fixture
def auth(wallets, messenger) -> AuthService:
    return AuthService(SessionLocal, wallets, messenger, verify_url="https://auth.example.com/verify")


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def engine_(session_store, wallets, auth) -> ConversationEngine:
    return ConversationEngine(session_store, wallets, auth)


@pytest.fixture
def registry(db_tables, aggregator) -> ConnectionRegistry:
    return ConnectionRegistry(SessionLocal, aggregator, "https://token.example.com")


@pytest.fixture
def worker(registry, aggregator, oracle) -> OracleSyncWorker:
    return OracleSyncWorker(registry, aggregator, oracle=oracle)


def make_services(
    session_store,
    aggregator,
    messenger,
    wallets,
    auth,
    conversation,
    registry,
    oracle,
    worker,
    deployer=None,
) -> Services:
    return Services(
        session_factory=SessionLocal,
        session_store=session_store,
        aggregator=aggregator,
        messenger=messenger,
        wallets=wallets,
        auth=auth,
        conversation=conversation,
        registry=registry,
        oracle=oracle,
        sync_worker=worker,
        deployments=DeploymentGateway(deployer or SyntheticDeployer()),
    )


@pytest.fixture
def services(session_store, aggregator, messenger, wallets, auth, engine_, registry, oracle, worker) -> Services:
    return make_services(session_store, aggregator, messenger, wallets, auth, engine_, registry, oracle, worker)


def connect_token(registry: ConnectionRegistry, aggregator: FakeAggregator, worker: OracleSyncWorker, *balances) -> str:
    """Drive TOKEN_ADDRESS through initiate + CONNECTION_SUCCESS and return its item id."""
    session = registry.initiate_connection(TOKEN_ADDRESS)
    # The aggregator reports the connect token as the item id of the new connection
    item_id = session.connect_token
    aggregator.set_accounts(item_id, *balances)
    worker.on_connection_success(item_id)
    return item_id
