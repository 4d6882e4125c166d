"""
Service wiring.

build_services() turns Settings into the object graph used by the HTTP
layer and the polling task. Collaborators that are not configured are left
out (or replaced by in-memory/synthetic variants) so the app still boots in
development.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from app.aggregator import PluggyClient
from app.config import Settings
from app.connections import ConnectionRegistry
from app.conversation import ConversationEngine
from app.deployer import DeploymentGateway, build_deployer
from app.ledger import LedgerTransactor, OracleContract, TokenBalanceReader, connect_web3
from app.messaging import WhatsAppClient
from app.oracle_sync import OracleSyncWorker
from app.sessions import SessionStore, build_session_store
from app.storage import SessionLocal
from app.wallets import AuthService, WalletService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    session_factory: sessionmaker
    session_store: SessionStore
    aggregator: PluggyClient
    messenger: WhatsAppClient
    wallets: WalletService
    auth: AuthService
    conversation: ConversationEngine
    registry: ConnectionRegistry
    oracle: Optional[OracleContract]
    sync_worker: OracleSyncWorker
    deployments: DeploymentGateway


def build_oracle(settings: Settings) -> Optional[OracleContract]:
    if not settings.oracle_configured:
        logger.warning("Oracle not configured, balance sync is disabled")
        return None
    w3 = connect_web3(settings.RPC_ENDPOINT)
    transactor = LedgerTransactor(w3, settings.ORACLE_UPDATE_KEY, settings.TX_CONFIRMATION_TIMEOUT_SECONDS)
    logger.info(f"Oracle updates sent from {transactor.address}")
    return OracleContract(transactor, settings.ORACLE_ADDRESS)


def build_balance_reader(settings: Settings) -> Optional[TokenBalanceReader]:
    if not (settings.RPC_ENDPOINT and settings.TOKEN_ADDRESS):
        return None
    return TokenBalanceReader(connect_web3(settings.RPC_ENDPOINT), settings.TOKEN_ADDRESS)


def build_services(settings: Settings, session_factory: sessionmaker = SessionLocal) -> Services:
    """
    Build every service from settings.

    Raises:
        ConfigurationError: on-chain deployment enabled but incomplete
    """
    if not settings.pluggy_configured:
        logger.warning("Pluggy not configured, bank connections are disabled")
    if not settings.messaging_configured:
        logger.warning("WhatsApp API not configured, verification links will not be sent")

    aggregator = PluggyClient(
        client_id=settings.PLUGGY_CLIENT_ID,
        client_secret=settings.PLUGGY_CLIENT_SECRET,
        base_url=settings.PLUGGY_API_URL,
        connect_url=settings.PLUGGY_CONNECT_URL,
        timeout_seconds=settings.PLUGGY_TIMEOUT_SECONDS,
    )
    messenger = WhatsAppClient(settings.WHATSAPP_API_URL, settings.WHATSAPP_API_KEY)
    wallets = WalletService(session_factory, balance_reader=build_balance_reader(settings))
    auth = AuthService(
        session_factory,
        wallets,
        messenger,
        verify_url=settings.AUTH_VERIFY_URL,
        ttl_seconds=settings.AUTH_TOKEN_TTL_SECONDS,
        country_code=settings.DEFAULT_COUNTRY_CODE,
    )
    session_store = build_session_store(settings.REDIS_URL)
    registry = ConnectionRegistry(session_factory, aggregator, settings.BASE_URL)
    oracle = build_oracle(settings)

    return Services(
        session_factory=session_factory,
        session_store=session_store,
        aggregator=aggregator,
        messenger=messenger,
        wallets=wallets,
        auth=auth,
        conversation=ConversationEngine(
            session_store,
            wallets,
            auth,
            session_ttl=settings.SESSION_TTL_SECONDS,
            country_code=settings.DEFAULT_COUNTRY_CODE,
        ),
        registry=registry,
        oracle=oracle,
        sync_worker=OracleSyncWorker(
            registry,
            aggregator,
            oracle=oracle,
            poll_interval=settings.BALANCE_POLL_INTERVAL_SECONDS,
        ),
        deployments=DeploymentGateway(build_deployer(settings)),
    )


def get_services(request: Request) -> Services:
    """Dependency returning the services built during startup."""
    return request.app.state.services
