"""
Token deployment gateway.

Deploy requests are validated before any ledger call is made. The actual
deployment strategy is chosen once when the service is built:
- LiveDeployer submits TokenFactory.deployToken and decodes TokenDeployed
- SyntheticDeployer returns random, clearly labelled results for development
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict

from web3 import Web3

from app.config import Settings
from app.errors import ConfigurationError, ProtocolError, ServiceError, ValidationError
from app.ledger import LedgerTransactor, TokenFactoryContract, connect_web3
from app.metrics import record_deployment
from app.utils import is_valid_address

logger = logging.getLogger(__name__)

# Checked in this order; the first missing one is reported
REQUIRED_FIELDS = ("name", "symbol", "masterMinter", "pauser", "blacklister", "owner")
ROLE_FIELDS = ("masterMinter", "pauser", "blacklister", "owner")

SYNTHETIC_GAS_USED = "21000"


@dataclass(frozen=True)
class DeployParams:
    name: str
    symbol: str
    master_minter: str
    pauser: str
    blacklister: str
    owner: str


@dataclass(frozen=True)
class DeploymentResult:
    proxy_address: str
    implementation_address: str
    tx_hash: str
    gas_used: str
    mode: str


def validate_deploy_params(payload: Dict[str, Any]) -> DeployParams:
    """
    Check a deploy request body.

    Raises:
        ValidationError: "Missing field: <name>" or "Invalid address provided"
    """
    for name in REQUIRED_FIELDS:
        value = payload.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(f"Missing field: {name}")

    for name in ROLE_FIELDS:
        if not is_valid_address(payload[name]):
            raise ValidationError("Invalid address provided")

    return DeployParams(
        name=str(payload["name"]),
        symbol=str(payload["symbol"]),
        master_minter=payload["masterMinter"],
        pauser=payload["pauser"],
        blacklister=payload["blacklister"],
        owner=payload["owner"],
    )


class LiveDeployer:
    mode = "live"

    def __init__(self, factory: TokenFactoryContract):
        self._factory = factory

    def deploy(self, params: DeployParams) -> DeploymentResult:
        receipt = self._factory.deploy_token(
            params.name,
            params.symbol,
            params.master_minter,
            params.pauser,
            params.blacklister,
            params.owner,
        )
        deployed = self._factory.parse_token_deployed(receipt)
        if deployed is None:
            raise ProtocolError("TokenDeployed event not found in receipt")

        # The event's token argument is the proxy users interact with
        proxy_address, implementation_address = deployed
        return DeploymentResult(
            proxy_address=proxy_address,
            implementation_address=implementation_address,
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            gas_used=str(receipt["gasUsed"]),
            mode=self.mode,
        )


class SyntheticDeployer:
    mode = "synthetic"

    def deploy(self, params: DeployParams) -> DeploymentResult:
        logger.warning(f"On-chain deployment disabled, returning synthetic result for {params.symbol}")
        return DeploymentResult(
            proxy_address=Web3.to_checksum_address("0x" + secrets.token_hex(20)),
            implementation_address=Web3.to_checksum_address("0x" + secrets.token_hex(20)),
            tx_hash="0x" + secrets.token_hex(32),
            gas_used=SYNTHETIC_GAS_USED,
            mode=self.mode,
        )


class DeploymentGateway:
    """Validates deploy requests and hands them to the configured deployer."""

    def __init__(self, deployer):
        self._deployer = deployer

    @property
    def mode(self) -> str:
        return self._deployer.mode

    def deploy_token(self, payload: Dict[str, Any]) -> DeploymentResult:
        params = validate_deploy_params(payload)
        logger.info(f"Deploying token {params.name} ({params.symbol}), mode={self.mode}")
        try:
            result = self._deployer.deploy(params)
        except ServiceError:
            record_deployment(self.mode, "error")
            raise
        record_deployment(self.mode, "success")
        logger.info(f"Token deployed: proxy={result.proxy_address}, tx={result.tx_hash}")
        return result


def build_deployer(settings: Settings):
    """
    Pick the deployment strategy from settings.

    Raises:
        ConfigurationError: on-chain deployment enabled without RPC, key or factory
    """
    if not settings.ENABLE_ONCHAIN_DEPLOY:
        return SyntheticDeployer()

    missing = [
        name
        for name in ("RPC_ENDPOINT", "PRIVATE_KEY", "FACTORY_ADDRESS")
        if not getattr(settings, name)
    ]
    if missing:
        raise ConfigurationError(f"On-chain deployment enabled but not configured: {', '.join(missing)}")

    w3 = connect_web3(settings.RPC_ENDPOINT)
    transactor = LedgerTransactor(w3, settings.PRIVATE_KEY, settings.TX_CONFIRMATION_TIMEOUT_SECONDS)
    return LiveDeployer(TokenFactoryContract(transactor, settings.FACTORY_ADDRESS))
