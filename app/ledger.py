"""
Ledger adapters built on web3.

The ledger itself (oracle, token factory, token) is an external system; this
module only builds, signs, submits and awaits the contract calls the service
needs:
- BankOracle.linkAccount / BankOracle.updateBalance
- TokenFactory.deployToken and its TokenDeployed event
- ERC-20 balanceOf for balance lookups

Every write waits for its receipt with a timeout. Non-confirmation within
the timeout is a TransientExternalError, never a success.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception
from web3.logs import DISCARD

from app.errors import ProtocolError, TransientExternalError

logger = logging.getLogger(__name__)


ORACLE_ABI = [
    {
        "type": "function",
        "name": "linkAccount",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "accountId", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "updateBalance",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "accountId", "type": "string"},
            {"name": "balance", "type": "uint256"},
        ],
        "outputs": [],
    },
]

FACTORY_ABI = [
    {
        "type": "function",
        "name": "deployToken",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "name", "type": "string"},
            {"name": "symbol", "type": "string"},
            {"name": "masterMinter", "type": "address"},
            {"name": "pauser", "type": "address"},
            {"name": "blacklister", "type": "address"},
            {"name": "owner", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "event",
        "name": "TokenDeployed",
        "anonymous": False,
        "inputs": [
            {"name": "token", "type": "address", "indexed": True},
            {"name": "proxy", "type": "address", "indexed": True},
        ],
    },
]

ERC20_BALANCE_ABI = [
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

# Gas estimate head-room applied to deployments
GAS_MARGIN_PERCENT = 110

# Errors raised by web3 and its HTTP provider (requests errors are OSErrors)
_LEDGER_ERRORS = (Web3Exception, ValueError, OSError)


def connect_web3(rpc_endpoint: str) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_endpoint, request_kwargs={"timeout": 30}))


class LedgerTransactor:
    """Signs and submits contract transactions from one account."""

    def __init__(self, w3: Web3, private_key: str, confirmation_timeout: float = 120.0):
        self.w3 = w3
        self._account = w3.eth.account.from_key(private_key)
        self._timeout = confirmation_timeout

    @property
    def address(self) -> str:
        return self._account.address

    def transact(self, call, description: str, gas_margin_percent: Optional[int] = None):
        """
        Submit a prepared contract call and wait for its receipt.

        Args:
            call: Bound contract function (contract.functions.x(...))
            description: Short label used in logs and errors
            gas_margin_percent: When set, estimate gas and scale it by this percentage

        Returns:
            The transaction receipt

        Raises:
            TransientExternalError: submission failed or was not confirmed in time
            ProtocolError: the transaction was mined but reverted
        """
        try:
            params: Dict[str, Any] = {
                "from": self.address,
                "nonce": self.w3.eth.get_transaction_count(self.address, "pending"),
            }
            if gas_margin_percent:
                estimate = call.estimate_gas({"from": self.address})
                params["gas"] = estimate * gas_margin_percent // 100
            tx = call.build_transaction(params)
            signed = self._account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            logger.info(f"{description}: submitted {Web3.to_hex(tx_hash)}")
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._timeout)
        except TimeExhausted as e:
            logger.error(f"{description}: not confirmed within {self._timeout}s")
            raise TransientExternalError(f"{description} not confirmed in time") from e
        except _LEDGER_ERRORS as e:
            logger.error(f"{description}: ledger call failed: {e}")
            raise TransientExternalError(f"{description} failed") from e

        if receipt["status"] != 1:
            logger.error(f"{description}: transaction {Web3.to_hex(tx_hash)} reverted")
            raise ProtocolError(f"{description} reverted")

        logger.info(f"{description}: confirmed in block {receipt['blockNumber']}")
        return receipt


class OracleContract:
    """Writes bank balances into the BankOracle contract."""

    def __init__(self, transactor: LedgerTransactor, address: str):
        self._transactor = transactor
        self._contract = transactor.w3.eth.contract(
            address=Web3.to_checksum_address(address),
            abi=ORACLE_ABI,
        )

    def link_account(self, token_address: str, account_id: str) -> str:
        call = self._contract.functions.linkAccount(Web3.to_checksum_address(token_address), account_id)
        receipt = self._transactor.transact(call, f"linkAccount({token_address})")
        return Web3.to_hex(receipt["transactionHash"])

    def update_balance(self, token_address: str, account_id: str, balance_minor: int) -> str:
        call = self._contract.functions.updateBalance(
            Web3.to_checksum_address(token_address),
            account_id,
            balance_minor,
        )
        receipt = self._transactor.transact(call, f"updateBalance({token_address})")
        return Web3.to_hex(receipt["transactionHash"])


class TokenFactoryContract:
    """Submits token creations to the TokenFactory contract."""

    def __init__(self, transactor: LedgerTransactor, address: str):
        self._transactor = transactor
        self._contract = transactor.w3.eth.contract(
            address=Web3.to_checksum_address(address),
            abi=FACTORY_ABI,
        )

    def deploy_token(self, name: str, symbol: str, master_minter: str, pauser: str, blacklister: str, owner: str):
        call = self._contract.functions.deployToken(
            name,
            symbol,
            Web3.to_checksum_address(master_minter),
            Web3.to_checksum_address(pauser),
            Web3.to_checksum_address(blacklister),
            Web3.to_checksum_address(owner),
        )
        return self._transactor.transact(call, f"deployToken({symbol})", gas_margin_percent=GAS_MARGIN_PERCENT)

    def parse_token_deployed(self, receipt) -> Optional[Tuple[str, str]]:
        """Return (token, proxy) from the TokenDeployed event, or None if absent."""
        events = self._contract.events.TokenDeployed().process_receipt(receipt, errors=DISCARD)
        if not events:
            return None
        args = events[0]["args"]
        return args["token"], args["proxy"]


class TokenBalanceReader:
    """Reads wallet balances (in cents) from the community token."""

    def __init__(self, w3: Web3, token_address: str):
        self._contract = w3.eth.contract(
            address=Web3.to_checksum_address(token_address),
            abi=ERC20_BALANCE_ABI,
        )

    def balance_of(self, address: str) -> int:
        try:
            return int(self._contract.functions.balanceOf(Web3.to_checksum_address(address)).call())
        except _LEDGER_ERRORS as e:
            logger.error(f"balanceOf({address}) failed: {e}")
            raise TransientExternalError("Balance lookup failed") from e
