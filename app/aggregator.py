"""
Bank aggregator (Pluggy) HTTP client.

Used for two things only:
- opening a connect session so a token owner can link a bank account
- fetching the accounts (and balances) of a connected item

Transport failures surface as TransientExternalError, malformed answers as
ProtocolError.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from app.errors import ConfigurationError, ProtocolError, TransientExternalError
from app.utils import format_timestamp, utc_now

logger = logging.getLogger(__name__)

# Pluggy API keys are valid for two hours; refresh a little earlier
API_KEY_TTL_SECONDS = 110 * 60
CONNECT_TOKEN_TTL = timedelta(minutes=30)


@dataclass
class ConnectSession:
    connect_token: str
    connect_url: str
    expires_at: str


@dataclass
class BankAccount:
    id: str
    balance: Optional[Decimal]
    raw: Dict[str, Any] = field(default_factory=dict)


def _parse_balance(value: Any) -> Optional[Decimal]:
    # bool is an int subclass but never a balance
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    balance = Decimal(str(value))
    return balance if balance.is_finite() else None


class PluggyClient:
    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        base_url: str = "https://api.pluggy.ai",
        connect_url: str = "https://connect.pluggy.ai",
        timeout_seconds: float = 20.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.client_id = client_id or ""
        self.client_secret = client_secret or ""
        self.base_url = base_url.rstrip("/")
        self.connect_url = connect_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._api_key: Optional[str] = None
        self._api_key_expires = 0.0
        self._lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = client.request(method, url, **kwargs)
                response.raise_for_status()
                data = response.json() if response.content else {}
        except httpx.HTTPError as e:
            logger.error(f"Pluggy {method} {path} failed: {e}")
            raise TransientExternalError(f"Bank aggregator request failed: {path}") from e
        except ValueError as e:
            raise ProtocolError(f"Bank aggregator returned invalid JSON for {path}") from e
        if not isinstance(data, dict):
            raise ProtocolError(f"Bank aggregator returned unexpected payload for {path}")
        return data

    def _get_api_key(self) -> str:
        if not self.configured:
            raise ConfigurationError("Pluggy not configured")
        with self._lock:
            if self._api_key and time.monotonic() < self._api_key_expires:
                return self._api_key
            data = self._request(
                "POST",
                "/auth",
                json={"clientId": self.client_id, "clientSecret": self.client_secret},
            )
            api_key = data.get("apiKey")
            if not api_key:
                raise ProtocolError("Bank aggregator auth response missing apiKey")
            self._api_key = api_key
            self._api_key_expires = time.monotonic() + API_KEY_TTL_SECONDS
            return api_key

    def create_connect_session(self, webhook_url: str, redirect_url: str) -> ConnectSession:
        api_key = self._get_api_key()
        data = self._request(
            "POST",
            "/connect_token",
            headers={"X-API-KEY": api_key},
            json={"options": {"webhookUrl": webhook_url, "oauthRedirectUri": redirect_url}},
        )
        token = data.get("accessToken")
        if not token:
            raise ProtocolError("Bank aggregator connect token response missing accessToken")
        expires_at = data.get("expiresAt") or format_timestamp(utc_now() + CONNECT_TOKEN_TTL)
        return ConnectSession(
            connect_token=token,
            connect_url=f"{self.connect_url}/?connect_token={token}",
            expires_at=expires_at,
        )

    def list_accounts(self, item_id: str) -> List[BankAccount]:
        api_key = self._get_api_key()
        data = self._request(
            "GET",
            "/accounts",
            headers={"X-API-KEY": api_key},
            params={"itemId": item_id},
        )
        results = data.get("results")
        if not isinstance(results, list):
            raise ProtocolError("Bank aggregator accounts response missing results")

        accounts: List[BankAccount] = []
        for raw in results:
            if not isinstance(raw, dict) or not raw.get("id"):
                logger.warning(f"Skipping malformed account entry for item {item_id}")
                continue
            accounts.append(BankAccount(id=str(raw["id"]), balance=_parse_balance(raw.get("balance")), raw=raw))
        return accounts
