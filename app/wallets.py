"""
Wallet registration, transfers and out-of-band phone authentication.

These services back the conversation engine and the /api/auth/verify
endpoint. Wallet creation is idempotent per phone number; auth tokens are
single-use and expire after AUTH_TOKEN_TTL_SECONDS.
"""

import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy.orm import sessionmaker

from app import storage
from app.errors import ConfigurationError, NotFoundError, ValidationError
from app.messaging import WhatsAppClient
from app.utils import format_timestamp, normalize_phone_number, to_minor_units, utc_now

logger = logging.getLogger(__name__)


class WalletService:
    def __init__(
        self,
        session_factory: sessionmaker,
        balance_reader=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._balance_reader = balance_reader
        self._clock = clock

    def get_wallet(self, phone: str):
        with self._session_factory() as db:
            return storage.get_wallet_by_phone(db, phone)

    def register(self, phone: str):
        """Create the wallet for a phone number, or return the existing one."""
        with self._session_factory() as db:
            existing = storage.get_wallet_by_phone(db, phone)
            if existing is not None:
                return existing
            wallet, _ = storage.create_wallet(
                db,
                user_id=f"user_{phone}",
                address="0x" + secrets.token_hex(20),
                phone=phone,
                created_at=format_timestamp(self._clock()),
            )
            return wallet

    def balance_minor(self, wallet) -> Optional[int]:
        """Token balance in cents, or None when no token ledger is configured."""
        if self._balance_reader is None:
            return None
        return self._balance_reader.balance_of(wallet.address)

    def transfer(self, from_phone: str, to_phone: str, amount: Decimal):
        """
        Record a transfer between two registered wallets.

        Raises:
            NotFoundError: sender or recipient is not registered
            ValidationError: sender and recipient are the same wallet
        """
        with self._session_factory() as db:
            from_wallet = storage.get_wallet_by_phone(db, from_phone)
            if from_wallet is None:
                raise NotFoundError("Remetente não cadastrado")
            to_wallet = storage.get_wallet_by_phone(db, to_phone)
            if to_wallet is None:
                raise NotFoundError("Destinatário não cadastrado")
            if from_wallet.user_id == to_wallet.user_id:
                raise ValidationError("Não é possível enviar para você mesmo")

            return storage.create_transfer(
                db,
                reference="0x" + secrets.token_hex(32),
                from_wallet=from_wallet,
                to_wallet=to_wallet,
                amount_minor=to_minor_units(amount),
                created_at=format_timestamp(self._clock(), precise=True),
            )

    def recent_transfers(self, phone: str, limit: int = 5) -> List:
        with self._session_factory() as db:
            return storage.get_recent_transfers(db, phone, limit=limit)


class AuthService:
    """Issues and verifies single-use phone verification tokens."""

    def __init__(
        self,
        session_factory: sessionmaker,
        wallets: WalletService,
        messenger: WhatsAppClient,
        verify_url: str,
        ttl_seconds: int = 300,
        country_code: str = "55",
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._wallets = wallets
        self._messenger = messenger
        self._verify_url = verify_url
        self._ttl = timedelta(seconds=ttl_seconds)
        self._country_code = country_code
        self._clock = clock

    def initiate(self, phone: str) -> str:
        """
        Issue a token and send the verification link to the phone.

        Returns:
            The issued token

        Raises:
            TransientExternalError: the messaging channel rejected the message
        """
        phone = normalize_phone_number(phone, self._country_code)
        now = self._clock()
        token = f"auth_{secrets.token_urlsafe(16)}"

        with self._session_factory() as db:
            storage.create_auth_token(
                db,
                phone=phone,
                token=token,
                expires_at=format_timestamp(now + self._ttl),
                now=format_timestamp(now),
            )

        link = f"{self._verify_url}?token={token}"
        try:
            self._messenger.send_text(phone, f"Verifique sua identidade: {link}")
        except ConfigurationError:
            logger.warning(f"Messaging not configured, verification link for {phone} not delivered")

        return token

    def verify(self, phone: str, token: str):
        """
        Consume a token and return the phone's wallet, registering it if needed.

        Raises:
            ValidationError: token is unknown, already used or expired
        """
        phone = normalize_phone_number(phone, self._country_code)
        with self._session_factory() as db:
            outcome = storage.consume_auth_token(db, phone, token, now=format_timestamp(self._clock()))

        if outcome == "used":
            raise ValidationError("Auth token already used")
        if outcome == "expired":
            raise ValidationError("Auth token expired")
        if outcome != "consumed":
            raise ValidationError("Invalid auth token")

        wallet = self._wallets.register(phone)
        logger.info(f"Phone verified: user_id={wallet.user_id}")
        return wallet
