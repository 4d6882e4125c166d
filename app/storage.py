import logging
from typing import List, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, or_, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to be shared by the
# threadpool that runs blocking service calls
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Objects stay readable after commit so services can hand them back to callers
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("wallets", "auth_tokens", "connections", "transfers")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from app import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and all tables exist, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Wallet Repository Functions
# =============================================================================

def get_wallet_by_phone(db: Session, phone: str):
    """Return the wallet registered for a canonical phone number, or None."""
    from app.models import Wallet

    return db.query(Wallet).filter(Wallet.phone == phone).first()


def create_wallet(db: Session, user_id: str, address: str, phone: str, created_at: str) -> Tuple[object, bool]:
    """
    Create a wallet for a phone number (idempotent).

    Args:
        db: Database session
        user_id: Stable user identifier
        address: Ledger address of the wallet
        phone: Canonical phone number
        created_at: Server timestamp (ISO-8601 UTC)

    Returns:
        Tuple of (wallet, created)
        - (wallet, True): Wallet created
        - (wallet, False): Phone already registered, existing wallet returned
    """
    from app.models import Wallet

    wallet = Wallet(user_id=user_id, address=address, phone=phone, created_at=created_at)
    try:
        db.add(wallet)
        db.commit()
        logger.info(f"Wallet created: user_id={user_id}")
        return wallet, True
    except IntegrityError:
        # phone/user_id already exists - registration is idempotent
        db.rollback()
        existing = get_wallet_by_phone(db, phone)
        if existing is None:
            raise
        logger.info(f"Wallet already registered: user_id={existing.user_id}")
        return existing, False


# =============================================================================
# Auth Token Repository Functions
# =============================================================================

def create_auth_token(db: Session, phone: str, token: str, expires_at: str, now: str) -> None:
    """
    Store a new verification token for a phone number.

    Earlier unused tokens for the same phone are expired so only the most
    recently issued link can be used.
    """
    from app.models import AuthToken

    db.execute(
        update(AuthToken)
        .where(
            AuthToken.phone_number == phone,
            AuthToken.used_at.is_(None),
            AuthToken.expires_at > now,
        )
        .values(expires_at=now)
    )
    db.add(AuthToken(phone_number=phone, token=token, expires_at=expires_at, created_at=now))
    db.commit()
    logger.info(f"Auth token issued for {phone}, expires_at={expires_at}")


def consume_auth_token(db: Session, phone: str, token: str, now: str) -> str:
    """
    Atomically consume a verification token.

    The conditional UPDATE only matches a row that is unused and unexpired,
    so two concurrent verifications cannot both succeed.

    Returns:
        "consumed" on success, otherwise "invalid", "used" or "expired".
    """
    from app.models import AuthToken

    result = db.execute(
        update(AuthToken)
        .where(
            AuthToken.phone_number == phone,
            AuthToken.token == token,
            AuthToken.used_at.is_(None),
            AuthToken.expires_at > now,
        )
        .values(used_at=now)
    )
    db.commit()
    if result.rowcount == 1:
        return "consumed"

    row = (
        db.query(AuthToken)
        .filter(AuthToken.phone_number == phone, AuthToken.token == token)
        .order_by(AuthToken.id.desc())
        .first()
    )
    if row is None:
        return "invalid"
    if row.used_at is not None:
        return "used"
    return "expired"


# =============================================================================
# Connection Repository Functions
# =============================================================================

def get_connection(db: Session, token_address: str):
    from app.models import Connection

    return db.get(Connection, token_address)


def save_pending_connection(
    db: Session,
    token_address: str,
    connect_token: str,
    connect_url: str,
    expires_at: Optional[str],
    now: str,
):
    """
    Create or refresh the pending connection for a token.

    Only pending connections are refreshed; callers must reject tokens that
    are already connected.
    """
    from app.models import Connection

    connection = db.get(Connection, token_address)
    if connection is None:
        connection = Connection(token_address=token_address, created_at=now)
        db.add(connection)
    connection.status = "pending"
    connection.connect_token = connect_token
    connection.connect_url = connect_url
    connection.expires_at = expires_at
    connection.updated_at = now
    db.commit()
    logger.info(f"Pending connection stored for token {token_address}")
    return connection


def find_connection_by_connect_token(db: Session, connect_token: str):
    from app.models import Connection

    return db.query(Connection).filter(Connection.connect_token == connect_token).first()


def find_connection_by_item_id(db: Session, item_id: str):
    from app.models import Connection

    return db.query(Connection).filter(Connection.item_id == item_id).first()


def list_connected_connections(db: Session) -> List:
    from app.models import Connection

    return (
        db.query(Connection)
        .filter(Connection.status == "connected")
        .order_by(Connection.token_address.asc())
        .all()
    )


def mark_connection_connected(db: Session, token_address: str, account_id: str, item_id: str, now: str) -> bool:
    """
    Transition a connection to connected.

    The update only matches while item_id is unset or already equal, which
    keeps item_id immutable once bound.

    Returns:
        True if the connection is now connected with this item_id.
    """
    from app.models import Connection

    result = db.execute(
        update(Connection)
        .where(
            Connection.token_address == token_address,
            or_(Connection.item_id.is_(None), Connection.item_id == item_id),
        )
        .values(status="connected", account_id=account_id, item_id=item_id, updated_at=now)
    )
    db.commit()
    return result.rowcount == 1


def record_connection_balance(db: Session, token_address: str, balance_minor: int, observed_at: str) -> bool:
    """
    Record the balance written to the oracle for a token.

    Observations older than the one already recorded are refused.

    Returns:
        True if the record was updated, False if it was stale.
    """
    from app.models import Connection

    result = db.execute(
        update(Connection)
        .where(
            Connection.token_address == token_address,
            or_(
                Connection.balance_observed_at.is_(None),
                Connection.balance_observed_at <= observed_at,
            ),
        )
        .values(last_balance_minor=balance_minor, balance_observed_at=observed_at)
    )
    db.commit()
    return result.rowcount == 1


def count_connections(db: Session) -> int:
    from app.models import Connection

    return db.query(func.count(Connection.token_address)).scalar() or 0


# =============================================================================
# Transfer Repository Functions
# =============================================================================

def create_transfer(
    db: Session,
    reference: str,
    from_wallet,
    to_wallet,
    amount_minor: int,
    created_at: str,
):
    from app.models import Transfer

    transfer = Transfer(
        reference=reference,
        from_phone=from_wallet.phone,
        to_phone=to_wallet.phone,
        from_address=from_wallet.address,
        to_address=to_wallet.address,
        amount_minor=amount_minor,
        created_at=created_at,
    )
    db.add(transfer)
    db.commit()
    logger.info(f"Transfer recorded: {reference}, amount_minor={amount_minor}")
    return transfer


def get_recent_transfers(db: Session, phone: str, limit: int = 5) -> List:
    """Transfers sent or received by a phone, newest first."""
    from app.models import Transfer

    stmt = (
        select(Transfer)
        .where(or_(Transfer.from_phone == phone, Transfer.to_phone == phone))
        .order_by(Transfer.created_at.desc(), Transfer.reference.asc())
        .limit(limit)
    )
    return list(db.scalars(stmt))
