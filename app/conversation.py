"""
Text-menu conversation engine.

Each inbound message is interpreted against the session's current state,
producing the next state and a reply. The session is persisted before the
reply is returned, so the channel can stay stateless between requests.

States:
- MENU: any input shows the main menu
- AWAITING_INPUT: 1 balance, 2 send money, 3 history, 4 register
- AWAITING_RECIPIENT: any input is taken as the recipient's phone
- AWAITING_AMOUNT: a positive amount triggers the transfer
- AWAITING_AUTH: waiting for the out-of-band verification link

Domain failures (unregistered wallets, bad input) become reply text.
StoreUnavailableError is raised to the caller untouched.
"""

import logging
from dataclasses import dataclass

from app import messages
from app.errors import NotFoundError, SessionConflictError, TransientExternalError, ValidationError
from app.metrics import record_conversation_turn
from app.sessions import ConversationSession, SessionState, SessionStore
from app.utils import KeyedLock, format_minor_units, mask_address, normalize_phone_number, parse_amount
from app.wallets import AuthService, WalletService

logger = logging.getLogger(__name__)


class CommittedText(str):
    """Reply text for a turn whose side effect is already recorded."""


@dataclass
class Reply:
    message: str
    session_end: bool = False


class ConversationEngine:
    def __init__(
        self,
        store: SessionStore,
        wallets: WalletService,
        auth: AuthService,
        session_ttl: int = 3600,
        country_code: str = "55",
    ):
        self._store = store
        self._wallets = wallets
        self._auth = auth
        self._session_ttl = session_ttl
        self._country_code = country_code
        self._locks = KeyedLock()
        self._handlers = {
            SessionState.MENU: self._on_menu,
            SessionState.AWAITING_INPUT: self._on_menu_choice,
            SessionState.AWAITING_RECIPIENT: self._on_recipient,
            SessionState.AWAITING_AMOUNT: self._on_amount,
            SessionState.AWAITING_AUTH: self._on_auth_pending,
        }

    def handle(self, session_id: str, phone_number: str, text: str) -> Reply:
        phone = normalize_phone_number(phone_number, self._country_code)

        with self._locks.hold(session_id):
            session = self._store.get(session_id)
            if session is None:
                session = ConversationSession(session_id=session_id, phone_number=phone)
            elif not session.phone_number:
                session.phone_number = phone

            previous_state = session.state
            state_label = previous_state if previous_state in SessionState._value2member_map_ else "UNKNOWN"
            message = self._transition(session, text or "")

            try:
                self._store.put(session, self._session_ttl)
            except SessionConflictError:
                if isinstance(message, CommittedText):
                    # The transfer stands, so the user must not be asked to resend it
                    logger.warning(f"Session {session_id} updated concurrently after a transfer, confirming anyway")
                    record_conversation_turn(state_label, "conflict_committed")
                    return Reply(message=str(message))
                logger.warning(f"Session {session_id} updated concurrently, asking user to retry")
                record_conversation_turn(state_label, "conflict")
                return Reply(message=messages.BUSY)

        record_conversation_turn(state_label, "ok")
        logger.info(f"Session {session_id}: {previous_state} -> {session.state}")
        return Reply(message=str(message))

    def _transition(self, session: ConversationSession, text: str) -> str:
        try:
            state = SessionState(session.state)
        except ValueError:
            logger.warning(f"Session {session.session_id} has unknown state {session.state!r}, resetting")
            self._reset(session)
            return messages.INVALID_STATE
        return self._handlers[state](session, text)

    @staticmethod
    def _reset(session: ConversationSession) -> None:
        session.state = SessionState.MENU.value
        session.recipient = None

    # -------------------------------------------------------------------------
    # State handlers
    # -------------------------------------------------------------------------

    def _on_menu(self, session: ConversationSession, text: str) -> str:
        session.state = SessionState.AWAITING_INPUT.value
        return messages.MAIN_MENU

    def _on_menu_choice(self, session: ConversationSession, text: str) -> str:
        choice = text.strip()
        if choice == "1":
            return self._balance_text(session.phone_number)
        if choice == "2":
            session.state = SessionState.AWAITING_RECIPIENT.value
            return messages.ASK_RECIPIENT
        if choice == "3":
            return self._history_text(session.phone_number)
        if choice == "4":
            return self._start_auth(session)
        return messages.INVALID_OPTION

    def _on_recipient(self, session: ConversationSession, text: str) -> str:
        session.recipient = normalize_phone_number(text, self._country_code)
        session.state = SessionState.AWAITING_AMOUNT.value
        return messages.ASK_AMOUNT

    def _on_amount(self, session: ConversationSession, text: str) -> str:
        amount = parse_amount(text)
        if amount is None:
            return messages.INVALID_AMOUNT

        try:
            transfer = self._wallets.transfer(session.phone_number, session.recipient or "", amount)
        except (NotFoundError, ValidationError) as e:
            self._reset(session)
            return messages.transfer_failed(e.message)

        self._reset(session)
        return CommittedText(messages.transfer_sent(transfer.reference))

    def _on_auth_pending(self, session: ConversationSession, text: str) -> str:
        session.state = SessionState.AWAITING_INPUT.value
        session.auth_token = None
        if self._wallets.get_wallet(session.phone_number) is not None:
            return f"{messages.AUTH_CONFIRMED}\n{messages.MAIN_MENU}"
        return f"{messages.AUTH_PENDING}\n{messages.MAIN_MENU}"

    # -------------------------------------------------------------------------
    # Side effects
    # -------------------------------------------------------------------------

    def _start_auth(self, session: ConversationSession) -> str:
        try:
            token = self._auth.initiate(session.phone_number)
        except TransientExternalError:
            return messages.AUTH_FAILED
        session.auth_token = token
        session.state = SessionState.AWAITING_AUTH.value
        return messages.AUTH_SENT

    def _balance_text(self, phone: str) -> str:
        wallet = self._wallets.get_wallet(phone)
        if wallet is None:
            return messages.NOT_REGISTERED
        try:
            balance = self._wallets.balance_minor(wallet)
        except TransientExternalError:
            balance = None
        if balance is None:
            return messages.BALANCE_UNAVAILABLE
        return messages.balance(format_minor_units(balance), mask_address(wallet.address))

    def _history_text(self, phone: str) -> str:
        if self._wallets.get_wallet(phone) is None:
            return messages.NOT_REGISTERED_SHORT
        transfers = self._wallets.recent_transfers(phone)
        if not transfers:
            return messages.NO_RECENT_TRANSACTIONS
        lines = []
        for transfer in transfers:
            sent = transfer.from_phone == phone
            counterpart = transfer.to_phone if sent else transfer.from_phone
            lines.append(messages.history_line(sent, format_minor_units(transfer.amount_minor), counterpart))
        return "\n".join(lines)
