import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings, get_settings
from .db import (
    CENTS,
    ZERO,
    TreasuryTransactionRecord,
    TreasuryWalletRecord,
    build_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from .models import (
    TransactionType,
    TransactionStatus,
    WalletStatus,
    TreasuryWallet,
    TreasuryTransaction,
    WalletSummary,
    DepositRequest,
    DebitRequest,
    CreditRequest,
    SettlementRequest,
    LedgerOperationResponse,
    TransactionHistoryResponse,
    LedgerAuditReport,
)

logger = logging.getLogger(__name__)

MAX_AMOUNT = Decimal("9999999999999999.99")

# Running total bumped by each transaction type.
RUNNING_TOTALS = {
    TransactionType.DEPOSIT: "total_deposited",
    TransactionType.DEBIT: "total_used",
    TransactionType.CREDIT: "total_earned",
    TransactionType.SETTLEMENT: "total_earned",
}


class TreasuryWalletError(Exception):
    pass


class WalletNotFoundError(TreasuryWalletError):
    pass


class InsufficientBalanceError(TreasuryWalletError):
    pass


class InvalidAmountError(TreasuryWalletError):
    pass


class WalletSuspendedError(TreasuryWalletError):
    pass


class DuplicateReferenceError(TreasuryWalletError):
    pass


class MatchAlreadySettledError(TreasuryWalletError):
    pass


def to_money(value) -> Decimal:
    """Convert ``value`` to a positive two-place Decimal or raise InvalidAmountError."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    if amount <= ZERO:
        raise InvalidAmountError(f"Amount must be greater than zero, got {amount}")
    if amount > MAX_AMOUNT:
        raise InvalidAmountError(f"Amount exceeds the maximum of {MAX_AMOUNT}, got {amount}")
    return amount


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TreasuryWalletService:
    def __init__(
        self,
        session_factory: Optional[sessionmaker[Session]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        if session_factory is None:
            engine = build_engine(self.settings.DATABASE_URL, self.settings.DB_ECHO)
            init_db(engine)
            session_factory = create_session_factory(engine)
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Wallet lookup
    # ------------------------------------------------------------------

    def get_wallet(self, admin_id: str) -> Optional[TreasuryWallet]:
        with session_scope(self.session_factory) as session:
            record = self._select_wallet(session, admin_id)
            return TreasuryWallet.model_validate(record) if record else None

    def create_or_get_wallet(self, admin_id: str) -> TreasuryWallet:
        existing = self.get_wallet(admin_id)
        if existing:
            return existing

        try:
            with session_scope(self.session_factory) as session:
                record = TreasuryWalletRecord(
                    admin_id=admin_id,
                    balance=ZERO,
                    total_deposited=ZERO,
                    total_used=ZERO,
                    total_earned=ZERO,
                    status=WalletStatus.ACTIVE.value,
                )
                session.add(record)
                session.flush()
                wallet = TreasuryWallet.model_validate(record)
        except IntegrityError:
            # Another request created it between our lookup and insert.
            logger.info("Treasury wallet for admin %s created concurrently, reusing it", admin_id)
            wallet = self.get_wallet(admin_id)
            if wallet is None:
                raise
            return wallet

        logger.info("Created Treasury wallet for admin %s", admin_id)
        return wallet

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def deposit(self, admin_id: str, request: DepositRequest) -> LedgerOperationResponse:
        replay = self._replay_deposit(admin_id, request.reference)
        if replay:
            return replay

        amount = to_money(request.amount)
        if amount < self.settings.MIN_DEPOSIT:
            logger.warning("Rejected Treasury deposit of %s for admin %s: below minimum", amount, admin_id)
            raise InvalidAmountError(
                f"Minimum deposit is {self._format(self.settings.MIN_DEPOSIT)}, got {self._format(amount)}"
            )

        self.create_or_get_wallet(admin_id)
        try:
            with session_scope(self.session_factory) as session:
                wallet = self._require_wallet(session, admin_id, lock=True)
                transaction = self._post(
                    session,
                    wallet,
                    TransactionType.DEPOSIT,
                    amount,
                    request.description or "Deposited to Treasury wallet",
                    reference=request.reference,
                )
                return self._operation_response(wallet, transaction, "Deposit recorded successfully")
        except IntegrityError:
            # Lost a race against another request carrying the same reference.
            replay = self._replay_deposit(admin_id, request.reference)
            if replay:
                return replay
            raise

    def debit(self, admin_id: str, request: DebitRequest) -> LedgerOperationResponse:
        amount = to_money(request.amount)
        with session_scope(self.session_factory) as session:
            wallet = self._require_wallet(session, admin_id, lock=True)
            if wallet.status != WalletStatus.ACTIVE.value:
                logger.warning("Rejected Treasury debit for admin %s: wallet is %s", admin_id, wallet.status)
                raise WalletSuspendedError(f"Treasury wallet for admin {admin_id} is {wallet.status}")
            if wallet.balance < amount:
                logger.warning(
                    "Rejected Treasury debit for admin %s: balance %s, requested %s",
                    admin_id, wallet.balance, amount,
                )
                raise InsufficientBalanceError(
                    f"Insufficient Treasury balance. Have: {self._format(wallet.balance)}, "
                    f"Need: {self._format(amount)}"
                )
            transaction = self._post(
                session,
                wallet,
                TransactionType.DEBIT,
                amount,
                request.description,
                challenge_id=request.challenge_id,
            )
            return self._operation_response(wallet, transaction, "Treasury wallet debited successfully")

    def credit(self, admin_id: str, request: CreditRequest) -> LedgerOperationResponse:
        amount = to_money(request.amount)
        with session_scope(self.session_factory) as session:
            wallet = self._require_wallet(session, admin_id, lock=True)
            transaction = self._post(
                session,
                wallet,
                TransactionType.CREDIT,
                amount,
                request.description,
                challenge_id=request.challenge_id,
                match_id=request.match_id,
            )
            return self._operation_response(wallet, transaction, "Treasury wallet credited successfully")

    def settle_match(self, admin_id: str, request: SettlementRequest) -> LedgerOperationResponse:
        replay = self._replay_settlement(admin_id, request.match_id)
        if replay:
            return replay

        amount = to_money(request.amount)
        try:
            with session_scope(self.session_factory) as session:
                wallet = self._require_wallet(session, admin_id, lock=True)
                transaction = self._post(
                    session,
                    wallet,
                    TransactionType.SETTLEMENT,
                    amount,
                    request.description or f"Treasury won match #{request.match_id}",
                    challenge_id=request.challenge_id,
                    match_id=request.match_id,
                )
                return self._operation_response(wallet, transaction, "Match settled successfully")
        except IntegrityError:
            replay = self._replay_settlement(admin_id, request.match_id)
            if replay:
                return replay
            raise

    def set_status(self, admin_id: str, status: WalletStatus) -> TreasuryWallet:
        with session_scope(self.session_factory) as session:
            wallet = self._require_wallet(session, admin_id, lock=True)
            previous = wallet.status
            wallet.status = status.value
            wallet.updated_at = _utcnow()
            session.flush()
            logger.info("Treasury wallet for admin %s: status %s -> %s", admin_id, previous, status.value)
            return TreasuryWallet.model_validate(wallet)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_transactions(
        self, admin_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> TransactionHistoryResponse:
        if limit is None:
            limit = self.settings.HISTORY_LIMIT_DEFAULT
        limit = max(1, min(limit, self.settings.HISTORY_LIMIT_MAX))
        offset = max(0, offset)

        with session_scope(self.session_factory) as session:
            total_count = session.scalar(
                select(func.count())
                .select_from(TreasuryTransactionRecord)
                .where(TreasuryTransactionRecord.admin_id == admin_id)
            ) or 0
            records = session.scalars(
                select(TreasuryTransactionRecord)
                .where(TreasuryTransactionRecord.admin_id == admin_id)
                .order_by(
                    TreasuryTransactionRecord.created_at.desc(),
                    TreasuryTransactionRecord.id.desc(),
                )
                .offset(offset)
                .limit(limit)
            ).all()
            wallet = self._select_wallet(session, admin_id)

            return TransactionHistoryResponse(
                admin_id=admin_id,
                transactions=[TreasuryTransaction.model_validate(r) for r in records],
                total_count=total_count,
                current_balance=wallet.balance if wallet else ZERO,
            )

    def get_summary(self, admin_id: str) -> Optional[WalletSummary]:
        wallet = self.get_wallet(admin_id)
        if wallet is None:
            return None

        return WalletSummary(
            admin_id=admin_id,
            balance=wallet.balance,
            total_deposited=wallet.total_deposited,
            total_used=wallet.total_used,
            total_earned=wallet.total_earned,
            net_pnl=wallet.total_earned - wallet.total_used,
            status=wallet.status,
            currency=self.settings.CURRENCY,
        )

    def verify_ledger(self, admin_id: str) -> LedgerAuditReport:
        """
        Replay the admin's transactions oldest first and compare the result
        with the wallet's stored balance and running totals.
        """
        with session_scope(self.session_factory) as session:
            wallet = self._require_wallet(session, admin_id)
            records = session.scalars(
                select(TreasuryTransactionRecord)
                .where(TreasuryTransactionRecord.admin_id == admin_id)
                .order_by(TreasuryTransactionRecord.id.asc())
            ).all()

            issues: list[str] = []
            totals = {"total_deposited": ZERO, "total_used": ZERO, "total_earned": ZERO}
            running = ZERO
            for record in records:
                tx_type = TransactionType(record.type)
                if record.balance_before != running:
                    issues.append(
                        f"Transaction {record.id}: balance_before {record.balance_before} "
                        f"does not continue from {running}"
                    )
                delta = -record.amount if tx_type == TransactionType.DEBIT else record.amount
                if record.balance_after != record.balance_before + delta:
                    issues.append(
                        f"Transaction {record.id}: {record.balance_before} {tx_type.value} "
                        f"{record.amount} recorded as {record.balance_after}"
                    )
                totals[RUNNING_TOTALS[tx_type]] += record.amount
                running = record.balance_after

            if running != wallet.balance:
                issues.append(f"Wallet balance {wallet.balance} does not match ledger {running}")
            for field, expected in totals.items():
                actual = getattr(wallet, field)
                if actual != expected:
                    issues.append(f"Wallet {field} {actual} does not match ledger {expected}")

            if issues:
                logger.warning("Treasury ledger for admin %s is inconsistent: %s", admin_id, "; ".join(issues))

            return LedgerAuditReport(
                admin_id=admin_id,
                consistent=not issues,
                transaction_count=len(records),
                expected_balance=running,
                actual_balance=wallet.balance,
                expected_total_deposited=totals["total_deposited"],
                actual_total_deposited=wallet.total_deposited,
                expected_total_used=totals["total_used"],
                actual_total_used=wallet.total_used,
                expected_total_earned=totals["total_earned"],
                actual_total_earned=wallet.total_earned,
                issues=issues,
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _select_wallet(
        self, session: Session, admin_id: str, lock: bool = False
    ) -> Optional[TreasuryWalletRecord]:
        stmt = select(TreasuryWalletRecord).where(TreasuryWalletRecord.admin_id == admin_id)
        if lock:
            stmt = stmt.with_for_update()
        return session.scalars(stmt).first()

    def _require_wallet(self, session: Session, admin_id: str, lock: bool = False) -> TreasuryWalletRecord:
        wallet = self._select_wallet(session, admin_id, lock=lock)
        if wallet is None:
            raise WalletNotFoundError("Treasury wallet not found")
        return wallet

    def _post(
        self,
        session: Session,
        wallet: TreasuryWalletRecord,
        tx_type: TransactionType,
        amount: Decimal,
        description: str,
        reference: Optional[str] = None,
        challenge_id: Optional[int] = None,
        match_id: Optional[int] = None,
    ) -> TreasuryTransactionRecord:
        balance_before = wallet.balance
        delta = -amount if tx_type == TransactionType.DEBIT else amount
        balance_after = balance_before + delta

        total_field = RUNNING_TOTALS[tx_type]
        setattr(wallet, total_field, getattr(wallet, total_field) + amount)
        wallet.balance = balance_after
        wallet.updated_at = _utcnow()

        transaction = TreasuryTransactionRecord(
            admin_id=wallet.admin_id,
            type=tx_type.value,
            amount=amount,
            description=description,
            reference=reference,
            status=TransactionStatus.COMPLETED.value,
            balance_before=balance_before,
            balance_after=balance_after,
            related_challenge_id=challenge_id,
            related_match_id=match_id,
        )
        session.add(transaction)
        session.flush()

        logger.info(
            "Treasury %s for admin %s: %s (%s -> %s)",
            tx_type.value, wallet.admin_id, amount, balance_before, balance_after,
        )
        return transaction

    def _replay_deposit(self, admin_id: str, reference: str) -> Optional[LedgerOperationResponse]:
        with session_scope(self.session_factory) as session:
            existing = session.scalars(
                select(TreasuryTransactionRecord).where(TreasuryTransactionRecord.reference == reference)
            ).first()
            if existing is None:
                return None
            if existing.admin_id != admin_id or existing.type != TransactionType.DEPOSIT.value:
                raise DuplicateReferenceError(f"Reference {reference} is already recorded for another wallet")
            wallet = self._require_wallet(session, admin_id)
            logger.info("Treasury deposit %s for admin %s already recorded", reference, admin_id)
            return self._operation_response(wallet, existing, "Deposit already recorded (idempotent return)")

    def _replay_settlement(self, admin_id: str, match_id: int) -> Optional[LedgerOperationResponse]:
        with session_scope(self.session_factory) as session:
            existing = session.scalars(
                select(TreasuryTransactionRecord).where(
                    TreasuryTransactionRecord.type == TransactionType.SETTLEMENT.value,
                    TreasuryTransactionRecord.related_match_id == match_id,
                )
            ).first()
            if existing is None:
                return None
            if existing.admin_id != admin_id:
                raise MatchAlreadySettledError(f"Match {match_id} is already settled for another wallet")
            wallet = self._require_wallet(session, admin_id)
            logger.info("Treasury settlement for match %s already recorded", match_id)
            return self._operation_response(wallet, existing, "Match already settled (idempotent return)")

    @staticmethod
    def _operation_response(
        wallet: TreasuryWalletRecord, transaction: TreasuryTransactionRecord, message: str
    ) -> LedgerOperationResponse:
        return LedgerOperationResponse(
            wallet=TreasuryWallet.model_validate(wallet),
            transaction=TreasuryTransaction.model_validate(transaction),
            message=message,
        )

    def _format(self, amount: Decimal) -> str:
        return f"{self.settings.CURRENCY_SYMBOL}{amount:.2f}"
