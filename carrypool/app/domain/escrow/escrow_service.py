"""
Escrow / Settlement Engine.

Holds the sender's payment from match until delivery and settles it to
the traveler, or returns it to the sender. The ledger is the transactions
table: a COMPLETED row is never rewritten, corrections are new rows.

None of these methods lock or move the assignment. Callers reserve the
assignment with `pending_operation`, call in here with no row lock held,
then finalize under the lock and commit.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying, RetryError, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_incrementing
)

from carrypool.app.core.config import settings
from carrypool.app.core.exceptions import (
    PaymentAuthorizationError, SettlementPreconditionError, SettlementGatewayError
)
from carrypool.app.core.reliability import CircuitOpenError, settlement_circuit_breaker
from carrypool.app.domain.escrow.fees import compute_fees
from carrypool.app.models.assignment import Assignment
from carrypool.app.models.notification import NotificationEvent
from carrypool.app.models.transaction import Transaction
from carrypool.app.models.transaction_enums import TransactionType, TransactionStatus
from carrypool.app.services.dead_letter import record_dead_letter
from carrypool.app.services.notification_service import NotificationService
from carrypool.app.services.payment_gateway import (
    BasePaymentGateway, GatewayResult, GatewayUnavailableError
)

logger = logging.getLogger(__name__)

REFUNDABLE_PAYMENT_STATES = (TransactionStatus.PENDING, TransactionStatus.COMPLETED)


async def call_gateway(operation: str, call, *args) -> GatewayResult:
    """
    Bounded, idempotent retries around one gateway call.

    Only GatewayUnavailableError is retried; every attempt goes through the
    settlement circuit breaker, and an open circuit stops the loop at once.
    """
    attempt_number = 0
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.gateway_max_attempts),
            wait=wait_incrementing(
                start=settings.gateway_retry_delay_seconds,
                increment=settings.gateway_retry_delay_seconds
            ),
            retry=retry_if_exception_type(GatewayUnavailableError),
            before_sleep=before_sleep_log(logger, logging.WARNING)
        ):
            attempt_number = attempt.retry_state.attempt_number
            with attempt:
                return await settlement_circuit_breaker.call(call, *args)
    except RetryError as e:
        last = e.last_attempt
        raise SettlementGatewayError(operation, last.attempt_number, str(last.exception())) from e
    except CircuitOpenError as e:
        raise SettlementGatewayError(operation, attempt_number, str(e)) from e


class EscrowService:

    # Ledger reads

    @staticmethod
    async def get_payment(db: AsyncSession, assignment_id: int) -> Optional[Transaction]:
        """The live PAYMENT of an assignment. FAILED authorizations are ignored."""
        result = await db.execute(
            select(Transaction).where(
                Transaction.assignment_id == assignment_id,
                Transaction.type == TransactionType.PAYMENT,
                Transaction.status != TransactionStatus.FAILED
            ).order_by(Transaction.id.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_payout(db: AsyncSession, assignment_id: int) -> Optional[Transaction]:
        result = await db.execute(
            select(Transaction).where(
                Transaction.assignment_id == assignment_id,
                Transaction.type == TransactionType.PAYOUT
            ).limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_transactions(db: AsyncSession, assignment_id: int) -> List[Transaction]:
        result = await db.execute(
            select(Transaction)
            .where(Transaction.assignment_id == assignment_id)
            .order_by(Transaction.id)
        )
        return result.scalars().all()

    @staticmethod
    async def refunded_amount(db: AsyncSession, payment: Transaction) -> int:
        result = await db.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.parent_transaction_id == payment.id,
                Transaction.type == TransactionType.REFUND,
                Transaction.status == TransactionStatus.COMPLETED
            )
        )
        return int(result.scalar_one())

    @staticmethod
    async def refundable_amount(db: AsyncSession, payment: Optional[Transaction]) -> int:
        if payment is None or payment.status not in REFUNDABLE_PAYMENT_STATES:
            return 0
        return payment.amount - await EscrowService.refunded_amount(db, payment)

    # Authorization

    @staticmethod
    async def authorize(
        db: AsyncSession,
        gateway: BasePaymentGateway,
        assignment: Assignment,
        sender_id: int,
        currency: str,
        payment_method_id: str
    ) -> Transaction:
        """
        Authorize the proposed price on the sender's payment method.

        A declined or unreachable authorization is kept as a FAILED PAYMENT
        row for audit and raised as PaymentAuthorizationError. Caller commits
        in both cases.
        """
        amount = assignment.proposed_price
        payment = Transaction(
            type=TransactionType.PAYMENT,
            status=TransactionStatus.PENDING,
            amount=amount,
            net_amount=amount,
            currency=currency,
            user_id=sender_id,
            package_id=assignment.package_id,
            trip_id=assignment.trip_id,
            assignment_id=assignment.id,
            payment_method_id=payment_method_id,
            description=f"Escrow hold for assignment {assignment.id}"
        )

        idempotency_key = f"authorize-{assignment.id}-{uuid.uuid4().hex}"
        try:
            result = await call_gateway(
                "authorize", gateway.authorize_payment,
                amount, currency, payment_method_id, idempotency_key
            )
        except SettlementGatewayError as e:
            result = GatewayResult(status=None, reason=e.details.get("reason"))

        if not result.approved:
            payment.status = TransactionStatus.FAILED
            payment.processed_at = datetime.utcnow()
            db.add(payment)
            await db.flush()
            logger.warning(
                "Authorization declined for assignment %s: %s", assignment.id, result.reason
            )
            raise PaymentAuthorizationError(
                details={"assignment_id": assignment.id, "reason": result.reason}
            )

        payment.gateway_txn_id = result.gateway_txn_id
        db.add(payment)
        await db.flush()
        logger.info("Authorized %s %s for assignment %s", amount, currency, assignment.id)
        return payment

    # Capture

    @staticmethod
    def apply_capture(payment: Transaction) -> Transaction:
        fees = compute_fees(payment.amount)
        payment.platform_fee = fees.platform_fee
        payment.gateway_fee = fees.gateway_fee
        payment.net_amount = fees.net_amount
        payment.status = TransactionStatus.COMPLETED
        payment.processed_at = datetime.utcnow()
        return payment

    @staticmethod
    async def capture(db: AsyncSession, gateway: BasePaymentGateway, payment: Transaction) -> Transaction:
        """
        Capture an authorized PAYMENT. Idempotent: an already COMPLETED
        payment is returned without a gateway call.

        Raises:
            SettlementPreconditionError: No live authorization
            SettlementGatewayError: Gateway failed after retries (DLQ row added)
        """
        if payment.status == TransactionStatus.COMPLETED:
            return payment
        if payment.status != TransactionStatus.PENDING or not payment.gateway_txn_id:
            raise SettlementPreconditionError(
                "No authorized payment to capture",
                details={"transaction_id": payment.id, "status": payment.status.value}
            )

        try:
            result = await call_gateway(
                "capture", gateway.capture_payment,
                payment.gateway_txn_id, payment.amount, f"capture-{payment.id}"
            )
            if not result.approved:
                raise SettlementGatewayError("capture", 1, result.reason or "declined")
        except SettlementGatewayError as e:
            await record_dead_letter(
                db, "escrow.capture", e.details.get("reason"),
                {"transaction_id": payment.id, "assignment_id": payment.assignment_id,
                 "gateway_txn_id": payment.gateway_txn_id, "amount": payment.amount}
            )
            raise

        EscrowService.apply_capture(payment)
        await db.flush()
        logger.info("Captured payment %s (net %s)", payment.id, payment.net_amount)
        return payment

    # Release

    @staticmethod
    async def release(
        db: AsyncSession,
        assignment: Assignment,
        traveler_id: int,
        recipients: Optional[List[int]] = None
    ) -> Transaction:
        """
        Pay the captured net amount out to the traveler and book the
        platform commission. Idempotent: an existing PAYOUT is returned.
        No gateway call; payouts are batched by finance.

        Raises:
            SettlementPreconditionError: Payment not captured
        """
        existing = await EscrowService.get_payout(db, assignment.id)
        if existing is not None:
            return existing

        payment = await EscrowService.get_payment(db, assignment.id)
        if payment is None or payment.status != TransactionStatus.COMPLETED:
            raise SettlementPreconditionError(
                "Release requires a captured payment",
                details={
                    "assignment_id": assignment.id,
                    "payment_status": payment.status.value if payment else None
                }
            )

        # Partial refunds issued after capture come out of the traveler's share
        refunded = await EscrowService.refunded_amount(db, payment)
        payout_amount = max(0, payment.net_amount - refunded)

        now = datetime.utcnow()
        payout = Transaction(
            type=TransactionType.PAYOUT,
            status=TransactionStatus.COMPLETED,
            amount=payout_amount,
            net_amount=payout_amount,
            currency=payment.currency,
            user_id=traveler_id,
            package_id=payment.package_id,
            trip_id=payment.trip_id,
            assignment_id=assignment.id,
            parent_transaction_id=payment.id,
            description=f"Payout for assignment {assignment.id}",
            processed_at=now
        )
        commission = Transaction(
            type=TransactionType.COMMISSION,
            status=TransactionStatus.COMPLETED,
            amount=payment.platform_fee,
            net_amount=payment.platform_fee,
            currency=payment.currency,
            user_id=traveler_id,
            package_id=payment.package_id,
            trip_id=payment.trip_id,
            assignment_id=assignment.id,
            parent_transaction_id=payment.id,
            description=f"Platform commission for assignment {assignment.id}",
            processed_at=now
        )
        db.add_all([payout, commission])
        await db.flush()

        await NotificationService.emit(
            db,
            NotificationEvent.SETTLEMENT_COMPLETED,
            recipients or [traveler_id],
            {"assignment_id": assignment.id, "payout": payout.amount, "currency": payout.currency}
        )
        logger.info("Released %s to traveler %s for assignment %s", payout.amount, traveler_id, assignment.id)
        return payout

    # Refund

    @staticmethod
    async def check_refund(
        db: AsyncSession,
        assignment_id: int,
        amount: Optional[int] = None
    ) -> tuple:
        """
        Validate a refund request without calling the gateway.

        Returns:
            (payment, amount) with `amount` resolved to the remaining
            refundable balance when None

        Raises:
            SettlementPreconditionError: Nothing refundable, already paid
                out, or amount out of range
        """
        payment = await EscrowService.get_payment(db, assignment_id)
        if payment is None or payment.status not in REFUNDABLE_PAYMENT_STATES:
            raise SettlementPreconditionError(
                "No authorized or captured payment to refund",
                details={"assignment_id": assignment_id}
            )

        if await EscrowService.get_payout(db, assignment_id) is not None:
            raise SettlementPreconditionError(
                "Funds were already paid out; use a compensating adjustment",
                details={"assignment_id": assignment_id}
            )

        refundable = await EscrowService.refundable_amount(db, payment)
        if refundable <= 0:
            raise SettlementPreconditionError(
                "Payment is already fully refunded",
                details={"assignment_id": assignment_id, "refundable": 0}
            )

        if amount is None:
            amount = refundable
        if amount <= 0 or amount > refundable:
            raise SettlementPreconditionError(
                f"Refund amount must be between 1 and {refundable}",
                details={"assignment_id": assignment_id, "requested": amount, "refundable": refundable}
            )

        # An uncaptured hold can only be voided as a whole
        if payment.status == TransactionStatus.PENDING and amount != payment.amount:
            raise SettlementPreconditionError(
                "Partial refunds require a captured payment",
                details={"assignment_id": assignment_id, "requested": amount, "authorized": payment.amount}
            )

        return payment, amount

    @staticmethod
    async def refund(
        db: AsyncSession,
        gateway: BasePaymentGateway,
        assignment_id: int,
        amount: Optional[int] = None,
        reason: Optional[str] = None
    ) -> Transaction:
        """
        Return funds to the sender.

        A PENDING hold is voided (PAYMENT marked REFUNDED, REFUND row for
        the full amount). A captured payment gets a REFUND row only.

        Raises:
            SettlementPreconditionError: See check_refund()
            SettlementGatewayError: Gateway failed after retries (DLQ row added)
        """
        payment, amount = await EscrowService.check_refund(db, assignment_id, amount)
        previous_refunds = await EscrowService.refunded_amount(db, payment)
        idempotency_key = f"refund-{payment.id}-{previous_refunds}-{amount}"

        try:
            result = await call_gateway(
                "refund", gateway.refund_payment,
                payment.gateway_txn_id, amount, idempotency_key
            )
            if not result.approved:
                raise SettlementGatewayError("refund", 1, result.reason or "declined")
        except SettlementGatewayError as e:
            await record_dead_letter(
                db, "escrow.refund", e.details.get("reason"),
                {"transaction_id": payment.id, "assignment_id": assignment_id,
                 "gateway_txn_id": payment.gateway_txn_id, "amount": amount}
            )
            raise

        if payment.status == TransactionStatus.PENDING:
            payment.status = TransactionStatus.REFUNDED
            payment.processed_at = datetime.utcnow()

        refund = Transaction(
            type=TransactionType.REFUND,
            status=TransactionStatus.COMPLETED,
            amount=amount,
            net_amount=amount,
            currency=payment.currency,
            user_id=payment.user_id,
            package_id=payment.package_id,
            trip_id=payment.trip_id,
            assignment_id=assignment_id,
            parent_transaction_id=payment.id,
            gateway_txn_id=result.gateway_txn_id,
            description=reason or f"Refund for assignment {assignment_id}",
            processed_at=datetime.utcnow()
        )
        db.add(refund)
        await db.flush()
        logger.info("Refunded %s on payment %s", amount, payment.id)
        return refund

    # Gateway callbacks

    @staticmethod
    async def reconcile_callback(
        db: AsyncSession,
        gateway_txn_id: str,
        event: str,
        status: str
    ) -> Optional[Transaction]:
        """
        Apply an asynchronous gateway notification to the ledger.

        Only a capture confirmed by the gateway after our synchronous call
        gave up is applied. Callbacks for unknown or already-final
        transactions are acknowledged and ignored. Caller commits.
        """
        result = await db.execute(
            select(Transaction).where(
                Transaction.gateway_txn_id == gateway_txn_id,
                Transaction.type == TransactionType.PAYMENT
            ).order_by(Transaction.id.desc()).limit(1)
        )
        payment = result.scalar_one_or_none()

        if payment is None:
            logger.warning("Callback %s for unknown gateway txn %s", event, gateway_txn_id)
            return None

        if payment.status != TransactionStatus.PENDING:
            logger.info("Callback %s for final transaction %s ignored", event, payment.id)
            return None

        if event == "payment.captured" and status == "APPROVED":
            EscrowService.apply_capture(payment)
            await db.flush()
            logger.info("Reconciled capture of payment %s from callback", payment.id)
            return payment

        logger.info("Callback %s/%s for payment %s needs no action", event, status, payment.id)
        return None
