from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from checkout_core.errors import (
    AlreadyPaid,
    AmountMismatch,
    IllegalPaymentTransition,
    IntegrityViolation,
    OrderNotFound,
    PaymentInProgress,
    PaymentNotFound,
    ProcessorTimeout,
    ProcessorUnavailable,
)
from checkout_core.models import (
    Order,
    OrderPaymentStatus,
    Payment,
    PaymentStart,
    PaymentStatus,
    to_money,
    utcnow,
)
from checkout_core.processor import STATUS_SUCCEEDED, TERMINAL_STATUSES, PaymentProcessor, ProcessorError
from checkout_core.schemas import BeginPaymentRequest, parse
from checkout_core.store import Store

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED},
    PaymentStatus.SUCCEEDED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}


def ensure_transition(payment: Payment, target: PaymentStatus) -> None:
    if target not in PAYMENT_TRANSITIONS[payment.status]:
        err = IllegalPaymentTransition(payment.id, payment.status.value, target.value)
        logger.error("%s", err)
        raise err


def resolve_status(processor_status: str) -> Optional[PaymentStatus]:
    """Local status for an authoritative processor status; None while still open."""
    if processor_status == STATUS_SUCCEEDED:
        return PaymentStatus.SUCCEEDED
    if processor_status in TERMINAL_STATUSES:
        return PaymentStatus.FAILED
    return None


class ProcessorGateway:
    """Runs processor calls on a worker pool so every call is bounded by ``timeout``."""

    def __init__(self, processor: PaymentProcessor, timeout: float, max_workers: int = 4):
        self.processor = processor
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="processor")

    def call(self, operation: str, *args, **kwargs):
        future = self._executor.submit(getattr(self.processor, operation), *args, **kwargs)
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeout:
            future.cancel()
            logger.warning("processor %s timed out after %ss", operation, self.timeout)
            raise ProcessorTimeout(operation, self.timeout) from None
        except (ProcessorError, OSError) as exc:
            logger.warning("processor %s failed: %s", operation, exc)
            raise ProcessorUnavailable(f"Payment processor {operation} failed: {exc}") from exc

    def close(self) -> None:
        self._executor.shutdown(wait=False)


class PaymentOrchestrator:
    """
    Starts payment attempts for orders.

    A local ``pending`` Payment row is claimed first, then the processor is asked
    for a charge keyed by that row. Calling again while the attempt is still
    pending (after a timeout, or when the shopper abandoned the client side)
    resumes the same attempt and hands back the same charge's client handle
    instead of opening a second charge. The order is never marked
    paid here; that is the reconciliation handler's job.
    """

    def __init__(self, store: Store, processor: PaymentProcessor, timeout: Optional[float] = None):
        self.store = store
        self.gateway = ProcessorGateway(
            processor, timeout or store.settings.processor_timeout, max_workers=store.settings.processor_workers
        )

    def begin_payment(
        self,
        order_id: int,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        payment_method: str = "card",
    ) -> PaymentStart:
        req = parse(
            BeginPaymentRequest,
            {
                "order_id": order_id,
                "amount": amount,
                "currency": currency or self.store.settings.default_currency,
                "payment_method": payment_method,
            },
        )

        with self.store.transaction() as session:
            order = session.get(Order, req.order_id)
            if not order:
                raise OrderNotFound(req.order_id)
            if order.payment_status == OrderPaymentStatus.PAID:
                raise AlreadyPaid(order.id)
            if req.amount is not None and to_money(req.amount) != order.total_amount:
                raise AmountMismatch(order.id, order.total_amount, to_money(req.amount))

            payment = session.scalar(
                select(Payment).where(Payment.order_id == order.id, Payment.status == PaymentStatus.PENDING)
            )
            if payment is None:
                payment = Payment(
                    order_id=order.id,
                    amount=order.total_amount,
                    currency=req.currency,
                    payment_method=req.payment_method,
                    status=PaymentStatus.PENDING,
                )
                session.add(payment)
                try:
                    session.flush()
                except IntegrityError:
                    # Another attempt claimed the slot first.
                    raise PaymentInProgress(order.id) from None
                self.store.log(f"[order={order.id}] payment attempt {payment.id} opened amount={payment.amount}")
            else:
                self.store.log(f"[order={order.id}] resuming payment attempt {payment.id}")

        charge = self.gateway.call(
            "create_charge",
            payment.amount,
            payment.currency,
            payment.order_id,
            idempotency_key=f"payment-{payment.id}",
        )

        with self.store.transaction() as session:
            session.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.external_reference.is_(None))
                .values(external_reference=charge.reference, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            payment = session.get(Payment, payment.id, populate_existing=True)
            if payment.external_reference != charge.reference:
                err = IntegrityViolation(
                    f"Payment {payment.id} is bound to {payment.external_reference}, processor returned {charge.reference}"
                )
                logger.error("%s", err)
                raise err
        self.store.log(f"[order={payment.order_id}] payment {payment.id} charge requested ref={charge.reference}")
        return PaymentStart(payment=payment, client_handle=charge.client_handle)

    def get_payment(self, payment_id: int) -> Payment:
        with self.store.transaction() as session:
            payment = session.get(Payment, payment_id)
            if not payment:
                raise PaymentNotFound(payment_id)
            return payment

    def payments_for_order(self, order_id: int) -> List[Payment]:
        with self.store.transaction() as session:
            stmt = select(Payment).where(Payment.order_id == order_id).order_by(Payment.id.desc())
            return list(session.scalars(stmt))

    def list_payments(self) -> List[Payment]:
        with self.store.transaction() as session:
            return list(session.scalars(select(Payment).order_by(Payment.id.desc())))

    def close(self) -> None:
        self.gateway.close()
