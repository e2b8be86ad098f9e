from __future__ import annotations

from typing import Optional

from sqlalchemy import select, update

from checkout_core.errors import NotRefundable, PaymentNotFound
from checkout_core.models import Order, OrderPaymentStatus, Payment, PaymentStatus, RefundResult, utcnow
from checkout_core.payments import ProcessorGateway, ensure_transition, resolve_status
from checkout_core.processor import PaymentProcessor
from checkout_core.store import Store


class ReconciliationHandler:
    """
    Applies authoritative processor state to local Payment and Order rows.

    Payments are looked up by external reference, never by call order.
    Processor calls happen outside any database transaction; the state change
    itself is a conditional update on ``status = 'pending'`` so duplicate or
    concurrent confirmations mutate the row at most once.
    """

    def __init__(self, store: Store, processor: PaymentProcessor, timeout: Optional[float] = None):
        self.store = store
        self.gateway = ProcessorGateway(
            processor, timeout or store.settings.processor_timeout, max_workers=store.settings.processor_workers
        )

    def _find(self, session, reference: str, lock: bool = False) -> Payment:
        stmt = select(Payment).where(Payment.external_reference == reference)
        if lock:
            stmt = stmt.with_for_update()
        payment = session.scalar(stmt)
        if payment is None:
            raise PaymentNotFound(reference)
        return payment

    def confirm(self, reference: str) -> Payment:
        with self.store.transaction() as session:
            payment = self._find(session, reference)
        if payment.status != PaymentStatus.PENDING:
            self.store.log(f"[payment={payment.id}] already {payment.status.value}, nothing to apply")
            return payment

        processor_status = self.gateway.call("get_status", reference)
        target = resolve_status(processor_status)
        if target is None:
            self.store.log(f"[payment={payment.id}] processor still {processor_status}, left pending")
            return payment

        with self.store.transaction() as session:
            payment = self._find(session, reference, lock=True)
            if payment.status != PaymentStatus.PENDING:
                # Resolved by a concurrent confirmation.
                return payment
            ensure_transition(payment, target)

            changed = session.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
                .values(
                    status=target,
                    transaction_id=reference,
                    version=Payment.version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if changed == 1:
                if target == PaymentStatus.SUCCEEDED:
                    order_update = update(Order).where(Order.id == payment.order_id)
                    order_status = OrderPaymentStatus.PAID
                else:
                    order_update = update(Order).where(
                        Order.id == payment.order_id, Order.payment_status != OrderPaymentStatus.PAID
                    )
                    order_status = OrderPaymentStatus.FAILED
                session.execute(
                    order_update.values(payment_status=order_status, updated_at=utcnow()).execution_options(
                        synchronize_session=False
                    )
                )
            session.refresh(payment)

        if changed == 1:
            self.store.log(
                f"[order={payment.order_id}] payment {payment.id} {target.value} (processor={processor_status})"
            )
        return payment

    def refund(self, payment_id: int) -> RefundResult:
        with self.store.transaction() as session:
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise PaymentNotFound(payment_id)
            if payment.status != PaymentStatus.SUCCEEDED or not payment.external_reference:
                raise NotRefundable(payment.id, payment.status.value)

        refund_reference = self.gateway.call(
            "refund", payment.external_reference, idempotency_key=f"refund-{payment.id}"
        )

        with self.store.transaction() as session:
            payment = session.get(Payment, payment_id, with_for_update=True)
            if payment.status == PaymentStatus.REFUNDED:
                return RefundResult(payment=payment, refund_reference=payment.refund_reference or refund_reference)
            ensure_transition(payment, PaymentStatus.REFUNDED)

            # Payment and order flip together or not at all.
            session.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.SUCCEEDED)
                .values(
                    status=PaymentStatus.REFUNDED,
                    refund_reference=refund_reference,
                    version=Payment.version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(Order)
                .where(Order.id == payment.order_id)
                .values(payment_status=OrderPaymentStatus.REFUNDED, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.refresh(payment)

        self.store.log(f"[order={payment.order_id}] payment {payment.id} refunded ref={refund_reference}")
        return RefundResult(payment=payment, refund_reference=refund_reference)

    def close(self) -> None:
        self.gateway.close()
