from __future__ import annotations

import itertools
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

# Processor-side statuses the core understands.
STATUS_REQUIRES_PAYMENT = "requires_payment_method"
STATUS_PROCESSING = "processing"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "payment_failed"
STATUS_CANCELED = "canceled"

TERMINAL_STATUSES = frozenset({STATUS_SUCCEEDED, STATUS_FAILED, STATUS_CANCELED})


class ProcessorError(Exception):
    """Raised by processor adapters when the remote side refuses or errors."""


@dataclass(slots=True)
class ProcessorCharge:
    reference: str
    client_handle: str


class PaymentProcessor(ABC):
    """Capabilities the checkout core needs from an external payment processor."""

    @abstractmethod
    def create_charge(
        self, amount: Decimal, currency: str, order_id: int, idempotency_key: str
    ) -> ProcessorCharge: ...

    @abstractmethod
    def get_status(self, reference: str) -> str: ...

    @abstractmethod
    def refund(self, reference: str, idempotency_key: str) -> str: ...


@dataclass
class _Charge:
    reference: str
    amount: Decimal
    currency: str
    order_id: int
    status: str = STATUS_REQUIRES_PAYMENT
    refund_id: Optional[str] = None


class SimulatedProcessor(PaymentProcessor):
    """
    In-memory processor for the demo and tests.

    Charges start as ``requires_payment_method``; ``settle`` plays the part of
    the customer finishing (or abandoning) payment on the client side.
    ``fail_next`` and ``latency`` inject outages.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.charges: Dict[str, _Charge] = {}
        self.calls: List[str] = []
        self._by_key: Dict[str, str] = {}
        self._refunds_by_key: Dict[str, str] = {}
        self._failures: List[str] = []
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def fail_next(self, operation: str) -> None:
        self._failures.append(operation)

    def settle(self, reference: str, status: str = STATUS_SUCCEEDED) -> None:
        with self._lock:
            self.charges[reference].status = status

    def _enter(self, operation: str) -> None:
        with self._lock:
            self.calls.append(operation)
            if operation in self._failures:
                self._failures.remove(operation)
                raise ProcessorError(f"simulated {operation} failure")
        if self.latency:
            time.sleep(self.latency)

    def create_charge(self, amount, currency, order_id, idempotency_key):
        self._enter("create_charge")
        with self._lock:
            ref = self._by_key.get(idempotency_key)
            if ref is None:
                ref = f"pi_{next(self._seq):06d}"
                self.charges[ref] = _Charge(reference=ref, amount=amount, currency=currency, order_id=order_id)
                self._by_key[idempotency_key] = ref
            return ProcessorCharge(reference=ref, client_handle=f"{ref}_secret")

    def get_status(self, reference):
        self._enter("get_status")
        with self._lock:
            charge = self.charges.get(reference)
            if charge is None:
                raise ProcessorError(f"no such charge {reference}")
            return charge.status

    def refund(self, reference, idempotency_key):
        self._enter("refund")
        with self._lock:
            if idempotency_key in self._refunds_by_key:
                return self._refunds_by_key[idempotency_key]
            charge = self.charges.get(reference)
            if charge is None or charge.status != STATUS_SUCCEEDED:
                raise ProcessorError(f"charge {reference} cannot be refunded")
            charge.refund_id = f"re_{next(self._seq):06d}"
            self._refunds_by_key[idempotency_key] = charge.refund_id
            return charge.refund_id
