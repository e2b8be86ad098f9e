from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, List, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from checkout_core.config import Settings
from checkout_core.errors import IntegrityViolation
from checkout_core.models import Base, CartItem, Coupon, DiscountType, Product

logger = logging.getLogger(__name__)


def _install_sqlite_hooks(engine: Engine) -> None:
    # pysqlite's own BEGIN handling is replaced so that every transaction takes
    # the write lock up front; concurrent writers then wait on the busy timeout
    # instead of failing on lock upgrade.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Store:
    """
    Persistent state of the shop behind one SQLAlchemy engine.

    Every cross-entity invariant (stock vs. orders, coupon usage, payment vs.
    order payment status) is enforced inside a single database transaction,
    never with in-process locks, so several processes may share the database.

    ``logs`` is an in-process audit trail of workflow steps (for the demo and
    tests); it is not part of the persistent state.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()

        url = self.settings.database_url
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(url, echo=self.settings.echo_sql, connect_args=connect_args)
        if self.engine.dialect.name == "sqlite":
            _install_sqlite_hooks(self.engine)

        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        self.logs: List[str] = []

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    def log(self, message: str) -> None:
        self.logs.append(message)
        logger.info(message)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session bound to one transaction: commit on exit, roll back on error."""
        try:
            with self.session_factory.begin() as session:
                yield session
        except IntegrityError as exc:
            logger.exception("Integrity violation, transaction rolled back")
            raise IntegrityViolation(f"Storage constraint violated: {exc.orig}") from exc

    # Seed helpers (used by tests and the demo)
    def add_product(
        self,
        sku: str,
        price: Decimal,
        stock_quantity: int,
        name: str = "",
        is_active: bool = True,
    ) -> Product:
        with self.transaction() as session:
            product = Product(
                sku=sku,
                name=name or sku,
                price=price,
                stock_quantity=stock_quantity,
                is_active=is_active,
            )
            session.add(product)
        return product

    def add_coupon(
        self,
        code: str,
        discount_type: DiscountType,
        discount_value: Decimal,
        min_purchase_amount: Decimal = Decimal("0.00"),
        max_discount_amount: Optional[Decimal] = None,
        usage_limit: Optional[int] = None,
        used_count: int = 0,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        is_active: bool = True,
    ) -> Coupon:
        with self.transaction() as session:
            coupon = Coupon(
                code=code.strip().upper(),
                discount_type=DiscountType(discount_type),
                discount_value=discount_value,
                min_purchase_amount=min_purchase_amount,
                max_discount_amount=max_discount_amount,
                usage_limit=usage_limit,
                used_count=used_count,
                valid_from=valid_from,
                valid_until=valid_until,
                is_active=is_active,
            )
            session.add(coupon)
        return coupon

    def add_to_cart(self, user_id: str, product_id: int, quantity: int) -> CartItem:
        with self.transaction() as session:
            item = CartItem(user_id=user_id, product_id=product_id, quantity=quantity)
            session.add(item)
        return item
