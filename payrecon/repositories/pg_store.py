from __future__ import annotations

from typing import Any, Iterable, Optional

from psycopg2.extras import Json

from payrecon.db.client import ConnectionPool
from payrecon.domain.enums import ProviderName
from payrecon.domain.errors import ConcurrentCreationDetected, NotFound
from payrecon.domain.models import REFUND_RESERVED, MaterializationDraft, Order, OrderItem, Payment, RefundRecord
from payrecon.domain.statuses import OrderStatus, PaymentStatus
from payrecon.utils.money import to_money

from .base import Decider, LedgerStore, RefundTotals, TransitionResult

PAYMENT_COLUMNS = """
    p.id, p.order_id, p.provider, p.external_payment_id, p.external_charge_id,
    p.amount, p.currency, p.status, p.refunded_amount, p.failure_reason,
    p.provider_metadata, p.created_at, p.updated_at
"""

ORDER_COLUMNS = """
    o.id, o.customer_id, o.customer_name, o.customer_email, o.customer_phone,
    o.shipping_city, o.shipping_address, o.subtotal, o.tax, o.shipping_cost,
    o.discount, o.total, o.status, o.payment_provider, o.external_payment_ref,
    o.created_at, o.updated_at
"""

REFUND_COLUMNS = """
    id, payment_id, provider, provider_refund_id, amount, status, reason,
    idempotency_key, created_at
"""


class PgLedgerStore(LedgerStore):
    """PostgreSQL-backed ledger using raw psycopg2.

    At-most-once creation relies on the unique constraints declared in
    ``payrecon/db/schema.sql``; row locks (``FOR UPDATE``) serialize
    concurrent transitions of the same payment.
    """

    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    @staticmethod
    def _hydrate_payment(row: tuple[Any, ...]) -> Payment:
        (
            pid,
            order_id,
            provider,
            external_payment_id,
            external_charge_id,
            amount,
            currency,
            status,
            refunded_amount,
            failure_reason,
            provider_metadata,
            created_at,
            updated_at,
        ) = row
        return Payment(
            id=int(pid),
            order_id=int(order_id),
            provider=ProviderName(str(provider)),
            external_payment_id=str(external_payment_id),
            external_charge_id=str(external_charge_id) if external_charge_id else None,
            amount=to_money(amount),
            currency=str(currency),
            status=PaymentStatus(str(status)),
            refunded_amount=to_money(refunded_amount, default=to_money(0)),
            failure_reason=failure_reason,
            provider_metadata=dict(provider_metadata or {}),
            created_at=created_at,
            updated_at=updated_at,
        )

    @staticmethod
    def _hydrate_order(row: tuple[Any, ...], items: list[OrderItem]) -> Order:
        (
            oid,
            customer_id,
            customer_name,
            customer_email,
            customer_phone,
            shipping_city,
            shipping_address,
            subtotal,
            tax,
            shipping_cost,
            discount,
            total,
            status,
            payment_provider,
            external_payment_ref,
            created_at,
            updated_at,
        ) = row
        return Order(
            id=int(oid),
            customer_id=int(customer_id) if customer_id is not None else None,
            customer_name=str(customer_name),
            customer_email=str(customer_email),
            customer_phone=str(customer_phone or ""),
            shipping_city=str(shipping_city or ""),
            shipping_address=str(shipping_address or ""),
            subtotal=to_money(subtotal),
            tax=to_money(tax),
            shipping_cost=to_money(shipping_cost),
            discount=to_money(discount),
            total=to_money(total),
            status=OrderStatus(str(status)),
            payment_provider=ProviderName(str(payment_provider)) if payment_provider else None,
            external_payment_ref=str(external_payment_ref) if external_payment_ref else None,
            items=items,
            created_at=created_at,
            updated_at=updated_at,
        )

    @staticmethod
    def _hydrate_refund(row: tuple[Any, ...]) -> RefundRecord:
        rid, payment_id, provider, provider_refund_id, amount, status, reason, key, created_at = row
        return RefundRecord(
            id=int(rid),
            payment_id=int(payment_id),
            provider=ProviderName(str(provider)),
            provider_refund_id=provider_refund_id,
            amount=to_money(amount),
            status=str(status),
            reason=reason,
            idempotency_key=key,
            created_at=created_at,
        )

    def _fetch_items(self, cur: Any, order_id: int) -> list[OrderItem]:
        cur.execute(
            """
            SELECT product_ref, name, quantity, unit_price, variation_ref
              FROM order_item
             WHERE order_id = %s
             ORDER BY id ASC
            """,
            (order_id,),
        )
        return [
            OrderItem(
                product_ref=str(product_ref),
                name=str(name),
                quantity=int(quantity),
                unit_price=to_money(unit_price),
                variation_ref=variation_ref,
            )
            for product_ref, name, quantity, unit_price, variation_ref in cur.fetchall() or []
        ]

    def _fetch_payment(self, where: str, params: tuple[Any, ...]) -> Optional[Payment]:
        with self.pool.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {PAYMENT_COLUMNS} FROM payment p WHERE {where} LIMIT 1", params)
                row = cur.fetchone()
                return self._hydrate_payment(row) if row else None

    def _fetch_order(self, where: str, params: tuple[Any, ...]) -> Optional[Order]:
        with self.pool.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {ORDER_COLUMNS} FROM orders o WHERE {where} LIMIT 1", params)
                row = cur.fetchone()
                if not row:
                    return None
                return self._hydrate_order(row, self._fetch_items(cur, int(row[0])))

    def get_payment(self, payment_id: int) -> Optional[Payment]:
        return self._fetch_payment("p.id = %s", (payment_id,))

    def get_payment_by_external(self, provider: ProviderName, external_payment_id: str) -> Optional[Payment]:
        return self._fetch_payment(
            "p.provider = %s AND p.external_payment_id = %s",
            (ProviderName(provider).value, external_payment_id),
        )

    def get_payment_by_charge(self, provider: ProviderName, charge_id: str) -> Optional[Payment]:
        return self._fetch_payment(
            "p.provider = %s AND p.external_charge_id = %s",
            (ProviderName(provider).value, charge_id),
        )

    def get_order(self, order_id: int) -> Optional[Order]:
        return self._fetch_order("o.id = %s", (order_id,))

    def get_order_by_external_ref(self, external_payment_ref: str) -> Optional[Order]:
        return self._fetch_order("o.external_payment_ref = %s", (external_payment_ref,))

    def existing_external_ids(self, provider: ProviderName, external_ids: Iterable[str]) -> set[str]:
        ids = list(external_ids)
        if not ids:
            return set()
        with self.pool.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT external_payment_id
                      FROM payment
                     WHERE provider = %s
                       AND external_payment_id = ANY(%s)
                    """,
                    (ProviderName(provider).value, ids),
                )
                return {str(row[0]) for row in cur.fetchall() or []}

    def materialize(self, draft: MaterializationDraft) -> tuple[Order, Payment]:
        order = draft.order
        payment = draft.payment
        customer = draft.customer
        provider = ProviderName(payment.provider).value
        with self.pool.transaction() as conn:
            with conn.cursor() as cur:
                # Re-check inside the transaction before touching anything
                cur.execute(
                    "SELECT id FROM payment WHERE provider = %s AND external_payment_id = %s",
                    (provider, payment.external_payment_id),
                )
                if cur.fetchone():
                    raise ConcurrentCreationDetected(provider, payment.external_payment_id)

                cur.execute(
                    """
                    INSERT INTO customer (email, name, phone, city, address, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, NOW(), NOW())
                    ON CONFLICT (email) DO UPDATE
                        SET updated_at = NOW()
                    RETURNING id
                    """,
                    (customer.email.lower(), customer.name, customer.phone, customer.city, customer.address),
                )
                customer_id = int(cur.fetchone()[0])

                cur.execute(
                    """
                    INSERT INTO orders (
                        customer_id, customer_name, customer_email, customer_phone,
                        shipping_city, shipping_address, subtotal, tax, shipping_cost,
                        discount, total, status, payment_provider, external_payment_ref,
                        created_at, updated_at
                    ) VALUES (
                        %s, %s, %s, %s,
                        %s, %s, %s, %s, %s,
                        %s, %s, %s, %s, %s,
                        NOW(), NOW()
                    )
                    ON CONFLICT (external_payment_ref) DO NOTHING
                    RETURNING id
                    """,
                    (
                        customer_id,
                        order.customer_name,
                        order.customer_email,
                        order.customer_phone,
                        order.shipping_city,
                        order.shipping_address,
                        order.subtotal,
                        order.tax,
                        order.shipping_cost,
                        order.discount,
                        order.total,
                        order.status.value,
                        provider,
                        payment.external_payment_id,
                    ),
                )
                inserted = cur.fetchone()
                if not inserted:
                    raise ConcurrentCreationDetected(provider, payment.external_payment_id)
                order_id = int(inserted[0])

                for item in order.items:
                    cur.execute(
                        """
                        INSERT INTO order_item (order_id, product_ref, variation_ref, name, quantity, unit_price, subtotal)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            order_id,
                            item.product_ref,
                            item.variation_ref,
                            item.name,
                            item.quantity,
                            item.unit_price,
                            item.subtotal,
                        ),
                    )

                cur.execute(
                    """
                    INSERT INTO payment (
                        order_id, provider, external_payment_id, external_charge_id,
                        amount, currency, status, refunded_amount, failure_reason,
                        provider_metadata, created_at, updated_at
                    ) VALUES (
                        %s, %s, %s, %s,
                        %s, %s, %s, %s, %s,
                        %s, NOW(), NOW()
                    )
                    ON CONFLICT (provider, external_payment_id) DO NOTHING
                    RETURNING id
                    """,
                    (
                        order_id,
                        provider,
                        payment.external_payment_id,
                        payment.external_charge_id,
                        payment.amount,
                        payment.currency,
                        payment.status.value,
                        payment.refunded_amount,
                        payment.failure_reason,
                        Json(payment.provider_metadata or {}),
                    ),
                )
                inserted = cur.fetchone()
                if not inserted:
                    raise ConcurrentCreationDetected(provider, payment.external_payment_id)
                payment_id = int(inserted[0])

                cur.execute(f"SELECT {ORDER_COLUMNS} FROM orders o WHERE o.id = %s", (order_id,))
                stored_order = self._hydrate_order(cur.fetchone(), self._fetch_items(cur, order_id))
                cur.execute(f"SELECT {PAYMENT_COLUMNS} FROM payment p WHERE p.id = %s", (payment_id,))
                stored_payment = self._hydrate_payment(cur.fetchone())
        return stored_order, stored_payment

    def transition(self, payment_id: int, decide: Decider) -> TransitionResult:
        with self.pool.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {PAYMENT_COLUMNS} FROM payment p WHERE p.id = %s FOR UPDATE", (payment_id,))
                row = cur.fetchone()
                if not row:
                    raise NotFound(f"payment {payment_id} not found")
                payment = self._hydrate_payment(row)
                cur.execute(f"SELECT {ORDER_COLUMNS} FROM orders o WHERE o.id = %s FOR UPDATE", (payment.order_id,))
                row = cur.fetchone()
                if not row:
                    raise NotFound(f"order for payment {payment_id} not found")
                order = self._hydrate_order(row, self._fetch_items(cur, int(row[0])))

                cur.execute(
                    """
                    SELECT COALESCE(SUM(amount) FILTER (WHERE status <> %s), 0),
                           COALESCE(SUM(amount) FILTER (WHERE status = %s), 0)
                      FROM refund
                     WHERE payment_id = %s
                    """,
                    (REFUND_RESERVED, REFUND_RESERVED, payment_id),
                )
                settled, reserved = cur.fetchone()
                totals = RefundTotals(settled=to_money(settled), reserved=to_money(reserved))

                plan = decide(payment, order, totals)
                if plan is None or plan.is_empty:
                    return TransitionResult(order, payment, changed=False)

                refund: RefundRecord | None = None
                if plan.refund is not None:
                    cur.execute(
                        f"""
                        INSERT INTO refund (
                            payment_id, provider, provider_refund_id, amount, status,
                            reason, idempotency_key, created_at
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, NOW())
                        ON CONFLICT (idempotency_key) DO NOTHING
                        RETURNING {REFUND_COLUMNS}
                        """,
                        (
                            payment_id,
                            ProviderName(plan.refund.provider).value,
                            plan.refund.provider_refund_id,
                            plan.refund.amount,
                            plan.refund.status,
                            plan.refund.reason,
                            plan.refund.idempotency_key,
                        ),
                    )
                    inserted = cur.fetchone()
                    if not inserted:
                        raise ConcurrentCreationDetected("refund", plan.refund.idempotency_key or "")
                    refund = self._hydrate_refund(inserted)
                if plan.settle_refund is not None:
                    cur.execute(
                        f"""
                        UPDATE refund
                           SET status = %s, amount = %s, provider_refund_id = %s
                         WHERE id = %s AND payment_id = %s
                        RETURNING {REFUND_COLUMNS}
                        """,
                        (
                            plan.settle_refund.status,
                            plan.settle_refund.amount,
                            plan.settle_refund.provider_refund_id,
                            plan.settle_refund.id,
                            payment_id,
                        ),
                    )
                    updated = cur.fetchone()
                    if not updated:
                        raise NotFound(f"refund {plan.settle_refund.id} not found")
                    refund = self._hydrate_refund(updated)
                if plan.release_refund_id is not None:
                    cur.execute(
                        "DELETE FROM refund WHERE id = %s AND payment_id = %s AND status = %s RETURNING id",
                        (plan.release_refund_id, payment_id, REFUND_RESERVED),
                    )
                    if not cur.fetchone():
                        raise NotFound(f"reserved refund {plan.release_refund_id} not found")

                cur.execute(
                    f"""
                    UPDATE payment p
                       SET status = COALESCE(%s, p.status),
                           amount = COALESCE(%s, p.amount),
                           failure_reason = COALESCE(%s, p.failure_reason),
                           external_charge_id = COALESCE(%s, p.external_charge_id),
                           refunded_amount = COALESCE(%s, p.refunded_amount),
                           provider_metadata = COALESCE(p.provider_metadata, '{{}}'::jsonb) || %s::jsonb,
                           updated_at = NOW()
                     WHERE p.id = %s
                     RETURNING {PAYMENT_COLUMNS}
                    """,
                    (
                        plan.payment_status.value if plan.payment_status else None,
                        plan.amount,
                        plan.failure_reason,
                        plan.charge_id,
                        plan.refunded_amount,
                        Json(plan.metadata or {}),
                        payment_id,
                    ),
                )
                payment = self._hydrate_payment(cur.fetchone())
                if plan.order_status is not None:
                    cur.execute(
                        "UPDATE orders SET status = %s, updated_at = NOW() WHERE id = %s",
                        (plan.order_status.value, order.id),
                    )
                    order.status = plan.order_status
        return TransitionResult(order, payment, changed=True, refund=refund)

    def get_refund_by_idempotency_key(self, idempotency_key: str) -> Optional[RefundRecord]:
        with self.pool.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {REFUND_COLUMNS} FROM refund WHERE idempotency_key = %s", (idempotency_key,))
                row = cur.fetchone()
                return self._hydrate_refund(row) if row else None

    def list_refunds(self, payment_id: int) -> list[RefundRecord]:
        with self.pool.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {REFUND_COLUMNS} FROM refund WHERE payment_id = %s ORDER BY id ASC",
                    (payment_id,),
                )
                return [self._hydrate_refund(row) for row in cur.fetchall() or []]

    def record_webhook(
        self,
        *,
        provider: ProviderName,
        event_id: str | None,
        event_type: str | None,
        external_payment_id: str | None,
        outcome: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        if not event_id:
            return
        with self.pool.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO webhook_inbox (
                        provider, event_id, event_type, external_payment_id, outcome, payload, received_at
                    ) VALUES (
                        %s, %s, %s, %s, %s, %s, NOW()
                    ) ON CONFLICT (provider, event_id) DO NOTHING
                    """,
                    (
                        ProviderName(provider).value,
                        event_id,
                        event_type,
                        external_payment_id,
                        outcome,
                        Json(payload or {}),
                    ),
                )

    def status_counts(self) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {"payments": {}, "orders": {}}
        with self.pool.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT status, COUNT(*) FROM payment GROUP BY status")
                counts["payments"] = {str(status): int(n) for status, n in cur.fetchall() or []}
                cur.execute("SELECT status, COUNT(*) FROM orders GROUP BY status")
                counts["orders"] = {str(status): int(n) for status, n in cur.fetchall() or []}
        return counts
