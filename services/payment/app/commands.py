"""
Payment Service — コマンドハンドラ (Write 側)

ゲートウェイ呼び出しはトランザクションの外で行う。
confirm は
  1. initiated → processing をコミット
  2. ゲートウェイで証跡を検証
  3. processing → completed | failed をイベントと一緒にコミット
の 3 段階で、各段階は version による比較交換で守られる。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common import event_store, topics
from services.common.errors import (
    ConcurrentUpdateError,
    InvalidAmountError,
    PaymentAlreadyFinalizedError,
    PaymentNotFoundError,
    PaymentNotRefundableError,
    UpstreamServiceError,
    ValidationError,
)
from services.common.outbox import OutboxRelay

from .aggregate import (
    CURRENCY,
    FINALIZED,
    PaymentStatus,
    check_transition,
    new_payment_id,
    parse_method,
    to_money,
)
from .events import (
    PaymentCancelled,
    PaymentCompleted,
    PaymentFailed,
    PaymentInitiated,
    PaymentRefunded,
)
from .gateway import ChargeResult, GatewayEvidence, PaymentGateway
from .queries import payment_to_dict
from .schema import payments

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Payment"


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _load(session: AsyncSession, payment_id: str):
    result = await session.execute(select(payments).where(payments.c.id == payment_id))
    row = result.fetchone()
    if row is None:
        raise PaymentNotFoundError(f"Payment {payment_id} not found")
    return row


async def _load_by_order(session: AsyncSession, order_id: str):
    result = await session.execute(select(payments).where(payments.c.order_id == order_id))
    return result.fetchone()


async def _compare_and_set(
    session: AsyncSession, row, new_status: PaymentStatus, **values: Any
) -> int:
    check_transition(PaymentStatus(row.status), new_status)
    new_version = row.version + 1
    result = await session.execute(
        update(payments)
        .where(payments.c.id == row.id, payments.c.version == row.version)
        .values(status=new_status.value, version=new_version, updated_at=_now(), **values)
    )
    if result.rowcount != 1:
        raise ConcurrentUpdateError(f"Payment {row.id} was modified concurrently")
    return new_version


async def _finish(session: AsyncSession, outbox: OutboxRelay, payment_id: str) -> dict:
    await session.commit()
    await outbox.publish_pending()
    return payment_to_dict(await _load(session, payment_id))


async def initiate(
    session: AsyncSession,
    outbox: OutboxRelay,
    gateway: PaymentGateway,
    *,
    order_id: str,
    user_id: str,
    amount: Decimal | str | float,
    method: str,
    order_total: Decimal | str | float,
    card_last4: str | None = None,
    upi_id: str | None = None,
) -> tuple[dict, bool]:
    """
    決済開始コマンド。注文 ID について冪等。

    同じ注文の決済が既にあればそれを返す。戻り値の 2 番目は新規作成かどうか。
    """
    method = parse_method(method)
    amount = to_money(amount)
    if amount <= 0:
        raise InvalidAmountError("Payment amount must be positive")
    if amount > to_money(order_total):
        raise InvalidAmountError("Payment amount exceeds the order total")

    existing = await _load_by_order(session, order_id)
    if existing is not None:
        logger.info("Payment for order %s already initiated: %s", order_id, existing.id)
        return payment_to_dict(existing), False

    payment_id = new_payment_id()
    gateway_payment_id = await gateway.create_intent(payment_id, amount, CURRENCY, method)
    now = _now()
    try:
        await session.execute(
            insert(payments).values(
                id=payment_id,
                order_id=order_id,
                user_id=user_id,
                amount=amount,
                currency=CURRENCY,
                method=method,
                status=PaymentStatus.INITIATED.value,
                gateway_payment_id=gateway_payment_id,
                card_last4=card_last4[-4:] if card_last4 else None,
                upi_id=upi_id,
                version=1,
                created_at=now,
                updated_at=now,
            )
        )
        await event_store.append_event(
            session,
            payment_id,
            AGGREGATE_TYPE,
            topics.PAYMENT_INITIATED,
            PaymentInitiated(
                payment_id=payment_id,
                order_id=order_id,
                user_id=user_id,
                amount=amount,
                currency=CURRENCY,
                method=method,
                timestamp=now,
            ),
            1,
        )
        await session.commit()
    except IntegrityError:
        # 同じ注文で同時に initiate された
        await session.rollback()
        existing = await _load_by_order(session, order_id)
        if existing is None:
            raise
        return payment_to_dict(existing), False

    logger.info("Payment %s initiated for order %s (%s %s)", payment_id, order_id, amount, CURRENCY)
    await outbox.publish_pending()
    return payment_to_dict(await _load(session, payment_id)), True


async def confirm(
    session: AsyncSession,
    outbox: OutboxRelay,
    gateway: PaymentGateway,
    payment_id: str,
    evidence: GatewayEvidence,
) -> dict:
    """
    決済確認コマンド。ゲートウェイの相関 ID について冪等。

    確定済みの決済に同じ相関 ID で再度 confirm すると、そのまま現在の状態を返す。
    別の相関 ID なら PaymentAlreadyFinalizedError。
    ゲートウェイに届かなければ UpstreamServiceError で、決済は processing のまま
    (再度の confirm で確定できる)。
    """
    row = await _load(session, payment_id)
    reference = evidence.gateway_payment_id or row.gateway_payment_id
    status = PaymentStatus(row.status)

    if status in FINALIZED or status is PaymentStatus.CANCELLED:
        if reference == row.gateway_payment_id and status is not PaymentStatus.CANCELLED:
            return payment_to_dict(row)
        raise PaymentAlreadyFinalizedError(f"Payment {payment_id} is already {status.value}")
    if reference != row.gateway_payment_id:
        raise ValidationError("Gateway reference does not belong to this payment")

    if status is PaymentStatus.INITIATED:
        await _compare_and_set(
            session,
            row,
            PaymentStatus.PROCESSING,
            card_last4=evidence.card_last4[-4:] if evidence.card_last4 else row.card_last4,
            upi_id=evidence.upi_id or row.upi_id,
        )
        await session.commit()

    try:
        result = await gateway.verify_charge(
            row.gateway_payment_id, row.amount, row.currency, evidence
        )
    except Exception as exc:
        # 課金されたかどうか分からないので processing のまま残す
        logger.exception("Gateway verification failed for %s", payment_id)
        raise UpstreamServiceError(f"Payment gateway unavailable: {exc}") from exc

    row = await _load(session, payment_id)
    status = PaymentStatus(row.status)
    if status in FINALIZED:
        # 同時に走った別の confirm が先に確定させた
        return payment_to_dict(row)
    if status is PaymentStatus.CANCELLED:
        await _settle_after_cancel(session, gateway, row, result)

    now = _now()
    if result.success:
        version = await _compare_and_set(
            session,
            row,
            PaymentStatus.COMPLETED,
            transaction_id=result.transaction_id,
            completed_at=now,
        )
        await event_store.append_event(
            session,
            payment_id,
            AGGREGATE_TYPE,
            topics.PAYMENT_COMPLETED,
            PaymentCompleted(
                order_id=row.order_id,
                payment_id=payment_id,
                user_id=row.user_id,
                amount=row.amount,
                transaction_id=result.transaction_id,
                timestamp=now,
            ),
            version,
        )
        logger.info("Payment %s completed", payment_id)
    else:
        reason = result.failure_reason or "Payment declined"
        version = await _compare_and_set(
            session, row, PaymentStatus.FAILED, failure_reason=reason
        )
        await event_store.append_event(
            session,
            payment_id,
            AGGREGATE_TYPE,
            topics.PAYMENT_FAILED,
            PaymentFailed(
                order_id=row.order_id,
                payment_id=payment_id,
                user_id=row.user_id,
                reason=reason,
                timestamp=now,
            ),
            version,
        )
        logger.info("Payment %s failed: %s", payment_id, reason)
    return await _finish(session, outbox, payment_id)


async def _settle_after_cancel(
    session: AsyncSession, gateway: PaymentGateway, row, result: ChargeResult
) -> None:
    """ゲートウェイ確認中に決済がキャンセルされた。課金されていれば戻す。"""
    if result.success:
        refund = await gateway.refund(
            result.transaction_id,
            row.amount,
            "Payment cancelled during confirmation",
            idempotency_key=f"refund:{row.id}",
        )
        if not refund.success:
            await session.execute(
                update(payments)
                .where(payments.c.id == row.id)
                .values(transaction_id=result.transaction_id, updated_at=_now())
            )
            await session.commit()
            logger.error(
                "Payment %s was captured after cancellation and the refund was refused (%s); "
                "manual refund required",
                row.id,
                refund.failure_reason,
            )
            raise UpstreamServiceError(
                f"Gateway refused the refund for cancelled payment {row.id}: {refund.failure_reason}"
            )
        await session.execute(
            update(payments)
            .where(payments.c.id == row.id)
            .values(
                transaction_id=result.transaction_id,
                refund_amount=row.amount,
                refund_reason="Payment cancelled during confirmation",
                gateway_refund_id=refund.gateway_refund_id,
                refunded_at=_now(),
                updated_at=_now(),
            )
        )
        await session.commit()
        logger.warning("Payment %s was captured after cancellation and refunded", row.id)
    raise PaymentAlreadyFinalizedError(f"Payment {row.id} is already {row.status}")


async def refund(
    session: AsyncSession,
    outbox: OutboxRelay,
    gateway: PaymentGateway,
    payment_id: str,
    amount: Decimal | str | float | None = None,
    reason: str = "",
) -> dict:
    """
    返金コマンド。completed の決済だけが対象で、金額は元の金額以下。
    既に返金済みならそのまま返す。
    """
    row = await _load(session, payment_id)
    status = PaymentStatus(row.status)
    if status is PaymentStatus.REFUNDED:
        return payment_to_dict(row)
    if status is not PaymentStatus.COMPLETED:
        raise PaymentNotRefundableError("Only completed payments can be refunded")

    refund_amount = to_money(amount) if amount is not None else row.amount
    if refund_amount <= 0 or refund_amount > row.amount:
        raise InvalidAmountError("Refund amount must be positive and at most the paid amount")

    result = await gateway.refund(
        row.transaction_id, refund_amount, reason, idempotency_key=f"refund:{payment_id}"
    )
    if not result.success:
        raise UpstreamServiceError(f"Gateway refused the refund: {result.failure_reason}")

    now = _now()
    version = await _compare_and_set(
        session,
        row,
        PaymentStatus.REFUNDED,
        refund_amount=refund_amount,
        refund_reason=reason,
        gateway_refund_id=result.gateway_refund_id,
        refunded_at=now,
    )
    await event_store.append_event(
        session,
        payment_id,
        AGGREGATE_TYPE,
        topics.PAYMENT_REFUNDED,
        PaymentRefunded(
            order_id=row.order_id,
            payment_id=payment_id,
            user_id=row.user_id,
            refund_amount=refund_amount,
            reason=reason,
            timestamp=now,
        ),
        version,
    )
    logger.info("Payment %s refunded: %s", payment_id, refund_amount)
    return await _finish(session, outbox, payment_id)


async def cancel(
    session: AsyncSession,
    outbox: OutboxRelay,
    payment_id: str,
    reason: str = "Cancelled",
) -> dict:
    """完了前の決済を取り消す。既に取り消し済みならそのまま返す。"""
    row = await _load(session, payment_id)
    status = PaymentStatus(row.status)
    if status is PaymentStatus.CANCELLED:
        return payment_to_dict(row)
    if status in FINALIZED:
        raise PaymentAlreadyFinalizedError(f"Payment {payment_id} is already {status.value}")

    now = _now()
    version = await _compare_and_set(
        session, row, PaymentStatus.CANCELLED, failure_reason=reason
    )
    await event_store.append_event(
        session,
        payment_id,
        AGGREGATE_TYPE,
        topics.PAYMENT_CANCELLED,
        PaymentCancelled(
            order_id=row.order_id,
            payment_id=payment_id,
            user_id=row.user_id,
            reason=reason,
            timestamp=now,
        ),
        version,
    )
    logger.info("Payment %s cancelled: %s", payment_id, reason)
    return await _finish(session, outbox, payment_id)
