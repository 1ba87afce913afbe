"""
Inventory Service — コマンドハンドラ (Write 側)

注文の事実に反応して在庫を増減する。

  order.created                    → 明細ごとに条件付き減算 (reserve)
  order.cancelled / payment.failed → その注文で減算した分だけ戻す (release)

どちらも何度呼ばれても結果は同じ (冪等)。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from services.common import event_store, topics
from services.common.errors import (
    InsufficientStockError,
    InvalidAmountError,
    ProductNotFoundError,
)
from services.common.outbox import OutboxRelay

from .aggregate import (
    DEFAULT_LOW_STOCK_THRESHOLD,
    MovementKind,
    ReservationState,
    StockLine,
    is_low,
    merge_lines,
)
from .events import InventoryInsufficient, InventoryLow
from .queries import item_to_dict
from .schema import inventory_items, order_reservations, stock_movements

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Inventory"


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _decrement(session: AsyncSession, line: StockLine) -> bool:
    """在庫が足りるときだけ減算する。減算できたら True。"""
    result = await session.execute(
        update(inventory_items)
        .where(
            inventory_items.c.product_id == line.product_id,
            inventory_items.c.quantity >= line.quantity,
        )
        .values(
            quantity=inventory_items.c.quantity - line.quantity,
            version=inventory_items.c.version + 1,
            updated_at=_now(),
        )
    )
    return result.rowcount == 1


async def _credit(session: AsyncSession, product_id: str, quantity: int) -> None:
    await session.execute(
        update(inventory_items)
        .where(inventory_items.c.product_id == product_id)
        .values(
            quantity=inventory_items.c.quantity + quantity,
            version=inventory_items.c.version + 1,
            updated_at=_now(),
        )
    )


async def _load_item(session: AsyncSession, product_id: str):
    result = await session.execute(
        select(inventory_items).where(inventory_items.c.product_id == product_id)
    )
    return result.fetchone()


async def _emit_if_low(session: AsyncSession, product_id: str) -> None:
    row = await _load_item(session, product_id)
    if row is None or not is_low(row.quantity, row.low_stock_threshold):
        return
    await event_store.append_event(
        session,
        product_id,
        AGGREGATE_TYPE,
        topics.INVENTORY_LOW,
        InventoryLow(
            product_id=product_id,
            quantity=row.quantity,
            low_stock_threshold=row.low_stock_threshold,
            timestamp=_now(),
        ),
        row.version,
    )
    logger.info("Low stock for %s: %d left", product_id, row.quantity)


async def _lock_order(session: AsyncSession, order_id: str) -> ReservationState:
    """
    注文ごとの行を (無ければ) 作り、行ロックを取って現在の状態を返す。

    同じ注文の reserve と release が同時に走っても、後から来た方は
    INSERT ... ON CONFLICT か SELECT ... FOR UPDATE で先の方のコミットを待つ。
    """
    connection = await session.connection()
    dialect_insert = pg_insert if connection.dialect.name == "postgresql" else sqlite_insert
    await session.execute(
        dialect_insert(order_reservations)
        .values(order_id=order_id, state=ReservationState.PENDING.value, updated_at=_now())
        .on_conflict_do_nothing(index_elements=["order_id"])
    )
    result = await session.execute(
        select(order_reservations.c.state)
        .where(order_reservations.c.order_id == order_id)
        .with_for_update()
    )
    return ReservationState(result.scalar_one())


async def _set_state(
    session: AsyncSession, order_id: str, state: ReservationState, reason: str | None = None
) -> None:
    values = {"state": state.value, "updated_at": _now()}
    if reason is not None:
        values["reason"] = reason
    await session.execute(
        update(order_reservations)
        .where(order_reservations.c.order_id == order_id)
        .values(**values)
    )


async def _movements(session: AsyncSession, order_id: str, kind: MovementKind) -> list:
    result = await session.execute(
        select(stock_movements)
        .where(stock_movements.c.order_id == order_id, stock_movements.c.kind == kind.value)
        .order_by(stock_movements.c.product_id)
    )
    return result.fetchall()


async def reserve_for_order(
    session: AsyncSession,
    outbox: OutboxRelay,
    order_id: str,
    items: list[dict],
) -> dict:
    """
    注文の明細をまとめて引き当てる (all or nothing)。

    1 行でも足りなければ、それまでに減算した行を同じトランザクション内で戻し、
    inventory.insufficient を発行する。減算後に閾値以下になった商品は
    inventory.low を発行する。
    """
    state = await _lock_order(session, order_id)
    if state is ReservationState.RELEASED:
        # キャンセルの方が先に届いていた
        logger.info("Order %s already released, reservation skipped", order_id)
        return {"order_id": order_id, "status": "skipped"}
    if state is not ReservationState.PENDING:
        return {"order_id": order_id, "status": state.value}

    lines = merge_lines(items)
    decremented: list[StockLine] = []
    shortage: StockLine | None = None
    for line in lines:
        if await _decrement(session, line):
            decremented.append(line)
        else:
            shortage = line
            break

    if shortage is not None:
        for line in decremented:
            await _credit(session, line.product_id, line.quantity)
        item = await _load_item(session, shortage.product_id)
        await event_store.append_event(
            session,
            f"order:{order_id}",
            AGGREGATE_TYPE,
            topics.INVENTORY_INSUFFICIENT,
            InventoryInsufficient(
                order_id=order_id,
                product_id=shortage.product_id,
                quantity_requested=shortage.quantity,
                quantity_available=item.quantity if item else 0,
                timestamp=_now(),
            ),
            1,
        )
        await _set_state(session, order_id, ReservationState.INSUFFICIENT)
        await session.commit()
        await outbox.publish_pending()
        logger.warning(
            "Insufficient stock for order %s: %s x%d",
            order_id,
            shortage.product_id,
            shortage.quantity,
        )
        return {
            "order_id": order_id,
            "status": "insufficient",
            "product_id": shortage.product_id,
        }

    now = _now()
    await session.execute(
        insert(stock_movements),
        [
            {
                "order_id": order_id,
                "product_id": line.product_id,
                "kind": MovementKind.RESERVE.value,
                "quantity": -line.quantity,
                "reason": "order.created",
                "created_at": now,
            }
            for line in lines
        ],
    )
    for line in lines:
        await _emit_if_low(session, line.product_id)
    await _set_state(session, order_id, ReservationState.RESERVED)
    await session.commit()
    await outbox.publish_pending()
    logger.info("Reserved stock for order %s (%d lines)", order_id, len(lines))
    return {"order_id": order_id, "status": "reserved"}


async def release_for_order(
    session: AsyncSession,
    outbox: OutboxRelay,
    order_id: str,
    reason: str,
) -> dict:
    """
    注文で引き当てた分を戻す (補償トランザクション)。

    戻すのは reserve の記録があり、まだ release していない商品だけ。
    引き当て前に呼ばれた場合も released にしておき、後から来た order.created を無視させる。
    """
    state = await _lock_order(session, order_id)
    if state is ReservationState.RELEASED:
        await session.commit()
        return {"order_id": order_id, "status": "released", "credited": []}
    await _set_state(session, order_id, ReservationState.RELEASED, reason)

    released = {row.product_id for row in await _movements(session, order_id, MovementKind.RELEASE)}
    credited = []
    for row in await _movements(session, order_id, MovementKind.RESERVE):
        if row.product_id in released:
            continue
        quantity = -row.quantity
        await _credit(session, row.product_id, quantity)
        await session.execute(
            insert(stock_movements).values(
                order_id=order_id,
                product_id=row.product_id,
                kind=MovementKind.RELEASE.value,
                quantity=quantity,
                reason=reason,
                created_at=_now(),
            )
        )
        credited.append({"product_id": row.product_id, "quantity": quantity})

    await session.commit()
    await outbox.publish_pending()
    if credited:
        logger.info("Released stock for order %s: %s", order_id, credited)
    return {"order_id": order_id, "status": "released", "credited": credited}


# ── 運用者による在庫編集 ─────────────────────────


async def set_stock(
    session: AsyncSession,
    outbox: OutboxRelay,
    product_id: str,
    quantity: int,
    low_stock_threshold: int | None = None,
    product_name: str | None = None,
) -> dict:
    """在庫数を指定値にする。商品が無ければ作る。"""
    if quantity < 0:
        raise InvalidAmountError("Stock quantity cannot be negative")
    if low_stock_threshold is not None and low_stock_threshold < 0:
        raise InvalidAmountError("Low stock threshold cannot be negative")

    now = _now()
    row = await _load_item(session, product_id)
    if row is None:
        await session.execute(
            insert(inventory_items).values(
                product_id=product_id,
                product_name=product_name,
                quantity=quantity,
                low_stock_threshold=(
                    DEFAULT_LOW_STOCK_THRESHOLD if low_stock_threshold is None else low_stock_threshold
                ),
                version=1,
                updated_at=now,
            )
        )
        delta = quantity
    else:
        values = {"quantity": quantity, "version": row.version + 1, "updated_at": now}
        if low_stock_threshold is not None:
            values["low_stock_threshold"] = low_stock_threshold
        if product_name is not None:
            values["product_name"] = product_name
        await session.execute(
            update(inventory_items)
            .where(inventory_items.c.product_id == product_id)
            .values(**values)
        )
        delta = quantity - row.quantity

    if delta:
        await _record_adjustment(session, product_id, delta, "stock set by operator")
    await session.commit()
    await outbox.publish_pending()
    return item_to_dict(await _load_item(session, product_id))


async def adjust_stock(
    session: AsyncSession,
    outbox: OutboxRelay,
    product_id: str,
    delta: int,
    reason: str = "",
) -> dict:
    """在庫を増減する。減算は在庫が足りるときだけ。"""
    if await _load_item(session, product_id) is None:
        raise ProductNotFoundError(f"No stock record for {product_id}")
    result = await session.execute(
        update(inventory_items)
        .where(
            inventory_items.c.product_id == product_id,
            inventory_items.c.quantity + delta >= 0,
        )
        .values(
            quantity=inventory_items.c.quantity + delta,
            version=inventory_items.c.version + 1,
            updated_at=_now(),
        )
    )
    if result.rowcount != 1:
        raise InsufficientStockError(f"Not enough stock of {product_id} to remove {-delta}")
    await _record_adjustment(session, product_id, delta, reason or "adjusted by operator")
    if delta < 0:
        await _emit_if_low(session, product_id)
    await session.commit()
    await outbox.publish_pending()
    return item_to_dict(await _load_item(session, product_id))


async def _record_adjustment(
    session: AsyncSession, product_id: str, delta: int, reason: str
) -> None:
    await session.execute(
        insert(stock_movements).values(
            order_id=None,
            product_id=product_id,
            kind=MovementKind.ADJUST.value,
            quantity=delta,
            reason=reason,
            created_at=_now(),
        )
    )
