"""
Common — ルーティングキー一覧

各事実は一度だけ、以下のいずれかのキーで発行される。
"""

ORDER_CREATED = "order.created"
ORDER_CANCELLED = "order.cancelled"
ORDER_STATUS_CHANGED = "order.status.changed"
ORDER_REFUND_REQUIRED = "order.refund_required"

PAYMENT_INITIATED = "payment.initiated"
PAYMENT_COMPLETED = "payment.completed"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"
PAYMENT_CANCELLED = "payment.cancelled"

INVENTORY_LOW = "inventory.low"
INVENTORY_INSUFFICIENT = "inventory.insufficient"
