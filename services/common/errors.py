"""
Common — エラー分類 (Error Taxonomy)

サービス境界を越えてよいのはこの分類だけ。
ストア固有の詳細 (SQL エラーなど) は境界の外へ漏らさない。

  ValidationError  (400) 入力が不正。リトライしない
  ConflictError    (409) 状態遷移の競合・不正遷移。呼び出し側が判断する
  NotFoundError    (404)
  TransientError   (503) ブローカー/ストア/下流サービスの一時障害。バックオフ付きでリトライ
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

_REGISTRY: dict[str, type["MarketplaceError"]] = {}


class MarketplaceError(Exception):
    code = "marketplace_error"
    status_code = 500

    def __init_subclass__(cls, **kwargs) -> None:
        super().__init_subclass__(**kwargs)
        _REGISTRY[cls.code] = cls

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code

    def to_dict(self) -> dict:
        return {"detail": self.detail, "code": self.code}


# ── Validation (400) ─────────────────────────────


class ValidationError(MarketplaceError):
    code = "validation_error"
    status_code = 400


class EmptyCartError(ValidationError):
    code = "empty_cart"


class InvalidAddressError(ValidationError):
    code = "invalid_address"


class InvalidAmountError(ValidationError):
    code = "invalid_amount"


class InvalidLineItemError(ValidationError):
    code = "invalid_line_item"


class InvalidPaymentMethodError(ValidationError):
    code = "invalid_payment_method"


# ── Conflict (409) ───────────────────────────────


class ConflictError(MarketplaceError):
    code = "conflict"
    status_code = 409


class IllegalTransitionError(ConflictError):
    code = "illegal_transition"


class ConcurrentUpdateError(ConflictError):
    code = "concurrent_update"


class PaymentAlreadyFinalizedError(ConflictError):
    code = "payment_already_finalized"


class InsufficientStockError(ConflictError):
    code = "insufficient_stock"


class OrderNotCancellableError(ConflictError):
    # REST 表面では 400 として返す
    code = "order_not_cancellable"
    status_code = 400


class PaymentNotRefundableError(ConflictError):
    code = "payment_not_refundable"
    status_code = 400


# ── Not Found (404) ──────────────────────────────


class NotFoundError(MarketplaceError):
    code = "not_found"
    status_code = 404


class OrderNotFoundError(NotFoundError):
    code = "order_not_found"


class PaymentNotFoundError(NotFoundError):
    code = "payment_not_found"


class ProductNotFoundError(NotFoundError):
    code = "product_not_found"


# ── Transient (503) ──────────────────────────────


class TransientError(MarketplaceError):
    code = "transient_error"
    status_code = 503


class BrokerUnavailableError(TransientError):
    code = "broker_unavailable"


class CircuitOpenError(TransientError):
    code = "circuit_open"


class UpstreamServiceError(TransientError):
    code = "upstream_unavailable"


class PaymentTimeoutError(TransientError):
    code = "payment_timeout"
    status_code = 504


def error_from_response(status_code: int, body: dict | None) -> MarketplaceError:
    """下流サービスのエラーレスポンスを同じ例外クラスに復元する。"""
    body = body or {}
    code = body.get("code")
    detail = body.get("detail") or f"HTTP {status_code}"
    if not isinstance(detail, str):
        detail = str(detail)
    cls = _REGISTRY.get(code) if code else None
    if cls is not None:
        return cls(detail)
    if status_code == 404:
        return NotFoundError(detail)
    if status_code == 409:
        return ConflictError(detail)
    if 400 <= status_code < 500:
        return ValidationError(detail)
    return UpstreamServiceError(detail)


def install_error_handlers(app: FastAPI) -> None:
    """ドメイン例外を HTTP レスポンスに変換するハンドラを登録する。"""

    @app.exception_handler(MarketplaceError)
    async def _marketplace_error(request: Request, exc: MarketplaceError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def _store_error(request: Request, exc: SQLAlchemyError):
        logger.exception("Store error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=503,
            content={"detail": "Store unavailable", "code": "store_unavailable"},
        )
