"""
Payment Service — 決済ゲートウェイ (Port と Fake 実装)

ドメインのコードはこの抽象インターフェースだけに依存するので、
テスト用の FakeGateway と本番のゲートウェイを差し替えられる。
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from uuid import uuid4

from pydantic import BaseModel


class GatewayEvidence(BaseModel):
    """クライアントがゲートウェイから受け取った支払いの証跡。"""

    gateway_payment_id: str | None = None
    signature: str | None = None
    # テスト・デモ用: ゲートウェイの判定を上書きする ("success" / "failure")
    outcome: str | None = None
    card_last4: str | None = None
    upi_id: str | None = None


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    transaction_id: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class RefundResult:
    success: bool
    gateway_refund_id: str | None = None
    failure_reason: str | None = None


class PaymentGateway(ABC):
    @abstractmethod
    async def create_intent(
        self, payment_id: str, amount: Decimal, currency: str, method: str
    ) -> str:
        """支払いの受付を登録し、ゲートウェイ側の ID を返す。"""

    @abstractmethod
    async def verify_charge(
        self, gateway_payment_id: str, amount: Decimal, currency: str, evidence: GatewayEvidence
    ) -> ChargeResult:
        """証跡を検証し、実際に課金されたかどうかを返す。"""

    @abstractmethod
    async def refund(
        self, transaction_id: str, amount: Decimal, reason: str, idempotency_key: str
    ) -> RefundResult:
        """課金済みの取引を返金する。"""


class FakeGateway(PaymentGateway):
    """
    設定で成功・失敗を切り替えられる偽ゲートウェイ。

    delay を設定すると verify_charge が遅くなるので、
    確認タイムアウトの再現にも使える。
    """

    def __init__(self) -> None:
        self.should_succeed = True
        self.failure_reason = "Card declined"
        self.delay = 0.0
        self.calls: list[dict] = []

    def configure(
        self, should_succeed: bool, failure_reason: str = "Card declined", delay: float = 0.0
    ) -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.delay = delay

    async def create_intent(
        self, payment_id: str, amount: Decimal, currency: str, method: str
    ) -> str:
        self.calls.append(
            {"method": "create_intent", "payment_id": payment_id, "amount": amount}
        )
        return f"mock_{uuid4().hex}"

    async def verify_charge(
        self, gateway_payment_id: str, amount: Decimal, currency: str, evidence: GatewayEvidence
    ) -> ChargeResult:
        self.calls.append(
            {
                "method": "verify_charge",
                "gateway_payment_id": gateway_payment_id,
                "amount": amount,
                "currency": currency,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        succeed = self.should_succeed
        if evidence.outcome is not None:
            succeed = evidence.outcome == "success"
        if succeed:
            return ChargeResult(success=True, transaction_id=f"txn_{uuid4().hex[:16]}")
        return ChargeResult(success=False, failure_reason=self.failure_reason)

    async def refund(
        self, transaction_id: str, amount: Decimal, reason: str, idempotency_key: str
    ) -> RefundResult:
        self.calls.append(
            {
                "method": "refund",
                "transaction_id": transaction_id,
                "amount": amount,
                "reason": reason,
                "idempotency_key": idempotency_key,
            }
        )
        return RefundResult(success=True, gateway_refund_id=f"rfnd_{uuid4().hex[:16]}")
