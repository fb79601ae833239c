"""
Order Service — 見積もり (Quote)

チェックアウト時点のバスケットと価格計算結果のスナップショット。
価格計算そのものは外部の協調者が行い、ここでは結果を不変に保持するだけ。
作成後はどのフィールドも変更できない (frozen)。
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CENT = Decimal("0.01")


def _round_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)


# ── バスケットスナップショット ──────────────────


class ItemLine(Snapshot):
    item_id: str
    amount: int = Field(ge=1)


class BundleLine(Snapshot):
    bundle_id: str
    amount: int = Field(ge=1)


class BasketSnapshot(Snapshot):
    basket_id: str | None = None
    user_id: str
    items: tuple[ItemLine, ...] = ()
    bundles: tuple[BundleLine, ...] = ()
    snapshot_at: datetime = Field(default_factory=_now)


# ── 価格スナップショット ────────────────────────


class PricedLine(Snapshot):
    amount: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    total_price: Decimal = Field(ge=0)

    @field_validator("unit_price", "discount", "total_price")
    @classmethod
    def round_money(cls, value: Decimal) -> Decimal:
        return _round_money(value)


class PricedItem(PricedLine):
    item_id: str


class PricedBundle(PricedLine):
    bundle_id: str


class PricingSnapshot(Snapshot):
    items: tuple[PricedItem, ...] = ()
    bundles: tuple[PricedBundle, ...] = ()
    subtotal: Decimal = Field(ge=0)
    total_discount: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Field(ge=0)
    currency: str = Field(pattern=r"^[A-Z]{3}$")
    checks_performed: tuple[str, ...] = ()
    priced_at: datetime = Field(default_factory=_now)

    @field_validator("subtotal", "total_discount", "total")
    @classmethod
    def round_money(cls, value: Decimal) -> Decimal:
        return _round_money(value)


# ── Quote ───────────────────────────────────────


class Quote(Snapshot):
    """価格付きバスケットの不変レコード"""

    quote_id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    business_partner_id: str | None = None
    total_price: Decimal = Field(ge=0)
    currency_code: str = Field(pattern=r"^[A-Z]{3}$")
    basket_snapshot: BasketSnapshot
    pricing_snapshot: PricingSnapshot
    created_at: datetime = Field(default_factory=_now)

    @field_validator("total_price")
    @classmethod
    def round_money(cls, value: Decimal) -> Decimal:
        return _round_money(value)

    @model_validator(mode="after")
    def total_matches_pricing(self) -> "Quote":
        if self.total_price != self.pricing_snapshot.total:
            raise ValueError(
                f"total_price {self.total_price} does not match "
                f"pricing total {self.pricing_snapshot.total}"
            )
        return self

    @classmethod
    def create(
        cls,
        user_id: str,
        basket_snapshot: BasketSnapshot,
        pricing_snapshot: PricingSnapshot,
        business_partner_id: str | None = None,
    ) -> "Quote":
        """合計金額と通貨は価格スナップショットから取る。"""
        return cls(
            user_id=user_id,
            business_partner_id=business_partner_id,
            total_price=pricing_snapshot.total,
            currency_code=pricing_snapshot.currency,
            basket_snapshot=basket_snapshot,
            pricing_snapshot=pricing_snapshot,
        )

    def item_ids(self) -> list[str]:
        return [i.item_id for i in self.basket_snapshot.items]

    def bundle_ids(self) -> list[str]:
        return [b.bundle_id for b in self.basket_snapshot.bundles]
