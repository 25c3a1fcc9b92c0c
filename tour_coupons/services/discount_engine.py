"""
Motor de descuentos de cupones.

Funciones puras: reciben un CouponRule y un OrderContext y devuelven
resultados estructurados. No hay I/O ni estado; la persistencia, el
incremento atómico de usos y la presentación de motivos al usuario viven en
coupon_store / coupon_usage / routers.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class CouponType(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    FIRST_PURCHASE = "first_purchase"
    RETURNING_CUSTOMER = "returning_customer"


class AssetType(str, Enum):
    ACTIVITIES = "activities"
    EVENTS = "events"
    RESTAURANTS = "restaurants"
    VEHICLES = "vehicles"
    ACCOMMODATIONS = "accommodations"
    PACKAGES = "packages"


# Tipos de cliente que no se combinan entre sí
CUSTOMER_CLASS_TYPES = (CouponType.FIRST_PURCHASE, CouponType.RETURNING_CUSTOMER)

# Motivos visibles al usuario final
REASON_DELETED = "coupon has been removed"
REASON_INACTIVE = "coupon is inactive"
REASON_NOT_YET_VALID = "coupon is not yet valid"
REASON_EXPIRED = "coupon has expired"
REASON_USAGE_LIMIT = "usage limit reached"
REASON_MIN_ORDER = "minimum order value not met"
REASON_MAX_ORDER = "maximum order value exceeded"
REASON_NOT_APPLICABLE = "coupon not applicable to this item"
REASON_USER_LIMIT = "user usage limit reached"
REASON_USER_NOT_ALLOWED = "user not authorized for this coupon"
REASON_FIRST_PURCHASE_ONLY = "coupon valid only for first purchase"
REASON_RETURNING_ONLY = "coupon valid only for returning customers"

CONFLICT_MULTIPLE_NON_STACKABLE = "multiple non-stackable coupons selected"
CONFLICT_NON_STACKABLE_COMBINED = "a selected coupon cannot be combined with other coupons"


class CouponDefinitionError(ValueError):
    """Registro de cupón mal formado (error del llamador, no de negocio)."""


class InvalidOrderValue(ValueError):
    pass


def utcnow() -> datetime:
    # UTC naive: es lo que guarda SQLite en las columnas DateTime
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _money(value: float) -> float:
    return round(float(value), 2)


def _cents_down(value: float) -> float:
    # fracciones de centavo se descartan: el descuento nunca supera el pedido
    return float(Decimal(repr(float(value))).quantize(Decimal("0.01"), rounding=ROUND_DOWN))


@dataclass(frozen=True)
class ApplicableAsset:
    asset_type: str
    asset_id: str
    is_active: bool = True


@dataclass(frozen=True)
class GlobalApplication:
    is_global: bool = False
    asset_types: Tuple[str, ...] = ()


@dataclass
class CouponRule:
    code: str
    discount_type: DiscountType
    discount_value: float
    valid_until: datetime
    valid_from: Optional[datetime] = None
    max_discount_amount: Optional[float] = None
    minimum_order_value: Optional[float] = None
    maximum_order_value: Optional[float] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    user_usage_limit: Optional[int] = None
    type: CouponType = CouponType.PUBLIC
    allowed_users: FrozenSet[str] = frozenset()
    applicable_assets: Tuple[ApplicableAsset, ...] = ()
    global_application: GlobalApplication = field(default_factory=GlobalApplication)
    is_active: bool = True
    stackable: bool = False
    auto_apply: bool = False
    notify_on_expiration: bool = False
    notification_sent_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    id: Optional[int] = None
    name: str = ""

    def __post_init__(self):
        if not self.code or not str(self.code).strip():
            raise CouponDefinitionError("coupon code is required")
        try:
            self.discount_type = DiscountType(self.discount_type)
        except ValueError:
            raise CouponDefinitionError(
                f"unknown discount type {self.discount_type!r} for coupon {self.code}"
            ) from None
        try:
            self.type = CouponType(self.type)
        except ValueError:
            raise CouponDefinitionError(
                f"unknown coupon type {self.type!r} for coupon {self.code}"
            ) from None
        if self.discount_value is None or float(self.discount_value) < 0:
            raise CouponDefinitionError(f"coupon {self.code} has an invalid discount value")
        if not isinstance(self.valid_until, datetime):
            raise CouponDefinitionError(f"coupon {self.code} is missing valid_until")
        if self.max_discount_amount is not None and float(self.max_discount_amount) < 0:
            raise CouponDefinitionError(f"coupon {self.code} has a negative discount cap")
        self.allowed_users = frozenset(str(u) for u in (self.allowed_users or ()))
        self.applicable_assets = tuple(self.applicable_assets or ())
        self.usage_count = int(self.usage_count or 0)


@dataclass
class OrderContext:
    user_id: Optional[str] = None
    asset_type: Optional[str] = None
    asset_id: Optional[str] = None
    order_value: Optional[float] = None
    # Los conteos los calcula el llamador (engine sin I/O)
    user_usage_count: Optional[int] = None
    previous_bookings: Optional[int] = None


@dataclass
class EligibilityResult:
    is_eligible: bool
    reasons: List[str] = field(default_factory=list)

    @property
    def reason(self) -> Optional[str]:
        return ", ".join(self.reasons) if self.reasons else None


@dataclass
class DiscountCalculation:
    original_amount: float
    discount_amount: float
    final_amount: float
    discount_percentage: float
    max_discount_reached: bool = False


@dataclass
class CouponEvaluation:
    coupon: CouponRule
    eligibility: EligibilityResult
    calculation: Optional[DiscountCalculation] = None

    @property
    def code(self) -> str:
        return self.coupon.code

    @property
    def is_valid(self) -> bool:
        return self.eligibility.is_eligible

    @property
    def discount_amount(self) -> float:
        return self.calculation.discount_amount if self.calculation else 0.0


@dataclass
class MultiCouponResult:
    order_value: float
    evaluations: List[CouponEvaluation]
    conflicts: List[str]
    total_discount: float
    final_amount: float

    @property
    def valid(self) -> List[CouponEvaluation]:
        return [e for e in self.evaluations if e.is_valid]

    @property
    def stackable(self) -> List[CouponEvaluation]:
        return [e for e in self.valid if e.coupon.stackable]

    @property
    def non_stackable(self) -> List[CouponEvaluation]:
        return [e for e in self.valid if not e.coupon.stackable]

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def totals_for(self, codes: Iterable[str]) -> Tuple[float, float]:
        """(total_discount, final_amount) para el subconjunto que el llamador decide aplicar."""
        wanted = {c.strip().upper() for c in codes}
        total = sum(e.discount_amount for e in self.valid if e.code.upper() in wanted)
        total = _money(total)
        return total, _money(max(0.0, self.order_value - total))


def is_applicable(coupon: CouponRule, asset_type: str, asset_id: Optional[str]) -> bool:
    if coupon.global_application.is_global:
        return asset_type in coupon.global_application.asset_types
    return any(
        a.asset_type == asset_type and a.asset_id == asset_id and a.is_active
        for a in coupon.applicable_assets
    )


def order_bound_reasons(coupon: CouponRule, order_value: float) -> List[str]:
    if order_value < 0:
        raise InvalidOrderValue(f"order value cannot be negative: {order_value}")
    reasons = []
    if coupon.minimum_order_value is not None and order_value < coupon.minimum_order_value:
        reasons.append(REASON_MIN_ORDER)
    if coupon.maximum_order_value is not None and order_value > coupon.maximum_order_value:
        reasons.append(REASON_MAX_ORDER)
    return reasons


def evaluate_coupon(
    coupon: CouponRule, context: OrderContext, now: Optional[datetime] = None
) -> EligibilityResult:
    """
    Decide si el cupón puede usarse en el contexto dado.

    Nunca lanza por reglas de negocio: acumula todos los motivos de rechazo
    para que la UI pueda mostrarlos juntos.
    """
    now = now or utcnow()
    reasons: List[str] = []

    if coupon.deleted_at is not None:
        reasons.append(REASON_DELETED)
    if not coupon.is_active:
        reasons.append(REASON_INACTIVE)
    if coupon.valid_from is not None and coupon.valid_from > now:
        reasons.append(REASON_NOT_YET_VALID)
    if coupon.valid_until <= now:
        reasons.append(REASON_EXPIRED)
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        reasons.append(REASON_USAGE_LIMIT)

    if context.order_value is not None:
        reasons.extend(order_bound_reasons(coupon, context.order_value))

    if context.asset_type is not None:
        if not is_applicable(coupon, context.asset_type, context.asset_id):
            reasons.append(REASON_NOT_APPLICABLE)

    if (
        coupon.user_usage_limit is not None
        and context.user_usage_count is not None
        and context.user_usage_count >= coupon.user_usage_limit
    ):
        reasons.append(REASON_USER_LIMIT)

    if coupon.type == CouponType.PRIVATE:
        if context.user_id is None or str(context.user_id) not in coupon.allowed_users:
            reasons.append(REASON_USER_NOT_ALLOWED)
    elif coupon.type in CUSTOMER_CLASS_TYPES and context.previous_bookings is not None:
        if coupon.type == CouponType.FIRST_PURCHASE and context.previous_bookings > 0:
            reasons.append(REASON_FIRST_PURCHASE_ONLY)
        if coupon.type == CouponType.RETURNING_CUSTOMER and context.previous_bookings == 0:
            reasons.append(REASON_RETURNING_ONLY)

    return EligibilityResult(is_eligible=not reasons, reasons=reasons)


def compute_discount(coupon: CouponRule, order_value: float) -> DiscountCalculation:
    if order_value is None:
        raise InvalidOrderValue("order value is required")
    order_value = float(order_value)
    if order_value < 0:
        raise InvalidOrderValue(f"order value cannot be negative: {order_value}")
    order_value = _cents_down(order_value)

    value = float(coupon.discount_value)
    capped = False
    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = order_value * value / 100.0
        cap = coupon.max_discount_amount
        if cap is not None and discount > cap:
            discount = float(cap)
            capped = True
    elif coupon.discount_type == DiscountType.FIXED_AMOUNT:
        discount = min(value, order_value)
    else:
        raise CouponDefinitionError(f"unknown discount type {coupon.discount_type!r}")

    discount = _money(min(discount, order_value))
    final = _money(max(0.0, order_value - discount))
    percentage = _money(discount / order_value * 100.0) if order_value > 0 else 0.0

    return DiscountCalculation(
        original_amount=order_value,
        discount_amount=discount,
        final_amount=final,
        discount_percentage=percentage,
        max_discount_reached=capped,
    )


def evaluate_one(
    coupon: CouponRule, context: OrderContext, now: Optional[datetime] = None
) -> CouponEvaluation:
    eligibility = evaluate_coupon(coupon, context, now=now)
    calculation = None
    if eligibility.is_eligible and context.order_value is not None:
        calculation = compute_discount(coupon, context.order_value)
    return CouponEvaluation(coupon=coupon, eligibility=eligibility, calculation=calculation)


def find_conflicts(coupons: Sequence[CouponRule]) -> List[str]:
    conflicts: List[str] = []
    non_stackable = [c for c in coupons if not c.stackable]
    if len(non_stackable) > 1:
        conflicts.append(CONFLICT_MULTIPLE_NON_STACKABLE)
    if non_stackable and len(coupons) > 1:
        conflicts.append(CONFLICT_NON_STACKABLE_COMBINED)

    groups: Dict[CouponType, int] = {}
    for c in coupons:
        if c.type in CUSTOMER_CLASS_TYPES:
            groups[c.type] = groups.get(c.type, 0) + 1
    for ctype, count in groups.items():
        if count > 1:
            conflicts.append(f'multiple coupons of type "{ctype.value}" are not allowed')
    return conflicts


def evaluate_multiple(
    coupons: Sequence[CouponRule], context: OrderContext, now: Optional[datetime] = None
) -> MultiCouponResult:
    """
    Evalúa varios cupones para el mismo pedido.

    Los conflictos se reportan pero no se resuelven: elegir cuál cupón
    sobrevive es decisión del llamador.
    """
    now = now or utcnow()
    return combine([evaluate_one(c, context, now=now) for c in coupons], context.order_value)


def combine(
    evaluations: Sequence[CouponEvaluation], order_value: Optional[float]
) -> MultiCouponResult:
    """Suma y conflictos de evaluaciones ya hechas (p.ej. con un contexto por cupón)."""
    valid = [e for e in evaluations if e.is_valid]
    conflicts = find_conflicts([e.coupon for e in valid])

    order_value = float(order_value or 0.0)
    total = _money(sum(e.discount_amount for e in valid))
    return MultiCouponResult(
        order_value=order_value,
        evaluations=evaluations,
        conflicts=conflicts,
        total_discount=total,
        final_amount=_money(max(0.0, order_value - total)),
    )


def best_automatic(
    coupons: Sequence[CouponRule], context: OrderContext, now: Optional[datetime] = None
) -> Optional[CouponEvaluation]:
    """Cupón auto_apply elegible con mayor descuento, o None."""
    if context.order_value is None:
        raise InvalidOrderValue("order value is required for automatic coupons")
    candidates = [
        e for e in (evaluate_one(c, context, now=now) for c in coupons if c.auto_apply) if e.is_valid
    ]
    if not candidates:
        return None
    # sort estable: ante empate gana el primero recibido
    candidates.sort(key=lambda e: e.discount_amount, reverse=True)
    return candidates[0]


def optimize_combination(
    coupons: Sequence[CouponRule], order_value: float
) -> Tuple[List[CouponRule], float, float]:
    """
    Compara "todos los acumulables juntos" contra cada no acumulable por
    separado. Devuelve (combinación, descuento_total, total_final).
    """
    best: List[CouponRule] = []
    best_discount = 0.0

    stackable = [c for c in coupons if c.stackable]
    if stackable:
        combined = _money(sum(compute_discount(c, order_value).discount_amount for c in stackable))
        if combined > best_discount:
            best, best_discount = stackable, combined

    for c in coupons:
        if c.stackable:
            continue
        amount = compute_discount(c, order_value).discount_amount
        if amount > best_discount:
            best, best_discount = [c], amount

    best_discount = _money(min(best_discount, float(order_value)))
    return best, best_discount, _money(max(0.0, float(order_value) - best_discount))
