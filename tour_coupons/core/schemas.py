from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DiscountTypeIn = Literal["percentage", "fixed_amount"]
CouponTypeIn = Literal["public", "private", "first_purchase", "returning_customer"]
AssetTypeIn = Literal["activities", "events", "restaurants", "vehicles", "accommodations", "packages"]
BookingTypeIn = Literal["activity", "event", "restaurant", "vehicle", "accommodation", "package"]


def _naive_utc(v):
    # SQLite guarda DateTime sin zona: todo se compara en UTC naive
    if isinstance(v, datetime) and v.tzinfo is not None:
        return v.astimezone(timezone.utc).replace(tzinfo=None)
    return v


class ApplicableAssetIn(BaseModel):
    asset_type: AssetTypeIn
    asset_id: str
    is_active: bool = True


class GlobalApplicationIn(BaseModel):
    is_global: bool = False
    asset_types: List[AssetTypeIn] = Field(default_factory=list)


class CouponCreate(BaseModel):
    code: Optional[str] = None
    name: str
    description: str
    discount_type: DiscountTypeIn
    discount_value: float
    max_discount_amount: Optional[float] = None
    minimum_order_value: Optional[float] = None
    maximum_order_value: Optional[float] = None
    usage_limit: Optional[int] = None
    user_usage_limit: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: datetime
    type: CouponTypeIn = "public"
    applicable_assets: List[ApplicableAssetIn] = Field(default_factory=list)
    global_application: GlobalApplicationIn = Field(default_factory=GlobalApplicationIn)
    allowed_users: List[str] = Field(default_factory=list)
    is_active: bool = True
    is_publicly_visible: bool = True
    stackable: bool = False
    auto_apply: bool = False
    notify_on_expiration: bool = False
    partner_id: Optional[str] = None

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _dates_to_utc(cls, v):
        return _naive_utc(v)


class CouponUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[DiscountTypeIn] = None
    discount_value: Optional[float] = None
    max_discount_amount: Optional[float] = None
    minimum_order_value: Optional[float] = None
    maximum_order_value: Optional[float] = None
    usage_limit: Optional[int] = None
    user_usage_limit: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    type: Optional[CouponTypeIn] = None
    applicable_assets: Optional[List[ApplicableAssetIn]] = None
    global_application: Optional[GlobalApplicationIn] = None
    allowed_users: Optional[List[str]] = None
    is_publicly_visible: Optional[bool] = None
    stackable: Optional[bool] = None
    auto_apply: Optional[bool] = None
    notify_on_expiration: Optional[bool] = None

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _dates_to_utc(cls, v):
        return _naive_utc(v)


class CouponOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    name: str
    description: str
    discount_type: str
    discount_value: float
    max_discount_amount: Optional[float] = None
    minimum_order_value: Optional[float] = None
    maximum_order_value: Optional[float] = None
    usage_limit: Optional[int] = None
    usage_count: int
    user_usage_limit: Optional[int] = None
    valid_from: datetime
    valid_until: datetime
    type: str
    allowed_users: List[str]
    applicable_assets: List[Dict[str, Any]]
    global_is_global: bool
    global_asset_types: List[str]
    is_active: bool
    is_publicly_visible: bool
    stackable: bool
    auto_apply: bool
    notify_on_expiration: bool
    notification_sent_at: Optional[datetime] = None
    partner_id: Optional[str] = None


class StatusBody(BaseModel):
    is_active: bool


class DuplicateBody(BaseModel):
    new_code: Optional[str] = None


class UsersBody(BaseModel):
    user_ids: List[str] = Field(min_length=1)


class AssetsBody(BaseModel):
    applicable_assets: List[ApplicableAssetIn] = Field(default_factory=list)
    global_application: Optional[GlobalApplicationIn] = None


class BulkStatusBody(BaseModel):
    coupon_ids: List[int] = Field(min_length=1)
    action: Literal["activate", "deactivate", "delete"]


class CouponCheck(BaseModel):
    code: str
    user_id: Optional[str] = None
    asset_type: Optional[str] = None
    asset_id: Optional[str] = None
    order_value: Optional[float] = Field(default=None, ge=0)


class CalculateBody(BaseModel):
    code: str
    order_value: float = Field(ge=0)
    asset_type: Optional[str] = None
    asset_id: Optional[str] = None


class MultiCheck(BaseModel):
    codes: List[str] = Field(min_length=1)
    user_id: Optional[str] = None
    asset_type: Optional[str] = None
    asset_id: Optional[str] = None
    order_value: Optional[float] = Field(default=None, ge=0)


class AutoApplyBody(BaseModel):
    user_id: str
    asset_type: str
    asset_id: str
    order_value: float = Field(ge=0)


class ApplyBody(BaseModel):
    code: str
    user_id: str
    booking_id: str
    booking_type: BookingTypeIn
    original_amount: float = Field(gt=0)
    asset_type: Optional[str] = None
    asset_id: Optional[str] = None


class RefundBody(BaseModel):
    reason: str = Field(min_length=1)


class PaymentSyncBody(BaseModel):
    provider: Literal["stripe", "mercadopago"]
    reference: str
    status: Optional[str] = None


class UsageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    coupon_id: int
    user_id: str
    booking_id: str
    booking_type: str
    original_amount: float
    discount_amount: float
    final_amount: float
    applied_by: Optional[str] = None
    applied_at: datetime
    status: str
    payment_provider: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_status: Optional[str] = None
