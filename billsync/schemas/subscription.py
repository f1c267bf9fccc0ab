from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from uuid import UUID
from enum import Enum


class EffectiveTiming(str, Enum):
    IMMEDIATE = "immediate"
    PERIOD_END = "period_end"


class ChangeTypeEnum(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL = "lateral"


class PreviewChangeRequest(BaseModel):
    new_price_id: UUID
    effective_timing: EffectiveTiming = EffectiveTiming.IMMEDIATE


class ChangePlanRequest(PreviewChangeRequest):
    confirm_amount: Optional[int] = Field(
        None, ge=0, description="Immediate payment shown in the preview; must still match"
    )


class PlanSummary(BaseModel):
    price_id: UUID
    product_id: UUID
    product_name: str
    amount: int
    currency: str
    interval: str
    interval_count: int


class ProrationDetails(BaseModel):
    unused_credit: int
    new_charge: int
    immediate_payment: int
    remaining_days: int
    total_days: int
    source: str = Field(..., description="processor, local or period_end")


class PlanChangePreview(BaseModel):
    subscription_id: UUID
    change_type: ChangeTypeEnum
    effective_timing: EffectiveTiming
    current_plan: PlanSummary
    new_plan: PlanSummary
    proration: ProrationDetails
    effective_date: datetime
    next_billing_date: datetime
    next_billing_amount: int
    notes: List[str] = Field(default_factory=list)


class ChangePlanResponse(BaseModel):
    subscription_id: UUID
    change_id: UUID
    change_type: ChangeTypeEnum
    status: str
    effective_date: datetime
    immediate_payment: int
    message: str


class AvailablePlan(BaseModel):
    price_id: UUID
    product_id: UUID
    product_name: str
    amount: int
    currency: str
    interval: str
    interval_count: int


class AvailablePlansResponse(BaseModel):
    current_plan: PlanSummary
    upgrades: List[AvailablePlan] = Field(default_factory=list)
    downgrades: List[AvailablePlan] = Field(default_factory=list)
    lateral: List[AvailablePlan] = Field(default_factory=list)
