from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from uuid import UUID

from billsync.core.auth import get_current_organization
from billsync.core.database import get_db
from billsync.schemas.subscription import (
    AvailablePlansResponse,
    ChangePlanRequest,
    ChangePlanResponse,
    PlanChangePreview,
    PreviewChangeRequest,
)
from billsync.services.plan_change_service import plan_change_service

router = APIRouter()


@router.get("/{subscription_id}/available-plans", response_model=AvailablePlansResponse)
async def get_available_plans(
    subscription_id: UUID,
    organization_id: UUID = Depends(get_current_organization),
    db: AsyncSession = Depends(get_db)
):
    """Plans the subscription can move to, grouped by direction"""
    try:
        return await plan_change_service.list_available_plans(db, subscription_id, organization_id)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to list plans: {str(e)}"
        )


@router.post("/{subscription_id}/preview-change", response_model=PlanChangePreview)
async def preview_change(
    subscription_id: UUID,
    request: PreviewChangeRequest,
    organization_id: UUID = Depends(get_current_organization),
    db: AsyncSession = Depends(get_db)
):
    try:
        return await plan_change_service.preview(
            db,
            subscription_id,
            organization_id,
            request.new_price_id,
            request.effective_timing,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to preview plan change: {str(e)}"
        )


@router.post("/{subscription_id}/change-plan", response_model=ChangePlanResponse)
async def change_plan(
    subscription_id: UUID,
    request: ChangePlanRequest,
    organization_id: UUID = Depends(get_current_organization),
    db: AsyncSession = Depends(get_db)
):
    """
    Change the plan of a subscription.

    Upgrades and lateral moves apply immediately with proration; downgrades
    can be deferred to the end of the current period.
    """
    try:
        return await plan_change_service.change_plan(
            db,
            subscription_id,
            organization_id,
            request.new_price_id,
            request.effective_timing,
            confirm_amount=request.confirm_amount,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to change plan: {str(e)}"
        )


@router.delete("/{subscription_id}/scheduled-changes/{change_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_scheduled_change(
    subscription_id: UUID,
    change_id: UUID,
    organization_id: UUID = Depends(get_current_organization),
    db: AsyncSession = Depends(get_db)
):
    try:
        await plan_change_service.cancel_scheduled_change(db, subscription_id, change_id, organization_id)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to cancel scheduled change: {str(e)}"
        )
