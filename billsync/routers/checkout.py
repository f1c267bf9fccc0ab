from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from uuid import UUID

from billsync.core.auth import get_current_organization
from billsync.core.database import get_db
from billsync.core.exceptions import ForbiddenError
from billsync.schemas.checkout import (
    CheckoutMetadataResponse,
    ConfirmCheckoutResponse,
    CreateCheckoutRequest,
    CreateCheckoutResponse,
)
from billsync.services.checkout_metadata_service import checkout_metadata_service
from billsync.services.checkout_service import checkout_service

router = APIRouter()


@router.post("", response_model=CreateCheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_checkout(
    request: CreateCheckoutRequest,
    organization_id: UUID = Depends(get_current_organization),
    db: AsyncSession = Depends(get_db)
):
    """
    Start a checkout for a price.

    Paid plans return a PaymentIntent client secret; free plans are
    confirmed with ``/confirm-free`` instead.
    """
    try:
        return await checkout_service.create_checkout(db, organization_id, request)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create checkout: {str(e)}"
        )


@router.get("/{metadata_id}", response_model=CheckoutMetadataResponse)
async def get_checkout(
    metadata_id: UUID,
    organization_id: UUID = Depends(get_current_organization),
    db: AsyncSession = Depends(get_db)
):
    try:
        metadata = await checkout_metadata_service.get(db, metadata_id)
        if metadata.organization_id != organization_id:
            raise ForbiddenError()
        return metadata
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to load checkout: {str(e)}"
        )


@router.post("/{metadata_id}/confirm-free", response_model=ConfirmCheckoutResponse)
async def confirm_free_checkout(
    metadata_id: UUID,
    organization_id: UUID = Depends(get_current_organization),
    db: AsyncSession = Depends(get_db)
):
    try:
        metadata = await checkout_service.confirm_free_checkout(db, metadata_id, organization_id)
        return ConfirmCheckoutResponse(
            checkout_id=metadata.id,
            subscription_id=metadata.subscription_id,
            status=metadata.status.value,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to confirm checkout: {str(e)}"
        )
