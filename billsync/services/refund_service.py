import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.crud.reconciliation import refund_crud, RefundCreate
from billsync.models.reconciliation import (
    Refund,
    RefundInitiator,
    ReconciliationStatus,
    ReconciliationType,
)
from billsync.services.reconciliation_service import reconciliation_service
from billsync.services.stripe_service import stripe_service, unwrap

logger = logging.getLogger(__name__)


@dataclass
class RefundResult:
    success: bool
    refund_ref: Optional[str] = None
    error: Optional[str] = None


class RefundService:
    """Compensation for payments whose downstream provisioning failed"""

    async def refund_payment_on_failure(
        self,
        db: AsyncSession,
        payment_ref: str,
        reason: str,
        amount: Optional[int] = None,
        account_ref: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> RefundResult:
        """
        Refund a captured payment after a failure and leave a reconciliation record.

        Never raises. A successful refund is queued as ``automatic_refund``
        (completed); a failed one as ``refund_failed`` awaiting manual review
        at top priority.
        """
        logger.warning(f"⚠️ Refunding payment {payment_ref}: {reason}")
        result = await stripe_service.create_refund(payment_ref, reason, amount=amount, account_ref=account_ref)
        details = {"reason": reason, "amount": amount, "account_ref": account_ref, **(context or {})}

        if result.get("success"):
            refund = result["refund"] or {}
            refund_ref = refund.get("id")
            await self._log_refund(
                db,
                RefundCreate(
                    payment_ref=payment_ref,
                    processor_refund_ref=refund_ref,
                    processor_account_ref=account_ref,
                    amount=refund.get("amount", amount),
                    currency=refund.get("currency"),
                    reason=reason,
                    status=refund.get("status") or "pending",
                    initiated_by=RefundInitiator.AUTOMATIC,
                    meta_data=context or {},
                ),
            )
            await reconciliation_service.escalate(
                db,
                type=ReconciliationType.AUTOMATIC_REFUND,
                reference_id=payment_ref,
                error=reason,
                details={**details, "refund_ref": refund_ref},
                status=ReconciliationStatus.COMPLETED,
                priority=5,
            )
            logger.info(f"✅ Refund {refund_ref} issued for payment {payment_ref}")
            return RefundResult(success=True, refund_ref=refund_ref)

        error = result.get("error") or "Refund failed"
        await self._log_refund(
            db,
            RefundCreate(
                payment_ref=payment_ref,
                processor_account_ref=account_ref,
                amount=amount,
                reason=reason,
                status="failed",
                initiated_by=RefundInitiator.AUTOMATIC,
                meta_data={**(context or {}), "error": error},
            ),
        )
        await reconciliation_service.escalate(
            db,
            type=ReconciliationType.REFUND_FAILED,
            reference_id=payment_ref,
            error=error,
            details=details,
            status=ReconciliationStatus.PENDING_MANUAL_REVIEW,
            priority=1,
        )
        logger.critical(f"🚨 Automatic refund failed for payment {payment_ref}: {error}")
        return RefundResult(success=False, error=error)

    async def process_manual_refund(
        self,
        db: AsyncSession,
        payment_ref: str,
        reason: str,
        requested_by: str,
        amount: Optional[int] = None,
        account_ref: Optional[str] = None
    ) -> Refund:
        """Operator-initiated refund; processor failures propagate as ProcessorError"""
        result = await stripe_service.create_refund(payment_ref, reason, amount=amount, account_ref=account_ref)
        refund = unwrap(result, "refund") or {}
        return await refund_crud.create(
            db,
            obj_in=RefundCreate(
                payment_ref=payment_ref,
                processor_refund_ref=refund.get("id"),
                processor_account_ref=account_ref,
                amount=refund.get("amount", amount),
                currency=refund.get("currency"),
                reason=reason,
                status=refund.get("status") or "pending",
                initiated_by=RefundInitiator.MANUAL,
                meta_data={"requested_by": requested_by},
            ),
        )

    async def get_refund_status(self, refund_ref: str, account_ref: Optional[str] = None) -> Dict[str, Any]:
        refund = unwrap(await stripe_service.retrieve_refund(refund_ref, account_ref=account_ref), "refund") or {}
        return {
            "refund_ref": refund.get("id", refund_ref),
            "status": refund.get("status"),
            "amount": refund.get("amount"),
            "currency": refund.get("currency"),
        }

    async def list_refunds_for_payment(self, db: AsyncSession, payment_ref: str) -> List[Refund]:
        return await refund_crud.list_for_payment(db, payment_ref)

    async def _log_refund(self, db: AsyncSession, obj_in: RefundCreate) -> None:
        try:
            await refund_crud.create(db, obj_in=obj_in)
        except Exception as e:
            await db.rollback()
            logger.error(f"❌ Failed to log refund for payment {obj_in.payment_ref}: {str(e)}")


refund_service = RefundService()
