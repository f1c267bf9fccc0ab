"""
Datastore operation helpers shared by every service.

Provides error classification and retry with exponential backoff, a
row-backed advisory lock usable across processes, and the atomic
procedures used when creating customers and subscriptions.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy import and_, delete
from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.config import settings
from billsync.core.exceptions import (
    ConflictError,
    DatastoreError,
    DatastoreErrorKind,
    LockNotAcquiredError,
    RETRYABLE_KINDS,
)
from billsync.crud.customer import customer_crud
from billsync.crud.feature_grant import usage_record_crud
from billsync.crud.subscription import subscription_crud
from billsync.models.advisory_lock import AdvisoryLock
from billsync.models.base import utcnow
from billsync.models.customer import Customer
from billsync.models.feature_grant import FeatureGrant
from billsync.models.product import Feature, ProductFeature
from billsync.models.subscription import Subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SQLSTATE_KINDS = {
    "40P01": DatastoreErrorKind.DEADLOCK,
    "40001": DatastoreErrorKind.SERIALIZATION,
    "57014": DatastoreErrorKind.TIMEOUT,
    "55P03": DatastoreErrorKind.CONFLICT,
    "23505": DatastoreErrorKind.UNIQUE_VIOLATION,
}

_SQLITE_UNIQUE_ERRORS = {"SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"}
_SQLITE_BUSY_ERRORS = {"SQLITE_BUSY", "SQLITE_LOCKED"}


def _sqlstate(exc: sa_exc.DBAPIError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    return None


def classify_error(exc: BaseException) -> DatastoreErrorKind:
    """Map an exception raised by a datastore call to a DatastoreErrorKind"""
    if isinstance(exc, DatastoreError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, sa_exc.TimeoutError)):
        return DatastoreErrorKind.TIMEOUT
    if isinstance(exc, sa_exc.DisconnectionError):
        return DatastoreErrorKind.CONNECTION
    if isinstance(exc, sa_exc.DBAPIError):
        if exc.connection_invalidated:
            return DatastoreErrorKind.CONNECTION
        code = _sqlstate(exc)
        if code:
            if code in _SQLSTATE_KINDS:
                return _SQLSTATE_KINDS[code]
            if code.startswith("08"):
                return DatastoreErrorKind.CONNECTION
        sqlite_name = getattr(getattr(exc, "orig", None), "sqlite_errorname", None)
        if sqlite_name in _SQLITE_UNIQUE_ERRORS:
            return DatastoreErrorKind.UNIQUE_VIOLATION
        if sqlite_name in _SQLITE_BUSY_ERRORS:
            return DatastoreErrorKind.CONFLICT
        if isinstance(exc, sa_exc.OperationalError) and code is None and sqlite_name is None:
            return DatastoreErrorKind.CONNECTION
    return DatastoreErrorKind.OTHER


def backoff_delay_ms(attempt: int, base_delay_ms: int, max_delay_ms: int) -> int:
    """Delay before retry number ``attempt`` (1-based)"""
    return min(base_delay_ms * 2 ** (attempt - 1), max_delay_ms)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    db: Optional[AsyncSession] = None,
    max_retries: Optional[int] = None,
    base_delay_ms: Optional[int] = None,
    max_delay_ms: Optional[int] = None,
    operation_name: str = "datastore operation"
) -> T:
    """
    Run ``operation`` retrying transient datastore failures.

    Only deadlock, connection, timeout, conflict and serialization errors are
    retried. Anything else propagates on the first failure. When ``db`` is
    given the session is rolled back before each retry.
    """
    max_retries = max_retries if max_retries is not None else settings.db_retry_max_attempts
    base_delay_ms = base_delay_ms if base_delay_ms is not None else settings.db_retry_base_delay_ms
    max_delay_ms = max_delay_ms if max_delay_ms is not None else settings.db_retry_max_delay_ms

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            kind = classify_error(e)
            if kind not in RETRYABLE_KINDS:
                raise
            if db is not None:
                await db.rollback()
            if attempt >= max_retries:
                logger.error(f"❌ {operation_name} failed after {attempt} attempts ({kind.value}): {str(e)}")
                raise DatastoreError(kind, f"{operation_name} failed: {kind.value}") from e
            delay = backoff_delay_ms(attempt, base_delay_ms, max_delay_ms)
            logger.warning(f"⚠️ {operation_name} attempt {attempt} failed ({kind.value}), retrying in {delay}ms")
            await asyncio.sleep(delay / 1000)


def insert_ignore(db: AsyncSession, model):
    """INSERT ... ON CONFLICT DO NOTHING for the session's dialect"""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model).on_conflict_do_nothing()
    if dialect == "sqlite":
        return sqlite.insert(model).on_conflict_do_nothing()
    raise NotImplementedError(f"insert_ignore not supported for dialect {dialect}")


# Advisory locks

async def acquire_advisory_lock(
    db: AsyncSession,
    key: str,
    *,
    owner: Optional[str] = None,
    timeout_ms: Optional[int] = None
) -> bool:
    """
    Try to take the lock ``key`` until ``timeout_ms`` elapses.

    Commits the session. A lock whose holder died is taken over once it is
    past ``expires_at``.
    """
    timeout_ms = timeout_ms if timeout_ms is not None else settings.advisory_lock_timeout_ms
    owner = owner or uuid.uuid4().hex
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000

    while True:
        now = utcnow()
        await db.execute(
            delete(AdvisoryLock).where(and_(AdvisoryLock.key == key, AdvisoryLock.expires_at < now))
        )
        result = await db.execute(
            insert_ignore(db, AdvisoryLock).values(
                key=key,
                owner=owner,
                acquired_at=now,
                expires_at=now + timedelta(seconds=settings.advisory_lock_ttl_seconds),
            )
        )
        await db.commit()
        if result.rowcount == 1:
            return True
        if loop.time() >= deadline:
            logger.warning(f"⚠️ Advisory lock {key} not acquired within {timeout_ms}ms")
            return False
        await asyncio.sleep(0.05)


async def release_advisory_lock(db: AsyncSession, key: str) -> None:
    await db.execute(delete(AdvisoryLock).where(AdvisoryLock.key == key))
    await db.commit()


@asynccontextmanager
async def advisory_lock(db: AsyncSession, key: str, *, timeout_ms: Optional[int] = None):
    """Hold ``key`` for the duration of the block; released on every exit path"""
    acquired = await acquire_advisory_lock(db, key, timeout_ms=timeout_ms)
    if not acquired:
        raise LockNotAcquiredError(key)
    try:
        yield
    except BaseException:
        await db.rollback()
        raise
    finally:
        try:
            await release_advisory_lock(db, key)
        except Exception as e:
            logger.error(f"❌ Failed to release advisory lock {key}: {str(e)}")


# Atomic procedures

async def upsert_customer_atomic(
    db: AsyncSession,
    *,
    organization_id: uuid.UUID,
    email: str,
    external_id: Optional[str] = None,
    name: Optional[str] = None,
    processor_customer_ref: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> Tuple[Customer, bool]:
    """
    Insert or update a customer in one transaction.

    Matches on external id first, then on email (case-insensitive). An
    external id that is already set is never changed. Returns
    ``(customer, created)``.
    """
    email = email.strip().lower()
    lock_key = f"customer:{organization_id}:{external_id or email}"

    async def _upsert() -> Tuple[Customer, bool]:
        customer = None
        if external_id:
            customer = await customer_crud.get_by_external_id(db, organization_id, external_id)
        if customer is None:
            customer = await customer_crud.get_by_email(db, organization_id, email)
            if customer is not None and external_id and customer.external_id and customer.external_id != external_id:
                raise ConflictError("Email is already used by a customer with a different external id")

        if customer is not None:
            if customer.email != email:
                other = await customer_crud.get_by_email(db, organization_id, email)
                if other is not None and other.id != customer.id:
                    raise ConflictError("Email is already used by another customer")
                customer.email = email
            if external_id and not customer.external_id:
                customer.external_id = external_id
            if name:
                customer.name = name
            if processor_customer_ref and not customer.processor_customer_ref:
                customer.processor_customer_ref = processor_customer_ref
            if metadata:
                customer.meta_data = {**(customer.meta_data or {}), **metadata}
            await db.commit()
            return customer, False

        customer = Customer(
            organization_id=organization_id,
            email=email,
            external_id=external_id,
            name=name,
            processor_customer_ref=processor_customer_ref,
            meta_data=metadata or {},
        )
        db.add(customer)
        await db.commit()
        return customer, True

    async with advisory_lock(db, lock_key):
        try:
            return await run_with_retry(_upsert, db=db, operation_name="upsert_customer_atomic")
        except sa_exc.IntegrityError as e:
            await db.rollback()
            if classify_error(e) == DatastoreErrorKind.UNIQUE_VIOLATION:
                raise ConflictError("Customer with this email or external id already exists") from e
            raise DatastoreError(classify_error(e), "upsert_customer_atomic failed") from e


def grant_properties(link: ProductFeature, feature: Feature) -> Dict[str, Any]:
    """Effective grant properties: product-level config over feature defaults"""
    return {**(feature.properties or {}), **(link.config or {})}


async def create_subscription_atomic(
    db: AsyncSession,
    *,
    subscription: Dict[str, Any],
    features: List[Tuple[ProductFeature, Feature]]
) -> Tuple[Subscription, bool]:
    """
    Create a subscription and its feature grants in one transaction.

    If the customer already has an active or trialing subscription to the
    product that one is returned with ``created=False`` and nothing is
    written.
    """

    async def _create() -> Tuple[Subscription, bool]:
        existing = await subscription_crud.get_live_for_customer_product(
            db, subscription["customer_id"], subscription["product_id"]
        )
        if existing is not None:
            logger.info(f"ℹ️ Customer {subscription['customer_id']} already subscribed, returning {existing.id}")
            return existing, False

        sub = Subscription(**subscription)
        db.add(sub)
        await db.flush()

        grants = []
        for link, feature in features:
            grant = FeatureGrant(
                customer_id=sub.customer_id,
                subscription_id=sub.id,
                feature_id=feature.id,
                properties=grant_properties(link, feature),
                granted_at=utcnow(),
            )
            grants.append(grant)
        db.add_all(grants)
        await db.flush()
        await usage_record_crud.open_period(
            db,
            subscription=sub,
            grants=grants,
            period_start=sub.current_period_start,
            period_end=sub.current_period_end,
            commit=False,
        )
        await db.commit()
        return sub, True

    try:
        return await run_with_retry(_create, db=db, operation_name="create_subscription_atomic")
    except sa_exc.SQLAlchemyError as e:
        await db.rollback()
        raise DatastoreError(classify_error(e), "create_subscription_atomic failed") from e
