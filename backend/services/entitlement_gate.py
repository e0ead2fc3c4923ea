"""Entitlement Gate - fail-closed check before any paid/mutating operation.

NON-NEGOTIABLE RULES:
1. Any error, timeout, missing session or non-boolean answer is a denial.
2. The gate is awaited to completion before the first mutation; nothing is
   issued speculatively alongside it.
3. The entitlement source is opaque: it answers one boolean question.

Sources (ENTITLEMENT_SOURCE):
- mongo  (default) - subscription mirror rows written by the billing webhook
- stripe           - live lookup of the subscription id stored on the profile
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Any

from database import database
from models import AuditAction, SubscriptionStatus
from services.ingestion_errors import PaymentRequired
from utils.audit import create_audit_log
from utils.result import Result

logger = logging.getLogger(__name__)

ENTITLEMENT_TIMEOUT_SECONDS = float(os.getenv("ENTITLEMENT_TIMEOUT_SECONDS", "5"))
ENTITLEMENT_SOURCE = os.getenv("ENTITLEMENT_SOURCE", "mongo").strip().lower()

SUBSCRIPTION_STATUSES_ALLOWING_ACCESS = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
})


def _parse_period_end(value: Any) -> Optional[datetime]:
    """Accept datetime, ISO string or unix seconds (Stripe)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def subscription_allows_access(status: Optional[str], current_period_end: Any) -> bool:
    """Premium = (trialing OR active) AND current_period_end in the future."""
    if not status or str(status).lower() not in SUBSCRIPTION_STATUSES_ALLOWING_ACCESS:
        return False
    period_end = _parse_period_end(current_period_end)
    if period_end is None:
        return False
    return period_end > datetime.now(timezone.utc)


class EntitlementSource(ABC):
    """Authoritative answer to 'is this user entitled'."""

    @abstractmethod
    async def is_entitled(self, user_id: str) -> bool:
        pass


class MongoSubscriptionSource(EntitlementSource):
    """Reads the subscription mirror kept in sync by the billing webhook."""

    async def is_entitled(self, user_id: str) -> bool:
        db = database.get_db()
        subscription = await db.subscriptions.find_one(
            {"user_id": user_id},
            {"_id": 0, "status": 1, "current_period_end": 1},
            sort=[("current_period_end", -1)],
        )
        if not subscription:
            return False
        return subscription_allows_access(
            subscription.get("status"),
            subscription.get("current_period_end"),
        )


class StripeSubscriptionSource(EntitlementSource):
    """Retrieves the profile's subscription from Stripe directly."""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

    async def is_entitled(self, user_id: str) -> bool:
        import stripe

        db = database.get_db()
        profile = await db.profiles.find_one(
            {"user_id": user_id},
            {"_id": 0, "stripe_subscription_id": 1},
        )
        subscription_id = (profile or {}).get("stripe_subscription_id")
        if not subscription_id:
            return False
        if not self.api_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not set")

        stripe.api_key = self.api_key
        loop = asyncio.get_event_loop()
        subscription = await loop.run_in_executor(
            None,
            lambda: stripe.Subscription.retrieve(subscription_id),
        )
        return subscription_allows_access(
            subscription.get("status"),
            subscription.get("current_period_end"),
        )


def _default_source() -> EntitlementSource:
    if ENTITLEMENT_SOURCE == "stripe":
        return StripeSubscriptionSource()
    return MongoSubscriptionSource()


class EntitlementGate:
    """Single decision point for paid operations."""

    def __init__(self, source: Optional[EntitlementSource] = None, timeout_seconds: float = ENTITLEMENT_TIMEOUT_SECONDS):
        self.source = source or _default_source()
        self.timeout_seconds = timeout_seconds

    async def require_entitlement(self, user_id: Optional[str]) -> Result[None, PaymentRequired]:
        """
        Returns success only when the source positively confirms entitlement.

        Returns:
            Result.success() or Result.failure(PaymentRequired)
        """
        denial = await self._check(user_id)
        if denial is None:
            return Result.success()
        if user_id:
            await create_audit_log(
                action=AuditAction.ENTITLEMENT_DENIED,
                actor_id=user_id,
                resource_type="entitlement",
                metadata={"reason": denial},
            )
        return Result.failure(PaymentRequired(denial))

    async def is_entitled(self, user_id: Optional[str]) -> bool:
        """Boolean form for access-state resolution; denials are not audited."""
        return await self._check(user_id) is None

    async def _check(self, user_id: Optional[str]) -> Optional[str]:
        """Return None when entitled, otherwise the denial reason."""
        if not user_id:
            logger.warning("Entitlement check without a session - denied")
            return "No active session"

        try:
            answer = await asyncio.wait_for(
                self.source.is_entitled(user_id),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Entitlement check timed out after {self.timeout_seconds}s for {user_id} - denied")
            return "Entitlement check timed out"
        except Exception as e:
            logger.warning(f"Entitlement check failed for {user_id} - denied: {e}")
            return "Entitlement could not be verified"

        if answer is not True:
            if answer is not False:
                logger.warning(f"Ambiguous entitlement answer {answer!r} for {user_id} - denied")
            return "Active subscription required"

        return None


entitlement_gate = EntitlementGate()
