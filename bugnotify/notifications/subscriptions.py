"""
Web Push Subscription Store

Browser push endpoints registered by users. The dispatcher only needs the
enabled ones; endpoints the push service reports as gone are disabled.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bugnotify.errors import DataAccessError
from bugnotify.models import WebPushSubscription

from .channels import PushTarget

logger = logging.getLogger(__name__)


class WebPushSubscriptionStore:
    """CRUD over web-push subscriptions for one database session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def subscribe(
        self,
        user_id: int,
        endpoint: str,
        p256dh: str,
        auth: str,
        user_agent: Optional[str] = None,
    ) -> WebPushSubscription:
        """Register an endpoint, or re-enable and re-key an existing one."""
        now = datetime.utcnow()
        try:
            result = await self.db.execute(
                select(WebPushSubscription).where(WebPushSubscription.endpoint == endpoint)
            )
            subscription = result.scalar_one_or_none()

            if subscription is None:
                subscription = WebPushSubscription(
                    user_id=user_id,
                    endpoint=endpoint,
                    p256dh_key=p256dh,
                    auth_key=auth,
                    user_agent=user_agent,
                    enabled=True,
                    created_at=now,
                    last_used_at=now,
                )
                self.db.add(subscription)
            else:
                subscription.user_id = user_id
                subscription.p256dh_key = p256dh
                subscription.auth_key = auth
                subscription.user_agent = user_agent or subscription.user_agent
                subscription.enabled = True
                subscription.last_used_at = now

            await self.db.flush()
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to save push subscription for user {user_id}: {e}") from e

        logger.info(f"Web push subscription {subscription.id} active for user {user_id}")
        return subscription

    async def unsubscribe(self, endpoint: str) -> bool:
        try:
            result = await self.db.execute(
                update(WebPushSubscription)
                .where(WebPushSubscription.endpoint == endpoint)
                .values(enabled=False)
            )
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to unsubscribe push endpoint: {e}") from e
        return result.rowcount > 0

    async def active_for_users(self, user_ids: Iterable[int]) -> Dict[int, List[PushTarget]]:
        """Enabled subscriptions for many users, keyed by user id."""
        user_ids = list(user_ids)
        if not user_ids:
            return {}

        try:
            result = await self.db.execute(
                select(WebPushSubscription)
                .where(WebPushSubscription.user_id.in_(user_ids))
                .where(WebPushSubscription.enabled.is_(True))
                .order_by(WebPushSubscription.id)
            )
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to load push subscriptions: {e}") from e

        targets: Dict[int, List[PushTarget]] = {}
        for sub in result.scalars().all():
            targets.setdefault(sub.user_id, []).append(
                PushTarget(
                    subscription_id=sub.id,
                    endpoint=sub.endpoint,
                    p256dh=sub.p256dh_key,
                    auth=sub.auth_key,
                )
            )
        return targets

    async def disable(self, subscription_ids: Iterable[int]) -> int:
        """Disable subscriptions the push service no longer accepts."""
        subscription_ids = list(subscription_ids)
        if not subscription_ids:
            return 0

        try:
            result = await self.db.execute(
                update(WebPushSubscription)
                .where(WebPushSubscription.id.in_(subscription_ids))
                .values(enabled=False)
            )
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to disable push subscriptions: {e}") from e

        logger.info(f"Disabled {result.rowcount} expired web push subscriptions")
        return result.rowcount

    async def touch(self, subscription_ids: Iterable[int], now: Optional[datetime] = None) -> None:
        subscription_ids = list(subscription_ids)
        if not subscription_ids:
            return

        try:
            await self.db.execute(
                update(WebPushSubscription)
                .where(WebPushSubscription.id.in_(subscription_ids))
                .values(last_used_at=now or datetime.utcnow())
            )
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to update push subscriptions: {e}") from e

    async def cleanup_expired(self, days_inactive: int = 90, now: Optional[datetime] = None) -> int:
        """Delete subscriptions unused for ``days_inactive`` days."""
        cutoff = (now or datetime.utcnow()) - timedelta(days=days_inactive)
        try:
            result = await self.db.execute(
                delete(WebPushSubscription).where(WebPushSubscription.last_used_at < cutoff)
            )
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to clean up push subscriptions: {e}") from e

        if result.rowcount:
            logger.info(f"Removed {result.rowcount} inactive web push subscriptions")
        return result.rowcount
