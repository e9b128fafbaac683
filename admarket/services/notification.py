"""Deal notifications: one Notification row per recipient, then Telegram delivery.

Rows are committed before delivery is attempted, so the audit trail exists
even when the bot cannot reach the user or the user turned notifications off. A failed delivery is recorded on
its row and never affects the other recipients.
"""

import html
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from admarket.models.deal import Deal
from admarket.models.notification import Notification
from admarket.models.user import User
from admarket.services import telegram
from admarket.services.deal_state_machine import DealStatus
from admarket.services.events import AppEvent

logger = logging.getLogger(__name__)

_TEMPLATES: dict[str, dict[AppEvent, tuple[str, str]]] = {
    "en": {
        AppEvent.DEAL_CREATED: (
            "New deal request",
            "Deal #{deal_number}: a new ad deal for {channel_title} is waiting for your answer.",
        ),
        AppEvent.DEAL_STATUS_CHANGED: (
            "Deal updated",
            "Deal #{deal_number}: {old_status} → {new_status}.",
        ),
        AppEvent.DEAL_ACCEPTED: (
            "Terms agreed",
            "Deal #{deal_number}: terms are agreed. Price: {price} {currency}.",
        ),
        AppEvent.DEAL_CANCELLED: (
            "Deal cancelled",
            "Deal #{deal_number} was cancelled. Reason: {reason}",
        ),
        AppEvent.DEAL_COMPLETED: (
            "Deal completed",
            "Deal #{deal_number} is completed. The post stayed intact for the agreed period.",
        ),
        AppEvent.PAYMENT_RECEIVED: (
            "Payment received",
            "Deal #{deal_number}: {amount} {currency} is now held in escrow.",
        ),
        AppEvent.PAYMENT_RELEASED: (
            "Payment released",
            "Deal #{deal_number}: {amount} {currency} was released to the channel owner.",
        ),
        AppEvent.PAYMENT_REFUNDED: (
            "Payment refunded",
            "Deal #{deal_number}: {amount} {currency} was refunded. Reason: {reason}",
        ),
        AppEvent.CREATIVE_SUBMITTED: (
            "Creative submitted",
            "Deal #{deal_number}: a creative is ready for your review.",
        ),
        AppEvent.CREATIVE_APPROVED: (
            "Creative approved",
            "Deal #{deal_number}: the creative was approved.",
        ),
        AppEvent.CREATIVE_REVISION_REQUESTED: (
            "Revision requested",
            "Deal #{deal_number}: the advertiser asked for changes: {feedback}",
        ),
        AppEvent.POST_PUBLISHED: (
            "Post published",
            "Deal #{deal_number}: the ad is live in {channel_title}.",
        ),
        AppEvent.POST_VIOLATION_DETECTED: (
            "Post violation",
            "Deal #{deal_number}: the post was {violation_type} before the guarantee period ended.",
        ),
        AppEvent.DEAL_TIMEOUT_WARNING: (
            "Deadline approaching",
            "Deal #{deal_number}: about {hours_remaining}h left at stage {status} before the deal expires.",
        ),
        AppEvent.DEAL_TIMED_OUT: (
            "Deal expired",
            "Deal #{deal_number} expired at stage {previous_status} due to inactivity.",
        ),
    },
}

# Statuses whose change already produces a dedicated event
_SPECIALIZED_STATUSES = frozenset({
    DealStatus.TERMS_AGREED,
    DealStatus.CANCELLED,
    DealStatus.COMPLETED,
})


def format_status(status: str) -> str:
    """AWAITING_PAYMENT → "Awaiting Payment"."""
    return " ".join(word.capitalize() for word in str(status).split("_") if word)


def _recipients(event: AppEvent, deal: Deal, payload: dict[str, Any]) -> list[int]:
    both = [deal.advertiser_id, deal.publisher_id]

    if event == AppEvent.DEAL_CREATED:
        return [deal.publisher_id]
    if event == AppEvent.DEAL_STATUS_CHANGED:
        if payload.get("new_status") in _SPECIALIZED_STATUSES:
            return []
        return [uid for uid in both if str(uid) != payload.get("actor_id")]
    if event == AppEvent.DEAL_CANCELLED:
        return [uid for uid in both if str(uid) != payload.get("cancelled_by")]
    if event == AppEvent.PAYMENT_RELEASED:
        return [deal.publisher_id]
    if event == AppEvent.PAYMENT_REFUNDED:
        return [deal.advertiser_id]
    if event == AppEvent.CREATIVE_SUBMITTED:
        return [deal.advertiser_id]
    if event in (AppEvent.CREATIVE_APPROVED, AppEvent.CREATIVE_REVISION_REQUESTED):
        return [deal.publisher_id]
    return both


def render(event: AppEvent, deal: Deal, payload: dict[str, Any], locale: str = "en") -> tuple[str, str]:
    templates = _TEMPLATES.get(locale) or _TEMPLATES["en"]
    title, body = templates[event]
    params: dict[str, Any] = {
        "deal_number": deal.deal_number or deal.id,
        "channel_title": deal.channel.title if deal.channel else "the channel",
        "price": deal.agreed_price,
        "currency": deal.currency,
        "status": deal.status,
        "reason": "not specified",
        "feedback": "",
        "amount": deal.agreed_price,
        "violation_type": "changed",
        "hours_remaining": "",
        "previous_status": deal.status,
    }
    params.update({k: v for k, v in payload.items() if v is not None})
    for key in ("old_status", "new_status", "status", "previous_status"):
        if key in params:
            params[key] = format_status(params[key])
    return title, body.format(**params)


def supports(event: AppEvent) -> bool:
    return event in _TEMPLATES["en"]


async def send_notifications(db: AsyncSession, event: AppEvent, payload: dict[str, Any]) -> int:
    """Persist and deliver notifications for `event`. Returns the number delivered."""
    deal_id = payload.get("deal_id")
    if deal_id is None:
        return 0
    result = await db.execute(select(Deal).where(Deal.id == deal_id))
    deal = result.scalar_one_or_none()
    if deal is None:
        logger.warning("Notification for missing deal %s skipped", deal_id)
        return 0

    recipient_ids = _recipients(event, deal, payload)
    if not recipient_ids:
        return 0

    users_result = await db.execute(select(User).where(User.id.in_(recipient_ids)))
    users = list(users_result.scalars().all())

    pending: list[tuple[User, Notification]] = []
    for user in users:
        title, body = render(event, deal, payload, user.locale)
        notification = Notification(
            user_id=user.id,
            deal_id=deal.id,
            type=str(event),
            title=title,
            body=body,
            data={k: v for k, v in payload.items() if isinstance(v, (str, int, float, bool))},
            channel="TELEGRAM",
        )
        db.add(notification)
        pending.append((user, notification))
    await db.commit()

    # Opted-out users keep their audit row but are not messaged
    deliverable = [(user, n) for user, n in pending if user.notifications_enabled is not False]

    delivered = 0
    for user, notification in deliverable:
        try:
            await telegram.send_message(
                user.telegram_id,
                f"<b>{html.escape(notification.title)}</b>\n{html.escape(notification.body)}",
                parse_mode="HTML",
            )
        except Exception as exc:
            logger.warning(
                "Notification delivery failed for user %d: %s", user.id, exc,
                extra={"deal_id": deal.id, "event": str(event)},
            )
            notification.error = str(exc)[:500]
            continue
        notification.delivered = True
        notification.delivered_at = datetime.now(timezone.utc)
        delivered += 1
    await db.commit()

    logger.info(
        "Notifications sent",
        extra={
            "deal_id": deal.id,
            "event": str(event),
            "delivered": delivered,
            "total": len(pending),
            "opted_out": len(pending) - len(deliverable),
        },
    )
    return delivered
