"""Escrow release / refund with the HELD guard.

The escrow service performs the on-chain transfer; this module decides
whether it may be asked to. The guard is an atomic conditional update of
`escrow_status` (HELD → RELEASING / REFUNDING): duplicate or concurrent
deliveries of the same event find nothing to claim and never reach the
collaborator.

Both operations run as retryable jobs (admarket.workers.escrow_operations);
the bus listeners only enqueue them.
"""

import logging
from datetime import datetime, timedelta, timezone

import httpx
from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from admarket.core.config import settings
from admarket.core.errors import InfrastructureError
from admarket.models.deal import Deal
from admarket.services.deal import get_deal
from admarket.services.deal_state_machine import EscrowStatus, calculate_fees
from admarket.services.events import AppEvent, EventBus

logger = logging.getLogger(__name__)


class EscrowClient:
    """Thin async wrapper around the escrow service REST API."""

    def __init__(self, base_url: str | None = None, token: str | None = None) -> None:
        self.base_url = (base_url or settings.escrow_service_url).rstrip("/")
        self.token = settings.escrow_service_token if token is None else token

    def _headers(self) -> dict[str, str]:
        h: dict[str, str] = {"Accept": "application/json"}
        if self.token:
            h["Authorization"] = f"Bearer {self.token}"
        return h

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1.5, min=1, max=10),
        retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict) -> dict:
        async with httpx.AsyncClient(timeout=settings.escrow_request_timeout) as client:
            resp = await client.post(
                f"{self.base_url}{path}", json=payload, headers=self._headers()
            )
        resp.raise_for_status()
        return resp.json()

    async def release(self, deal: Deal) -> dict:
        """Pay the publisher share out of the deal's escrow wallet."""
        platform_fee, publisher_amount = calculate_fees(deal.agreed_price, deal.platform_fee_bps)
        return await self._post(
            f"/escrow/{deal.escrow_wallet_ref}/release",
            {
                "deal_id": deal.id,
                "idempotency_key": f"release-{deal.id}",
                "publisher_amount": publisher_amount,
                "platform_fee": platform_fee,
                "currency": deal.currency,
            },
        )

    async def refund(self, deal: Deal) -> dict:
        """Return the escrowed amount to the advertiser."""
        return await self._post(
            f"/escrow/{deal.escrow_wallet_ref}/refund",
            {
                "deal_id": deal.id,
                "idempotency_key": f"refund-{deal.id}",
                "amount": deal.agreed_price,
                "currency": deal.currency,
            },
        )


async def _claim_escrow(
    db: AsyncSession, deal_id: int, in_flight: EscrowStatus, now: datetime,
) -> bool:
    """HELD → `in_flight`, or take over an `in_flight` claim whose lease ran out.

    A stale claim means an earlier attempt died between claiming and
    settling; the collaborator's idempotency key makes the second call safe.
    """
    stale_before = now - timedelta(seconds=settings.escrow_claim_lease_seconds)
    result = await db.execute(
        update(Deal)
        .where(
            Deal.id == deal_id,
            or_(
                Deal.escrow_status == EscrowStatus.HELD.value,
                and_(
                    Deal.escrow_status == in_flight.value,
                    or_(Deal.escrow_claimed_at.is_(None), Deal.escrow_claimed_at < stale_before),
                ),
            ),
        )
        .values(escrow_status=in_flight.value, escrow_claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _swap_escrow_status(
    db: AsyncSession, deal_id: int, expected: EscrowStatus, new: EscrowStatus,
) -> bool:
    result = await db.execute(
        update(Deal)
        .where(Deal.id == deal_id, Deal.escrow_status == expected.value)
        .values(escrow_status=new.value, escrow_claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _settle(
    db: AsyncSession,
    bus: EventBus,
    deal_id: int,
    *,
    action: str,
    in_flight: EscrowStatus,
    done: EscrowStatus,
    call,
    event: AppEvent,
    reason: str | None = None,
) -> bool:
    deal = await get_deal(db, deal_id)
    if not deal.escrow_wallet_ref:
        logger.info("No escrow wallet for deal %d, nothing to %s", deal_id, action)
        return False

    if not await _claim_escrow(db, deal_id, in_flight, datetime.now(timezone.utc)):
        logger.warning(
            "Escrow not in HELD status for deal %d, skipping %s",
            deal_id, action, extra={"escrow_status": deal.escrow_status},
        )
        return False

    try:
        result = await call(deal)
    except Exception as exc:
        # Hand the funds back to the guard so the job retry can claim them again
        await _swap_escrow_status(db, deal_id, in_flight, EscrowStatus.HELD)
        raise InfrastructureError(f"Escrow {action} failed for deal {deal_id}: {exc}") from exc

    await _swap_escrow_status(db, deal_id, in_flight, done)
    logger.info("Escrow %s done for deal %d", action, deal_id)

    payload = {
        "deal_id": deal_id,
        "transaction_hash": (result or {}).get("tx_hash"),
    }
    if event == AppEvent.PAYMENT_RELEASED:
        payload["recipient_id"] = deal.publisher_id
        payload["amount"] = calculate_fees(deal.agreed_price, deal.platform_fee_bps)[1]
    else:
        payload["recipient_id"] = deal.advertiser_id
        payload["amount"] = deal.agreed_price
        payload["reason"] = reason or "Refund"
    await bus.publish(event, payload)
    return True


async def release_funds(
    db: AsyncSession, bus: EventBus, client: EscrowClient, deal_id: int,
) -> bool:
    """Release escrow for a completed deal. Returns True if the collaborator was called."""
    return await _settle(
        db, bus, deal_id,
        action="release",
        in_flight=EscrowStatus.RELEASING,
        done=EscrowStatus.RELEASED,
        call=client.release,
        event=AppEvent.PAYMENT_RELEASED,
    )


async def refund_funds(
    db: AsyncSession, bus: EventBus, client: EscrowClient, deal_id: int, reason: str | None = None,
) -> bool:
    """Refund escrow to the advertiser. Returns True if the collaborator was called."""
    return await _settle(
        db, bus, deal_id,
        action="refund",
        in_flight=EscrowStatus.REFUNDING,
        done=EscrowStatus.REFUNDED,
        call=client.refund,
        event=AppEvent.PAYMENT_REFUNDED,
        reason=reason,
    )
