"""Deal workflow endpoints: request a transition, read actions and deadline."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from admarket.api.schemas import (
    AvailableActionsResponse,
    DeadlineResponse,
    DealResponse,
    TransitionRequest,
    TransitionResponse,
)
from admarket.core.deps import get_actor, get_db, get_runtime
from admarket.runtime import Runtime
from admarket.services import deal as deal_svc
from admarket.services.deal_state_machine import (
    UserActor,
    get_deal_available_actions,
    get_deal_deadline_info,
)

router = APIRouter(prefix="/deals", tags=["deals"])


@router.post("/{deal_id}/transition", response_model=TransitionResponse)
async def transition_deal(
    deal_id: int,
    body: TransitionRequest,
    actor: UserActor | None = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    """Move the deal to `target`. A repeated request returns `transitioned: false`."""
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    result = await deal_svc.request_transition(
        db, runtime.bus, deal_id, body.target, actor, body.data
    )
    return TransitionResponse(
        transitioned=result.transitioned,
        deal=DealResponse.model_validate(result.deal),
    )


@router.get("/{deal_id}/actions", response_model=AvailableActionsResponse)
async def deal_actions(
    deal_id: int,
    actor: UserActor | None = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    deal = await deal_svc.get_deal(db, deal_id)
    return AvailableActionsResponse.model_validate(get_deal_available_actions(deal, actor))


@router.get("/{deal_id}/deadline", response_model=DeadlineResponse)
async def deal_deadline(deal_id: int, db: AsyncSession = Depends(get_db)):
    deal = await deal_svc.get_deal(db, deal_id)
    info = get_deal_deadline_info(deal.status, deal.status_history, deal.updated_at)
    return DeadlineResponse.model_validate(info)
