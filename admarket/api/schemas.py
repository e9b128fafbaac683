from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class TransitionRequest(BaseModel):
    target: str
    data: dict[str, Any] = Field(default_factory=dict)


class DealResponse(BaseModel):
    id: int
    deal_number: int | None = None
    status: str
    advertiser_id: int
    publisher_id: int
    channel_id: int
    agreed_price: str
    currency: str
    escrow_status: str
    scheduled_time: datetime | None = None
    posted_message_id: int | None = None
    posted_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class TransitionResponse(BaseModel):
    transitioned: bool
    deal: DealResponse


class AvailableActionsResponse(BaseModel):
    accept_terms: bool
    fund_deal: bool
    verify_payment: bool
    submit_creative: bool
    approve_creative: bool
    request_creative_revision: bool
    cancel_deal: bool
    propose_posting_plan: bool
    respond_posting_plan: bool
    open_dispute: bool

    model_config = {"from_attributes": True}


class DeadlineResponse(BaseModel):
    current_stage_deadline_at: datetime | None = None
    current_stage_timeout_hours: int | None = None
    stage_started_at: datetime | None = None

    model_config = {"from_attributes": True}
