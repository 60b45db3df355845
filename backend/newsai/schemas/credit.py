"""Pydantic schemas for credit ledger reads and mutations."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CreditCheck(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_enough: bool = Field(alias="hasEnough")
    required: int
    balance: int
    shortfall: int


class RefundResult(BaseModel):
    applied: bool
    amount: int
    new_balance: Optional[int] = None


class PurchaseResult(BaseModel):
    applied: bool
    credits_added: int
    new_balance: int


class CreditBalanceOut(BaseModel):
    balance: int


class CreditRefundOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    refund_amount: int
    reason: str
    created_at: datetime


class PurchaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId", min_length=1)
    packs: int = Field(default=1, ge=1)
