from __future__ import annotations
from pydantic import Field
from typing import Annotated, Literal, Union
from uuid import UUID
from datetime import datetime
from app.schemas.base import CamelModel


class MatchReference(CamelModel):
    reference_type: Literal["match"] = "match"
    match_id: UUID


class DepositReference(CamelModel):
    reference_type: Literal["deposit"] = "deposit"
    payment_intent_id: str


class AdminReference(CamelModel):
    reference_type: Literal["admin"] = "admin"
    admin_action_id: str | None = None


Reference = Annotated[Union[MatchReference, DepositReference, AdminReference], Field(discriminator="reference_type")]


class TransactionPublic(CamelModel):
    id: UUID
    direction: str
    category: str
    amount: int
    balance_before: int
    balance_after: int
    reference: Reference | None = None
    description: str
    status: str
    created_at: datetime


class TransactionPage(CamelModel):
    items: list[TransactionPublic]
    total: int
    page: int
    limit: int


class SummaryRow(CamelModel):
    direction: str
    category: str
    count: int
    total: int


class DailySummary(CamelModel):
    day: str
    rows: list[SummaryRow]
    credits: int
    debits: int


def reference_of(reference_type: str | None, reference_id: str | None):
    if reference_type == "match" and reference_id:
        return MatchReference(match_id=UUID(reference_id))
    if reference_type == "deposit" and reference_id:
        return DepositReference(payment_intent_id=reference_id)
    if reference_type == "admin":
        return AdminReference(admin_action_id=reference_id)
    return None


def to_public(tx) -> TransactionPublic:
    return TransactionPublic(
        id=tx.id,
        direction=tx.direction,
        category=tx.category,
        amount=int(tx.amount),
        balance_before=int(tx.balance_before),
        balance_after=int(tx.balance_after),
        reference=reference_of(tx.reference_type, tx.reference_id),
        description=tx.description or "",
        status=tx.status,
        created_at=tx.created_at,
    )
