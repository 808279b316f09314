from __future__ import annotations
from pydantic import Field, AnyHttpUrl
from app.schemas.base import CamelModel
from app.schemas.ledger import TransactionPublic

class WalletSnapshot(CamelModel):
    balance: int
    recent: list[TransactionPublic]

class CreateDepositRequest(CamelModel):
    tokens: int = Field(gt=0, description="Number of tokens to buy")
    success_url: AnyHttpUrl
    cancel_url: AnyHttpUrl

class CreateDepositResponse(CamelModel):
    checkout_url: str
    session_id: str
