"""
Wallet Router - AmaCoins balance and ledger history
"""
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from amazonia.db.models import TransactionType
from amazonia.dependencies import get_db, get_current_user, verify_api_key, CurrentUser
from amazonia.services.ledger_service import ledger_service

router = APIRouter(tags=["Wallet"])


class BalanceResponse(BaseModel):
    user_id: int
    amacoins: int


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: int
    previous_balance: int
    new_balance: int
    transaction_type: TransactionType
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[int] = None
    description: Optional[str] = None
    created_at: datetime


class ReconcileResponse(BaseModel):
    user_id: int
    balance: int
    ledger_sum: int
    last_new_balance: int
    consistent: bool


@router.get("/users/me/amacoins", response_model=BalanceResponse)
async def my_balance(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return BalanceResponse(user_id=user.id, amacoins=ledger_service.get_balance(db, user.id))


@router.get("/users/me/transactions", response_model=List[TransactionResponse])
async def my_transactions(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get the current user's AmaCoins ledger, newest first"""
    rows = ledger_service.list_transactions(db, user.id, limit=limit, offset=offset)
    return [TransactionResponse.model_validate(r) for r in rows]


@router.get("/users/{user_id}/ledger/reconcile", response_model=ReconcileResponse)
async def reconcile_user_ledger(
    user_id: int,
    _: str = Depends(verify_api_key),
    db: Session = Depends(get_db)
):
    """Compare a user's cached balance with the sum of their ledger (internal)"""
    return ReconcileResponse(**ledger_service.reconcile(db, user_id))
