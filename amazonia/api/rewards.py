"""
Rewards Router - reward catalog, redemptions and partner confirmation
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Header, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from amazonia.db.models import RewardType, RedemptionStatus, UserRole
from amazonia.dependencies import get_db, get_current_user, require_partner, CurrentUser
from amazonia.services.ledger_service import ledger_service
from amazonia.services.redemption_service import redemption_service

router = APIRouter(tags=["Rewards"])


class RewardResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    reward_type: RewardType
    amacoins_cost: int
    stock: int
    max_per_user: Optional[int] = None
    partner_id: Optional[int] = None
    image_url: Optional[str] = None
    expiration_date: Optional[date] = None


class RedemptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    reward_id: int
    amacoins_spent: int
    redemption_code: str
    status: RedemptionStatus
    redeemed_at: datetime
    expires_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RedeemRequest(BaseModel):
    contact_info: Optional[Dict[str, Any]] = Field(
        None, description="Delivery contact for physical products"
    )


class RedeemResponse(BaseModel):
    redemption: RedemptionResponse
    reward: RewardResponse
    new_balance: int
    replayed: bool = False


class CancelResponse(BaseModel):
    redemption: RedemptionResponse
    refunded_amacoins: int
    new_balance: int


class RedemptionCodeRequest(BaseModel):
    redemption_code: str = Field(..., min_length=4, max_length=32)


@router.get("/rewards", response_model=List[RewardResponse])
async def list_rewards(
    reward_type: Optional[RewardType] = Query(None),
    partner_id: Optional[int] = Query(None),
    max_cost: Optional[int] = Query(None, ge=0),
    in_stock: bool = Query(False),
    search: Optional[str] = Query(None, max_length=100),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """Get the reward catalog"""
    rewards = redemption_service.list_rewards(
        db,
        reward_type=reward_type,
        partner_id=partner_id,
        max_cost=max_cost,
        in_stock=in_stock,
        search=search,
        limit=limit,
        offset=offset
    )
    return [RewardResponse.model_validate(r) for r in rewards]


@router.post("/rewards/{reward_id}/redeem", response_model=RedeemResponse, status_code=status.HTTP_201_CREATED)
async def redeem_reward(
    reward_id: int,
    response: Response,
    request: Optional[RedeemRequest] = None,
    idempotency_key: Optional[str] = Header(None, max_length=64),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Redeem a reward with AmaCoins.

    Stock, balance and the redemption record change together or not at all.
    """
    redemption, replayed = redemption_service.redeem(
        db,
        user_id=user.id,
        reward_id=reward_id,
        contact_info=request.contact_info if request else None,
        idempotency_key=idempotency_key
    )
    if replayed:
        response.status_code = status.HTTP_200_OK

    return RedeemResponse(
        redemption=RedemptionResponse.model_validate(redemption),
        reward=RewardResponse.model_validate(redemption.reward),
        new_balance=ledger_service.get_balance(db, user.id),
        replayed=replayed
    )


@router.get("/redemptions/me", response_model=List[RedemptionResponse])
async def my_redemptions(
    status_filter: Optional[RedemptionStatus] = Query(None, alias="status"),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get the current user's redemptions, newest first"""
    redemptions = redemption_service.list_user_redemptions(
        db, user.id, status=status_filter, limit=limit, offset=offset
    )
    return [RedemptionResponse.model_validate(r) for r in redemptions]


@router.post("/redemptions/{redemption_id}/cancel", response_model=CancelResponse)
async def cancel_redemption(
    redemption_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Cancel a pending redemption.

    Users may cancel their own redemptions within the cancellation window;
    admins may cancel any pending redemption.
    """
    is_admin = user.role == UserRole.admin
    redemption = redemption_service.cancel(
        db,
        redemption_id,
        user_id=None if is_admin else user.id,
        enforce_window=not is_admin
    )
    return CancelResponse(
        redemption=RedemptionResponse.model_validate(redemption),
        refunded_amacoins=redemption.amacoins_spent,
        new_balance=ledger_service.get_balance(db, redemption.user_id)
    )


@router.post("/redemptions/verify", response_model=RedemptionResponse)
async def verify_redemption_code(
    request: RedemptionCodeRequest,
    partner: CurrentUser = Depends(require_partner),
    db: Session = Depends(get_db)
):
    """Check a redemption code without using it"""
    redemption = redemption_service.lookup_code(db, partner.partner_id, request.redemption_code)
    return RedemptionResponse.model_validate(redemption)


@router.post("/redemptions/confirm", response_model=RedemptionResponse)
async def confirm_redemption(
    request: RedemptionCodeRequest,
    partner: CurrentUser = Depends(require_partner),
    db: Session = Depends(get_db)
):
    """Mark a redemption as handed over to the user"""
    redemption = redemption_service.complete(db, partner.partner_id, request.redemption_code)
    return RedemptionResponse.model_validate(redemption)
