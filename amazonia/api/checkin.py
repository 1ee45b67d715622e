"""
Check-in API - GPS check-ins at places and events

Provides:
- POST /visits: Check in at a place or event
- GET /visits/me: Current user's visit history
- POST /visits/verify: Partner/admin verifies a pending visit
- POST /visits/reject: Partner/admin rejects a pending visit
- GET /places/nearby, GET /events/nearby: Check-in targets around a point
"""
import logging
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Header, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.orm import Session

from amazonia.config import settings
from amazonia.db.models import UserRole, VisitStatus
from amazonia.dependencies import get_db, get_current_user, require_staff, CurrentUser
from amazonia.services.checkin_service import checkin_service
from amazonia.services.geo_service import geo_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Check-in"])


# ============================================================
# REQUEST/RESPONSE MODELS
# ============================================================

class CheckInRequest(BaseModel):
    """Request model for a check-in"""
    place_id: Optional[int] = Field(None, description="ID of the place")
    event_id: Optional[int] = Field(None, description="ID of the event")
    latitude: float = Field(..., ge=-90, le=90, description="User's GPS latitude")
    longitude: float = Field(..., ge=-180, le=180, description="User's GPS longitude")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "place_id": 12,
            "latitude": -3.1190,
            "longitude": -60.0217
        }
    })

    @model_validator(mode="after")
    def check_target(self):
        if (self.place_id is None) == (self.event_id is None):
            raise ValueError("Specify exactly one of place_id or event_id")
        return self


class VisitResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    place_id: Optional[int] = None
    event_id: Optional[int] = None
    amacoins_earned: int
    verification_code: str
    status: VisitStatus
    rejection_reason: Optional[str] = None
    distance_km: Optional[float] = None
    visited_at: datetime
    reviewed_at: Optional[datetime] = None


class CheckInResponse(BaseModel):
    visit: VisitResponse
    verification_code: str
    replayed: bool = False


class VisitReviewRequest(BaseModel):
    verification_code: str = Field(..., min_length=4, max_length=32)
    reason: Optional[str] = Field(None, max_length=255)


class NearbyItem(BaseModel):
    id: int
    name: str
    latitude: float
    longitude: float
    amacoins_value: int
    distance_km: float


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("/visits", response_model=CheckInResponse, status_code=status.HTTP_201_CREATED)
async def check_in(
    request: CheckInRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(None, max_length=64),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Check in at a place or event.

    The user must be within the configured distance of the target.
    AmaCoins are credited once per successful check-in. Retrying with the
    same Idempotency-Key returns the original visit.
    """
    visit, replayed = checkin_service.check_in(
        db,
        user_id=user.id,
        latitude=request.latitude,
        longitude=request.longitude,
        place_id=request.place_id,
        event_id=request.event_id,
        idempotency_key=idempotency_key
    )
    if replayed:
        response.status_code = status.HTTP_200_OK

    return CheckInResponse(
        visit=VisitResponse.model_validate(visit),
        verification_code=visit.verification_code,
        replayed=replayed
    )


@router.get("/visits/me", response_model=List[VisitResponse])
async def my_visits(
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get the current user's visits, newest first"""
    visits = checkin_service.list_user_visits(db, user.id, limit=limit, offset=offset)
    return [VisitResponse.model_validate(v) for v in visits]


@router.post("/visits/verify", response_model=VisitResponse)
async def verify_visit(
    request: VisitReviewRequest,
    staff: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """Verify a pending visit by its verification code"""
    visit = checkin_service.verify_visit(
        db,
        request.verification_code,
        partner_id=_reviewer_partner_id(staff)
    )
    return VisitResponse.model_validate(visit)


@router.post("/visits/reject", response_model=VisitResponse)
async def reject_visit(
    request: VisitReviewRequest,
    staff: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db)
):
    """Reject a pending visit; its AmaCoins are clawed back"""
    visit = checkin_service.reject_visit(
        db,
        request.verification_code,
        reason=request.reason,
        partner_id=_reviewer_partner_id(staff)
    )
    return VisitResponse.model_validate(visit)


@router.get("/places/nearby", response_model=List[NearbyItem])
async def nearby_places(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: Optional[float] = Query(None, gt=0, le=100),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """Get places around a point, closest first"""
    results = geo_service.find_nearby_places(
        db, latitude, longitude,
        radius_km or settings.NEARBY_DEFAULT_RADIUS_KM,
        limit=limit
    )
    return [_nearby_item(r) for r in results]


@router.get("/events/nearby", response_model=List[NearbyItem])
async def nearby_events(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: Optional[float] = Query(None, gt=0, le=100),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """Get events around a point, closest first"""
    results = geo_service.find_nearby_events(
        db, latitude, longitude,
        radius_km or settings.NEARBY_DEFAULT_RADIUS_KM,
        limit=limit
    )
    return [_nearby_item(r) for r in results]


def _reviewer_partner_id(staff: CurrentUser) -> Optional[int]:
    # Admins may review any visit
    return None if staff.role == UserRole.admin else staff.partner_id


def _nearby_item(result: dict) -> NearbyItem:
    item = result["item"]
    return NearbyItem(
        id=item.id,
        name=item.name,
        latitude=item.latitude,
        longitude=item.longitude,
        amacoins_value=item.amacoins_value,
        distance_km=result["distance_km"]
    )
