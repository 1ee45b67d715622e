"""
Quizzes Router - quiz attempts and AmaCoins rewards
"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from amazonia.db.models import QuizAttemptStatus
from amazonia.dependencies import get_db, get_current_user, CurrentUser
from amazonia.services.quiz_service import quiz_service

router = APIRouter(tags=["Quizzes"])


class AttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    quiz_id: int
    user_id: int
    status: QuizAttemptStatus
    score: Optional[int] = None
    amacoins_earned: int
    started_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None


class CompleteAttemptRequest(BaseModel):
    correct_answers: int = Field(..., ge=0)


@router.post("/quizzes/{quiz_id}/attempts", response_model=AttemptResponse, status_code=status.HTTP_201_CREATED)
async def start_attempt(
    quiz_id: int,
    response: Response,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Start a quiz attempt; an unfinished attempt is returned with 200 instead"""
    attempt, resumed = quiz_service.start_attempt(db, user.id, quiz_id)
    if resumed:
        response.status_code = status.HTTP_200_OK
    return AttemptResponse.model_validate(attempt)


@router.post("/quizzes/attempts/{attempt_id}/complete", response_model=AttemptResponse)
async def complete_attempt(
    attempt_id: int,
    request: CompleteAttemptRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Score an attempt and credit AmaCoins proportional to the score"""
    attempt = quiz_service.complete_attempt(db, user.id, attempt_id, request.correct_answers)
    return AttemptResponse.model_validate(attempt)
