"""POST /api/assistant/feedback — feedback on a past turn."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from daybook.api.auth import current_user
from daybook.api.models import ErrorResponse, FeedbackRequest, FeedbackResponse

router = APIRouter(prefix="/api/assistant", tags=["feedback"])


@router.post(
    "/feedback",
    response_model=FeedbackResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    summary="Submit feedback",
    description="Corrections are mined for title, time, day and participant fixes.",
)
async def submit_feedback(
    body: FeedbackRequest,
    request: Request,
    user_id: str = Depends(current_user),
) -> FeedbackResponse:
    result = await request.app.state.container.feedback.submit(
        user_id, body.conversationId, body.feedbackType, body.feedbackText
    )
    return FeedbackResponse(feedbackId=result.feedback_id, learningPoints=result.learning_points)
