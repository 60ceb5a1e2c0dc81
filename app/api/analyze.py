import logging
from dataclasses import replace
import time

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session

from app.api.deps import get_profile
from app.core.database import get_db
from app.core.errors import error_response
from app.core.rate_limit import analyze_rate_limit, limiter
from app.models import AnalysisJob, Profile, utcnow
from app.schemas import AnalyzeRequest, AnalyzeResponse, UsageResponse
from app.services.entitlements import (
    FREE_LIMIT,
    Decision,
    DenialReason,
    check_and_reserve,
    commit_analysis,
    usage_summary,
)
from app.services.vision import analyze_food_image

log = logging.getLogger(__name__)

router = APIRouter(prefix="/analyze", tags=["analyze"])

LIMIT_REACHED_MESSAGE = "Free tier limit reached"


def _limit_reached_response(request: Request, decision: Decision) -> JSONResponse:
    """402 with an upgrade prompt for the client."""
    return error_response(
        request,
        402,
        LIMIT_REACHED_MESSAGE,
        limitReached=True,
        used=decision.analyses_count,
        limit=decision.limit,
        resets_at=decision.resets_at.isoformat(),
    )


def _finish_job(
    db: Session,
    job: AnalysisJob,
    status: str,
    t0: float,
    error: str | None = None,
    food_name: str | None = None,
) -> None:
    job.status = status
    job.duration_ms = int((time.perf_counter() - t0) * 1000)
    job.error_message = error[:500] if error else None
    job.food_name = food_name
    job.updated_at = utcnow()
    db.add(job)
    db.commit()


@router.post("", response_model=AnalyzeResponse)
@limiter.limit(analyze_rate_limit)
def analyze(
    request: Request,
    body: AnalyzeRequest,
    db: Session = Depends(get_db),
):
    """Food photo -> nutrition estimate. Quota is checked first and consumed only after a successful inference."""
    if not body.image_base64 and not body.image_url:
        raise HTTPException(status_code=400, detail="image_base64 or image_url is required")
    decision = check_and_reserve(db, body.user_id)
    if not decision.allowed:
        return _limit_reached_response(request, decision)

    job = AnalysisJob(user_id=body.user_id, source="base64" if body.image_base64 else "url")
    db.add(job)
    db.commit()
    db.refresh(job)
    t0 = time.perf_counter()
    try:
        estimate = analyze_food_image(
            image_base64=body.image_base64,
            mime_type=body.mime_type,
            image_url=body.image_url,
        )
    except HTTPException as e:
        _finish_job(db, job, "failed", t0, error=str(e.detail))
        raise
    except Exception as e:
        _finish_job(db, job, "failed", t0, error=str(e))
        log.exception("Analyze error: %s", e)
        raise HTTPException(status_code=502, detail="AI analysis failed") from e

    if not commit_analysis(db, body.user_id):
        _finish_job(db, job, "failed", t0, error="limit reached by a concurrent analysis")
        # The guarded UPDATE only refuses a metered profile that is at the free limit
        lost = replace(
            decision,
            allowed=False,
            analyses_count=FREE_LIMIT,
            limit=FREE_LIMIT,
            reason=DenialReason.LIMIT_REACHED,
        )
        return _limit_reached_response(request, lost)
    _finish_job(db, job, "done", t0, food_name=estimate.name)

    usage = usage_summary(db.get(Profile, body.user_id))
    log.info("Analysis done: user_id=%s used=%s limit=%s", body.user_id, usage.analyses_count, usage.limit)
    return AnalyzeResponse(
        **estimate.model_dump(),
        analyses_count=usage.analyses_count,
        remaining=usage.remaining,
    )


@router.get("/usage", response_model=UsageResponse)
def analyze_usage(profile: Profile = Depends(get_profile)):
    """Current period usage for the subscription widget."""
    usage = usage_summary(profile)
    percentage = 0.0
    if usage.limit:
        percentage = round(min(usage.analyses_count / usage.limit * 100, 100.0), 1)
    return UsageResponse(
        subscription_tier=profile.subscription_tier,
        subscription_status=profile.subscription_status,
        used=usage.analyses_count,
        limit=usage.limit,
        remaining=usage.remaining,
        usage_percentage=percentage,
        resets_at=usage.resets_at,
    )
