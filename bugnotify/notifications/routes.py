"""
Notification Routes

Thin HTTP surface over the notification core:
- issue mutation hook (internal, shared secret)
- digest cron trigger (shared secret)
- recipient preview, delivery audit and notification timeline for an issue
- filter value suggestions for a user
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from bugnotify.audit.services import EmailAuditService
from bugnotify.container import AppContainer
from bugnotify.dependencies import get_container, get_db, require_cron_secret
from bugnotify.errors import DataAccessError, NotificationError, PreferenceValidationError
from bugnotify.models import NotificationEventType

from .filters import FilterEngine
from .history import issue_timeline
from .recipients import RecipientResolver
from .service import IssueAction, IssueActionContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])
cron_router = APIRouter(prefix="/cron", tags=["Cron"])


# =============================================================================
# SCHEMAS
# =============================================================================

class IssueActionRequest(BaseModel):
    """Issue mutation reported by the tracker."""
    issue_id: int
    issue_summary: str = ""
    project_id: int
    action: IssueAction
    actor_id: int
    actor_name: str
    changes: Optional[str] = None
    old_status: Optional[int] = None
    new_status: Optional[int] = None
    priority_changed: bool = False


class AcceptedResponse(BaseModel):
    accepted: bool
    issue_id: int
    action: str


class RecipientResponse(BaseModel):
    id: int
    username: str
    realname: str
    email: str
    willReceive: bool
    reason: str


class RecipientPreviewResponse(BaseModel):
    issue_id: int
    event_type: str
    recipients: List[RecipientResponse]


class ChannelStatusCount(BaseModel):
    channel: str
    status: str
    count: int


class IssueAuditResponse(BaseModel):
    issue_id: int
    deliveries: List[ChannelStatusCount]


class TimelineEntry(BaseModel):
    event_type: str
    subject: str
    recipient_count: int
    date_sent: datetime


class IssueTimelineResponse(BaseModel):
    issue_id: int
    notification_count: int
    unique_recipients: int
    timeline: List[TimelineEntry]


class FilterSuggestion(BaseModel):
    value: str
    count: int
    label: str


class FilterSuggestionsResponse(BaseModel):
    filter_type: str
    count: int
    suggestions: List[FilterSuggestion]


def _to_http_error(e: NotificationError) -> HTTPException:
    if isinstance(e, PreferenceValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, DataAccessError):
        logger.error(f"Data access failure: {e}")
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notification store unavailable",
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


async def _run_issue_action(container: AppContainer, ctx: IssueActionContext) -> None:
    try:
        await container.notify_issue_action(ctx)
    except Exception:
        # Nobody awaits a background task; the log is the only record
        logger.exception(f"Notification for issue {ctx.issue_id} ({ctx.action}) failed")


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post(
    "/events",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_cron_secret)],
)
async def issue_action_event(
    request: IssueActionRequest,
    background_tasks: BackgroundTasks,
    container: AppContainer = Depends(get_container),
):
    """
    Accept an issue mutation and notify in the background.

    The tracker's own request never waits on channel delivery.
    """
    ctx = IssueActionContext(**request.model_dump())
    background_tasks.add_task(_run_issue_action, container, ctx)
    return AcceptedResponse(accepted=True, issue_id=ctx.issue_id, action=ctx.action.value)


@router.get("/issues/{issue_id}/recipients", response_model=RecipientPreviewResponse)
async def preview_recipients(
    issue_id: int,
    event_type: NotificationEventType = Query(NotificationEventType.NEW),
    db: AsyncSession = Depends(get_db),
    container: AppContainer = Depends(get_container),
):
    """Who would be notified about an event on this issue, and why."""
    resolver = RecipientResolver(db, email_enabled=container.settings.EMAIL_ENABLED)
    try:
        recipients = await resolver.resolve(issue_id, event_type)
    except NotificationError as e:
        raise _to_http_error(e)

    return RecipientPreviewResponse(
        issue_id=issue_id,
        event_type=event_type.value,
        recipients=[RecipientResponse(**r.to_dict()) for r in recipients],
    )


@router.get("/issues/{issue_id}/audit", response_model=IssueAuditResponse)
async def issue_delivery_audit(
    issue_id: int,
    db: AsyncSession = Depends(get_db),
):
    """Delivery attempts for an issue grouped by channel and status."""
    service = EmailAuditService(db)
    try:
        rows = await service.stats_for_bug(issue_id)
    except NotificationError as e:
        raise _to_http_error(e)
    return IssueAuditResponse(
        issue_id=issue_id,
        deliveries=[ChannelStatusCount(**row) for row in rows],
    )


@router.get("/issues/{issue_id}/timeline", response_model=IssueTimelineResponse)
async def issue_notification_timeline(
    issue_id: int,
    db: AsyncSession = Depends(get_db),
):
    """Notification rounds sent about an issue, oldest first."""
    try:
        timeline = await issue_timeline(db, issue_id)
    except NotificationError as e:
        raise _to_http_error(e)
    return IssueTimelineResponse(issue_id=issue_id, **timeline)


@router.get(
    "/users/{user_id}/filters/suggestions/{filter_type}",
    response_model=FilterSuggestionsResponse,
)
async def filter_suggestions(
    user_id: int,
    filter_type: str,
    db: AsyncSession = Depends(get_db),
):
    """Common filter values drawn from issues in the user's projects."""
    try:
        suggestions = await FilterEngine(db).suggested_filter_values(user_id, filter_type)
    except NotificationError as e:
        raise _to_http_error(e)
    return FilterSuggestionsResponse(
        filter_type=filter_type,
        count=len(suggestions),
        suggestions=[FilterSuggestion(**s) for s in suggestions],
    )


@cron_router.post("/process-digests", dependencies=[Depends(require_cron_secret)])
async def process_digests(
    container: AppContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Send due digests; once a day also prune old queue rows."""
    try:
        summary = await container.digest_scheduler.run()
    except Exception:
        logger.exception("Digest processing failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Digest processing failed",
        )
    return {"success": True, **summary}
