"""
AI Routes - Metered chat, issue-tree extraction and usage reporting.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import re
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import get_ai_router, get_current_user_id, get_usage_router
from app.exceptions import ValidationError
from app.models.api import (
    ChatRequest,
    ChatResponse,
    DailyUsageItem,
    ExtractIssuesRequest,
    ExtractIssuesResponse,
    ProviderUsageItem,
    UsageResponse,
    UsageSummaryItem,
)
from app.services.ai_proxy import MeteredAIProxyRouter, normalize_messages

router = APIRouter(prefix="/api/ai", tags=["ai"])

MAX_USAGE_PERIOD_DAYS = 365
PERIOD_PATTERN = re.compile(r"^(\d+)d?$")


def parse_period(period: str) -> int:
    """'30d' (or '30') -> 30 days."""
    match = PERIOD_PATTERN.match(period.strip())
    if match is None:
        raise ValidationError("Period must look like '30d'")
    days = int(match.group(1))
    if not 1 <= days <= MAX_USAGE_PERIOD_DAYS:
        raise ValidationError(f"Period must be between 1 and {MAX_USAGE_PERIOD_DAYS} days")
    return days


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    user_id: UUID = Depends(get_current_user_id),
    ai: MeteredAIProxyRouter = Depends(get_ai_router),
) -> ChatResponse:
    """
    Send the conversation to the caller's provider.

    trialCredits carries the remaining balance after a trial-metered call.
    """
    messages = normalize_messages((m.role, m.content) for m in request.messages)
    result = await ai.chat(user_id, messages)
    return ChatResponse(
        response=result.response,
        model=result.model,
        tokens=result.tokens,
        trial_credits=result.trial_credits,
    )


@router.post("/extract-issues", response_model=ExtractIssuesResponse)
async def extract_issues(
    request: ExtractIssuesRequest,
    user_id: UUID = Depends(get_current_user_id),
    ai: MeteredAIProxyRouter = Depends(get_ai_router),
) -> ExtractIssuesResponse:
    """Update the issue tree from the conversation. Falls back to the current tree."""
    messages = normalize_messages((m.role, m.content) for m in request.messages)
    tree = await ai.extract_issues(user_id, messages, request.current_tree)
    return ExtractIssuesResponse(tree=tree)


@router.get("/usage", response_model=UsageResponse)
async def usage(
    period: str = Query("30d", max_length=8),
    user_id: UUID = Depends(get_current_user_id),
    ai: MeteredAIProxyRouter = Depends(get_usage_router),
) -> UsageResponse:
    """Request, token and cost totals over the period, by provider and by day."""
    days = parse_period(period)
    summary = await ai.usage_summary(user_id, days)
    return UsageResponse(
        period=f"{days}d",
        summary=UsageSummaryItem(
            total_requests=summary.total_requests,
            total_tokens=summary.total_tokens,
            estimated_cost=summary.estimated_cost,
        ),
        by_provider=[
            ProviderUsageItem(
                provider=p.provider,
                endpoint=p.endpoint,
                requests=p.requests,
                tokens=p.tokens,
                cost=p.cost,
            )
            for p in summary.by_provider
        ],
        daily=[
            DailyUsageItem(date=d.date, requests=d.requests, tokens=d.tokens)
            for d in summary.daily
        ],
    )
