"""
Metered AI Proxy Router - Credential selection, provider dispatch, cost accounting.

Every proxied call follows the same path:

1. Resolve a credential: the operator trial key when the user is in trial
   mode with credits left, else the user's vaulted key.
2. For trial calls, reserve a hold on the trial balance before dispatch.
3. Dispatch once through the provider adapter (no retries).
4. Settle the hold against the real cost, or release it on failure.
5. Append one usage record (fire-and-forget).

Steps 3-5 run in their own task, so a caller that disconnects does not cancel
the upstream call or its accounting.
"""

import asyncio
import json
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import Settings, settings
from app.db.models import ApiUsageLog, User, utc_now
from app.exceptions import (
    ConcurrencyError,
    CredentialError,
    CredentialNotConfiguredError,
    TrialCreditsExhaustedError,
    UpstreamProviderError,
    UserNotFoundError,
    ValidationError,
)
from app.models.api import AIProvider, MessageRole
from app.models.domain import (
    ChatMessage,
    ChatResult,
    DailyUsage,
    KeyValidation,
    ProviderCompletion,
    ProviderUsage,
    ResolvedCredential,
    UsageRecord,
    UsageSummary,
    from_micros,
    to_micros,
)
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.audit import UsageLogWriter
from app.services.providers import ProviderClient, get_adapter, is_quota_error
from app.services.trial_ledger import TrialCreditLedger
from app.services.vault import CredentialVault, parse_provider

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are Relativit AI, an intelligent research assistant that helps users explore complex topics through structured thinking.

Your role is to:
1. Help users investigate topics thoroughly
2. Identify key questions and sub-questions
3. Provide well-structured, insightful responses
4. Track what has been discussed and what remains to explore

When responding:
- Be thorough but concise
- Identify related questions that might need exploration
- Summarize conclusions clearly
- Suggest next areas to investigate

Always aim to help users build a complete understanding of their topic."""

ISSUE_EXTRACTION_PROMPT = """Analyze this conversation and extract key discussion points as an issue tree.

Return ONLY valid JSON (no markdown, no explanation) in this exact format:
{
  "id": "root",
  "label": "Main Topic",
  "status": "active",
  "children": [
    {
      "id": "unique-id-1",
      "label": "Sub Topic",
      "status": "completed|active|pending",
      "children": []
    }
  ]
}

Status meanings:
- "completed": Topic has been thoroughly discussed and concluded
- "active": Currently being discussed
- "pending": Identified but not yet discussed

Rules:
- Generate unique IDs for new nodes
- Preserve existing IDs for nodes that haven't changed
- Update statuses based on conversation progress
- Keep labels concise (under 60 characters)
- Nest related topics appropriately"""

JSON_ONLY_SYSTEM_PROMPT = (
    "You are a JSON-only response bot. Return only valid JSON, no markdown, no explanation."
)

KEY_PROBE_MESSAGE = 'Hello, respond with just "OK".'
KEY_PROBE_MAX_TOKENS = 10

CHAT_ENDPOINT = "chat"
EXTRACT_ENDPOINT = "extract_issues"

ROLE_ALIASES = {
    "user": MessageRole.USER,
    "assistant": MessageRole.ASSISTANT,
    "ai": MessageRole.ASSISTANT,
    "system": MessageRole.SYSTEM,
}


def default_issue_tree() -> dict[str, Any]:
    """The tree a workspace starts from."""
    return {"id": "root", "label": "Research Topic", "status": "pending", "children": []}


def normalize_messages(messages: Iterable[tuple[str, str]]) -> list[ChatMessage]:
    """Map client (role, content) pairs onto canonical roles; "ai" becomes assistant."""
    normalized = []
    for role, content in messages:
        canonical = ROLE_ALIASES.get(role.lower())
        if canonical is None:
            raise ValidationError(f"Unsupported message role: {role}")
        normalized.append(ChatMessage(role=canonical, content=content))
    return normalized


def parse_first_json_object(text: str) -> dict[str, Any] | None:
    """Return the first balanced JSON object embedded in text, or None."""
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            value, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        index = text.find("{", index + 1)
    return None


def compute_cost(tokens: int, price_per_million: Decimal) -> Decimal:
    """Estimated cost of a call, rounded up to whole micro-units."""
    raw = Decimal(tokens) / Decimal(1_000_000) * price_per_million
    return from_micros(to_micros(raw))


@dataclass(frozen=True)
class _MeteredCompletion:
    completion: ProviderCompletion
    credential: ResolvedCredential
    cost: Decimal
    trial_credits: Decimal | None


class MeteredAIProxyRouter:
    """Routes chat and extraction calls to a provider and meters trial usage."""

    def __init__(
        self,
        session: AsyncSession,
        vault: CredentialVault,
        ledger: TrialCreditLedger,
        client: ProviderClient,
        usage_log: UsageLogWriter,
        config: Settings = settings,
    ) -> None:
        self.session = session
        self.vault = vault
        self.ledger = ledger
        self.client = client
        self.usage_log = usage_log
        self.config = config

    async def resolve_credential(self, user_id: UUID) -> ResolvedCredential:
        """
        Pick the credential for the next call.

        Raises:
            CredentialNotConfiguredError: Nothing usable (or trial key missing)
            TrialCreditsExhaustedError: Trial user out of credits with no own key
            DecryptionError: Vaulted key failed authentication
        """
        row = (
            await self.session.execute(
                select(User.use_trial_mode, User.trial_credits_micros).where(User.id == user_id)
            )
        ).one_or_none()
        if row is None:
            raise UserNotFoundError(user_id)

        if row.use_trial_mode and row.trial_credits_micros > 0:
            if not self.config.trial_api_key:
                logger.error("trial_api_key_not_configured")
                raise CredentialNotConfiguredError(
                    "Trial mode is enabled but the trial API key is not configured"
                )
            return ResolvedCredential(
                provider=AIProvider(self.config.trial_api_provider),
                api_key=self.config.trial_api_key,
                is_trial=True,
            )

        return await self._own_credential(user_id, trial_mode=row.use_trial_mode)

    async def chat(self, user_id: UUID, messages: Sequence[ChatMessage]) -> ChatResult:
        """
        Send a conversation to the user's provider and meter the result.

        Raises:
            ValidationError: Empty conversation or an over-long user message
            CredentialError: No usable credential or trial credits exhausted
            UpstreamProviderError: Provider call failed (hold released, usage logged)
        """
        if not messages:
            raise ValidationError("Messages array is required")
        limit = self.config.max_user_message_length
        for message in messages:
            if message.role == MessageRole.USER and len(message.content) > limit:
                raise ValidationError(
                    f"Message is too long. Maximum {limit:,} characters allowed."
                )

        metered = await self._metered_call(
            user_id,
            CHAT_ENDPOINT,
            messages,
            SYSTEM_PROMPT,
            self.config.max_output_tokens,
        )
        return ChatResult(
            response=metered.completion.text,
            model=metered.completion.model,
            tokens=metered.completion.tokens,
            is_trial=metered.credential.is_trial,
            cost=metered.cost,
            trial_credits=metered.trial_credits,
        )

    async def extract_issues(
        self,
        user_id: UUID,
        messages: Sequence[ChatMessage],
        current_tree: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """
        Ask the provider for an updated issue tree.

        Best effort: missing credentials, exhausted credits, upstream failures
        and unparseable output all return the current tree unchanged.
        """
        tree = current_tree if current_tree is not None else default_issue_tree()
        conversation = "\n\n".join(f"{m.role.value.upper()}: {m.content}" for m in messages)
        prompt = (
            f"{ISSUE_EXTRACTION_PROMPT}\n\n"
            f"Conversation:\n{conversation}\n\n"
            f"Current issue tree:\n{json.dumps(tree, indent=2)}\n\n"
            "Return the updated issue tree as JSON:"
        )

        try:
            metered = await self._metered_call(
                user_id,
                EXTRACT_ENDPOINT,
                [ChatMessage(role=MessageRole.USER, content=prompt)],
                JSON_ONLY_SYSTEM_PROMPT,
                self.config.max_output_tokens,
            )
        except (CredentialError, UpstreamProviderError, ConcurrencyError) as e:
            logger.info("issue_extraction_skipped", user_id=str(user_id), reason=e.code)
            return tree

        parsed = parse_first_json_object(metered.completion.text)
        if parsed is None:
            logger.warning(
                "issue_extraction_unparseable",
                user_id=str(user_id),
                response_length=len(metered.completion.text),
            )
            return tree
        return parsed

    async def validate_api_key(self, provider: str, api_key: str) -> KeyValidation:
        """
        Probe a provider with a candidate key using a tiny completion.

        Quota and rate-limit failures still prove the key is genuine, so they
        come back valid with is_quota_error set.
        """
        selected = parse_provider(provider)
        if not api_key.strip():
            raise ValidationError("API key is required")

        adapter = get_adapter(selected, self.config)
        try:
            await self.client.complete(
                adapter,
                api_key.strip(),
                [ChatMessage(role=MessageRole.USER, content=KEY_PROBE_MESSAGE)],
                SYSTEM_PROMPT,
                KEY_PROBE_MAX_TOKENS,
            )
        except UpstreamProviderError as e:
            if is_quota_error(e):
                logger.warning("api_key_validation_quota_error", provider=selected.value)
                return KeyValidation(valid=True, error=e.message, is_quota_error=True)
            logger.info("api_key_validation_failed", provider=selected.value)
            return KeyValidation(valid=False, error=e.message)

        logger.info("api_key_validation_succeeded", provider=selected.value)
        return KeyValidation(valid=True)

    async def usage_summary(self, user_id: UUID, days: int = 30) -> UsageSummary:
        """Totals, per-provider and per-day breakdown of the user's usage."""
        if days < 1:
            raise ValidationError("Period must be at least 1 day")
        since = utc_now() - timedelta(days=days)
        window = (ApiUsageLog.user_id == user_id, ApiUsageLog.created_at >= since)

        provider_rows = (
            await self.session.execute(
                select(
                    ApiUsageLog.provider,
                    ApiUsageLog.endpoint,
                    func.count(ApiUsageLog.id).label("requests"),
                    func.coalesce(func.sum(ApiUsageLog.tokens), 0).label("tokens"),
                    func.coalesce(func.sum(ApiUsageLog.cost_micros), 0).label("cost_micros"),
                )
                .where(*window)
                .group_by(ApiUsageLog.provider, ApiUsageLog.endpoint)
                .order_by(ApiUsageLog.provider, ApiUsageLog.endpoint)
            )
        ).all()

        day = func.date(ApiUsageLog.created_at)
        daily_rows = (
            await self.session.execute(
                select(
                    day.label("day"),
                    func.count(ApiUsageLog.id).label("requests"),
                    func.coalesce(func.sum(ApiUsageLog.tokens), 0).label("tokens"),
                )
                .where(*window)
                .group_by(day)
                .order_by(day.desc())
            )
        ).all()

        by_provider = [
            ProviderUsage(
                provider=row.provider,
                endpoint=row.endpoint,
                requests=int(row.requests),
                tokens=int(row.tokens),
                cost=from_micros(int(row.cost_micros)),
            )
            for row in provider_rows
        ]
        return UsageSummary(
            period_days=days,
            total_requests=sum(p.requests for p in by_provider),
            total_tokens=sum(p.tokens for p in by_provider),
            estimated_cost=from_micros(sum(to_micros(p.cost) for p in by_provider)),
            by_provider=by_provider,
            daily=[
                DailyUsage(date=str(row.day), requests=int(row.requests), tokens=int(row.tokens))
                for row in daily_rows
            ],
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _metered_call(
        self,
        user_id: UUID,
        endpoint: str,
        messages: Sequence[ChatMessage],
        system_prompt: str,
        max_tokens: int,
    ) -> _MeteredCompletion:
        credential = await self.resolve_credential(user_id)
        reserved = None
        if credential.is_trial:
            try:
                reserved = await self.ledger.reserve(user_id)
            except TrialCreditsExhaustedError:
                # Credits ran out between resolution and the hold
                logger.info("trial_credits_drained_before_reserve", user_id=str(user_id))
                credential = await self._own_credential(user_id, trial_mode=True)

        # No transaction may stay open across the provider call
        await self.session.commit()

        # The call, its accounting and its usage record outlive a cancelled caller
        dispatch = asyncio.ensure_future(
            self._dispatch(
                user_id, endpoint, credential, reserved, messages, system_prompt, max_tokens
            )
        )
        return await asyncio.shield(dispatch)

    async def _own_credential(self, user_id: UUID, trial_mode: bool) -> ResolvedCredential:
        try:
            credential = await self.vault.get_decrypted(user_id)
        except CredentialNotConfiguredError:
            if trial_mode:
                raise TrialCreditsExhaustedError() from None
            raise

        return ResolvedCredential(
            provider=credential.provider, api_key=credential.api_key, is_trial=False
        )

    async def _dispatch(
        self,
        user_id: UUID,
        endpoint: str,
        credential: ResolvedCredential,
        reserved: Decimal | None,
        messages: Sequence[ChatMessage],
        system_prompt: str,
        max_tokens: int,
    ) -> _MeteredCompletion:
        adapter = get_adapter(credential.provider, self.config)
        provider = credential.provider.value
        started = time.perf_counter()

        try:
            with trace_operation("ai_provider_call", provider=provider, endpoint=endpoint):
                completion = await self.client.complete(
                    adapter, credential.api_key, messages, system_prompt, max_tokens
                )
        except BaseException as e:
            duration = time.perf_counter() - started
            if reserved is not None:
                await self.ledger.release(user_id, reserved)
            metrics.record_ai_request(provider, endpoint, credential.is_trial, False, 0, duration)
            if isinstance(e, UpstreamProviderError):
                error, status_code = e.message, e.status_code
            else:
                error, status_code = str(e) or type(e).__name__, None
            logger.warning(
                "ai_request_failed",
                user_id=str(user_id),
                provider=provider,
                endpoint=endpoint,
                status_code=status_code,
                error_type=type(e).__name__,
            )
            await self.usage_log.record(
                UsageRecord(
                    user_id=user_id,
                    provider=provider,
                    model=adapter.model,
                    endpoint=endpoint,
                    tokens=0,
                    cost_micros=0,
                    duration_ms=int(duration * 1000),
                    success=False,
                    is_trial=credential.is_trial,
                    error=error[:1000],
                )
            )
            raise

        duration = time.perf_counter() - started
        cost = compute_cost(completion.tokens, self.config.price_per_million_tokens)

        trial_credits = None
        if reserved is not None:
            trial_credits = await self.ledger.settle(user_id, reserved, cost)

        metrics.record_ai_request(
            provider, endpoint, credential.is_trial, True, completion.tokens, duration
        )
        logger.info(
            "ai_request_completed",
            user_id=str(user_id),
            provider=provider,
            model=completion.model,
            endpoint=endpoint,
            tokens=completion.tokens,
            is_trial=credential.is_trial,
            duration_ms=int(duration * 1000),
        )
        await self.usage_log.record(
            UsageRecord(
                user_id=user_id,
                provider=provider,
                model=completion.model,
                endpoint=endpoint,
                tokens=completion.tokens,
                cost_micros=to_micros(cost),
                duration_ms=int(duration * 1000),
                success=True,
                is_trial=credential.is_trial,
            )
        )
        return _MeteredCompletion(
            completion=completion,
            credential=credential,
            cost=cost,
            trial_credits=trial_credits,
        )
