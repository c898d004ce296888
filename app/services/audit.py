"""
Side Channel Writers - Audit trail and AI usage log.

Both writers open their own session from a session factory and commit
independently, so a failed write never rolls back or fails the caller's
transaction. Failures are reported to a dedicated sink: a structlog error
event plus the side_channel_failures_total counter.
"""

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from app.db.models import ApiUsageLog, AuditLog
from app.models.domain import AuditEvent, UsageRecord
from app.observability.metrics import metrics

logger = get_logger(__name__)


class AuditLogWriter:
    """Append-only audit trail, fire-and-forget."""

    channel = "audit"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def record(self, event: AuditEvent) -> bool:
        """
        Persist an audit event.

        Returns True when written. Never raises for storage failures.
        """
        try:
            async with self.session_factory() as session:
                session.add(
                    AuditLog(
                        user_id=event.user_id,
                        action=event.action,
                        resource=event.resource,
                        resource_id=event.resource_id,
                        event_metadata=dict(event.metadata),
                        ip_address=event.ip_address,
                        user_agent=event.user_agent[:512] if event.user_agent else None,
                    )
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "audit_log_write_failed",
                action=event.action,
                user_id=str(event.user_id) if event.user_id else None,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_side_channel_failure(self.channel)
            return False
        return True


class UsageLogWriter:
    """One row per proxied AI call, fire-and-forget."""

    channel = "usage"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def record(self, usage: UsageRecord) -> bool:
        """Persist a usage record. Returns True when written; never raises for storage failures."""
        try:
            async with self.session_factory() as session:
                session.add(
                    ApiUsageLog(
                        user_id=usage.user_id,
                        provider=usage.provider,
                        model=usage.model,
                        endpoint=usage.endpoint,
                        tokens=usage.tokens,
                        cost_micros=usage.cost_micros,
                        duration_ms=usage.duration_ms,
                        success=usage.success,
                        is_trial=usage.is_trial,
                        error=usage.error,
                    )
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "usage_log_write_failed",
                user_id=str(usage.user_id),
                provider=usage.provider,
                endpoint=usage.endpoint,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_side_channel_failure(self.channel)
            return False
        return True
