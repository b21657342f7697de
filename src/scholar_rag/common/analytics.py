"""scholar_rag.common.analytics

Side-channel sink for workflow telemetry.

Analytics events describe what the workflow did (retrieval sizes, latencies,
token usage, failures). They are written to the record store and never read
back by the core. Writing an event must never fail the request that produced
it, so sink errors are logged and dropped here.

Classes
-------
AnalyticsLogger
    Writes :class:`~scholar_rag.common.schemas.AnalyticsEvent` records.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from scholar_rag.common.schemas import AnalyticsEvent

logger = logging.getLogger("scholar_rag.analytics")


class AnalyticsLogger:
    """Best-effort writer of analytics events.

    Parameters
    ----------
    store : Any or None
        Object exposing ``async add_event(event)``; typically a
        :class:`~scholar_rag.storage.record_store.RecordStore`. When ``None``
        events are only emitted to the module logger at DEBUG level.
    """

    def __init__(self, store: Any = None):
        self.store = store

    async def record(
            self,
            event_type: str,
            *,
            success: bool = True,
            error_message: Optional[str] = None,
            **fields: Any,
        ) -> Optional[AnalyticsEvent]:
        """Build and persist an event.

        Unknown keyword arguments are folded into ``event.metadata``.

        Returns
        -------
        AnalyticsEvent or None
            The stored event, or ``None`` if it could not be written.
        """
        known = {
            "user_id", "subject", "mode", "query_text", "documents_retrieved",
            "response_time_ms", "token_usage",
        }
        metadata = dict(fields.pop("metadata", None) or {})
        for key in list(fields):
            if key not in known:
                metadata[key] = fields.pop(key)

        try:
            event = AnalyticsEvent(
                event_type=event_type,
                success=success,
                error_message=error_message,
                metadata=metadata,
                **fields,
            )
            logger.debug("analytics %s success=%s %s", event_type, success, metadata)
            if self.store is not None:
                await self.store.add_event(event)
            return event
        except Exception as exc:
            logger.warning("Failed to record analytics event %r: %s", event_type, exc)
            return None


__all__ = ["AnalyticsLogger"]
