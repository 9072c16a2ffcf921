"""
Conversation discovery and reconciliation.

Conversation listings are cheap and reveal participants, but their activity
timestamps can be stale. Message queries are accurate but cost one call per
conversation. Discovery therefore ranks the cheap listing, keeps a bounded
window of likely leaders and verifies only those against message queries.

The provider-specific parts (what a probe is) are injected as callables, so
the algorithm is shared by every adapter and testable without HTTP.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from commhub.communication.models import ConversationData, RecentConversation
from commhub.providers.pagination import gather_in_batches
from commhub.shared.logging import get_logger

logger = get_logger(__name__)

UNVERIFIED_PREVIEW = "(unable to fetch latest message)"
UNKNOWN_DIRECTION = "unknown"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class LatestMessage:
    """Result of a size-1, most-recent-first message query."""

    created_at: datetime
    preview: str
    direction: str


LatestMessageProbe = Callable[[ConversationData], Awaitable["LatestMessage | None"]]
ActivityProbe = Callable[[ConversationData, datetime], Awaitable["datetime | None"]]


def candidate_window(limit: int) -> int:
    """Number of listing leaders worth verifying for a result of ``limit``."""
    return max(limit * 5, 50)


def _listing_time(conversation: ConversationData) -> datetime:
    return conversation.last_message_at or _EPOCH


def rank_by_listing(conversations: Sequence[ConversationData]) -> list[ConversationData]:
    """Sort descending by the (untrusted) listing timestamp; missing timestamps last."""
    return sorted(conversations, key=_listing_time, reverse=True)


async def reconcile_recent(
    candidates: Sequence[ConversationData],
    limit: int,
    probe: LatestMessageProbe,
    *,
    batch_size: int = 5,
) -> list[RecentConversation]:
    """Resolve the ``limit`` most recently active conversations.

    A failed probe keeps the candidate with its listing timestamp (unverified);
    a probe that finds no message at all drops it.
    """
    if limit <= 0 or not candidates:
        return []

    window = rank_by_listing(candidates)[: candidate_window(limit)]
    logger.info(
        "Verifying conversation candidates",
        extra={"candidates": len(window), "total": len(candidates), "limit": limit},
    )

    outcomes = await gather_in_batches(window, probe, batch_size=batch_size)

    results: list[RecentConversation] = []
    for outcome in outcomes:
        conversation = outcome.item
        if outcome.error is not None:
            logger.warning(
                "Latest message probe failed, using listing timestamp",
                extra={"conversation_id": conversation.external_id, "error": str(outcome.error)},
            )
            results.append(
                RecentConversation(
                    conversation=conversation,
                    last_message_at=_listing_time(conversation),
                    preview=UNVERIFIED_PREVIEW,
                    direction=UNKNOWN_DIRECTION,
                    verified=False,
                )
            )
            continue

        latest = outcome.value
        if latest is None:
            continue
        results.append(
            RecentConversation(
                conversation=replace(
                    conversation,
                    last_message_at=latest.created_at,
                    last_message_verified=True,
                ),
                last_message_at=latest.created_at,
                preview=latest.preview,
                direction=latest.direction,
            )
        )

    results.sort(key=lambda r: r.last_message_at, reverse=True)
    return results[:limit]


async def filter_active_since(
    candidates: Sequence[ConversationData],
    since: datetime,
    has_activity: ActivityProbe,
    *,
    limit: int | None = None,
    batch_size: int = 5,
) -> list[ConversationData]:
    """Keep conversations with at least one message created after ``since``.

    ``has_activity`` returns the newest qualifying message time, or None.
    When the probe for a candidate fails, the listing timestamp decides.
    """

    async def _probe(conversation: ConversationData) -> datetime | None:
        return await has_activity(conversation, since)

    outcomes = await gather_in_batches(list(candidates), _probe, batch_size=batch_size)

    kept: list[ConversationData] = []
    for outcome in outcomes:
        conversation = outcome.item
        if outcome.error is not None:
            logger.warning(
                "Activity probe failed, using listing timestamp",
                extra={"conversation_id": conversation.external_id, "error": str(outcome.error)},
            )
            if _listing_time(conversation) >= since:
                kept.append(conversation)
            continue
        if outcome.value is not None:
            kept.append(
                replace(conversation, last_message_at=outcome.value, last_message_verified=True)
            )

    kept = rank_by_listing(kept)
    logger.info(
        "Date-filtered discovery finished",
        extra={"since": since.isoformat(), "checked": len(outcomes), "active": len(kept)},
    )
    return kept[:limit] if limit else kept


def sort_recent(
    conversations: Sequence[ConversationData],
    limit: int,
    preview_of: Callable[[ConversationData], tuple[str, str]] | None = None,
) -> list[RecentConversation]:
    """Sort-only fallback for providers whose listing timestamps are accurate."""
    results = []
    for conversation in rank_by_listing(conversations)[:limit]:
        if conversation.last_message_at is None:
            continue
        preview, direction = preview_of(conversation) if preview_of else ("", UNKNOWN_DIRECTION)
        results.append(
            RecentConversation(
                conversation=conversation,
                last_message_at=conversation.last_message_at,
                preview=preview,
                direction=direction,
                verified=conversation.last_message_verified,
            )
        )
    return results
