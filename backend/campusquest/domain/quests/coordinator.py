"""Exactly-once quest completion state machine.

Per (user, zone) pair: NOT_VISITED -> PENDING -> VISITED, or
NOT_VISITED -> PENDING -> FAILED, where FAILED collapses back to NOT_VISITED
so the zone can be retried on the next position report.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, FrozenSet, Iterable, List, Optional, Protocol, Set, Tuple

from campusquest.domain.quests.exceptions import DuplicateVisitAttempt, PersistenceFailure
from campusquest.domain.quests.models import CompletionOutcome, CompletionState, QuestZone, VisitResult
from campusquest.domain.quests.repository import QuestRepository
from campusquest.obs import metrics as obs_metrics
from campusquest.settings import settings

logger = logging.getLogger(__name__)

PairKey = Tuple[str, str]


class CompletionListener(Protocol):
    """Outbound hooks invoked after a pair reaches VISITED."""

    async def notify_balance_changed(self, user_id: str, new_balance: int) -> None: ...

    async def notify_zone_visited(self, user_id: str, zone_id: str) -> None: ...


class QuestCompletionCoordinator:
    """Turns entered zones into durable, exactly-once rewards."""

    def __init__(
        self,
        repository: QuestRepository,
        *,
        listener: Optional[CompletionListener] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._repository = repository
        self._listener = listener
        self._timeout = timeout_seconds
        self._lock = asyncio.Lock()
        self._pending: Set[PairKey] = set()
        self._visited: Dict[str, Set[str]] = {}
        self._seeded: Set[str] = set()
        # Users forgotten while an attempt of theirs was still in flight.
        self._released: Set[str] = set()

    @property
    def timeout_seconds(self) -> float:
        if self._timeout is not None:
            return self._timeout
        return float(settings.quest_completion_timeout_seconds)

    def set_listener(self, listener: Optional[CompletionListener]) -> None:
        self._listener = listener

    def state(self, user_id: str, zone_id: str) -> CompletionState:
        if zone_id in self._visited.get(user_id, ()):
            return CompletionState.VISITED
        if (user_id, zone_id) in self._pending:
            return CompletionState.PENDING
        return CompletionState.NOT_VISITED

    def is_seeded(self, user_id: str) -> bool:
        return user_id in self._seeded

    async def seed_visited(self, user_id: str) -> FrozenSet[str]:
        """Load the canonical visited set and merge it into the local cache.

        A failed lookup leaves the user unseeded so the next call retries; the
        persistence layer still rejects duplicate rewards in the meantime.
        """
        try:
            canonical = await asyncio.wait_for(
                self._repository.get_visited_zone_ids(user_id),
                timeout=self.timeout_seconds,
            )
        except Exception:
            logger.warning("visited zones lookup failed user=%s", user_id, exc_info=True)
            return frozenset(self._visited.get(user_id, ()))
        async with self._lock:
            cached = self._visited.setdefault(user_id, set())
            cached.update(str(zone_id) for zone_id in canonical)
            self._seeded.add(user_id)
            self._released.discard(user_id)
            return frozenset(cached)

    async def visited_for(self, user_id: str) -> FrozenSet[str]:
        if not self.is_seeded(user_id):
            return await self.seed_visited(user_id)
        return frozenset(self._visited.get(user_id, ()))

    def forget(self, user_id: str) -> None:
        """Drop the local visited cache.

        In-flight attempts keep their pending markers but no longer write their
        result back into the cache, so a departed user leaves nothing behind.
        """
        self._visited.pop(user_id, None)
        self._seeded.discard(user_id)
        if self._has_pending(user_id):
            self._released.add(user_id)

    def _has_pending(self, user_id: str) -> bool:
        return any(pending_user == user_id for pending_user, _ in self._pending)

    async def complete(self, user_id: str, zone: QuestZone) -> Optional[CompletionOutcome]:
        """Attempt to complete `zone` for `user_id`.

        Returns None when the trigger was dropped because the pair is already
        visited or already has an attempt in flight.
        """
        key = (user_id, zone.id)
        async with self._lock:
            if zone.id in self._visited.get(user_id, ()):
                return None
            if key in self._pending:
                obs_metrics.inc_quest_completion("dropped")
                return None
            self._pending.add(key)

        outcome: Optional[CompletionOutcome] = None
        try:
            outcome = await self._attempt(user_id, zone)
        finally:
            async with self._lock:
                self._pending.discard(key)
                if outcome is not None and outcome.succeeded and user_id not in self._released:
                    self._visited.setdefault(user_id, set()).add(zone.id)
                if not self._has_pending(user_id):
                    self._released.discard(user_id)

        if outcome.succeeded:
            if outcome.created:
                obs_metrics.inc_quest_completion("created")
                obs_metrics.inc_points_awarded(zone.reward_points)
                logger.info(
                    "quest completed user=%s zone=%s reward=%s balance=%s",
                    user_id,
                    zone.id,
                    zone.reward_points,
                    outcome.new_balance,
                )
            else:
                obs_metrics.inc_quest_completion("duplicate")
                logger.info("quest already completed user=%s zone=%s", user_id, zone.id)
            await self._notify(outcome)
        return outcome

    async def _attempt(self, user_id: str, zone: QuestZone) -> CompletionOutcome:
        started = time.perf_counter()
        try:
            result = await self._persist(user_id, zone)
        except PersistenceFailure as exc:
            if exc.reason == "timeout":
                obs_metrics.inc_quest_completion("timeout")
                logger.warning(
                    "quest completion timed out user=%s zone=%s timeout=%ss",
                    user_id,
                    zone.id,
                    self.timeout_seconds,
                )
            else:
                obs_metrics.inc_quest_completion("error")
                logger.error(
                    "quest completion failed user=%s zone=%s",
                    user_id,
                    zone.id,
                    exc_info=exc.__cause__ or exc,
                )
            outcome = CompletionOutcome(user_id, zone.id, CompletionState.FAILED, reason=exc.reason)
        else:
            outcome = CompletionOutcome(
                user_id,
                zone.id,
                CompletionState.VISITED,
                reward_points=zone.reward_points if result.created else 0,
                new_balance=result.new_balance,
                created=result.created,
                reason=None if result.created else "duplicate_visit",
            )
        finally:
            obs_metrics.observe_quest_completion(time.perf_counter() - started)
        return outcome

    async def process(self, user_id: str, zones: Iterable[QuestZone]) -> List[CompletionOutcome]:
        """Run completions for several entered zones concurrently."""
        attempts = [self.complete(user_id, zone) for zone in zones]
        if not attempts:
            return []
        results = await asyncio.gather(*attempts)
        return [outcome for outcome in results if outcome is not None]

    async def _persist(self, user_id: str, zone: QuestZone) -> VisitResult:
        """Record the visit, turning every collaborator error into `PersistenceFailure`."""
        try:
            return await self._record(user_id, zone)
        except asyncio.TimeoutError as exc:
            raise PersistenceFailure("timeout") from exc
        except Exception as exc:
            raise PersistenceFailure() from exc

    async def _record(self, user_id: str, zone: QuestZone) -> VisitResult:
        try:
            return await asyncio.wait_for(
                self._repository.record_visit_and_reward(user_id, zone.id, zone.reward_points),
                timeout=self.timeout_seconds,
            )
        except DuplicateVisitAttempt as exc:
            balance = exc.balance
            if balance is None:
                balance = await asyncio.wait_for(
                    self._repository.get_balance(user_id),
                    timeout=self.timeout_seconds,
                )
            return VisitResult(created=False, new_balance=int(balance))

    async def _notify(self, outcome: CompletionOutcome) -> None:
        listener = self._listener
        if listener is None:
            return
        try:
            if outcome.new_balance is not None:
                await listener.notify_balance_changed(outcome.user_id, outcome.new_balance)
            await listener.notify_zone_visited(outcome.user_id, outcome.zone_id)
        except Exception:
            logger.warning(
                "completion notification failed user=%s zone=%s",
                outcome.user_id,
                outcome.zone_id,
                exc_info=True,
            )
