"""Scheduler: poll storage and dispatch pending work under a concurrency budget."""

from __future__ import annotations

import asyncio
import logging

import anyio

from .config import SchedulerConfig
from .models import Clarification, ClarificationStatus, Feedback, FeedbackStatus, today_partition
from .state_machine import ClarificationStateMachine, FeedbackStateMachine

logger = logging.getLogger(__name__)

# Seconds between checks while stop() waits for active work to drain.
_DRAIN_INTERVAL = 0.1


class Scheduler:
    """Polls today's partition and hands pending items to the handlers.

    Items inside one poll are handled one after another; the repeating
    timer does not wait for the previous poll, so separate ticks overlap
    up to ``max_concurrent`` active items.
    """

    def __init__(
        self,
        store,
        clarification_handler,
        feedback_handler,
        poll_interval: float = 5.0,
        max_concurrent: int = 3,
    ):
        self.store = store
        self.clarification_handler = clarification_handler
        self.feedback_handler = feedback_handler
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self._running = False
        self._timer: asyncio.Task | None = None
        self._polls: set[asyncio.Task] = set()
        self._active: set[str] = set()

    @classmethod
    def from_config(cls, config: SchedulerConfig, store, clarification_handler, feedback_handler):
        return cls(
            store,
            clarification_handler,
            feedback_handler,
            poll_interval=config.poll_interval,
            max_concurrent=config.max_concurrent,
        )

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.info("Scheduler is already running")
            return

        self._running = True
        logger.info(
            "Scheduler started (poll every %ss, max %d concurrent)",
            self.poll_interval, self.max_concurrent,
        )
        await self.poll()
        self._timer = asyncio.create_task(self._tick_loop())

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

        while self._active:
            await anyio.sleep(_DRAIN_INTERVAL)
        logger.info("Scheduler stopped")

    async def run_once(self) -> None:
        """Run a single poll without starting the timer, then drain."""
        if self._running:
            await self.poll()
            return
        self._running = True
        try:
            await self.poll()
        finally:
            await self.stop()

    async def _tick_loop(self) -> None:
        while self._running:
            await anyio.sleep(self.poll_interval)
            if not self._running:
                break
            task = asyncio.create_task(self.poll())
            self._polls.add(task)
            task.add_done_callback(self._poll_done)

    def _poll_done(self, task: asyncio.Task) -> None:
        self._polls.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Poll failed: %s", task.exception())

    # -----------------------------------------------------------------
    # Polling
    # -----------------------------------------------------------------

    async def poll(self) -> None:
        """Run one dispatch cycle. Never raises."""
        if not self._running:
            return

        try:
            await self.clarification_handler.expire_stale()
        except Exception:
            logger.exception("Expiring stale clarifications failed")

        try:
            pending = await self.store.list_pending_by_partition(today_partition())
        except Exception:
            logger.exception("Loading pending work items failed")
            return

        try:
            for clarification in pending.clarifications:
                if not self._can_start():
                    break
                if clarification.id in self._active:
                    continue
                await self._dispatch(clarification.id, self.handle_clarification(clarification))

            for feedback in pending.feedbacks:
                if not self._can_start():
                    break
                if feedback.id in self._active:
                    continue
                await self._dispatch(feedback.id, self.handle_feedback(feedback))
        except Exception:
            logger.exception("Poll cycle failed")

    def _can_start(self) -> bool:
        return self._running and len(self._active) < self.max_concurrent

    async def _dispatch(self, item_id: str, handling) -> None:
        self._active.add(item_id)
        try:
            await handling
        except Exception:
            logger.exception("Handling %s failed", item_id)
        finally:
            self._active.discard(item_id)

    # -----------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------

    async def handle_clarification(self, clarification: Clarification) -> None:
        item_id = clarification.id
        machine = ClarificationStateMachine(clarification.status)
        logger.info("[Clarification] Processing %s", item_id)

        try:
            if not machine.start_processing().success:
                logger.warning(
                    "[Clarification] %s cannot be processed from %s",
                    item_id, machine.status.value,
                )
                return
            await self.store.update_status(item_id, machine.status)

            result = await self.clarification_handler.analyze(item_id)
            if result.awaiting_user:
                machine.await_user()
                logger.info(
                    "[Clarification] %s awaits the user, %d question(s)",
                    item_id, len(result.questions),
                )
            else:
                machine.confirm()
                logger.info("[Clarification] %s confirmed", item_id)
            await self.store.update_status(item_id, machine.status)
        except Exception as exc:
            logger.exception("[Clarification] %s failed", item_id)
            machine.force_transition(ClarificationStatus.FAILED)
            await self.store.update_status(item_id, machine.status)
            await self.store.append_log(item_id, f"Processing failed: {exc}", "error")

    async def handle_feedback(self, feedback: Feedback) -> None:
        item_id = feedback.id
        machine = FeedbackStateMachine(feedback.status)
        logger.info("[Feedback] Processing %s", item_id)

        try:
            if machine.can_analyze():
                machine.start_analyzing()
                await self.store.update_status(item_id, machine.status)
            elif machine.status not in (FeedbackStatus.ANALYZING, FeedbackStatus.EXECUTING):
                logger.warning(
                    "[Feedback] %s cannot be processed from %s", item_id, machine.status.value
                )
                return

            success = await self.feedback_handler.execute(item_id)
            logger.info("[Feedback] %s %s", item_id, "completed" if success else "failed")
        except Exception as exc:
            logger.exception("[Feedback] %s failed", item_id)
            machine.force_transition(FeedbackStatus.FAILED)
            await self.store.update_status(item_id, machine.status)
            await self.store.append_log(item_id, f"Processing failed: {exc}", "error")

    # -----------------------------------------------------------------
    # Accessors
    # -----------------------------------------------------------------

    def is_running(self) -> bool:
        return self._running

    def active_count(self) -> int:
        return len(self._active)

    def active_ids(self) -> list[str]:
        return sorted(self._active)
