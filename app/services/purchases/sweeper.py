"""
Periodic expiry sweep running next to the bot.

Sessions live in process memory, so the sweep runs as an asyncio task in the same
process; the blocking part (registry scan, remote cancels) goes to a worker thread.
"""
import asyncio
import logging
from typing import Awaitable, Callable

from app.services.purchases.models import Outcome
from app.services.purchases.orchestrator import PurchaseOrchestrator

logger = logging.getLogger(__name__)


async def run_expiry_sweeper(
    orchestrator: PurchaseOrchestrator,
    notify: Callable[[Outcome], Awaitable[None]],
    interval_seconds: float,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Sweep every interval_seconds until stop_event is set (or the task is cancelled)."""
    stop_event = stop_event or asyncio.Event()
    logger.info("expiry_sweeper_started", extra={"delay_seconds": interval_seconds})
    while not stop_event.is_set():
        try:
            outcomes = await asyncio.to_thread(orchestrator.sweep_expired)
        except Exception:
            logger.exception("expiry_sweep_failed")
            outcomes = []
        for outcome in outcomes:
            try:
                await notify(outcome)
            except Exception:
                logger.exception(
                    "expiry_notify_failed",
                    extra={"payment_id": outcome.payment_id, "channel_id": outcome.channel_id},
                )
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info("expiry_sweeper_stopped")
