"""
Payment Sweeper - The Safety Net
================================
Background task that finds orders stuck in pending with a payment reference
and asks the processor what actually happened.

Covers the client that paid but never called confirm, and the webhook that
never arrived.

Features:
- Runs every PAYMENT_SWEEP_INTERVAL seconds (default 5 minutes)
- Picks up orders untouched for PAYMENT_SWEEP_THRESHOLD_MINUTES
- Goes through the same apply routine as confirm and webhooks
- Processor errors are logged per order and never stop the loop
"""

import asyncio
from datetime import timedelta
from typing import Dict

import structlog

from errors import CommerceError
from schemas.orders import utcnow
from services.container import CommerceServices
from services.reconciliation import Action

# Configure logger
logger = structlog.get_logger().bind(component="payment_sweeper")


async def sweep_once(services: CommerceServices) -> Dict[str, int]:
    """One pass over stale pending orders. Returns counts per action."""
    config = services.config
    cutoff = utcnow() - timedelta(minutes=config.sweep_threshold_minutes)
    stale_orders = await services.orders_repo.find_stale_pending(cutoff, config.sweep_batch_size)

    counts = {action.value: 0 for action in Action}
    counts["errors"] = 0

    if not stale_orders:
        return counts

    logger.warning("stale_orders_found", count=len(stale_orders))

    for order in stale_orders:
        try:
            result = await services.reconciliation.sweep_order(order)
        except CommerceError as e:
            counts["errors"] += 1
            logger.error(
                "sweep_order_failed",
                order_id=order.id,
                intent_id=order.external_payment_reference,
                error=e.message,
                error_type=type(e).__name__,
            )
            continue

        counts[result.action.value] += 1
        logger.info(
            "sweep_order_reconciled",
            order_id=order.id,
            action=result.action.value,
            detail=result.detail,
        )

    logger.info("sweep_cycle_complete", processed=len(stale_orders), **counts)
    return counts


async def payment_sweeper_loop(services: CommerceServices):
    """
    Runs until cancelled. Started from the API lifespan.
    """
    config = services.config
    logger.info(
        "payment_sweeper_started",
        interval=config.sweep_interval_seconds,
        threshold=config.sweep_threshold_minutes,
        enabled=config.sweep_enabled,
    )

    if not config.sweep_enabled:
        logger.info("payment_sweeper_disabled")
        return

    while True:
        try:
            await sweep_once(services)
        except Exception as e:
            logger.error("payment_sweeper_error", error=str(e), error_type=type(e).__name__,
                         exc_info=not isinstance(e, CommerceError))

        # Sleep until next check
        await asyncio.sleep(config.sweep_interval_seconds)
