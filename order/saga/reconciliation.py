import asyncio
import logging
from datetime import timedelta

from common.errors import StatusConflictError
from common.kafka.events_config import EVENT_ORDER_UPDATED
from order.order_logic import OrderLogic
from order.saga.state_machine import OrderStatus

TIMEOUT_REASON = "Order validation timed out"


class PendingOrderReconciler:
    """Moves orders that stayed pending past the timeout to failed."""

    def __init__(self, logic: OrderLogic, pending_timeout: float = 900.0, interval: float = 60.0, logger=None):
        self.logic = logic
        self.logger = logger or logging.getLogger("order-service.reconcile")
        self.pending_timeout = pending_timeout
        self.interval = interval
        self._task: asyncio.Task | None = None

    async def reconcile_once(self) -> list[str]:
        cutoff = self.logic.clock() - timedelta(seconds=self.pending_timeout)
        order_ids, err = await self.logic.list_stale_pending(cutoff)
        if err:
            self.logger.error(f"[RECONCILE] Unable to list pending orders: {err}")
            return []
        failed = []
        for order_id in order_ids:
            _, err = await self.logic.transition_status(
                order_id,
                OrderStatus.FAILED,
                reason=TIMEOUT_REASON,
                event=EVENT_ORDER_UPDATED,
                expected={OrderStatus.PENDING},
            )
            if isinstance(err, StatusConflictError):
                # resolved by the saga in the meantime
                continue
            if err:
                self.logger.error(f"[RECONCILE] Unable to fail order {order_id}: {err}")
                continue
            self.logger.warning(f"[RECONCILE] Order {order_id} still pending after {self.pending_timeout}s, marked failed")
            failed.append(order_id)
        return failed

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.reconcile_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"[RECONCILE] Reconciliation pass failed: {e}", exc_info=True)

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            self.logger.info("[RECONCILE] Pending order reconciliation started")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                self.logger.info("[RECONCILE] Pending order reconciliation stopped")
            self._task = None
