import logging

from opentelemetry import metrics

from common.errors import (
    OrderNotFoundError,
    ProcessingError,
    StatusConflictError,
    ValidationError,
)
from common.kafka.events_config import EVENT_ORDER_COMPLETED, EVENT_ORDER_UPDATED
from common.kafka.messages import ValidationVerdict
from order.order_logic import Order, OrderLogic
from order.saga.correlation import CorrelationStore
from order.saga.decision import Decision, decide, promo_lines
from order.saga.state_machine import (
    NON_TERMINAL_STATUSES,
    OrderStatus,
    is_terminal,
    parse_status,
)

meter = metrics.get_meter("order-service.saga")
transition_counter = meter.create_counter(
    "saga.transitions", description="Order status transitions decided by the saga"
)
dropped_counter = meter.create_counter(
    "saga.dropped_verdicts", description="Verdicts dropped because the order was already resolved"
)

MANUAL_REASONS = {
    OrderStatus.CANCELLED: "Order cancelled manually",
    OrderStatus.FAILED: "Order processing failed: manual override",
}


class SagaOrchestrator:
    """
    Drives an order from pending to ready_for_payment, cancelled or failed
    based on the inventory verdict, and from ready_for_payment to completed
    on payment.
    """

    def __init__(self, logic: OrderLogic, correlation: CorrelationStore, logger=None):
        self.logic = logic
        self.correlation = correlation
        self.logger = logger or logging.getLogger("order-service.saga")

    async def handle_verdict(self, verdict: ValidationVerdict):
        order_id = verdict.order_id
        async with self.correlation.guard(order_id):
            await self.correlation.put(order_id, verdict)
            try:
                order, err = await self.logic.get_order(order_id)
                if isinstance(err, OrderNotFoundError):
                    self.logger.warning(f"[SAGA {order_id}] Verdict for unknown order dropped")
                    return
                if err:
                    raise err
                if order.status != OrderStatus.PENDING:
                    self.logger.info(f"[SAGA {order_id}] Order already {order.status}, duplicate verdict dropped")
                    dropped_counter.add(1)
                    return
                try:
                    await self._advance(order, verdict)
                except Exception as e:
                    self.logger.error(f"[SAGA {order_id}] Processing failed: {e}", exc_info=True)
                    await self.fail_order(order_id, e)
            finally:
                await self.correlation.delete(order_id)

    async def _advance(self, order: Order, verdict: ValidationVerdict):
        usage = {}
        if not verdict.error and verdict.is_stock_valid and verdict.has_promo_items:
            usage = await self.promo_usage(order, verdict)
        decision = decide(verdict, usage)
        await self.apply(order.order_id, decision)

    async def promo_usage(self, order: Order, verdict: ValidationVerdict) -> dict[str, int]:
        usage = {}
        for line in promo_lines(verdict):
            if line.promo_id in usage:
                continue
            used, err = await self.logic.get_daily_promo_usage(order.username, line.promo_id)
            if err:
                raise ProcessingError(f"Unable to read promo usage for {line.promo_id}: {err}", order.order_id)
            usage[line.promo_id] = used
        return usage

    async def apply(self, order_id: str, decision: Decision):
        order, err = await self.logic.transition_status(
            order_id,
            decision.status,
            reason=decision.reason,
            event=decision.event,
            event_details=decision.details,
            expected={OrderStatus.PENDING},
        )
        if isinstance(err, StatusConflictError):
            self.logger.info(f"[SAGA {order_id}] Order moved to {err.current_status} meanwhile, decision dropped")
            dropped_counter.add(1)
            return
        if err:
            raise ProcessingError(f"Unable to move order to {decision.status.value}: {err}", order_id)
        transition_counter.add(1, {"status": decision.status.value})
        if decision.reason:
            self.logger.info(f"[SAGA {order_id}] Order {decision.status.value}: {decision.reason}")
        else:
            self.logger.info(f"[SAGA {order_id}] Order {decision.status.value}")

    async def fail_order(self, order_id: str, cause: Exception):
        """Force a non-terminal order into failed. Raises when even that cannot be stored."""
        order, err = await self.logic.transition_status(
            order_id,
            OrderStatus.FAILED,
            reason=f"Order processing failed: {cause}",
            event=EVENT_ORDER_UPDATED,
            expected=NON_TERMINAL_STATUSES,
        )
        if isinstance(err, StatusConflictError):
            self.logger.info(f"[SAGA {order_id}] Order already {err.current_status}, not marked failed")
            return
        if err:
            raise ProcessingError(f"Unable to mark order {order_id} failed: {err}", order_id) from cause
        transition_counter.add(1, {"status": OrderStatus.FAILED.value})
        self.logger.warning(f"[SAGA {order_id}] Order marked failed")

    async def complete_payment(self, order_id: str):
        """Simulated capture: always succeeds for an order that is ready for payment."""
        order, err = await self.logic.transition_status(
            order_id,
            OrderStatus.COMPLETED,
            event=EVENT_ORDER_COMPLETED,
            event_details={"message": "Payment captured"},
            expected={OrderStatus.READY_FOR_PAYMENT},
        )
        if err:
            return order, err
        transition_counter.add(1, {"status": OrderStatus.COMPLETED.value})
        self.logger.info(f"Payment captured for order {order_id}")
        return order, None

    async def override_status(self, order_id: str, value):
        """Manual status change requested over HTTP; same enum as the saga, never out of a terminal status."""
        try:
            target = parse_status(value)
        except ValidationError as e:
            return None, e
        order, err = await self.logic.get_order(order_id)
        if err:
            return None, err
        if is_terminal(order.status) and order.status != target.value:
            return order, StatusConflictError(
                f"Order {order_id} is {order.status} and cannot change status", current_status=order.status
            )
        event = EVENT_ORDER_COMPLETED if target == OrderStatus.COMPLETED else EVENT_ORDER_UPDATED
        if target.value == order.status:
            reason = order.reason
        else:
            reason = MANUAL_REASONS.get(target)
        return await self.logic.transition_status(
            order_id,
            target,
            reason=reason,
            event=event,
            expected=NON_TERMINAL_STATUSES | {target},
        )
