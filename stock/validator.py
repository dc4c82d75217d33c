"""
Inventory validator: answers every order.created event with a stock verdict.

Each line is judged on its own (existence, active flag, available quantity).
Lines carrying a promotion also get the promotion's per-customer daily
ceiling, the order service compares it with the customer's usage.
"""
import logging

from common.errors import NotFoundError
from common.kafka.events_config import (
    EVENT_STOCK_VALIDATION_RESPONSE,
    REASON_INACTIVE,
    REASON_INSUFFICIENT_STOCK,
    REASON_NOT_FOUND,
    REASON_OK,
)
from common.kafka.kafkaProducer import KafkaProducerSingleton
from common.kafka.messages import (
    LineVerdict,
    OrderEventData,
    OrderItem,
    ValidationResponse,
    ValidationVerdict,
    build_envelope,
    isoformat,
    utc_now,
)
from common.kafka.topics_config import STOCK_EXCHANGE, stock_routing_key
from stock.stock_logic import InventoryLogic


class InventoryValidator:

    def __init__(self, logic: InventoryLogic, producer=KafkaProducerSingleton, logger=None):
        self.logic = logic
        self.producer = producer
        self.logger = logger or logging.getLogger("stock-service.validator")

    async def promo_ceiling(self, promo_id: str) -> int:
        promotion, err = await self.logic.get_promotion(promo_id)
        if isinstance(err, NotFoundError):
            return 0
        if err:
            raise err
        return promotion.qty_max if promotion.is_active else 0

    async def validate_line(self, item: OrderItem) -> LineVerdict:
        product, err = await self.logic.get_product(item.product_id)
        if err and not isinstance(err, NotFoundError):
            raise err

        if product is None:
            reason, available, name = REASON_NOT_FOUND, 0, None
        elif not product.is_active:
            reason, available, name = REASON_INACTIVE, product.qty, product.product_name
        elif product.qty < item.qty:
            reason, available, name = REASON_INSUFFICIENT_STOCK, product.qty, product.product_name
        else:
            reason, available, name = REASON_OK, product.qty, product.product_name

        line = LineVerdict(
            product_id=item.product_id,
            product_name=name,
            requested_qty=item.qty,
            available_qty=available,
            is_valid=reason == REASON_OK,
            reason=reason,
        )
        if item.promo_id is not None:
            line.has_promo = True
            line.promo_id = item.promo_id
            line.max_promo_qty = await self.promo_ceiling(item.promo_id)
        return line

    async def validate(self, order: OrderEventData) -> ValidationVerdict:
        lines = [await self.validate_line(item) for item in order.items]
        return ValidationVerdict(
            order_id=order.order_id,
            is_stock_valid=all(line.is_valid for line in lines),
            has_promo_items=any(line.has_promo for line in lines),
            validation_details=lines,
            validated_at=isoformat(utc_now()),
        )

    @staticmethod
    def error_verdict(order_id: str, err: Exception) -> ValidationVerdict:
        return ValidationVerdict(
            order_id=order_id,
            is_stock_valid=False,
            has_promo_items=False,
            validated_at=isoformat(utc_now()),
            error=str(err) or type(err).__name__,
        )

    async def handle_order_created(self, order: OrderEventData) -> ValidationVerdict:
        """Validate and publish the verdict. Publish failures propagate so the event is redelivered."""
        try:
            verdict = await self.validate(order)
        except Exception as e:
            self.logger.error(f"Stock validation of order {order.order_id} failed: {e}", exc_info=True)
            verdict = self.error_verdict(order.order_id, e)

        response = ValidationResponse(order_id=order.order_id, username=order.username, validation_result=verdict)
        await self.producer.send_event(
            STOCK_EXCHANGE,
            stock_routing_key(EVENT_STOCK_VALIDATION_RESPONSE),
            order.order_id,
            build_envelope(EVENT_STOCK_VALIDATION_RESPONSE, response),
        )
        self.logger.info(f"Order {order.order_id} validated: stock valid={verdict.is_stock_valid}, "
                         f"promo items={verdict.has_promo_items}")
        return verdict
