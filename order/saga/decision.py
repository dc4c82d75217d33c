"""
Pure saga decisions: verdict (+ today's promo usage) in, next order status out.

Nothing here touches redis or kafka, the orchestrator gathers the inputs and
applies the result.
"""
import msgspec
from msgspec import Struct

from common.kafka.events_config import (
    EVENT_ORDER_CANCELLED,
    EVENT_ORDER_READY_FOR_PAYMENT,
    EVENT_ORDER_UPDATED,
    REASON_INACTIVE,
    REASON_INSUFFICIENT_STOCK,
    REASON_NOT_FOUND,
)
from common.kafka.messages import LineVerdict, ValidationVerdict
from order.saga.state_machine import OrderStatus

READY_MESSAGE = "Order validated successfully, ready for payment"
GENERIC_STOCK_REASON = ("Order cannot be processed due to stock unavailability "
                        "or the items have been purchased by other customers")


class PromoCheck(Struct):
    promo_id: str
    product_id: str
    requested_qty: int
    current_daily_usage: int
    max_promo_qty: int
    new_total_qty: int
    is_within_limit: bool


class Decision(Struct):
    status: OrderStatus
    event: str
    reason: str | None = None
    details: dict = {}


def stock_issue(line: LineVerdict) -> str:
    name = f" ({line.product_name})" if line.product_name else ""
    if line.reason == REASON_NOT_FOUND:
        return f"Product {line.product_id} is not available"
    if line.reason == REASON_INACTIVE:
        return f"Product {line.product_id}{name} is currently unavailable"
    if line.reason == REASON_INSUFFICIENT_STOCK:
        return (f"Product {line.product_id}{name} is out of stock "
                f"(requested: {line.requested_qty}, available: {line.available_qty})")
    return f"Product {line.product_id}{name} cannot be ordered ({line.reason})"


def stock_rejection_reason(verdict: ValidationVerdict) -> str:
    issues = [stock_issue(line) for line in verdict.validation_details if not line.is_valid]
    if not issues:
        return GENERIC_STOCK_REASON
    return f"Order cannot be processed: {', '.join(issues)}"


def promo_lines(verdict: ValidationVerdict) -> list[LineVerdict]:
    return [line for line in verdict.validation_details if line.has_promo and line.promo_id is not None]


def check_promo_limits(verdict: ValidationVerdict, usage: dict[str, int]) -> list[PromoCheck]:
    """
    Compare every promo line against its daily ceiling.

    ``usage`` maps promo id to the quantity the owner already consumed today.
    Lines sharing a promotion count against the same ceiling, in line order.
    """
    consumed = dict(usage)
    checks = []
    for line in promo_lines(verdict):
        used = consumed.get(line.promo_id, 0)
        ceiling = line.max_promo_qty or 0
        new_total = used + line.requested_qty
        checks.append(PromoCheck(
            promo_id=line.promo_id,
            product_id=line.product_id,
            requested_qty=line.requested_qty,
            current_daily_usage=used,
            max_promo_qty=ceiling,
            new_total_qty=new_total,
            is_within_limit=new_total <= ceiling,
        ))
        consumed[line.promo_id] = new_total
    return checks


def promo_rejection_reason(checks: list[PromoCheck]) -> str:
    issues = [
        f"Promo {check.promo_id} on product {check.product_id} limit exceeded "
        f"(requested: {check.requested_qty}, daily limit: {check.max_promo_qty}, "
        f"already used: {check.current_daily_usage})"
        for check in checks if not check.is_within_limit
    ]
    return ("Order cannot be processed: You have exceeded the daily promotional item limits. "
            + ", ".join(issues))


def decide(verdict: ValidationVerdict, promo_usage: dict[str, int] | None = None) -> Decision:
    if verdict.error:
        return Decision(
            status=OrderStatus.FAILED,
            event=EVENT_ORDER_UPDATED,
            reason=f"Order processing failed: stock validation error ({verdict.error})",
        )

    if not verdict.is_stock_valid:
        return Decision(
            status=OrderStatus.CANCELLED,
            event=EVENT_ORDER_CANCELLED,
            reason=stock_rejection_reason(verdict),
            details={"stock_validation_details": msgspec.to_builtins(verdict.validation_details)},
        )

    if verdict.has_promo_items:
        checks = check_promo_limits(verdict, promo_usage or {})
        if not all(check.is_within_limit for check in checks):
            return Decision(
                status=OrderStatus.CANCELLED,
                event=EVENT_ORDER_CANCELLED,
                reason=promo_rejection_reason(checks),
                details={"promo_validation_details": msgspec.to_builtins(checks)},
            )

    return Decision(
        status=OrderStatus.READY_FOR_PAYMENT,
        event=EVENT_ORDER_READY_FOR_PAYMENT,
        details={"message": READY_MESSAGE},
    )
