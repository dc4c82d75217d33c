# ------------------------------------------
# Order lifecycle events (exchange: order.events, routing key: order.<eventType>)
# ------------------------------------------
EVENT_ORDER_CREATED             = "created"                  # Order persisted as pending, triggers stock validation
EVENT_ORDER_UPDATED             = "updated"                  # Any other status change (manual override, failed)
EVENT_ORDER_COMPLETED           = "completed"                # Payment captured, triggers stock deduction
EVENT_ORDER_CANCELLED           = "cancelled"                # Stock or promo-limit rejection
EVENT_ORDER_READY_FOR_PAYMENT   = "ready_for_payment"        # Validation passed, payment may be submitted

ORDER_EVENT_TYPES = (
    EVENT_ORDER_CREATED,
    EVENT_ORDER_UPDATED,
    EVENT_ORDER_COMPLETED,
    EVENT_ORDER_CANCELLED,
    EVENT_ORDER_READY_FOR_PAYMENT,
)

# ------------------------------------------
# Stock validation events (exchange: stock.events, routing key: stock.<eventType>)
# ------------------------------------------
EVENT_STOCK_VALIDATION_RESPONSE = "validation.response"      # Inventory verdict for one order

# ------------------------------------------
# Line verdict reason codes
# ------------------------------------------
REASON_OK                       = "ok"
REASON_NOT_FOUND                = "not_found"
REASON_INACTIVE                 = "inactive"
REASON_INSUFFICIENT_STOCK       = "insufficient_stock"
