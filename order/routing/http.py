import msgspec
from quart import jsonify, request

from common.errors import OrderSagaError, ValidationError, error_body, status_code_of
from order.app_instance import app
from order.order_logic import CreateOrderRequest, OrderLogic, UpdateStatusRequest
from order.saga.orchestrator import SagaOrchestrator
from order.saga.state_machine import parse_status

logic: OrderLogic | None = None
orchestrator: SagaOrchestrator | None = None
health_probe = None


def init(order_logic=None, saga=None, probe=None):
    global logic, orchestrator, health_probe
    logic = order_logic
    orchestrator = saga
    health_probe = probe


def error(err: Exception):
    return jsonify(error_body(err)), status_code_of(err)


async def decode_body(type_):
    try:
        return msgspec.json.decode(await request.get_data(), type=type_), None
    except (msgspec.ValidationError, msgspec.DecodeError) as e:
        return None, ValidationError(f"Invalid request body: {e}")


@app.errorhandler(OrderSagaError)
async def handle_order_saga_error(err: OrderSagaError):
    app.logger.warning(f"Request failed: {err.message}")
    return error(err)


@app.post('/orders')
async def create_order():
    body, err = await decode_body(CreateOrderRequest)
    if err:
        return error(err)

    order, err = await logic.create_order(body.username, body.items, body.total_price)
    if err:
        return error(err)

    return jsonify({
        "success": True,
        "message": "Order created successfully, validating stock",
        "data": order.to_dict(),
    }), 201


@app.get('/orders/<order_id>')
async def get_order(order_id: str):
    order, err = await logic.get_order(order_id)
    if err:
        return error(err)

    return jsonify({"success": True, "data": order.to_dict()})


@app.get('/orders/user/<username>')
async def get_orders_by_username(username: str):
    orders, err = await logic.get_orders_by_username(username)
    if err:
        return error(err)

    return jsonify({"success": True, "data": [order.to_dict() for order in orders]})


@app.get('/orders')
async def list_orders():
    status = request.args.get("status")
    username = request.args.get("username")
    page = request.args.get("page", 1, type=int)
    limit = request.args.get("limit", 10, type=int)
    if status:
        try:
            status = parse_status(status)
        except ValidationError as e:
            return error(e)

    orders, err = await logic.list_orders(status or None, username, page, limit)
    if err:
        return error(err)

    return jsonify({
        "success": True,
        "data": [order.to_dict() for order in orders],
        "page": page,
        "limit": limit,
    })


@app.put('/orders/<order_id>/status')
async def update_order_status(order_id: str):
    body, err = await decode_body(UpdateStatusRequest)
    if err:
        return error(err)

    order, err = await orchestrator.override_status(order_id, body.status)
    if err:
        return error(err)

    return jsonify({
        "success": True,
        "message": f"Order status updated to {order.status}",
        "data": order.to_dict(),
    })


@app.post('/orders/<order_id>/complete-payment')
async def complete_payment(order_id: str):
    order, err = await orchestrator.complete_payment(order_id)
    if err:
        return error(err)

    return jsonify({
        "success": True,
        "message": "Payment completed",
        "data": order.to_dict(),
    })


@app.get('/health')
async def health():
    status, healthy = await health_probe() if health_probe else ({"service": "order-service"}, True)
    return jsonify(status), 200 if healthy else 503
