import msgspec
from quart import jsonify, request

from common.errors import OrderSagaError, ValidationError, error_body, status_code_of
from stock.app_instance import app
from stock.stock_logic import CreateProductRequest, CreatePromotionRequest, InventoryLogic

logic: InventoryLogic | None = None
health_probe = None


def init(inventory_logic=None, probe=None):
    global logic, health_probe
    logic = inventory_logic
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


@app.post('/products')
async def create_product():
    body, err = await decode_body(CreateProductRequest)
    if err:
        return error(err)

    product, err = await logic.create_product(body)
    if err:
        return error(err)

    return jsonify({"success": True, "data": msgspec.to_builtins(product)}), 201


@app.get('/products/<product_id>')
async def get_product(product_id: str):
    product, err = await logic.get_product(product_id)
    if err:
        return error(err)

    return jsonify({"success": True, "data": msgspec.to_builtins(product)})


@app.post('/products/<product_id>/stock/<int:amount>')
async def add_stock(product_id: str, amount: int):
    qty, err = await logic.add_stock(product_id, amount)
    if err:
        return error(err)

    return jsonify({
        "success": True,
        "message": f"Product: {product_id} stock updated to: {qty}",
        "data": {"product_id": product_id, "qty": qty},
    })


@app.post('/promotions')
async def create_promotion():
    body, err = await decode_body(CreatePromotionRequest)
    if err:
        return error(err)

    promotion, err = await logic.create_promotion(body)
    if err:
        return error(err)

    return jsonify({"success": True, "data": msgspec.to_builtins(promotion)}), 201


@app.get('/promotions/<promo_id>')
async def get_promotion(promo_id: str):
    promotion, err = await logic.get_promotion(promo_id)
    if err:
        return error(err)

    return jsonify({"success": True, "data": msgspec.to_builtins(promotion)})


@app.get('/health')
async def health():
    status, healthy = await health_probe() if health_probe else ({"service": "stock-service"}, True)
    return jsonify(status), 200 if healthy else 503
