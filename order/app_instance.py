from quart import Quart

app = Quart("order-service")
