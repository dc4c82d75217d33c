from quart import Quart

app = Quart("stock-service")
