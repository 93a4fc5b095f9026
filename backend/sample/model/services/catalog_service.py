"""CatalogService implementation."""

import uuid
from datetime import datetime, timezone

from servforge.errors import NotFound

DISCOUNT_STOCK = 111


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def register(hooks, model):
    products = model.resolve("Products")
    orders = model.resolve("Orders")
    order_items = model.resolve("OrderItems")

    @hooks.before("CREATE", "Orders")
    async def stamp_order_date(ctx):
        ctx.input["orderDate"] = _now()

    @hooks.after("READ", "Products")
    async def flag_discounts(ctx):
        records = ctx.result if isinstance(ctx.result, list) else [ctx.result]
        for record in records:
            if (record.get("stock") or 0) > DISCOUNT_STOCK:
                record["title"] = f"{record['title']} -- 11% discount!"
        return ctx.result

    @hooks.on("placeOrder")
    async def place_order(ctx):
        return {"message": "Order Placed Successfully"}

    @hooks.before("orderBook")
    async def check_quantity(ctx):
        if ctx.input.get("quantity") is None:
            ctx.input["quantity"] = 1
        elif ctx.input["quantity"] < 1:
            ctx.reject("ValidationError", "quantity must be at least 1", target="quantity")

    @hooks.on("orderBook")
    async def order_book(ctx):
        quantity = ctx.input["quantity"]
        rows = await ctx.tx.read(products, {"ID": ctx.input["product"]})
        if not rows:
            raise NotFound(f"Product {ctx.input['product']} not found", target="product")

        product = rows[0]
        if (product["stock"] or 0) < quantity:
            ctx.reject("OUT_OF_STOCK", f"{quantity} exceeds stock for product {product['ID']}", "quantity")
            return None

        await ctx.tx.update(products, {"ID": product["ID"]}, {"stock": product["stock"] - quantity})

        order_id = str(uuid.uuid4())
        await ctx.tx.insert(orders, {"ID": order_id, "orderDate": _now()})
        await ctx.tx.insert(
            order_items,
            {
                "ID": str(uuid.uuid4()),
                "order_ID": order_id,
                "product_ID": product["ID"],
                "quantity": quantity,
            },
        )
        return {"orderId": order_id}
