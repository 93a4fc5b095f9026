"""AdminService implementation."""

from servforge.errors import NotFound


def register(hooks, model):
    products = model.resolve("Products")

    @hooks.on("stockLevel")
    async def stock_level(ctx):
        rows = await ctx.tx.read(products, {"ID": ctx.input["product"]})
        if not rows:
            raise NotFound(f"Product {ctx.input['product']} not found", target="product")
        return rows[0]["stock"]
