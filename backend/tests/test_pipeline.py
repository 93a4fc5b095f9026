"""Tests for the request pipeline, run against the sample catalog model."""

import asyncio
from pathlib import Path

import pytest
from unittest.mock import AsyncMock

from servforge.auth.types import Principal
from servforge.errors import TransactionClosed, ValidationError
from servforge.metadata.loader import ModelLoader
from servforge.persistence.transactions import TxState
from servforge.runtime import PipelineState, Request, build_runtime

SAMPLE_MODEL = Path(__file__).parent.parent / "sample" / "model"

ADMIN = Principal(id="alice", roles=frozenset({"admin"}))


# =============================================================================
# Fixtures
# =============================================================================


def make_runtime(register=None, load_impls=True):
    registrations = {"CatalogService": register} if register else None
    return build_runtime(
        ModelLoader(SAMPLE_MODEL).build_registry(),
        registrations=registrations,
        load_impls=load_impls,
    )


@pytest.fixture
def runtime():
    runtime = make_runtime()
    yield runtime
    runtime.close()


async def call(runtime, target, event=None, service="CatalogService", **kwargs):
    return await runtime.handle(Request(service=service, target=target, event=event, **kwargs))


async def seed_products(runtime, *rows):
    products = runtime.model.resolve("Products")
    tx = await runtime.transactions.open()
    for row in rows:
        await tx.insert(products, {"currency": "EUR", **row})
    await tx.commit()


async def stored(runtime, entity_name, filter=None):
    """Committed rows, read past the service layer."""
    tx = await runtime.transactions.open()
    rows = await tx.read(runtime.model.resolve(entity_name), filter)
    await tx.rollback()
    return rows


# =============================================================================
# Default CRUD
# =============================================================================


class TestDefaultCrud:
    @pytest.mark.asyncio
    async def test_create_then_read(self, runtime):
        created = await call(
            runtime, "Orders", "CREATE", data={"ID": "o1", "buyer": "alice", "items": []}
        )
        assert created.ok
        assert created.status == 201

        read = await call(runtime, "Orders", "READ", key={"ID": "o1"})
        assert read.ok
        assert read.result["buyer"] == "alice"
        assert read.result["ID"] == "o1"

    @pytest.mark.asyncio
    async def test_read_defaults_to_collection(self, runtime):
        await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        await call(runtime, "Orders", "CREATE", data={"ID": "o2"})
        response = await call(runtime, "Orders", orderby=["ID desc"], top=1)
        assert [r["ID"] for r in response.result] == ["o2"]

    @pytest.mark.asyncio
    async def test_read_missing_key(self, runtime):
        response = await call(runtime, "Orders", "READ", key="nope")
        assert response.error.kind == "NotFound"
        assert response.status == 404

    @pytest.mark.asyncio
    async def test_delete_missing_key(self, runtime):
        response = await call(runtime, "Orders", "DELETE", key={"ID": "nope"})
        assert response.error.kind == "NotFound"

    @pytest.mark.asyncio
    async def test_delete(self, runtime):
        await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        response = await call(runtime, "Orders", "DELETE", key="o1")
        assert response.status == 204
        assert response.result is None
        assert await stored(runtime, "Orders") == []

    @pytest.mark.asyncio
    async def test_duplicate_key(self, runtime):
        await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        response = await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        assert response.error.kind == "DuplicateKey"
        assert response.status == 409

    @pytest.mark.asyncio
    async def test_update(self, runtime):
        await call(runtime, "Orders", "CREATE", data={"ID": "o1", "buyer": "alice"})
        response = await call(runtime, "Orders", "UPDATE", key="o1", data={"buyer": "bob"})
        assert response.ok
        assert response.result["buyer"] == "bob"

    @pytest.mark.asyncio
    async def test_update_takes_key_from_data(self, runtime):
        await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        response = await call(runtime, "Orders", "UPDATE", data={"ID": "o1", "note": "rush"})
        assert response.result["note"] == "rush"

    @pytest.mark.asyncio
    async def test_update_cannot_change_key(self, runtime):
        await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        response = await call(runtime, "Orders", "UPDATE", key="o1", data={"ID": "o2"})
        assert response.error.kind == "ValidationError"
        assert response.error.target == "ID"

    @pytest.mark.asyncio
    async def test_unknown_member(self, runtime):
        response = await call(runtime, "Books")
        assert response.error.kind == "NotFound"

    @pytest.mark.asyncio
    async def test_unknown_service(self, runtime):
        response = await call(runtime, "Products", service="ShopService")
        assert response.error.kind == "NotFound"

    @pytest.mark.asyncio
    async def test_service_by_path(self, runtime):
        await seed_products(runtime, {"ID": "201", "title": "Wuthering Heights", "stock": 12})
        response = await call(runtime, "Products", service="/catalog")
        assert [r["ID"] for r in response.result] == ["201"]

    @pytest.mark.asyncio
    async def test_bad_value_rejected_before_transaction(self, runtime):
        response = await call(runtime, "Orders", "CREATE", data={"ID": "o1", "orderDate": "soon"})
        assert response.error.kind == "ValidationError"
        assert response.error.target == "orderDate"


# =============================================================================
# Compositions and projections
# =============================================================================


class TestDeepOperations:
    @pytest.mark.asyncio
    async def test_deep_insert_fills_join_fields(self, runtime):
        response = await call(
            runtime,
            "Orders",
            "CREATE",
            data={"ID": "o1", "items": [{"product_ID": "201", "quantity": 2}, {"product_ID": "207"}]},
        )
        items = response.result["items"]
        assert [i["order_ID"] for i in items] == ["o1", "o1"]
        assert [i["quantity"] for i in items] == [2, 1]
        assert all(len(i["ID"]) == 36 for i in items)
        assert len(await stored(runtime, "OrderItems")) == 2

    @pytest.mark.asyncio
    async def test_expand(self, runtime):
        await call(runtime, "Orders", "CREATE", data={"ID": "o1", "items": [{"product_ID": "201"}]})
        response = await call(runtime, "Orders", key="o1", expand=["items"])
        assert [i["product_ID"] for i in response.result["items"]] == ["201"]

    @pytest.mark.asyncio
    async def test_expand_association(self, runtime):
        await seed_products(runtime, {"ID": "201", "title": "Wuthering Heights", "stock": 12})
        await call(runtime, "Orders", "CREATE", data={"ID": "o1", "items": [{"product_ID": "201"}]})
        response = await call(runtime, "OrderItems", expand="product")
        assert response.result[0]["product"]["title"] == "Wuthering Heights"

    @pytest.mark.asyncio
    async def test_update_replaces_children(self, runtime):
        await call(runtime, "Orders", "CREATE", data={"ID": "o1", "items": [{"product_ID": "201"}]})
        response = await call(
            runtime, "Orders", "UPDATE", key="o1", data={"items": [{"product_ID": "207", "quantity": 3}]}
        )
        assert response.ok
        rows = await stored(runtime, "OrderItems", {"order_ID": "o1"})
        assert [(r["product_ID"], r["quantity"]) for r in rows] == [("207", 3)]

    @pytest.mark.asyncio
    async def test_update_child_missing_required(self, runtime):
        await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        response = await call(runtime, "Orders", "UPDATE", key="o1", data={"items": [{"quantity": 3}]})
        assert response.error.target == "items[0].product_ID"

    @pytest.mark.asyncio
    async def test_delete_cascades_to_compositions(self, runtime):
        await call(runtime, "Orders", "CREATE", data={"ID": "o1", "items": [{"product_ID": "201"}]})
        await call(runtime, "Orders", "DELETE", key="o1")
        assert await stored(runtime, "OrderItems") == []

    @pytest.mark.asyncio
    async def test_not_insertable(self, runtime):
        response = await call(runtime, "OrderItems", "CREATE", data={"order_ID": "o1", "product_ID": "201"})
        assert response.error.kind == "OperationNotAllowed"
        assert response.status == 405

    @pytest.mark.asyncio
    async def test_readonly_projection(self, runtime):
        response = await call(runtime, "Products", "UPDATE", key="201", data={"stock": 1})
        assert response.error.kind == "OperationNotAllowed"

    @pytest.mark.asyncio
    async def test_columns_restrict_input_and_output(self, tmp_path):
        (tmp_path / "entities").mkdir()
        (tmp_path / "services").mkdir()
        (tmp_path / "entities" / "Books.yaml").write_text(
            "entity: Books\n"
            "fields:\n"
            "  - name: ID\n    key: true\n"
            "  - name: title\n"
            "  - name: cost\n    type: Decimal\n"
        )
        (tmp_path / "services" / "shop.yaml").write_text(
            "service: ShopService\n"
            "projections:\n"
            "  - as: Books\n    columns: [title]\n"
        )
        runtime = build_runtime(ModelLoader(tmp_path).build_registry())

        rejected = await call(
            runtime, "Books", "CREATE", service="ShopService", data={"ID": "b1", "cost": 3.5}
        )
        assert rejected.error.target == "cost"

        created = await call(
            runtime, "Books", "CREATE", service="ShopService", data={"ID": "b1", "title": "Emma"}
        )
        assert created.result == {"ID": "b1", "title": "Emma"}

        read = await call(runtime, "Books", service="ShopService")
        assert read.result == [{"ID": "b1", "title": "Emma"}]

    @pytest.mark.asyncio
    async def test_hooks_are_scoped_to_their_service(self, runtime):
        await seed_products(runtime, {"ID": "251", "title": "The Raven", "stock": 333})
        admin = await call(runtime, "Products", service="AdminService", principal=ADMIN)
        catalog = await call(runtime, "Products")
        assert set(catalog.result[0]) == {"ID", "title", "descr", "stock", "price", "currency"}
        assert admin.result[0]["title"] == "The Raven"
        assert catalog.result[0]["title"] == "The Raven -- 11% discount!"


# =============================================================================
# Hooks
# =============================================================================


class TestHooks:
    @pytest.mark.asyncio
    async def test_before_create_stamps_order_date(self, runtime):
        response = await call(runtime, "Orders", "CREATE", data={"ID": "o1", "items": []})
        assert response.status == 201
        assert response.result["orderDate"]
        assert response.result["items"] == []

    @pytest.mark.asyncio
    async def test_missing_required_without_hooks(self):
        runtime = make_runtime(load_impls=False)
        response = await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        assert response.error.kind == "ValidationError"
        assert response.error.target == "orderDate"

    @pytest.mark.asyncio
    async def test_before_hooks_run_in_order_and_see_mutations(self):
        order = []

        def register(hooks, model):
            @hooks.before("CREATE")
            async def wildcard(ctx):
                order.append("wildcard")
                ctx.input["note"] += ",wildcard"

            @hooks.before("CREATE", "Orders")
            async def first(ctx):
                order.append("first")
                assert ctx.input["orderDate"]
                ctx.input["note"] = "first"

            @hooks.before("CREATE", "Orders")
            async def second(ctx):
                order.append("second")
                ctx.input["note"] += ",second"

        runtime = make_runtime(register)
        response = await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        assert order == ["first", "second", "wildcard"]
        assert response.result["note"] == "first,second,wildcard"

    @pytest.mark.asyncio
    async def test_before_rejection_skips_on_and_rolls_back(self):
        on_create = AsyncMock(return_value={"ID": "o1"})

        def register(hooks, model):
            hooks.before("CREATE", "Orders", lambda ctx: ctx.reject("ValidationError", "closed"))
            hooks.on("CREATE", "Orders", on_create)

        runtime = make_runtime(register)
        response = await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        assert response.error.message == "closed"
        on_create.assert_not_awaited()
        assert await stored(runtime, "Orders") == []

    @pytest.mark.asyncio
    async def test_not_allowed_runs_no_hooks(self):
        before = AsyncMock()

        def register(hooks, model):
            hooks.before("CREATE", "OrderItems", before)

        runtime = make_runtime(register)
        response = await call(runtime, "OrderItems", "CREATE", data={"order_ID": "o1"})
        assert response.error.kind == "OperationNotAllowed"
        assert before.await_count == 0

    @pytest.mark.asyncio
    async def test_on_handler_replaces_default(self):
        def register(hooks, model):
            @hooks.on("READ", "Orders")
            async def count_orders(ctx):
                rows = await ctx.run_default()
                return {"count": len(rows)}

        runtime = make_runtime(register)
        await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        response = await call(runtime, "Orders")
        assert response.result == {"count": 1}

    @pytest.mark.asyncio
    async def test_after_read_transforms_result(self, runtime):
        await seed_products(
            runtime,
            {"ID": "201", "title": "Wuthering Heights", "stock": 12},
            {"ID": "251", "title": "The Raven", "stock": 333},
        )
        response = await call(runtime, "Products", orderby=["ID"])
        assert [r["title"] for r in response.result] == [
            "Wuthering Heights",
            "The Raven -- 11% discount!",
        ]

    @pytest.mark.asyncio
    async def test_after_read_runs_on_empty_result(self, runtime):
        response = await call(runtime, "Products")
        assert response.ok
        assert response.result == []

    @pytest.mark.asyncio
    async def test_after_error_rolls_back(self):
        def register(hooks, model):
            @hooks.after("CREATE", "Orders")
            async def fail(ctx):
                raise ValidationError("too late", target="ID")

        runtime = make_runtime(register)
        response = await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        assert response.error.message == "too late"
        assert await stored(runtime, "Orders") == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_internal_error(self):
        def register(hooks, model):
            @hooks.before("CREATE", "Orders")
            async def broken(ctx):
                raise RuntimeError("boom")

        runtime = make_runtime(register)
        response = await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        assert response.error.kind == "InternalError"
        assert response.status == 500
        assert await stored(runtime, "Orders") == []

    @pytest.mark.asyncio
    async def test_fatal_error_propagates_after_rollback(self):
        def register(hooks, model):
            @hooks.on("CREATE", "Orders")
            async def misuse(ctx):
                await ctx.tx.insert(model.resolve("Orders"), dict(ctx.input))
                raise TransactionClosed("handler closed the transaction")

        runtime = make_runtime(register)
        with pytest.raises(TransactionClosed):
            await call(runtime, "Orders", "CREATE", data={"ID": "o1"})
        assert await stored(runtime, "Orders") == []

    @pytest.mark.asyncio
    async def test_states_seen_by_hooks(self):
        states = []

        def register(hooks, model):
            for phase in (hooks.before, hooks.on, hooks.after):
                phase("READ", "Orders", lambda ctx: states.append(ctx.state))

        runtime = make_runtime(register)
        await call(runtime, "Orders")
        assert states == [
            PipelineState.BEFORE_HOOKS,
            PipelineState.EXECUTING,
            PipelineState.AFTER_HOOKS,
        ]


# =============================================================================
# Custom operations
# =============================================================================


class TestCustomOperations:
    @pytest.mark.asyncio
    async def test_place_order(self, runtime):
        response = await call(runtime, "placeOrder")
        assert response.result == {"message": "Order Placed Successfully"}
        assert response.status == 200

    @pytest.mark.asyncio
    async def test_order_book(self, runtime):
        await seed_products(runtime, {"ID": "201", "title": "Wuthering Heights", "stock": 12})
        runtime.pipeline.run_default = AsyncMock()

        response = await call(runtime, "orderBook", data={"product": "201", "quantity": 2})

        assert set(response.result) == {"orderId"}
        runtime.pipeline.run_default.assert_not_awaited()
        assert (await stored(runtime, "Products"))[0]["stock"] == 10
        items = await stored(runtime, "OrderItems", {"order_ID": response.result["orderId"]})
        assert [(i["product_ID"], i["quantity"]) for i in items] == [("201", 2)]

    @pytest.mark.asyncio
    async def test_order_book_default_quantity(self, runtime):
        await seed_products(runtime, {"ID": "201", "title": "Wuthering Heights", "stock": 12})
        response = await call(runtime, "orderBook", data={"product": "201"})
        assert response.ok
        assert (await stored(runtime, "Products"))[0]["stock"] == 11

    @pytest.mark.asyncio
    async def test_order_book_out_of_stock(self, runtime):
        await seed_products(runtime, {"ID": "201", "title": "Wuthering Heights", "stock": 1})
        response = await call(runtime, "orderBook", data={"product": "201", "quantity": 5})
        assert response.error.kind == "OUT_OF_STOCK"
        assert response.status == 400
        assert (await stored(runtime, "Products"))[0]["stock"] == 1
        assert await stored(runtime, "Orders") == []

    @pytest.mark.asyncio
    async def test_order_book_bad_quantity(self, runtime):
        response = await call(runtime, "orderBook", data={"product": "201", "quantity": 0})
        assert response.error.kind == "ValidationError"
        assert response.error.target == "quantity"

    @pytest.mark.asyncio
    async def test_order_book_missing_product(self, runtime):
        response = await call(runtime, "orderBook", data={"quantity": 1})
        assert response.error.target == "product"

    @pytest.mark.asyncio
    async def test_unknown_parameter(self, runtime):
        response = await call(runtime, "placeOrder", data={"coupon": "X"})
        assert response.error.kind == "ValidationError"

    @pytest.mark.asyncio
    async def test_no_handler_is_unimplemented(self):
        runtime = make_runtime(load_impls=False)
        response = await call(runtime, "placeOrder")
        assert response.error.kind == "Unimplemented"
        assert response.status == 501

    def test_no_handler_warnings(self):
        runtime = make_runtime(load_impls=False)
        assert sorted(runtime.warnings) == [
            "NoHandler: AdminService.stockLevel has no 'on' handler",
            "NoHandler: CatalogService.orderBook has no 'on' handler",
            "NoHandler: CatalogService.placeOrder has no 'on' handler",
        ]

    def test_sample_has_no_warnings(self, runtime):
        assert runtime.warnings == []

    @pytest.mark.asyncio
    async def test_forbidden(self, runtime):
        response = await call(runtime, "stockLevel", service="AdminService", data={"product": "201"})
        assert response.error.kind == "Forbidden"
        assert response.status == 403

    @pytest.mark.asyncio
    async def test_function_with_role(self, runtime):
        await seed_products(runtime, {"ID": "201", "title": "Wuthering Heights", "stock": 12})
        response = await call(
            runtime, "stockLevel", service="AdminService", data={"product": "201"}, principal=ADMIN
        )
        assert response.result == 12

    @pytest.mark.asyncio
    async def test_result_outside_return_fields_rolls_back(self):
        def register(hooks, model):
            @hooks.on("placeOrder")
            async def place_order(ctx):
                await ctx.tx.insert(
                    model.resolve("Orders"), {"ID": "o1", "orderDate": "2024-01-01T00:00:00"}
                )
                return {"msg": "placed"}

        runtime = make_runtime(register, load_impls=False)
        response = await call(runtime, "placeOrder")
        assert response.error.kind == "InternalError"
        assert response.error.target == "placeOrder.msg"
        assert response.status == 500
        assert await stored(runtime, "Orders") == []

    @pytest.mark.asyncio
    async def test_list_result_for_single_shape(self):
        def register(hooks, model):
            hooks.on("placeOrder", handler=AsyncMock(return_value=[1, 2, "x"]))

        runtime = make_runtime(register, load_impls=False)
        response = await call(runtime, "placeOrder")
        assert response.error.kind == "InternalError"
        assert response.result is None

    @pytest.mark.asyncio
    async def test_scalar_result_is_coerced(self):
        def register(hooks, model):
            hooks.on("stockLevel", handler=AsyncMock(return_value="12"))

        runtime = build_runtime(
            ModelLoader(SAMPLE_MODEL).build_registry(),
            registrations={"AdminService": register},
            load_impls=False,
        )
        response = await call(
            runtime, "stockLevel", service="AdminService", data={"product": "201"}, principal=ADMIN
        )
        assert response.result == 12

    @pytest.mark.asyncio
    async def test_scalar_result_of_wrong_type(self):
        def register(hooks, model):
            hooks.on("stockLevel", handler=AsyncMock(return_value="plenty"))

        runtime = build_runtime(
            ModelLoader(SAMPLE_MODEL).build_registry(),
            registrations={"AdminService": register},
            load_impls=False,
        )
        response = await call(
            runtime, "stockLevel", service="AdminService", data={"product": "201"}, principal=ADMIN
        )
        assert response.error.kind == "InternalError"

    @pytest.mark.asyncio
    async def test_entity_result(self, tmp_path):
        (tmp_path / "entities").mkdir()
        (tmp_path / "services").mkdir()
        (tmp_path / "entities" / "Books.yaml").write_text(
            "entity: Books\n"
            "fields:\n"
            "  - name: ID\n    key: true\n"
            "  - name: stock\n    type: Integer\n"
        )
        (tmp_path / "services" / "shop.yaml").write_text(
            "service: ShopService\n"
            "functions:\n"
            "  - name: topBooks\n"
            "    returns:\n      entity: Books\n      many: true\n"
        )
        results = [[{"ID": "b1", "stock": "3"}], {"ID": "b1"}, [1, 2, "x"]]

        def register(hooks, model):
            @hooks.on("topBooks")
            async def top_books(ctx):
                return results.pop(0)

        runtime = build_runtime(
            ModelLoader(tmp_path).build_registry(), registrations={"ShopService": register}
        )

        ok = await call(runtime, "topBooks", service="ShopService")
        assert ok.result == [{"ID": "b1", "stock": 3}]

        not_a_list = await call(runtime, "topBooks", service="ShopService")
        assert not_a_list.error.kind == "InternalError"

        not_records = await call(runtime, "topBooks", service="ShopService")
        assert not_records.error.kind == "InternalError"
        assert not_records.error.target == "topBooks[0]"


# =============================================================================
# Concurrency
# =============================================================================


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_requests_are_isolated(self, runtime):
        responses = await asyncio.gather(
            *(call(runtime, "Orders", "CREATE", data={"ID": f"o{i}"}) for i in range(5))
        )
        assert all(r.status == 201 for r in responses)
        assert len({r.request_id for r in responses}) == 5
        assert len(await stored(runtime, "Orders")) == 5

    @pytest.mark.asyncio
    async def test_failing_request_does_not_affect_others(self, runtime):
        ok, failed = await asyncio.gather(
            call(runtime, "Orders", "CREATE", data={"ID": "o1"}),
            call(runtime, "Orders", "DELETE", key="missing"),
        )
        assert ok.ok
        assert failed.error.kind == "NotFound"
        assert [r["ID"] for r in await stored(runtime, "Orders")] == ["o1"]

    @pytest.mark.asyncio
    async def test_conflicting_updates_fail_commit(self):
        transactions = {}

        def register(hooks, model):
            @hooks.after("UPDATE", "Orders")
            async def hold_open(ctx):
                transactions[ctx.input["note"]] = ctx.tx
                await asyncio.sleep(0.01)

        runtime = make_runtime(register)
        await call(runtime, "Orders", "CREATE", data={"ID": "o1", "note": "new"})

        first, second = await asyncio.gather(
            call(runtime, "Orders", "UPDATE", key="o1", data={"note": "a"}),
            call(runtime, "Orders", "UPDATE", key="o1", data={"note": "b"}),
        )

        assert sorted([first.status, second.status]) == [200, 409]
        winner, loser = (first, second) if first.ok else (second, first)
        assert loser.error.kind == "CommitFailed"

        won = winner.result["note"]
        lost = "b" if won == "a" else "a"
        assert (await stored(runtime, "Orders"))[0]["note"] == won
        assert transactions[won].state == TxState.COMMITTED
        assert transactions[lost].state == TxState.ROLLED_BACK
