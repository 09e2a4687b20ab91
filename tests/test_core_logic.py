"""Unit tests verifying the business logic layer against an in-memory store."""

from __future__ import annotations

from dataclasses import replace
from unittest.mock import Mock

import bcrypt
import pytest

from shop_ledger import constants, core_logic, data_manager

from conftest import OWNER_EMAIL, OWNER_PASSWORD


def _add(context, *, name="Kopi Susu", price=10000, stock=50, category="Drinks", is_hidden=False):
    return core_logic.add_product(
        context, name=name, price=price, stock=stock, category=category, is_hidden=is_hidden
    )


def _stock(context, product_id):
    return core_logic.get_product(context, product_id).stock


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path, settings):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=settings)
    load_store = Mock(return_value=data_manager.StoreSnapshot(workbook=workbook, fingerprint="f1"))

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "load_store", load_store)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is settings
    assert context.workbook is workbook
    assert context.session is None
    assert context.revision.fingerprint == "f1"
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    load_store.assert_called_once_with(settings.data_file, timeout=settings.operation_timeout)


def test_load_runtime_context_reports_timeouts_as_retryable(monkeypatch, config_file):
    """A workbook load that times out should surface a retryable RemoteFailure."""

    monkeypatch.setattr(
        data_manager, "load_store", Mock(side_effect=data_manager.StoreTimeout("slow disk"))
    )

    with pytest.raises(core_logic.RemoteFailure) as excinfo:
        core_logic.load_runtime_context(config_file)

    assert excinfo.value.retryable is True


def test_load_runtime_context_keeps_missing_file_errors(monkeypatch, config_file):
    monkeypatch.setattr(data_manager, "load_store", Mock(side_effect=FileNotFoundError("gone")))

    with pytest.raises(FileNotFoundError):
        core_logic.load_runtime_context(config_file)


def test_persist_context_wraps_os_errors(monkeypatch, context):
    monkeypatch.setattr(data_manager, "save_workbook", Mock(side_effect=PermissionError("locked")))

    with pytest.raises(core_logic.RemoteFailure) as excinfo:
        core_logic.persist_context(context)

    assert excinfo.value.retryable is False


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_context = replace(context, settings=replace(context.settings, schema_version="0.9"))
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_mutations_checkpoint_when_autosave_is_on(monkeypatch, context):
    persist = Mock(name="persist_context")
    monkeypatch.setattr(core_logic, "persist_context", persist)
    autosaving = replace(context, settings=replace(context.settings, autosave=True))

    _add(autosaving)

    persist.assert_called_once_with(autosaving)


def test_mutations_skip_checkpoint_when_autosave_is_off(monkeypatch, context):
    persist = Mock(name="persist_context")
    monkeypatch.setattr(core_logic, "persist_context", persist)

    _add(context)

    persist.assert_not_called()


def test_failed_autosave_blocks_further_writes(monkeypatch, context):
    """After an autosave fails the workbook holds unsaved changes and must be reloaded."""

    autosaving = replace(context, settings=replace(context.settings, autosave=True))
    monkeypatch.setattr(
        data_manager, "save_workbook", Mock(side_effect=data_manager.StoreTimeout("slow disk"))
    )

    with pytest.raises(core_logic.RemoteFailure) as excinfo:
        _add(autosaving)
    assert excinfo.value.retryable is True
    assert autosaving.revision.stale is True

    monkeypatch.undo()
    with pytest.raises(core_logic.StaleStore):
        _add(autosaving, name="Teh")


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def test_sign_in_returns_context_with_session(anonymous_context):
    signed_in = core_logic.sign_in(anonymous_context, OWNER_EMAIL, OWNER_PASSWORD)

    assert signed_in.session is not None
    assert signed_in.session.email == OWNER_EMAIL
    assert anonymous_context.session is None
    assert signed_in.workbook is anonymous_context.workbook


def test_sign_in_ignores_email_case(anonymous_context):
    signed_in = core_logic.sign_in(anonymous_context, "  Owner@Example.COM ", OWNER_PASSWORD)
    assert signed_in.session.email == OWNER_EMAIL


@pytest.mark.parametrize(
    ("email", "password"),
    [
        (OWNER_EMAIL, "wrong password"),
        ("someone@example.com", OWNER_PASSWORD),
        (OWNER_EMAIL, ""),
    ],
)
def test_sign_in_rejects_bad_credentials(anonymous_context, email, password):
    with pytest.raises(core_logic.AuthenticationError):
        core_logic.sign_in(anonymous_context, email, password)


def test_sign_in_without_configured_owner(anonymous_context):
    unconfigured = replace(
        anonymous_context,
        settings=replace(anonymous_context.settings, owner_email=None, password_hash=None),
    )
    with pytest.raises(core_logic.AuthenticationError):
        core_logic.sign_in(unconfigured, OWNER_EMAIL, OWNER_PASSWORD)


def test_sign_in_with_malformed_hash(anonymous_context):
    broken = replace(anonymous_context, settings=replace(anonymous_context.settings, password_hash="not-a-hash"))
    with pytest.raises(core_logic.AuthenticationError):
        core_logic.sign_in(broken, OWNER_EMAIL, OWNER_PASSWORD)


def test_sign_out_drops_session(context):
    assert core_logic.sign_out(context).session is None


def test_hash_password_produces_verifiable_hash():
    hashed = core_logic.hash_password("hunter2")
    assert bcrypt.checkpw(b"hunter2", hashed.encode("utf-8"))

    with pytest.raises(core_logic.ValidationError):
        core_logic.hash_password("")


@pytest.mark.parametrize(
    "operation",
    [
        lambda ctx: core_logic.add_product(ctx, name="X", price=1, stock=1),
        lambda ctx: core_logic.edit_product(ctx, "P1", name="Y"),
        lambda ctx: core_logic.add_stock(ctx, "P1", 1),
        lambda ctx: core_logic.set_product_visibility(ctx, "P1", hidden=True),
        lambda ctx: core_logic.delete_product(ctx, "P1"),
        lambda ctx: core_logic.purge_product(ctx, "P1"),
        lambda ctx: core_logic.record_sale(ctx, "P1", 1),
        lambda ctx: core_logic.reverse_sale(ctx, "S1"),
        lambda ctx: core_logic.list_sales(ctx),
        lambda ctx: core_logic.update_sale_details(ctx, "S1", buyer_name="x"),
        lambda ctx: core_logic.backfill_sale_prices(ctx),
        lambda ctx: core_logic.audit_stock(ctx),
        lambda ctx: core_logic.repair_stock(ctx),
    ],
)
def test_gated_operations_require_session(anonymous_context, operation):
    with pytest.raises(core_logic.AuthenticationError):
        operation(anonymous_context)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def test_add_product_normalizes_and_anchors_baseline(context):
    product = _add(context, name="  Kopi Susu ", category=" Drinks ", stock=20)

    assert product.name == "Kopi Susu"
    assert product.category == "drinks"
    assert product.stock_baseline == 20
    assert product.version == 1
    assert product.created_at is not None
    assert core_logic.display_category(product.category) == "Drinks"


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": "   "},
        {"price": -1},
        {"stock": -5},
        {"stock": 2.5},
        {"price": True},
    ],
)
def test_add_product_validates_input(context, overrides):
    with pytest.raises(core_logic.ValidationError):
        _add(context, **overrides)
    assert core_logic.list_products(context, include_hidden=True) == []


def test_list_products_hides_hidden_by_default(context):
    _add(context, name="Visible")
    _add(context, name="Secret", is_hidden=True)

    assert [p.name for p in core_logic.list_products(context)] == ["Visible"]
    assert [p.name for p in core_logic.list_products(context, include_hidden=True)] == ["Secret", "Visible"]


def test_public_price_list_needs_no_session(context, anonymous_context):
    _add(context, name="Kopi Susu", price=12000)
    _add(context, name="Kopi Hitam", price=8000)
    _add(context, name="Teh Manis", price=5000)
    _add(context, name="Kopi Rahasia", price=1, is_hidden=True)

    names = [p.name for p in core_logic.public_price_list(anonymous_context, keyword="KOPI", sort="asc")]
    assert names == ["Kopi Hitam", "Kopi Susu"]

    by_price = core_logic.public_price_list(anonymous_context, sort="desc")
    assert [p.price for p in by_price] == [12000, 8000, 5000]


def test_public_price_list_rejects_unknown_sort(anonymous_context):
    with pytest.raises(core_logic.ValidationError):
        core_logic.public_price_list(anonymous_context, sort="sideways")


def test_edit_product_updates_fields(context):
    product = _add(context)

    edited = core_logic.edit_product(context, product.product_id, name="Kopi Gula Aren", price=15000, category="Coffee")

    assert edited.name == "Kopi Gula Aren"
    assert edited.price == 15000
    assert edited.category == "coffee"
    assert edited.stock == product.stock


def test_edit_product_stock_reanchors_baseline(context):
    """A manual stock correction is trusted and leaves no drift behind."""

    product = _add(context, stock=10)
    core_logic.record_sale(context, product.product_id, 4)

    edited = core_logic.edit_product(context, product.product_id, stock=30)

    assert edited.stock == 30
    assert edited.stock_baseline == 34
    assert core_logic.audit_stock(context) == []


def test_edit_product_requires_changes(context):
    product = _add(context)
    with pytest.raises(core_logic.ValidationError):
        core_logic.edit_product(context, product.product_id)


def test_edit_unknown_product(context):
    with pytest.raises(core_logic.ProductNotFound):
        core_logic.edit_product(context, "P-missing", name="Ghost")


def test_add_stock_records_only_latest_addition(context):
    """lastStockAddedQty holds the most recent addition, not a running total."""

    product = _add(context, stock=5)

    core_logic.add_stock(context, product.product_id, 10)
    updated = core_logic.add_stock(context, product.product_id, 3)

    assert updated.stock == 18
    assert updated.stock_baseline == 18
    assert updated.last_stock_added_qty == 3
    assert updated.last_stock_added_at is not None


@pytest.mark.parametrize("qty", [0, -3, 1.5])
def test_add_stock_requires_positive_whole_quantity(context, qty):
    product = _add(context, stock=5)
    with pytest.raises(core_logic.ValidationError):
        core_logic.add_stock(context, product.product_id, qty)
    assert _stock(context, product.product_id) == 5


def test_toggle_product_visibility(context):
    product = _add(context)

    hidden = core_logic.toggle_product_visibility(context, product.product_id)
    shown = core_logic.toggle_product_visibility(context, product.product_id)

    assert hidden.is_hidden is True
    assert shown.is_hidden is False


def test_delete_product_keeps_sales(context):
    product = _add(context, stock=10)
    sale = core_logic.record_sale(context, product.product_id, 2)

    core_logic.delete_product(context, product.product_id)

    with pytest.raises(core_logic.ProductNotFound):
        core_logic.get_product(context, product.product_id)
    kept = core_logic.get_sale(context, sale.sale_id)
    assert kept.product_name == "Kopi Susu"
    assert kept.price == 10000


def test_purge_product_removes_its_sales(context):
    product = _add(context, stock=10)
    other = _add(context, name="Teh", stock=10)
    core_logic.record_sale(context, product.product_id, 1)
    core_logic.record_sale(context, product.product_id, 2)
    survivor = core_logic.record_sale(context, other.product_id, 1)

    removed = core_logic.purge_product(context, product.product_id)

    assert removed == 2
    assert [s.sale_id for s in core_logic.list_sales(context)] == [survivor.sale_id]


# ---------------------------------------------------------------------------
# Stock-consistency rule
# ---------------------------------------------------------------------------


def test_record_sale_decrements_stock_and_snapshots_product(context):
    """Stock 50 at 10000, sell 5: stock 45 and a sale carrying qty and price."""

    product = _add(context, stock=50, price=10000)
    buyer = core_logic.BuyerInfo(buyer_name=" Budi ", customer_type=constants.CustomerType.RESELLER)

    sale = core_logic.record_sale(context, product.product_id, 5, buyer)

    assert _stock(context, product.product_id) == 45
    assert sale.qty == 5
    assert sale.price == 10000
    assert sale.product_name == "Kopi Susu"
    assert sale.product_category == "drinks"
    assert sale.buyer_name == "Budi"
    assert sale.customer_type == "reseller"
    assert sale.sold_at is not None
    assert sale.qty * sale.price == 50000


def test_record_sale_rejects_insufficient_stock(context):
    """Stock 3, sell 5: nothing is written."""

    product = _add(context, stock=3)

    with pytest.raises(core_logic.InsufficientStock) as excinfo:
        core_logic.record_sale(context, product.product_id, 5)

    assert excinfo.value.requested == 5
    assert excinfo.value.available == 3
    assert _stock(context, product.product_id) == 3
    assert core_logic.list_sales(context) == []


def test_last_units_can_only_be_sold_once(context):
    product = _add(context, stock=2)

    core_logic.record_sale(context, product.product_id, 2)
    with pytest.raises(core_logic.InsufficientStock):
        core_logic.record_sale(context, product.product_id, 2)

    assert _stock(context, product.product_id) == 0
    assert len(core_logic.list_sales(context)) == 1


@pytest.mark.parametrize("qty", [0, -1, 2.0, "3", True])
def test_record_sale_validates_quantity(context, qty):
    product = _add(context, stock=5)
    with pytest.raises(core_logic.ValidationError):
        core_logic.record_sale(context, product.product_id, qty)
    assert _stock(context, product.product_id) == 5


def test_record_sale_rejects_hidden_product(context):
    product = _add(context, stock=5, is_hidden=True)
    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.record_sale(context, product.product_id, 1)
    assert _stock(context, product.product_id) == 5


def test_record_sale_unknown_product(context):
    with pytest.raises(core_logic.ProductNotFound):
        core_logic.record_sale(context, "P-missing", 1)


def test_record_sale_retries_after_concurrent_write(monkeypatch, context):
    """A writer sneaking in between read and write costs one retry, not the sale."""

    product = _add(context, stock=10)
    real_update = data_manager.update_product
    calls = {"count": 0}

    def racing_update(workbook, product_id, *, field_values, expected_version=None):
        calls["count"] += 1
        if calls["count"] == 1:
            # Another seller takes 3 units first.
            current = data_manager.find_product(workbook, product_id)
            real_update(workbook, product_id, field_values={"stock": current.stock - 3})
        return real_update(workbook, product_id, field_values=field_values, expected_version=expected_version)

    monkeypatch.setattr(data_manager, "update_product", racing_update)

    core_logic.record_sale(context, product.product_id, 5)

    assert calls["count"] == 2
    assert _stock(context, product.product_id) == 2


def test_record_sale_gives_up_after_max_retries(monkeypatch, context):
    product = _add(context, stock=10)
    conflict = Mock(side_effect=data_manager.VersionConflict(product.product_id, 1, 2))
    monkeypatch.setattr(data_manager, "update_product", conflict)

    with pytest.raises(core_logic.RemoteFailure) as excinfo:
        core_logic.record_sale(context, product.product_id, 1)

    assert excinfo.value.retryable is True
    assert conflict.call_count == context.settings.max_retries
    monkeypatch.undo()
    assert _stock(context, product.product_id) == 10
    assert core_logic.list_sales(context) == []


def test_record_sale_compensates_when_sale_insert_fails(monkeypatch, context):
    product = _add(context, stock=10)
    monkeypatch.setattr(
        data_manager, "insert_sale", Mock(side_effect=data_manager.StoreError("write rejected"))
    )

    with pytest.raises(core_logic.RemoteFailure):
        core_logic.record_sale(context, product.product_id, 4)

    assert _stock(context, product.product_id) == 10
    assert core_logic.list_sales(context) == []


def test_record_sale_does_not_compensate_programming_errors(monkeypatch, context):
    """Only store failures are rolled back; other errors surface unchanged."""

    product = _add(context, stock=10)
    compensate = Mock(name="_compensate_decrement")
    monkeypatch.setattr(data_manager, "insert_sale", Mock(side_effect=TypeError("bad snapshot")))
    monkeypatch.setattr(core_logic, "_compensate_decrement", compensate)

    with pytest.raises(TypeError):
        core_logic.record_sale(context, product.product_id, 4)

    compensate.assert_not_called()


def test_reverse_sale_restores_stock(context):
    product = _add(context, stock=10)
    sale = core_logic.record_sale(context, product.product_id, 4)

    core_logic.reverse_sale(context, sale.sale_id)

    assert _stock(context, product.product_id) == 10
    with pytest.raises(core_logic.SaleNotFound):
        core_logic.get_sale(context, sale.sale_id)


def test_reverse_sale_after_product_deletion(context):
    product = _add(context, stock=10)
    sale = core_logic.record_sale(context, product.product_id, 4)
    core_logic.delete_product(context, product.product_id)

    core_logic.reverse_sale(context, sale.sale_id)

    assert core_logic.list_sales(context) == []


def test_reverse_unknown_sale(context):
    with pytest.raises(core_logic.SaleNotFound):
        core_logic.reverse_sale(context, "S-missing")


def test_stock_equals_initial_minus_live_sales(context):
    """Any mix of sales and reversals leaves stock = initial - live quantities."""

    product = _add(context, stock=40)
    sales = [core_logic.record_sale(context, product.product_id, qty) for qty in (3, 7, 1, 5)]
    core_logic.reverse_sale(context, sales[1].sale_id)
    core_logic.reverse_sale(context, sales[3].sale_id)
    core_logic.record_sale(context, product.product_id, 2)

    live = sum(sale.qty for sale in core_logic.list_sales(context))
    assert live == 6
    assert _stock(context, product.product_id) == 40 - live
    assert core_logic.audit_stock(context) == []


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


def test_list_sales_filters(context):
    coffee = _add(context, name="Kopi", category="drinks")
    chips = _add(context, name="Keripik", category="snacks")
    reseller = core_logic.BuyerInfo(customer_type=constants.CustomerType.RESELLER)
    core_logic.record_sale(context, coffee.product_id, 1)
    wanted = core_logic.record_sale(context, chips.product_id, 1, reseller)
    core_logic.record_sale(context, coffee.product_id, 1, reseller)

    result = core_logic.list_sales(
        context, customer_type=constants.CustomerType.RESELLER, product_category="Snacks"
    )

    assert [s.sale_id for s in result] == [wanted.sale_id]


def test_update_sale_details(context):
    product = _add(context)
    sale = core_logic.record_sale(context, product.product_id, 1)

    updated = core_logic.update_sale_details(
        context,
        sale.sale_id,
        buyer_name=" Sari ",
        customer_type=constants.CustomerType.RETAIL,
        product_category="Hot Drinks",
    )

    assert updated.buyer_name == "Sari"
    assert updated.customer_type == "retail"
    assert updated.product_category == "hot drinks"
    assert updated.qty == 1


def test_update_sale_details_requires_changes(context):
    product = _add(context)
    sale = core_logic.record_sale(context, product.product_id, 1)
    with pytest.raises(core_logic.ValidationError):
        core_logic.update_sale_details(context, sale.sale_id)


def test_backfill_sale_prices(context, sale_factory):
    product = _add(context, price=7000)
    gone = _add(context, name="Gone", price=9000)
    legacy = data_manager.insert_sale(
        context.workbook, sale_factory(product_id=product.product_id, price=None)
    )
    orphan = data_manager.insert_sale(
        context.workbook, sale_factory(product_id=gone.product_id, price=None)
    )
    core_logic.delete_product(context, gone.product_id)

    assert core_logic.backfill_sale_prices(context) == 1
    assert core_logic.get_sale(context, legacy.sale_id).price == 7000
    assert core_logic.get_sale(context, orphan.sale_id).price is None


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------


def test_audit_and_repair_stock(context):
    product = _add(context, stock=20)
    core_logic.record_sale(context, product.product_id, 5)
    # Simulate a lost write.
    data_manager.update_product(context.workbook, product.product_id, field_values={"stock": 11})

    drifts = core_logic.audit_stock(context)
    assert [(d.product_id, d.recorded, d.expected, d.delta) for d in drifts] == [
        (product.product_id, 11, 15, -4)
    ]

    repaired = core_logic.repair_stock(context)

    assert repaired == drifts
    assert _stock(context, product.product_id) == 15
    assert core_logic.audit_stock(context) == []


def test_repair_stock_clamps_to_zero(context):
    product = _add(context, stock=5)
    core_logic.record_sale(context, product.product_id, 5)
    data_manager.update_product(context.workbook, product.product_id, field_values={"stockBaseline": 2})

    core_logic.repair_stock(context)

    repaired = core_logic.get_product(context, product.product_id)
    assert repaired.stock == 0
    assert repaired.stock_baseline == 5
    assert core_logic.audit_stock(context) == []


def test_repair_stock_limited_to_selected_products(context):
    first = _add(context, name="A", stock=5)
    second = _add(context, name="B", stock=5)
    for product in (first, second):
        data_manager.update_product(context.workbook, product.product_id, field_values={"stock": 1})

    core_logic.repair_stock(context, [second.product_id])

    assert _stock(context, first.product_id) == 1
    assert _stock(context, second.product_id) == 5
