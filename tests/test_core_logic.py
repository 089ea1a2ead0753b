"""Unit tests verifying the business logic layer."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from iml_ops import constants, core_logic, data_manager, migrations
from iml_ops.constants import StorageKey, UNKNOWN_COMPANY
from iml_ops.errors import (
    BusinessRuleViolation,
    ExceedsRemainingError,
    InvalidAmountError,
    InvalidDateRangeError,
    MissingNoteError,
    StaleWriteError,
)
from iml_ops.facets import FilterSpec
from iml_ops.ledger import PRODUCTION, PURCHASE_TRACKING
from iml_ops.models import Record


@pytest.fixture
def settings(tmp_path):
    return data_manager.ConfigSettings(
        data_file=tmp_path / "iml_store.xlsx",
        plant_name="Test Plant",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def context(settings):
    return core_logic.RuntimeContext(settings=settings, workbook=Mock(name="workbook"))


@pytest.fixture
def purchase_record() -> Record:
    return Record(record_id="E1", quantity_total=Decimal("10000"))


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "iml_store.xlsx",
        plant_name="Plant",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_persist_context_saves_to_data_file(monkeypatch, context):
    save_workbook = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save_workbook)

    core_logic.persist_context(context)

    save_workbook.assert_called_once_with(context.workbook, context.settings.data_file)


def test_refresh_context_drops_cache(monkeypatch, context):
    fresh = Mock(name="fresh")
    monkeypatch.setattr(data_manager, "refresh_workbook", Mock(return_value=fresh))
    context._cache["iml_orders"] = {"payload": []}

    refreshed = core_logic.refresh_context(context)

    assert refreshed.workbook is fresh
    assert refreshed._cache == {}


# ---------------------------------------------------------------------------
# Collections and caching
# ---------------------------------------------------------------------------


def test_collections_are_loaded_once_per_context(monkeypatch, context):
    """Repeated reads hit the cache instead of the workbook."""

    load = Mock(return_value=([{"id": "O1"}], 4))
    monkeypatch.setattr(migrations, "load_collection", load)

    assert core_logic.list_orders(context) == [{"id": "O1"}]
    assert core_logic.list_orders(context) == [{"id": "O1"}]
    load.assert_called_once_with(context.workbook, StorageKey.IML_ORDERS.value, default=[])


def test_get_order_unknown_id_raises(monkeypatch, context):
    monkeypatch.setattr(migrations, "load_collection", Mock(return_value=([{"id": "O1"}], 1)))

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_order(context, "O9")


def test_missing_reference_is_business_rule_violation():
    assert issubclass(core_logic.MissingReferenceError, BusinessRuleViolation)


# ---------------------------------------------------------------------------
# Follow-up ledger appends
# ---------------------------------------------------------------------------


def _ledger_store(monkeypatch, history, version=1, save=None):
    load = Mock(return_value=({"E1": list(history)}, version))
    save = save or Mock(return_value=version + 1)
    monkeypatch.setattr(migrations, "load_collection", load)
    monkeypatch.setattr(migrations, "save_collection", save)
    return load, save


def test_record_followup_appends_and_saves(monkeypatch, context, purchase_record, set_fixed_datetime):
    """A valid follow-up is appended and written with compare-and-swap."""

    set_fixed_datetime(datetime(2025, 11, 26, 9, 0, tzinfo=UTC))
    history = [{"quantity": "3,000", "comment": "a"}, {"quantity": "2,000", "comment": "b"}]
    _, save = _ledger_store(monkeypatch, history, version=7)

    balance = core_logic.record_followup(
        context,
        StorageKey.PURCHASE_TRACKING_FOLLOWUPS,
        purchase_record,
        {"quantity": "4,000", "comment": "third lot"},
        PURCHASE_TRACKING,
    )

    assert balance.remaining == Decimal("1000")
    assert len(balance.entries) == 3
    args, kwargs = save.call_args
    assert args[1] == StorageKey.PURCHASE_TRACKING_FOLLOWUPS.value
    assert kwargs == {"expected_version": 7}
    written = args[2]["E1"]
    assert written[-1]["comment"] == "third lot"
    assert written[-1]["date"] == "2025-11-26"
    assert written[-1]["createdAt"] == "2025-11-26T09:00:00+00:00"


def test_record_followup_rejects_excess(monkeypatch, context, purchase_record):
    _, save = _ledger_store(monkeypatch, [{"quantity": "3000"}, {"quantity": "2000"}])

    with pytest.raises(ExceedsRemainingError) as excinfo:
        core_logic.record_followup(
            context,
            StorageKey.PURCHASE_TRACKING_FOLLOWUPS,
            purchase_record,
            {"quantity": "6000", "comment": "too many"},
            PURCHASE_TRACKING,
        )

    assert excinfo.value.remaining == Decimal("5000")
    save.assert_not_called()


def test_record_followup_requires_comment_for_purchases(monkeypatch, context, purchase_record):
    _ledger_store(monkeypatch, [])

    with pytest.raises(MissingNoteError):
        core_logic.record_followup(
            context, StorageKey.PURCHASE_TRACKING_FOLLOWUPS, purchase_record, {"quantity": "10"}, PURCHASE_TRACKING
        )


def test_record_followup_rejects_non_numeric_production_counts(monkeypatch, context, purchase_record):
    _ledger_store(monkeypatch, [])

    with pytest.raises(InvalidAmountError):
        core_logic.record_followup(
            context,
            StorageKey.PRODUCTION_FOLLOWUPS,
            purchase_record,
            {"acceptedComponents": "many"},
            PRODUCTION,
        )


def test_record_followup_retries_on_stale_write(monkeypatch, context, purchase_record):
    """A lost compare-and-swap race re-reads the ledger and tries again."""

    save = Mock(side_effect=[StaleWriteError("k", 1, 2), 3])
    load, _ = _ledger_store(monkeypatch, [], save=save)

    balance = core_logic.record_followup(
        context,
        StorageKey.PRODUCTION_FOLLOWUPS,
        purchase_record,
        {"acceptedComponents": "900", "rejectedComponents": "100"},
        PRODUCTION,
    )

    assert balance.remaining == Decimal("9000")
    assert save.call_count == 2
    assert load.call_count == 2


def test_record_followup_gives_up_after_max_retries(monkeypatch, context, purchase_record):
    save = Mock(side_effect=StaleWriteError("k", 1, 2))
    _ledger_store(monkeypatch, [], save=save)

    with pytest.raises(StaleWriteError):
        core_logic.record_followup(
            context,
            StorageKey.PRODUCTION_FOLLOWUPS,
            purchase_record,
            {"acceptedComponents": "1"},
            PRODUCTION,
        )
    assert save.call_count == context.settings.max_write_retries


# ---------------------------------------------------------------------------
# Order lifecycle and views
# ---------------------------------------------------------------------------


def _order_store(monkeypatch, orders, version=1):
    monkeypatch.setattr(migrations, "load_collection", Mock(return_value=(orders, version)))
    save = Mock(return_value=version + 1)
    monkeypatch.setattr(migrations, "save_collection", save)
    return save


def test_move_order_to_purchase_flags_products(monkeypatch, context, sample_orders, set_fixed_datetime):
    set_fixed_datetime(datetime(2025, 12, 1, tzinfo=UTC))
    save = _order_store(monkeypatch, sample_orders)

    moved = core_logic.move_order_to_purchase(context, "O2")

    assert all(product["moveToPurchase"] is True for product in moved["products"])
    assert moved["updatedAt"] == "2025-12-01T00:00:00+00:00"
    written = save.call_args.args[2]
    assert [order["id"] for order in written] == ["O1", "O2", "O3"]
    assert "moveToPurchase" not in sample_orders[1]["products"][0]


def test_move_order_to_purchase_rejects_empty_orders(monkeypatch, context, sample_orders):
    _order_store(monkeypatch, sample_orders)

    with pytest.raises(BusinessRuleViolation, match="no products"):
        core_logic.move_order_to_purchase(context, "O3")


def test_move_order_to_purchase_rejects_already_moved(monkeypatch, context, sample_orders):
    for product in sample_orders[0]["products"]:
        product["moveToPurchase"] = True
    _order_store(monkeypatch, sample_orders)

    with pytest.raises(BusinessRuleViolation, match="already"):
        core_logic.move_order_to_purchase(context, "O1")


def test_delete_order_removes_only_target(monkeypatch, context, sample_orders):
    save = _order_store(monkeypatch, sample_orders)

    core_logic.delete_order(context, "O1")

    assert [order["id"] for order in save.call_args.args[2]] == ["O2", "O3"]


def test_order_view_groups_newest_first(monkeypatch, context, sample_orders):
    """Companies appear in the order of their most recent order."""

    _order_store(monkeypatch, sample_orders)

    tree = core_logic.order_view(context)

    assert tree.keys() == ["Globex", "Acme"]
    assert tree.child("Acme").keys() == ["ORD-3", "ORD-1"]


def test_order_view_filters_by_artwork_status(monkeypatch, context, sample_orders):
    _order_store(monkeypatch, sample_orders)

    tree = core_logic.order_view(context, core_logic.OrderQuery(artwork_status="approved"))

    assert [path for path, _ in tree.iter_leaves()] == [("Acme", "ORD-1")]


def test_order_view_product_and_size_match_same_line(monkeypatch, context, sample_orders):
    """Product and size selects must match on one product line."""

    _order_store(monkeypatch, sample_orders)

    matching = core_logic.order_view(context, core_logic.OrderQuery(product="Round Tub", size="1000ml"))
    crossed = core_logic.order_view(context, core_logic.OrderQuery(product="Sweet Box", size="1000ml"))

    assert [path for path, _ in matching.iter_leaves()] == [("Globex", "ORD-2")]
    assert crossed.count() == 0


def test_order_view_remaining_only(monkeypatch, context, sample_orders):
    """Fully produced and empty orders drop out of the remaining view."""

    _order_store(monkeypatch, sample_orders)

    tree = core_logic.order_view(context, core_logic.OrderQuery(remaining_only=True))
    assert [path for path, _ in tree.iter_leaves()] == [("Globex", "ORD-2")]


def test_order_view_search_covers_contact_and_iml_names(monkeypatch, context, sample_orders):
    _order_store(monkeypatch, sample_orders)

    by_phone = core_logic.order_view(context, core_logic.OrderQuery(spec=FilterSpec(search_text="0002")))
    by_label = core_logic.order_view(context, core_logic.OrderQuery(spec=FilterSpec(search_text="mango")))

    assert by_phone.keys() == ["Globex"]
    assert [path for path, _ in by_label.iter_leaves()] == [("Acme", "ORD-1")]


def test_order_view_is_memoized_until_write(monkeypatch, context, sample_orders):
    _order_store(monkeypatch, sample_orders)

    first = core_logic.order_view(context)
    assert core_logic.order_view(context) is first

    core_logic.delete_order(context, "O3")
    assert core_logic.order_view(context) is not first


def test_order_view_rejects_inverted_range(monkeypatch, context, sample_orders):
    _order_store(monkeypatch, sample_orders)

    with pytest.raises(InvalidDateRangeError):
        core_logic.order_view(
            context, core_logic.OrderQuery(spec=FilterSpec(date_from="2025-12-01", date_to="2025-11-01"))
        )


def test_purchase_view_groups_alphabetically(monkeypatch, context, sample_purchases):
    monkeypatch.setattr(migrations, "load_collection", Mock(return_value=(sample_purchases, 1)))

    tree = core_logic.purchase_view(context)

    assert tree.keys() == ["Round Tub", "round tub", "Sweet Box"]
    assert tree.child("round tub").keys() == [constants.NO_SIZE]


def test_purchase_view_applies_selects_and_dates(monkeypatch, context, sample_purchases):
    monkeypatch.setattr(migrations, "load_collection", Mock(return_value=(sample_purchases, 1)))

    spec = FilterSpec(search_text="acme", exact_match={"supplier": "Printwell"}, date_to="2025-11-29")
    tree = core_logic.purchase_view(context, spec)

    assert [record.record_id for record in tree.all_records()] == ["E1"]


def test_purchase_facet_options(monkeypatch, context, sample_purchases):
    monkeypatch.setattr(migrations, "load_collection", Mock(return_value=(sample_purchases, 1)))

    options = core_logic.purchase_facet_options(context, product="Round Tub")

    assert options["product"] == ["Round Tub", "round tub", "Sweet Box"]
    assert options["size"] == ["500ml"]
    assert options["supplier"] == ["Labelcraft", "Printwell"]


def test_order_artwork_status_defaults_to_pending():
    assert core_logic.order_artwork_status(Record(record_id="x")) == "pending"


def test_dashboard_stats_counts_orders(monkeypatch, context, sample_orders):
    sample_orders[0]["products"][0]["moveToPurchase"] = True
    _order_store(monkeypatch, sample_orders)

    stats = core_logic.dashboard_stats(context)

    assert stats == {
        "total": 3,
        "moved_to_purchase": 1,
        "with_remaining_labels": 1,
        "artwork_pending": 1,
        "artwork_in_progress": 1,
        "artwork_approved": 1,
    }


def test_unknown_company_orders_are_kept(monkeypatch, context):
    _order_store(monkeypatch, [{"id": "X", "products": []}])

    tree = core_logic.order_view(context)
    assert tree.keys() == [UNKNOWN_COMPANY]
