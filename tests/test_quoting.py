import pytest

from quoting import (
    ContractorRate,
    LineItem,
    Quote,
    add_item,
    apply_rate_book,
    bump_all_rates,
    bump_item_rate,
    params_for,
    quote_from_model_reply,
    recalculate,
    remove_item,
    remove_rate,
    requote,
    save_rate,
    set_grand_total,
    update_item,
)

PARAMS = params_for("QC_MONTREAL", 7.5, 5.0)

def _items():
    return [
        LineItem(item="Install LVP flooring", quantity=250, unit="sqft", rate=3.5, total=875.0),
        LineItem(item="Paint walls", quantity=400, unit="sqft", rate=1.25, total=500.0),
        LineItem(item="Install pot light", quantity=4, unit="each", rate=85.0, total=340.0),
    ]

@pytest.fixture
def quote() -> Quote:
    return recalculate(_items(), PARAMS)

def test_subtotal_is_sum_of_totals(quote):
    assert quote.summary.subtotal == 875.0 + 500.0 + 340.0

def test_summary_chain(quote):
    s = quote.summary
    assert s.overhead == pytest.approx(s.subtotal * 0.075)
    assert s.contingency == pytest.approx(s.subtotal * 0.05)
    assert s.tax == pytest.approx((s.subtotal + s.overhead + s.contingency) * 0.14975)
    expected = s.subtotal * (1 + 0.075 + 0.05) * (1 + 0.14975)
    assert s.grand_total == pytest.approx(expected)

def test_empty_quote_is_all_zero():
    q = recalculate([], PARAMS)
    assert q.summary.subtotal == 0
    assert q.summary.grand_total == 0
    assert "labor-only" in q.summary.disclaimer

def test_quantity_edit_recomputes_total(quote):
    q = update_item(quote, 0, "quantity", "300", PARAMS)
    assert q.line_items[0].total == pytest.approx(300 * 3.5)
    assert q.summary.subtotal == pytest.approx(1050.0 + 500.0 + 340.0)

def test_rate_edit_recomputes_total(quote):
    q = update_item(quote, 1, "rate", 2, PARAMS)
    assert q.line_items[1].total == pytest.approx(800.0)

def test_total_edit_back_derives_rate(quote):
    q = update_item(quote, 2, "total", "500", PARAMS)
    assert q.line_items[2].total == 500.0
    assert q.line_items[2].rate == pytest.approx(125.0)

def test_total_edit_with_zero_quantity_keeps_rate(quote):
    q = update_item(quote, 0, "quantity", 0, PARAMS)
    q = update_item(q, 0, "total", 99, PARAMS)
    assert q.line_items[0].rate == 3.5
    assert q.line_items[0].total == 99.0
    assert q.summary.subtotal == pytest.approx(99.0 + 500.0 + 340.0)

@pytest.mark.parametrize("junk", ["", "abc", "nan", None, float("nan"), "inf"])
def test_invalid_numeric_input_is_ignored(quote, junk):
    q = update_item(quote, 0, "quantity", junk, PARAMS)
    assert q.line_items[0].quantity == 250
    assert q.line_items[0].total == pytest.approx(875.0)

def test_text_edit_does_not_touch_numbers(quote):
    q = update_item(quote, 0, "item", "Install hardwood", PARAMS)
    assert q.line_items[0].item == "Install hardwood"
    assert q.summary.subtotal == quote.summary.subtotal

def test_edits_do_not_mutate_input(quote):
    update_item(quote, 0, "rate", 10, PARAMS)
    assert quote.line_items[0].rate == 3.5

def test_bad_index_and_field(quote):
    with pytest.raises(IndexError):
        update_item(quote, 9, "rate", 1, PARAMS)
    with pytest.raises(ValueError):
        update_item(quote, 0, "colour", 1, PARAMS)

def test_add_and_remove(quote):
    q = add_item(quote, PARAMS)
    assert len(q.line_items) == 4
    assert q.line_items[-1].item == "New Item"
    assert q.line_items[-1].unit == "each"
    assert q.summary.subtotal == quote.summary.subtotal
    q = remove_item(q, 0, PARAMS)
    assert [it.item for it in q.line_items] == ["Paint walls", "Install pot light", "New Item"]
    assert q.summary.subtotal == pytest.approx(840.0)

def test_bump_single_item(quote):
    q = bump_item_rate(quote, 2, "up", 10, PARAMS)
    assert q.line_items[2].rate == pytest.approx(93.5)
    assert q.line_items[2].total == pytest.approx(4 * 93.5)
    assert q.line_items[0].rate == 3.5

def test_bump_all_up_then_down(quote):
    q = bump_all_rates(quote, "up", 5, PARAMS)
    q = bump_all_rates(q, "down", 5, PARAMS)
    for before, after in zip(quote.line_items, q.line_items):
        assert after.rate == pytest.approx(before.rate * 1.05 * 0.95)
        assert after.total == pytest.approx(after.quantity * after.rate)

def test_bump_with_invalid_percent_is_noop(quote):
    assert bump_all_rates(quote, "up", "lots", PARAMS) == quote

def test_set_grand_total_hits_target(quote):
    q = set_grand_total(quote, 5000, PARAMS)
    assert q.summary.grand_total == pytest.approx(5000, abs=0.01)
    ratio = q.summary.subtotal / quote.summary.subtotal
    for before, after in zip(quote.line_items, q.line_items):
        assert after.rate == pytest.approx(before.rate * ratio)
        assert after.quantity == before.quantity

@pytest.mark.parametrize("target", [0, -10, "", "abc"])
def test_set_grand_total_ignores_bad_target(quote, target):
    assert set_grand_total(quote, target, PARAMS) == quote

def test_set_grand_total_rejects_zero_subtotal():
    q = recalculate([LineItem(item="New Item", quantity=1, unit="each", rate=0, total=0)], PARAMS)
    with pytest.raises(ValueError, match="subtotal is zero"):
        set_grand_total(q, 1000, PARAMS)

def test_set_grand_total_rejects_cancelling_percentages():
    p = params_for("NYC", -60, -40)
    q = recalculate([LineItem(item="Demo", quantity=1, unit="each", rate=100, total=100)], p)
    with pytest.raises(ValueError, match="Cannot adjust total with these percentages."):
        set_grand_total(q, 500, p)

def test_region_change_only_moves_tax(quote):
    nyc = requote(quote, params_for("NYC", 7.5, 5.0))
    assert nyc.summary.subtotal == quote.summary.subtotal
    assert nyc.summary.overhead == quote.summary.overhead
    assert nyc.summary.contingency == quote.summary.contingency
    assert nyc.summary.tax != quote.summary.tax
    pre_tax = nyc.summary.subtotal + nyc.summary.overhead + nyc.summary.contingency
    assert nyc.summary.tax == pytest.approx(pre_tax * 0.08875)

def test_unknown_region():
    with pytest.raises(ValueError):
        params_for("LA", 7.5, 5)

def test_rate_book_roundtrip(quote):
    item = quote.line_items[1]
    rates = save_rate({}, item.model_copy(update={"rate": 2.0}))
    assert rates == {"paint walls": ContractorRate(rate=2.0, unit="sqft")}

    q = apply_rate_book(quote, rates, PARAMS)
    assert q.line_items[1].rate == 2.0
    assert q.line_items[1].total == pytest.approx(800.0)
    assert q.line_items[0] == quote.line_items[0]

    assert remove_rate(rates, item) == {}

def test_rate_book_key_is_case_and_space_insensitive(quote):
    rates = {"install pot light": ContractorRate(rate=100, unit="ea")}
    renamed = update_item(quote, 2, "item", "  Install POT light ", PARAMS)
    q = apply_rate_book(renamed, rates, PARAMS)
    assert q.line_items[2].rate == 100
    assert q.line_items[2].unit == "ea"

def test_save_rate_needs_description():
    with pytest.raises(ValueError):
        save_rate({}, LineItem(item="   ", quantity=1, unit="each", rate=1, total=1))

def test_model_reply_is_recalculated_locally():
    payload = {
        "line_items": [
            {"item": "Demo cabinets", "quantity": 1, "unit": "each", "rate": 600, "total": 600},
            {"item": "Tile backsplash", "quantity": 30, "unit": "sqft", "rate": 12, "total": 360},
        ],
        "summary": {
            "subtotal": 1,
            "overhead": 1,
            "contingency": 1,
            "tax": 1,
            "grand_total": 1,
            "disclaimer": "Labor only. Materials excluded.",
        },
    }
    q = quote_from_model_reply(payload, PARAMS)
    assert q.summary.subtotal == 960
    assert q.summary.disclaimer == "Labor only. Materials excluded."
    assert q.summary.grand_total == pytest.approx(960 * 1.125 * 1.14975)

def test_model_reply_schema_mismatch():
    with pytest.raises(ValueError):
        quote_from_model_reply({"items": []}, PARAMS)
