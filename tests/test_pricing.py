import math

from zyra_store.pricing import (
    calculate_totals,
    from_minor_units,
    line_total,
    merge_line_quantities,
    round_money,
    safe_float,
    safe_positive_int,
    to_minor_units,
)


def test_safe_float_rejects_garbage_and_non_finite_values():
    assert safe_float("12.5") == 12.5
    assert safe_float("abc", 1.0) == 1.0
    assert safe_float(None) == 0.0
    assert safe_float(math.inf, 2.0) == 2.0
    assert safe_float("nan", None) is None


def test_safe_positive_int_floors_at_default():
    assert safe_positive_int("3") == 3
    assert safe_positive_int(-4) == 0
    assert safe_positive_int("2.9") == 2
    assert safe_positive_int("x", 1) == 1


def test_line_total_rounds_to_cents():
    assert line_total(19.99, 3) == 59.97
    assert line_total("0.1", 3) == 0.3


def test_order_total_is_sum_of_line_items():
    items = [
        {"price": 19.99, "quantity": 2},
        {"price": 5.5, "quantity": 1},
        {"price": 0.333, "quantity": 3},
    ]
    totals = calculate_totals(items)
    assert totals["subtotal"] == round_money(sum(line_total(i["price"], i["quantity"]) for i in items))
    assert totals["total"] == totals["subtotal"]
    assert totals["total_items"] == 6


def test_calculate_totals_skips_non_dict_entries():
    assert calculate_totals([None, "x", {"price": 2, "quantity": 2}]) == {
        "subtotal": 4.0,
        "total_items": 2,
        "total": 4.0,
    }


def test_minor_unit_conversion():
    assert to_minor_units(12.34) == 1234
    assert to_minor_units("0.1") == 10
    assert to_minor_units(19.999) == 2000
    assert from_minor_units(1999) == 19.99


def test_merge_line_quantities_keeps_first_seen_order():
    merged = merge_line_quantities(
        [
            {"product_id": "b", "quantity": 1},
            {"product_id": "a", "quantity": 2},
            {"product_id": "b", "quantity": 3},
            {"product_id": "", "quantity": 9},
        ]
    )
    assert merged == [
        {"product_id": "b", "quantity": 4},
        {"product_id": "a", "quantity": 2},
    ]
