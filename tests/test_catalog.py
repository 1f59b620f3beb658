from datetime import date

import pytest
from pydantic import ValidationError

from catalog import (
    categories,
    edit_product_fields,
    is_available_on,
    new_product_fields,
    price_change,
    sort_catalog,
    weekday_of,
)
from schemas import Product, ProductInput


@pytest.mark.parametrize("previous, current, direction, percentage", [
    (165, 180, "up", 9.09),
    (340, 320, "down", 5.88),
    (220, 220, "same", 0),
    (3, 4, "up", 33.33),
    (0, 150, "up", 0),
])
def test_price_change(previous, current, direction, percentage):
    assert price_change(previous, current) == (direction, percentage)


def test_new_product_starts_flat():
    fields = new_product_fields(ProductInput(name="Whole Chicken", price=180, cutting_types=["Curry Cut", "Curry Cut"]))
    assert fields["current_price"] == fields["previous_price"] == 180
    assert fields["price_direction"] == "same"
    assert fields["price_change_percentage"] == 0
    assert fields["cutting_types"] == ["Curry Cut"]
    assert "price" not in fields
    assert fields["unit"] == "KG"
    assert fields["category"] == "Uncategorized"
    assert "id" not in fields


def test_edit_rolls_previous_price_forward():
    existing = {"current_price": 320, "previous_price": 340}
    fields = edit_product_fields(existing, ProductInput(name="Chicken Breast", price=360, available_days=[5, 1, 5]))
    assert fields["previous_price"] == 320
    assert fields["current_price"] == 360
    assert fields["price_direction"] == "up"
    assert fields["price_change_percentage"] == 12.5
    assert fields["available_days"] == [1, 5]


def test_product_input_rejects_bad_weekday():
    with pytest.raises(ValidationError):
        ProductInput(name="Mutton", price=700, available_days=[7])


def test_weekday_numbering_starts_on_sunday():
    assert weekday_of(date(2026, 10, 18)) == 0
    assert weekday_of(date(2026, 10, 17)) == 6
    assert weekday_of(date(2026, 10, 19)) == 1


def test_availability_by_day():
    assert is_available_on({"available_days": []}, 3)
    assert is_available_on({}, 0)
    assert is_available_on({"available_days": [0, 6]}, 6)
    assert not is_available_on({"available_days": [0, 6]}, 2)
    assert not is_available_on({"availability": False}, 2)


def test_sort_catalog_is_stable_on_ties():
    products = [
        {"name": "b", "display_order": 2},
        {"name": "a", "display_order": 1},
        {"name": "c"},
        {"name": "d", "display_order": 1},
    ]
    assert [p["name"] for p in sort_catalog(products)] == ["c", "a", "d", "b"]


def test_categories_in_first_seen_order():
    products = [{"category": "Farm Chicken"}, {"category": "Whole Meat"}, {}, {"category": "Farm Chicken"}]
    assert categories(products) == ["Farm Chicken", "Whole Meat", "Uncategorized"]


def test_edit_keeps_documents_in_product_shape():
    existing = {"current_price": 140}
    fields = edit_product_fields(existing, ProductInput(name="Eggs", price=150, unit="dozen"))
    assert Product.model_validate(fields).unit == "dozen"
    assert set(fields) == set(Product.model_fields) - {"id"}


def test_negative_price_never_reaches_the_catalog():
    with pytest.raises(ValidationError):
        ProductInput(name="Eggs", price=-1)
