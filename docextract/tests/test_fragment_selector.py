"""Tests for docextract.core.fragment_selector.

Every traversal follows the first child at each level; the fixtures below
use the provider > care_summary > professional[] > {name, npi} path.
"""

import pytest

from docextract.core.fragment_selector import (
    apply_to_schema,
    build_path_types,
    build_selector_from_fields,
    extractable_fields,
    is_array_type,
    is_array_type_at_level,
    is_leaf_array_type,
    leaf_key,
    leaf_schema,
    nesting_keys,
    parent_type,
    unwrap_data,
    with_leaf_fields,
    wrap_data,
)
from docextract.pydantic_models.plan_models import FragmentSelector


@pytest.fixture
def nested_selector():
    return FragmentSelector.from_dict({
        "type": "object",
        "children": {
            "provider": {"type": "object", "children": {
                "care_summary": {"type": "object", "children": {
                    "professional": {"type": "array", "children": {
                        "name": {"type": "string"},
                        "npi": {"type": "string"},
                    }},
                }},
            }},
        },
    })


@pytest.fixture
def contacts_schema():
    return {
        "type": "object",
        "properties": {
            "provider": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "contacts": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {"name": {"type": "string"}, "phone": {"type": "string"}},
                        },
                    },
                },
            },
        },
    }


# =============================================================================
# Path queries
# =============================================================================


class TestPathQueries:
    """Tests for nesting_keys, leaf_key and parent_type."""

    def test_nesting_keys(self, nested_selector):
        assert nesting_keys(nested_selector) == ["provider", "care_summary", "professional"]

    def test_leaf_key_is_deepest_structural_key(self, nested_selector):
        assert leaf_key(nested_selector) == "professional"

    def test_flat_selector_leaf_key_falls_back_to_object_type(self):
        """A selector with only scalar children is the root object itself."""
        flat = FragmentSelector.for_fields(["invoice_number", "total"])
        assert leaf_key(flat, "Invoice") == "invoice"
        assert leaf_key(flat, "Line Item") == "line_item"
        assert nesting_keys(flat) == []

    def test_parent_type_is_title_of_second_to_last_key(self, nested_selector):
        assert parent_type(nested_selector) == "Care Summary"

    def test_parent_type_none_for_top_level(self):
        selector = FragmentSelector.from_dict({
            "type": "object",
            "children": {"vendor": {"type": "object", "children": {"name": {"type": "string"}}}},
        })
        assert parent_type(selector) is None

    def test_first_child_only(self):
        """A second structural sibling is never followed."""
        selector = FragmentSelector.from_dict({
            "type": "object",
            "children": {
                "first": {"type": "object", "children": {"a": {"type": "string"}}},
                "second": {"type": "array", "children": {"b": {"type": "string"}}},
            },
        })
        assert nesting_keys(selector) == ["first"]
        assert leaf_key(selector) == "first"


# =============================================================================
# Array detection
# =============================================================================


class TestArrayDetection:
    """Tests for is_array_type, is_array_type_at_level and is_leaf_array_type."""

    def test_declared_types(self, nested_selector):
        assert is_array_type(nested_selector, "professional") is True
        assert is_array_type(nested_selector, "provider") is False
        assert is_array_type(nested_selector, "care_summary") is False

    def test_unknown_key_is_not_array(self, nested_selector):
        assert is_array_type(nested_selector, "missing") is False

    def test_at_level(self, nested_selector):
        assert is_array_type_at_level(nested_selector, 0) is False
        assert is_array_type_at_level(nested_selector, 2) is True

    def test_past_the_end_defaults_to_array(self, nested_selector):
        assert is_array_type_at_level(nested_selector, 9) is True

    def test_leaf_array(self, nested_selector):
        assert is_leaf_array_type(nested_selector) is True
        assert is_leaf_array_type(FragmentSelector.for_fields(["name"]), "Invoice") is False


# =============================================================================
# Data shaping
# =============================================================================


class TestDataShaping:
    """Tests for extractable_fields, unwrap_data and wrap_data."""

    def test_extractable_fields_in_order(self, nested_selector):
        assert extractable_fields(nested_selector) == ["name", "npi"]

    def test_with_leaf_fields_extends_the_leaf_only(self, nested_selector):
        extended = with_leaf_fields(nested_selector, ["npi", "license"])
        assert extractable_fields(extended) == ["name", "npi", "license"]
        assert leaf_key(extended) == "professional"
        assert extractable_fields(nested_selector) == ["name", "npi"]

    def test_with_leaf_fields_on_flat_selector(self):
        flat = FragmentSelector.for_fields(["total"])
        assert with_leaf_fields(flat, ["name"]).keys() == ["total", "name"]

    def test_unwrap_collapses_leaf_array_to_first(self, nested_selector):
        data = {"provider": {"care_summary": {"professional": [{"name": "A"}, {"name": "B"}]}}}
        assert unwrap_data(data, nested_selector) == {"name": "A"}

    def test_unwrap_preserves_leaf_array(self, nested_selector):
        data = {"provider": {"care_summary": {"professional": [{"name": "A"}, {"name": "B"}]}}}
        assert unwrap_data(data, nested_selector, preserve_leaf_array=True) == [{"name": "A"}, {"name": "B"}]

    def test_unwrap_flat_selector_returns_data(self):
        flat = FragmentSelector.for_fields(["total"])
        assert unwrap_data({"total": 12}, flat) == {"total": 12}

    def test_unwrap_missing_key_returns_data(self, nested_selector):
        assert unwrap_data({"other": 1}, nested_selector) == {"other": 1}

    def test_wrap_nests_under_path(self, nested_selector):
        wrapped = wrap_data({"name": "A"}, nested_selector)
        assert wrapped == {"provider": {"care_summary": {"professional": [{"name": "A"}]}}}

    def test_wrap_keeps_leaf_list(self, nested_selector):
        items = [{"name": "A"}, {"name": "B"}]
        wrapped = wrap_data(items, nested_selector)
        assert wrapped["provider"]["care_summary"]["professional"] == items

    def test_unwrap_inverts_wrap(self, nested_selector):
        leaf = {"name": "A", "npi": "123"}
        assert unwrap_data(wrap_data(leaf, nested_selector), nested_selector) == leaf


# =============================================================================
# Building selectors
# =============================================================================


class TestBuildSelector:
    """Tests for build_selector_from_fields and build_path_types."""

    def test_root_object(self, contacts_schema):
        selector = build_selector_from_fields("", ["name"], contacts_schema, False)
        assert selector.type == "object"
        assert selector.keys() == ["name"]

    def test_nested_array_path(self, contacts_schema):
        selector = build_selector_from_fields("provider.contacts", ["name", "phone"], contacts_schema, True)

        assert nesting_keys(selector) == ["provider", "contacts"]
        assert selector.child("provider").type == "object"
        assert selector.child("provider").child("contacts").type == "array"
        assert leaf_key(selector) == "contacts"
        assert is_leaf_array_type(selector) is True
        assert extractable_fields(selector) == ["name", "phone"]

    def test_path_types_default_to_object(self, contacts_schema):
        assert build_path_types(["provider", "contacts"], contacts_schema) == ["object", "array"]
        assert build_path_types(["provider", "missing", "deeper"], contacts_schema) == ["object", "object", "object"]

    def test_dict_round_trip_keeps_order(self, nested_selector):
        assert FragmentSelector.from_dict(nested_selector.to_dict()) == nested_selector


# =============================================================================
# Schema reduction
# =============================================================================


class TestApplyToSchema:
    """Tests for apply_to_schema and leaf_schema."""

    def test_keeps_only_selected_properties(self, contacts_schema):
        selector = build_selector_from_fields("provider", ["name"], contacts_schema, False)
        reduced = apply_to_schema(contacts_schema, selector)

        provider = reduced["properties"]["provider"]
        assert list(provider["properties"]) == ["name"]

    def test_array_items_are_reduced(self, contacts_schema):
        selector = build_selector_from_fields("provider.contacts", ["phone"], contacts_schema, True)
        reduced = apply_to_schema(contacts_schema, selector)

        contacts = reduced["properties"]["provider"]["properties"]["contacts"]
        assert contacts["type"] == "array"
        assert list(contacts["items"]["properties"]) == ["phone"]

    def test_does_not_mutate_input(self, contacts_schema):
        before = repr(contacts_schema)
        apply_to_schema(contacts_schema, build_selector_from_fields("provider", ["name"], contacts_schema, False))
        assert repr(contacts_schema) == before

    def test_leaf_schema_of_nested_object(self, invoice_schema):
        selector = build_selector_from_fields("vendor", ["name"], invoice_schema, False)
        leaf = leaf_schema(invoice_schema, selector)
        assert list(leaf["properties"]) == ["name"]
