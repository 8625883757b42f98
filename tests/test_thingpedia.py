"""
Tests for the function catalog.

These tests verify:
- Which output types can fill which parameters
- Operators offered per field type
- Registry lookups and listings
"""

import pytest

from almond.dialog.errors import MalformedIntentError
from almond.dialog.thingpedia import (
    FilterOperator,
    FunctionRegistry,
    FunctionRole,
    FunctionSchema,
    KindInfo,
    ParamSpec,
    ValueType,
    accepts,
    operators_for,
    split_function_id,
)


@pytest.fixture
def functions():
    return FunctionRegistry()


class TestAccepts:
    """Tests for parameter/output compatibility."""

    @pytest.mark.parametrize("output_type", [
        ValueType.STRING, ValueType.PICTURE, ValueType.URL, ValueType.ENTITY,
    ])
    def test_string_takes_textual_outputs(self, output_type):
        assert accepts(ValueType.STRING, output_type)

    def test_string_rejects_number(self):
        assert not accepts(ValueType.STRING, ValueType.NUMBER)

    def test_picture_only_takes_picture(self):
        assert accepts(ValueType.PICTURE, ValueType.PICTURE)
        assert not accepts(ValueType.PICTURE, ValueType.URL)


class TestOperators:
    """Tests for filter operators."""

    def test_numeric(self):
        assert operators_for(ValueType.NUMBER) == [FilterOperator.IS, FilterOperator.LESS, FilterOperator.GREATER]

    def test_textual(self):
        assert operators_for(ValueType.STRING) == [FilterOperator.IS, FilterOperator.CONTAINS]

    def test_unfilterable(self):
        assert operators_for(ValueType.PICTURE) == []

    def test_symbols(self):
        """Test the operators as written in program text."""
        assert FilterOperator.CONTAINS.symbol == "=~"
        assert FilterOperator.IS.symbol == "="


class TestFunctionRegistry:
    """Tests for registry lookups."""

    def test_get_with_and_without_prefix(self, functions):
        assert functions.get("tt:xkcd.get_comic") is functions.get("xkcd.get_comic")

    def test_get_unknown(self, functions):
        with pytest.raises(MalformedIntentError):
            functions.get("tt:xkcd.post")

    def test_has_function(self, functions):
        assert functions.has_function("tt:twitter.sink")
        assert not functions.has_function("nonsense")

    def test_param_order(self, functions):
        schema = functions.get("tt:twitter.post_picture")
        assert [spec.name for spec in schema.params] == ["caption", "picture_url"]

    def test_list_by_category_and_role(self, functions):
        listed = functions.list_functions(category="social-network", role=FunctionRole.ACTION)
        assert [schema.function_id for schema in listed] == [
            "tt:twitter.sink",
            "tt:twitter.post_picture",
            "tt:facebook.post",
        ]

    def test_unknown_kind_info(self, functions):
        """Test kinds without metadata get a readable name."""
        assert functions.kind_info("smart-lock").name == "Smart Lock"

    def test_register_custom_function(self):
        functions = FunctionRegistry(builtins=False)
        functions.register_kind(KindInfo(kind="thermostat", name="Thermostat", category="home"))
        functions.register(FunctionSchema(
            kind="thermostat",
            name="set_target",
            role=FunctionRole.ACTION,
            params=(ParamSpec("value", ValueType.NUMBER),),
        ))

        assert functions.list_functions(category="home")[0].function_id == "tt:thermostat.set_target"

    def test_split_dashed_kind(self):
        assert split_function_id("tt:security-camera.new_event") == ("security-camera", "new_event")
