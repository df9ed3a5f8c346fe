"""
Tests for the JSON path mini-language.
"""

import pytest

from buildresolver.exceptions import UnsupportedJsonPathError
from buildresolver.resolve.json_path import (
    KIND_ARRAY_FIELD,
    KIND_FIELD,
    KIND_ROOT,
    parse_json_path,
)

pytestmark = [pytest.mark.unit, pytest.mark.core_downloads]


class TestParseJsonPath:
    """Test parse_json_path."""

    def test_root(self):
        path = parse_json_path("$root")
        assert path.kind == KIND_ROOT

    def test_named_field(self):
        path = parse_json_path("versions")
        assert path.kind == KIND_FIELD
        assert path.array_name == "versions"

    def test_array_field(self):
        path = parse_json_path("items[].version")
        assert path.kind == KIND_ARRAY_FIELD
        assert path.array_name == "items"
        assert path.field_name == "version"

    def test_root_array_field(self):
        path = parse_json_path("$root[].build")
        assert path.kind == KIND_ARRAY_FIELD
        assert path.array_name == "$root"

    @pytest.mark.parametrize(
        "expression",
        ["", "   ", None, "data.versions", "items[0].version", "items[].a.b", "$.versions", "a b"],
    )
    def test_unsupported_forms_are_rejected(self, expression):
        with pytest.raises(UnsupportedJsonPathError):
            parse_json_path(expression)


class TestExtractVersions:
    """Test JsonPath.extract_versions."""

    def test_items_array_field(self):
        document = {"items": [{"version": 1}, {"version": "3"}, {"other": 2}]}

        assert parse_json_path("items[].version").extract_versions(document) == [3, 1]

    def test_root_array(self):
        assert parse_json_path("$root").extract_versions([4, "2", 4, "x"]) == [4, 2]

    def test_named_field(self):
        document = {"versions": [7, 9, 8]}

        assert parse_json_path("versions").extract_versions(document) == [9, 8, 7]

    def test_root_array_of_objects(self):
        document = [{"build": 5}, {"build": 6}, "junk"]

        assert parse_json_path("$root[].build").extract_versions(document) == [6, 5]

    def test_skips_booleans_and_negatives(self):
        assert parse_json_path("$root").extract_versions([True, -1, 3]) == [3]

    def test_shape_mismatch_yields_empty(self):
        assert parse_json_path("versions").extract_versions([1, 2]) == []
        assert parse_json_path("$root").extract_versions({"versions": [1]}) == []
        assert parse_json_path("items[].version").extract_versions({"items": "x"}) == []
