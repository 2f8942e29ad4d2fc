"""
Unit tests for query key canonicalization.
"""

import pytest

from query_cache.keys import canonicalize, filter_group, is_group_member, resolve_key
from query_cache.observable import Observable
from shared.errors import KeyCanonicalizationError


class TestCanonicalize:
    """Test cases for canonicalize."""

    def test_string_key_is_verbatim(self):
        """Test string keys are used as-is."""
        assert canonicalize("todos") == "todos"
        assert canonicalize("todos,1") == "todos,1"

    def test_sequence_joined_with_delimiter(self):
        """Test sequences are canonicalized element-wise and joined."""
        assert canonicalize(["todos", 1]) == "todos,1"
        assert canonicalize(("todos", "list")) == "todos,list"
        assert canonicalize(["a", True, None, 1.5]) == "a,true,null,1.5"

    def test_equal_sequences_share_canonical_form(self):
        """Test two equal sequence keys canonicalize identically."""
        assert canonicalize(["a", 1]) == canonicalize(["a", 1])

    def test_sequence_order_matters(self):
        """Test element order is preserved."""
        assert canonicalize(["a", "b"]) != canonicalize(["b", "a"])

    def test_mapping_key_order_ignored(self):
        """Test mappings with different insertion order are equal."""
        assert canonicalize({"b": 1, "a": 2}) == canonicalize({"a": 2, "b": 1})
        assert canonicalize({"a": 1, "b": 2}) == '{"a":1,"b":2}'

    def test_nested_mappings_sorted_recursively(self):
        """Test nested mappings inside sequences are sorted at every depth."""
        first = ["todos", {"filter": {"z": 1, "a": [1, {"y": 2, "x": 1}]}, "page": 2}]
        second = ["todos", {"page": 2, "filter": {"a": [1, {"x": 1, "y": 2}], "z": 1}}]

        assert canonicalize(first) == canonicalize(second)
        assert canonicalize(first) == 'todos,{"filter":{"a":[1,{"x":1,"y":2}],"z":1},"page":2}'

    def test_nested_sequence_element_serialized_as_json(self):
        """Test nested sequences keep their own structure."""
        assert canonicalize(["todos", ["a", 1]]) == 'todos,["a",1]'

    def test_scalar_top_level_key(self):
        """Test non-string scalar keys."""
        assert canonicalize(42) == "42"

    def test_circular_structure_fails_fast(self):
        """Test circular keys raise instead of recursing forever."""
        key = {"a": 1}
        key["self"] = key

        with pytest.raises(KeyCanonicalizationError):
            canonicalize(["todos", key])

    def test_unsupported_value_raises(self):
        """Test values outside the key union are rejected."""
        with pytest.raises(KeyCanonicalizationError) as exc_info:
            canonicalize(["todos", object()])

        assert exc_info.value.code == "KEY_CANONICALIZATION_ERROR"

    def test_shared_substructure_is_not_circular(self):
        """Test the same object appearing twice is not treated as a cycle."""
        shared = {"id": 1}

        assert canonicalize([shared, shared]) == '{"id":1},{"id":1}'

    def test_observables_are_dereferenced(self):
        """Test observables inside a sequence key use their current value."""
        page = Observable(1)

        assert resolve_key(["todos", page]) == ["todos", 1]
        assert canonicalize(["todos", page]) == "todos,1"

        page.set(2)
        assert canonicalize(["todos", page]) == "todos,2"


class TestGroupMembership:
    """Test cases for hierarchical prefix matching."""

    @pytest.mark.parametrize("key", ["todos", "todos,1", "todos,list", ["todos", 1]])
    def test_members_of_group(self, key):
        """Test keys under the same root are members."""
        assert is_group_member(key, "todos") is True

    def test_similar_prefix_is_not_member(self):
        """Test "todo" and "todos" are distinct groups."""
        assert is_group_member("todos", "todo") is False
        assert is_group_member("todo", "todos") is False
        assert is_group_member("todos-archive", "todos") is False

    def test_filter_group(self):
        """Test filtering a key list by group."""
        keys = ["todos", "todos,1", "todo", "users,todos", "todos,list"]

        assert filter_group(keys, ["todos"]) == ["todos", "todos,1", "todos,list"]
