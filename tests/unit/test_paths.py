"""
Unit tests for context path resolution.
"""

import pytest

from flow_engine.core.paths import is_rooted_path, lookup, resolve_path, split_path


class TestPaths:
    """Tests for rooted and unrooted path access."""

    CONTEXT = {
        "user": {"id": "u-1", "roles": ["admin", "ops"], "profile": None},
        "orders": [{"total": 10}, {"total": 20}],
        "0": "string key",
    }

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("$.user.id", "u-1"),
            ("$.user.roles.1", "ops"),
            ("$.orders.1.total", 20),
            ("$.user.profile.name", None),
            ("$.user.missing", None),
            ("$.orders.5.total", None),
            ("$.user.id.length", None),
        ],
    )
    def test_resolve_path(self, path, expected):
        """Test root-anchored resolution, missing segments yielding None."""
        assert resolve_path(self.CONTEXT, path) == expected

    def test_unrooted_paths_resolve_to_none(self):
        """Test that resolve_path only accepts '$.' paths."""
        assert resolve_path(self.CONTEXT, "user.id") is None
        assert resolve_path(self.CONTEXT, "$.") is None

    def test_wildcards_rejected(self):
        """Test that wildcard and bracket segments are malformed."""
        assert split_path("orders.*.total") is None
        assert split_path("orders[0]") is None
        assert split_path("a..b") is None
        assert resolve_path(self.CONTEXT, "$.orders.*.total") is None

    def test_lookup(self):
        """Test unanchored lookup used by expression variables."""
        assert lookup(self.CONTEXT, "user.roles.0") == "admin"
        assert lookup(self.CONTEXT, "$.user.id") == "u-1"
        assert lookup(self.CONTEXT, "") is self.CONTEXT
        assert lookup(self.CONTEXT, None) is self.CONTEXT
        assert lookup(["a", "b"], 1) == "b"

    def test_numeric_key_on_dict(self):
        """Test that digit segments also address string keys of objects."""
        assert resolve_path(self.CONTEXT, "$.0") == "string key"

    def test_zero_padded_key_on_dict(self):
        """Test that zero-padded keys are looked up verbatim."""
        document = {"codes": {"007": "bond", "7": "other"}, "items": ["a", "b", "c", "d", "e", "f", "g", "h"]}
        assert resolve_path(document, "$.codes.007") == "bond"
        assert resolve_path(document, "$.codes.7") == "other"
        assert resolve_path(document, "$.items.007") == "h"
        assert lookup(document, "codes.007") == "bond"
        assert split_path("codes.007") == ["codes", "007"]

    def test_is_rooted_path(self):
        """Test rooted path detection."""
        assert is_rooted_path("$.a") is True
        assert is_rooted_path("$.") is False
        assert is_rooted_path("a.b") is False
        assert is_rooted_path(None) is False
