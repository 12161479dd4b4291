import pytest

from chatcore.errors import ValidationError
from chatcore.utils.conversation_key import SEPARATOR, derive_key, parse_key, validate_user_id


class TestDeriveKey:

    @pytest.mark.parametrize("a,b", [("alice", "bob"), ("bob", "alice"), ("u1", "U1"), ("x", "xy")])
    def test_order_independent(self, a, b):
        """Swapping the participants yields the same key."""
        assert derive_key(a, b) == derive_key(b, a)

    def test_sorted_and_joined(self):
        assert derive_key("zed", "amy") == f"amy{SEPARATOR}zed"

    def test_parse_round_trip(self):
        assert parse_key(derive_key("bob", "alice")) == ("alice", "bob")


class TestIdentifierBoundary:

    def test_separator_rejected(self):
        """Ids containing the separator could collide, so they are refused."""
        with pytest.raises(ValidationError):
            validate_user_id("a_b")

    def test_empty_rejected(self):
        with pytest.raises(ValidationError):
            validate_user_id("")

    @pytest.mark.parametrize("key", ["alice", "a_b_c", "_bob", "alice_"])
    def test_malformed_key(self, key):
        with pytest.raises(ValidationError):
            parse_key(key)
