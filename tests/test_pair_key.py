import pytest

from buddymatch.errors import InvalidInput
from buddymatch.utils.pair_key import canonicalize


def test_pair_key_is_order_independent():
    assert canonicalize("alice", "bob") == canonicalize("bob", "alice") == "alice_bob"


def test_pair_key_is_deterministic_for_many_pairs():
    users = ["u1", "u10", "u2", "Zed", "zed", "a_b"]
    for a in users:
        for b in users:
            if a != b:
                assert canonicalize(a, b) == canonicalize(b, a)


def test_pair_key_rejects_self_pairing():
    with pytest.raises(InvalidInput):
        canonicalize("alice", "alice")


@pytest.mark.parametrize("a,b", [("", "bob"), ("alice", ""), (None, "bob")])
def test_pair_key_rejects_empty_ids(a, b):
    with pytest.raises(InvalidInput):
        canonicalize(a, b)
