from ambuwatch.identity import Confirmed, Pending, canonical_identity, is_pending, same_identity


def test_numeric_and_text_identities_compare_equal():
    assert same_identity(77, "77")
    assert same_identity(" 77 ", 77.0)
    assert same_identity(Confirmed.of(77), "77")
    assert not same_identity(77, "78")


def test_absent_identities_never_match():
    for value in (None, "", "undefined", "null", "None", True):
        assert canonical_identity(value) is None
    assert not same_identity(None, None)
    assert not same_identity("undefined", "undefined")
    assert Confirmed.of("undefined") is None


def test_pending_identity_is_distinct_from_server_ids():
    pending = Pending.new()
    assert is_pending(pending)
    assert not is_pending(Confirmed("1"))
    assert str(pending).startswith("pending:")
    assert same_identity(pending, pending)
    assert not same_identity(pending, pending.token)
    assert Pending.new() != pending


def test_fractional_floats_keep_their_value():
    assert canonical_identity(2.5) == "2.5"
    assert canonical_identity(float("nan")) is None
