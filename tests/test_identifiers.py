import pytest

from seal_gateway.identifiers import derive_object_id, namespace_of


def test_object_id_is_namespace_plus_nonce():
    ns = "0x" + "ab" * 11
    oid = derive_object_id(ns)

    # 11 namespace bytes + 5 nonce bytes, hex, no 0x
    assert len(oid) == 32
    assert oid.startswith("ab" * 11)
    assert namespace_of(oid, ns)


def test_nonce_width_is_configurable():
    oid = derive_object_id("0xabcd", nonce_bytes=16)
    assert len(bytes.fromhex(oid)) == 2 + 16


def test_identifiers_do_not_collide():
    ns = "0x" + "cd" * 32
    ids = {derive_object_id(ns) for _ in range(500)}
    assert len(ids) == 500


def test_namespace_prefix_is_case_and_prefix_insensitive():
    oid = derive_object_id("0xABCDEF")
    assert oid.startswith("abcdef")
    assert namespace_of(oid, "ABCDEF")
    assert not namespace_of(oid, "0x1234")
    assert not namespace_of("not-hex", "0xabcdef")


@pytest.mark.parametrize("bad", ["", "0x", "zz", "0xnothex"])
def test_invalid_namespace_rejected(bad):
    with pytest.raises(ValueError):
        derive_object_id(bad)


def test_zero_nonce_width_rejected():
    with pytest.raises(ValueError):
        derive_object_id("0xab", nonce_bytes=0)
