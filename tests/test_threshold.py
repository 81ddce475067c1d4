import itertools

import pytest

from seal_gateway.crypto import X25519KeyPair, to_object_id
from seal_gateway.threshold import ThresholdCipher, combine_shares, derive_wrapping_key, split_secret

PKG = to_object_id("0x" + "11" * 32)
OID = "ab" * 11 + "0102030405"


def _servers(n):
    keys = [X25519KeyPair.generate() for _ in range(n)]
    ids = [to_object_id(f"{i + 1:02x}" * 32) for i in range(n)]
    return ids, keys


def _wrapping_keys(envelope, ids, keys, pick):
    return {
        ids[i]: derive_wrapping_key(keys[i], envelope.ephemeral_public_key, PKG, envelope.id, ids[i])
        for i in pick
    }


def test_any_threshold_subset_recovers_secret_in_any_order():
    secret = bytes(range(32))
    points = split_secret(secret, 5, 3)
    assert [x for x, _ in points] == [1, 2, 3, 4, 5]
    for subset in itertools.permutations(points, 3):
        assert combine_shares(list(subset)) == secret


def test_fewer_than_threshold_points_give_wrong_secret():
    secret = bytes(range(32))
    points = split_secret(secret, 3, 2)
    assert combine_shares(points[:1]) != secret


def test_threshold_one_is_plain_replication():
    secret = b"\x42" * 32
    for _, share in split_secret(secret, 3, 1):
        assert share == secret


@pytest.mark.parametrize("shares,threshold", [(3, 0), (3, 4), (0, 0), (256, 2)])
def test_split_rejects_bad_parameters(shares, threshold):
    with pytest.raises(ValueError):
        split_secret(b"k" * 32, shares, threshold)


def test_combine_rejects_duplicate_indices():
    points = split_secret(b"k" * 32, 3, 2)
    with pytest.raises(ValueError):
        combine_shares([points[0], points[0]])


def test_cipher_roundtrip_with_two_of_three_released_keys():
    ids, keys = _servers(3)
    cipher = ThresholdCipher()
    env = cipher.encrypt(
        package_id=PKG,
        object_id=OID,
        threshold=2,
        plaintext=b"0123456789",
        server_public_keys=list(zip(ids, [k.public_key_bytes for k in keys])),
    )
    assert env.id == OID
    assert env.threshold == 2
    assert env.key_server_ids == ids

    for pick in ([0, 1], [1, 2], [2, 0], [0, 1, 2]):
        assert cipher.decrypt(env, _wrapping_keys(env, ids, keys, pick)) == b"0123456789"


def test_cipher_refuses_with_one_of_two_required_keys():
    ids, keys = _servers(3)
    cipher = ThresholdCipher()
    env = cipher.encrypt(
        package_id=PKG,
        object_id=OID,
        threshold=2,
        plaintext=b"secret",
        server_public_keys=list(zip(ids, [k.public_key_bytes for k in keys])),
    )
    with pytest.raises(ValueError):
        cipher.decrypt(env, _wrapping_keys(env, ids, keys, [1]))


def test_wrapping_key_is_bound_to_identifier():
    ids, keys = _servers(2)
    cipher = ThresholdCipher()
    env = cipher.encrypt(
        package_id=PKG,
        object_id=OID,
        threshold=1,
        plaintext=b"secret",
        server_public_keys=list(zip(ids, [k.public_key_bytes for k in keys])),
    )
    other_id = "ab" * 11 + "ffffffffff"
    wrong = {ids[0]: derive_wrapping_key(keys[0], env.ephemeral_public_key, PKG, other_id, ids[0])}
    with pytest.raises(ValueError):
        cipher.decrypt(env, wrong)


def test_cipher_rejects_unsatisfiable_threshold_and_duplicates():
    ids, keys = _servers(3)
    pks = list(zip(ids, [k.public_key_bytes for k in keys]))
    cipher = ThresholdCipher()
    with pytest.raises(ValueError):
        cipher.encrypt(package_id=PKG, object_id=OID, threshold=5, plaintext=b"x", server_public_keys=pks)
    with pytest.raises(ValueError):
        cipher.encrypt(package_id=PKG, object_id=OID, threshold=0, plaintext=b"x", server_public_keys=pks)
    with pytest.raises(ValueError):
        cipher.encrypt(package_id=PKG, object_id=OID, threshold=1, plaintext=b"x", server_public_keys=[pks[0], pks[0]])


def test_weighted_server_holds_several_shares():
    ids, keys = _servers(2)
    cipher = ThresholdCipher()
    env = cipher.encrypt(
        package_id=PKG,
        object_id=OID,
        threshold=2,
        plaintext=b"weighted",
        server_public_keys=list(zip(ids, [k.public_key_bytes for k in keys])),
        weights={ids[0]: 2},
    )
    assert len(env.shares) == 3
    assert env.key_server_ids == ids
    assert (env.weight_of(ids[0]), env.weight_of(ids[1])) == (2, 1)
    assert len({s.index for s in env.shares}) == 3

    # The heavy server alone meets the threshold; the light one does not.
    assert cipher.decrypt(env, _wrapping_keys(env, ids, keys, [0])) == b"weighted"
    with pytest.raises(ValueError):
        cipher.decrypt(env, _wrapping_keys(env, ids, keys, [1]))


@pytest.mark.parametrize("weights", [{"x": 0}, {"x": -1}, {"x": "2"}])
def test_cipher_rejects_bad_weights(weights):
    ids, keys = _servers(2)
    weights = {ids[0]: weights["x"]}
    with pytest.raises(ValueError):
        ThresholdCipher().encrypt(
            package_id=PKG,
            object_id=OID,
            threshold=1,
            plaintext=b"x",
            server_public_keys=list(zip(ids, [k.public_key_bytes for k in keys])),
            weights=weights,
        )


def test_weights_raise_the_satisfiable_threshold():
    ids, keys = _servers(2)
    pks = list(zip(ids, [k.public_key_bytes for k in keys]))
    cipher = ThresholdCipher()
    with pytest.raises(ValueError):
        cipher.encrypt(package_id=PKG, object_id=OID, threshold=3, plaintext=b"x", server_public_keys=pks)
    env = cipher.encrypt(
        package_id=PKG, object_id=OID, threshold=3, plaintext=b"x", server_public_keys=pks, weights={ids[1]: 2}
    )
    assert env.threshold == 3
    assert cipher.decrypt(env, _wrapping_keys(env, ids, keys, [0, 1])) == b"x"
