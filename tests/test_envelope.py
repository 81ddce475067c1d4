import json

import pytest

from seal_gateway.crypto import X25519KeyPair, to_object_id
from seal_gateway.envelope import parse_envelope
from seal_gateway.errors import MalformedEnvelope
from seal_gateway.threshold import ThresholdCipher

PKG = to_object_id("0x" + "22" * 32)


def _envelope_bytes(object_id="ab" * 16):
    servers = [(to_object_id(f"{i:02x}" * 32), X25519KeyPair.generate().public_key_bytes) for i in (1, 2, 3)]
    env = ThresholdCipher().encrypt(
        package_id=PKG,
        object_id=object_id,
        threshold=2,
        plaintext=b"payload",
        server_public_keys=servers,
    )
    return env, env.to_bytes()


def test_parse_recovers_identifier_without_keys():
    env, data = _envelope_bytes()
    parsed = parse_envelope(data)
    assert parsed == env
    assert parsed.id == "ab" * 16
    assert parsed.package_id == PKG
    assert parsed.threshold == 2
    assert len(parsed.shares) == 3


def test_serialization_is_canonical():
    env, data = _envelope_bytes()
    assert parse_envelope(data).to_bytes() == data
    assert b" " not in data


def _mutate(data, fn):
    doc = json.loads(data)
    fn(doc)
    return json.dumps(doc).encode("utf-8")


@pytest.mark.parametrize(
    "mutation",
    [
        lambda d: d.update(version=2),
        lambda d: d.update(threshold=4),
        lambda d: d.update(threshold=0),
        lambda d: d.update(threshold=True),
        lambda d: d.update(id="not-hex"),
        lambda d: d.update(shares=[]),
        lambda d: d["shares"][1].update(index=d["shares"][0]["index"]),
        lambda d: d["shares"][0].update(nonce="***"),
        lambda d: d["payload"].update(aead="ChaCha20"),
        lambda d: d.update(ephemeral_public_key="AAAA"),
        lambda d: d.pop("payload"),
    ],
)
def test_structural_errors_are_malformed_envelope(mutation):
    _, data = _envelope_bytes()
    with pytest.raises(MalformedEnvelope):
        parse_envelope(_mutate(data, mutation))


@pytest.mark.parametrize("data", [b"", b"not json", b"[]", b"\xff\xfe", b'"string"'])
def test_garbage_is_malformed_envelope(data):
    with pytest.raises(MalformedEnvelope):
        parse_envelope(data)


def test_weighted_server_repeats_with_distinct_indices():
    heavy, light = to_object_id("0x" + "0a" * 32), to_object_id("0x" + "0b" * 32)
    env = ThresholdCipher().encrypt(
        package_id=PKG,
        object_id="ab" * 16,
        threshold=2,
        plaintext=b"payload",
        server_public_keys=[
            (heavy, X25519KeyPair.generate().public_key_bytes),
            (light, X25519KeyPair.generate().public_key_bytes),
        ],
        weights={heavy: 3},
    )
    parsed = parse_envelope(env.to_bytes())
    assert parsed.key_server_ids == [heavy, light]
    assert parsed.weight_of(heavy) == 3
    assert parsed.weight_of(light) == 1
    assert parsed.weight_of(to_object_id("0x0c")) == 0
