import sys
from pathlib import Path

import pytest

from seal_gateway.crypto import Ed25519KeyPair, verify_ed25519
from seal_gateway.errors import CredentialIssuanceFailure
from seal_gateway.gateway import build_dev_gateway
from seal_gateway.signing import ExternalCommandSigner, build_signer_from_env

SEED_HEX = "1f" * 32
FAKE = Path(__file__).parent / "fixtures" / "fake_external_signer.py"


@pytest.fixture
def external_env(monkeypatch):
    monkeypatch.setenv("SIGNER_MODE", "external")
    monkeypatch.setenv("SIGNER_CMD", f"{sys.executable} {FAKE}")
    monkeypatch.setenv("FAKE_SIGNER_SEED_HEX", SEED_HEX)
    monkeypatch.delenv("FAKE_SIGNER_FAIL", raising=False)


def test_external_signer_basic(external_env):
    kp = Ed25519KeyPair.from_seed(bytes.fromhex(SEED_HEX), key_id="deploy")
    signer = build_signer_from_env(kp)
    assert isinstance(signer, ExternalCommandSigner)
    assert signer.address == kp.address

    msg = b"hello-world"
    assert verify_ed25519(kp.public_key_bytes, msg, signer.sign(msg))


@pytest.mark.asyncio
async def test_external_signer_issues_session_credentials(external_env):
    kp = Ed25519KeyPair.from_seed(bytes.fromhex(SEED_HEX), key_id="deploy")
    gw = build_dev_gateway(signer=build_signer_from_env(kp))

    credential = await gw.sessions.issue(gw.address, gw.policy_namespace, 5)
    assert credential.verify()

    result = await gw.upload(b"signed elsewhere")
    assert await gw.download(result.blob_id) == b"signed elsewhere"


@pytest.mark.asyncio
async def test_external_signer_failure_blocks_issuance(external_env, monkeypatch):
    kp = Ed25519KeyPair.from_seed(bytes.fromhex(SEED_HEX), key_id="deploy")
    gw = build_dev_gateway(signer=build_signer_from_env(kp))
    monkeypatch.setenv("FAKE_SIGNER_FAIL", "1")

    with pytest.raises(CredentialIssuanceFailure):
        await gw.sessions.issue(gw.address, gw.policy_namespace, 5)


def test_external_signer_missing_cmd_fails_closed(monkeypatch):
    kp = Ed25519KeyPair.from_seed(bytes.fromhex(SEED_HEX), key_id="kid")
    monkeypatch.setenv("SIGNER_MODE", "external")
    monkeypatch.delenv("SIGNER_CMD", raising=False)

    with pytest.raises(RuntimeError):
        build_signer_from_env(kp)


def test_unknown_signer_mode_rejected(monkeypatch):
    monkeypatch.setenv("SIGNER_MODE", "hsm-magic")
    with pytest.raises(RuntimeError):
        build_signer_from_env(Ed25519KeyPair.generate("kid"))


def test_external_signer_with_wrong_key_is_rejected(external_env, monkeypatch):
    kp = Ed25519KeyPair.from_seed(bytes.fromhex(SEED_HEX), key_id="deploy")
    signer = build_signer_from_env(kp)
    monkeypatch.setenv("FAKE_SIGNER_SEED_HEX", "2e" * 32)

    with pytest.raises(RuntimeError, match="other than"):
        signer.sign(b"payload")


def test_external_signer_timeout_must_be_numeric(external_env, monkeypatch):
    monkeypatch.setenv("SIGNER_TIMEOUT_SECONDS", "soon")
    with pytest.raises(RuntimeError):
        build_signer_from_env(Ed25519KeyPair.generate("kid"))
