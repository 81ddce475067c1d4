"""Seal gateway: upload and download wired end to end.

upload(plaintext)
    derive id -> threshold-encrypt -> write envelope to the blob store
download(blob_id)
    read envelope -> issue session credential -> build capability proof
    -> fetch key shares -> decrypt

The gateway owns no key material beyond the deployment signer; the session
key and the response key live for one download only.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from . import metrics
from .config import GatewayConfig
from .crypto import Ed25519KeyPair, decode_private_key, to_object_id
from .envelope import parse_envelope
from .errors import SealError
from .keyserver import HttpKeyServerClient, LocalKeyServer
from .ledger import HttpLedgerClient, InMemoryLedger, LedgerClient
from .orchestrator import DecryptionOrchestrator, DownloadState, DownloadTrace, EncryptionOrchestrator
from .policy import PolicyCapabilityBuilder
from .quorum import KeyServerQuorum
from .session import SessionCredentialManager
from .signing import FileEd25519Signer, Signer, build_signer_from_env, coerce_signer
from .storage import BlobStoreAdapter, InMemoryBlobStore, WalrusHttpBlobStore

logger = logging.getLogger("seal_gateway")


@dataclass(frozen=True)
class UploadResult:
    blob_id: str
    seal_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"blobId": self.blob_id, "sealId": self.seal_id}


class SealGateway:
    def __init__(
        self,
        *,
        signer: Any,
        ledger: LedgerClient,
        quorum: KeyServerQuorum,
        storage: BlobStoreAdapter,
        policy_namespace: str,
        package_id: str,
        threshold: int = 2,
        ttl_minutes: int = 10,
        nonce_bytes: int = 5,
        max_upload_bytes: Optional[int] = None,
        gateway_id: Optional[str] = None,
    ):
        self.signer: Signer = coerce_signer(signer)
        self.ledger = ledger
        self.quorum = quorum
        self.storage = storage
        self.policy_namespace = to_object_id(policy_namespace)
        self.package_id = to_object_id(package_id)
        self.threshold = int(threshold)
        self.ttl_minutes = int(ttl_minutes)
        self.gateway_id = gateway_id or f"seal-gw-{secrets.token_hex(4)}"

        self.encryptor = EncryptionOrchestrator(
            quorum, self.package_id, nonce_bytes=nonce_bytes, max_upload_bytes=max_upload_bytes
        )
        self.decryptor = DecryptionOrchestrator(quorum)
        self.sessions = SessionCredentialManager(self.signer, ledger, self.package_id)
        self.proofs = PolicyCapabilityBuilder(ledger, self.package_id)

    @property
    def address(self) -> str:
        return self.signer.address

    async def upload(self, plaintext: bytes) -> UploadResult:
        """Encrypt and store `plaintext`. Returns the blob handle and seal id."""
        try:
            envelope = await self.encryptor.encrypt(self.policy_namespace, self.threshold, bytes(plaintext))
            blob_id = await self.storage.write(envelope.to_bytes())
        except SealError as e:
            metrics.record_upload(e.code)
            logger.warning("Upload failed: %s", e)
            raise
        metrics.record_upload("ok")
        logger.info("Uploaded %s as blob %s", envelope.id, blob_id)
        return UploadResult(blob_id=blob_id, seal_id=envelope.id)

    async def download(self, blob_id: str) -> bytes:
        """Fetch and decrypt the blob `blob_id` on behalf of the signer's address."""
        trace = DownloadTrace(blob_id)
        try:
            data = await self.storage.read(blob_id)
            trace.advance(DownloadState.FETCHED)
            credential = await self.sessions.issue(self.address, self.policy_namespace, self.ttl_minutes)
            trace.advance(DownloadState.CREDENTIAL_ISSUED)
            proof = await self.proofs.build(parse_envelope(data).id, self.policy_namespace)
            trace.advance(DownloadState.PROOF_BUILT)
            return await self.decryptor.decrypt(data, credential, proof, self.threshold, trace)
        except SealError as e:
            trace.fail()
            logger.warning("Download of %s failed in state %s: %s", blob_id, trace.state.value, e)
            raise

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "SealGateway":
        """Build a gateway from loaded configuration. Raises RuntimeError if unusable."""
        if config.private_key:
            try:
                keypair = decode_private_key(config.private_key)
            except ValueError as e:
                raise RuntimeError(f"SUI_PRIVATE_KEY is invalid: {e}") from e
        else:
            keypair = Ed25519KeyPair.generate("gateway")
            logger.warning("No SUI_PRIVATE_KEY configured; using an ephemeral signing key")
        signer = build_signer_from_env(keypair)

        if config.backend == "memory":
            return build_dev_gateway(
                signer=signer,
                threshold=config.threshold,
                ttl_minutes=config.ttl_minutes,
                nonce_bytes=config.nonce_bytes,
                max_upload_bytes=config.max_upload_bytes,
                epochs=config.walrus_epochs,
                deletable=config.walrus_deletable,
            )

        ledger = HttpLedgerClient(config.ledger_url, network=config.network)
        servers = [HttpKeyServerClient(oid, url) for oid, url in config.key_servers]
        quorum = KeyServerQuorum(
            servers,
            config.key_server_keys,
            weights=config.key_server_weights,
            verify_key_servers=config.verify_key_servers,
        )
        storage = BlobStoreAdapter(
            WalrusHttpBlobStore(config.walrus_publisher_url, config.walrus_aggregator_url),
            epochs=config.walrus_epochs,
            deletable=config.walrus_deletable,
        )
        return cls(
            signer=signer,
            ledger=ledger,
            quorum=quorum,
            storage=storage,
            policy_namespace=config.allowlist_id,
            package_id=config.package_id,
            threshold=config.threshold,
            ttl_minutes=config.ttl_minutes,
            nonce_bytes=config.nonce_bytes,
            max_upload_bytes=config.max_upload_bytes,
        )


def build_dev_gateway(
    *,
    signer: Any = None,
    key_servers: int = 3,
    threshold: int = 2,
    ttl_minutes: int = 10,
    nonce_bytes: int = 5,
    max_upload_bytes: Optional[int] = None,
    epochs: int = 3,
    deletable: bool = False,
) -> SealGateway:
    """
    Self-contained gateway over in-process collaborators.

    Publishes a policy package and an allowlist containing the signer's
    address on an InMemoryLedger, starts `key_servers` LocalKeyServers and
    stores blobs in an InMemoryBlobStore.
    """
    signer = coerce_signer(signer or FileEd25519Signer(Ed25519KeyPair.generate("gateway")))
    ledger = InMemoryLedger()
    package_id = ledger.publish_package()
    allowlist = ledger.create_allowlist(package_id, members=[signer.address])
    servers = [LocalKeyServer(secrets.token_hex(32), ledger) for _ in range(key_servers)]
    quorum = KeyServerQuorum(servers, {s.object_id: s.public_key for s in servers})
    return SealGateway(
        signer=signer,
        ledger=ledger,
        quorum=quorum,
        storage=BlobStoreAdapter(InMemoryBlobStore(), epochs=epochs, deletable=deletable),
        policy_namespace=allowlist.object_id,
        package_id=package_id,
        threshold=threshold,
        ttl_minutes=ttl_minutes,
        nonce_bytes=nonce_bytes,
        max_upload_bytes=max_upload_bytes,
        gateway_id="seal-gw-dev",
    )
