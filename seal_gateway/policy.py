"""Policy capability proofs.

A capability proof is an unsigned, simulate-only transaction kind calling
the allowlist's approval entry point:

    <package>::allowlist::seal_approve(id: vector<u8>, allowlist: &Allowlist)

Key servers simulate it against current ledger state as the credential's
address; "approved" means the call would not abort. The proof is built,
handed to the key servers and dropped. It is never signed or submitted.
"""

from __future__ import annotations

from dataclasses import dataclass

from .crypto import b64e, from_hex, to_object_id
from .errors import ProofConstructionFailure
from .ledger import LedgerClient, LedgerError
from .transactions import TransactionKind, parse_move_target

DEFAULT_MODULE = "allowlist"
DEFAULT_FUNCTION = "seal_approve"


@dataclass(frozen=True)
class CapabilityProof:
    """Serialized transaction kind plus what it was built for."""
    tx_kind: bytes
    object_id: str
    package_id: str
    policy_namespace: str
    target: str

    @property
    def tx_kind_b64(self) -> str:
        return b64e(self.tx_kind)


class PolicyCapabilityBuilder:
    """Builds capability proofs for one policy package."""

    def __init__(
        self,
        ledger: LedgerClient,
        package_id: str,
        *,
        module: str = DEFAULT_MODULE,
        function: str = DEFAULT_FUNCTION,
    ):
        self.ledger = ledger
        self.target = f"{package_id}::{module}::{function}"

    async def build(self, object_id: str, policy_namespace: str) -> CapabilityProof:
        """
        Build the proof for `object_id` under `policy_namespace`.

        Raises ProofConstructionFailure if the entry point is malformed, the
        identifier is not hex, or the namespace object cannot be resolved.
        """
        try:
            package, module, function = parse_move_target(self.target)
        except ValueError as e:
            raise ProofConstructionFailure(f"malformed policy entry point: {e}", target=self.target) from e
        try:
            id_bytes = from_hex(object_id)
            namespace = to_object_id(policy_namespace)
        except ValueError as e:
            raise ProofConstructionFailure(f"invalid proof arguments: {e}") from e

        try:
            ref = await self.ledger.get_object(namespace)
        except LedgerError as e:
            raise ProofConstructionFailure(f"cannot resolve policy object: {e}", policy_namespace=namespace) from e

        tx = TransactionKind()
        id_arg = tx.pure_bytes(id_bytes)
        list_arg = tx.object(ref.object_id, ref.version, ref.digest)
        target = f"{package}::{module}::{function}"
        tx.move_call(target, [id_arg, list_arg])

        return CapabilityProof(
            tx_kind=tx.build(),
            object_id=id_bytes.hex(),
            package_id=package,
            policy_namespace=namespace,
            target=target,
        )
