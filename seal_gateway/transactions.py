"""Transaction-kind codec for policy capability proofs.

A capability proof is the *kind* of a programmable transaction only: inputs
and commands, with no sender, gas payment, expiration or signatures. It can
be simulated but never executed. The encoding is canonical JSON:

    {
        "kind": "ProgrammableTransaction",
        "inputs": [
            {"type": "pure", "valueType": "vector<u8>", "value": "<hex>"},
            {"type": "object", "objectId": "0x...", "version": 7, "digest": "...", "mutable": false}
        ],
        "commands": [
            {"MoveCall": {"package": "0x...", "module": "allowlist", "function": "seal_approve",
                          "typeArguments": [], "arguments": [{"Input": 0}, {"Input": 1}]}}
        ]
    }
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from .crypto import canonical_json_dumps, to_object_id

TX_KIND = "ProgrammableTransaction"
_IDENT_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def parse_move_target(target: str) -> Tuple[str, str, str]:
    """Split `package::module::function`; raises ValueError if malformed."""
    parts = str(target or "").split("::")
    if len(parts) != 3:
        raise ValueError(f"move target must be package::module::function, got {target!r}")
    package, module, function = parts
    if not _IDENT_RE.match(module) or not _IDENT_RE.match(function):
        raise ValueError(f"invalid module or function name in {target!r}")
    return to_object_id(package), module, function


@dataclass(frozen=True)
class PureInput:
    value: bytes
    value_type: str = "vector<u8>"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "pure", "valueType": self.value_type, "value": self.value.hex()}


@dataclass(frozen=True)
class ObjectInput:
    object_id: str
    version: int
    digest: str
    mutable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "objectId": self.object_id,
            "version": self.version,
            "digest": self.digest,
            "mutable": self.mutable,
        }


@dataclass(frozen=True)
class MoveCall:
    package: str
    module: str
    function: str
    arguments: Tuple[int, ...]
    type_arguments: Tuple[str, ...] = ()

    @property
    def target(self) -> str:
        return f"{self.package}::{self.module}::{self.function}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "MoveCall": {
                "package": self.package,
                "module": self.module,
                "function": self.function,
                "typeArguments": list(self.type_arguments),
                "arguments": [{"Input": i} for i in self.arguments],
            }
        }


@dataclass
class TransactionKind:
    """Builder for a programmable transaction kind."""
    inputs: List[Any] = field(default_factory=list)
    commands: List[MoveCall] = field(default_factory=list)

    def pure_bytes(self, value: bytes) -> int:
        self.inputs.append(PureInput(bytes(value)))
        return len(self.inputs) - 1

    def object(self, object_id: str, version: int, digest: str) -> int:
        self.inputs.append(ObjectInput(to_object_id(object_id), int(version), str(digest)))
        return len(self.inputs) - 1

    def move_call(self, target: str, arguments: List[int]) -> None:
        package, module, function = parse_move_target(target)
        self.commands.append(MoveCall(package, module, function, tuple(arguments)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": TX_KIND,
            "inputs": [i.to_dict() for i in self.inputs],
            "commands": [c.to_dict() for c in self.commands],
        }

    def build(self) -> bytes:
        """Serialize in transaction-kind-only form."""
        if not self.commands:
            raise ValueError("transaction kind has no commands")
        return canonical_json_dumps(self.to_dict()).encode("utf-8")


def _parse_input(raw: Any) -> Any:
    if not isinstance(raw, dict):
        raise ValueError("input must be an object")
    kind = raw.get("type")
    if kind == "pure":
        if raw.get("valueType") != "vector<u8>":
            raise ValueError(f"unsupported pure value type: {raw.get('valueType')!r}")
        return PureInput(bytes.fromhex(str(raw.get("value") or "")))
    if kind == "object":
        version = raw.get("version")
        if not isinstance(version, int) or isinstance(version, bool):
            raise ValueError("object input version must be an integer")
        return ObjectInput(to_object_id(raw.get("objectId", "")), version, str(raw.get("digest", "")),
                           bool(raw.get("mutable", False)))
    raise ValueError(f"unsupported input type: {kind!r}")


def _parse_command(raw: Any, n_inputs: int) -> MoveCall:
    if not isinstance(raw, dict) or set(raw) != {"MoveCall"} or not isinstance(raw["MoveCall"], dict):
        raise ValueError("only MoveCall commands are allowed")
    call = raw["MoveCall"]
    package, module, function = parse_move_target(
        f"{call.get('package', '')}::{call.get('module', '')}::{call.get('function', '')}"
    )
    args = []
    for a in call.get("arguments") or []:
        idx = a.get("Input") if isinstance(a, dict) else None
        if not isinstance(idx, int) or isinstance(idx, bool) or not 0 <= idx < n_inputs:
            raise ValueError("move call argument must reference an input")
        args.append(idx)
    type_args = call.get("typeArguments") or []
    if not isinstance(type_args, list):
        raise ValueError("typeArguments must be a list")
    return MoveCall(package, module, function, tuple(args), tuple(str(t) for t in type_args))


def parse_transaction_kind(data: bytes) -> TransactionKind:
    """Parse transaction-kind bytes. Raises ValueError if malformed."""
    try:
        doc = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"transaction kind is not valid JSON: {e}") from e
    if not isinstance(doc, dict) or doc.get("kind") != TX_KIND:
        raise ValueError("not a programmable transaction kind")
    # Anything that would make this executable is rejected outright.
    extra = set(doc) - {"kind", "inputs", "commands"}
    if extra:
        raise ValueError(f"unexpected transaction fields: {sorted(extra)}")
    raw_inputs = doc.get("inputs")
    raw_commands = doc.get("commands")
    if not isinstance(raw_inputs, list) or not isinstance(raw_commands, list) or not raw_commands:
        raise ValueError("transaction kind needs inputs and at least one command")
    inputs = [_parse_input(i) for i in raw_inputs]
    commands = [_parse_command(c, len(inputs)) for c in raw_commands]
    return TransactionKind(inputs=inputs, commands=commands)
