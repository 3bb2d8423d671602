import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .errors import UnsupportedKeyType
from .slots import (
    canonical_key,
    encode_key,
    mapping_slot,
    nested_mapping_slot,
    normalize_key_type,
    normalize_word,
    parse_int,
    to_hex,
)

logger = logging.getLogger(__name__)

DEFAULT_KEY_TYPE = "uint256"


@dataclass(frozen=True)
class MappingSpec:
    name: str
    base_slot: int
    key_type: Optional[str] = None
    key_types: Optional[Tuple[str, str]] = None
    keys: Tuple[Any, ...] = ()

    @property
    def nested(self) -> bool:
        return self.key_types is not None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "MappingSpec":
        if not isinstance(payload, dict):
            raise ValueError("Each mapping spec must be an object.")

        raw_slot = payload.get("baseSlot", payload.get("slot"))
        if raw_slot is None:
            raise ValueError("Mapping spec requires 'slot' (or 'baseSlot').")
        base_slot = parse_int(raw_slot, "slot")
        if base_slot < 0:
            raise ValueError("slot must be non-negative.")

        name = payload.get("name") or f"mapping@{base_slot}"
        raw_keys = payload.get("keys") or []
        if not isinstance(raw_keys, (list, tuple)):
            raise ValueError(f"Mapping '{name}': keys must be an array.")

        key_types = payload.get("keyTypes")
        if isinstance(key_types, (list, tuple)) and len(key_types) == 2:
            outer_type = normalize_key_type(key_types[0])
            inner_type = normalize_key_type(key_types[1])
            pairs: List[Tuple[Any, Tuple[Any, ...]]] = []
            for entry in raw_keys:
                if not isinstance(entry, (list, tuple)) or len(entry) != 2:
                    raise ValueError(
                        f"Mapping '{name}': nested keys must be [outerKey, [innerKeys...]] pairs."
                    )
                outer, inners = entry
                if not isinstance(inners, (list, tuple)):
                    raise ValueError(f"Mapping '{name}': inner keys for {outer!r} must be an array.")
                pairs.append((outer, tuple(inners)))
            return cls(
                name=str(name),
                base_slot=base_slot,
                key_types=(outer_type, inner_type),
                keys=tuple(pairs),
            )
        if key_types is not None and not isinstance(key_types, (list, tuple)):
            raise UnsupportedKeyType(key_types)

        key_type = payload.get("keyType")
        if key_type is None and isinstance(key_types, (list, tuple)) and key_types:
            key_type = key_types[0]
        return cls(
            name=str(name),
            base_slot=base_slot,
            key_type=normalize_key_type(key_type or DEFAULT_KEY_TYPE),
            keys=tuple(raw_keys),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "slot": self.base_slot}
        if self.nested:
            data["keyTypes"] = list(self.key_types or ())
            data["keys"] = [[outer, list(inners)] for outer, inners in self.keys]
        else:
            data["keyType"] = self.key_type
            data["keys"] = list(self.keys)
        return data


def check_unique_names(specs: Sequence[MappingSpec]) -> None:
    # Results are grouped by name, so two specs sharing one would collide.
    seen: Dict[str, int] = {}
    for spec in specs:
        if spec.name in seen:
            raise ValueError(
                f"Duplicate mapping name '{spec.name}' (slots {seen[spec.name]} and {spec.base_slot})."
            )
        seen[spec.name] = spec.base_slot


def parse_mapping_specs(payload: Any) -> List[MappingSpec]:
    """Accept ``{"mappings": [...]}``, a bare list, or a single mapping object."""
    if payload is None:
        return []
    if isinstance(payload, MappingSpec):
        return [payload]
    if isinstance(payload, dict):
        if "mappings" in payload:
            payload = payload["mappings"]
        else:
            payload = [payload]
    if not isinstance(payload, (list, tuple)):
        raise ValueError("Mapping spec must be an object with 'mappings' or an array of mappings.")
    specs = [item if isinstance(item, MappingSpec) else MappingSpec.from_dict(item) for item in payload]
    check_unique_names(specs)
    return specs


@dataclass(frozen=True)
class LeafRead:
    mapping: str
    key: str
    inner_key: Optional[str]
    slot: str


@dataclass
class MappingResult:
    values: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    slots: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.errors)


def compute_slot(
    base_slot: Union[int, str],
    key: Any,
    key_type: str,
    inner_key: Any = None,
    inner_key_type: Optional[str] = None,
) -> Dict[str, Any]:
    """Leaf slot for one key (or key pair) without touching the network."""
    outer_word = encode_key(key, key_type)
    result: Dict[str, Any] = {
        "slot": parse_int(base_slot, "slot"),
        "key": canonical_key(key, key_type),
        "keyType": normalize_key_type(key_type),
        "encodedKey": to_hex(outer_word),
    }
    if inner_key is None:
        result["leaf"] = to_hex(mapping_slot(base_slot, outer_word))
        return result

    inner_type = inner_key_type or key_type
    inner_word = encode_key(inner_key, inner_type)
    inner_base, leaf = nested_mapping_slot(base_slot, outer_word, inner_word)
    result.update(
        {
            "innerKey": canonical_key(inner_key, inner_type),
            "innerKeyType": normalize_key_type(inner_type),
            "encodedInnerKey": to_hex(inner_word),
            "innerBase": to_hex(inner_base),
            "leaf": to_hex(leaf),
        }
    )
    return result


class MappingSlotResolver:
    """Derive leaf slots from mapping specs and point-read them at a pinned block."""

    def __init__(self, client: Any, max_workers: int = 8) -> None:
        self.client = client
        self.max_workers = max(1, int(max_workers))

    def plan(self, specs: Sequence[MappingSpec]) -> List[LeafRead]:
        # Encodes every key up front: bad input fails before any RPC traffic.
        check_unique_names(specs)
        reads: List[LeafRead] = []
        for spec in specs:
            if spec.nested:
                outer_type, inner_type = spec.key_types  # type: ignore[misc]
                for outer, inners in spec.keys:
                    outer_word = encode_key(outer, outer_type)
                    outer_label = canonical_key(outer, outer_type)
                    for inner in inners:
                        _, leaf = nested_mapping_slot(spec.base_slot, outer_word, encode_key(inner, inner_type))
                        reads.append(
                            LeafRead(spec.name, outer_label, canonical_key(inner, inner_type), to_hex(leaf))
                        )
            else:
                key_type = spec.key_type or DEFAULT_KEY_TYPE
                for key in spec.keys:
                    leaf = mapping_slot(spec.base_slot, encode_key(key, key_type))
                    reads.append(LeafRead(spec.name, canonical_key(key, key_type), None, to_hex(leaf)))
        return reads

    def resolve(
        self,
        address: str,
        specs: Sequence[MappingSpec],
        block_number: int,
        cancel: Optional[threading.Event] = None,
    ) -> MappingResult:
        reads = self.plan(specs)
        result = MappingResult()
        for spec in specs:
            result.values.setdefault(spec.name, {})
            result.slots.setdefault(spec.name, {})
            if spec.nested:
                for outer, _ in spec.keys:
                    label = canonical_key(outer, spec.key_types[0])  # type: ignore[index]
                    result.values[spec.name].setdefault(label, {})
                    result.slots[spec.name].setdefault(label, {})

        def read(leaf: LeafRead) -> str:
            if cancel is not None and cancel.is_set():
                raise RuntimeError("mapping read aborted")
            return normalize_word(self.client.get_storage_at(address, leaf.slot, block_number), "storage value")

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [(leaf, executor.submit(read, leaf)) for leaf in reads]
            for leaf, future in futures:
                if leaf.inner_key is None:
                    result.slots[leaf.mapping][leaf.key] = leaf.slot
                else:
                    result.slots[leaf.mapping][leaf.key][leaf.inner_key] = leaf.slot
                try:
                    value = future.result()
                except Exception as exc:  # pylint: disable=broad-except
                    result.errors.append(
                        {
                            "mapping": leaf.mapping,
                            "key": leaf.key,
                            "innerKey": leaf.inner_key,
                            "slot": leaf.slot,
                            "error": str(exc),
                        }
                    )
                    continue
                if leaf.inner_key is None:
                    result.values[leaf.mapping][leaf.key] = value
                else:
                    result.values[leaf.mapping][leaf.key][leaf.inner_key] = value

        if result.errors:
            logger.warning("%d of %d mapping reads failed", len(result.errors), len(reads))
        logger.info("Resolved %d mapping leaves across %d mappings", len(reads) - len(result.errors), len(specs))
        return result
