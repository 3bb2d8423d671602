from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .blocks import PinnedBlock
from .mappings import MappingResult
from .walker import WalkResult, WalkStatus


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class DumpResult:
    address: str
    chain_id: int
    block_number: int
    block_hash: str
    storage: Mapping[str, str]
    mappings: Mapping[str, Any]
    storage_status: WalkStatus = WalkStatus.COMPLETE
    pages: int = 0
    tx_count: int = 0
    mapping_slots: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    mapping_errors: Tuple[Any, ...] = ()
    unresolved_storage: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def partial(self) -> bool:
        return self.storage_status is not WalkStatus.COMPLETE or bool(self.mapping_errors)

    def to_dict(self, include_meta: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "address": self.address,
            "chainId": self.chain_id,
            "blockNumber": self.block_number,
            "blockHash": self.block_hash,
            "storage": dict(sorted(self.storage.items())),
            "mappings": _thaw(self.mappings),
        }
        if self.unresolved_storage:
            data["unresolvedStorage"] = dict(sorted(self.unresolved_storage.items()))
        if include_meta:
            data["meta"] = {
                "storageStatus": self.storage_status.value,
                "partial": self.partial,
                "pages": self.pages,
                "slotCount": len(self.storage),
                "unresolvedCount": len(self.unresolved_storage),
                "txCount": self.tx_count,
                "mappingSlots": _thaw(self.mapping_slots),
                "mappingErrors": _thaw(self.mapping_errors),
            }
        return data


def assemble(
    address: str,
    chain_id: int,
    block: PinnedBlock,
    walk: WalkResult,
    mapping_results: Optional[List[MappingResult]] = None,
) -> DumpResult:
    """Merge block, walk and mapping outputs into one immutable dump."""
    mappings: Dict[str, Any] = {}
    slots: Dict[str, Any] = {}
    errors: List[Dict[str, Any]] = []
    for result in mapping_results or []:
        for name, values in result.values.items():
            mappings.setdefault(name, {}).update(values)
        for name, leaf_slots in result.slots.items():
            slots.setdefault(name, {}).update(leaf_slots)
        errors.extend(result.errors)

    return DumpResult(
        address=address,
        chain_id=int(chain_id),
        block_number=block.number,
        block_hash=block.hash,
        storage=_freeze(dict(walk.storage)),
        mappings=_freeze(mappings),
        storage_status=walk.status,
        pages=walk.pages,
        tx_count=block.tx_count,
        mapping_slots=_freeze(slots),
        mapping_errors=tuple(_freeze(e) for e in errors),
        unresolved_storage=_freeze(dict(walk.unresolved)),
    )
