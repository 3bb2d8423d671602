import logging
import threading
from typing import Any, Dict, List, Optional, Union

from .blocks import BlockResolver, PinnedBlock, parse_block_tag
from .cache import ResultCache, content_key
from .config import Config
from .export import DumpResult, assemble
from .mappings import MappingSlotResolver, MappingSpec, compute_slot, parse_mapping_specs
from .rpc_client import RpcClient
from .scanner import ERC20_BALANCES, KeyDiscoveryScanner, LogScanSpec
from .slots import ZERO_ADDRESS, normalize_address, normalize_word
from .walker import StorageRangeWalker

logger = logging.getLogger(__name__)

BlockTag = Optional[Union[int, str]]


class StorageService:
    """Combine configuration, client, cache and the storage components."""

    def __init__(
        self,
        config: Config,
        client: Optional[Any] = None,
        cache: Optional[ResultCache] = None,
    ) -> None:
        self.config = config
        self.client = client or RpcClient(
            rpc_url=config.rpc_url,
            timeout=config.request_timeout,
            max_retries=config.max_retries,
            backoff_seconds=config.backoff_seconds,
        )
        self.cache = cache if cache is not None else ResultCache(config.cache_max_entries)
        self.blocks = BlockResolver(self.client, search_window=config.head_search_window)
        self.walker = StorageRangeWalker(self.client, page_size=config.page_size, max_pages=config.max_pages)
        self.resolver = MappingSlotResolver(self.client, max_workers=config.point_read_workers)
        self.scanner = KeyDiscoveryScanner(self.client, max_workers=config.scan_workers)
        self._chain_id: Optional[int] = None

    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.client.get_chain_id()
        return self._chain_id

    def resolve_block(self, block_tag: BlockTag = None) -> Dict[str, Any]:
        return self.blocks.resolve(block_tag).to_dict()

    def build_dump(
        self,
        address: str,
        block_tag: BlockTag = None,
        mapping_spec: Any = None,
        page_size: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> DumpResult:
        normalized_address = normalize_address(address)
        specs = parse_mapping_specs(mapping_spec)
        self.resolver.plan(specs)
        block = self.blocks.resolve(block_tag)
        return self._dump(normalized_address, block, specs, page_size, cancel)

    def dump_state(
        self,
        address: str,
        block_tag: BlockTag = None,
        mapping_spec: Any = None,
        page_size: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        dump = self.build_dump(address, block_tag, mapping_spec, page_size, cancel)
        return dump.to_dict(include_meta=True)

    def _dump(
        self,
        address: str,
        block: PinnedBlock,
        specs: List[MappingSpec],
        page_size: Optional[int],
        cancel: Optional[threading.Event],
    ) -> DumpResult:
        chain_id = self.chain_id()
        limit = self._normalize_page_size(page_size)
        key = content_key("dump", chain_id, address, block.hash, limit, [s.to_dict() for s in specs])
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Dump cache hit for %s at %s", address, block.hash)
            return cached

        walk = self.walker.walk(address, block.hash, page_size=limit, cancel=cancel)
        mapping_results = []
        if specs:
            mapping_results.append(self.resolver.resolve(address, specs, block.number, cancel=cancel))

        dump = assemble(address, chain_id, block, walk, mapping_results)
        if not dump.partial:
            self.cache.set(key, dump)
        return dump

    def extract_keys(
        self,
        address: str,
        emitter: Optional[str] = None,
        mode: str = ERC20_BALANCES,
        event_signature: Optional[str] = None,
        from_block: BlockTag = None,
        to_block: BlockTag = None,
        batch_size: Optional[int] = None,
        slot: Optional[Union[int, str]] = None,
        name: Optional[str] = None,
        run_dump: bool = False,
        block_tag: BlockTag = None,
        strict: bool = False,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        normalized_address = normalize_address(address)
        normalized_emitter = normalize_address(emitter) if emitter else normalized_address
        if run_dump and slot is None:
            raise ValueError("slot is required to dump the discovered mapping.")
        base_slot = self._parse_slot_index(slot) if slot is not None else None

        pinned: Optional[PinnedBlock] = None
        if run_dump:
            pinned = self.blocks.resolve(block_tag)

        start = self._parse_block_number(from_block, 0, "from_block")
        end_tag = parse_block_tag(to_block)
        if isinstance(end_tag, int):
            end = end_tag
            if pinned is not None and end > pinned.number:
                logger.info("Clamping to_block %d to pinned block %d", end, pinned.number)
                end = pinned.number
        elif pinned is not None:
            end = pinned.number
        else:
            end = self.client.get_block_number()

        spec = LogScanSpec(
            emitter=normalized_emitter,
            from_block=start,
            to_block=end,
            mode=mode,
            event_signature=event_signature,
            batch_size=self._normalize_positive(batch_size, self.config.log_batch_size, "batch_size"),
        )
        scan = self.scanner.scan(spec, cancel=cancel, timeout=timeout, strict=strict)

        response: Dict[str, Any] = {
            "address": normalized_address,
            "keys": scan.keys.to_list(),
            "scan": scan.to_dict(),
        }
        if base_slot is not None:
            mapping_spec = scan.to_mapping_spec(base_slot, name)
            response["mappingSpec"] = mapping_spec
            if pinned is not None:
                specs = parse_mapping_specs(mapping_spec)
                dump = self._dump(normalized_address, pinned, specs, None, cancel)
                response["dump"] = dump.to_dict(include_meta=True)
        return response

    def compute_mapping_slot(
        self,
        slot: Union[int, str],
        key: Any,
        key_type: str = "address",
        inner_key: Any = None,
        inner_key_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        return compute_slot(self._parse_slot_index(slot), key, key_type, inner_key, inner_key_type)

    def get_storage_at(self, address: str, slot: Union[int, str], block_tag: BlockTag = None) -> Dict[str, Any]:
        normalized_address = normalize_address(address)
        normalized_slot = normalize_word(self._parse_slot_index(slot), "slot")
        tag = parse_block_tag(block_tag)

        word = normalize_word(self.client.get_storage_at(normalized_address, normalized_slot, tag), "storage value")

        return {
            "address": normalized_address,
            "chainId": self.chain_id(),
            "slot": normalized_slot,
            "data": word,
            "blockTag": tag,
        }

    def probe_debug_api(self, address: Optional[str] = None, block_tag: BlockTag = None) -> Dict[str, Any]:
        target = normalize_address(address) if address else ZERO_ADDRESS
        block = self.blocks.resolve(block_tag)
        capability = self.walker.probe(block.hash, target)
        return {
            "chainId": self.chain_id(),
            "blockNumber": block.number,
            "blockHash": block.hash,
            "debugStorageRangeAt": capability.value,
        }

    def _normalize_page_size(self, page_size: Optional[int]) -> int:
        return self._normalize_positive(page_size, self.config.page_size, "page_size")

    def _normalize_positive(self, value: Optional[Any], default: int, field: str) -> int:
        if value is None:
            return default
        if isinstance(value, bool):
            raise ValueError(f"{field} must be a positive integer.")
        if isinstance(value, (int, float)):
            ivalue = int(value)
        elif isinstance(value, str) and value.strip().isdigit():
            ivalue = int(value.strip())
        else:
            raise ValueError(f"{field} must be a positive integer.")
        if ivalue < 1:
            raise ValueError(f"{field} must be a positive integer.")
        return ivalue

    def _parse_slot_index(self, slot: Union[int, str]) -> int:
        if isinstance(slot, bool) or not isinstance(slot, (int, str)):
            raise ValueError("slot must be a non-negative integer in decimal or 0x-prefixed hexadecimal.")
        normalized = normalize_word(slot if isinstance(slot, int) else self._parse_int_text(slot), "slot")
        return int(normalized, 16)

    def _parse_int_text(self, text: str) -> int:
        candidate = text.strip().lower()
        message = "slot must be a non-negative integer in decimal or 0x-prefixed hexadecimal."
        if candidate.startswith("0x"):
            try:
                return int(candidate, 16)
            except ValueError as exc:
                raise ValueError(message) from exc
        if candidate.isdigit():
            return int(candidate)
        raise ValueError(message)

    def _parse_block_number(self, value: BlockTag, default: int, field: str) -> int:
        if value is None:
            return default
        parsed = parse_block_tag(value)
        if not isinstance(parsed, int):
            raise ValueError(f"{field} must be a block number in decimal or 0x-prefixed hexadecimal.")
        return parsed
