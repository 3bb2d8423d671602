from typing import Any, Dict, List, Optional

import pytest
from eth_utils import keccak

from slotscope.config import Config
from slotscope.errors import RpcError
from slotscope.slots import ZERO_WORD, normalize_word

ADDR_A = "0x" + "aa" * 20
ADDR_B = "0x" + "bb" * 20
ADDR_C = "0x" + "cc" * 20
CONTRACT = "0x" + "11" * 20
HOLDER = "0x" + "22" * 20


def addr_topic(address: str) -> str:
    return "0x" + "00" * 12 + address[2:].lower()


def make_block(number: int, tx_count: int = 1) -> Dict[str, Any]:
    return {
        "number": hex(number),
        "hash": "0x" + f"{number:064x}",
        "transactions": ["0x" + f"{number:060x}{i:04x}" for i in range(tx_count)],
    }


class FakeRpc:
    """In-memory stand-in for RpcClient; records every call."""

    def __init__(self, chain_id: int = 1, head: int = 100) -> None:
        self.chain_id = chain_id
        self.head = head
        self.blocks: Dict[int, Dict[str, Any]] = {n: make_block(n) for n in range(head + 1)}
        self.values: Dict[str, str] = {}
        self.logs: List[Dict[str, Any]] = []
        self.debug_error: Optional[Exception] = None
        self.storage_error_slots: set = set()
        self.max_log_range: Optional[int] = None
        self.calls: List[tuple] = []

    # state helpers
    def set_storage(self, slot: Any, value: Any) -> None:
        self.values[normalize_word(slot)] = normalize_word(value)

    def add_log(self, block: int, topics: List[str], address: str = CONTRACT) -> None:
        self.logs.append({"address": address.lower(), "blockNumber": hex(block), "topics": topics, "data": "0x"})

    # RpcClient surface
    def get_chain_id(self) -> int:
        self.calls.append(("eth_chainId",))
        return self.chain_id

    def get_block_number(self) -> int:
        self.calls.append(("eth_blockNumber",))
        return self.head

    def get_block_by_number(self, tag: Any, full_transactions: bool = False) -> Optional[Dict[str, Any]]:
        self.calls.append(("eth_getBlockByNumber", tag))
        if isinstance(tag, str):
            return self.blocks.get(self.head)
        return self.blocks.get(tag)

    def get_storage_at(self, address: str, slot: str, tag: Any = "latest") -> str:
        self.calls.append(("eth_getStorageAt", address, slot, tag))
        normalized = normalize_word(slot)
        if normalized in self.storage_error_slots:
            raise RpcError(-32000, "missing trie node")
        return self.values.get(normalized, ZERO_WORD)

    def get_logs(self, log_filter: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.calls.append(("eth_getLogs", dict(log_filter)))
        start, end = log_filter["fromBlock"], log_filter["toBlock"]
        if self.max_log_range is not None and end - start + 1 > self.max_log_range:
            raise RpcError(-32005, "query returned more than 10000 results")
        topic0 = (log_filter.get("topics") or [None])[0]
        out = []
        for log in self.logs:
            if log["address"] != log_filter["address"].lower():
                continue
            if not start <= int(log["blockNumber"], 16) <= end:
                continue
            if topic0 and log["topics"][0] != topic0:
                continue
            out.append(log)
        return out

    def storage_range_at(self, block_hash: str, tx_index: int, address: str, start_key: str, limit: int):
        self.calls.append(("debug_storageRangeAt", block_hash, tx_index, address, start_key, limit))
        if self.debug_error is not None:
            raise self.debug_error
        entries = sorted(
            ("0x" + keccak(hexstr=slot).hex().removeprefix("0x"), slot, value)
            for slot, value in self.values.items()
        )
        remaining = [e for e in entries if int(e[0], 16) >= int(start_key, 16)]
        page, rest = remaining[:limit], remaining[limit:]
        return {
            "storage": {hashed: {"key": slot, "value": value} for hashed, slot, value in page},
            "nextKey": rest[0][0] if rest else None,
        }

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)


@pytest.fixture
def rpc() -> FakeRpc:
    return FakeRpc()


@pytest.fixture
def config() -> Config:
    return Config(rpc_url="http://localhost:8545", point_read_workers=4)
