import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .config import DEFAULT_HEAD_SEARCH_WINDOW
from .errors import BlockNotFound

logger = logging.getLogger(__name__)

SYMBOLIC_TAGS = {"latest", "safe", "finalized", "pending", "earliest"}


@dataclass(frozen=True)
class PinnedBlock:
    number: int
    hash: str
    tx_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"number": self.number, "hash": self.hash, "txCount": self.tx_count}


def parse_block_tag(tag: Optional[Union[int, str]]) -> Union[int, str]:
    """Return an explicit block number (int) or a lower-cased symbolic tag."""
    if tag is None:
        return "latest"
    message = "block tag must be latest|safe|finalized|pending|earliest or a block number."
    if isinstance(tag, bool):
        raise ValueError(message)
    if isinstance(tag, int):
        if tag < 0:
            raise ValueError("block number must be non-negative.")
        return tag
    if not isinstance(tag, str):
        raise ValueError(message)

    candidate = tag.strip().lower()
    if candidate in SYMBOLIC_TAGS:
        return candidate
    if candidate.isdigit():
        return int(candidate)
    if candidate.startswith("0x"):
        try:
            return int(candidate, 16)
        except ValueError as exc:
            raise ValueError(message) from exc
    raise ValueError(message)


def _pin(block: Dict[str, Any]) -> PinnedBlock:
    number = block.get("number")
    block_hash = block.get("hash")
    if not isinstance(number, str) or not isinstance(block_hash, str):
        raise ValueError("Block is missing number/hash (pending block?).")
    transactions = block.get("transactions") or []
    return PinnedBlock(number=int(number, 16), hash=block_hash.lower(), tx_count=len(transactions))


class BlockResolver:
    """
    Pick the block a dump is pinned to.

    debug_storageRangeAt addresses state by transaction index inside a block,
    so for symbolic tags we prefer the most recent block that carries at
    least one transaction.
    """

    def __init__(self, client: Any, search_window: int = DEFAULT_HEAD_SEARCH_WINDOW) -> None:
        self.client = client
        self.search_window = max(0, int(search_window))

    def resolve(self, tag: Optional[Union[int, str]] = None) -> PinnedBlock:
        parsed = parse_block_tag(tag)

        if isinstance(parsed, int):
            block = self.client.get_block_by_number(parsed)
            if not block:
                raise BlockNotFound(parsed)
            pinned = _pin(block)
            logger.info("Pinned block %d (%s), %d txs", pinned.number, pinned.hash, pinned.tx_count)
            return pinned

        head_block = self.client.get_block_by_number(parsed)
        if not head_block:
            raise BlockNotFound(parsed)
        head = _pin(head_block)
        if head.tx_count > 0:
            logger.info("Pinned head block %d (%s), %d txs", head.number, head.hash, head.tx_count)
            return head

        lowest = max(0, head.number - self.search_window)
        for number in range(head.number - 1, lowest - 1, -1):
            block = self.client.get_block_by_number(number)
            if not block:
                continue
            candidate = _pin(block)
            if candidate.tx_count > 0:
                logger.info(
                    "Pinned block %d (%s), %d txs; head %d was empty",
                    candidate.number,
                    candidate.hash,
                    candidate.tx_count,
                    head.number,
                )
                return candidate

        logger.warning(
            "No block with transactions in %d..%d; falling back to empty head %d, dump may be empty",
            lowest,
            head.number,
            head.number,
        )
        return head
