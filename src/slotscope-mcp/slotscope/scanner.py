"""
Key discovery from event logs.

Mappings keep no on-chain index of their keys, so the population of a
balances or allowance mapping is inferred from the addresses that
events mention. Windows are independent; results are merged after
gathering so the key set does not depend on chunking or scheduling.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .config import DEFAULT_LOG_BATCH_SIZE
from .errors import LogRangeTooLarge, RpcError
from .mappings import MappingSpec
from .slots import APPROVAL_EVENT, TRANSFER_EVENT, event_topic, normalize_address, topic_to_address

logger = logging.getLogger(__name__)

ERC20_BALANCES = "erc20-balances"
ERC721_OWNERS = "erc721-owners"
ERC20_ALLOWANCE = "erc20-allowance"
EVENTS_ANY = "events-any"

SCAN_MODES = (ERC20_BALANCES, ERC721_OWNERS, ERC20_ALLOWANCE, EVENTS_ANY)

_DEFAULT_EVENT = {
    ERC20_BALANCES: TRANSFER_EVENT,
    ERC721_OWNERS: TRANSFER_EVENT,
    ERC20_ALLOWANCE: APPROVAL_EVENT,
    EVENTS_ANY: None,
}


class KeySet:
    """Deduplicated checksummed addresses, iterated in first-seen order."""

    def __init__(self) -> None:
        self._keys: Dict[str, None] = {}

    def add(self, address: str) -> None:
        self._keys.setdefault(address, None)

    def update(self, addresses: Any) -> None:
        for address in addresses:
            self.add(address)

    def __contains__(self, address: object) -> bool:
        return address in self._keys

    def __iter__(self):
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def to_list(self) -> List[str]:
        return list(self._keys)


@dataclass(frozen=True)
class LogScanSpec:
    emitter: str
    from_block: int
    to_block: int
    mode: str = ERC20_BALANCES
    event_signature: Optional[str] = None
    batch_size: int = DEFAULT_LOG_BATCH_SIZE

    def __post_init__(self) -> None:
        if self.mode not in SCAN_MODES:
            raise ValueError(f"Unknown scan mode '{self.mode}'. Supported: {', '.join(SCAN_MODES)}.")
        object.__setattr__(self, "emitter", normalize_address(self.emitter))
        if self.from_block < 0 or self.to_block < 0:
            raise ValueError("Block range must be non-negative.")
        if self.from_block > self.to_block:
            raise ValueError(f"Invalid block range: {self.from_block} -> {self.to_block}.")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1.")

    @property
    def signature(self) -> Optional[str]:
        return self.event_signature or _DEFAULT_EVENT[self.mode]

    @property
    def topic0(self) -> Optional[str]:
        signature = self.signature
        return event_topic(signature) if signature else None

    def windows(self) -> List[Tuple[int, int]]:
        out: List[Tuple[int, int]] = []
        start = self.from_block
        while start <= self.to_block:
            end = min(start + self.batch_size - 1, self.to_block)
            out.append((start, end))
            start = end + 1
        return out


@dataclass
class WindowOutcome:
    from_block: int
    to_block: int
    addresses: List[str] = field(default_factory=list)
    pairs: List[Tuple[str, str]] = field(default_factory=list)
    log_count: int = 0
    error: Optional[Exception] = None
    skipped: bool = False


@dataclass
class ScanResult:
    spec: LogScanSpec
    keys: KeySet = field(default_factory=KeySet)
    pairs: Dict[str, KeySet] = field(default_factory=dict)
    covered: List[Tuple[int, int]] = field(default_factory=list)
    failed: List[WindowOutcome] = field(default_factory=list)
    log_count: int = 0
    aborted: bool = False

    @property
    def partial(self) -> bool:
        return self.aborted or bool(self.failed)

    def raise_for_failures(self) -> None:
        if self.failed:
            error = self.failed[0].error
            if error is not None:
                raise error

    def to_mapping_spec(self, slot: int, name: Optional[str] = None) -> Dict[str, Any]:
        """Render the discovered keys as a mapping spec ready for slot resolution."""
        if self.spec.mode == ERC20_ALLOWANCE:
            spec = MappingSpec(
                name=name or "allowance",
                base_slot=slot,
                key_types=("address", "address"),
                keys=tuple((owner, tuple(spenders)) for owner, spenders in self.pairs.items()),
            )
        else:
            spec = MappingSpec(
                name=name or "balances",
                base_slot=slot,
                key_type="address",
                keys=tuple(self.keys),
            )
        return {"mappings": [spec.to_dict()]}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "emitter": self.spec.emitter,
            "mode": self.spec.mode,
            "eventSignature": self.spec.signature,
            "fromBlock": self.spec.from_block,
            "toBlock": self.spec.to_block,
            "batchSize": self.spec.batch_size,
            "keys": self.keys.to_list(),
            "logCount": self.log_count,
            "coveredRanges": [list(r) for r in self.covered],
            "failedWindows": [
                {"fromBlock": w.from_block, "toBlock": w.to_block, "error": str(w.error)} for w in self.failed
            ],
            "partial": self.partial,
        }


def _merge_ranges(ranges: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
    merged: List[Tuple[int, int]] = []
    for start, end in sorted(ranges):
        if merged and start <= merged[-1][1] + 1:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


class KeyDiscoveryScanner:
    def __init__(self, client: Any, max_workers: int = 1) -> None:
        self.client = client
        self.max_workers = max(1, int(max_workers))

    def _extract(self, spec: LogScanSpec, log: Dict[str, Any]) -> Tuple[List[str], Optional[Tuple[str, str]]]:
        topics = log.get("topics") or []
        if spec.mode == EVENTS_ANY:
            indexed = topics[1:]
        else:
            indexed = topics[1:3]
        addresses = [a for a in (topic_to_address(t) for t in indexed) if a]

        pair = None
        if spec.mode == ERC20_ALLOWANCE and len(topics) >= 3:
            owner, spender = topic_to_address(topics[1]), topic_to_address(topics[2])
            if owner and spender:
                pair = (owner, spender)
        return addresses, pair

    def _scan_window(
        self,
        spec: LogScanSpec,
        window: Tuple[int, int],
        cancel: Optional[threading.Event],
        deadline: Optional[float],
    ) -> WindowOutcome:
        outcome = WindowOutcome(window[0], window[1])
        if (cancel is not None and cancel.is_set()) or (deadline is not None and time.monotonic() >= deadline):
            outcome.skipped = True
            return outcome

        log_filter: Dict[str, Any] = {
            "address": spec.emitter,
            "fromBlock": window[0],
            "toBlock": window[1],
        }
        topic0 = spec.topic0
        if topic0:
            log_filter["topics"] = [topic0]

        try:
            logs = self.client.get_logs(log_filter)
        except RpcError as exc:
            if exc.is_range_limit:
                outcome.error = LogRangeTooLarge(window[0], window[1], exc.message)
            else:
                outcome.error = exc
            return outcome
        except Exception as exc:  # pylint: disable=broad-except
            outcome.error = exc
            return outcome

        outcome.log_count = len(logs)
        for log in logs:
            if not isinstance(log, dict):
                continue
            addresses, pair = self._extract(spec, log)
            outcome.addresses.extend(addresses)
            if pair:
                outcome.pairs.append(pair)
        logger.debug(
            "Scanned blocks %d-%d: %d logs, %d addresses",
            window[0],
            window[1],
            outcome.log_count,
            len(outcome.addresses),
        )
        return outcome

    def scan(
        self,
        spec: LogScanSpec,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        strict: bool = False,
    ) -> ScanResult:
        deadline = time.monotonic() + timeout if timeout is not None else None
        windows = spec.windows()

        if self.max_workers == 1:
            outcomes = [self._scan_window(spec, w, cancel, deadline) for w in windows]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = [executor.submit(self._scan_window, spec, w, cancel, deadline) for w in windows]
                outcomes = [future.result() for future in futures]

        result = ScanResult(spec=spec)
        covered: List[Tuple[int, int]] = []
        for outcome in outcomes:
            if outcome.skipped:
                result.aborted = True
                continue
            if outcome.error is not None:
                logger.warning(
                    "Log window %d-%d failed: %s", outcome.from_block, outcome.to_block, outcome.error
                )
                result.failed.append(outcome)
                continue
            covered.append((outcome.from_block, outcome.to_block))
            result.log_count += outcome.log_count
            result.keys.update(outcome.addresses)
            for owner, spender in outcome.pairs:
                result.pairs.setdefault(owner, KeySet()).add(spender)
        result.covered = _merge_ranges(covered)

        logger.info(
            "Found %d unique addresses from %d logs in %d..%d (%d/%d windows ok)",
            len(result.keys),
            result.log_count,
            spec.from_block,
            spec.to_block,
            len(windows) - len(result.failed) - sum(1 for o in outcomes if o.skipped),
            len(windows),
        )
        if strict:
            result.raise_for_failures()
        return result
