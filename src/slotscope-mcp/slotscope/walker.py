"""
Exhaustive storage dump through ``debug_storageRangeAt``.

Pages are causally ordered by cursor, so the walk is strictly sequential.
Absence of the debug namespace is an expected operating condition: it is
negotiated once, cached, and reported as a status rather than raised.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from .config import DEFAULT_MAX_PAGES, DEFAULT_PAGE_SIZE
from .errors import RpcError, UnsupportedDebugAPI
from .slots import ZERO_WORD, normalize_word

logger = logging.getLogger(__name__)


class DebugCapability(str, Enum):
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"
    UNKNOWN = "unknown"


class WalkStatus(str, Enum):
    COMPLETE = "complete"
    UNSUPPORTED = "unsupported"
    PARTIAL = "partial"
    CAPPED = "capped"
    ABORTED = "aborted"


@dataclass(frozen=True)
class WalkResult:
    storage: Mapping[str, str]
    status: WalkStatus
    pages: int
    error: Optional[str] = None
    # Entries the node returned without a slot preimage, keyed by hashed slot.
    unresolved: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def partial(self) -> bool:
        return self.status is not WalkStatus.COMPLETE


def _next_cursor(page: Dict[str, Any]) -> Optional[str]:
    raw = page.get("nextKey")
    if not raw or not isinstance(raw, str) or raw.lower() == "0x":
        return None
    try:
        cursor = normalize_word(raw, "nextKey")
    except ValueError:
        return None
    if cursor == ZERO_WORD:
        return None
    return cursor


def _page_entries(page: Dict[str, Any]) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Split a page into slot-keyed entries and entries known only by hashed slot."""
    entries = page.get("storage") or {}
    if not isinstance(entries, dict):
        raise ValueError("debug_storageRangeAt returned a non-object storage field.")

    resolved: Dict[str, str] = {}
    unresolved: Dict[str, str] = {}
    for hashed_key, entry in entries.items():
        # Geth reports the slot preimage as "key", or null when it lacks it.
        slot = entry.get("key") if isinstance(entry, dict) else None
        value = entry.get("value") if isinstance(entry, dict) else entry
        if value is None:
            continue
        if slot:
            resolved[normalize_word(slot, "slot")] = normalize_word(value, "value")
        else:
            unresolved[normalize_word(hashed_key, "hashed slot")] = normalize_word(value, "value")
    return resolved, unresolved


class StorageRangeWalker:
    def __init__(
        self,
        client: Any,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1.")
        if max_pages < 1:
            raise ValueError("max_pages must be >= 1.")
        self.client = client
        self.page_size = int(page_size)
        self.max_pages = int(max_pages)
        self.capability = DebugCapability.UNKNOWN

    def _fetch(self, block_hash: str, address: str, cursor: str, limit: int) -> Dict[str, Any]:
        try:
            page = self.client.storage_range_at(block_hash, 0, address, cursor, limit)
        except RpcError as exc:
            if exc.is_method_not_found:
                self.capability = DebugCapability.UNSUPPORTED
                raise UnsupportedDebugAPI(str(exc)) from exc
            raise
        self.capability = DebugCapability.SUPPORTED
        return page

    def probe(self, block_hash: str, address: str) -> DebugCapability:
        """Negotiate debug_storageRangeAt support with a single one-entry request."""
        if self.capability is not DebugCapability.UNKNOWN:
            return self.capability
        try:
            self._fetch(block_hash, address, ZERO_WORD, 1)
        except UnsupportedDebugAPI:
            logger.warning("debug_storageRangeAt is not available on this endpoint")
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("debug_storageRangeAt probe failed: %s", exc)
        return self.capability

    def walk(
        self,
        address: str,
        block_hash: str,
        page_size: Optional[int] = None,
        start_key: str = ZERO_WORD,
        cancel: Optional[threading.Event] = None,
    ) -> WalkResult:
        limit = int(page_size or self.page_size)
        if limit < 1:
            raise ValueError("page_size must be >= 1.")

        storage: Dict[str, str] = {}
        unresolved: Dict[str, str] = {}

        def finish(status: WalkStatus, pages: int, error: Optional[str] = None) -> WalkResult:
            if unresolved:
                logger.warning("%d entries of %s came back without a slot preimage", len(unresolved), address)
            return WalkResult(MappingProxyType(storage), status, pages, error, MappingProxyType(unresolved))

        if self.capability is DebugCapability.UNSUPPORTED:
            return finish(WalkStatus.UNSUPPORTED, 0, "debug_storageRangeAt not available")

        cursor = normalize_word(start_key, "start_key")
        pages = 0
        while True:
            if pages >= self.max_pages:
                logger.warning(
                    "Storage walk of %s capped at %d pages (%d slots); result is partial",
                    address,
                    pages,
                    len(storage),
                )
                return finish(WalkStatus.CAPPED, pages)
            if cancel is not None and cancel.is_set():
                logger.info("Storage walk of %s aborted after %d pages", address, pages)
                return finish(WalkStatus.ABORTED, pages)

            try:
                page = self._fetch(block_hash, address, cursor, limit)
                entries, hashed_entries = _page_entries(page)
            except UnsupportedDebugAPI as exc:
                logger.warning("debug_storageRangeAt unavailable, returning %d slots: %s", len(storage), exc)
                return finish(WalkStatus.UNSUPPORTED, pages, str(exc))
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning(
                    "debug_storageRangeAt failed on page %d, returning %d slots: %s",
                    pages + 1,
                    len(storage),
                    exc,
                )
                return finish(WalkStatus.PARTIAL, pages, str(exc))

            pages += 1
            storage.update(entries)
            unresolved.update(hashed_entries)
            logger.debug(
                "Page %d: %d entries (total %d)", pages, len(entries) + len(hashed_entries), len(storage)
            )

            next_cursor = _next_cursor(page)
            if next_cursor is None:
                logger.info("Storage walk of %s complete: %d slots in %d pages", address, len(storage), pages)
                return finish(WalkStatus.COMPLETE, pages)
            cursor = next_cursor
