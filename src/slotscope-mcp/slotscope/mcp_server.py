"""
MCP server exposing storage dumps, mapping slot resolution and key discovery.
"""

import argparse
import logging
from typing import Any, Optional, Union

from mcp.server.fastmcp import FastMCP

from .config import load_config
from .mappings import compute_slot
from .scanner import ERC20_BALANCES
from .service import StorageService

server = FastMCP(
    name="slotscope-mcp",
    instructions="Dump EVM contract storage, resolve Solidity mapping slots, and discover mapping keys from event logs.",
)

_service: Optional[StorageService] = None


def _get_service() -> StorageService:
    global _service
    if _service is None:
        cfg = load_config()
        logging.basicConfig(level=getattr(logging, cfg.log_level, logging.WARNING))
        _service = StorageService(cfg)
    return _service


@server.tool(
    name="dump_storage",
    title="Dump Contract Storage",
    description="Dump raw storage via debug_storageRangeAt at a pinned block, plus optional mapping values. `mapping_spec` is {\"mappings\": [{name, slot, keyType|keyTypes, keys}]}.",
)
def dump_storage(
    address: str,
    block_tag: Optional[Union[int, str]] = None,
    mapping_spec: Optional[Any] = None,
    page_size: Optional[int] = None,
) -> dict:
    svc = _get_service()
    return svc.dump_state(address, block_tag, mapping_spec=mapping_spec, page_size=page_size)


@server.tool(
    name="extract_mapping_keys",
    title="Discover Mapping Keys",
    description="Scan event logs in block windows for addresses that key a mapping (modes: erc20-balances, erc721-owners, erc20-allowance, events-any). Pass `slot` to get a ready mapping spec; `run_dump` also dumps it.",
)
def extract_mapping_keys(
    address: str,
    emitter: Optional[str] = None,
    mode: str = ERC20_BALANCES,
    event_signature: Optional[str] = None,
    from_block: Optional[Union[int, str]] = None,
    to_block: Optional[Union[int, str]] = None,
    batch_size: Optional[int] = None,
    slot: Optional[Union[int, str]] = None,
    name: Optional[str] = None,
    run_dump: bool = False,
    block_tag: Optional[Union[int, str]] = None,
) -> dict:
    svc = _get_service()
    return svc.extract_keys(
        address,
        emitter=emitter,
        mode=mode,
        event_signature=event_signature,
        from_block=from_block,
        to_block=to_block,
        batch_size=batch_size,
        slot=slot,
        name=name,
        run_dump=run_dump,
        block_tag=block_tag,
    )


@server.tool(
    name="compute_mapping_slot",
    title="Compute Mapping Slot",
    description="Compute the storage slot of mapping[key] (or mapping[key][inner_key]) for a base slot. No RPC needed.",
)
def compute_mapping_slot(
    slot: Union[int, str],
    key: Any,
    key_type: str = "address",
    inner_key: Optional[Any] = None,
    inner_key_type: Optional[str] = None,
) -> dict:
    return compute_slot(slot, key, key_type, inner_key, inner_key_type)


@server.tool(
    name="get_storage_at",
    title="Get Storage Slot",
    description="Read a storage slot via eth_getStorageAt.",
)
def get_storage_at(
    address: str,
    slot: Union[int, str],
    block_tag: Optional[Union[int, str]] = None,
) -> dict:
    svc = _get_service()
    return svc.get_storage_at(address, slot, block_tag)


@server.tool(
    name="probe_debug_api",
    title="Probe Debug API",
    description="Check whether the endpoint serves debug_storageRangeAt.",
)
def probe_debug_api(address: Optional[str] = None, block_tag: Optional[Union[int, str]] = None) -> dict:
    svc = _get_service()
    return svc.probe_debug_api(address, block_tag)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the slotscope MCP server.")
    parser.add_argument(
        "--transport",
        choices=["stdio", "sse", "streamable-http"],
        default="stdio",
        help="Transport protocol for MCP.",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host for SSE/HTTP transports.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for SSE/HTTP transports.",
    )
    parser.add_argument(
        "--mount-path",
        default="/",
        help="Mount path for SSE transport (only when transport=sse).",
    )
    args = parser.parse_args()

    # FastMCP uses host/port only for SSE/HTTP transports; stdio ignores them.
    server.settings.host = args.host
    server.settings.port = args.port

    if args.transport == "sse":
        server.run(transport="sse", mount_path=args.mount_path)
    else:
        server.run(transport=args.transport)


if __name__ == "__main__":
    main()
