import argparse
import json
import logging
import sys
from typing import Any, Optional

from .config import load_config
from .mappings import compute_slot
from .scanner import ERC20_BALANCES, SCAN_MODES
from .service import StorageService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dump contract storage, resolve mapping slots, and discover mapping keys from logs.",
        allow_abbrev=False,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    dump_parser = subparsers.add_parser("dump", help="Dump raw storage (and mappings) at a pinned block")
    dump_parser.add_argument("--address", required=True, help="Contract address (0x-prefixed).")
    dump_parser.add_argument(
        "--block",
        required=False,
        help="Block tag: latest (default), decimal number, or 0x-prefixed hex.",
    )
    dump_parser.add_argument(
        "--mapping-spec",
        required=False,
        help="Path to a mapping spec JSON file ({\"mappings\": [...]}).",
    )
    dump_parser.add_argument(
        "--page-size",
        required=False,
        type=int,
        help="debug_storageRangeAt page size (default STORAGE_PAGE_SIZE or 1024).",
    )
    dump_parser.add_argument("--out", required=False, help="Write JSON to this path instead of stdout.")

    keys_parser = subparsers.add_parser("extract-keys", help="Discover mapping keys from event logs")
    keys_parser.add_argument("--address", required=True, help="Contract holding the mapping (0x-prefixed).")
    keys_parser.add_argument(
        "--emitter",
        required=False,
        help="Contract emitting the events, if different (e.g. proxy vs implementation).",
    )
    keys_parser.add_argument("--mode", choices=SCAN_MODES, default=ERC20_BALANCES, help="Which topics to collect.")
    keys_parser.add_argument(
        "--event",
        required=False,
        help="Event signature override, e.g. Transfer(address,address,uint256).",
    )
    keys_parser.add_argument("--from", dest="from_block", required=False, help="From block (default 0).")
    keys_parser.add_argument("--to", dest="to_block", required=False, help="To block (default latest).")
    keys_parser.add_argument(
        "--batch",
        required=False,
        type=int,
        help="Blocks per eth_getLogs window (default LOG_BATCH_SIZE or 2000).",
    )
    keys_parser.add_argument(
        "--slot",
        required=False,
        help="Mapping base slot; emits a mapping spec instead of a bare key list.",
    )
    keys_parser.add_argument("--name", required=False, help="Mapping name in the emitted spec.")
    keys_parser.add_argument(
        "--dump",
        action="store_true",
        help="Also dump the contract with the discovered mapping spec (requires --slot).",
    )
    keys_parser.add_argument("--block", required=False, help="Block tag to pin the dump to (with --dump).")
    keys_parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail on the first rejected log window instead of reporting it.",
    )
    keys_parser.add_argument(
        "--timeout",
        required=False,
        type=float,
        help="Stop issuing new log queries after this many seconds (result marked partial).",
    )
    keys_parser.add_argument("--out", required=False, help="Write JSON to this path instead of stdout.")

    slot_parser = subparsers.add_parser("slot", help="Compute a mapping leaf slot (no RPC)")
    slot_parser.add_argument("--slot", required=True, help="Mapping base slot.")
    slot_parser.add_argument("--key", required=True, help="Mapping key (outer key for nested mappings).")
    slot_parser.add_argument("--key-type", default="address", help="address | uint<N> | int<N> | bytes32.")
    slot_parser.add_argument("--inner-key", required=False, help="Inner key for a nested mapping.")
    slot_parser.add_argument("--inner-key-type", required=False, help="Inner key type (default --key-type).")

    storage_parser = subparsers.add_parser("storage-at", help="Read a single storage slot")
    storage_parser.add_argument("--address", required=True, help="Contract address (0x-prefixed).")
    storage_parser.add_argument("--slot", required=True, help="Slot index or 32-byte slot hex.")
    storage_parser.add_argument("--block", required=False, help="Block tag (default latest).")

    probe_parser = subparsers.add_parser("probe-debug", help="Check debug_storageRangeAt support")
    probe_parser.add_argument("--address", required=False, help="Contract address to probe with.")
    probe_parser.add_argument("--block", required=False, help="Block tag (default latest).")

    return parser


def _emit(result: Any, out: Optional[str] = None) -> None:
    text = json.dumps(result, indent=2)
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
        print(f"Wrote {out}", file=sys.stderr)
    else:
        print(text)


def _load_json(path: Optional[str]) -> Any:
    if not path:
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def main(argv: Optional[list[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "slot":
            # Pure slot arithmetic; no endpoint needed.
            result = compute_slot(
                args.slot,
                args.key,
                args.key_type,
                args.inner_key,
                args.inner_key_type,
            )
            _emit(result)
            return

        config = load_config()
        logging.basicConfig(
            level=getattr(logging, config.log_level, logging.WARNING),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        service = StorageService(config)

        if args.command == "dump":
            result = service.dump_state(
                args.address,
                args.block,
                mapping_spec=_load_json(args.mapping_spec),
                page_size=args.page_size,
            )
            _emit(result, args.out)
        elif args.command == "extract-keys":
            result = service.extract_keys(
                args.address,
                emitter=args.emitter,
                mode=args.mode,
                event_signature=args.event,
                from_block=args.from_block,
                to_block=args.to_block,
                batch_size=args.batch,
                slot=args.slot,
                name=args.name,
                run_dump=args.dump,
                block_tag=args.block,
                strict=args.strict,
                timeout=args.timeout,
            )
            if args.dump:
                output = result
            elif args.slot is not None:
                output = result["mappingSpec"]
            else:
                output = result["keys"]
            _emit(output, args.out)
        elif args.command == "storage-at":
            result = service.get_storage_at(args.address, args.slot, args.block)
            _emit(result)
        elif args.command == "probe-debug":
            result = service.probe_debug_api(args.address, args.block)
            _emit(result)
    except Exception as exc:  # pylint: disable=broad-except
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
