import json

import pytest

from slotscope import cli
from slotscope.config import Config, load_config
from slotscope.mappings import compute_slot
from slotscope.slots import event_topic, normalize_address

from .conftest import CONTRACT, HOLDER, FakeRpc, addr_topic


def test_slot_command_needs_no_endpoint(monkeypatch, capsys):
    monkeypatch.delenv("RPC_URL", raising=False)
    cli.main(["slot", "--slot", "3", "--key", HOLDER])
    out = json.loads(capsys.readouterr().out)
    assert out["leaf"] == compute_slot(3, HOLDER, "address")["leaf"]
    assert out["key"] == normalize_address(HOLDER)


def test_errors_exit_nonzero(monkeypatch, capsys):
    monkeypatch.delenv("RPC_URL", raising=False)
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["dump", "--address", CONTRACT])
    assert excinfo.value.code == 1
    assert "RPC_URL is required" in capsys.readouterr().err


def _patch_service(monkeypatch, rpc):
    original = cli.StorageService
    monkeypatch.setattr(cli, "load_config", lambda: Config(rpc_url="http://node"))
    monkeypatch.setattr(cli, "StorageService", lambda config: original(config, client=rpc))


def test_dump_writes_out_file(monkeypatch, tmp_path):
    rpc = FakeRpc()
    rpc.set_storage(0, 7)
    _patch_service(monkeypatch, rpc)
    spec_path = tmp_path / "spec.json"
    spec_path.write_text(json.dumps({"mappings": [{"name": "m", "slot": 1, "keyType": "uint256", "keys": [1]}]}))
    out_path = tmp_path / "dump.json"

    cli.main(["dump", "--address", CONTRACT, "--block", "12", "--mapping-spec", str(spec_path), "--out", str(out_path)])

    dump = json.loads(out_path.read_text())
    assert dump["blockNumber"] == 12
    assert dump["mappings"] == {"m": {"1": "0x" + "00" * 32}}


def test_extract_keys_prints_flat_list(monkeypatch, capsys):
    rpc = FakeRpc()
    transfer = event_topic("Transfer(address,address,uint256)")
    rpc.add_log(3, [transfer, addr_topic(HOLDER), addr_topic(CONTRACT)])
    _patch_service(monkeypatch, rpc)

    cli.main(["extract-keys", "--address", CONTRACT, "--from", "0", "--to", "10", "--batch", "2"])
    assert json.loads(capsys.readouterr().out) == [normalize_address(HOLDER), normalize_address(CONTRACT)]


def test_load_config_from_env(monkeypatch):
    monkeypatch.setenv("RPC_URL", " http://node:8545 ")
    monkeypatch.setenv("STORAGE_PAGE_SIZE", "256")
    monkeypatch.setenv("SCAN_WORKERS", "4")
    monkeypatch.setenv("CACHE_MAX_ENTRIES", "16")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    cfg = load_config()
    assert cfg.rpc_url == "http://node:8545"
    assert cfg.page_size == 256
    assert cfg.scan_workers == 4
    assert cfg.max_pages == 1024
    assert cfg.cache_max_entries == 16
    assert cfg.log_level == "DEBUG"


def test_load_config_rejects_bad_numbers(monkeypatch):
    monkeypatch.setenv("RPC_URL", "http://node")
    monkeypatch.setenv("LOG_BATCH_SIZE", "0")
    with pytest.raises(ValueError):
        load_config()
