import json

import pytest

from slotscope.cache import ResultCache
from slotscope.errors import InvalidAddress, RpcError, UnsupportedKeyType
from slotscope.mappings import compute_slot
from slotscope.scanner import ERC20_ALLOWANCE
from slotscope.service import StorageService
from slotscope.slots import event_topic, normalize_address, normalize_word

from .conftest import ADDR_A, ADDR_B, ADDR_C, CONTRACT, HOLDER, addr_topic, make_block

TRANSFER = event_topic("Transfer(address,address,uint256)")


@pytest.fixture
def service(config, rpc):
    return StorageService(config, client=rpc, cache=ResultCache())


def test_dump_shape_and_pinning(service, rpc):
    rpc.chain_id = 42161
    rpc.set_storage(0, 1)
    leaf = compute_slot(3, HOLDER, "address")["leaf"]
    rpc.set_storage(leaf, 500)

    dump = service.dump_state(
        CONTRACT,
        "latest",
        mapping_spec={"mappings": [{"name": "balances", "slot": 3, "keyType": "address", "keys": [HOLDER]}]},
    )

    assert set(dump) == {"address", "chainId", "blockNumber", "blockHash", "storage", "mappings", "meta"}
    assert dump["address"] == normalize_address(CONTRACT)
    assert dump["chainId"] == 42161
    assert dump["blockNumber"] == rpc.head
    assert dump["blockHash"] == make_block(rpc.head)["hash"]
    assert dump["storage"][normalize_word(0)] == normalize_word(1)
    assert dump["storage"][normalize_word(leaf)] == normalize_word(500)
    assert dump["mappings"] == {"balances": {normalize_address(HOLDER): normalize_word(500)}}
    assert dump["meta"]["storageStatus"] == "complete"
    assert dump["meta"]["partial"] is False
    json.dumps(dump)

    range_calls = [c for c in rpc.calls if c[0] == "debug_storageRangeAt"]
    point_reads = [c for c in rpc.calls if c[0] == "eth_getStorageAt"]
    assert all(c[1] == dump["blockHash"] for c in range_calls)
    assert all(c[3] == dump["blockNumber"] for c in point_reads)


def test_dump_without_debug_api_is_partial_not_error(service, rpc):
    rpc.debug_error = RpcError(-32601, "Method not found")
    dump = service.dump_state(CONTRACT)
    assert dump["storage"] == {}
    assert dump["meta"]["storageStatus"] == "unsupported"
    assert dump["meta"]["partial"] is True


def test_bad_spec_fails_before_any_rpc(service, rpc):
    with pytest.raises(UnsupportedKeyType):
        service.dump_state(CONTRACT, mapping_spec=[{"slot": 1, "keyType": "string", "keys": ["x"]}])
    with pytest.raises(InvalidAddress):
        service.dump_state("0x1234")
    assert rpc.calls == []


def test_complete_dump_is_cached_by_content(service, rpc):
    rpc.set_storage(1, 2)
    first = service.build_dump(CONTRACT, 50)
    calls = len(rpc.calls)
    second = service.build_dump(CONTRACT, 50)
    assert second is first
    assert rpc.count("debug_storageRangeAt") == 1
    assert len(rpc.calls) == calls + 1  # block lookup only
    assert len(service.cache) == 1


def test_partial_dump_is_not_cached(service, rpc):
    rpc.debug_error = RpcError(-32000, "execution timeout")
    service.build_dump(CONTRACT, 50)
    assert len(service.cache) == 0


def test_dump_result_is_immutable(service, rpc):
    rpc.set_storage(1, 2)
    dump = service.build_dump(CONTRACT, 50)
    with pytest.raises(Exception):
        dump.block_number = 1  # type: ignore[misc]
    with pytest.raises(TypeError):
        dump.storage["x"] = "y"  # type: ignore[index]


def test_extract_keys_then_dump_same_pinned_block(service, rpc):
    rpc.add_log(10, [TRANSFER, addr_topic(ADDR_A), addr_topic(ADDR_B)])
    rpc.add_log(20, [TRANSFER, addr_topic(ADDR_B), addr_topic(ADDR_C)])
    leaf = compute_slot(0, ADDR_C, "address")["leaf"]
    rpc.set_storage(leaf, 50)

    result = service.extract_keys(CONTRACT, slot=0, run_dump=True, block_tag=60, batch_size=7)

    keys = [normalize_address(a) for a in (ADDR_A, ADDR_B, ADDR_C)]
    assert result["keys"] == keys
    assert result["scan"]["toBlock"] == 60
    assert result["mappingSpec"]["mappings"][0]["keys"] == keys
    assert result["dump"]["blockNumber"] == 60
    assert result["dump"]["mappings"]["balances"][keys[2]] == normalize_word(50)


def test_extract_keys_defaults_to_head_and_emitter(service, rpc):
    proxy_impl = "0x" + "99" * 20
    rpc.add_log(5, [TRANSFER, addr_topic(ADDR_A), addr_topic(ADDR_B)], address=proxy_impl)
    result = service.extract_keys(CONTRACT, emitter=proxy_impl)
    assert result["scan"]["toBlock"] == rpc.head
    assert result["scan"]["emitter"] == normalize_address(proxy_impl)
    assert "mappingSpec" not in result
    assert result["keys"] == [normalize_address(ADDR_A), normalize_address(ADDR_B)]


def test_extract_keys_allowance_spec(service, rpc):
    approval = event_topic("Approval(address,address,uint256)")
    rpc.add_log(5, [approval, addr_topic(ADDR_A), addr_topic(ADDR_B)])
    result = service.extract_keys(CONTRACT, mode=ERC20_ALLOWANCE, slot="0x2", to_block=10)
    mapping = result["mappingSpec"]["mappings"][0]
    assert mapping["keyTypes"] == ["address", "address"]
    assert mapping["keys"] == [[normalize_address(ADDR_A), [normalize_address(ADDR_B)]]]


def test_extract_keys_dump_requires_slot(service):
    with pytest.raises(ValueError):
        service.extract_keys(CONTRACT, run_dump=True)


def test_get_storage_at_and_probe(service, rpc):
    rpc.set_storage(5, "0xff")
    word = service.get_storage_at(CONTRACT, "5", 30)
    assert word["data"] == normalize_word(255)
    assert word["slot"] == normalize_word(5)

    probe = service.probe_debug_api()
    assert probe["debugStorageRangeAt"] == "supported"
    assert probe["chainId"] == rpc.chain_id


def test_compute_mapping_slot_nested(service):
    result = service.compute_mapping_slot(4, ADDR_A, "address", inner_key=ADDR_B)
    assert result["leaf"] == compute_slot(4, ADDR_A, "address", ADDR_B, "address")["leaf"]
    assert result["innerBase"] == compute_slot(4, ADDR_A, "address")["leaf"]


def test_extract_keys_dump_clamps_scan_to_pinned_block(service, rpc):
    rpc.add_log(50, [TRANSFER, addr_topic(ADDR_A), addr_topic(ADDR_B)])
    rpc.add_log(80, [TRANSFER, addr_topic(ADDR_B), addr_topic(ADDR_C)])

    result = service.extract_keys(CONTRACT, slot=0, run_dump=True, block_tag=60, to_block=90)

    assert result["scan"]["toBlock"] == 60
    assert result["keys"] == [normalize_address(ADDR_A), normalize_address(ADDR_B)]
    log_filters = [c[1] for c in rpc.calls if c[0] == "eth_getLogs"]
    assert max(f["toBlock"] for f in log_filters) == 60


def test_result_cache_evicts_least_recently_used():
    cache = ResultCache(max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1
    cache.set("c", 3)
    assert len(cache) == 2
    assert cache.get("b") is None
    assert cache.get("a") == 1 and cache.get("c") == 3
    with pytest.raises(ValueError):
        ResultCache(max_entries=0)


def test_service_cache_bound_comes_from_config(config, rpc):
    config.cache_max_entries = 1
    service = StorageService(config, client=rpc)
    rpc.set_storage(1, 2)
    service.build_dump(CONTRACT, 50)
    service.build_dump(CONTRACT, 51)
    assert len(service.cache) == 1
