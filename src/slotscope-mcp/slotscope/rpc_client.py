import logging
import time
from typing import Any, Dict, List, Optional, Union

import requests

from .errors import RpcError

logger = logging.getLogger(__name__)

BlockTag = Union[int, str]


def _block_param(tag: BlockTag) -> str:
    if isinstance(tag, bool):
        raise ValueError("block tag must be an integer or string.")
    if isinstance(tag, int):
        if tag < 0:
            raise ValueError("block number must be non-negative.")
        return hex(tag)
    return tag


class RpcClient:
    """Minimal JSON-RPC 2.0 client for EVM nodes (HTTP POST)."""

    def __init__(
        self,
        rpc_url: str,
        timeout: int = 10,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        url = (rpc_url or "").strip()
        if not url:
            raise ValueError("rpc_url must be a non-empty string.")

        self.rpc_url = url
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_seconds = float(backoff_seconds)
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if headers:
            self.session.headers.update(dict(headers))
        self._next_id = 1

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        if not isinstance(method, str) or not method.strip():
            raise ValueError("method must be a non-empty string.")
        if params is None:
            params = []
        if not isinstance(params, list):
            raise ValueError("params must be a list.")

        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id,
            "method": method,
            "params": params,
        }
        self._next_id += 1

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.session.post(
                    self.rpc_url,
                    json=payload,
                    timeout=self.timeout,
                )
                if response.status_code in {429} or response.status_code >= 500:
                    if attempt < self.max_retries:
                        logger.debug(
                            "%s: HTTP %s, retrying (%d/%d)",
                            method,
                            response.status_code,
                            attempt,
                            self.max_retries,
                        )
                        time.sleep(self.backoff_seconds * attempt)
                        continue

                response.raise_for_status()
                data = response.json()
                if not isinstance(data, dict):
                    raise ValueError("Unexpected JSON-RPC response (non-object).")

                error_obj = data.get("error")
                if isinstance(error_obj, dict):
                    raise RpcError(
                        error_obj.get("code"),
                        str(error_obj.get("message") or ""),
                        error_obj.get("data"),
                    )

                if "result" not in data:
                    raise ValueError("Unexpected JSON-RPC response (missing result).")
                return data.get("result")
            except RpcError:
                # The node answered; asking again will not change its mind.
                raise
            except requests.RequestException as exc:
                last_error = exc
                if attempt < self.max_retries:
                    time.sleep(self.backoff_seconds * attempt)
                    continue
                raise
            except ValueError as exc:
                last_error = exc
                if attempt < self.max_retries:
                    time.sleep(self.backoff_seconds * attempt)
                    continue
                raise

        if last_error:
            raise last_error
        raise RuntimeError("RPC request failed without raising an exception.")

    def get_chain_id(self) -> int:
        result = self.call("eth_chainId", [])
        if not isinstance(result, str) or not result.startswith("0x"):
            raise ValueError("RPC error: eth_chainId returned unexpected result.")
        return int(result, 16)

    def get_block_number(self) -> int:
        result = self.call("eth_blockNumber", [])
        if not isinstance(result, str) or not result.startswith("0x"):
            raise ValueError("RPC error: eth_blockNumber returned unexpected result.")
        return int(result, 16)

    def get_block_by_number(self, tag: BlockTag, full_transactions: bool = False) -> Optional[Dict[str, Any]]:
        result = self.call("eth_getBlockByNumber", [_block_param(tag), bool(full_transactions)])
        if result is not None and not isinstance(result, dict):
            raise ValueError("RPC error: eth_getBlockByNumber returned unexpected result.")
        return result

    def get_storage_at(self, address: str, slot: str, tag: BlockTag = "latest") -> str:
        result = self.call("eth_getStorageAt", [address, slot, _block_param(tag)])
        if not isinstance(result, str):
            raise ValueError("RPC error: eth_getStorageAt returned unexpected result.")
        return result

    def get_logs(self, log_filter: Dict[str, Any]) -> List[Dict[str, Any]]:
        params = dict(log_filter)
        for key in ("fromBlock", "toBlock"):
            if key in params:
                params[key] = _block_param(params[key])
        result = self.call("eth_getLogs", [params])
        if not isinstance(result, list):
            raise ValueError("RPC error: eth_getLogs returned unexpected result.")
        return result

    def storage_range_at(
        self,
        block_hash: str,
        tx_index: int,
        address: str,
        start_key: str,
        limit: int,
    ) -> Dict[str, Any]:
        result = self.call(
            "debug_storageRangeAt",
            [block_hash, int(tx_index), address, start_key, int(limit)],
        )
        if not isinstance(result, dict):
            raise ValueError("RPC error: debug_storageRangeAt returned unexpected result.")
        return result
