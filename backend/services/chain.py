"""Minimal EVM JSON-RPC client: just the calls payment verification needs."""

import itertools
from typing import Any, Optional, Protocol

import requests
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from pricing.config.settings import WEB3_RPC_TIMEOUT, WEB3_RPC_URL


class RpcError(Exception):
    """Node answered with a JSON-RPC error object."""


class ChainClient(Protocol):
    def chain_id(self) -> int: ...

    def block_number(self) -> int: ...

    def get_receipt(self, tx_hash: str) -> Optional[dict]: ...

    def get_transaction(self, tx_hash: str) -> Optional[dict]: ...


def hex_to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16)


class JsonRpcClient:
    def __init__(self, url: str = WEB3_RPC_URL, timeout: int = WEB3_RPC_TIMEOUT):
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
        self._ids = itertools.count(1)

    @retry(
        retry=retry_if_exception_type(requests.RequestException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _call(self, method: str, params: list) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        resp = self.session.post(self.url, json=body, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if data.get("error"):
            logger.warning(f"RPC {method} error: {data['error']}")
            raise RpcError(str(data["error"].get("message", data["error"])))
        return data.get("result")

    def chain_id(self) -> int:
        return hex_to_int(self._call("eth_chainId", []))

    def block_number(self) -> int:
        return hex_to_int(self._call("eth_blockNumber", []))

    def get_receipt(self, tx_hash: str) -> Optional[dict]:
        return self._call("eth_getTransactionReceipt", [tx_hash])

    def get_transaction(self, tx_hash: str) -> Optional[dict]:
        return self._call("eth_getTransactionByHash", [tx_hash])
