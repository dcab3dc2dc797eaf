"""
Bitcoin Core JSON-RPC adapter.

Provides the broadcast half of the wallet collaborator and a polling
implementation of the chain-watch collaborator on top of
``sendrawtransaction`` / ``getblockcount`` / ``getrawtransaction``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Union

import requests

from bitcoin_protocol import Transaction
from trade_errors import ChainBackendError, ChainSubmissionError
from trade_session import ConfirmationEvent

log = logging.getLogger("musig_trade.rpc")

# Substrings of bitcoind reject reasons that a higher fee rate would fix
_INSUFFICIENT_FEE_MARKERS = (
    "min relay fee not met",
    "mempool min fee not met",
    "insufficient fee",
    "fee not met",
)
RPC_VERIFY_REJECTED = -26
RPC_INVALID_ADDRESS_OR_KEY = -5


class RpcError(ChainBackendError):
    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class BitcoindRpc:

    def __init__(
        self,
        node_url: str = "http://localhost:8332",
        rpc_user: str = "bitcoin",
        rpc_pass: str = "",
        timeout: int = 30,
        *,
        poll_interval: float = 10.0,
        finality_depth: int = 6,
    ) -> None:
        self.node_url = node_url
        self.auth = (rpc_user, rpc_pass) if rpc_pass else None
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.finality_depth = finality_depth

    def call(self, method: str, *params: Any) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": "musig-trade",
            "method": method,
            "params": list(params),
        }
        try:
            resp = requests.post(
                self.node_url, json=payload, auth=self.auth, timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise RpcError(f"RPC connection failed: {exc}") from exc

        # bitcoind reports RPC errors with HTTP 500 and a JSON body
        try:
            result = resp.json()
        except ValueError:
            raise RpcError(f"RPC HTTP {resp.status_code}: {resp.text[:200]}")
        error = result.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise RpcError(
                f"{method} failed: {error.get('message', error)}",
                code=error.get("code"),
            )
        if resp.status_code != 200:
            raise RpcError(f"RPC HTTP {resp.status_code}: {resp.text[:200]}")
        return result["result"]

    # ---- broadcast ----------------------------------------------------

    def send_raw_transaction(self, tx: Union[Transaction, bytes]) -> str:
        raw = tx.serialize() if isinstance(tx, Transaction) else tx
        try:
            txid = self.call("sendrawtransaction", raw.hex())
        except RpcError as exc:
            text = str(exc).lower()
            low_fee = any(marker in text for marker in _INSUFFICIENT_FEE_MARKERS)
            raise ChainSubmissionError(
                f"sendrawtransaction rejected: {exc}", insufficient_fee=low_fee,
            ) from exc
        log.info("Broadcast OK - txid=%s", txid)
        return txid

    async def broadcast(self, tx: Transaction, fee_rate_bump: Optional[float] = None) -> str:
        if fee_rate_bump is not None:
            # A raw node cannot re-sign; the caller's wallet must add a CPFP child
            log.warning("fee bump to %.1f sat/vB requested; resubmitting unchanged", fee_rate_bump)
        return await asyncio.to_thread(self.send_raw_transaction, tx)

    # ---- chain watch --------------------------------------------------

    def get_block_count(self) -> int:
        return int(self.call("getblockcount"))

    def get_raw_transaction(self, txid: str) -> Transaction:
        return Transaction.parse(bytes.fromhex(self.call("getrawtransaction", txid, False)))

    def get_confirmations(self, txid: str) -> int:
        try:
            info = self.call("getrawtransaction", txid, True)
        except RpcError as exc:
            if exc.code == RPC_INVALID_ADDRESS_OR_KEY:
                return 0
            raise
        return int(info.get("confirmations", 0))

    async def watch(self, txid: str):
        last = 0
        while True:
            conf = await asyncio.to_thread(self.get_confirmations, txid)
            if conf > 0 and conf != last:
                last = conf
                height = await asyncio.to_thread(self.get_block_count)
                tx = await asyncio.to_thread(self.get_raw_transaction, txid)
                yield ConfirmationEvent(txid, height, conf, tx.serialize())
                if conf >= self.finality_depth:
                    return
            await asyncio.sleep(self.poll_interval)

    async def wait_for_height(self, height: int) -> None:
        while await asyncio.to_thread(self.get_block_count) < height:
            await asyncio.sleep(self.poll_interval)
