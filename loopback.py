"""
In-memory collaborators: a validating toy chain, a BIP-86 wallet on top of
it, and a transport that routes messages straight into the peer engine.

Used by the test-suite and by ``python -m trade_engine``.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Callable, Dict, List, Optional, Set, Tuple

from bitcoin_protocol import (
    SEQUENCE_FINAL,
    Prevout,
    TaprootKey,
    Transaction,
    TxIn,
    TxOut,
    verify_key_path_spend,
)
from musig_keys import KeyShare
from trade_errors import (
    ChainSubmissionError,
    ProtocolViolation,
    RoundOutOfOrder,
    SessionTerminated,
    UnknownSession,
)
from trade_messages import ProtocolMessage
from trade_session import ConfirmationEvent
from trade_tx import PartyRole

log = logging.getLogger("musig_trade.loopback")


# ============================================================
# CHAIN
# ============================================================

class MemoryChain:
    """
    Mempool + blocks with just enough consensus to catch signing bugs:
    spent/missing inputs, nLockTime finality, key-path signatures and a
    minimum relay fee.
    """

    def __init__(
        self,
        start_height: int = 200,
        min_relay_fee_rate: float = 1.0,
        finality_depth: int = 6,
    ) -> None:
        self.height = start_height
        self.min_relay_fee_rate = min_relay_fee_rate
        self.finality_depth = finality_depth
        self._utxos: Dict[Tuple[str, int], TxOut] = {}
        self._txs: Dict[str, Transaction] = {}
        self._mempool: List[str] = []
        self._confirmed_at: Dict[str, int] = {}
        self._tip_changed = asyncio.Event()
        self._faucet = 0
        # Queued rejections returned by the next submit() calls
        self.reject_next: List[ChainSubmissionError] = []

    def fund(self, script_pubkey: bytes, amount: int) -> Prevout:
        """Create a confirmed output out of thin air."""
        self._faucet += 1
        tx = Transaction(
            inputs=[TxIn("00" * 32, self._faucet, SEQUENCE_FINAL)],
            outputs=[TxOut(amount, script_pubkey)],
        )
        txid = tx.txid
        self._txs[txid] = tx
        self._confirmed_at[txid] = self.height
        self._utxos[(txid, 0)] = tx.outputs[0]
        return Prevout(txid, 0, amount, script_pubkey)

    def submit(self, tx: Transaction, fee_bonus: int = 0) -> str:
        txid = tx.txid
        if txid in self._txs:
            return txid
        if self.reject_next:
            raise self.reject_next.pop(0)
        prevouts = []
        for inp in tx.inputs:
            out = self._utxos.get((inp.txid, inp.vout))
            if out is None:
                raise ChainSubmissionError(f"missing or spent input {inp.txid}:{inp.vout}")
            prevouts.append(Prevout(inp.txid, inp.vout, out.amount, out.script_pubkey))
        if not tx.is_final(self.height + 1):
            raise ChainSubmissionError(f"non-final: locktime {tx.locktime} at height {self.height}")
        for index in range(len(tx.inputs)):
            if not verify_key_path_spend(tx, index, prevouts):
                raise ChainSubmissionError(f"invalid key-path signature on input {index}")
        fee = sum(p.amount for p in prevouts) - sum(o.amount for o in tx.outputs)
        if fee < 0:
            raise ChainSubmissionError("outputs exceed inputs")
        if fee + fee_bonus < math.ceil(self.min_relay_fee_rate * tx.vsize):
            raise ChainSubmissionError("min relay fee not met", insufficient_fee=True)

        for inp in tx.inputs:
            del self._utxos[(inp.txid, inp.vout)]
        for vout, out in enumerate(tx.outputs):
            self._utxos[(txid, vout)] = out
        self._txs[txid] = tx
        self._mempool.append(txid)
        log.debug("mempool accepted %s", txid)
        return txid

    def mine(self, blocks: int = 1) -> int:
        for _ in range(blocks):
            self.height += 1
            for txid in self._mempool:
                self._confirmed_at[txid] = self.height
            self._mempool.clear()
        self._tip_changed.set()
        self._tip_changed = asyncio.Event()
        return self.height

    async def run_miner(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.mine()

    def confirmations(self, txid: str) -> int:
        height = self._confirmed_at.get(txid)
        return 0 if height is None else self.height - height + 1

    def in_mempool(self, txid: str) -> bool:
        return txid in self._mempool

    def get_transaction(self, txid: str) -> Optional[Transaction]:
        return self._txs.get(txid)

    def unspent(self, scripts) -> List[Prevout]:
        return [
            Prevout(txid, vout, out.amount, out.script_pubkey)
            for (txid, vout), out in self._utxos.items()
            if out.script_pubkey in scripts and self.confirmations(txid) > 0
        ]

    def is_spent(self, txid: str, vout: int) -> bool:
        return txid in self._txs and (txid, vout) not in self._utxos

    async def _next_block(self) -> None:
        await self._tip_changed.wait()

    async def watch(self, txid: str):
        """Yield a ConfirmationEvent per new depth, up to finality_depth."""
        last = 0
        while True:
            conf = self.confirmations(txid)
            if conf > 0 and conf != last:
                last = conf
                yield ConfirmationEvent(
                    txid, self.height, conf, self._txs[txid].serialize(),
                )
                if conf >= self.finality_depth:
                    return
            await self._next_block()

    async def wait_for_height(self, height: int) -> None:
        while self.height < height:
            await self._next_block()


# ============================================================
# WALLET
# ============================================================

class MemoryWallet:
    """BIP-86 single-key wallet whose coins live on a MemoryChain."""

    def __init__(self, chain: MemoryChain) -> None:
        self.chain = chain
        self._keys: Dict[bytes, TaprootKey] = {}
        self._reserved: Set[Tuple[str, int]] = set()
        self.fee_bumps: List[Optional[float]] = []

    def new_script(self) -> bytes:
        key = TaprootKey()
        self._keys[key.script_pubkey] = key
        return key.script_pubkey

    def fund(self, amount: int) -> Prevout:
        return self.chain.fund(self.new_script(), amount)

    def utxos(self) -> List[Prevout]:
        return self.chain.unspent(self._keys)

    def balance(self) -> int:
        return sum(p.amount for p in self.utxos())

    def select_funding_utxos(self, amount: int) -> List[Prevout]:
        """Largest-first greedy selection; selected coins are reserved."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        spendable = sorted(
            (p for p in self.utxos() if (p.txid, p.vout) not in self._reserved),
            key=lambda p: p.amount,
            reverse=True,
        )
        selected: List[Prevout] = []
        total = 0
        for prev in spendable:
            selected.append(prev)
            total += prev.amount
            if total >= amount:
                self._reserved.update((p.txid, p.vout) for p in selected)
                return selected
        log.warning("Coin selection failed: need %d sats", amount)
        raise ValueError(f"Insufficient balance: need {amount} sats")

    def get_key_share(self, role: PartyRole) -> KeyShare:
        return KeyShare.generate()

    def current_height(self) -> int:
        return self.chain.height

    def sign_funding_inputs(self, tx: Transaction, prevouts) -> Dict[int, bytes]:
        return {
            index: self._keys[prev.script_pubkey].sign_input(tx, index, prevouts)
            for index, prev in enumerate(prevouts)
            if prev.script_pubkey in self._keys
        }

    async def broadcast(self, tx: Transaction, fee_rate_bump: Optional[float] = None) -> str:
        # A bump is modelled as a CPFP child paying fee_rate_bump over tx's vsize
        self.fee_bumps.append(fee_rate_bump)
        bonus = 0 if fee_rate_bump is None else math.ceil(fee_rate_bump * tx.vsize)
        return self.chain.submit(tx, fee_bonus=bonus)


# ============================================================
# TRANSPORT
# ============================================================

class LoopbackTransport:
    """
    Delivers messages to the peer's engine through the base64 wire format.

    Fault injection:
        drop(peer, message) -> bool          message silently lost
        mutate(peer, message) -> message     tamper with the delivered copy
        hold(peer, message) -> bool          delay until the next send to peer
        duplicate                            deliver every message twice
    Messages rejected with RoundOutOfOrder are parked and redelivered after
    the next successful delivery to the same peer.
    """

    UNKNOWN_SESSION_RETRIES = 50

    def __init__(self, latency: float = 0.0, duplicate: bool = False) -> None:
        self.latency = latency
        self.duplicate = duplicate
        self.drop: Optional[Callable[[str, ProtocolMessage], bool]] = None
        self.mutate: Optional[Callable[[str, ProtocolMessage], ProtocolMessage]] = None
        self.hold: Optional[Callable[[str, ProtocolMessage], bool]] = None
        self.sent: List[Tuple[str, ProtocolMessage]] = []
        self.rejections: List[Tuple[str, ProtocolMessage, Exception]] = []
        self.out_of_order = 0
        self._engines: Dict[str, object] = {}
        self._held: List[Tuple[str, str]] = []
        self._parked: List[Tuple[str, str]] = []
        self._tasks: Set[asyncio.Task] = set()

    def register(self, identity: str, engine) -> None:
        self._engines[identity] = engine

    async def send(self, peer_identity: str, message: ProtocolMessage) -> None:
        self.sent.append((peer_identity, message))
        if self.drop is not None and self.drop(peer_identity, message):
            log.debug("dropped round %d to %s", message.round, peer_identity)
            return
        wire = message.to_base64()
        if self.hold is not None and self.hold(peer_identity, message):
            self._held.append((peer_identity, wire))
            return
        for _ in range(2 if self.duplicate else 1):
            self._spawn(self._deliver(peer_identity, wire))
        released = [h for h in self._held if h[0] == peer_identity]
        self._held = [h for h in self._held if h[0] != peer_identity]
        for peer, held_wire in released:
            self._spawn(self._deliver(peer, held_wire))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, peer_identity: str, wire: str) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        message = ProtocolMessage.from_base64(wire)
        if self.mutate is not None:
            message = self.mutate(peer_identity, message)
        engine = self._engines[peer_identity]
        for _ in range(self.UNKNOWN_SESSION_RETRIES):
            try:
                await engine.submit_protocol_message(
                    message.session_id, message.round, message.payload,
                )
                break
            except UnknownSession:
                await asyncio.sleep(0.01)
            except RoundOutOfOrder:
                self.out_of_order += 1
                self._parked.append((peer_identity, wire))
                return
            except (ProtocolViolation, SessionTerminated) as exc:
                log.info("%s rejected round %d: %s", peer_identity, message.round, exc)
                self.rejections.append((peer_identity, message, exc))
                return
        else:
            log.warning("no session %s at %s", message.session_id, peer_identity)
            return
        parked = [p for p in self._parked if p[0] == peer_identity]
        self._parked = [p for p in self._parked if p[0] != peer_identity]
        for peer, parked_wire in parked:
            self._spawn(self._deliver(peer, parked_wire))

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
