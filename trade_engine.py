"""
MuSig2 + adaptor-signature trade engine.

Request/response surface used by the service layer:

    engine = TradeEngine(wallet, chain, transport, TradeConfig())
    sid = await engine.open_trade_session(PartyRole.TAKER, "peer-1", terms)
    await engine.submit_protocol_message(sid, round, payload)   # from transport
    engine.get_session_state(sid)                                # SessionSnapshot
    await engine.abort_session(sid)
    engine.prune_sessions()                                      # drop finished ones

Each session runs as its own asyncio task; sessions share nothing but the
collaborators passed in here.

Run ``python -m trade_engine`` for a self-contained loopback demo.
"""

from __future__ import annotations

import asyncio
import logging
from logging.handlers import RotatingFileHandler
from typing import Dict, List, Optional

from trade_config import TradeConfig
from trade_errors import UnknownSession
from trade_session import (  # noqa: F401  (re-exported collaborator types)
    ChainWatch,
    ConfirmationEvent,
    SessionSnapshot,
    TradeSession,
    TradeState,
    Transport,
    Wallet,
)
from trade_tx import PartyRole, TradeTerms

log = logging.getLogger("musig_trade")
log.addHandler(logging.NullHandler())


def setup_logging(log_file: str = "musig_trade.log") -> None:
    """
    Configure production logging with rotating file + console.

    Call once at startup; safe to call multiple times (idempotent).
    """
    if getattr(setup_logging, "_done", False):
        return

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    file_handler = RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=5,
    )
    file_handler.setFormatter(fmt)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(fmt)
    console_handler.setLevel(logging.WARNING)

    log.addHandler(file_handler)
    log.addHandler(console_handler)
    log.setLevel(logging.INFO)

    setup_logging._done = True  # type: ignore[attr-defined]


class TradeEngine:
    """Owns the sessions of one local party."""

    def __init__(
        self,
        wallet: Wallet,
        chain: ChainWatch,
        transport: Transport,
        config: Optional[TradeConfig] = None,
    ) -> None:
        self.wallet = wallet
        self.chain = chain
        self.transport = transport
        self.config = config or TradeConfig()
        self._sessions: Dict[str, TradeSession] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def _get(self, session_id: str) -> TradeSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise UnknownSession(session_id) from None

    async def open_trade_session(
        self, role: PartyRole, peer_identity: str, trade_terms: TradeTerms,
    ) -> str:
        session_id = trade_terms.trade_id
        if session_id in self._sessions:
            raise ValueError(f"session {session_id} already open")
        session = TradeSession(
            session_id, role, peer_identity, trade_terms,
            self.wallet, self.chain, self.transport, self.config,
        )
        task = asyncio.create_task(session.run(), name=f"trade-{session_id}")
        session.attach_task(task)
        self._sessions[session_id] = session
        self._tasks[session_id] = task
        log.info("Opened session %s as %s with %s", session_id, PartyRole(role).value,
                 peer_identity)
        return session_id

    async def submit_protocol_message(
        self, session_id: str, round: int, payload: dict,
    ) -> bool:
        """Hand a peer message to its session; False for an ignored resend."""
        return self._get(session_id).receive(round, payload)

    def get_session_state(self, session_id: str) -> SessionSnapshot:
        return self._get(session_id).snapshot()

    def session(self, session_id: str) -> TradeSession:
        return self._get(session_id)

    async def abort_session(self, session_id: str, reason: str = "aborted locally") -> SessionSnapshot:
        session = self._get(session_id)
        session.request_abort(reason, notify_peer=True)
        await session.wait_terminal()
        return session.snapshot()

    async def wait_for_terminal(
        self, session_id: str, timeout: Optional[float] = None,
    ) -> SessionSnapshot:
        session = self._get(session_id)
        task = self._tasks[session_id]
        waiter = asyncio.ensure_future(session.wait_terminal())
        try:
            done, _ = await asyncio.wait(
                {waiter, task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not waiter.done():
                waiter.cancel()
        if task in done and not task.cancelled() and task.exception() is not None:
            raise task.exception()
        if not session.state.is_terminal:
            raise asyncio.TimeoutError(f"session {session_id} still {session.state.value}")
        return session.snapshot()

    def forget_session(self, session_id: str) -> SessionSnapshot:
        """Drop a finished session; returns its final snapshot."""
        session = self._get(session_id)
        if not session.state.is_terminal or not self._tasks[session_id].done():
            raise ValueError(f"session {session_id} has not finished ({session.state.value})")
        del self._sessions[session_id]
        del self._tasks[session_id]
        log.info("Forgot session %s (%s)", session_id, session.state.value)
        return session.snapshot()

    def prune_sessions(self) -> List[SessionSnapshot]:
        """Forget every finished session; meant to be called periodically."""
        finished = [
            sid for sid, session in self._sessions.items()
            if session.state.is_terminal and self._tasks[sid].done()
        ]
        return [self.forget_session(sid) for sid in finished]

    async def close(self) -> None:
        """Cancel every session task (terminal or not) and wait for them."""
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)


# ============================================================
# DEMO
# ============================================================

async def _demo() -> None:
    from loopback import LoopbackTransport, MemoryChain, MemoryWallet

    config = TradeConfig(
        round_timeout=5.0,
        payout_timeout=10.0,
        deposit_confirmations=2,
        redirect_lock_blocks=6,
        broadcast_retry_delay=0.05,
        watch_restart_delay=0.05,
    )
    chain = MemoryChain()
    transport = LoopbackTransport()
    engines = {}
    for name in ("maker", "taker"):
        wallet = MemoryWallet(chain)
        wallet.fund(2_000_000)
        engines[name] = TradeEngine(wallet, chain, transport, config)
        transport.register(name, engines[name])

    terms = TradeTerms("demo-trade", 1_000_000, 150_000, 150_000)
    miner = asyncio.create_task(chain.run_miner(0.05))
    try:
        await engines["maker"].open_trade_session(PartyRole.MAKER, "taker", terms)
        await engines["taker"].open_trade_session(PartyRole.TAKER, "maker", terms)
        for name, engine in engines.items():
            snap = await engine.wait_for_terminal(terms.trade_id, timeout=60)
            print(f"{name:6s} {snap.state.value:16s} deposit={snap.deposit_txid}")
            print(f"{'':6s} payout={snap.payout_txid}")
    finally:
        miner.cancel()
        for engine in engines.values():
            await engine.close()


def _run_demo() -> None:
    """End-to-end two-party trade over the in-memory chain."""
    setup_logging()
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    asyncio.run(_demo())


if __name__ == "__main__":
    _run_demo()
