# Copyright (c) 2026 Emiliano G Solazzi
# 
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
# 
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
# 
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.
# 
# Commercial licenses available. Contact: emiliano.arlington@gmail.com
import asyncio
import copy
import logging
from dataclasses import replace

import pytest

from bitcoin_protocol import Transaction
from bitcoin_rpc import RpcError
from loopback import LoopbackTransport, MemoryChain, MemoryWallet
from trade_config import TradeConfig
from trade_engine import TradeEngine
from trade_errors import (
    ChainSubmissionError,
    ProtocolViolation,
    RoundOutOfOrder,
    SessionTerminated,
    UnknownSession,
)
from trade_messages import ProtocolMessage, Round
from trade_session import TradeState, _SessionSecrets
from trade_tx import Leg, PartyRole, TradeTerms

TERMS = TradeTerms("trade-42", 1_000_000, 150_000, 150_000)

FAST = TradeConfig(
    round_timeout=3.0,
    payout_timeout=5.0,
    deposit_confirmations=2,
    redirect_lock_blocks=3,
    broadcast_retries=2,
    broadcast_retry_delay=0.01,
    watch_restart_delay=0.01,
)


async def _trade(transport=None, config=FAST, prepare=None, timeout=30):
    """Run one maker/taker trade to completion over the in-memory stack."""
    transport = transport or LoopbackTransport()
    chain = MemoryChain()
    wallets, engines = {}, {}
    for name in ("maker", "taker"):
        wallets[name] = MemoryWallet(chain)
        wallets[name].fund(2_000_000)
        engines[name] = TradeEngine(wallets[name], chain, transport, config)
        transport.register(name, engines[name])
    if prepare is not None:
        prepare(chain, transport, wallets)

    miner = asyncio.create_task(chain.run_miner(0.01))
    try:
        await engines["maker"].open_trade_session(PartyRole.MAKER, "taker", TERMS)
        await engines["taker"].open_trade_session(PartyRole.TAKER, "maker", TERMS)
        snaps = {}
        for name, engine in engines.items():
            snaps[name] = await engine.wait_for_terminal(TERMS.trade_id, timeout=timeout)
        # let the last payout / redirect collect a confirmation
        await asyncio.sleep(0.1)
        balances = {name: wallet.balance() for name, wallet in wallets.items()}
    finally:
        miner.cancel()
        for engine in engines.values():
            await engine.close()
        await transport.drain()
    return {
        "snaps": snaps,
        "chain": chain,
        "wallets": wallets,
        "engines": engines,
        "transport": transport,
        "balances": balances,
    }


class _Recorder:
    """Transport that only remembers what was sent."""

    def __init__(self):
        self.sent = []

    async def send(self, peer_identity, message):
        self.sent.append((peer_identity, message))


class _Unreachable:
    """Transport whose peer is gone."""

    async def send(self, peer_identity, message):
        raise ConnectionError("peer unreachable")


async def _unreachable_watch():
    raise RpcError("RPC connection failed: connection refused")
    yield  # makes this an async generator


# ============================================================
# END-TO-END
# ============================================================

class TestHappyPath:
    """Cooperative trade: both parties end in PayoutConfirmed."""

    def test_both_parties_paid(self):
        run = asyncio.run(_trade())
        maker, taker = run["snaps"]["maker"], run["snaps"]["taker"]
        assert maker.state is TradeState.PAYOUT_CONFIRMED
        assert taker.state is TradeState.PAYOUT_CONFIRMED
        assert maker.error is None and taker.error is None

        chain = run["chain"]
        assert maker.deposit_txid == taker.deposit_txid
        assert chain.confirmations(maker.deposit_txid) > 0
        # the buyer's payout is the swap the seller learnt the secret from
        assert taker.payout_txid == taker.swap_txid == maker.swap_txid
        assert chain.confirmations(taker.payout_txid) > 0
        assert chain.confirmations(maker.payout_txid) > 0
        assert chain.is_spent(maker.deposit_txid, 0)
        assert chain.is_spent(maker.deposit_txid, 1)
        assert maker.redirect_txid is None and taker.redirect_txid is None

    def test_funds_move_to_the_buyer(self):
        run = asyncio.run(_trade())
        # taker (buyer) gains the trade amount, maker (seller) loses it; both pay fees
        assert 2_990_000 < run["balances"]["taker"] < 3_000_000
        assert 990_000 < run["balances"]["maker"] < 1_000_000

    def test_parties_agree_on_key_and_transactions(self):
        run = asyncio.run(_trade())
        maker = run["engines"]["maker"].session(TERMS.trade_id)
        taker = run["engines"]["taker"].session(TERMS.trade_id)
        assert maker.aggregated_key.output_key == taker.aggregated_key.output_key
        assert maker.redirect.serialize() == taker.redirect.serialize()
        for leg in Leg:
            assert maker.swaps[leg].txid == taker.swaps[leg].txid
        assert maker.redirect_lock_height == taker.redirect_lock_height

    def test_secrets_erased_on_completion(self):
        run = asyncio.run(_trade())
        for engine in run["engines"].values():
            session = engine.session(TERMS.trade_id)
            assert session._vault.erased
            with pytest.raises(SessionTerminated):
                session._vault.key_share

    def test_duplicate_delivery_is_ignored(self):
        run = asyncio.run(_trade(LoopbackTransport(duplicate=True)))
        for snap in run["snaps"].values():
            assert snap.state is TradeState.PAYOUT_CONFIRMED

    def test_reordered_delivery_recovers(self):
        transport = LoopbackTransport()
        # maker's KEYS overtaken by its DEPOSIT_PARTIALS
        transport.hold = lambda peer, msg: peer == "taker" and msg.round == Round.KEYS
        run = asyncio.run(_trade(transport))
        for snap in run["snaps"].values():
            assert snap.state is TradeState.PAYOUT_CONFIRMED
        assert transport.out_of_order >= 1


class TestChainSubmission:

    def test_fee_bump_retry(self):
        def prepare(chain, transport, wallets):
            chain.reject_next.append(
                ChainSubmissionError("min relay fee not met", insufficient_fee=True)
            )

        run = asyncio.run(_trade(prepare=prepare))
        for snap in run["snaps"].values():
            assert snap.state is TradeState.PAYOUT_CONFIRMED
        bumps = [b for w in run["wallets"].values() for b in w.fee_bumps]
        assert 15.0 in bumps

    def test_exhausted_broadcast_warns_and_aborts(self):
        def prepare(chain, transport, wallets):
            chain.reject_next.extend(
                ChainSubmissionError("bad-txns-inputs-missingorspent") for _ in range(10)
            )

        run = asyncio.run(_trade(prepare=prepare))
        snaps = run["snaps"]
        for snap in snaps.values():
            assert snap.state is TradeState.ABORTED
        warnings = [w for snap in snaps.values() for w in snap.warnings]
        assert any("deposit broadcast failed" in w for w in warnings)
        assert run["chain"].get_transaction(snaps["taker"].deposit_txid) is None

    def test_rejected_payout_is_exported(self):
        def prepare(chain, transport, wallets):
            maker = wallets["maker"]
            broadcast = maker.broadcast

            async def reject_seller_payout(tx, fee_rate_bump=None):
                # the seller's payout is the only single-input spend of deposit vout 1
                if len(tx.inputs) == 1 and tx.inputs[0].vout == 1:
                    raise ChainSubmissionError("rejected")
                return await broadcast(tx, fee_rate_bump)

            maker.broadcast = reject_seller_payout

        run = asyncio.run(_trade(prepare=prepare))
        maker, taker = run["snaps"]["maker"], run["snaps"]["taker"]
        assert taker.state is TradeState.PAYOUT_CONFIRMED
        assert maker.state is TradeState.ABORTED
        assert maker.redirect_txid is None
        assert any("payout broadcast failed" in w for w in maker.warnings)

        payout = Transaction.parse(bytes.fromhex(maker.signed_payout))
        assert payout.txid == maker.payout_txid
        # still valid and spendable once the node accepts it
        assert run["chain"].submit(payout) == maker.payout_txid

    def test_watch_backend_errors_are_retried(self):
        failures = []

        def prepare(chain, transport, wallets):
            watch = chain.watch

            def flaky_watch(txid):
                if len(failures) < 4:
                    failures.append(txid)
                    return _unreachable_watch()
                return watch(txid)

            chain.watch = flaky_watch

        run = asyncio.run(_trade(prepare=prepare))
        assert len(failures) == 4
        for snap in run["snaps"].values():
            assert snap.state is TradeState.PAYOUT_CONFIRMED
            assert snap.error is None


# ============================================================
# FAILURE SCENARIOS
# ============================================================

class TestTimeoutsAndViolations:

    def test_missing_swap_partials_redirects(self):
        transport = LoopbackTransport()
        transport.drop = lambda peer, msg: peer == "taker" and msg.round == Round.SWAP_PARTIALS
        run = asyncio.run(_trade(transport, config=replace(FAST, round_timeout=1.0)))
        maker, taker = run["snaps"]["maker"], run["snaps"]["taker"]

        assert taker.state is TradeState.TIMEOUT_REDIRECT
        assert taker.timeouts[-1].round == Round.SWAP_PARTIALS
        assert taker.redirect_txid is not None
        assert run["chain"].get_transaction(taker.redirect_txid) is not None
        # the seller never sees the buyer's swap and falls back to the same redirect
        assert maker.state is TradeState.TIMEOUT_REDIRECT
        assert maker.redirect_txid == taker.redirect_txid
        assert maker.payout_txid is None
        # each party gets its own contribution back, less fees
        for balance in run["balances"].values():
            assert 1_990_000 < balance < 2_000_000

    def test_withheld_deposit_witnesses_redirects(self):
        transport = LoopbackTransport()
        transport.drop = (
            lambda peer, msg: peer == "taker" and msg.round == Round.DEPOSIT_WITNESSES
        )
        run = asyncio.run(_trade(transport, config=replace(FAST, round_timeout=1.0)))
        maker, taker = run["snaps"]["maker"], run["snaps"]["taker"]
        chain = run["chain"]

        # the maker had both witness sets and published the deposit alone
        assert chain.confirmations(taker.deposit_txid) > 0
        assert taker.state is TradeState.TIMEOUT_REDIRECT
        assert taker.timeouts[-1].round == Round.DEPOSIT_WITNESSES
        assert taker.redirect_txid is not None
        assert chain.get_transaction(taker.redirect_txid) is not None
        assert maker.state is TradeState.TIMEOUT_REDIRECT
        assert maker.redirect_txid == taker.redirect_txid
        for balance in run["balances"].values():
            assert 1_990_000 < balance < 2_000_000

    def test_late_buyer_swap_still_pays_seller(self):
        def prepare(chain, transport, wallets):
            taker = wallets["taker"]
            broadcast = taker.broadcast

            async def slow_buyer_swap(tx, fee_rate_bump=None):
                if len(tx.inputs) == 1 and tx.inputs[0].vout == 0:
                    await asyncio.sleep(1.0)
                return await broadcast(tx, fee_rate_bump)

            taker.broadcast = slow_buyer_swap

        config = replace(FAST, payout_timeout=0.5, redirect_lock_blocks=1000)
        run = asyncio.run(_trade(config=config, prepare=prepare))
        maker, taker = run["snaps"]["maker"], run["snaps"]["taker"]

        assert taker.state is TradeState.PAYOUT_CONFIRMED
        # the seller's deadline passed, yet the swap showed up before the redirect lock
        assert maker.timeouts[-1].round == Round.PAYOUT
        assert maker.state is TradeState.PAYOUT_CONFIRMED
        assert maker.redirect_txid is None
        assert run["chain"].confirmations(maker.payout_txid) > 0

    def test_wallet_failure_aborts_and_erases(self):
        async def scenario():
            chain = MemoryChain()
            recorder = _Recorder()
            # unfunded: coin selection fails while opening
            engine = TradeEngine(MemoryWallet(chain), chain, recorder, FAST)
            await engine.open_trade_session(PartyRole.TAKER, "maker", TERMS)
            snap = await engine.wait_for_terminal(TERMS.trade_id, timeout=5)
            vault_erased = engine.session(TERMS.trade_id)._vault.erased
            await engine.close()
            return snap, vault_erased, recorder.sent

        snap, vault_erased, sent = asyncio.run(scenario())
        assert snap.state is TradeState.ABORTED
        assert snap.error.startswith("ValueError: Insufficient balance")
        assert vault_erased
        assert [m.round for _, m in sent] == [Round.ABORT]

    def test_close_aborts_running_session(self):
        async def scenario():
            chain = MemoryChain()
            wallet = MemoryWallet(chain)
            wallet.fund(2_000_000)
            engine = TradeEngine(wallet, chain, _Recorder(), FAST)
            await engine.open_trade_session(PartyRole.MAKER, "taker", TERMS)
            await asyncio.sleep(0.05)
            session = engine.session(TERMS.trade_id)
            assert session.state is TradeState.INIT
            await engine.close()
            return session.state, session._vault.erased

        state, vault_erased = asyncio.run(scenario())
        assert state is TradeState.ABORTED
        assert vault_erased

    def test_tampered_message_hash_aborts(self):
        def tamper(peer, msg):
            if peer != "taker" or msg.round != Round.DEPOSIT_PARTIALS:
                return msg
            payload = copy.deepcopy(msg.payload)
            payload["partials"]["redirect/0"]["message"] = "ff" * 32
            return ProtocolMessage(msg.session_id, msg.round, msg.sender, payload)

        transport = LoopbackTransport()
        transport.mutate = tamper
        run = asyncio.run(_trade(transport))
        maker, taker = run["snaps"]["maker"], run["snaps"]["taker"]

        assert taker.state is TradeState.ABORTED
        assert "PartialSignatureMismatch" in taker.error
        assert maker.state is TradeState.ABORTED
        assert run["chain"].get_transaction(taker.deposit_txid) is None
        assert [m for _, m in transport.sent if m.round == Round.ABORT]

    def test_keys_timeout_aborts(self):
        async def scenario():
            chain = MemoryChain()
            wallet = MemoryWallet(chain)
            wallet.fund(2_000_000)
            engine = TradeEngine(wallet, chain, _Recorder(), replace(FAST, round_timeout=0.3))
            await engine.open_trade_session(PartyRole.MAKER, "taker", TERMS)
            snap = await engine.wait_for_terminal(TERMS.trade_id, timeout=5)
            await engine.close()
            return snap

        snap = asyncio.run(scenario())
        assert snap.state is TradeState.ABORTED
        assert snap.timeouts[0].round == Round.KEYS
        assert snap.signed_redirect is None

    def test_local_abort_reaches_peer(self):
        async def scenario():
            transport = LoopbackTransport()
            transport.drop = lambda peer, msg: msg.round == Round.DEPOSIT_PARTIALS
            chain = MemoryChain()
            engines = {}
            for name in ("maker", "taker"):
                wallet = MemoryWallet(chain)
                wallet.fund(2_000_000)
                engines[name] = TradeEngine(wallet, chain, transport, FAST)
                transport.register(name, engines[name])
            await engines["maker"].open_trade_session(PartyRole.MAKER, "taker", TERMS)
            await engines["taker"].open_trade_session(PartyRole.TAKER, "maker", TERMS)
            for _ in range(100):
                states = {e.get_session_state(TERMS.trade_id).state for e in engines.values()}
                if states == {TradeState.KEYS_EXCHANGED}:
                    break
                await asyncio.sleep(0.01)
            local = await engines["maker"].abort_session(TERMS.trade_id, "user cancelled")
            remote = await engines["taker"].wait_for_terminal(TERMS.trade_id, timeout=2)
            for engine in engines.values():
                await engine.close()
            await transport.drain()
            return local, remote

        local, remote = asyncio.run(scenario())
        assert local.state is TradeState.ABORTED
        assert remote.state is TradeState.ABORTED
        assert remote.timeouts == ()


# ============================================================
# MESSAGE ACCEPTANCE
# ============================================================

class TestMessageAcceptance:
    """Direct submission through TradeEngine.submit_protocol_message."""

    @staticmethod
    async def _open_pair():
        chain = MemoryChain()
        sides = {}
        for name, role, peer in (("maker", PartyRole.MAKER, "taker"),
                                 ("taker", PartyRole.TAKER, "maker")):
            wallet = MemoryWallet(chain)
            wallet.fund(2_000_000)
            recorder = _Recorder()
            engine = TradeEngine(wallet, chain, recorder, FAST)
            await engine.open_trade_session(role, peer, TERMS)
            sides[name] = (engine, recorder)
        await asyncio.sleep(0.05)
        return sides

    def test_acceptance_rules(self):
        async def scenario():
            sides = await self._open_pair()
            maker, _ = sides["maker"]
            taker_keys = sides["taker"][1].sent[0][1]
            assert taker_keys.round == Round.KEYS
            sid = TERMS.trade_id

            with pytest.raises(RoundOutOfOrder) as info:
                await maker.submit_protocol_message(sid, Round.DEPOSIT_PARTIALS, {})
            assert info.value.expected == Round.KEYS
            assert maker.get_session_state(sid).state is TradeState.INIT

            assert await maker.submit_protocol_message(sid, Round.KEYS, taker_keys.payload)
            assert not await maker.submit_protocol_message(sid, Round.KEYS, taker_keys.payload)
            await asyncio.sleep(0.05)
            assert maker.get_session_state(sid).state is TradeState.KEYS_EXCHANGED

            conflicting = dict(taker_keys.payload, block_height=1)
            with pytest.raises(ProtocolViolation, match="conflicting"):
                await maker.submit_protocol_message(sid, Round.KEYS, conflicting)
            snap = await maker.wait_for_terminal(sid, timeout=5)

            with pytest.raises(SessionTerminated):
                await maker.submit_protocol_message(sid, Round.DEPOSIT_PARTIALS, {})
            vault_erased = maker.session(sid)._vault.erased
            aborts = [m for _, m in sides["maker"][1].sent if m.round == Round.ABORT]
            for engine, _ in sides.values():
                await engine.close()
            return snap, vault_erased, aborts

        snap, vault_erased, aborts = asyncio.run(scenario())
        assert snap.state is TradeState.ABORTED
        assert snap.error.startswith("ProtocolViolation")
        assert vault_erased
        assert aborts

    def test_malformed_payload_aborts(self):
        async def scenario():
            sides = await self._open_pair()
            maker, _ = sides["maker"]
            with pytest.raises(ProtocolViolation, match="missing field"):
                await maker.submit_protocol_message(TERMS.trade_id, Round.KEYS, {"pubkey": "02"})
            snap = await maker.wait_for_terminal(TERMS.trade_id, timeout=5)
            for engine, _ in sides.values():
                await engine.close()
            return snap

        snap = asyncio.run(scenario())
        assert snap.state is TradeState.ABORTED
        assert "MalformedMessage" in snap.error

    def test_abort_before_start(self):
        async def scenario():
            chain = MemoryChain()
            wallet = MemoryWallet(chain)
            wallet.fund(2_000_000)
            recorder = _Recorder()
            engine = TradeEngine(wallet, chain, recorder, FAST)
            await engine.open_trade_session(PartyRole.TAKER, "maker", TERMS)
            snap = await engine.abort_session(TERMS.trade_id, "changed my mind")
            await asyncio.sleep(0.01)
            await engine.close()
            return snap, recorder.sent

        snap, sent = asyncio.run(scenario())
        assert snap.state is TradeState.ABORTED
        assert [m.round for _, m in sent] == [Round.ABORT]
        assert sent[0][1].payload == {"reason": "changed my mind"}

    def test_failed_abort_notice_is_logged(self, caplog):
        async def scenario():
            chain = MemoryChain()
            wallet = MemoryWallet(chain)
            wallet.fund(2_000_000)
            engine = TradeEngine(wallet, chain, _Unreachable(), FAST)
            await engine.open_trade_session(PartyRole.TAKER, "maker", TERMS)
            snap = await engine.abort_session(TERMS.trade_id, "changed my mind")
            await engine.close()
            return snap

        with caplog.at_level(logging.WARNING, logger="musig_trade"):
            snap = asyncio.run(scenario())
        assert snap.state is TradeState.ABORTED
        assert "could not notify peer of abort: peer unreachable" in caplog.text


class TestEngineSurface:

    def test_unknown_session(self):
        async def scenario():
            chain = MemoryChain()
            engine = TradeEngine(MemoryWallet(chain), chain, _Recorder(), FAST)
            with pytest.raises(UnknownSession):
                engine.get_session_state("nope")
            with pytest.raises(KeyError):
                await engine.submit_protocol_message("nope", Round.KEYS, {})

        asyncio.run(scenario())

    def test_duplicate_session_rejected(self):
        async def scenario():
            chain = MemoryChain()
            wallet = MemoryWallet(chain)
            wallet.fund(2_000_000)
            engine = TradeEngine(wallet, chain, _Recorder(), FAST)
            await engine.open_trade_session(PartyRole.MAKER, "taker", TERMS)
            with pytest.raises(ValueError, match="already open"):
                await engine.open_trade_session(PartyRole.MAKER, "taker", TERMS)
            await engine.close()

        asyncio.run(scenario())

    def test_wait_for_terminal_times_out(self):
        async def scenario():
            chain = MemoryChain()
            wallet = MemoryWallet(chain)
            wallet.fund(2_000_000)
            engine = TradeEngine(wallet, chain, _Recorder(), FAST)
            await engine.open_trade_session(PartyRole.MAKER, "taker", TERMS)
            with pytest.raises(asyncio.TimeoutError):
                await engine.wait_for_terminal(TERMS.trade_id, timeout=0.05)
            await engine.close()

        asyncio.run(scenario())

    def test_prune_finished_sessions(self):
        async def scenario():
            chain = MemoryChain()
            wallet = MemoryWallet(chain)
            wallet.fund(2_000_000)
            engine = TradeEngine(wallet, chain, _Recorder(), FAST)
            await engine.open_trade_session(PartyRole.MAKER, "taker", TERMS)
            with pytest.raises(ValueError, match="has not finished"):
                engine.forget_session(TERMS.trade_id)
            assert engine.prune_sessions() == []

            await engine.abort_session(TERMS.trade_id, "done")
            await asyncio.sleep(0.01)
            pruned = engine.prune_sessions()
            with pytest.raises(UnknownSession):
                engine.get_session_state(TERMS.trade_id)
            # the trade id can be opened again
            await engine.open_trade_session(PartyRole.MAKER, "taker", TERMS)
            await engine.close()
            return pruned

        pruned = asyncio.run(scenario())
        assert [snap.state for snap in pruned] == [TradeState.ABORTED]
        assert pruned[0].session_id == TERMS.trade_id


class TestSecretVault:

    def test_key_share_required_before_use(self):
        vault = _SessionSecrets()
        with pytest.raises(RuntimeError, match="no key share"):
            vault.key_share
        vault.erase()
        with pytest.raises(SessionTerminated):
            vault.key_share

    def test_seller_has_no_secret(self):
        vault = _SessionSecrets()
        with pytest.raises(SessionTerminated, match="no adaptor secret"):
            vault.secret
