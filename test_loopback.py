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

import pytest

from bitcoin_protocol import SEQUENCE_LOCKTIME, Transaction, TxIn, TxOut
from loopback import MemoryChain, MemoryWallet
from trade_errors import ChainSubmissionError


def _spend(wallet, prev, amount, locktime=0, sign=True):
    tx = Transaction(
        locktime=locktime,
        inputs=[TxIn(prev.txid, prev.vout, SEQUENCE_LOCKTIME)],
        outputs=[TxOut(amount, wallet.new_script())],
    )
    if sign:
        for index, sig in wallet.sign_funding_inputs(tx, [prev]).items():
            tx.inputs[index].witness = [sig]
    return tx


class TestMemoryChain:
    """The validation rules the trade tests rely on."""

    def test_valid_spend_accepted_and_mined(self):
        chain = MemoryChain()
        wallet = MemoryWallet(chain)
        prev = wallet.fund(100_000)
        tx = _spend(wallet, prev, 99_000)
        assert chain.submit(tx) == tx.txid
        assert chain.in_mempool(tx.txid)
        assert chain.is_spent(prev.txid, prev.vout)
        chain.mine()
        assert chain.confirmations(tx.txid) == 1
        assert wallet.balance() == 99_000

    def test_resubmission_is_idempotent(self):
        chain = MemoryChain()
        wallet = MemoryWallet(chain)
        tx = _spend(wallet, wallet.fund(100_000), 99_000)
        assert chain.submit(tx) == chain.submit(tx)

    def test_unsigned_spend_rejected(self):
        chain = MemoryChain()
        wallet = MemoryWallet(chain)
        tx = _spend(wallet, wallet.fund(100_000), 99_000, sign=False)
        with pytest.raises(ChainSubmissionError, match="signature"):
            chain.submit(tx)

    def test_locktime_enforced(self):
        chain = MemoryChain(start_height=200)
        wallet = MemoryWallet(chain)
        tx = _spend(wallet, wallet.fund(100_000), 99_000, locktime=205)
        with pytest.raises(ChainSubmissionError, match="non-final"):
            chain.submit(tx)
        chain.mine(5)
        assert chain.submit(tx) == tx.txid

    def test_min_relay_fee(self):
        chain = MemoryChain(min_relay_fee_rate=5.0)
        wallet = MemoryWallet(chain)
        tx = _spend(wallet, wallet.fund(100_000), 99_990)
        with pytest.raises(ChainSubmissionError) as info:
            chain.submit(tx)
        assert info.value.insufficient_fee
        assert chain.submit(tx, fee_bonus=1_000) == tx.txid

    def test_double_spend_rejected(self):
        chain = MemoryChain()
        wallet = MemoryWallet(chain)
        prev = wallet.fund(100_000)
        chain.submit(_spend(wallet, prev, 99_000))
        with pytest.raises(ChainSubmissionError, match="missing or spent"):
            chain.submit(_spend(wallet, prev, 98_000))

    def test_watch_reports_depths(self):
        async def scenario():
            chain = MemoryChain(finality_depth=3)
            wallet = MemoryWallet(chain)
            tx = _spend(wallet, wallet.fund(100_000), 99_000)
            chain.submit(tx)
            miner = asyncio.create_task(chain.run_miner(0.01))
            try:
                return [e.confirmations async for e in chain.watch(tx.txid)]
            finally:
                miner.cancel()

        assert asyncio.run(scenario()) == [1, 2, 3]


class TestMemoryWallet:

    def test_selection_reserves_coins(self):
        wallet = MemoryWallet(MemoryChain())
        wallet.fund(300_000)
        wallet.fund(100_000)
        first = wallet.select_funding_utxos(250_000)
        assert [p.amount for p in first] == [300_000]
        second = wallet.select_funding_utxos(50_000)
        assert [p.amount for p in second] == [100_000]
        with pytest.raises(ValueError, match="Insufficient balance"):
            wallet.select_funding_utxos(1)

    def test_fee_bump_recorded(self):
        chain = MemoryChain(min_relay_fee_rate=5.0)
        wallet = MemoryWallet(chain)
        tx = _spend(wallet, wallet.fund(100_000), 99_990)
        assert asyncio.run(wallet.broadcast(tx, fee_rate_bump=15.0)) == tx.txid
        assert wallet.fee_bumps == [15.0]
