"""
Deterministic construction of the trade transactions.

    deposit  : both parties' funding inputs -> [buyer leg, seller leg, change...]
    swap     : one deposit leg -> the leg owner's payout script
    redirect : both legs -> refunds, spendable only after nLockTime

Both parties build every transaction independently from the same logical
inputs; canonical input/output ordering makes the bytes (and therefore the
sighashes they sign) identical.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from bitcoin_protocol import (
    DUST_LIMIT_SATS,
    LOCKTIME_THRESHOLD,
    SEQUENCE_LOCKTIME,
    SEQUENCE_RBF,
    BIP341Sighash,
    Prevout,
    Transaction,
    TxIn,
    TxOut,
    is_p2tr,
)
from musig_keys import AggregatedKey
from trade_errors import InvalidTradeTerms

log = logging.getLogger("musig_trade.tx")

# vbyte estimates for P2TR key-path spends
TX_OVERHEAD_VBYTES = 10.5
P2TR_INPUT_VBYTES = 57.5
P2TR_OUTPUT_VBYTES = 43.0

MAX_FEE_RATE = 10_000       # sat/vB sanity bound


class PartyRole(str, Enum):
    MAKER = "maker"
    TAKER = "taker"

    @property
    def peer(self) -> "PartyRole":
        return PartyRole.TAKER if self is PartyRole.MAKER else PartyRole.MAKER


class Leg(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"


LEG_VOUT = {Leg.BUYER: 0, Leg.SELLER: 1}


# ============================================================
# TERMS
# ============================================================

@dataclass(frozen=True)
class TradeTerms:
    """Economic parameters both parties agreed on before opening a session."""
    trade_id: str
    trade_amount: int
    buyer_security_deposit: int
    seller_security_deposit: int
    deposit_fee_rate: int = 10        # sat/vB
    prepared_fee_rate: int = 10       # sat/vB, swap + redirect
    buyer_role: PartyRole = PartyRole.TAKER

    def __post_init__(self) -> None:
        if not self.trade_id:
            raise InvalidTradeTerms("trade_id must not be empty")
        if self.trade_amount <= 0:
            raise InvalidTradeTerms("trade_amount must be positive")
        for name in ("buyer_security_deposit", "seller_security_deposit"):
            if getattr(self, name) < 0:
                raise InvalidTradeTerms(f"{name} cannot be negative")
        for name in ("deposit_fee_rate", "prepared_fee_rate"):
            rate = getattr(self, name)
            if not 1 <= rate <= MAX_FEE_RATE:
                raise InvalidTradeTerms(f"{name} {rate} sat/vB out of range")
        object.__setattr__(self, "buyer_role", PartyRole(self.buyer_role))
        for leg in Leg:
            if swap_output_amount(self.leg_amount(leg), self.prepared_fee_rate) <= DUST_LIMIT_SATS:
                raise InvalidTradeTerms(f"{leg.value} leg too small to pay its swap fee")

    @property
    def seller_role(self) -> PartyRole:
        return self.buyer_role.peer

    def leg_of(self, role: PartyRole) -> Leg:
        return Leg.BUYER if role is self.buyer_role else Leg.SELLER

    def role_of(self, leg: Leg) -> PartyRole:
        return self.buyer_role if leg is Leg.BUYER else self.seller_role

    def leg_amount(self, leg: Leg) -> int:
        if leg is Leg.BUYER:
            return self.trade_amount + self.buyer_security_deposit
        return self.seller_security_deposit

    def contribution(self, role: PartyRole) -> int:
        """Satoshis *role* locks into the deposit (excluding fees)."""
        if role is self.buyer_role:
            return self.buyer_security_deposit
        return self.trade_amount + self.seller_security_deposit

    def to_dict(self) -> dict:
        return {
            "trade_id": self.trade_id,
            "trade_amount": self.trade_amount,
            "buyer_security_deposit": self.buyer_security_deposit,
            "seller_security_deposit": self.seller_security_deposit,
            "deposit_fee_rate": self.deposit_fee_rate,
            "prepared_fee_rate": self.prepared_fee_rate,
            "buyer_role": self.buyer_role.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "TradeTerms":
        return cls(
            trade_id=d["trade_id"],
            trade_amount=int(d["trade_amount"]),
            buyer_security_deposit=int(d["buyer_security_deposit"]),
            seller_security_deposit=int(d["seller_security_deposit"]),
            deposit_fee_rate=int(d.get("deposit_fee_rate", 10)),
            prepared_fee_rate=int(d.get("prepared_fee_rate", 10)),
            buyer_role=PartyRole(d.get("buyer_role", PartyRole.TAKER.value)),
        )


@dataclass(frozen=True)
class FundingContribution:
    role: PartyRole
    inputs: Tuple[Prevout, ...]
    change_script: bytes
    amount: int                       # satoshis owed into the deposit legs


@dataclass(frozen=True)
class DepositOutput:
    txid: str
    vout: int
    amount: int
    script_pubkey: bytes
    leg: Leg

    def as_prevout(self) -> Prevout:
        return Prevout(self.txid, self.vout, self.amount, self.script_pubkey)


@dataclass
class UnsignedTransaction:
    """A transaction plus the prevouts every BIP-341 sighash commits to."""
    tx: Transaction
    prevouts: List[Prevout] = field(default_factory=list)

    @property
    def txid(self) -> str:
        return self.tx.txid

    def serialize(self) -> bytes:
        return self.tx.serialize(include_witness=False)

    def sighash(self, input_index: int,
                hash_type: int = BIP341Sighash.SIGHASH_DEFAULT) -> bytes:
        return compute_sighash(self, input_index, hash_type=hash_type)


# ============================================================
# FEES
# ============================================================

def estimate_vsize(n_inputs: int, n_outputs: int) -> float:
    return TX_OVERHEAD_VBYTES + n_inputs * P2TR_INPUT_VBYTES + n_outputs * P2TR_OUTPUT_VBYTES


def fee_for(vbytes: float, fee_rate: float) -> int:
    return math.ceil(vbytes * fee_rate)


def deposit_fee_share(n_inputs: int, with_change: bool, fee_rate: int) -> int:
    """Own inputs + own change + half of the header and both leg outputs."""
    own = n_inputs * P2TR_INPUT_VBYTES + (P2TR_OUTPUT_VBYTES if with_change else 0)
    shared = TX_OVERHEAD_VBYTES + 2 * P2TR_OUTPUT_VBYTES
    return fee_for(own, fee_rate) + fee_for(shared / 2, fee_rate)


def funding_target(terms: TradeTerms, role: PartyRole, n_inputs: int = 2) -> int:
    """Amount a wallet should select to cover *role*'s contribution and fees."""
    return terms.contribution(role) + deposit_fee_share(n_inputs, True, terms.deposit_fee_rate)


def swap_output_amount(leg_amount: int, fee_rate: int) -> int:
    return leg_amount - fee_for(estimate_vsize(1, 1), fee_rate)


# ============================================================
# BUILDERS
# ============================================================

def _change_output(contribution: FundingContribution, fee_rate: int) -> Optional[TxOut]:
    total_in = sum(p.amount for p in contribution.inputs)
    n_in = len(contribution.inputs)
    change = total_in - contribution.amount - deposit_fee_share(n_in, True, fee_rate)
    if change > DUST_LIMIT_SATS:
        return TxOut(change, contribution.change_script)
    no_change_fee = deposit_fee_share(n_in, False, fee_rate)
    if total_in - contribution.amount < no_change_fee:
        raise InvalidTradeTerms(
            f"{contribution.role.value} funding covers {total_in} sats, "
            f"needs {contribution.amount + no_change_fee}"
        )
    return None


def build_deposit(
    funding: Sequence[FundingContribution],
    aggregated_key: AggregatedKey,
    terms: TradeTerms,
) -> UnsignedTransaction:
    """Joint funding transaction paying both legs to the aggregated key."""
    if sorted(c.role for c in funding) != sorted(PartyRole):
        raise InvalidTradeTerms("exactly one funding contribution per role is required")
    prevouts: List[Prevout] = []
    changes: List[TxOut] = []
    for contribution in funding:
        if contribution.amount != terms.contribution(contribution.role):
            raise InvalidTradeTerms(
                f"{contribution.role.value} contributes {contribution.amount}, "
                f"terms require {terms.contribution(contribution.role)}"
            )
        if not contribution.inputs:
            raise InvalidTradeTerms(f"{contribution.role.value} supplied no funding inputs")
        for prev in contribution.inputs:
            if not is_p2tr(prev.script_pubkey):
                raise InvalidTradeTerms("funding inputs must be P2TR key-path outputs")
        prevouts.extend(contribution.inputs)
        change = _change_output(contribution, terms.deposit_fee_rate)
        if change is not None:
            changes.append(change)

    prevouts.sort(key=lambda p: (p.txid, p.vout))
    outpoints = [(p.txid, p.vout) for p in prevouts]
    if len(set(outpoints)) != len(outpoints):
        raise InvalidTradeTerms("duplicate funding input")

    spk = aggregated_key.script_pubkey
    outputs = [
        TxOut(terms.leg_amount(Leg.BUYER), spk),
        TxOut(terms.leg_amount(Leg.SELLER), spk),
    ]
    outputs.extend(sorted(changes, key=lambda o: (o.script_pubkey, o.amount)))
    tx = Transaction(
        version=2,
        locktime=0,
        inputs=[TxIn(p.txid, p.vout, SEQUENCE_LOCKTIME) for p in prevouts],
        outputs=outputs,
    )
    log.debug("Built deposit %s (%d inputs, %d outputs)", tx.txid, len(prevouts), len(outputs))
    return UnsignedTransaction(tx, prevouts)


def deposit_outputs(deposit: UnsignedTransaction) -> Dict[Leg, DepositOutput]:
    txid = deposit.txid
    result = {}
    for leg, vout in LEG_VOUT.items():
        out = deposit.tx.outputs[vout]
        result[leg] = DepositOutput(txid, vout, out.amount, out.script_pubkey, leg)
    return result


def build_swap(
    deposit_output: DepositOutput,
    destination: bytes,
    fee_rate: int,
) -> UnsignedTransaction:
    """Spend one deposit leg to *destination*; the fee comes out of the leg."""
    amount = swap_output_amount(deposit_output.amount, fee_rate)
    if amount <= DUST_LIMIT_SATS:
        raise InvalidTradeTerms(f"swap output {amount} sats would be dust")
    tx = Transaction(
        version=2,
        locktime=0,
        inputs=[TxIn(deposit_output.txid, deposit_output.vout, SEQUENCE_RBF)],
        outputs=[TxOut(amount, destination)],
    )
    return UnsignedTransaction(tx, [deposit_output.as_prevout()])


def build_redirect(
    deposit_output: Union[DepositOutput, Sequence[DepositOutput]],
    lock_time: int,
    fallback_destinations: Sequence[TxOut],
    fee_rate: int,
) -> UnsignedTransaction:
    """
    Time-locked refund of the deposit legs.

    *fallback_destinations* carry each party's gross refund; their sum must
    equal the spent legs.  The fee is split evenly across the refunds, the
    first outputs absorbing the odd satoshis.
    """
    legs = [deposit_output] if isinstance(deposit_output, DepositOutput) else list(deposit_output)
    if not legs or not fallback_destinations:
        raise ValueError("redirect needs at least one leg and one destination")
    if not 0 < lock_time < 0xFFFFFFFF:
        raise ValueError(f"lock_time {lock_time} out of range")
    total = sum(leg.amount for leg in legs)
    gross = sum(out.amount for out in fallback_destinations)
    if gross != total:
        raise InvalidTradeTerms(f"redirect destinations pay {gross}, legs hold {total}")

    n_out = len(fallback_destinations)
    fee = fee_for(estimate_vsize(len(legs), n_out), fee_rate)
    base, odd = divmod(fee, n_out)
    outputs = []
    for i, dest in enumerate(fallback_destinations):
        amount = dest.amount - base - (1 if i < odd else 0)
        if amount <= DUST_LIMIT_SATS:
            raise InvalidTradeTerms(f"redirect output {i} ({amount} sats) would be dust")
        outputs.append(TxOut(amount, dest.script_pubkey))

    tx = Transaction(
        version=2,
        locktime=lock_time,
        inputs=[TxIn(leg.txid, leg.vout, SEQUENCE_LOCKTIME) for leg in legs],
        outputs=outputs,
    )
    kind = "height" if lock_time < LOCKTIME_THRESHOLD else "time"
    log.debug("Built redirect %s (locktime %d, %s)", tx.txid, lock_time, kind)
    return UnsignedTransaction(tx, [leg.as_prevout() for leg in legs])


def compute_sighash(
    utx: UnsignedTransaction,
    input_index: int,
    prevouts: Optional[Sequence[Prevout]] = None,
    hash_type: int = BIP341Sighash.SIGHASH_DEFAULT,
) -> bytes:
    """BIP-341 key-path sighash for *input_index*."""
    prevs = list(prevouts) if prevouts is not None else utx.prevouts
    return BIP341Sighash(utx.tx, prevs, input_index).compute(hash_type)


def attach_key_path_signature(tx: Transaction, input_index: int, signature: bytes) -> Transaction:
    """Set the single-element key-path witness of *input_index* in place."""
    if len(signature) not in (64, 65):
        raise ValueError(f"key-path signature must be 64 or 65 bytes, got {len(signature)}")
    tx.inputs[input_index].witness = [signature]
    return tx
