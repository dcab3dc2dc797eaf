"""
One trade session: a timed state machine driven by a single asyncio task.

    Init -> KeysExchanged -> DepositSigned -> DepositConfirmed -> SwapReady
         -> PayoutConfirmed
    (any state with an outstanding deadline) -> TimeoutRedirect
    (any non-terminal state)                 -> Aborted

The driver runs the phases strictly in order; peer messages are accepted by
``receive()`` (called from the transport side), schema-checked, stored and
handed to the driver through an ``asyncio.Event``.  Deadlines are ordinary
transition triggers: an expired wait returns ``None`` and the driver takes
the redirect (or plain abort) branch.

All secret material lives in one ``_SessionSecrets`` vault.  Nonces are
*taken* out of it (ownership moves to the signing call) and the vault is
erased on every terminal transition, after which any access raises
``SessionTerminated``.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    TypeVar,
)

from adaptor_sig import (
    AdaptorSignature,
    Secret,
    aggregate_adaptor_signatures,
    complete,
    extract_secret,
    sign_partial_adaptor,
)
from bitcoin_protocol import Prevout, Transaction, TxOut, verify_key_path_spend
from musig_keys import (
    AggregatedKey,
    KeyShare,
    NonceShare,
    PartialSignature,
    SigningContext,
    aggregate_nonces,
    aggregate_pubkeys,
    aggregate_signatures,
    cpoint,
    generate_nonce,
    partial_sign,
)
from trade_config import TradeConfig
from trade_errors import (
    AdaptorError,
    ChainBackendError,
    ChainSubmissionError,
    ExtractionFailed,
    InvalidSignature,
    InvalidTradeTerms,
    MalformedMessage,
    NonceReuse,
    PartialSignatureMismatch,
    ProtocolViolation,
    RoundOutOfOrder,
    SessionTerminated,
    TimeoutExpired,
)
from trade_messages import (
    MESSAGE_SEQUENCE,
    REDIRECT_SLOTS,
    SWAP_SLOTS,
    AbortPayload,
    KeysPayload,
    NoncesPayload,
    PartialsPayload,
    ProtocolMessage,
    Round,
    WitnessesPayload,
    decode_payload,
    outpoint_key,
    payload_digest,
)
from trade_tx import (
    FundingContribution,
    Leg,
    PartyRole,
    TradeTerms,
    UnsignedTransaction,
    attach_key_path_signature,
    build_deposit,
    build_redirect,
    build_swap,
    compute_sighash,
    deposit_outputs,
    funding_target,
)

log = logging.getLogger("musig_trade.session")

_T = TypeVar("_T")

# Seller payout: broadcast + confirmation wait, repeated this many times
_PAYOUT_ATTEMPTS = 2


class TradeState(str, Enum):
    INIT = "Init"
    KEYS_EXCHANGED = "KeysExchanged"
    DEPOSIT_SIGNED = "DepositSigned"
    DEPOSIT_CONFIRMED = "DepositConfirmed"
    SWAP_READY = "SwapReady"
    PAYOUT_CONFIRMED = "PayoutConfirmed"
    TIMEOUT_REDIRECT = "TimeoutRedirect"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({
    TradeState.PAYOUT_CONFIRMED,
    TradeState.TIMEOUT_REDIRECT,
    TradeState.ABORTED,
})

# ABORTED is reachable from every non-terminal state and is not listed.
_TRANSITIONS = {
    TradeState.INIT: {TradeState.KEYS_EXCHANGED},
    TradeState.KEYS_EXCHANGED: {TradeState.DEPOSIT_SIGNED},
    TradeState.DEPOSIT_SIGNED: {TradeState.DEPOSIT_CONFIRMED, TradeState.TIMEOUT_REDIRECT},
    TradeState.DEPOSIT_CONFIRMED: {TradeState.SWAP_READY, TradeState.TIMEOUT_REDIRECT},
    TradeState.SWAP_READY: {TradeState.PAYOUT_CONFIRMED, TradeState.TIMEOUT_REDIRECT},
}


# ============================================================
# COLLABORATORS
# ============================================================

@dataclass(frozen=True)
class ConfirmationEvent:
    txid: str
    block_height: int
    confirmations: int
    raw_tx: Optional[bytes] = None


class Wallet(Protocol):
    def select_funding_utxos(self, amount: int) -> List[Prevout]: ...

    def get_key_share(self, role: PartyRole) -> KeyShare: ...

    def new_script(self) -> bytes: ...

    def current_height(self) -> int: ...

    def sign_funding_inputs(
        self, tx: Transaction, prevouts: Sequence[Prevout],
    ) -> Dict[int, bytes]: ...

    async def broadcast(
        self, tx: Transaction, fee_rate_bump: Optional[float] = None,
    ) -> str: ...


class ChainWatch(Protocol):
    def watch(self, txid: str) -> AsyncIterator[ConfirmationEvent]: ...

    async def wait_for_height(self, height: int) -> None: ...


class Transport(Protocol):
    async def send(self, peer_identity: str, message: ProtocolMessage) -> None: ...


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    role: PartyRole
    state: TradeState
    deposit_txid: Optional[str]
    swap_txid: Optional[str]
    payout_txid: Optional[str]
    redirect_txid: Optional[str]
    signed_redirect: Optional[str]
    signed_payout: Optional[str]
    redirect_lock_height: Optional[int]
    error: Optional[str]
    warnings: Tuple[str, ...]
    timeouts: Tuple[TimeoutExpired, ...]


# ============================================================
# SECRET VAULT
# ============================================================

class _SessionSecrets:
    def __init__(self) -> None:
        self._key_share: Optional[KeyShare] = None
        self._secret: Optional[Secret] = None
        self._nonces: Dict[str, NonceShare] = {}
        self.erased = False

    def _check(self) -> None:
        if self.erased:
            raise SessionTerminated("session secret material has been erased")

    @property
    def key_share(self) -> KeyShare:
        self._check()
        if self._key_share is None:
            raise RuntimeError("no key share has been loaded")
        return self._key_share

    @key_share.setter
    def key_share(self, value: KeyShare) -> None:
        self._check()
        self._key_share = value

    @property
    def secret(self) -> Secret:
        self._check()
        if self._secret is None:
            raise SessionTerminated("this party holds no adaptor secret")
        return self._secret

    @secret.setter
    def secret(self, value: Secret) -> None:
        self._check()
        self._secret = value

    def put_nonce(self, slot: str, nonce: NonceShare) -> None:
        self._check()
        self._nonces[slot] = nonce

    def public_nonce(self, slot: str) -> bytes:
        self._check()
        return self._nonces[slot].pubnonce

    def take_nonce(self, slot: str) -> NonceShare:
        self._check()
        try:
            return self._nonces.pop(slot)
        except KeyError:
            raise NonceReuse(f"nonce for slot {slot} was already consumed") from None

    def erase(self) -> None:
        if self._key_share is not None:
            self._key_share.wipe()
        if self._secret is not None:
            self._secret.wipe()
        for nonce in self._nonces.values():
            nonce.wipe()
        self._nonces.clear()
        self._key_share = None
        self._secret = None
        self.erased = True


def _require(value: Optional[_T], what: str) -> _T:
    if value is None:
        raise RuntimeError(f"{what} is not available in this state")
    return value


def terms_digest(terms: TradeTerms) -> bytes:
    return hashlib.sha256(json.dumps(terms.to_dict(), sort_keys=True).encode()).digest()


# ============================================================
# SESSION
# ============================================================

class TradeSession:

    def __init__(
        self,
        session_id: str,
        role: PartyRole,
        peer_identity: str,
        terms: TradeTerms,
        wallet: Wallet,
        chain: ChainWatch,
        transport: Transport,
        config: TradeConfig,
    ) -> None:
        self.session_id = session_id
        self.role = PartyRole(role)
        self.peer_identity = peer_identity
        self.terms = terms
        self.wallet = wallet
        self.chain = chain
        self.transport = transport
        self.config = config
        self.leg = terms.leg_of(self.role)
        self.is_buyer = self.leg is Leg.BUYER

        self.state = TradeState.INIT
        self.error: Optional[BaseException] = None
        self.warnings: List[str] = []
        self.timeouts: List[TimeoutExpired] = []

        self._vault = _SessionSecrets()
        self._inbox: Dict[int, Any] = {}
        self._digests: Dict[int, bytes] = {}
        self._next = 0
        self._arrived = asyncio.Event()
        self._terminal = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._started = False
        self._aborting = False
        self._abort_reason: Optional[str] = None
        self._notify_on_abort = True
        self._abort_notice: Optional["asyncio.Future[None]"] = None

        self._terms_digest = terms_digest(terms)
        self._local: Optional[KeysPayload] = None
        self._peer: Optional[KeysPayload] = None
        self._adaptor_point: Optional[bytes] = None
        self.aggregated_key: Optional[AggregatedKey] = None
        self.deposit: Optional[UnsignedTransaction] = None
        self.redirect: Optional[UnsignedTransaction] = None
        self.swaps: Dict[Leg, UnsignedTransaction] = {}
        self.signed_deposit: Optional[Transaction] = None
        self.signed_redirect: Optional[Transaction] = None
        self.signed_payout: Optional[Transaction] = None
        self.adaptor_signatures: Dict[Leg, AdaptorSignature] = {}
        self._contexts: Dict[str, SigningContext] = {}
        self._own_partials: Dict[str, PartialSignature] = {}
        self._own_witnesses: Dict[str, bytes] = {}
        self._deposit_published = False
        self.redirect_lock_height: Optional[int] = None

        self.deposit_txid: Optional[str] = None
        self.swap_txid: Optional[str] = None
        self.payout_txid: Optional[str] = None
        self.redirect_txid: Optional[str] = None

    # ------------------------------------------------------------------
    # public surface
    # ------------------------------------------------------------------

    def attach_task(self, task: "asyncio.Task") -> None:
        self._task = task

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            role=self.role,
            state=self.state,
            deposit_txid=self.deposit_txid,
            swap_txid=self.swap_txid,
            payout_txid=self.payout_txid,
            redirect_txid=self.redirect_txid,
            signed_redirect=(
                self.signed_redirect.serialize().hex() if self.signed_redirect else None
            ),
            signed_payout=(
                self.signed_payout.serialize().hex() if self.signed_payout else None
            ),
            redirect_lock_height=self.redirect_lock_height,
            error=None if self.error is None else f"{type(self.error).__name__}: {self.error}",
            warnings=tuple(self.warnings),
            timeouts=tuple(self.timeouts),
        )

    async def wait_terminal(self) -> TradeState:
        await self._terminal.wait()
        if self._abort_notice is not None:
            await asyncio.gather(self._abort_notice, return_exceptions=True)
        return self.state

    def receive(self, round: int, payload: Dict[str, Any]) -> bool:
        """
        Accept a peer message.  Returns False for an identical resend.

        Raises ``RoundOutOfOrder`` for a round that is not the next expected
        one (the session is left untouched), and ``ProtocolViolation`` for
        malformed or conflicting messages (the session aborts).
        """
        if self.state.is_terminal:
            raise SessionTerminated(f"session {self.session_id} is {self.state.value}")
        if round == Round.ABORT:
            try:
                reason = AbortPayload.from_payload(payload).reason
            except MalformedMessage:
                reason = "unspecified"
            log.warning("Session %s: peer aborted (%s)", self.session_id, reason)
            self.request_abort(f"peer aborted: {reason}", notify_peer=False)
            return True
        if round not in MESSAGE_SEQUENCE:
            self._violation(MalformedMessage(f"unknown round {round}"), round)

        try:
            digest = payload_digest(payload)
        except (TypeError, ValueError) as exc:
            self._violation(MalformedMessage(f"payload is not JSON data: {exc}"), round)
        if round in self._digests:
            if self._digests[round] == digest:
                log.debug("Session %s: duplicate round %d ignored", self.session_id, round)
                return False
            self._violation(
                ProtocolViolation(f"conflicting resend of round {Round(round).name}"), round,
            )
        expected = MESSAGE_SEQUENCE[self._next] if self._next < len(MESSAGE_SEQUENCE) else None
        if round != expected:
            raise RoundOutOfOrder(
                f"session {self.session_id}: round {round} arrived, "
                f"expected {expected}",
                expected=-1 if expected is None else int(expected),
                got=int(round),
            )
        try:
            typed = decode_payload(round, payload)
        except MalformedMessage as exc:
            self._violation(exc, round)
        self._inbox[round] = typed
        self._digests[round] = digest
        self._next += 1
        self._arrived.set()
        log.debug("Session %s: accepted round %s", self.session_id, Round(round).name)
        return True

    def request_abort(self, reason: str, notify_peer: bool = True) -> None:
        if self.state.is_terminal or self._aborting:
            return
        self._abort_reason = reason
        self._notify_on_abort = notify_peer
        if self._task is None or not self._started:
            self._aborting = True
            log.warning("Session %s aborted before start: %s", self.session_id, reason)
            self._transition(TradeState.ABORTED)
            if self._task is not None:
                self._task.cancel()
            if notify_peer:
                self._abort_notice = asyncio.ensure_future(
                    self._send(Round.ABORT, AbortPayload(reason)),
                )
                self._abort_notice.add_done_callback(self._abort_notice_done)
            return
        self._task.cancel()

    def _abort_notice_done(self, fut: "asyncio.Future[None]") -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            log.warning("Session %s: could not notify peer of abort: %s",
                        self.session_id, exc)

    def _violation(self, exc: ProtocolViolation, round: int) -> None:
        exc.session_id = self.session_id
        exc.round = round
        self.error = exc
        log.error("Session %s: protocol violation in round %s: %s", self.session_id, round, exc)
        self.request_abort(str(exc), notify_peer=True)
        raise exc

    # ------------------------------------------------------------------
    # driver
    # ------------------------------------------------------------------

    async def run(self) -> TradeState:
        self._started = True
        try:
            await self._drive()
        except asyncio.CancelledError:
            if self._abort_reason is None or self.state.is_terminal:
                raise
            await self._abort(self._abort_reason, notify_peer=self._notify_on_abort)
        except (ProtocolViolation, AdaptorError, InvalidTradeTerms) as exc:
            if isinstance(exc, ProtocolViolation) and exc.session_id is None:
                exc.session_id = self.session_id
            self.error = exc
            log.error("Session %s failed in %s: %s", self.session_id, self.state.value, exc)
            await self._abort(str(exc), notify_peer=True)
        except Exception as exc:
            # wallet, chain backend or transport failure
            self.error = exc
            log.exception("Session %s: collaborator failure in %s",
                          self.session_id, self.state.value)
            await self._abort(f"{type(exc).__name__}: {exc}", notify_peer=True)
        finally:
            if not self.state.is_terminal:
                log.warning("Session %s: task ended in %s, marking aborted",
                            self.session_id, self.state.value)
                self._transition(TradeState.ABORTED)
        return self.state

    async def _drive(self) -> None:
        await self._open()

        keys = await self._expect(Round.KEYS)
        if keys is None:
            return await self._on_timeout(Round.KEYS)
        self._on_keys(keys)
        await self._send(Round.DEPOSIT_PARTIALS, PartialsPayload(dict(self._own_partials)))

        partials = await self._expect(Round.DEPOSIT_PARTIALS)
        if partials is None:
            return await self._on_timeout(Round.DEPOSIT_PARTIALS)
        self._on_redirect_partials(partials)
        # Funding witnesses are released only once the refund path is signed
        await self._send(Round.DEPOSIT_WITNESSES, WitnessesPayload(dict(self._own_witnesses)))

        witnesses = await self._expect(Round.DEPOSIT_WITNESSES)
        if witnesses is None:
            # The peer holds our witnesses and can publish the deposit without us
            deposit_txid = _require(self.deposit_txid, "deposit txid")
            await self._await_confirmations(deposit_txid, 1, self.config.round_timeout)
            return await self._on_timeout(Round.DEPOSIT_WITNESSES)
        self._on_deposit_witnesses(witnesses)
        if not await self._publish_deposit():
            return

        self._prepare_swap_nonces()
        await self._send(Round.SWAP_NONCES, NoncesPayload({
            slot: self._vault.public_nonce(slot) for slot in SWAP_SLOTS.values()
        }))
        nonces = await self._expect(Round.SWAP_NONCES)
        if nonces is None:
            return await self._on_timeout(Round.SWAP_NONCES)
        self._on_swap_nonces(nonces)
        await self._send(Round.SWAP_PARTIALS, PartialsPayload({
            slot: self._own_partials[slot] for slot in SWAP_SLOTS.values()
        }))

        swap_partials = await self._expect(Round.SWAP_PARTIALS)
        if swap_partials is None:
            return await self._on_timeout(Round.SWAP_PARTIALS)
        self._on_swap_partials(swap_partials)

        if self.is_buyer:
            await self._claim_as_buyer()
        else:
            await self._claim_as_seller()

    # ---- phase: open --------------------------------------------------

    async def _open(self) -> None:
        key_share = self.wallet.get_key_share(self.role)
        self._vault.key_share = key_share
        for slot in REDIRECT_SLOTS:
            self._vault.put_nonce(slot, generate_nonce(key_share))
        adaptor_point = None
        if self.is_buyer:
            secret = Secret.generate()
            self._vault.secret = secret
            adaptor_point = secret.point
            self._adaptor_point = adaptor_point

        funding = self.wallet.select_funding_utxos(funding_target(self.terms, self.role))
        self._local = KeysPayload(
            pubkey=key_share.public_key,
            redirect_nonces={s: self._vault.public_nonce(s) for s in REDIRECT_SLOTS},
            funding=list(funding),
            change_script=self.wallet.new_script(),
            payout_script=self.wallet.new_script(),
            refund_script=self.wallet.new_script(),
            block_height=self.wallet.current_height(),
            terms_digest=self._terms_digest,
            adaptor_point=adaptor_point,
        )
        log.info("Session %s opened as %s (%s leg)",
                 self.session_id, self.role.value, self.leg.value)
        await self._send(Round.KEYS, self._local)

    # ---- phase: keys --------------------------------------------------

    def _on_keys(self, peer: KeysPayload) -> None:
        local = _require(self._local, "local key announcement")
        if peer.terms_digest != self._terms_digest:
            raise ProtocolViolation("peer trade terms differ", round=Round.KEYS)
        if peer.pubkey == local.pubkey:
            raise ProtocolViolation("peer echoed our public key", round=Round.KEYS)
        if self.is_buyer:
            if peer.adaptor_point is not None:
                raise ProtocolViolation("seller must not supply an adaptor point",
                                        round=Round.KEYS)
        else:
            if peer.adaptor_point is None:
                raise MalformedMessage("buyer did not supply an adaptor point",
                                       round=Round.KEYS)
            try:
                cpoint(peer.adaptor_point)
            except ValueError:
                raise MalformedMessage("adaptor point is not on the curve", round=Round.KEYS)
            self._adaptor_point = peer.adaptor_point
        own_outpoints = {(p.txid, p.vout) for p in local.funding}
        if own_outpoints & {(p.txid, p.vout) for p in peer.funding}:
            raise ProtocolViolation("peer funding overlaps ours", round=Round.KEYS)
        try:
            self.aggregated_key = aggregate_pubkeys([local.pubkey, peer.pubkey])
        except ValueError as exc:
            raise MalformedMessage(f"peer public key rejected: {exc}", round=Round.KEYS)
        self._peer = peer
        self._transition(TradeState.KEYS_EXCHANGED)
        log.info("Session %s: aggregated key %s", self.session_id,
                 self.aggregated_key.address(self.config.network))

        self._build_transactions(local, peer)
        self._sign_redirect(peer)

    def _build_transactions(self, local: KeysPayload, peer: KeysPayload) -> None:
        terms = self.terms
        peer_role = self.role.peer
        self.deposit = build_deposit(
            [
                FundingContribution(self.role, tuple(local.funding), local.change_script,
                                    terms.contribution(self.role)),
                FundingContribution(peer_role, tuple(peer.funding), peer.change_script,
                                    terms.contribution(peer_role)),
            ],
            self.aggregated_key,
            terms,
        )
        self.deposit_txid = self.deposit.txid
        legs = deposit_outputs(self.deposit)
        by_leg = {self.leg: local, terms.leg_of(peer_role): peer}

        self.redirect_lock_height = (
            max(local.block_height, peer.block_height) + self.config.redirect_lock_blocks
        )
        self.redirect = build_redirect(
            [legs[Leg.BUYER], legs[Leg.SELLER]],
            self.redirect_lock_height,
            [
                TxOut(terms.contribution(terms.buyer_role), by_leg[Leg.BUYER].refund_script),
                TxOut(terms.contribution(terms.seller_role), by_leg[Leg.SELLER].refund_script),
            ],
            terms.prepared_fee_rate,
        )
        self.swaps = {
            leg: build_swap(legs[leg], by_leg[leg].payout_script, terms.prepared_fee_rate)
            for leg in Leg
        }
        log.info("Session %s: deposit %s, redirect %s (locktime %d)",
                 self.session_id, self.deposit.txid, self.redirect.txid,
                 self.redirect_lock_height)

    def _sign_redirect(self, peer: KeysPayload) -> None:
        redirect = _require(self.redirect, "redirect")
        aggregated_key = _require(self.aggregated_key, "aggregated key")
        for index, slot in enumerate(REDIRECT_SLOTS):
            message = compute_sighash(redirect, index)
            psig, ctx = partial_sign(
                message,
                self._vault.key_share,
                self._vault.take_nonce(slot),
                [peer.redirect_nonces[slot]],
                aggregated_key,
            )
            self._own_partials[slot] = psig
            self._contexts[slot] = ctx

    # ---- phase: deposit -----------------------------------------------

    def _on_redirect_partials(self, payload: PartialsPayload) -> None:
        redirect = _require(self.redirect, "redirect")
        peer = _require(self._peer, "peer key announcement")
        tx = redirect.tx.unsigned_copy()
        for index, slot in enumerate(REDIRECT_SLOTS):
            theirs = payload.partials[slot]
            if theirs.signer != peer.pubkey:
                raise PartialSignatureMismatch(
                    f"partial for {slot} is signed by an unexpected key",
                    round=Round.DEPOSIT_PARTIALS,
                )
            sig = aggregate_signatures([self._own_partials[slot], theirs], self._contexts[slot])
            attach_key_path_signature(tx, index, sig)
        for index in range(len(tx.inputs)):
            if not verify_key_path_spend(tx, index, redirect.prevouts):
                raise PartialSignatureMismatch("redirect witness does not verify",
                                               round=Round.DEPOSIT_PARTIALS)
        self.signed_redirect = tx
        self._transition(TradeState.DEPOSIT_SIGNED)

        deposit = _require(self.deposit, "deposit")
        local = _require(self._local, "local key announcement")
        own = {(p.txid, p.vout) for p in local.funding}
        signatures = self.wallet.sign_funding_inputs(deposit.tx, deposit.prevouts)
        for index, prev in enumerate(deposit.prevouts):
            if (prev.txid, prev.vout) in own:
                if index not in signatures:
                    raise RuntimeError(f"wallet did not sign funding input {index}")
                self._own_witnesses[outpoint_key(prev.txid, prev.vout)] = signatures[index]

    def _on_deposit_witnesses(self, payload: WitnessesPayload) -> None:
        deposit = _require(self.deposit, "deposit")
        peer = _require(self._peer, "peer key announcement")
        peer_outpoints = {outpoint_key(p.txid, p.vout) for p in peer.funding}
        tx = deposit.tx.unsigned_copy()
        for index, prev in enumerate(deposit.prevouts):
            key = outpoint_key(prev.txid, prev.vout)
            source = payload.witnesses if key in peer_outpoints else self._own_witnesses
            sig = source.get(key)
            if sig is None:
                raise InvalidSignature(f"missing funding witness for {key}",
                                       round=Round.DEPOSIT_WITNESSES)
            attach_key_path_signature(tx, index, sig)
            if not verify_key_path_spend(tx, index, deposit.prevouts):
                raise InvalidSignature(f"funding witness for {key} does not verify",
                                       round=Round.DEPOSIT_WITNESSES)
        self.signed_deposit = tx

    async def _publish_deposit(self) -> bool:
        signed_deposit = _require(self.signed_deposit, "signed deposit")
        txid = await self._broadcast(signed_deposit, "deposit", self.terms.deposit_fee_rate)
        if txid is not None:
            self._deposit_published = True
        # An unpublished deposit gets one round for the peer's copy to show up
        timeout = None if txid is not None else self.config.round_timeout
        event = await self._await_confirmations(
            signed_deposit.txid, self.config.deposit_confirmations, timeout,
        )
        if event is None:
            await self._on_timeout(Round.DEPOSIT_WITNESSES, timeout)
            return False
        self._transition(TradeState.DEPOSIT_CONFIRMED)
        return True

    # ---- phase: swap --------------------------------------------------

    def _prepare_swap_nonces(self) -> None:
        key_share = self._vault.key_share
        for leg, slot in SWAP_SLOTS.items():
            self._vault.put_nonce(slot, generate_nonce(
                key_share,
                aggregated_key=self.aggregated_key,
                message=compute_sighash(self.swaps[leg], 0),
            ))

    def _on_swap_nonces(self, payload: NoncesPayload) -> None:
        aggregated_key = _require(self.aggregated_key, "aggregated key")
        adaptor_point = _require(self._adaptor_point, "adaptor point")
        for leg, slot in SWAP_SLOTS.items():
            nonce = self._vault.take_nonce(slot)
            aggnonce = aggregate_nonces([nonce.pubnonce, payload.nonces[slot]])
            ctx = SigningContext(
                aggregated_key,
                aggnonce,
                compute_sighash(self.swaps[leg], 0),
                adaptor_point=adaptor_point,
            )
            self._contexts[slot] = ctx
            self._own_partials[slot] = sign_partial_adaptor(ctx, self._vault.key_share, nonce)

    def _on_swap_partials(self, payload: PartialsPayload) -> None:
        peer = _require(self._peer, "peer key announcement")
        for leg, slot in SWAP_SLOTS.items():
            theirs = payload.partials[slot]
            if theirs.signer != peer.pubkey:
                raise PartialSignatureMismatch(
                    f"partial for {slot} is signed by an unexpected key",
                    round=Round.SWAP_PARTIALS,
                )
            self.adaptor_signatures[leg] = aggregate_adaptor_signatures(
                [self._own_partials[slot], theirs], self._contexts[slot],
            )
        self.swap_txid = self.swaps[Leg.BUYER].txid
        self._transition(TradeState.SWAP_READY)

    def _completed_swap(self, leg: Leg, secret: Secret) -> Transaction:
        utx = self.swaps[leg]
        tx = utx.tx.unsigned_copy()
        attach_key_path_signature(tx, 0, complete(self.adaptor_signatures[leg], secret))
        if not verify_key_path_spend(tx, 0, utx.prevouts):
            raise InvalidSignature(f"completed {leg.value} swap does not verify")
        return tx

    async def _claim_as_buyer(self) -> None:
        tx = self._completed_swap(Leg.BUYER, self._vault.secret)
        self.payout_txid = tx.txid
        await self._broadcast(tx, "swap", self.terms.prepared_fee_rate)
        event = await self._await_confirmations(
            tx.txid, self.config.payout_confirmations, self.config.payout_timeout,
        )
        if event is None:
            return await self._on_timeout(Round.PAYOUT, self.config.payout_timeout)
        self._transition(TradeState.PAYOUT_CONFIRMED)

    async def _claim_as_seller(self) -> None:
        buyer_swap = self.swaps[Leg.BUYER]
        depth = self.config.payout_confirmations
        event = await self._await_confirmations(
            buyer_swap.txid, depth, self.config.payout_timeout,
        )
        if event is None:
            self._note_timeout(Round.PAYOUT)
            event = await self._swap_or_redirect(buyer_swap.txid, depth)
            if event is None:
                return
        if event.raw_tx is None:
            raise ExtractionFailed("confirmation event carries no transaction data")
        published = Transaction.parse(event.raw_tx)
        witness = published.inputs[0].witness
        if not witness:
            raise ExtractionFailed("buyer swap carries no key-path witness")
        secret = extract_secret(
            self.adaptor_signatures[Leg.BUYER], witness[0], self._adaptor_point,
        )
        try:
            tx = self._completed_swap(Leg.SELLER, secret)
        finally:
            secret.wipe()
        log.info("Session %s: secret extracted from %s", self.session_id, buyer_swap.txid)
        self.payout_txid = tx.txid
        for _ in range(_PAYOUT_ATTEMPTS):
            if await self._broadcast(tx, "payout", self.terms.prepared_fee_rate) is None:
                continue
            if await self._await_confirmations(tx.txid, depth, self.config.payout_timeout):
                self._transition(TradeState.PAYOUT_CONFIRMED)
                return
        # Buyer leg already spent: no redirect, the signed payout is exported
        self.signed_payout = tx
        await self._abort(f"payout {tx.txid} not confirmed", notify_peer=False)

    async def _swap_or_redirect(
        self, swap_txid: str, depth: int,
    ) -> Optional[ConfirmationEvent]:
        """
        Keep following the buyer's swap until the redirect becomes final.

        Returns the swap's confirmation event if it shows up first (the
        caller then extracts the secret); otherwise broadcasts the redirect,
        ends in ``TimeoutRedirect`` and returns None.
        """
        signed_redirect = _require(self.signed_redirect, "signed redirect")
        lock_height = _require(self.redirect_lock_height, "redirect lock height")
        log.warning("Session %s: watching swap %s until height %d, then redirect %s",
                    self.session_id, swap_txid, lock_height, signed_redirect.txid)
        swap = asyncio.ensure_future(self._await_confirmations(swap_txid, depth, None))
        lock = asyncio.ensure_future(self._wait_for_height(lock_height))
        try:
            await asyncio.wait({swap, lock}, return_when=asyncio.FIRST_COMPLETED)
            if not swap.done():
                lock.result()
                txid = await self._broadcast(
                    signed_redirect, "redirect", self.terms.prepared_fee_rate,
                )
                if txid is None:
                    # A rejected redirect usually means the swap spent the buyer leg
                    try:
                        await asyncio.wait_for(asyncio.shield(swap), self.config.round_timeout)
                    except asyncio.TimeoutError:
                        pass
            if swap.done():
                return swap.result()
        finally:
            for fut in (swap, lock):
                if not fut.done():
                    fut.cancel()
        self.redirect_txid = signed_redirect.txid
        self._transition(TradeState.TIMEOUT_REDIRECT)
        return None

    # ---- waits --------------------------------------------------------

    async def _expect(self, round: Round) -> Optional[Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.round_timeout
        while round not in self._inbox:
            remaining = deadline - loop.time()
            if remaining <= 0:
                self.timeouts.append(TimeoutExpired(int(round), deadline))
                return None
            self._arrived.clear()
            try:
                await asyncio.wait_for(self._arrived.wait(), remaining)
            except asyncio.TimeoutError:
                pass
        return self._inbox[round]

    async def _await_confirmations(
        self, txid: str, depth: int, timeout: Optional[float],
    ) -> Optional[ConfirmationEvent]:
        async def follow() -> ConfirmationEvent:
            applied_height = -1
            while True:
                try:
                    async for event in self.chain.watch(txid):
                        if event.block_height < applied_height:
                            log.debug("Session %s: stale event for %s at %d ignored",
                                      self.session_id, txid, event.block_height)
                            continue
                        applied_height = event.block_height
                        if txid == self.deposit_txid and event.confirmations > 0:
                            self._deposit_published = True
                        if event.confirmations >= depth:
                            return event
                except ChainBackendError as exc:
                    log.warning("Session %s: watch on %s failed, retrying: %s",
                                self.session_id, txid, exc)
                else:
                    log.debug("Session %s: watch on %s ended, restarting",
                              self.session_id, txid)
                await asyncio.sleep(self.config.watch_restart_delay)

        if timeout is None:
            return await follow()
        try:
            return await asyncio.wait_for(follow(), timeout)
        except asyncio.TimeoutError:
            return None

    # ---- chain --------------------------------------------------------

    async def _broadcast(self, tx: Transaction, label: str, fee_rate: float) -> Optional[str]:
        """Submit with bounded retries; returns None (and warns) once exhausted."""
        attempts = self.config.broadcast_retries + 1
        delay = self.config.broadcast_retry_delay
        bump: Optional[float] = None
        last_error: Optional[ChainSubmissionError] = None
        for attempt in range(1, attempts + 1):
            try:
                txid = await self.wallet.broadcast(tx, fee_rate_bump=bump)
            except ChainSubmissionError as exc:
                last_error = exc
                log.warning("Session %s: %s broadcast attempt %d/%d rejected: %s",
                            self.session_id, label, attempt, attempts, exc)
                if exc.insufficient_fee:
                    bump = (bump or fee_rate) * self.config.fee_bump_factor
                if attempt < attempts:
                    await asyncio.sleep(delay)
                    delay *= 2
                continue
            log.info("Session %s: %s broadcast %s", self.session_id, label, txid)
            return txid
        warning = f"{label} broadcast failed after {attempts} attempts: {last_error}"
        log.warning("Session %s: %s", self.session_id, warning)
        self.warnings.append(warning)
        return None

    # ---- timeouts / abort ---------------------------------------------

    def _note_timeout(self, round: Round) -> None:
        if not self.timeouts or self.timeouts[-1].round != int(round):
            loop = asyncio.get_running_loop()
            self.timeouts.append(TimeoutExpired(int(round), loop.time()))
        log.warning("Session %s: deadline expired waiting for %s in %s",
                    self.session_id, round.name, self.state.value)

    async def _on_timeout(self, round: Round, timeout: Optional[float] = None) -> None:
        self._note_timeout(round)
        if self.signed_redirect is None or not self._deposit_published:
            await self._abort(f"timeout waiting for {round.name}", notify_peer=True)
            return
        await self._broadcast_redirect()
        self._transition(TradeState.TIMEOUT_REDIRECT)

    async def _wait_for_height(self, height: int) -> None:
        while True:
            try:
                await self.chain.wait_for_height(height)
                return
            except ChainBackendError as exc:
                log.warning("Session %s: waiting for height %d failed, retrying: %s",
                            self.session_id, height, exc)
                await asyncio.sleep(self.config.watch_restart_delay)

    async def _broadcast_redirect(self) -> None:
        signed_redirect = _require(self.signed_redirect, "signed redirect")
        lock_height = _require(self.redirect_lock_height, "redirect lock height")
        log.warning("Session %s: waiting for height %d to broadcast redirect %s",
                    self.session_id, lock_height, signed_redirect.txid)
        await self._wait_for_height(lock_height)
        self.redirect_txid = signed_redirect.txid
        await self._broadcast(signed_redirect, "redirect", self.terms.prepared_fee_rate)

    async def _abort(self, reason: str, notify_peer: bool) -> None:
        if self.state.is_terminal:
            return
        self._aborting = True
        self._abort_reason = reason
        if notify_peer:
            try:
                await self._send(Round.ABORT, AbortPayload(reason))
            except Exception as exc:
                log.warning("Session %s: could not notify peer of abort: %s",
                            self.session_id, exc)
        recover = (
            self._deposit_published
            and self.signed_redirect is not None
            and self.payout_txid is None
        )
        self._transition(TradeState.ABORTED)
        log.warning("Session %s aborted: %s", self.session_id, reason)
        if recover:
            # No further signing: only the redirect signed earlier goes out
            await self._broadcast_redirect()

    def _transition(self, new: TradeState) -> None:
        old = self.state
        if old.is_terminal:
            raise SessionTerminated(f"session {self.session_id} already {old.value}")
        if new is not TradeState.ABORTED and new not in _TRANSITIONS[old]:
            raise RuntimeError(f"illegal transition {old.value} -> {new.value}")
        self.state = new
        log.info("Session %s: %s -> %s", self.session_id, old.value, new.value)
        if new.is_terminal:
            self._vault.erase()
            self._terminal.set()

    async def _send(self, round: Round, payload: Any) -> None:
        message = ProtocolMessage(self.session_id, int(round), self.role, payload.to_payload())
        await self.transport.send(self.peer_identity, message)

