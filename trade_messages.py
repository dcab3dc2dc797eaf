"""
Protocol messages exchanged between the two trade sessions.

Wire format: JSON ``{"session_id", "round", "sender", "payload"}`` with all
binary values hex-encoded, base64-wrapped for transports that want a single
opaque token.  Payload decoding validates shapes and lengths and raises
``MalformedMessage``; cryptographic validity is checked by the session.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, List, Optional

from bitcoin_protocol import Prevout, is_p2tr
from musig_keys import PartialSignature
from trade_errors import MalformedMessage
from trade_tx import Leg, PartyRole


class Round(IntEnum):
    KEYS = 0
    DEPOSIT_PARTIALS = 1
    DEPOSIT_WITNESSES = 2
    SWAP_NONCES = 3
    SWAP_PARTIALS = 4
    PAYOUT = 5          # on-chain wait for the buyer's swap; never sent
    ABORT = 9


MESSAGE_SEQUENCE = (
    Round.KEYS,
    Round.DEPOSIT_PARTIALS,
    Round.DEPOSIT_WITNESSES,
    Round.SWAP_NONCES,
    Round.SWAP_PARTIALS,
)

REDIRECT_SLOTS = ("redirect/0", "redirect/1")
SWAP_SLOTS = {Leg.BUYER: "swap/buyer", Leg.SELLER: "swap/seller"}


def payload_digest(payload: Dict[str, Any]) -> bytes:
    """Canonical hash used to tell identical resends from conflicting ones."""
    return hashlib.sha256(
        json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    ).digest()


@dataclass(frozen=True)
class ProtocolMessage:
    session_id: str
    round: int
    sender: PartyRole
    payload: Dict[str, Any]

    def to_json(self) -> str:
        return json.dumps({
            "session_id": self.session_id,
            "round": int(self.round),
            "sender": self.sender.value,
            "payload": self.payload,
        }, sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> "ProtocolMessage":
        try:
            d = json.loads(text)
            return cls(
                session_id=str(d["session_id"]),
                round=int(d["round"]),
                sender=PartyRole(d["sender"]),
                payload=dict(d["payload"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise MalformedMessage(f"undecodable protocol message: {exc}") from exc

    def to_base64(self) -> str:
        return base64.b64encode(self.to_json().encode()).decode("ascii")

    @classmethod
    def from_base64(cls, token: str) -> "ProtocolMessage":
        try:
            text = base64.b64decode(token, validate=True).decode()
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise MalformedMessage(f"bad base64 message: {exc}") from exc
        return cls.from_json(text)


# ============================================================
# FIELD HELPERS
# ============================================================

def _field(payload: Dict[str, Any], key: str) -> Any:
    if not isinstance(payload, dict) or key not in payload:
        raise MalformedMessage(f"missing field '{key}'")
    return payload[key]


def _hex(value: Any, key: str, length: Optional[int] = None) -> bytes:
    if not isinstance(value, str):
        raise MalformedMessage(f"field '{key}' must be a hex string")
    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raise MalformedMessage(f"field '{key}' is not valid hex")
    if length is not None and len(raw) != length:
        raise MalformedMessage(f"field '{key}' must be {length} bytes, got {len(raw)}")
    return raw


def _int(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedMessage(f"field '{key}' must be a non-negative integer")
    return value


def _script(value: Any, key: str) -> bytes:
    raw = _hex(value, key)
    if not is_p2tr(raw):
        raise MalformedMessage(f"field '{key}' must be a P2TR scriptPubKey")
    return raw


def _slot_map(payload: Dict[str, Any], key: str, slots) -> Dict[str, Any]:
    value = _field(payload, key)
    if not isinstance(value, dict) or set(value) != set(slots):
        raise MalformedMessage(f"field '{key}' must contain exactly {sorted(slots)}")
    return value


# ============================================================
# PAYLOADS
# ============================================================

@dataclass(frozen=True)
class KeysPayload:
    pubkey: bytes
    redirect_nonces: Dict[str, bytes]
    funding: List[Prevout]
    change_script: bytes
    payout_script: bytes
    refund_script: bytes
    block_height: int
    terms_digest: bytes
    adaptor_point: Optional[bytes] = None

    def to_payload(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "pubkey": self.pubkey.hex(),
            "redirect_nonces": {k: v.hex() for k, v in self.redirect_nonces.items()},
            "funding": [p.to_dict() for p in self.funding],
            "change_script": self.change_script.hex(),
            "payout_script": self.payout_script.hex(),
            "refund_script": self.refund_script.hex(),
            "block_height": self.block_height,
            "terms_digest": self.terms_digest.hex(),
        }
        if self.adaptor_point is not None:
            d["adaptor_point"] = self.adaptor_point.hex()
        return d

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "KeysPayload":
        nonces = _slot_map(payload, "redirect_nonces", REDIRECT_SLOTS)
        funding_raw = _field(payload, "funding")
        if not isinstance(funding_raw, list) or not funding_raw:
            raise MalformedMessage("field 'funding' must be a non-empty list")
        funding = []
        for item in funding_raw:
            try:
                prev = Prevout.from_dict(item)
                bytes.fromhex(prev.txid)
            except (KeyError, ValueError, TypeError) as exc:
                raise MalformedMessage(f"bad funding prevout: {exc}")
            if len(prev.txid) != 64 or not is_p2tr(prev.script_pubkey) or prev.amount <= 0:
                raise MalformedMessage("funding prevouts must be positive P2TR outputs")
            funding.append(prev)
        adaptor = payload.get("adaptor_point")
        return cls(
            pubkey=_hex(_field(payload, "pubkey"), "pubkey", 33),
            redirect_nonces={k: _hex(v, k, 66) for k, v in nonces.items()},
            funding=funding,
            change_script=_script(_field(payload, "change_script"), "change_script"),
            payout_script=_script(_field(payload, "payout_script"), "payout_script"),
            refund_script=_script(_field(payload, "refund_script"), "refund_script"),
            block_height=_int(_field(payload, "block_height"), "block_height"),
            terms_digest=_hex(_field(payload, "terms_digest"), "terms_digest", 32),
            adaptor_point=None if adaptor is None else _hex(adaptor, "adaptor_point", 33),
        )


@dataclass(frozen=True)
class PartialsPayload:
    partials: Dict[str, PartialSignature]

    def to_payload(self) -> Dict[str, Any]:
        return {"partials": {k: v.to_dict() for k, v in self.partials.items()}}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], slots) -> "PartialsPayload":
        raw = _slot_map(payload, "partials", slots)
        partials = {}
        for slot, d in raw.items():
            try:
                partials[slot] = PartialSignature.from_dict(d)
            except (KeyError, ValueError, TypeError) as exc:
                raise MalformedMessage(f"bad partial signature for {slot}: {exc}")
        return cls(partials)


@dataclass(frozen=True)
class WitnessesPayload:
    witnesses: Dict[str, bytes]       # "txid:vout" -> key-path signature

    def to_payload(self) -> Dict[str, Any]:
        return {"witnesses": {k: v.hex() for k, v in self.witnesses.items()}}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "WitnessesPayload":
        raw = _field(payload, "witnesses")
        if not isinstance(raw, dict) or not raw:
            raise MalformedMessage("field 'witnesses' must be a non-empty object")
        witnesses = {}
        for outpoint, sig in raw.items():
            sig_bytes = _hex(sig, outpoint)
            if len(sig_bytes) not in (64, 65):
                raise MalformedMessage(f"witness for {outpoint} has bad length")
            witnesses[outpoint] = sig_bytes
        return cls(witnesses)


@dataclass(frozen=True)
class NoncesPayload:
    nonces: Dict[str, bytes]

    def to_payload(self) -> Dict[str, Any]:
        return {"nonces": {k: v.hex() for k, v in self.nonces.items()}}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "NoncesPayload":
        raw = _slot_map(payload, "nonces", SWAP_SLOTS.values())
        return cls({k: _hex(v, k, 66) for k, v in raw.items()})


@dataclass(frozen=True)
class AbortPayload:
    reason: str

    def to_payload(self) -> Dict[str, Any]:
        return {"reason": self.reason}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AbortPayload":
        reason = _field(payload, "reason")
        if not isinstance(reason, str):
            raise MalformedMessage("field 'reason' must be a string")
        return cls(reason[:256])


def decode_payload(round: int, payload: Dict[str, Any]):
    """Schema-check *payload* for *round* and return its typed form."""
    if round == Round.KEYS:
        return KeysPayload.from_payload(payload)
    if round == Round.DEPOSIT_PARTIALS:
        return PartialsPayload.from_payload(payload, REDIRECT_SLOTS)
    if round == Round.DEPOSIT_WITNESSES:
        return WitnessesPayload.from_payload(payload)
    if round == Round.SWAP_NONCES:
        return NoncesPayload.from_payload(payload)
    if round == Round.SWAP_PARTIALS:
        return PartialsPayload.from_payload(payload, SWAP_SLOTS.values())
    if round == Round.ABORT:
        return AbortPayload.from_payload(payload)
    raise MalformedMessage(f"unknown round {round}")


def outpoint_key(txid: str, vout: int) -> str:
    return f"{txid}:{vout}"
