"""
Bitcoin transaction primitives and BIP-341 Taproot sighash.

Reference: https://github.com/bitcoin/bips/blob/master/bip-0341.mediawiki
"""

from __future__ import annotations

import hashlib
import secrets
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from bech32 import decode as _bech32_decode
from bech32 import encode as _bech32_encode
from coincurve import PrivateKey as _Secp256k1PrivateKey
from coincurve import PublicKey as _Secp256k1PublicKey
from coincurve import PublicKeyXOnly as _Secp256k1PubKeyXOnly

# secp256k1 group order
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_LOCKTIME = 0xFFFFFFFE   # enables nLockTime, no RBF
SEQUENCE_RBF = 0xFFFFFFFD        # BIP-125 opt-in
LOCKTIME_THRESHOLD = 500_000_000
DUST_LIMIT_SATS = 546

_NETWORK_HRP = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}


def compact_size(n: int) -> bytes:
    """Bitcoin CompactSize encoding."""
    if n < 0xfd:
        return struct.pack("<B", n)
    elif n <= 0xffff:
        return b'\xfd' + struct.pack("<H", n)
    elif n <= 0xffffffff:
        return b'\xfe' + struct.pack("<I", n)
    else:
        return b'\xff' + struct.pack("<Q", n)


def read_compact_size(data: bytes, pos: int) -> Tuple[int, int]:
    """Decode a CompactSize at *pos*; returns (value, new_pos)."""
    b0 = data[pos]
    if b0 < 0xFD:
        return b0, pos + 1
    elif b0 == 0xFD:
        return struct.unpack_from("<H", data, pos + 1)[0], pos + 3
    elif b0 == 0xFE:
        return struct.unpack_from("<I", data, pos + 1)[0], pos + 5
    else:
        return struct.unpack_from("<Q", data, pos + 1)[0], pos + 9


def tagged_hash(tag: str, msg: bytes) -> bytes:
    """BIP-340 tagged hash: SHA-256(SHA-256(tag) || SHA-256(tag) || msg)"""
    tag_hash = hashlib.sha256(tag.encode()).digest()
    return hashlib.sha256(tag_hash + tag_hash + msg).digest()


def sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


# ============================================================
# TRANSACTION MODEL
# ============================================================

@dataclass
class TxIn:
    txid: str                 # display (big-endian) hex
    vout: int
    sequence: int = SEQUENCE_RBF
    witness: List[bytes] = field(default_factory=list)

    def outpoint_bytes(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)


@dataclass
class TxOut:
    amount: int
    script_pubkey: bytes

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError("output amount cannot be negative")

    def serialize(self) -> bytes:
        return (
            struct.pack("<q", self.amount)
            + compact_size(len(self.script_pubkey))
            + self.script_pubkey
        )


@dataclass(frozen=True)
class Prevout:
    """The output being spent: outpoint plus its amount and scriptPubKey."""
    txid: str
    vout: int
    amount: int
    script_pubkey: bytes

    def to_dict(self) -> dict:
        return {
            "txid": self.txid,
            "vout": self.vout,
            "amount": self.amount,
            "scriptPubKey": self.script_pubkey.hex(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Prevout":
        return cls(
            txid=d["txid"],
            vout=int(d["vout"]),
            amount=int(d["amount"]),
            script_pubkey=bytes.fromhex(d["scriptPubKey"]),
        )


@dataclass
class Transaction:
    version: int = 2
    locktime: int = 0
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness
        raw = struct.pack("<i", self.version)
        if with_witness:
            raw += b"\x00\x01"                               # segwit marker + flag
        raw += compact_size(len(self.inputs))
        for inp in self.inputs:
            raw += inp.outpoint_bytes()
            raw += b"\x00"                                   # empty scriptSig
            raw += struct.pack("<I", inp.sequence)
        raw += compact_size(len(self.outputs))
        for out in self.outputs:
            raw += out.serialize()
        if with_witness:
            for inp in self.inputs:
                raw += compact_size(len(inp.witness))
                for item in inp.witness:
                    raw += compact_size(len(item)) + item
        raw += struct.pack("<I", self.locktime)
        return raw

    @property
    def txid(self) -> str:
        return sha256d(self.serialize(include_witness=False))[::-1].hex()

    @property
    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize(include_witness=True))
        return base * 3 + total

    @property
    def vsize(self) -> int:
        return (self.weight + 3) // 4

    def unsigned_copy(self) -> "Transaction":
        return Transaction(
            version=self.version,
            locktime=self.locktime,
            inputs=[TxIn(i.txid, i.vout, i.sequence) for i in self.inputs],
            outputs=[TxOut(o.amount, o.script_pubkey) for o in self.outputs],
        )

    def is_final(self, height: int, median_time: int = 0) -> bool:
        """BIP-65/BIP-113 finality: height-based (<500M) or time-based."""
        if self.locktime == 0:
            return True
        if all(inp.sequence == SEQUENCE_FINAL for inp in self.inputs):
            return True
        if self.locktime < LOCKTIME_THRESHOLD:
            return self.locktime < height
        return self.locktime < median_time

    @classmethod
    def parse(cls, raw: bytes) -> "Transaction":
        """Decode a serialized transaction (with or without witness data)."""
        try:
            pos = 0
            version = struct.unpack_from("<i", raw, pos)[0]
            pos += 4
            segwit = raw[pos] == 0x00 and raw[pos + 1] == 0x01
            if segwit:
                pos += 2
            n_in, pos = read_compact_size(raw, pos)
            inputs: List[TxIn] = []
            for _ in range(n_in):
                txid_le = raw[pos:pos + 32]
                pos += 32
                vout = struct.unpack_from("<I", raw, pos)[0]
                pos += 4
                script_len, pos = read_compact_size(raw, pos)
                pos += script_len                            # skip scriptSig
                seq = struct.unpack_from("<I", raw, pos)[0]
                pos += 4
                inputs.append(TxIn(txid_le[::-1].hex(), vout, seq))
            n_out, pos = read_compact_size(raw, pos)
            outputs: List[TxOut] = []
            for _ in range(n_out):
                amount = struct.unpack_from("<q", raw, pos)[0]
                pos += 8
                spk_len, pos = read_compact_size(raw, pos)
                outputs.append(TxOut(amount, bytes(raw[pos:pos + spk_len])))
                pos += spk_len
            if segwit:
                for inp in inputs:
                    n_items, pos = read_compact_size(raw, pos)
                    for _ in range(n_items):
                        item_len, pos = read_compact_size(raw, pos)
                        inp.witness.append(bytes(raw[pos:pos + item_len]))
                        pos += item_len
            locktime = struct.unpack_from("<I", raw, pos)[0]
            pos += 4
        except (IndexError, struct.error) as exc:
            raise ValueError(f"Truncated transaction: {exc}") from exc
        if pos != len(raw):
            raise ValueError(f"{len(raw) - pos} trailing bytes after transaction")
        return cls(version=version, locktime=locktime, inputs=inputs, outputs=outputs)


# ============================================================
# BIP-341 SIGHASH
# ============================================================

class BIP341Sighash:
    """Full BIP-341 Taproot signature hash calculator (key-path spends)."""

    SIGHASH_DEFAULT = 0x00
    SIGHASH_ALL = 0x01
    SIGHASH_NONE = 0x02
    SIGHASH_SINGLE = 0x03
    SIGHASH_ANYONECANPAY = 0x80

    _VALID_TYPES = (0x00, 0x01, 0x02, 0x03, 0x81, 0x82, 0x83)

    def __init__(
        self,
        tx: Transaction,
        prevouts: Sequence[Prevout],
        input_index: int,
    ) -> None:
        if len(prevouts) != len(tx.inputs):
            raise ValueError(
                f"prevout count ({len(prevouts)}) != input count ({len(tx.inputs)})"
            )
        if not 0 <= input_index < len(tx.inputs):
            raise ValueError(f"input index {input_index} out of range")
        for inp, prev in zip(tx.inputs, prevouts):
            if (inp.txid, inp.vout) != (prev.txid, prev.vout):
                raise ValueError(
                    f"prevout {prev.txid}:{prev.vout} does not match "
                    f"input {inp.txid}:{inp.vout}"
                )
        self.tx = tx
        self.prevouts = list(prevouts)
        self.input_index = input_index

    def compute(
        self,
        hash_type: int = SIGHASH_DEFAULT,
        annex: Optional[bytes] = None,
    ) -> bytes:
        """
        Compute BIP-341 signature hash for key-path spending.

        Args:
            hash_type: SIGHASH type (default: 0x00)
            annex: Optional annex data (must start with 0x50)

        Returns:
            32-byte signature hash
        """
        if hash_type not in self._VALID_TYPES:
            raise ValueError(f"invalid Taproot hash_type 0x{hash_type:02x}")
        if annex is not None and (not annex or annex[0] != 0x50):
            raise ValueError("annex must start with 0x50")

        anyonecanpay = bool(hash_type & self.SIGHASH_ANYONECANPAY)
        output_type = hash_type & 0x03
        if output_type == self.SIGHASH_DEFAULT:
            output_type = self.SIGHASH_ALL

        # Epoch (1 byte) then SigMsg
        msg = bytearray(b'\x00')
        msg += bytes([hash_type])
        msg += struct.pack("<i", self.tx.version)
        msg += struct.pack("<I", self.tx.locktime)

        if not anyonecanpay:
            msg += self._sha_prevouts()
            msg += self._sha_amounts()
            msg += self._sha_scriptpubkeys()
            msg += self._sha_sequences()

        if output_type not in (self.SIGHASH_NONE, self.SIGHASH_SINGLE):
            msg += self._sha_outputs()

        # Spend type: ext_flag (0 for key path) * 2 + annex_present
        msg += bytes([1 if annex is not None else 0])

        if anyonecanpay:
            inp = self.tx.inputs[self.input_index]
            prev = self.prevouts[self.input_index]
            msg += inp.outpoint_bytes()
            msg += struct.pack("<q", prev.amount)
            msg += compact_size(len(prev.script_pubkey)) + prev.script_pubkey
            msg += struct.pack("<I", inp.sequence)
        else:
            msg += struct.pack("<I", self.input_index)

        if annex is not None:
            msg += hashlib.sha256(compact_size(len(annex)) + annex).digest()

        if output_type == self.SIGHASH_SINGLE:
            if self.input_index >= len(self.tx.outputs):
                raise ValueError("SIGHASH_SINGLE without a matching output")
            msg += self._sha_single_output(self.input_index)

        return tagged_hash("TapSighash", bytes(msg))

    # === Helper methods for hashing transaction data ===

    def _sha_prevouts(self) -> bytes:
        """SHA-256 of all input outpoints (internal txid byte order)."""
        data = b''.join(inp.outpoint_bytes() for inp in self.tx.inputs)
        return hashlib.sha256(data).digest()

    def _sha_amounts(self) -> bytes:
        data = b''.join(struct.pack("<q", p.amount) for p in self.prevouts)
        return hashlib.sha256(data).digest()

    def _sha_scriptpubkeys(self) -> bytes:
        data = b''.join(
            compact_size(len(p.script_pubkey)) + p.script_pubkey
            for p in self.prevouts
        )
        return hashlib.sha256(data).digest()

    def _sha_sequences(self) -> bytes:
        data = b''.join(struct.pack("<I", inp.sequence) for inp in self.tx.inputs)
        return hashlib.sha256(data).digest()

    def _sha_outputs(self) -> bytes:
        data = b''.join(out.serialize() for out in self.tx.outputs)
        return hashlib.sha256(data).digest()

    def _sha_single_output(self, index: int) -> bytes:
        return hashlib.sha256(self.tx.outputs[index].serialize()).digest()


# ============================================================
# TAPROOT OUTPUTS
# ============================================================

def p2tr_script(xonly: bytes) -> bytes:
    """OP_1 <32-byte x-only pubkey>  (P2TR scriptPubKey)."""
    if len(xonly) != 32:
        raise ValueError(f"x-only key must be 32 bytes, got {len(xonly)}")
    return b"\x51\x20" + xonly


def is_p2tr(script_pubkey: bytes) -> bool:
    return len(script_pubkey) == 34 and script_pubkey[:2] == b"\x51\x20"


def taproot_tweak(internal_xonly: bytes) -> int:
    """BIP-86 tweak scalar for a key-path-only output (no script tree)."""
    t = int.from_bytes(tagged_hash("TapTweak", internal_xonly), "big")
    if t >= CURVE_ORDER:
        raise ValueError("TapTweak hash out of range")
    return t


def tweak_pubkey(internal_xonly: bytes) -> bytes:
    """Return the 33-byte compressed Taproot output key Q = lift_x(P) + tG."""
    internal = _Secp256k1PublicKey(b"\x02" + internal_xonly)
    t = taproot_tweak(internal_xonly)
    return internal.add(t.to_bytes(32, "big")).format(compressed=True)


def taproot_address(xonly: bytes, network: str = "mainnet") -> str:
    """Bech32m P2TR address for an output key."""
    hrp = _NETWORK_HRP.get(network)
    if hrp is None:
        raise ValueError(f"unknown network: {network}")
    addr = _bech32_encode(hrp, 1, list(xonly))
    if addr is None:
        raise RuntimeError("Bech32m encoding failed")
    return addr


def address_to_script(address: str) -> bytes:
    """Decode a Bech32m P2TR address to its OP_1 <32B> scriptPubKey."""
    lowered = address.lower()
    for hrp in ("bcrt", "bc", "tb"):
        if lowered.startswith(hrp + "1"):
            break
    else:
        raise ValueError(f"Unsupported address prefix: {address}")
    ver, prog = _bech32_decode(hrp, lowered)
    if ver is None or prog is None:
        raise ValueError(f"Invalid Bech32m address: {address}")
    if ver != 1 or len(prog) != 32:
        raise ValueError(
            f"Expected witness v1 + 32-byte program, "
            f"got v{ver} + {len(prog)} bytes"
        )
    return p2tr_script(bytes(prog))


def schnorr_verify(message: bytes, xonly: bytes, signature: bytes) -> bool:
    """BIP-340 verification against a 32-byte x-only key."""
    try:
        return _Secp256k1PubKeyXOnly(xonly).verify(signature, message)
    except (ValueError, TypeError):
        return False


def key_path_sighash_type(witness_sig: bytes) -> int:
    """Hash type committed to by a key-path witness signature."""
    if len(witness_sig) == 64:
        return BIP341Sighash.SIGHASH_DEFAULT
    if len(witness_sig) == 65 and witness_sig[64] != 0x00:
        return witness_sig[64]
    raise ValueError(f"bad key-path signature length {len(witness_sig)}")


def verify_key_path_spend(
    tx: Transaction, input_index: int, prevouts: Sequence[Prevout],
) -> bool:
    """Check that input *input_index* carries a valid P2TR key-path witness."""
    prev = prevouts[input_index]
    if not is_p2tr(prev.script_pubkey):
        return False
    witness = tx.inputs[input_index].witness
    if len(witness) != 1:
        return False
    sig = witness[0]
    try:
        hash_type = key_path_sighash_type(sig)
        sighash = BIP341Sighash(tx, prevouts, input_index).compute(hash_type)
    except ValueError:
        return False
    return schnorr_verify(sighash, prev.script_pubkey[2:], sig[:64])


# ============================================================
# SINGLE-PARTY TAPROOT (BIP-86) KEY
# ============================================================

class TaprootKey:
    """
    BIP-86 key-path-only Taproot key backed by libsecp256k1.

    Wallets use this for the funding inputs of the deposit transaction;
    the jointly controlled deposit outputs use ``musig_keys`` instead.
    """

    def __init__(self, seed: Optional[bytes] = None) -> None:
        sk_bytes = seed if seed else secrets.token_bytes(32)
        # Ensure valid scalar (1 < sk < curve order)
        self._sk = _Secp256k1PrivateKey(sk_bytes)
        self._pk_compressed: bytes = self._sk.public_key.format(compressed=True)
        self._pk_xonly: bytes = self._pk_compressed[1:]
        self._output_key: bytes = tweak_pubkey(self._pk_xonly)

    @property
    def public_key(self) -> bytes:
        """33-byte compressed internal key."""
        return self._pk_compressed

    @property
    def internal_xonly(self) -> bytes:
        return self._pk_xonly

    @property
    def output_xonly(self) -> bytes:
        """32-byte x-only tweaked output key (what appears on chain)."""
        return self._output_key[1:]

    @property
    def script_pubkey(self) -> bytes:
        return p2tr_script(self.output_xonly)

    def taproot_address(self, network: str = "mainnet") -> str:
        return taproot_address(self.output_xonly, network)

    def _tweaked_private_key(self) -> _Secp256k1PrivateKey:
        d = int.from_bytes(self._sk.secret, "big")
        if self._pk_compressed[0] == 0x03:
            d = CURVE_ORDER - d
        d = (d + taproot_tweak(self._pk_xonly)) % CURVE_ORDER
        return _Secp256k1PrivateKey(d.to_bytes(32, "big"))

    def sign_schnorr(self, message: bytes) -> bytes:
        """BIP-340 signature with the *tweaked* key over a 32-byte digest."""
        if len(message) != 32:
            raise ValueError(
                f"BIP-340 Schnorr sign requires a 32-byte digest, "
                f"got {len(message)} bytes"
            )
        return self._tweaked_private_key().sign_schnorr(message)

    def sign_input(
        self,
        tx: Transaction,
        input_index: int,
        prevouts: Sequence[Prevout],
        hash_type: int = BIP341Sighash.SIGHASH_DEFAULT,
    ) -> bytes:
        """Key-path witness signature (64 B, or 65 B for non-default types)."""
        sighash = BIP341Sighash(tx, prevouts, input_index).compute(hash_type)
        sig = self.sign_schnorr(sighash)
        if hash_type != BIP341Sighash.SIGHASH_DEFAULT:
            sig += bytes([hash_type])
        return sig
