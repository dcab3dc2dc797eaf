"""
MuSig2 key and nonce arithmetic (BIP-327) over libsecp256k1.

Group operations are delegated to ``coincurve``; this module only does the
scalar bookkeeping of the two-round protocol:

    key_agg -> taproot tweak -> nonce_gen -> nonce_agg -> sign -> partial_sig_agg

Single-use nonces:
    A ``NonceShare`` hands out its secret pair exactly once.  ``consume()``
    zeroes the secret and every later call raises ``NonceReuse``, so signing
    two different messages with one nonce (which leaks the key share) cannot
    happen by accident.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from coincurve import PrivateKey as _Secp256k1PrivateKey
from coincurve import PublicKey as _Secp256k1PublicKey

from bitcoin_protocol import (
    CURVE_ORDER,
    p2tr_script,
    schnorr_verify,
    tagged_hash,
    taproot_address,
    taproot_tweak,
)
from trade_errors import (
    InvalidNonceSet,
    NonceReuse,
    PartialSignatureMismatch,
    SessionTerminated,
)

log = logging.getLogger("musig_trade.keys")

N = CURVE_ORDER
_INFINITY_BYTES = b"\x00" * 33
_GENERATOR_BYTES = bytes.fromhex(
    "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
)

Point = _Secp256k1PublicKey


# ============================================================
# GROUP HELPERS  (None represents the point at infinity)
# ============================================================

def cpoint(data: bytes) -> Point:
    """Parse a 33-byte compressed point; ValueError if not on the curve."""
    if len(data) != 33 or data[0] not in (2, 3):
        raise ValueError("not a valid compressed point")
    return _Secp256k1PublicKey(data)


def cbytes(P: Point) -> bytes:
    return P.format(compressed=True)


def xbytes(P: Point) -> bytes:
    return P.format(compressed=True)[1:]


def has_even_y(P: Point) -> bool:
    return P.format(compressed=True)[0] == 0x02


def lift_x(xonly: bytes) -> Point:
    return cpoint(b"\x02" + xonly)


def point_mul(P: Optional[Point], k: int) -> Optional[Point]:
    k %= N
    if P is None or k == 0:
        return None
    return P.multiply(k.to_bytes(32, "big"))


def g_mul(k: int) -> Optional[Point]:
    k %= N
    if k == 0:
        return None
    return _Secp256k1PublicKey.from_secret(k.to_bytes(32, "big"))


def point_add(P: Optional[Point], Q: Optional[Point]) -> Optional[Point]:
    if P is None:
        return Q
    if Q is None:
        return P
    try:
        return _Secp256k1PublicKey.combine_keys([P, Q])
    except ValueError:
        # P == -Q
        return None


def point_negate(P: Optional[Point]) -> Optional[Point]:
    return point_mul(P, N - 1)


def points_equal(P: Optional[Point], Q: Optional[Point]) -> bool:
    if P is None or Q is None:
        return P is None and Q is None
    return cbytes(P) == cbytes(Q)


def int_from_bytes(b: bytes) -> int:
    return int.from_bytes(b, "big")


def bytes_from_int(x: int) -> bytes:
    return x.to_bytes(32, "big")


def _hash_int(tag: str, msg: bytes) -> int:
    return int_from_bytes(tagged_hash(tag, msg)) % N


# ============================================================
# KEY SHARE
# ============================================================

class KeyShare:
    """
    A party's per-trade secp256k1 key pair.

    The secret scalar lives in a ``bytearray`` so it can be zeroed by
    ``wipe()``; after that every access raises ``SessionTerminated``.
    """

    def __init__(self, secret: bytes) -> None:
        # Validates 0 < secret < n
        self._public: bytes = _Secp256k1PrivateKey(secret).public_key.format(compressed=True)
        self._secret = bytearray(secret)
        self._wiped = False

    @classmethod
    def generate(cls) -> "KeyShare":
        return cls(secrets.token_bytes(32))

    @property
    def public_key(self) -> bytes:
        """33-byte compressed public key."""
        return self._public

    @property
    def wiped(self) -> bool:
        return self._wiped

    def secret_bytes(self) -> bytes:
        if self._wiped:
            raise SessionTerminated("key share has been erased")
        return bytes(self._secret)

    def scalar(self) -> int:
        return int_from_bytes(self.secret_bytes())

    def wipe(self) -> None:
        for i in range(len(self._secret)):
            self._secret[i] = 0
        self._wiped = True

    def __repr__(self) -> str:
        state = "wiped" if self._wiped else "live"
        return f"KeyShare(pub={self._public.hex()}, {state})"


# ============================================================
# NONCES
# ============================================================

class NonceShare:
    """Single-use MuSig2 nonce: two secret scalars plus their public points."""

    def __init__(self, k1: int, k2: int, signer_pubkey: bytes) -> None:
        if not (0 < k1 < N and 0 < k2 < N):
            raise ValueError("secret nonce out of range")
        R1 = g_mul(k1)
        R2 = g_mul(k2)
        if R1 is None or R2 is None:
            raise ValueError("secret nonce maps to the point at infinity")
        self.pubnonce: bytes = cbytes(R1) + cbytes(R2)
        self.signer_pubkey = signer_pubkey
        self._secnonce = bytearray(bytes_from_int(k1) + bytes_from_int(k2))
        self._consumed = False
        self._erased = False

    @property
    def consumed(self) -> bool:
        return self._consumed or self._erased

    def consume(self) -> Tuple[int, int]:
        """Return (k1, k2) once, zeroing them; any later call fails."""
        if self._erased:
            raise SessionTerminated("nonce share has been erased")
        if self._consumed:
            raise NonceReuse("NonceShare already consumed by a previous signature")
        k1 = int_from_bytes(bytes(self._secnonce[:32]))
        k2 = int_from_bytes(bytes(self._secnonce[32:64]))
        self._zero()
        self._consumed = True
        return k1, k2

    def wipe(self) -> None:
        self._zero()
        self._erased = True

    def _zero(self) -> None:
        for i in range(len(self._secnonce)):
            self._secnonce[i] = 0

    def __repr__(self) -> str:
        return f"NonceShare(pub={self.pubnonce.hex()[:16]}..., consumed={self.consumed})"


def generate_nonce(
    key_share: KeyShare,
    *,
    aggregated_key: Optional["AggregatedKey"] = None,
    message: Optional[bytes] = None,
    extra_in: Optional[bytes] = None,
) -> NonceShare:
    """BIP-327 NonceGen with fresh OS randomness (never deterministic)."""
    rand_ = secrets.token_bytes(32)
    sk = key_share.secret_bytes()
    rand = bytes(a ^ b for a, b in zip(sk, tagged_hash("MuSig/aux", rand_)))
    pk = key_share.public_key
    aggpk = aggregated_key.output_xonly if aggregated_key is not None else b""
    if message is None:
        msg_prefixed = b"\x00"
    else:
        msg_prefixed = b"\x01" + len(message).to_bytes(8, "big") + message
    extra = extra_in or b""

    def nonce_hash(i: int) -> int:
        buf = (
            rand
            + len(pk).to_bytes(1, "big") + pk
            + len(aggpk).to_bytes(1, "big") + aggpk
            + msg_prefixed
            + len(extra).to_bytes(4, "big") + extra
            + i.to_bytes(1, "big")
        )
        return _hash_int("MuSig/nonce", buf)

    k1 = nonce_hash(0)
    k2 = nonce_hash(1)
    if k1 == 0 or k2 == 0:
        raise RuntimeError("nonce derivation produced zero; generate a new nonce")
    return NonceShare(k1, k2, pk)


def aggregate_nonces(pubnonces: Sequence[bytes]) -> bytes:
    """NonceAgg: component-wise sum of the parties' public nonces."""
    if not pubnonces:
        raise InvalidNonceSet("no public nonces supplied")
    aggnonce = b""
    for j in (0, 1):
        R_j: Optional[Point] = None
        for i, pubnonce in enumerate(pubnonces):
            if not isinstance(pubnonce, (bytes, bytearray)) or len(pubnonce) != 66:
                raise InvalidNonceSet(f"public nonce #{i} must be 66 bytes")
            try:
                R_ij = cpoint(bytes(pubnonce[j * 33:(j + 1) * 33]))
            except ValueError:
                raise InvalidNonceSet(f"public nonce #{i} is not on the curve")
            R_j = point_add(R_j, R_ij)
        aggnonce += _INFINITY_BYTES if R_j is None else cbytes(R_j)
    return aggnonce


# ============================================================
# KEY AGGREGATION  (+ Taproot tweak)
# ============================================================

@dataclass(frozen=True)
class AggregatedKey:
    """
    Deterministic 2-of-2 key: KeyAgg over the sorted public keys followed by
    the BIP-86 x-only Taproot tweak.  Both parties compute the same value
    regardless of the order in which they learned the keys.
    """
    pubkeys: Tuple[bytes, ...]
    internal_key: bytes       # 33-byte untweaked aggregate
    output_key: bytes         # 33-byte tweaked aggregate (on-chain key)
    gacc: int
    tacc: int

    @property
    def internal_xonly(self) -> bytes:
        return self.internal_key[1:]

    @property
    def output_xonly(self) -> bytes:
        return self.output_key[1:]

    @property
    def script_pubkey(self) -> bytes:
        return p2tr_script(self.output_xonly)

    def address(self, network: str = "mainnet") -> str:
        return taproot_address(self.output_xonly, network)

    def coefficient(self, pubkey: bytes) -> int:
        if pubkey not in self.pubkeys:
            raise ValueError("public key is not part of this aggregate")
        return _key_agg_coeff(self.pubkeys, pubkey)


def _second_key(pubkeys: Sequence[bytes]) -> bytes:
    for pk in pubkeys[1:]:
        if pk != pubkeys[0]:
            return pk
    return _INFINITY_BYTES


def _key_agg_coeff(pubkeys: Sequence[bytes], pk: bytes) -> int:
    if pk == _second_key(pubkeys):
        return 1
    L = tagged_hash("KeyAgg list", b"".join(pubkeys))
    return _hash_int("KeyAgg coefficient", L + pk)


def key_agg(pubkeys: Sequence[bytes]) -> Point:
    """BIP-327 KeyAgg over the keys in the order given (no sorting, no tweak)."""
    if not pubkeys:
        raise ValueError("no public keys supplied")
    keys = tuple(bytes(pk) for pk in pubkeys)
    Q: Optional[Point] = None
    for pk in keys:
        Q = point_add(Q, point_mul(cpoint(pk), _key_agg_coeff(keys, pk)))
    if Q is None:
        raise ValueError("aggregate public key is the point at infinity")
    return Q


def aggregate_pubkeys(pubkeys: Sequence[bytes]) -> AggregatedKey:
    """Sort, KeyAgg, then apply the Taproot tweak.  Pure function."""
    if len(pubkeys) < 2:
        raise ValueError("at least two public keys are required")
    ordered = tuple(sorted(bytes(pk) for pk in pubkeys))
    Q = key_agg(ordered)

    t = taproot_tweak(xbytes(Q))
    g = 1 if has_even_y(Q) else N - 1
    Q_tweaked = point_add(point_mul(Q, g), g_mul(t))
    if Q_tweaked is None:
        raise ValueError("the result of tweaking cannot be infinity")
    return AggregatedKey(
        pubkeys=ordered,
        internal_key=cbytes(Q),
        output_key=cbytes(Q_tweaked),
        gacc=g,
        tacc=t,
    )


# ============================================================
# SIGNING
# ============================================================

class SigningContext:
    """
    Session values for one message: nonce coefficient ``b``, final nonce
    ``R`` and challenge ``e``.  With an ``adaptor_point`` T the final nonce
    is R1 + b*R2 + T, which turns the resulting signatures into adaptor
    pre-signatures (see ``adaptor_sig``).
    """

    def __init__(
        self,
        aggregated_key: AggregatedKey,
        aggnonce: bytes,
        message: bytes,
        adaptor_point: Optional[bytes] = None,
    ) -> None:
        if len(aggnonce) != 66:
            raise InvalidNonceSet("aggregate nonce must be 66 bytes")
        self.aggregated_key = aggregated_key
        self.aggnonce = aggnonce
        self.message = message
        self.adaptor_point = adaptor_point

        Q = cpoint(aggregated_key.output_key)
        self.b = _hash_int("MuSig/noncecoef", aggnonce + xbytes(Q) + message)
        try:
            R1 = None if aggnonce[:33] == _INFINITY_BYTES else cpoint(aggnonce[:33])
            R2 = None if aggnonce[33:] == _INFINITY_BYTES else cpoint(aggnonce[33:])
        except ValueError:
            raise InvalidNonceSet("aggregate nonce is not on the curve")
        R = point_add(R1, point_mul(R2, self.b))
        if adaptor_point is not None:
            R = point_add(R, cpoint(adaptor_point))
        if R is None:
            R = cpoint(_GENERATOR_BYTES)
        self.R: Point = R
        self.e = _hash_int("BIP0340/challenge", xbytes(R) + xbytes(Q) + message)
        self.Q: Point = Q

    @property
    def nonce_parity_even(self) -> bool:
        return has_even_y(self.R)

    @property
    def key_parity_factor(self) -> int:
        return 1 if has_even_y(self.Q) else N - 1


@dataclass(frozen=True)
class PartialSignature:
    """One signer's contribution, bound to its public nonce and message."""
    signer: bytes      # 33-byte key share pubkey
    pubnonce: bytes    # 66 bytes
    s: bytes           # 32-byte scalar
    message: bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            "signer": self.signer.hex(),
            "pubnonce": self.pubnonce.hex(),
            "s": self.s.hex(),
            "message": self.message.hex(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, str]) -> "PartialSignature":
        psig = cls(
            signer=bytes.fromhex(d["signer"]),
            pubnonce=bytes.fromhex(d["pubnonce"]),
            s=bytes.fromhex(d["s"]),
            message=bytes.fromhex(d["message"]),
        )
        if len(psig.signer) != 33 or len(psig.pubnonce) != 66 or len(psig.s) != 32:
            raise ValueError("partial signature field has the wrong length")
        return psig


def sign_with_context(
    ctx: SigningContext, key_share: KeyShare, nonce: NonceShare,
) -> PartialSignature:
    """BIP-327 Sign.  Consumes *nonce*."""
    if nonce.signer_pubkey != key_share.public_key:
        raise ValueError("nonce was generated for a different key share")
    a = ctx.aggregated_key.coefficient(key_share.public_key)
    d_ = key_share.scalar()

    k1_, k2_ = nonce.consume()
    k1 = k1_ if ctx.nonce_parity_even else N - k1_
    k2 = k2_ if ctx.nonce_parity_even else N - k2_
    d = ctx.key_parity_factor * ctx.aggregated_key.gacc * d_ % N
    s = (k1 + ctx.b * k2 + ctx.e * a * d) % N

    psig = PartialSignature(
        signer=key_share.public_key,
        pubnonce=nonce.pubnonce,
        s=bytes_from_int(s),
        message=ctx.message,
    )
    # Self-check: our own contribution must verify
    if not partial_verify(psig, ctx):
        raise RuntimeError("partial signature self-verification failed")
    return psig


def partial_sign(
    message: bytes,
    key_share: KeyShare,
    nonce: NonceShare,
    peer_pubnonces: Sequence[bytes],
    aggregated_key: AggregatedKey,
    *,
    adaptor_point: Optional[bytes] = None,
) -> Tuple[PartialSignature, SigningContext]:
    """
    Second MuSig2 round: sign *message* with our key and nonce shares.

    Fails with ``NonceReuse`` if *nonce* was already used and with
    ``InvalidNonceSet`` when the peer nonces are missing or malformed.
    Returns the partial signature and the context needed to aggregate.
    """
    if nonce.consumed:
        raise NonceReuse("NonceShare already consumed by a previous signature")
    if not peer_pubnonces:
        raise InvalidNonceSet("peer public nonces are missing")
    aggnonce = aggregate_nonces([nonce.pubnonce, *peer_pubnonces])
    ctx = SigningContext(aggregated_key, aggnonce, message, adaptor_point)
    return sign_with_context(ctx, key_share, nonce), ctx


def partial_verify(psig: PartialSignature, ctx: SigningContext) -> bool:
    """PartialSigVerifyInternal against the context's message and nonces."""
    if psig.message != ctx.message:
        return False
    s = int_from_bytes(psig.s)
    if s >= N:
        return False
    try:
        R1 = cpoint(psig.pubnonce[:33])
        R2 = cpoint(psig.pubnonce[33:66])
        P = cpoint(psig.signer)
        a = ctx.aggregated_key.coefficient(psig.signer)
    except ValueError:
        return False
    Re = point_add(R1, point_mul(R2, ctx.b))
    if not ctx.nonce_parity_even:
        Re = point_negate(Re)
    g_ = ctx.key_parity_factor * ctx.aggregated_key.gacc % N
    return points_equal(g_mul(s), point_add(Re, point_mul(P, ctx.e * a * g_)))


def sum_partial_signatures(
    partials: Sequence[PartialSignature], ctx: SigningContext,
) -> int:
    """Verify every partial and return s = sum(s_i) + e*g*tacc (mod n)."""
    signers = sorted(p.signer for p in partials)
    if signers != sorted(ctx.aggregated_key.pubkeys):
        raise PartialSignatureMismatch(
            "partial signatures do not cover exactly the aggregated keys"
        )
    try:
        aggnonce = aggregate_nonces([p.pubnonce for p in partials])
    except InvalidNonceSet as exc:
        raise PartialSignatureMismatch(f"partial signature nonce invalid: {exc}")
    if aggnonce != ctx.aggnonce:
        raise PartialSignatureMismatch(
            "partial signature nonces do not match the aggregated nonce"
        )
    s = 0
    for psig in partials:
        if not partial_verify(psig, ctx):
            log.error("Partial signature from %s failed verification",
                      psig.signer.hex()[:16])
            raise PartialSignatureMismatch(
                f"partial signature from {psig.signer.hex()[:16]}... does not "
                f"verify against the claimed message/aggregate nonce"
            )
        s = (s + int_from_bytes(psig.s)) % N
    return (s + ctx.e * ctx.key_parity_factor * ctx.aggregated_key.tacc) % N


def aggregate_signatures(
    partials: Sequence[PartialSignature], ctx: SigningContext,
) -> bytes:
    """PartialSigAgg: final 64-byte BIP-340 signature under the output key."""
    if ctx.adaptor_point is not None:
        raise ValueError("adaptor contexts aggregate into pre-signatures")
    s = sum_partial_signatures(partials, ctx)
    sig = xbytes(ctx.R) + bytes_from_int(s)
    if not schnorr_verify(ctx.message, ctx.aggregated_key.output_xonly, sig):
        raise PartialSignatureMismatch("aggregate signature does not verify")
    return sig
