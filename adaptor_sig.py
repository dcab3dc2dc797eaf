"""
Schnorr adaptor signatures (scriptless scripts) for BIP-340 / MuSig2.

An adaptor signature (R, s', T) is a BIP-340 signature whose nonce R
already includes the adaptor point T = t*G while s' does not include t:

    s'*G == +-(R - T) + e*P        e = H_challenge(x(R) || x(P) || m)

Completing it requires t, and publishing the completed (R, s) reveals t to
anyone holding (R, s'):  t = +-(s - s').
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from bitcoin_protocol import schnorr_verify, tagged_hash
from musig_keys import (
    N,
    KeyShare,
    NonceShare,
    PartialSignature,
    SigningContext,
    bytes_from_int,
    cbytes,
    cpoint,
    g_mul,
    has_even_y,
    int_from_bytes,
    lift_x,
    point_add,
    point_mul,
    point_negate,
    points_equal,
    sign_with_context,
    sum_partial_signatures,
    xbytes,
)
from trade_errors import ExtractionFailed, InvalidSecret, SessionTerminated

log = logging.getLogger("musig_trade.adaptor")


class Secret:
    """The hidden scalar t behind an adaptor point T = t*G."""

    def __init__(self, scalar: int) -> None:
        if not 0 < scalar < N:
            raise ValueError("secret scalar out of range")
        self._t = bytearray(bytes_from_int(scalar))
        P = g_mul(scalar)
        if P is None:
            raise ValueError("secret scalar out of range")
        self._point = cbytes(P)
        self._wiped = False

    @classmethod
    def generate(cls) -> "Secret":
        while True:
            t = int_from_bytes(secrets.token_bytes(32))
            if 0 < t < N:
                return cls(t)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Secret":
        if len(data) != 32:
            raise ValueError("secret must be 32 bytes")
        return cls(int_from_bytes(data))

    @property
    def point(self) -> bytes:
        """33-byte compressed adaptor point."""
        return self._point

    @property
    def scalar(self) -> int:
        if self._wiped:
            raise SessionTerminated("secret has been erased")
        return int_from_bytes(bytes(self._t))

    def wipe(self) -> None:
        for i in range(len(self._t)):
            self._t[i] = 0
        self._wiped = True

    def __repr__(self) -> str:
        return f"Secret(point={self._point.hex()[:16]}...)"


@dataclass(frozen=True)
class AdaptorSignature:
    nonce_point: bytes      # 33-byte compressed final nonce R (includes T)
    s: bytes                # 32-byte pre-signature scalar s'
    adaptor_point: bytes    # 33-byte compressed T

    SIZE = 98

    def to_bytes(self) -> bytes:
        return self.nonce_point + self.s + self.adaptor_point

    @classmethod
    def from_bytes(cls, data: bytes) -> "AdaptorSignature":
        if len(data) != cls.SIZE:
            raise ValueError(f"adaptor signature must be {cls.SIZE} bytes")
        sig = cls(bytes(data[:33]), bytes(data[33:65]), bytes(data[65:]))
        cpoint(sig.nonce_point)
        cpoint(sig.adaptor_point)
        if int_from_bytes(sig.s) >= N:
            raise ValueError("pre-signature scalar out of range")
        return sig

    def hex(self) -> str:
        return self.to_bytes().hex()


def _xonly(pubkey: bytes) -> bytes:
    if len(pubkey) == 33:
        return pubkey[1:]
    if len(pubkey) == 32:
        return pubkey
    raise ValueError("public key must be 32 (x-only) or 33 (compressed) bytes")


def _challenge(R_x: bytes, P_x: bytes, message: bytes) -> int:
    return int_from_bytes(tagged_hash("BIP0340/challenge", R_x + P_x + message)) % N


# ============================================================
# SINGLE SIGNER
# ============================================================

def create_adaptor_signature(
    message: bytes,
    key_share: KeyShare,
    nonce: NonceShare,
    adaptor_point: bytes,
) -> AdaptorSignature:
    """Pre-sign *message* under the key share's x-only key.  Consumes *nonce*."""
    if nonce.signer_pubkey != key_share.public_key:
        raise ValueError("nonce was generated for a different key share")
    T = cpoint(adaptor_point)
    d = key_share.scalar()
    if not has_even_y(cpoint(key_share.public_key)):
        d = N - d
    k_, _ = nonce.consume()
    R = point_add(g_mul(k_), T)
    if R is None:
        raise ValueError("nonce cancels the adaptor point")
    k = k_ if has_even_y(R) else N - k_
    e = _challenge(xbytes(R), key_share.public_key[1:], message)
    s = (k + e * d) % N
    sig = AdaptorSignature(cbytes(R), bytes_from_int(s), adaptor_point)
    if not verify_adaptor(sig, adaptor_point, key_share.public_key, message):
        raise RuntimeError("adaptor signature self-verification failed")
    return sig


# ============================================================
# TWO-PARTY (MuSig2)
# ============================================================

def sign_partial_adaptor(
    ctx: SigningContext, key_share: KeyShare, nonce: NonceShare,
) -> PartialSignature:
    """MuSig2 partial signature whose final nonce includes the adaptor point."""
    if ctx.adaptor_point is None:
        raise ValueError("signing context has no adaptor point")
    return sign_with_context(ctx, key_share, nonce)


def aggregate_adaptor_signatures(
    partials: Sequence[PartialSignature], ctx: SigningContext,
) -> AdaptorSignature:
    """Sum verified partials into an adaptor signature under the output key."""
    if ctx.adaptor_point is None:
        raise ValueError("signing context has no adaptor point")
    s = sum_partial_signatures(partials, ctx)
    sig = AdaptorSignature(cbytes(ctx.R), bytes_from_int(s), ctx.adaptor_point)
    if not verify_adaptor(
        sig, ctx.adaptor_point, ctx.aggregated_key.output_xonly, ctx.message,
    ):
        raise RuntimeError("aggregated adaptor signature does not verify")
    return sig


# ============================================================
# VERIFY / COMPLETE / EXTRACT
# ============================================================

def verify_adaptor(
    sig: AdaptorSignature,
    adaptor_point: bytes,
    pubkey: bytes,
    message: bytes,
) -> bool:
    """Check s'*G == +-(R - T) + e*P without any secret material."""
    if sig.adaptor_point != adaptor_point:
        return False
    try:
        R = cpoint(sig.nonce_point)
        T = cpoint(adaptor_point)
        P = lift_x(_xonly(pubkey))
    except ValueError:
        return False
    s = int_from_bytes(sig.s)
    if s >= N:
        return False
    e = _challenge(xbytes(R), xbytes(P), message)
    R_ = point_add(R, point_negate(T))
    if not has_even_y(R):
        R_ = point_negate(R_)
    return points_equal(g_mul(s), point_add(R_, point_mul(P, e)))


def complete(sig: AdaptorSignature, secret: Union[Secret, int]) -> bytes:
    """Turn the pre-signature into a standard 64-byte BIP-340 signature."""
    t = secret.scalar if isinstance(secret, Secret) else secret % N
    if not points_equal(g_mul(t), cpoint(sig.adaptor_point)):
        log.critical(
            "Secret does not match adaptor point %s (adaptor sig %s)",
            sig.adaptor_point.hex(), sig.hex(),
        )
        raise InvalidSecret("secret is not the discrete log of the adaptor point")
    R = cpoint(sig.nonce_point)
    s_ = int_from_bytes(sig.s)
    s = (s_ + t) % N if has_even_y(R) else (s_ - t) % N
    return xbytes(R) + bytes_from_int(s)


def extract_secret(
    sig: AdaptorSignature,
    signature: bytes,
    adaptor_point: Optional[bytes] = None,
) -> Secret:
    """Recover t from an adaptor signature and its published completion."""
    adaptor_point = adaptor_point or sig.adaptor_point
    if len(signature) not in (64, 65):
        raise ExtractionFailed("completed signature must be 64 bytes")
    R = cpoint(sig.nonce_point)
    if signature[:32] != xbytes(R) or adaptor_point != sig.adaptor_point:
        log.critical(
            "Completed signature %s does not belong to adaptor signature %s",
            signature.hex(), sig.hex(),
        )
        raise ExtractionFailed("completed signature uses a different nonce")
    s = int_from_bytes(signature[32:64])
    s_ = int_from_bytes(sig.s)
    t = (s - s_) % N if has_even_y(R) else (s_ - s) % N
    if t == 0 or not points_equal(g_mul(t), cpoint(adaptor_point)):
        log.critical(
            "Extracted scalar does not open adaptor point %s (signature %s)",
            adaptor_point.hex(), signature.hex(),
        )
        raise ExtractionFailed("extracted scalar does not match the adaptor point")
    return Secret(t)


def verify_completed(
    signature: bytes, pubkey: bytes, message: bytes,
) -> bool:
    return schnorr_verify(message, _xonly(pubkey), signature[:64])
