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
import hashlib

import pytest

from adaptor_sig import (
    AdaptorSignature,
    Secret,
    aggregate_adaptor_signatures,
    complete,
    create_adaptor_signature,
    extract_secret,
    sign_partial_adaptor,
    verify_adaptor,
)
from bitcoin_protocol import schnorr_verify
from musig_keys import (
    KeyShare,
    SigningContext,
    aggregate_nonces,
    aggregate_pubkeys,
    generate_nonce,
)
from trade_errors import (
    ExtractionFailed,
    InvalidSecret,
    PartialSignatureMismatch,
    SessionTerminated,
)

MSG = hashlib.sha256(b"swap sighash").digest()


def _single(message: bytes = MSG):
    key = KeyShare.generate()
    secret = Secret.generate()
    sig = create_adaptor_signature(message, key, generate_nonce(key), secret.point)
    return key, secret, sig


def _two_party(message: bytes = MSG):
    alice, bob = KeyShare.generate(), KeyShare.generate()
    agg = aggregate_pubkeys([alice.public_key, bob.public_key])
    secret = Secret.generate()
    na, nb = generate_nonce(alice), generate_nonce(bob)
    aggnonce = aggregate_nonces([na.pubnonce, nb.pubnonce])
    ctx = SigningContext(agg, aggnonce, message, adaptor_point=secret.point)
    partials = [sign_partial_adaptor(ctx, alice, na), sign_partial_adaptor(ctx, bob, nb)]
    return agg, ctx, partials, secret


class TestSingleSignerAdaptor:
    """Pre-sign, verify, complete, extract with one key."""

    def test_adaptor_verifies(self):
        key, secret, sig = _single()
        assert verify_adaptor(sig, secret.point, key.public_key, MSG)
        assert verify_adaptor(sig, secret.point, key.public_key[1:], MSG)

    def test_adaptor_is_not_a_valid_signature(self):
        key, secret, sig = _single()
        raw = sig.nonce_point[1:] + sig.s
        assert not schnorr_verify(MSG, key.public_key[1:], raw)

    def test_verify_rejects_wrong_adaptor_point(self):
        key, _, sig = _single()
        assert not verify_adaptor(sig, Secret.generate().point, key.public_key, MSG)

    def test_verify_rejects_wrong_message(self):
        key, secret, sig = _single()
        other = hashlib.sha256(b"other").digest()
        assert not verify_adaptor(sig, secret.point, key.public_key, other)

    def test_verify_rejects_wrong_key(self):
        _, secret, sig = _single()
        assert not verify_adaptor(sig, secret.point, KeyShare.generate().public_key, MSG)

    def test_complete_with_secret_verifies(self):
        key, secret, sig = _single()
        final = complete(sig, secret)
        assert len(final) == 64
        assert schnorr_verify(MSG, key.public_key[1:], final)

    def test_complete_with_wrong_secret_fails(self):
        _, _, sig = _single()
        with pytest.raises(InvalidSecret):
            complete(sig, Secret.generate())

    def test_extract_recovers_secret(self):
        _, secret, sig = _single()
        recovered = extract_secret(sig, complete(sig, secret), secret.point)
        assert recovered.scalar == secret.scalar
        assert recovered.point == secret.point

    def test_extract_from_unrelated_signature_fails(self):
        key, secret, sig = _single()
        _, other_secret, other = _single()
        unrelated = complete(other, other_secret)
        with pytest.raises(ExtractionFailed):
            extract_secret(sig, unrelated, secret.point)

    def test_extract_rejects_forged_scalar(self):
        _, secret, sig = _single()
        final = bytearray(complete(sig, secret))
        final[-1] ^= 0x01
        with pytest.raises(ExtractionFailed):
            extract_secret(sig, bytes(final), secret.point)

    def test_nonce_consumed(self):
        key = KeyShare.generate()
        nonce = generate_nonce(key)
        create_adaptor_signature(MSG, key, nonce, Secret.generate().point)
        assert nonce.consumed


class TestMuSigAdaptor:
    """Two-party adaptor signatures under the tweaked aggregate key."""

    def test_aggregate_adaptor_verifies(self):
        agg, ctx, partials, secret = _two_party()
        sig = aggregate_adaptor_signatures(partials, ctx)
        assert verify_adaptor(sig, secret.point, agg.output_xonly, MSG)

    def test_completed_signature_spends_output_key(self):
        agg, ctx, partials, secret = _two_party()
        sig = aggregate_adaptor_signatures(partials, ctx)
        final = complete(sig, secret)
        assert schnorr_verify(MSG, agg.output_xonly, final)
        assert extract_secret(sig, final).scalar == secret.scalar

    def test_wrong_secret_does_not_complete(self):
        _, ctx, partials, _ = _two_party()
        sig = aggregate_adaptor_signatures(partials, ctx)
        with pytest.raises(InvalidSecret):
            complete(sig, Secret.generate().scalar)

    def test_partial_for_other_message_rejected(self):
        agg, ctx, partials, secret = _two_party()
        _, _, foreign, _ = _two_party(hashlib.sha256(b"elsewhere").digest())
        with pytest.raises(PartialSignatureMismatch):
            aggregate_adaptor_signatures([partials[0], foreign[1]], ctx)

    def test_plain_context_refused(self):
        alice = KeyShare.generate()
        agg = aggregate_pubkeys([alice.public_key, KeyShare.generate().public_key])
        nonce = generate_nonce(alice)
        ctx = SigningContext(agg, aggregate_nonces([nonce.pubnonce, nonce.pubnonce]), MSG)
        with pytest.raises(ValueError, match="no adaptor point"):
            sign_partial_adaptor(ctx, alice, nonce)


class TestSecretAndEncoding:

    def test_adaptor_signature_bytes_round_trip(self):
        _, _, sig = _single()
        raw = sig.to_bytes()
        assert len(raw) == AdaptorSignature.SIZE
        assert AdaptorSignature.from_bytes(raw) == sig

    def test_adaptor_signature_bad_length(self):
        with pytest.raises(ValueError, match="98 bytes"):
            AdaptorSignature.from_bytes(b"\x02" * 97)

    def test_wiped_secret_unusable(self):
        _, secret, sig = _single()
        secret.wipe()
        with pytest.raises(SessionTerminated):
            complete(sig, secret)

    def test_secret_range(self):
        with pytest.raises(ValueError):
            Secret(0)
        assert Secret.from_bytes((5).to_bytes(32, "big")).scalar == 5
