"""
Exception taxonomy for the MuSig2 trade engine.

Cryptographic and ordering violations terminate the session; chain
submission and chain backend problems are retried.  ``TimeoutExpired`` is deliberately *not*
an exception: a round deadline is a normal transition trigger.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class TradeError(Exception):
    """Root of every error raised by the trade engine."""


# ============================================================
# PROTOCOL VIOLATIONS  (session -> Aborted)
# ============================================================

class ProtocolViolation(TradeError):
    """The counterparty (or local caller) broke the protocol."""

    def __init__(
        self,
        message: str,
        *,
        session_id: Optional[str] = None,
        round: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.round = round


class NonceReuse(ProtocolViolation):
    """A NonceShare was presented for a second signing operation."""


class InvalidNonceSet(ProtocolViolation):
    """Peer public nonces are missing, malformed or not on the curve."""


class PartialSignatureMismatch(ProtocolViolation):
    """A partial signature does not verify for the claimed message/nonces."""


class MalformedMessage(ProtocolViolation):
    """A protocol message payload could not be decoded."""


class InvalidSignature(ProtocolViolation):
    """A peer witness or adaptor signature failed verification."""


# ============================================================
# SESSION / ORDERING
# ============================================================

class RoundOutOfOrder(TradeError):
    """Message for a round that is not the next expected one (rejected)."""

    def __init__(self, message: str, *, expected: int, got: int) -> None:
        super().__init__(message)
        self.expected = expected
        self.got = got


class SessionTerminated(TradeError):
    """Operation attempted on a terminal session or on erased material."""


class UnknownSession(TradeError, KeyError):
    pass


class InvalidTradeTerms(TradeError, ValueError):
    """Trade amounts or fee rates would produce dust or negative outputs."""


# ============================================================
# ADAPTOR SIGNATURES  (fatal, logged as dispute evidence)
# ============================================================

class AdaptorError(TradeError):
    pass


class InvalidSecret(AdaptorError):
    """The supplied scalar is not the discrete log of the adaptor point."""


class ExtractionFailed(AdaptorError):
    """A completed signature does not belong to the given adaptor signature."""


# ============================================================
# CHAIN
# ============================================================

class ChainSubmissionError(TradeError):
    """Broadcast rejected by the node / wallet."""

    def __init__(self, message: str, *, insufficient_fee: bool = False) -> None:
        super().__init__(message)
        self.insufficient_fee = insufficient_fee


class ChainBackendError(TradeError):
    """Chain watcher or node unreachable; retried until the wait's deadline."""


@dataclass(frozen=True)
class TimeoutExpired:
    """Recorded when a round deadline fires; triggers the redirect path."""
    round: int
    deadline: float
