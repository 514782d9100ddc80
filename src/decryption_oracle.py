"""
ShieldRoute - Decryption Oracle Interface

The oracle accepts a batch of ciphertext handles plus a callback reference
and, at an arbitrary later time, invokes the callback with the cleartexts
and an authenticity proof. The lifecycle treats it as a black box: there is
no retry and no cancellation, only the one-shot callback.

- DecryptionOracle: abstract interface
- LocalDecryptionOracle: in-process oracle backed by SimulatedComputeEngine.
  Requests queue up until ``fulfill`` is called; proofs are Ed25519
  signatures over the canonical (correlation id, cleartexts) payload.
"""

import base64
import binascii
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from compute_engine import CiphertextHandle, SimulatedComputeEngine

logger = logging.getLogger(__name__)

# callback(correlation_id, cleartexts, proof)
DecryptionCallback = Callable[[int, list[int], str], Any]


class DecryptionOracle(ABC):
    """Asynchronous decryption service."""

    @abstractmethod
    def request_decryption(
        self, handles: Sequence[CiphertextHandle], callback: DecryptionCallback
    ) -> int:
        """
        Submit handles for decryption.

        Returns:
            Non-zero correlation id linking the later callback to this request
        """

    @abstractmethod
    def verify_proof(self, correlation_id: int, cleartexts: Sequence[int], proof: str) -> bool:
        """Check the authenticity proof attached to a callback."""

    def discard(self, correlation_id: int) -> bool:
        """Drop a submitted batch if the backend supports it. Returns True if one was dropped."""
        return False


def canonical_payload(correlation_id: int, cleartexts: Sequence[int]) -> bytes:
    """Bytes covered by the proof."""
    return json.dumps(
        {"correlation_id": int(correlation_id), "cleartexts": [int(v) for v in cleartexts]},
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")


@dataclass
class PendingDecryption:
    """A submitted batch awaiting fulfilment."""

    correlation_id: int
    handles: list[CiphertextHandle]
    callback: DecryptionCallback = field(repr=False)


class LocalDecryptionOracle(DecryptionOracle):
    """
    In-process oracle for development and tests.

    Usage:
        engine = SimulatedComputeEngine()
        oracle = LocalDecryptionOracle(engine)
        correlation_id = oracle.request_decryption([handle], callback)
        oracle.fulfill(correlation_id)   # delivers the callback
    """

    def __init__(
        self,
        engine: SimulatedComputeEngine,
        private_key: Ed25519PrivateKey | None = None,
    ):
        self._engine = engine
        self._private_key = private_key or Ed25519PrivateKey.generate()
        self._public_key = self._private_key.public_key()
        self._lock = threading.Lock()
        self._next_id = 1
        self._pending: dict[int, PendingDecryption] = {}

    @property
    def public_key_b64(self) -> str:
        raw = self._public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)
        return base64.b64encode(raw).decode("ascii")

    def request_decryption(self, handles, callback) -> int:
        with self._lock:
            correlation_id = self._next_id
            self._next_id += 1
            self._pending[correlation_id] = PendingDecryption(
                correlation_id=correlation_id, handles=list(handles), callback=callback
            )
        logger.info("Decryption requested", extra={"correlation_id": correlation_id})
        return correlation_id

    def pending_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._pending)

    def sign(self, correlation_id: int, cleartexts: Sequence[int]) -> str:
        """Produce the proof for a payload."""
        signature = self._private_key.sign(canonical_payload(correlation_id, cleartexts))
        return base64.b64encode(signature).decode("ascii")

    def verify_proof(self, correlation_id, cleartexts, proof) -> bool:
        return verify_signature(self._public_key, correlation_id, cleartexts, proof)

    def fulfill(self, correlation_id: int) -> Any:
        """
        Decrypt a pending batch and deliver the callback.

        Returns:
            Whatever the callback returns

        Raises:
            KeyError: If no batch is pending under the id
        """
        with self._lock:
            pending = self._pending.pop(correlation_id)
        cleartexts = [self._engine.reveal(h) for h in pending.handles]
        proof = self.sign(correlation_id, cleartexts)
        return pending.callback(correlation_id, cleartexts, proof)

    def discard(self, correlation_id: int) -> bool:
        """Forget a pending batch, so its callback never arrives."""
        with self._lock:
            return self._pending.pop(correlation_id, None) is not None

    def resume_after(self, correlation_id: int) -> None:
        """Continue numbering after an id issued before a restart."""
        with self._lock:
            self._next_id = max(self._next_id, correlation_id + 1)


def verify_signature(
    public_key: Ed25519PublicKey, correlation_id: int, cleartexts: Sequence[int], proof: str
) -> bool:
    """
    Verify an Ed25519 proof over the canonical payload.

    Returns:
        True if the signature is valid, False otherwise
    """
    try:
        signature = base64.b64decode(proof, validate=True)
        public_key.verify(signature, canonical_payload(correlation_id, cleartexts))
        return True
    except (InvalidSignature, binascii.Error, ValueError, TypeError) as e:
        logger.warning("Proof verification failed: %s", type(e).__name__)
        return False


class Ed25519ProofVerifier(DecryptionOracle):
    """
    Verification-only view of a remote oracle.

    Used when the oracle runs out of process and delivers callbacks over
    HTTP: only its public key is known locally. Submission is delegated to
    the supplied ``submit`` function.
    """

    def __init__(
        self,
        public_key_b64: str,
        submit: Callable[[list[CiphertextHandle]], int],
    ):
        self._public_key = Ed25519PublicKey.from_public_bytes(base64.b64decode(public_key_b64))
        self._submit = submit

    def request_decryption(self, handles, callback) -> int:
        # The remote oracle calls back through the HTTP endpoint, not the callable
        return self._submit(list(handles))

    def verify_proof(self, correlation_id, cleartexts, proof) -> bool:
        return verify_signature(self._public_key, correlation_id, cleartexts, proof)
