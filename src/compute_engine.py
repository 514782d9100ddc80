"""
ShieldRoute - Compute Engine Interface

The lifecycle never inspects ciphertext contents: it only composes the
operations below over opaque handles.

- ComputeEngine: abstract interface for the encrypted-arithmetic backend
- SimulatedComputeEngine: in-process backend for development and tests.
  It keeps cleartexts behind opaque handle ids and applies fixed-width
  unsigned wrap-around semantics. It performs no encryption.
"""

import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

DEFAULT_BITS = 32
WIDE_BITS = 64
SUPPORTED_BITS = (8, 16, 32, 64, 128)


class UnknownHandle(KeyError):
    """Raised when a handle id is not known to the engine."""


@dataclass(frozen=True)
class CiphertextHandle:
    """Opaque reference to an encrypted unsigned integer (or boolean)."""

    handle_id: str
    bits: int = DEFAULT_BITS
    is_bool: bool = False

    def to_dict(self) -> dict:
        return {"handle_id": self.handle_id, "bits": self.bits, "is_bool": self.is_bool}

    @classmethod
    def from_dict(cls, data: dict) -> "CiphertextHandle":
        return cls(
            handle_id=data["handle_id"],
            bits=data.get("bits", DEFAULT_BITS),
            is_bool=data.get("is_bool", False),
        )


class ComputeEngine(ABC):
    """Encrypted arithmetic over opaque handles."""

    @abstractmethod
    def encrypt(self, plaintext: int, bits: int = DEFAULT_BITS) -> CiphertextHandle:
        """Encrypt a trivially-known value."""

    @abstractmethod
    def add(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle:
        pass

    @abstractmethod
    def sub(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle:
        pass

    @abstractmethod
    def mul(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle:
        pass

    @abstractmethod
    def compare(self, lhs: CiphertextHandle, rhs: CiphertextHandle) -> CiphertextHandle:
        """Encrypted boolean for ``lhs >= rhs``."""

    @abstractmethod
    def select(
        self, condition: CiphertextHandle, if_true: CiphertextHandle, if_false: CiphertextHandle
    ) -> CiphertextHandle:
        """Encrypted ``if_true if condition else if_false``."""

    @abstractmethod
    def widen(self, handle: CiphertextHandle, bits: int = WIDE_BITS) -> CiphertextHandle:
        """Re-type a handle to a wider integer."""

    @abstractmethod
    def resolve(self, handle_id: str) -> CiphertextHandle:
        """
        Look up a handle by id (for handles submitted over the API).

        Raises:
            UnknownHandle: If the id is not known
        """

    def release(self, handle: CiphertextHandle) -> None:
        """Free a handle nothing refers to any more. Backends without explicit lifetimes ignore it."""


class SimulatedComputeEngine(ComputeEngine):
    """
    Development backend holding cleartexts behind handle ids.

    ``reveal`` exists only so a local decryption oracle can serve
    decryption requests; the lifecycle code never calls it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._values: dict[str, int] = {}
        self._handles: dict[str, CiphertextHandle] = {}

    def _store(self, value: int, bits: int, is_bool: bool = False) -> CiphertextHandle:
        if bits not in SUPPORTED_BITS:
            raise ValueError(f"Unsupported bit width: {bits}")
        handle = CiphertextHandle(
            handle_id=f"ct_{secrets.token_hex(12)}", bits=bits, is_bool=is_bool
        )
        with self._lock:
            self._values[handle.handle_id] = value % (1 << bits)
            self._handles[handle.handle_id] = handle
        return handle

    def _value(self, handle: CiphertextHandle) -> int:
        with self._lock:
            try:
                return self._values[handle.handle_id]
            except KeyError:
                raise UnknownHandle(handle.handle_id) from None

    @staticmethod
    def _result_bits(lhs: CiphertextHandle, rhs: CiphertextHandle) -> int:
        return max(lhs.bits, rhs.bits)

    def encrypt(self, plaintext: int, bits: int = DEFAULT_BITS) -> CiphertextHandle:
        if plaintext < 0:
            raise ValueError("Only unsigned values can be encrypted")
        return self._store(plaintext, bits)

    def encrypt_bool(self, flag: bool) -> CiphertextHandle:
        return self._store(1 if flag else 0, 8, is_bool=True)

    def add(self, lhs, rhs):
        return self._store(self._value(lhs) + self._value(rhs), self._result_bits(lhs, rhs))

    def sub(self, lhs, rhs):
        return self._store(self._value(lhs) - self._value(rhs), self._result_bits(lhs, rhs))

    def mul(self, lhs, rhs):
        return self._store(self._value(lhs) * self._value(rhs), self._result_bits(lhs, rhs))

    def compare(self, lhs, rhs):
        return self._store(1 if self._value(lhs) >= self._value(rhs) else 0, 8, is_bool=True)

    def select(self, condition, if_true, if_false):
        chosen = if_true if self._value(condition) else if_false
        return self._store(self._value(chosen), self._result_bits(if_true, if_false))

    def widen(self, handle, bits: int = WIDE_BITS):
        if bits < handle.bits:
            raise ValueError("widen cannot narrow a handle")
        return self._store(self._value(handle), bits)

    def resolve(self, handle_id: str) -> CiphertextHandle:
        with self._lock:
            try:
                return self._handles[handle_id]
            except KeyError:
                raise UnknownHandle(handle_id) from None

    def release(self, handle: CiphertextHandle) -> None:
        with self._lock:
            self._values.pop(handle.handle_id, None)
            self._handles.pop(handle.handle_id, None)

    @property
    def handle_count(self) -> int:
        with self._lock:
            return len(self._values)

    def reveal(self, handle: CiphertextHandle) -> int:
        """Cleartext of a handle (oracle-side only)."""
        return self._value(handle)

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "handles": [h.to_dict() for h in self._handles.values()],
                "values": dict(self._values),
            }

    def load_dict(self, data: dict) -> None:
        with self._lock:
            self._handles = {}
            for raw in data.get("handles", []):
                handle = CiphertextHandle.from_dict(raw)
                self._handles[handle.handle_id] = handle
            self._values = {k: int(v) for k, v in data.get("values", {}).items()}
