"""
ShieldRoute - Privacy Obfuscation Helpers

Deterministic masking applied to intermediate values before they reach the
compute engine and the decryption oracle.

- Multiplier masking: every request gets a multiplier in a fixed band,
  derived from its creation seed. The aggregate distance is multiplied by it
  before any division-like step, so the revealed magnitude does not expose
  the unmasked value.
- Additive noise: each item price gets a bounded pseudo-random offset derived
  from (request id, item index, creation time, creation salt).

Both derivations are pure functions of the seed: the same seed always yields
the same multiplier / offset. Neither is invertible here; unmasking belongs
to the compute engine or the oracle.
"""

import hashlib
import json
import secrets
from typing import Any

from optimizer_config import MULTIPLIER_MAX, MULTIPLIER_MIN, NOISE_BOUND

# Domain separation tags so the two derivations never share output
MULTIPLIER_DOMAIN = b"shieldroute:multiplier:v1:"
NOISE_DOMAIN = b"shieldroute:noise:v1:"

# Bytes of entropy captured at request creation
SALT_BYTES = 16


def derive_seed(*parts: Any) -> bytes:
    """
    Build a seed from an ordered tuple of parts.

    Parts are JSON-encoded canonically (bytes as hex), then hashed, so any
    mix of ints, strings and bytes produces a fixed-size seed.

    Args:
        *parts: Seed components, e.g. (request_id, principal, created_at, salt)

    Returns:
        32-byte seed
    """
    normalized = [p.hex() if isinstance(p, (bytes, bytearray)) else p for p in parts]
    encoded = json.dumps(normalized, separators=(",", ":"), sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).digest()


def new_salt() -> bytes:
    """Fresh unpredictability, available at creation time only."""
    return secrets.token_bytes(SALT_BYTES)


def _as_seed(seed: bytes | tuple | list) -> bytes:
    if isinstance(seed, (bytes, bytearray)):
        return bytes(seed)
    return derive_seed(*seed)


class PrivacyObfuscator:
    """
    Derives per-request multipliers and per-item noise.

    Args:
        multiplier_min: Inclusive lower bound of the multiplier band
        multiplier_max: Exclusive upper bound of the multiplier band
        noise_bound: Exclusive upper bound of the additive noise
    """

    def __init__(
        self,
        multiplier_min: int = MULTIPLIER_MIN,
        multiplier_max: int = MULTIPLIER_MAX,
        noise_bound: int = NOISE_BOUND,
    ):
        if multiplier_min <= 0 or multiplier_min >= multiplier_max:
            raise ValueError("multiplier band must be non-empty and positive")
        if noise_bound <= 0:
            raise ValueError("noise_bound must be positive")
        self.multiplier_min = multiplier_min
        self.multiplier_max = multiplier_max
        self.noise_bound = noise_bound

    def generate_multiplier(self, seed: bytes | tuple | list) -> int:
        """
        Deterministic multiplier in [multiplier_min, multiplier_max).

        Args:
            seed: Raw seed bytes, or a tuple of parts passed through derive_seed

        Returns:
            Multiplier within the band
        """
        digest = hashlib.sha256(MULTIPLIER_DOMAIN + _as_seed(seed)).digest()
        span = self.multiplier_max - self.multiplier_min
        return self.multiplier_min + int.from_bytes(digest, "big") % span

    def noise_offset(self, seed: bytes | tuple | list) -> int:
        """Deterministic offset in [0, noise_bound)."""
        digest = hashlib.sha256(NOISE_DOMAIN + _as_seed(seed)).digest()
        return int.from_bytes(digest, "big") % self.noise_bound

    def mask_value(self, value: int, seed: bytes | tuple | list) -> int:
        """
        Add the seed's noise offset to a cleartext value.

        mask_value(v, s) - v is always in [0, noise_bound).
        """
        return value + self.noise_offset(seed)

    def mask_ciphertext(self, engine, handle, seed: bytes | tuple | list):
        """
        Add the seed's noise offset to an encrypted value.

        Args:
            engine: ComputeEngine that owns the handle
            handle: Ciphertext handle to mask
            seed: Noise seed

        Returns:
            New handle holding value + offset
        """
        offset = engine.encrypt(self.noise_offset(seed), bits=handle.bits)
        masked = engine.add(handle, offset)
        engine.release(offset)
        return masked

    def item_noise_seed(
        self, request_id: int, index: int, created_at: int, salt: bytes
    ) -> bytes:
        """Seed for an item's price noise."""
        return derive_seed(request_id, index, created_at, salt)

    def request_multiplier_seed(
        self, request_id: int, principal: str, created_at: int, salt: bytes
    ) -> bytes:
        """Seed for a request's multiplier."""
        return derive_seed(request_id, principal, created_at, salt)
