"""
Key Crypto Core — Deterministic key derivation, secret framing and secure wipe.

Derived keys are a pure function of
(master secret, salt, key version, purpose, context):

- hmac-stretch: working = master; repeat N times
  working = HMAC-SHA256(key=working, msg=info || salt)
- hkdf-sha256:  HKDF(master, salt=salt, info=info)

where info = "<product-tag>-v<version>-<purpose>-<context>".

Security Note:
    Never log secrets, salts or derived keys.
    Python may keep copies of immutable ``bytes`` objects; buffers owned by
    this package are ``bytearray`` so they can be overwritten before release.
"""
import struct
import secrets
from enum import Enum
from typing import Union

from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .config import SECRET_LENGTH, MIN_ITERATIONS

KEY_LENGTH = 32  # AES-256 / HMAC-SHA256
VERSION_SIZE = 4  # uint32 big-endian
WIPE_PASSES = 3

BytesLike = Union[bytes, bytearray, memoryview]


class KeyPurpose(str, Enum):
    ENCRYPTION = "encryption"
    SIGNING = "signing"


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def build_info(product_tag: str, version: int, purpose: KeyPurpose, context: str) -> bytes:
    """Build the domain-separation string for one derivation."""
    purpose = KeyPurpose(purpose)
    return f"{product_tag}-v{version}-{purpose.value}-{context}".encode("utf-8")


def _hmac_stretch(master: BytesLike, message: bytes, iterations: int) -> bytes:
    working = bytes(master)
    for _ in range(iterations):
        mac = hmac.HMAC(working, hashes.SHA256())
        mac.update(message)
        working = mac.finalize()
    return working


def _hkdf(master: BytesLike, salt: bytes, info: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        info=info,
    )
    return hkdf.derive(bytes(master))


def derive_key(
    master: BytesLike,
    salt: BytesLike,
    version: int,
    purpose: KeyPurpose,
    context: str,
    *,
    product_tag: str = "securyflex",
    iterations: int = MIN_ITERATIONS,
    algorithm: str = "hmac-stretch",
) -> bytes:
    """Derive a 32-byte purpose- and context-scoped key.

    The loop always runs the full iteration count; nothing in it depends
    on the content of the inputs.

    Args:
        master: Current master secret.
        salt: Derivation salt paired with the master secret.
        version: Key version the secret belongs to.
        purpose: Encryption or signing.
        context: Caller-chosen scope, e.g. ``"document:wpbr"``.
        product_tag: Product prefix of the info string.
        iterations: Work factor for ``hmac-stretch``.
        algorithm: ``hmac-stretch`` or ``hkdf-sha256``.

    Returns:
        32-byte derived key.

    Raises:
        ValueError: If inputs are empty or the work factor is too low.
    """
    if not master:
        raise ValueError("master secret cannot be empty")
    if not salt:
        raise ValueError("derivation salt cannot be empty")
    if version < 1:
        raise ValueError(f"key version must be >= 1, got {version}")
    info = build_info(product_tag, version, purpose, context)
    if algorithm == "hkdf-sha256":
        return _hkdf(master, bytes(salt), info)
    if algorithm != "hmac-stretch":
        raise ValueError(f"Unsupported derivation algorithm: {algorithm}")
    if iterations < MIN_ITERATIONS:
        raise ValueError(
            f"iterations must be >= {MIN_ITERATIONS}, got {iterations}"
        )
    output = _hmac_stretch(master, info + bytes(salt), iterations)
    # SHA-256 already yields 32 bytes; keep the width explicit
    return output[:KEY_LENGTH].ljust(KEY_LENGTH, b"\x00")


def generate_secret(length: int = SECRET_LENGTH) -> bytearray:
    """Return fresh cryptographically secure random bytes in a wipeable buffer."""
    return bytearray(secrets.token_bytes(length))


# ---------------------------------------------------------------------------
# Secure wipe
# ---------------------------------------------------------------------------

def secure_wipe(buffer: bytearray) -> None:
    """Overwrite a buffer with three passes of random bytes, then zeros.

    Args:
        buffer: Mutable buffer to scrub in place. ``bytes`` cannot be wiped.
    """
    if not isinstance(buffer, bytearray):
        raise TypeError(f"secure_wipe needs a bytearray, got {type(buffer).__name__}")
    size = len(buffer)
    if size == 0:
        return
    for _ in range(WIPE_PASSES):
        buffer[:] = secrets.token_bytes(size)
    buffer[:] = bytes(size)


# ---------------------------------------------------------------------------
# Persisted value framing
# ---------------------------------------------------------------------------

def frame_secret(version: int, value: BytesLike) -> bytes:
    """Prefix a persisted secret or salt with its key version.

    Format: [version 4B uint32 BE][value]
    """
    return struct.pack("!I", version) + bytes(value)


def unframe_secret(blob: bytes) -> tuple[int, bytearray]:
    """Split a framed secret into (version, value).

    Raises:
        ValueError: If the blob is too short to carry a value.
    """
    _min = VERSION_SIZE + 1
    if len(blob) < _min:
        raise ValueError(
            f"framed secret too short: {len(blob)} bytes (minimum {_min})"
        )
    version = struct.unpack("!I", blob[:VERSION_SIZE])[0]
    return version, bytearray(blob[VERSION_SIZE:])
