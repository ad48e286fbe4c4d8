"""
Key Engine Configuration — Validated settings for derivation, caching and rotation.

Reads optional overrides from environment variables:
    KEYS_PRODUCT_TAG = <tag embedded in every derivation info string>
    KEYS_ALGORITHM = hmac-stretch | hkdf-sha256
    KEYS_ITERATIONS = <int, >= 10000>
    KEYS_CACHE_TTL = <seconds>
    KEYS_ROTATION_INTERVAL_DAYS = <days>
    KEYS_ROTATION_CHECK_INTERVAL = <seconds>

Security Note:
    Never log key material. Only log key versions, contexts and purposes.
"""
import os
import base64
import secrets
import logging
from datetime import timedelta

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("securyflex.keys")

SECRET_LENGTH = 32  # 256-bit master secret and salt
MIN_ITERATIONS = 10_000
SUPPORTED_ALGORITHMS = ("hmac-stretch", "hkdf-sha256")

_ENV_FIELDS = {
    "KEYS_PRODUCT_TAG": "product_tag",
    "KEYS_ALGORITHM": "algorithm",
    "KEYS_ITERATIONS": "iterations",
    "KEYS_CACHE_TTL": "cache_ttl",
    "KEYS_ROTATION_INTERVAL_DAYS": "rotation_interval_days",
    "KEYS_ROTATION_CHECK_INTERVAL": "rotation_check_interval",
}


def generate_master_secret() -> str:
    """Generate a random 32-byte master secret and return as base64 string.

    This is a utility for operators seeding a secret store by hand.

    Returns:
        Base64-encoded 32-byte secret string.
    """
    return base64.b64encode(secrets.token_bytes(SECRET_LENGTH)).decode("ascii")


class KeyEngineConfig(BaseModel):
    """Validated key engine configuration."""

    product_tag: str = Field(default="securyflex", min_length=1)
    algorithm: str = Field(default="hmac-stretch")
    iterations: int = Field(default=MIN_ITERATIONS, ge=MIN_ITERATIONS)
    cache_ttl: int = Field(default=3600, ge=1)
    rotation_interval_days: int = Field(default=90, ge=1)
    rotation_check_interval: int = Field(default=3600, ge=1)

    @field_validator("product_tag")
    @classmethod
    def validate_product_tag(cls, v: str) -> str:
        """The tag is a dash-separated field of the info string."""
        if "-" in v:
            raise ValueError(f"product_tag cannot contain '-': {v!r}")
        return v

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        """Validate derivation algorithm is supported."""
        v = v.lower()
        if v not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported derivation algorithm: {v}")
        return v

    @property
    def rotation_interval(self) -> timedelta:
        return timedelta(days=self.rotation_interval_days)

    @classmethod
    def from_env(cls) -> "KeyEngineConfig":
        """Create KeyEngineConfig from KEYS_* environment variables.

        Unset variables keep their defaults.

        Returns:
            Populated KeyEngineConfig instance.
        """
        values = {
            field: os.environ[name]
            for name, field in _ENV_FIELDS.items()
            if name in os.environ
        }
        if values:
            logger.debug("Key engine overrides from environment: %s", sorted(values))
        return cls(**values)
