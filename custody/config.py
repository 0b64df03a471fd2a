"""
Runtime Configuration

Environment Variables:
    CUSTODY_PRODUCTION: Enable production mode (1/true/yes)
        - System signing keys become mandatory
        - Logging defaults to JSON
    CUSTODY_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default INFO)
    CUSTODY_LOG_FORMAT: json, text (default: json in production)

    CUSTODY_SYSTEM_PRINCIPAL_ID: UUID of the system principal
    CUSTODY_SYSTEM_PRIVATE_KEY: Base64-encoded Ed25519 private key
    CUSTODY_SYSTEM_PUBLIC_KEY: Base64-encoded Ed25519 public key

    CUSTODY_AUDIT_ON_STARTUP: Audit every ledger stream at startup (default true)
    CUSTODY_SEED_DEMO: Seed a demo custody lifecycle at startup (default false)

Generate a system keypair with:
    python tools/manage.py generate-keypair
"""

import os
from dataclasses import dataclass
from typing import Optional
from uuid import UUID


# Fixed so that a restarted development server keeps the same system identity
DEFAULT_SYSTEM_PRINCIPAL_ID = UUID("00000000-0000-4000-8000-000000000001")

_TRUE_VALUES = ("1", "true", "yes")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in _TRUE_VALUES


@dataclass
class CustodyConfig:
    """Settings read once at startup."""
    production: bool = False
    log_level: str = "INFO"
    log_format: str = "text"

    system_principal_id: UUID = DEFAULT_SYSTEM_PRINCIPAL_ID
    system_private_key: Optional[str] = None
    system_public_key: Optional[str] = None

    audit_on_startup: bool = True
    seed_demo: bool = False

    @classmethod
    def from_env(cls) -> "CustodyConfig":
        """
        Load configuration from environment variables.

        Raises:
            ValueError: On an unknown log level/format or a malformed principal id
        """
        production = _env_flag("CUSTODY_PRODUCTION", False)

        log_level = os.getenv("CUSTODY_LOG_LEVEL", "INFO").upper()
        if log_level not in _LOG_LEVELS:
            raise ValueError(
                f"Unknown CUSTODY_LOG_LEVEL: {log_level}. "
                f"Valid values: {', '.join(_LOG_LEVELS)}"
            )

        log_format = os.getenv("CUSTODY_LOG_FORMAT", "").lower()
        if not log_format:
            log_format = "json" if production else "text"
        elif log_format not in ("json", "text"):
            raise ValueError(
                f"Unknown CUSTODY_LOG_FORMAT: {log_format}. "
                "Valid values: json, text"
            )

        principal_id = os.getenv("CUSTODY_SYSTEM_PRINCIPAL_ID")

        return cls(
            production=production,
            log_level=log_level,
            log_format=log_format,
            system_principal_id=UUID(principal_id) if principal_id else DEFAULT_SYSTEM_PRINCIPAL_ID,
            system_private_key=os.getenv("CUSTODY_SYSTEM_PRIVATE_KEY") or None,
            system_public_key=os.getenv("CUSTODY_SYSTEM_PUBLIC_KEY") or None,
            audit_on_startup=_env_flag("CUSTODY_AUDIT_ON_STARTUP", True),
            seed_demo=_env_flag("CUSTODY_SEED_DEMO", False),
        )

    @property
    def has_system_keys(self) -> bool:
        return bool(self.system_private_key and self.system_public_key)
