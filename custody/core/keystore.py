"""
Key Custody - Principal Keys Behind One Seam

KeyCustody holds every principal's Ed25519 keypair and signs on their
behalf. Callers pass a principal id, never a private key, so private keys
never leave this module.

KEY HIERARCHY:
1. System principal: signs entries written by the system itself (demo
   seeding, startup tasks).
   - Configured via CUSTODY_SYSTEM_PRIVATE_KEY / CUSTODY_SYSTEM_PUBLIC_KEY
   - Or auto-generated on startup (development only)

2. Officer principals: one keypair each, registered through the API.
   Public keys are immutable once registered.

PRODUCTION REQUIREMENTS:
- Set CUSTODY_PRODUCTION=1 and both system key variables
- Generate with: python tools/manage.py generate-keypair

DEVELOPMENT MODE:
- If keys are not set, an ephemeral keypair is generated (warning issued)
- Keys are different on each restart: entries signed before a restart
  no longer verify against the new system key
"""

import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Optional
from uuid import UUID, uuid4

from ..config import CustodyConfig
from ..observability import get_logger
from .ledger import DuplicateError, PreconditionError
from .signer import Signer


logger = get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    """
    Public record of a key holder.

    Once registered, public_key CANNOT change. It is the accountability
    anchor for every entry the principal signs.
    """
    principal_id: UUID
    display_name: str
    public_key: str
    registered_at: datetime
    is_system: bool = False

    def to_dict(self) -> dict:
        return {
            "principal_id": str(self.principal_id),
            "display_name": self.display_name,
            "public_key": self.public_key,
            "registered_at": self.registered_at.isoformat(),
            "is_system": self.is_system,
        }


class KeyCustody(ABC):
    """
    Abstract key custody.

    A deployment replaces InMemoryKeyCustody with an HSM or KMS backed
    implementation. The ledger only depends on this interface.
    """

    @abstractmethod
    def register_principal(
        self,
        display_name: str,
        principal_id: Optional[UUID] = None,
    ) -> Principal:
        """Generate and hold a fresh keypair for a new principal."""
        pass

    @abstractmethod
    def get_principal(self, principal_id: UUID) -> Optional[Principal]:
        pass

    @abstractmethod
    def list_principals(self) -> list[Principal]:
        pass

    @abstractmethod
    def sign(self, payload: str | bytes, principal_id: UUID) -> str:
        """
        Sign a canonical payload with the principal's private key.

        Raises:
            PreconditionError: Unknown principal or no private key held
        """
        pass

    def find_public_key(self, principal_id: UUID) -> Optional[str]:
        principal = self.get_principal(principal_id)
        return principal.public_key if principal else None

    def public_key(self, principal_id: UUID) -> str:
        """
        Public key of a registered principal.

        Raises:
            PreconditionError: Unknown principal
        """
        public_key = self.find_public_key(principal_id)
        if public_key is None:
            raise PreconditionError(
                f"Principal {principal_id} is not registered. "
                "Principals must be registered before they can sign."
            )
        return public_key


class InMemoryKeyCustody(KeyCustody):
    """
    Process-local key custody.

    SECURITY NOTES:
    - Private keys are never logged or returned
    - Imported keypairs are validated before use
    """

    def __init__(self):
        self._principals: dict[UUID, Principal] = {}
        self._private_keys: dict[UUID, str] = {}
        self._public_key_owner: dict[str, UUID] = {}
        self._lock = Lock()
        self._system_principal_id: Optional[UUID] = None
        self._is_ephemeral = False

    def _add(self, principal: Principal, private_key: str) -> Principal:
        with self._lock:
            if principal.principal_id in self._principals:
                raise DuplicateError(f"Principal {principal.principal_id} already exists")
            if principal.public_key in self._public_key_owner:
                raise DuplicateError(
                    f"Public key already registered to principal "
                    f"{self._public_key_owner[principal.public_key]}. "
                    "Each principal must have a unique public key."
                )
            self._principals[principal.principal_id] = principal
            self._private_keys[principal.principal_id] = private_key
            self._public_key_owner[principal.public_key] = principal.principal_id

        logger.info(
            "Principal registered",
            principal_id=str(principal.principal_id),
            is_system=principal.is_system,
        )
        return principal

    def register_principal(
        self,
        display_name: str,
        principal_id: Optional[UUID] = None,
    ) -> Principal:
        if not display_name or not display_name.strip():
            raise PreconditionError("Principal display name is required")

        private_key, public_key = Signer.generate_keypair()
        principal = Principal(
            principal_id=principal_id or uuid4(),
            display_name=display_name.strip(),
            public_key=public_key,
            registered_at=datetime.now(timezone.utc),
        )
        return self._add(principal, private_key)

    def import_principal(
        self,
        principal_id: UUID,
        display_name: str,
        private_key: str,
        public_key: str,
        is_system: bool = False,
    ) -> Principal:
        """
        Take custody of an existing keypair.

        Raises:
            PreconditionError: The keys are malformed or do not match
            DuplicateError: The id or public key is already registered
        """
        if not Signer.keypair_matches(private_key, public_key):
            raise PreconditionError(
                f"Keypair validation failed for principal {principal_id}. "
                "Private and public keys do not match."
            )

        principal = Principal(
            principal_id=principal_id,
            display_name=display_name,
            public_key=public_key,
            registered_at=datetime.now(timezone.utc),
            is_system=is_system,
        )
        return self._add(principal, private_key)

    def load_system_principal(self, config: CustodyConfig) -> Principal:
        """
        Load or generate the system principal.

        Raises:
            RuntimeError: Production mode without configured keys, or a
                configured keypair that does not match
        """
        if config.has_system_keys:
            try:
                principal = self.import_principal(
                    config.system_principal_id,
                    "System",
                    config.system_private_key,
                    config.system_public_key,
                    is_system=True,
                )
            except PreconditionError as e:
                raise RuntimeError(f"System keypair rejected: {e}") from e
            self._is_ephemeral = False
            logger.info("System key loaded from environment")
        else:
            if config.production:
                raise RuntimeError(
                    "CUSTODY_SYSTEM_PRIVATE_KEY and CUSTODY_SYSTEM_PUBLIC_KEY "
                    "must be set in production. Generate with:\n"
                    "python tools/manage.py generate-keypair"
                )

            warnings.warn(
                "System signing key not configured. Generating ephemeral key for development. "
                "This key changes on each restart - NOT suitable for production!",
                stacklevel=2
            )

            private_key, public_key = Signer.generate_keypair()
            principal = self.import_principal(
                config.system_principal_id,
                "System",
                private_key,
                public_key,
                is_system=True,
            )
            self._is_ephemeral = True
            logger.warning("Generated ephemeral system key (development mode)")

        self._system_principal_id = principal.principal_id
        return principal

    @property
    def system_principal_id(self) -> Optional[UUID]:
        return self._system_principal_id

    @property
    def is_ephemeral(self) -> bool:
        """True if the system key will not survive a restart."""
        return self._is_ephemeral

    def get_principal(self, principal_id: UUID) -> Optional[Principal]:
        return self._principals.get(principal_id)

    def list_principals(self) -> list[Principal]:
        return sorted(self._principals.values(), key=lambda p: p.registered_at)

    def sign(self, payload: str | bytes, principal_id: UUID) -> str:
        private_key = self._private_keys.get(principal_id)
        if private_key is None:
            raise PreconditionError(
                f"No signing key held for principal {principal_id}. "
                "Principals must be registered before they can sign."
            )
        return Signer.sign(payload, private_key)
