"""
Digital Signature Service

Uses Ed25519 to bind every ledger entry to the principal that wrote it.

What gets signed is the SHA-256 digest of the canonical payload, never
the payload itself. A verifier recomputes the digest from the fields it
holds, so any change to a signed field breaks the signature.
"""

import base64
import binascii
import hashlib
from typing import Tuple

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey


class Signer:
    """
    Ed25519 signing for custody accountability.

    Ed25519 signatures are deterministic: the same key and payload
    always produce the same signature.
    """

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new Ed25519 keypair.

        Returns:
            Tuple of (private_key_b64, public_key_b64)
        """
        signing_key = SigningKey.generate()
        verify_key = signing_key.verify_key

        private_b64 = base64.b64encode(bytes(signing_key)).decode("utf-8")
        public_b64 = base64.b64encode(bytes(verify_key)).decode("utf-8")

        return private_b64, public_b64

    @staticmethod
    def digest(payload: str | bytes) -> bytes:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return hashlib.sha256(payload).digest()

    @staticmethod
    def sign(payload: str | bytes, private_key_b64: str) -> str:
        """
        Sign the SHA-256 digest of a canonical payload.

        Args:
            payload: Canonical payload (the exact string that was chained)
            private_key_b64: Base64-encoded private key

        Returns:
            Base64-encoded signature

        Raises:
            ValueError: If the private key is not a valid Ed25519 seed
        """
        try:
            signing_key = SigningKey(base64.b64decode(private_key_b64, validate=True))
        except (binascii.Error, ValueError, TypeError, CryptoError) as e:
            raise ValueError(f"Invalid private key: {e}") from e

        signed = signing_key.sign(Signer.digest(payload))
        return base64.b64encode(signed.signature).decode("utf-8")

    @staticmethod
    def verify(
        payload: str | bytes,
        signature_b64: str,
        public_key_b64: str,
    ) -> bool:
        """
        Verify an Ed25519 signature over the payload digest.

        Never raises: a malformed key, signature or encoding is simply
        an invalid signature.
        """
        if not signature_b64 or not public_key_b64:
            return False

        try:
            verify_key = VerifyKey(base64.b64decode(public_key_b64, validate=True))
            signature_bytes = base64.b64decode(signature_b64, validate=True)

            # Verify raises BadSignatureError if invalid
            verify_key.verify(Signer.digest(payload), signature_bytes)
            return True

        except (BadSignatureError, CryptoError, binascii.Error, ValueError, TypeError):
            return False

    @staticmethod
    def keypair_matches(private_key_b64: str, public_key_b64: str) -> bool:
        """Check that a private key produces signatures the public key accepts."""
        challenge = "keypair-validation-test"
        try:
            signature = Signer.sign(challenge, private_key_b64)
        except ValueError:
            return False
        return Signer.verify(challenge, signature, public_key_b64)
