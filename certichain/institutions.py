"""Institutions allowed to issue certificates.

Names are stored encrypted with the master key and issuer keys are stored
only as HMACs. A newly registered institution cannot issue until the
central authority approves it.
"""

import hmac
import logging

from cryptography.fernet import InvalidToken

from certichain.crypto_utils import decrypt, encrypt, generate_hmac, get_cipher, verify_hmac
from certichain.database import Institution, database_errors, db, utcnow
from certichain.errors import InvalidCertificateData, UnauthorizedIssuer
from certichain.models import Actor

logger = logging.getLogger(__name__)


class InstitutionRegistry:
    def __init__(self, master_key: bytes, superadmin_key=None) -> None:
        self._master_key = master_key
        self._cipher = get_cipher(master_key)
        self._superadmin_key = superadmin_key

    def display_name(self, institution: Institution) -> str:
        try:
            return decrypt(institution.encrypted_name, self._cipher)
        except InvalidToken:
            logger.error("Institution %s name cannot be decrypted with the current MASTER_KEY",
                         institution.id)
            raise

    def as_actor(self, institution: Institution) -> Actor:
        return Actor(id=institution.id, name=self.display_name(institution))

    def to_dict(self, institution: Institution) -> dict:
        return {
            "id": institution.id,
            "name": self.display_name(institution),
            "is_verified": institution.is_verified,
            "created_at": institution.created_at.isoformat() if institution.created_at else None,
            "verified_at": institution.verified_at.isoformat() if institution.verified_at else None,
        }

    def register(self, name: str, issuer_key: str, verified: bool = False) -> Institution:
        name = (name or "").strip()
        issuer_key = (issuer_key or "").strip()
        if not name or not issuer_key:
            raise InvalidCertificateData("Institution name and issuer key are required")

        institution = Institution(
            encrypted_name=encrypt(name, self._cipher),
            secret_hash=generate_hmac(issuer_key, self._master_key),
            is_verified=verified,
            verified_at=utcnow() if verified else None,
        )
        with database_errors("institution registration"):
            db.session.add(institution)
            db.session.commit()
        logger.info("Registered institution %s (%s)", institution.id, name)
        return institution

    def get(self, institution_id: str):
        with database_errors("institution lookup"):
            return db.session.get(Institution, institution_id)

    def check_superadmin(self, key) -> None:
        if not self._superadmin_key or not key or not hmac.compare_digest(
                key.encode("utf-8"), self._superadmin_key.encode("utf-8")):
            raise UnauthorizedIssuer("Invalid superadmin key")

    def approve(self, institution_id: str, superadmin_key) -> Institution:
        self.check_superadmin(superadmin_key)
        institution = self.get(institution_id)
        if institution is None:
            raise UnauthorizedIssuer(f"Unknown institution {institution_id}")
        with database_errors("institution approval"):
            institution.is_verified = True
            institution.verified_at = utcnow()
            db.session.commit()
        logger.info("Approved institution %s", institution_id)
        return institution

    def authenticate(self, institution_id, issuer_key) -> Institution:
        """Return the institution if the key matches and it has been approved."""
        institution = self.get(institution_id) if institution_id else None
        if institution is None or not issuer_key:
            raise UnauthorizedIssuer("Unauthorized Issuer")
        if not verify_hmac(issuer_key.strip(), institution.secret_hash, self._master_key):
            raise UnauthorizedIssuer("Unauthorized Issuer")
        if not institution.is_verified:
            raise UnauthorizedIssuer("Institution has not been approved yet")
        return institution

    def ensure_default_institution(self, name, issuer_key):
        """Create one approved institution on first start-up, if configured."""
        if not name or not issuer_key:
            return None
        with database_errors("institution lookup"):
            existing = Institution.query.all()
        for institution in existing:
            if verify_hmac(issuer_key, institution.secret_hash, self._master_key):
                return institution
        return self.register(name, issuer_key, verified=True)
