import enum
import logging
from dataclasses import dataclass, field
from typing import Optional

from certichain.activity import TYPE_VERIFICATION, ActivityLog
from certichain.blockchain import AnchorStore, normalize_unique_id
from certichain.certificates import CertificateStore
from certichain.crypto_utils import compute_hash
from certichain.errors import BackendUnavailable, InvalidCertificateData
from certichain.models import (
    PUBLIC_ACTOR,
    STATUS_EXPIRED,
    STATUS_REVOKED,
    Actor,
    AnchorRecord,
    Certificate,
    utcnow_iso,
)

logger = logging.getLogger(__name__)


class VerificationStatus(str, enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    NOT_FOUND = "not_found"


class InvalidReason(str, enum.Enum):
    REVOKED = "revoked"
    EXPIRED = "expired"
    NOT_ANCHORED = "not_anchored"
    TAMPERED = "tampered"


MESSAGES = {
    VerificationStatus.VALID: "Certificate verified successfully on blockchain.",
    VerificationStatus.NOT_FOUND: "Certificate not found in our records.",
    InvalidReason.REVOKED: "This certificate has been revoked by the issuing institution.",
    InvalidReason.EXPIRED: "This certificate has expired.",
    InvalidReason.NOT_ANCHORED: (
        "Certificate has no blockchain anchor. Its integrity cannot be confirmed; "
        "contact the issuing institution."
    ),
    InvalidReason.TAMPERED: (
        "Certificate hash mismatch. This certificate may have been tampered with."
    ),
}


@dataclass
class VerificationResult:
    status: VerificationStatus
    message: str
    reason: Optional[InvalidReason] = None
    certificate: Optional[Certificate] = None
    anchor: Optional[AnchorRecord] = None
    computed_hash: Optional[str] = None
    verified_at: str = field(default_factory=utcnow_iso)

    @property
    def is_valid(self) -> bool:
        return self.status is VerificationStatus.VALID

    @property
    def outcome(self) -> str:
        """Single label for audit logs: the status, or the reason when invalid."""
        return self.reason.value if self.reason else self.status.value

    def to_dict(self):
        return {
            "is_valid": self.is_valid,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "certificate": self.certificate.to_dict() if self.certificate else None,
            "blockchain_record": self.anchor.to_dict() if self.anchor else None,
            "computed_hash": self.computed_hash,
            "verified_at": self.verified_at,
        }


def _invalid(reason, **kwargs):
    return VerificationResult(
        status=VerificationStatus.INVALID,
        message=MESSAGES[reason],
        reason=reason,
        **kwargs,
    )


class Verifier:
    """Checks a certificate's current identity fields against its anchor.

    Lookup failures raise BackendUnavailable; every other outcome, including
    an unknown id, is returned as a VerificationResult.
    """

    def __init__(self, certificates: CertificateStore, anchors: AnchorStore,
                 activity: Optional[ActivityLog] = None) -> None:
        self.certificates = certificates
        self.anchors = anchors
        self.activity = activity

    def verify(self, unique_id: str, actor: Optional[Actor] = None) -> VerificationResult:
        unique_id = normalize_unique_id(unique_id)
        result = self._check(unique_id)
        logger.info("Verification of %s: %s", unique_id or "<empty>", result.outcome)
        self._audit(unique_id, result, actor or PUBLIC_ACTOR)
        return result

    def _check(self, unique_id):
        certificate = self.certificates.get_by_unique_id(unique_id) if unique_id else None
        if certificate is None:
            return VerificationResult(
                status=VerificationStatus.NOT_FOUND,
                message=MESSAGES[VerificationStatus.NOT_FOUND],
            )

        if certificate.status == STATUS_REVOKED:
            return _invalid(InvalidReason.REVOKED, certificate=certificate)
        if certificate.status == STATUS_EXPIRED:
            return _invalid(InvalidReason.EXPIRED, certificate=certificate)

        anchor = self.anchors.get_anchor(unique_id)
        if anchor is None:
            logger.warning("Certificate %s exists without a blockchain anchor", unique_id)
            return _invalid(InvalidReason.NOT_ANCHORED, certificate=certificate)

        try:
            current_hash = compute_hash(certificate)
        except InvalidCertificateData:
            # stored identity fields no longer parse, so they cannot match
            current_hash = None
        if current_hash != anchor.hash:
            return _invalid(
                InvalidReason.TAMPERED,
                certificate=certificate,
                anchor=anchor,
                computed_hash=current_hash,
            )

        return VerificationResult(
            status=VerificationStatus.VALID,
            message=MESSAGES[VerificationStatus.VALID],
            certificate=certificate,
            anchor=anchor,
            computed_hash=current_hash,
        )

    def _audit(self, unique_id, result, actor):
        if self.activity is None:
            return
        if actor.id == PUBLIC_ACTOR.id:
            action = "Public Certificate Verification"
            details = f"Public verification of certificate {unique_id}"
        else:
            action = "Certificate Verified"
            details = f"{actor.name} verified certificate {unique_id}"
        try:
            self.activity.record(actor, action, f"{details}: {result.outcome}", TYPE_VERIFICATION,
                                 unique_id=unique_id, outcome=result.outcome)
        except BackendUnavailable as exc:
            logger.warning("Verification of %s not written to activity log: %s", unique_id, exc)
