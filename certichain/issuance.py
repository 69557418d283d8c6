"""Certificate issuance, editing and revocation.

A certificate is written first and its anchor second. If the anchor cannot
be made durable the certificate is deleted again, so a successful issuance
always leaves both records behind.
"""

import logging
import uuid
from typing import Callable, Optional

from certichain.activity import TYPE_CERTIFICATE, ActivityLog
from certichain.blockchain import AnchorStore, generate_unique_id, normalize_unique_id
from certichain.certificates import CertificateStore
from certichain.crypto_utils import compute_hash, normalize_issue_date
from certichain.errors import (
    BackendUnavailable,
    CertificateNotFound,
    DuplicateAnchorError,
    InvalidCertificateData,
    IssuanceError,
    UnauthorizedIssuer,
)
from certichain.models import (
    EDITABLE_FIELDS,
    STATUS_ACTIVE,
    STATUS_REVOKED,
    Actor,
    Certificate,
    IssuanceReceipt,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("student_name", "student_email", "course_name", "issue_date")
OPTIONAL_FIELDS = ("expiry_date", "grade", "description")

# column widths of the certificates table
MAX_LENGTHS = {
    "student_name": 150,
    "student_email": 255,
    "course_name": 255,
    "issue_date": 40,
    "expiry_date": 40,
    "grade": 50,
}


def _clean(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def check_lengths(values: dict) -> None:
    too_long = [name for name, limit in MAX_LENGTHS.items()
                if values.get(name) and len(str(values[name])) > limit]
    if too_long:
        raise InvalidCertificateData(
            "Fields too long: " + ", ".join(f"{name} (max {MAX_LENGTHS[name]})" for name in too_long)
        )


def validate_certificate_data(data: dict) -> dict:
    missing = [name for name in REQUIRED_FIELDS if not _clean(data.get(name))]
    if missing:
        raise InvalidCertificateData(f"Missing required fields: {', '.join(missing)}")

    cleaned = {name: _clean(data.get(name)) for name in REQUIRED_FIELDS + OPTIONAL_FIELDS}
    check_lengths(cleaned)
    # parse now so a bad date is rejected before anything is written
    normalize_issue_date(cleaned["issue_date"])
    if cleaned["expiry_date"]:
        normalize_issue_date(cleaned["expiry_date"])
    return cleaned


class IssuanceService:
    def __init__(self, certificates: CertificateStore, anchors: AnchorStore,
                 activity: Optional[ActivityLog] = None,
                 id_generator: Callable[[], str] = generate_unique_id,
                 anchor_retries: int = 3) -> None:
        self.certificates = certificates
        self.anchors = anchors
        self.activity = activity
        self.id_generator = id_generator
        self.anchor_retries = anchor_retries

    def issue(self, data: dict, institution_id: str, institution_name: str,
              actor: Optional[Actor] = None) -> IssuanceReceipt:
        fields = validate_certificate_data(data)
        actor = actor or Actor(id=institution_id, name=institution_name)

        certificate = Certificate(
            id=str(uuid.uuid4()),
            unique_id=normalize_unique_id(self.id_generator()),
            institution_name=institution_name,
            institution_id=institution_id,
            status=STATUS_ACTIVE,
            created_at=utcnow_iso(),
            **fields,
        )
        cert_hash = compute_hash(certificate)
        certificate.blockchain_tx_hash = cert_hash

        certificate = self.certificates.create(certificate)
        receipt = self._anchor(certificate, cert_hash)

        logger.info("Issued certificate %s to %s (block %d)",
                    certificate.unique_id, certificate.student_name, receipt.block_number)
        self._log(actor, "Certificate Issued",
                  f"Issued certificate {certificate.unique_id} to {certificate.student_name} "
                  f"for {certificate.course_name}",
                  certificate.unique_id)
        return IssuanceReceipt(certificate=certificate, hash=receipt.hash,
                               block_number=receipt.block_number)

    def _anchor(self, certificate, cert_hash):
        last_error = None
        for attempt in range(1, self.anchor_retries + 1):
            try:
                return self.anchors.append_anchor(certificate.id, certificate.unique_id, cert_hash)
            except BackendUnavailable as exc:
                last_error = exc
                logger.warning("Anchor write for %s failed (attempt %d/%d): %s",
                               certificate.unique_id, attempt, self.anchor_retries, exc)
            except DuplicateAnchorError as exc:
                last_error = exc
                break

        self._compensate(certificate)
        raise IssuanceError(
            f"Certificate {certificate.unique_id} could not be anchored; issuance rolled back"
        ) from last_error

    def _compensate(self, certificate):
        try:
            self.certificates.delete(certificate.id)
        except (BackendUnavailable, CertificateNotFound):
            logger.exception("Could not remove unanchored certificate %s; it will verify as "
                             "not anchored until removed", certificate.unique_id)
            return
        logger.warning("Removed unanchored certificate %s", certificate.unique_id)

    def _owned(self, certificate_id, institution_id):
        certificate = self.certificates.get_by_id(certificate_id)
        if certificate is None:
            raise CertificateNotFound(f"Certificate {certificate_id} not found")
        if institution_id is not None and certificate.institution_id != institution_id:
            raise UnauthorizedIssuer("Certificate was issued by another institution")
        return certificate

    def revoke(self, certificate_id: str, reason: str, actor: Actor,
               institution_id: Optional[str] = None) -> Certificate:
        certificate = self._owned(certificate_id, institution_id)
        certificate = self.certificates.update_status(certificate.id, STATUS_REVOKED)
        logger.info("Revoked certificate %s: %s", certificate.unique_id, reason)
        self._log(actor, "Certificate Revoked",
                  f"Revoked certificate {certificate.unique_id}. Reason: {reason}",
                  certificate.unique_id)
        return certificate

    def update(self, certificate_id: str, updates: dict, actor: Actor,
               institution_id: Optional[str] = None) -> Certificate:
        """Edit certificate fields. The anchor keeps the hash from issuance."""
        unknown = set(updates) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidCertificateData(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        check_lengths(updates)
        for name in ("issue_date", "expiry_date"):
            if updates.get(name):
                normalize_issue_date(updates[name])

        certificate = self._owned(certificate_id, institution_id)
        certificate = self.certificates.update_fields(certificate.id, updates)
        self._log(actor, "Certificate Updated", f"Updated certificate {certificate.unique_id}",
                  certificate.unique_id)
        return certificate

    def _log(self, actor, action, details, unique_id):
        if self.activity is None:
            return
        try:
            self.activity.record(actor, action, details, TYPE_CERTIFICATE, unique_id=unique_id)
        except BackendUnavailable as exc:
            logger.warning("%s for %s not written to activity log: %s", action, unique_id, exc)
