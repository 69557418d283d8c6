"""Tests for issuance, anchoring retries and certificate edits."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from certichain.activity import LocalActivityLog

from certichain.blockchain import LocalAnchorStore
from certichain.certificates import LocalCertificateStore
from certichain.crypto_utils import compute_hash
from certichain.errors import (
    BackendUnavailable,
    CertificateNotFound,
    DuplicateAnchorError,
    InvalidCertificateData,
    InvalidIssueDate,
    IssuanceError,
    UnauthorizedIssuer,
)
from certichain.issuance import IssuanceService
from certichain.models import STATUS_ACTIVE, STATUS_REVOKED, Actor
from certichain.storage import JsonDocumentStore, JsonLinesLog

from conftest import certificate_data, sequential_ids

ADMIN = Actor("inst-1", "Acme University")


class FlakyAnchors(LocalAnchorStore):
    """Fails the first ``failures`` writes."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def append_anchor(self, certificate_id, unique_id, cert_hash):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise BackendUnavailable("anchor store timed out")
        return super().append_anchor(certificate_id, unique_id, cert_hash)


class PreAnchored(LocalAnchorStore):
    def append_anchor(self, certificate_id, unique_id, cert_hash):
        raise DuplicateAnchorError(f"{unique_id} already anchored")


class TestIssue:
    def test_receipt(self, core) -> None:
        receipt = core.issue()
        certificate = receipt.certificate
        assert certificate.unique_id == "CERT-TEST-1"
        assert certificate.status == STATUS_ACTIVE
        assert certificate.institution_name == "Acme University"
        assert certificate.institution_id == "inst-1"
        assert certificate.blockchain_tx_hash == receipt.hash == compute_hash(certificate)
        assert receipt.block_number == 1

    def test_certificate_and_anchor_both_stored(self, core) -> None:
        receipt = core.issue()
        unique_id = receipt.certificate.unique_id
        assert core.certificates.get_by_unique_id(unique_id) is not None
        anchor = core.anchors.get_anchor(unique_id)
        assert anchor.certificate_id == receipt.certificate.id
        assert anchor.hash == receipt.hash

    def test_sequence_has_no_gaps(self, core) -> None:
        receipts = [core.issue(student_name=f"Student {i}") for i in range(10)]
        assert [r.block_number for r in receipts] == list(range(1, 11))
        assert len({r.certificate.unique_id for r in receipts}) == 10

    def test_generated_ids_are_uppercased(self) -> None:
        service = IssuanceService(LocalCertificateStore(), LocalAnchorStore(),
                                  id_generator=lambda: "cert-lower")
        receipt = service.issue(certificate_data(), "inst-1", "Acme University")
        assert receipt.certificate.unique_id == "CERT-LOWER"

    def test_issue_is_logged(self, core) -> None:
        receipt = core.issue()
        entry = core.activity.recent(1)[0]
        assert entry.action == "Certificate Issued"
        assert entry.unique_id == receipt.certificate.unique_id
        assert entry.user_id == "inst-1"

    @pytest.mark.parametrize("missing", ["student_name", "student_email", "course_name", "issue_date"])
    def test_required_fields(self, core, missing) -> None:
        with pytest.raises(InvalidCertificateData):
            core.issue(**{missing: "  "})
        assert core.certificates.list_certificates() == []

    def test_bad_issue_date(self, core) -> None:
        with pytest.raises(InvalidIssueDate):
            core.issue(issue_date="next tuesday")
        assert core.anchors.count() == 0

    @pytest.mark.parametrize("field, limit", [
        ("student_name", 150), ("student_email", 255), ("course_name", 255), ("grade", 50),
    ])
    def test_oversized_fields_rejected(self, core, field, limit) -> None:
        with pytest.raises(InvalidCertificateData) as excinfo:
            core.issue(**{field: "x" * (limit + 1)})
        assert field in str(excinfo.value)
        assert core.certificates.list_certificates() == []
        assert core.anchors.count() == 0

    def test_field_at_limit_accepted(self, core) -> None:
        receipt = core.issue(student_name="x" * 150)
        assert len(receipt.certificate.student_name) == 150


class TestConcurrentIssuance:
    def test_threads_on_file_backed_stores(self, tmp_path) -> None:
        def open_stores():
            return (
                LocalCertificateStore(JsonDocumentStore(tmp_path / "certificates.json")),
                LocalAnchorStore(JsonLinesLog(tmp_path / "anchors.jsonl")),
                LocalActivityLog(JsonDocumentStore(tmp_path / "activity.json")),
            )

        certificates, anchors, activity = open_stores()
        service = IssuanceService(certificates, anchors, activity)
        with ThreadPoolExecutor(max_workers=16) as pool:
            receipts = list(pool.map(
                lambda i: service.issue(certificate_data(student_name=f"Student {i}"),
                                        "inst-1", "Acme University"),
                range(32),
            ))

        assert sorted(r.block_number for r in receipts) == list(range(1, 33))
        certificates, anchors, activity = open_stores()
        stored = certificates.list_certificates()
        assert len(stored) == anchors.count() == 32
        for certificate in stored:
            assert anchors.get_anchor(certificate.unique_id).hash == certificate.blockchain_tx_hash
        assert len(activity.recent(100)) == 32
        assert list(tmp_path.glob("*.tmp")) == []


class TestAnchorFailures:
    def test_retries_transient_failures(self) -> None:
        anchors = FlakyAnchors(failures=2)
        service = IssuanceService(LocalCertificateStore(), anchors,
                                  id_generator=sequential_ids(), anchor_retries=3)
        receipt = service.issue(certificate_data(), "inst-1", "Acme University")
        assert anchors.attempts == 3
        assert receipt.block_number == 1

    def test_gives_up_and_removes_certificate(self) -> None:
        certificates = LocalCertificateStore()
        anchors = FlakyAnchors(failures=5)
        service = IssuanceService(certificates, anchors,
                                  id_generator=sequential_ids(), anchor_retries=3)
        with pytest.raises(IssuanceError):
            service.issue(certificate_data(), "inst-1", "Acme University")
        assert anchors.attempts == 3
        assert certificates.list_certificates() == []
        assert anchors.count() == 0

    def test_duplicate_anchor_is_not_retried(self) -> None:
        certificates = LocalCertificateStore()
        service = IssuanceService(certificates, PreAnchored(), id_generator=sequential_ids())
        with pytest.raises(IssuanceError) as excinfo:
            service.issue(certificate_data(), "inst-1", "Acme University")
        assert isinstance(excinfo.value.__cause__, DuplicateAnchorError)
        assert certificates.list_certificates() == []


class TestRevoke:
    def test_revoke(self, core) -> None:
        receipt = core.issue()
        revoked = core.issuance.revoke(receipt.certificate.id, "Issued in error", ADMIN,
                                       institution_id="inst-1")
        assert revoked.status == STATUS_REVOKED
        assert revoked.updated_at
        assert core.anchors.get_anchor(receipt.certificate.unique_id).hash == receipt.hash
        assert "Issued in error" in core.activity.recent(1)[0].details

    def test_revoke_unknown(self, core) -> None:
        with pytest.raises(CertificateNotFound):
            core.issuance.revoke("nope", "reason", ADMIN)

    def test_revoke_other_institution(self, core) -> None:
        receipt = core.issue()
        with pytest.raises(UnauthorizedIssuer):
            core.issuance.revoke(receipt.certificate.id, "reason", ADMIN, institution_id="inst-2")
        assert core.certificates.get_by_id(receipt.certificate.id).status == STATUS_ACTIVE


class TestUpdate:
    def test_update_does_not_reanchor(self, core) -> None:
        receipt = core.issue()
        updated = core.issuance.update(receipt.certificate.id, {"student_name": "Alice Tann"},
                                       ADMIN, institution_id="inst-1")
        assert updated.student_name == "Alice Tann"
        assert core.anchors.get_anchor(updated.unique_id).hash == receipt.hash
        assert core.anchors.count() == 1

    def test_identity_fields_outside_editable_set(self, core) -> None:
        receipt = core.issue()
        for field in ("unique_id", "institution_name", "status", "blockchain_tx_hash"):
            with pytest.raises(InvalidCertificateData):
                core.issuance.update(receipt.certificate.id, {field: "x"}, ADMIN)

    def test_update_validates_dates(self, core) -> None:
        receipt = core.issue()
        with pytest.raises(InvalidIssueDate):
            core.issuance.update(receipt.certificate.id, {"expiry_date": "soon"}, ADMIN)

    def test_update_rejects_oversized_fields(self, core) -> None:
        receipt = core.issue()
        with pytest.raises(InvalidCertificateData):
            core.issuance.update(receipt.certificate.id, {"grade": "A" * 51}, ADMIN)
        assert core.certificates.get_by_id(receipt.certificate.id).grade == "A"
