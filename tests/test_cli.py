"""Tests for the anchor audit and its Flask CLI command."""

from certichain.app import services
from certichain.cli import LEGACY, MISSING, OK, TAMPERED, audit_anchors
from certichain.crypto_utils import legacy_hash
from certichain.database import CertificateRow, db
from certichain.models import Certificate

from conftest import certificate_data


class TestAuditAnchors:
    def test_clean_store(self, core) -> None:
        core.issue()
        core.issue()
        report = audit_anchors(core.certificates, core.anchors)
        assert [status for _, status in report] == [OK, OK]

    def test_classifies_problems(self, core) -> None:
        ok = core.issue()
        tampered = core.issue()
        core.certificates.update_fields(tampered.certificate.id, {"student_name": "Mallory"})

        # written before issue dates were normalized
        legacy = core.issue(issue_date="2024-03-01T10:00:00.000Z")
        core.certificates.create(Certificate.from_dict({
            **legacy.certificate.to_dict(), "id": "legacy-copy", "unique_id": "CERT-LEGACY",
        }))
        copy = core.certificates.get_by_unique_id("CERT-LEGACY")
        core.anchors.append_anchor(copy.id, copy.unique_id, legacy_hash(copy))

        core.certificates.create(Certificate.from_dict({
            **ok.certificate.to_dict(), "id": "orphan", "unique_id": "CERT-ORPHAN",
        }))

        report = dict(audit_anchors(core.certificates, core.anchors))
        assert report[ok.certificate.unique_id] == OK
        assert report[tampered.certificate.unique_id] == TAMPERED
        assert report[legacy.certificate.unique_id] == OK
        assert report["CERT-LEGACY"] == LEGACY
        assert report["CERT-ORPHAN"] == MISSING

    def test_audit_does_not_write_anchors(self, core) -> None:
        receipt = core.issue()
        core.certificates.update_fields(receipt.certificate.id, {"course_name": "Other"})
        audit_anchors(core.certificates, core.anchors)
        assert core.anchors.count() == 1
        assert core.anchors.get_anchor(receipt.certificate.unique_id).hash == receipt.hash


class TestCommands:
    def test_init_db(self, app) -> None:
        result = app.test_cli_runner().invoke(args=["init-db"])
        assert result.exit_code == 0
        assert "initialised" in result.output

    def test_audit_empty(self, app) -> None:
        result = app.test_cli_runner().invoke(args=["audit-anchors"])
        assert result.exit_code == 0
        assert "No certificates" in result.output

    def test_audit_reports_tampering(self, app) -> None:
        with app.app_context():
            receipt = services().issuance.issue(certificate_data(), "inst-1", "Acme University")
            row = db.session.get(CertificateRow, receipt.certificate.id)
            row.student_name = "Alice Tann"
            db.session.commit()
            unique_id = receipt.certificate.unique_id

        result = app.test_cli_runner().invoke(args=["audit-anchors"])
        assert result.exit_code == 1
        assert f"tampered  {unique_id}" in result.output
        assert "1 need attention" in result.output
