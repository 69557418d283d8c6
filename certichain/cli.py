import click
from flask import current_app

from certichain.crypto_utils import compute_hash, legacy_hash
from certichain.database import db
from certichain.errors import InvalidCertificateData

OK = "ok"
TAMPERED = "tampered"
MISSING = "missing"
LEGACY = "legacy"


def audit_anchors(certificates, anchors):
    """Compare every certificate with its anchor without changing either.

    ``legacy`` marks anchors written from an un-normalized issue date: they
    match the raw stored date but not the normalized one.
    """
    report = []
    for certificate in certificates.list_certificates():
        anchor = anchors.get_anchor(certificate.unique_id)
        if anchor is None:
            status = MISSING
        else:
            try:
                current = compute_hash(certificate)
            except InvalidCertificateData:
                current = None
            if current == anchor.hash:
                status = OK
            elif current is not None and legacy_hash(certificate) == anchor.hash:
                status = LEGACY
            else:
                status = TAMPERED
        report.append((certificate.unique_id, status))
    return report


def register(app):

    @app.cli.command("init-db")
    def init_db():
        """Create all database tables."""
        db.create_all()
        click.echo("Database initialised.")

    @app.cli.command("audit-anchors")
    def audit_anchors_command():
        """Report certificates whose anchor does not match their current data."""
        services = current_app.extensions["certichain"]
        report = audit_anchors(services.certificates, services.anchors)
        if not report:
            click.echo("No certificates to audit.")
            return

        problems = 0
        for unique_id, status in report:
            if status != OK:
                problems += 1
            click.echo(f"{status:<9} {unique_id}")
        click.echo(f"\nChecked {len(report)} certificates, {problems} need attention.")
        if problems:
            raise SystemExit(1)
