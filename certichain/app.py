import logging
from dataclasses import dataclass
from pathlib import Path

from flask import Flask, current_app, jsonify, redirect, request, send_file, url_for
from flask_cors import CORS

from certichain import cli
from certichain.activity import (
    TYPE_INSTITUTION,
    ActivityLog,
    DatabaseActivityLog,
    LocalActivityLog,
)
from certichain.blockchain import (
    AnchorStore,
    DatabaseAnchorStore,
    LocalAnchorStore,
    get_verification_url,
    normalize_unique_id,
)
from certichain.certificates import (
    CertificateStore,
    DatabaseCertificateStore,
    LocalCertificateStore,
)
from certichain.config import Config, engine_options, validate
from certichain.database import db
from certichain.documents import certificate_pdf, qr_png
from certichain.errors import (
    BackendUnavailable,
    CertiChainError,
    CertificateNotFound,
    InvalidCertificateData,
)
from certichain.institutions import InstitutionRegistry
from certichain.issuance import IssuanceService
from certichain.models import SYSTEM_ACTOR
from certichain.storage import JsonDocumentStore, JsonLinesLog
from certichain.verifier import Verifier

logger = logging.getLogger(__name__)


@dataclass
class Services:
    certificates: CertificateStore
    anchors: AnchorStore
    activity: ActivityLog
    institutions: InstitutionRegistry
    issuance: IssuanceService
    verifier: Verifier


def build_stores(config):
    """Pick the certificate, anchor and activity backends from configuration."""
    if config["STORAGE_BACKEND"] == "local":
        root = Path(config["LOCAL_STORE_DIR"])
        return (
            LocalCertificateStore(JsonDocumentStore(root / "certificates.json")),
            LocalAnchorStore(JsonLinesLog(root / "anchors.jsonl")),
            LocalActivityLog(JsonDocumentStore(root / "activity.json")),
        )
    return DatabaseCertificateStore(), DatabaseAnchorStore(), DatabaseActivityLog()


def services() -> Services:
    return current_app.extensions["certichain"]


# ---------------- FLASK SETUP ----------------
def create_app(test_config=None):
    app = Flask(__name__)
    CORS(app)

    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)
    validate(app.config)
    app.config.setdefault(
        "SQLALCHEMY_ENGINE_OPTIONS",
        engine_options(app.config["SQLALCHEMY_DATABASE_URI"], app.config["BACKEND_TIMEOUT_SECONDS"]),
    )

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db.init_app(app)

    certificates, anchors, activity = build_stores(app.config)
    institutions = InstitutionRegistry(
        app.config["MASTER_KEY"].encode(), app.config.get("SUPERADMIN_KEY")
    )
    app.extensions["certichain"] = Services(
        certificates=certificates,
        anchors=anchors,
        activity=activity,
        institutions=institutions,
        issuance=IssuanceService(
            certificates, anchors, activity,
            anchor_retries=app.config["ANCHOR_WRITE_RETRIES"],
        ),
        verifier=Verifier(certificates, anchors, activity),
    )

    with app.app_context():
        db.create_all()
        institutions.ensure_default_institution(
            app.config.get("DEFAULT_INSTITUTION_NAME"), app.config.get("ISSUER_SECRET")
        )

    logger.info("CertiChain started with %s storage backend", app.config["STORAGE_BACKEND"])

    register_routes(app)
    cli.register(app)
    return app


# ---------------- HELPERS ----------------
def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidCertificateData("Request body must be a JSON object")
    return data


def _authenticated_institution():
    return services().institutions.authenticate(
        request.headers.get("X-Institution-Id"), request.headers.get("X-Issuer-Key")
    )


def _record_institution_event(actor, action, details):
    try:
        services().activity.record(actor, action, details, TYPE_INSTITUTION)
    except BackendUnavailable as exc:
        logger.warning("%s not written to activity log: %s", action, exc)


def _base_url():
    return current_app.config.get("PUBLIC_BASE_URL") or request.host_url


def _certificate_or_404(certificate_id):
    certificate = services().certificates.get_by_id(certificate_id)
    if certificate is None:
        raise CertificateNotFound(f"Certificate {certificate_id} not found")
    return certificate


# ---------------- ROUTES ----------------
def register_routes(app):

    @app.errorhandler(CertiChainError)
    def handle_error(exc):
        if exc.status_code >= 500:
            logger.error("%s: %s", type(exc).__name__, exc)
        return jsonify({"error": str(exc)}), exc.status_code

    @app.route("/")
    def home():
        return jsonify({
            "service": "certichain",
            "backend": app.config["STORAGE_BACKEND"],
            "block_count": services().anchors.count(),
        })

    # ---------------- INSTITUTIONS ----------------
    @app.route("/api/institutions", methods=["POST"])
    def register_institution():
        data = _json_body()
        registry = services().institutions
        institution = registry.register(data.get("name"), data.get("issuer_key"))
        _record_institution_event(
            registry.as_actor(institution), "Institution Registered",
            f"{registry.display_name(institution)} applied to issue certificates",
        )
        return jsonify(registry.to_dict(institution)), 201

    @app.route("/api/institutions/<institution_id>/approve", methods=["POST"])
    def approve_institution(institution_id):
        registry = services().institutions
        institution = registry.approve(institution_id, request.headers.get("X-Superadmin-Key"))
        _record_institution_event(
            SYSTEM_ACTOR, "Institution Approved", f"Approved {registry.display_name(institution)}",
        )
        return jsonify(registry.to_dict(institution))

    # ---------------- CERTIFICATES ----------------
    @app.route("/api/certificates", methods=["POST"])
    def issue():
        institution = _authenticated_institution()
        registry = services().institutions
        receipt = services().issuance.issue(
            _json_body(), institution.id, registry.display_name(institution),
            actor=registry.as_actor(institution),
        )
        body = receipt.to_dict()
        body["verification_url"] = get_verification_url(_base_url(), receipt.certificate.unique_id)
        return jsonify(body), 201

    @app.route("/api/certificates", methods=["GET"])
    def list_certificates():
        store = services().certificates
        query = request.args.get("q")
        if query:
            found = store.search(query)
        else:
            found = store.list_certificates(
                institution_id=request.args.get("institution_id"),
                student_email=request.args.get("student_email"),
            )
        return jsonify([c.to_dict() for c in found])

    @app.route("/api/certificates/<certificate_id>", methods=["GET"])
    def get_certificate(certificate_id):
        return jsonify(_certificate_or_404(certificate_id).to_dict())

    @app.route("/api/certificates/<certificate_id>", methods=["PATCH"])
    def update_certificate(certificate_id):
        institution = _authenticated_institution()
        certificate = services().issuance.update(
            certificate_id, _json_body(), services().institutions.as_actor(institution),
            institution_id=institution.id,
        )
        return jsonify(certificate.to_dict())

    @app.route("/api/certificates/<certificate_id>/revoke", methods=["POST"])
    def revoke(certificate_id):
        institution = _authenticated_institution()
        data = request.get_json(silent=True) or {}
        certificate = services().issuance.revoke(
            certificate_id, data.get("reason") or "No reason given",
            services().institutions.as_actor(institution),
            institution_id=institution.id,
        )
        return jsonify(certificate.to_dict())

    # ---------------- VERIFY ----------------
    @app.route("/api/verify/<unique_id>")
    def verify(unique_id):
        actor = None
        if request.headers.get("X-Institution-Id"):
            actor = services().institutions.as_actor(_authenticated_institution())
        result = services().verifier.verify(unique_id, actor=actor)
        return jsonify(result.to_dict())

    @app.route("/verify/<unique_id>")
    def verify_redirect(unique_id):
        return redirect(url_for("verify", unique_id=normalize_unique_id(unique_id)))

    # ---------------- BLOCKCHAIN ----------------
    @app.route("/api/blockchain")
    def blockchain():
        anchors = services().anchors.list_anchors()
        return jsonify({
            "block_count": len(anchors),
            "records": [a.to_dict() for a in anchors],
        })

    @app.route("/api/blockchain/<unique_id>")
    def blockchain_record(unique_id):
        anchor = services().anchors.get_anchor(normalize_unique_id(unique_id))
        if anchor is None:
            return jsonify({"error": "Certificate not found on blockchain"}), 404
        return jsonify(anchor.to_dict())

    # ---------------- ACTIVITY ----------------
    @app.route("/api/activity")
    def activity():
        limit = request.args.get("limit", default=10, type=int)
        return jsonify([e.to_dict() for e in services().activity.recent(max(limit, 1))])

    # ---------------- QR ----------------
    @app.route("/qr/<unique_id>")
    def qr_code(unique_id):
        url = get_verification_url(_base_url(), normalize_unique_id(unique_id))
        return send_file(qr_png(url), mimetype="image/png")

    # ---------------- PDF ----------------
    @app.route("/download/<unique_id>")
    def download_certificate(unique_id):
        unique_id = normalize_unique_id(unique_id)
        certificate = services().certificates.get_by_unique_id(unique_id)
        if certificate is None:
            raise CertificateNotFound(f"Certificate {unique_id} not found")
        anchor = services().anchors.get_anchor(unique_id)
        buffer = certificate_pdf(certificate, anchor, get_verification_url(_base_url(), unique_id))
        return send_file(buffer, as_attachment=True,
                         download_name=f"{unique_id}.pdf",
                         mimetype="application/pdf")


if __name__ == "__main__":
    create_app().run(port=8080, debug=False)
