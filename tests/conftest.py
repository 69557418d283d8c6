import itertools

import pytest

from certichain.activity import LocalActivityLog
from certichain.app import create_app, services
from certichain.blockchain import LocalAnchorStore
from certichain.certificates import LocalCertificateStore
from certichain.issuance import IssuanceService
from certichain.verifier import Verifier

MASTER_KEY = "test-master-key"
SUPERADMIN_KEY = "test-superadmin-key"
ISSUER_KEY = "acme-issuer-key"


def certificate_data(**overrides):
    data = {
        "student_name": "Alice Tan",
        "student_email": "alice@example.com",
        "course_name": "Distributed Systems",
        "issue_date": "2024-03-01",
        "grade": "A",
    }
    data.update(overrides)
    return data


def sequential_ids(prefix="CERT-TEST"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


class Core:
    """Issuance and verification wired to in-memory local stores."""

    def __init__(self, id_generator=None):
        self.certificates = LocalCertificateStore()
        self.anchors = LocalAnchorStore()
        self.activity = LocalActivityLog()
        self.issuance = IssuanceService(
            self.certificates, self.anchors, self.activity,
            id_generator=id_generator or sequential_ids(),
        )
        self.verifier = Verifier(self.certificates, self.anchors, self.activity)

    def issue(self, **overrides):
        return self.issuance.issue(certificate_data(**overrides), "inst-1", "Acme University")


@pytest.fixture
def core():
    return Core()


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "MASTER_KEY": MASTER_KEY,
        "SUPERADMIN_KEY": SUPERADMIN_KEY,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}",
        "STORAGE_BACKEND": "database",
        "PUBLIC_BASE_URL": "https://certs.example.edu",
        "LOG_LEVEL": "WARNING",
    })
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def issuer_headers(app):
    with app.app_context():
        registry = services().institutions
        institution = registry.register("Acme University", ISSUER_KEY, verified=True)
        institution_id = institution.id
    return {"X-Institution-Id": institution_id, "X-Issuer-Key": ISSUER_KEY}
