"""Backend-independent records shared by the stores and services."""

from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Optional

STATUS_ACTIVE = "active"
STATUS_REVOKED = "revoked"
STATUS_EXPIRED = "expired"
STATUSES = (STATUS_ACTIVE, STATUS_REVOKED, STATUS_EXPIRED)

# Hashed fields, in canonical order.
IDENTITY_FIELDS = (
    "student_name",
    "course_name",
    "institution_name",
    "issue_date",
    "unique_id",
)

# Fields an institution may change after issuance. Identity edits are allowed
# but leave the anchor untouched, so verification reports them as tampering.
EDITABLE_FIELDS = (
    "student_name",
    "student_email",
    "course_name",
    "issue_date",
    "expiry_date",
    "grade",
    "description",
)


def utcnow_iso():
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Certificate:
    id: str
    unique_id: str
    student_name: str
    student_email: str
    course_name: str
    institution_name: str
    institution_id: str
    issue_date: str
    expiry_date: Optional[str] = None
    grade: Optional[str] = None
    description: Optional[str] = None
    blockchain_tx_hash: Optional[str] = None
    status: str = STATUS_ACTIVE
    created_at: str = ""
    updated_at: Optional[str] = None

    def identity(self):
        return {name: getattr(self, name) for name in IDENTITY_FIELDS}

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class AnchorRecord:
    certificate_id: str
    unique_id: str
    hash: str
    block_number: int
    created_at: str

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class AnchorReceipt:
    hash: str
    block_number: int


@dataclass(frozen=True)
class IssuanceReceipt:
    certificate: Certificate
    hash: str
    block_number: int

    def to_dict(self):
        return {
            "certificate": self.certificate.to_dict(),
            "hash": self.hash,
            "block_number": self.block_number,
        }


@dataclass(frozen=True)
class Actor:
    """Whoever triggered an operation, as written to the activity log."""

    id: str
    name: str


PUBLIC_ACTOR = Actor(id="public", name="Public User")
SYSTEM_ACTOR = Actor(id="system", name="System")


@dataclass(frozen=True)
class ActivityEntry:
    id: str
    user_id: str
    user_name: str
    action: str
    details: str
    type: str
    timestamp: str
    unique_id: Optional[str] = None
    outcome: Optional[str] = None

    def to_dict(self):
        return asdict(self)
