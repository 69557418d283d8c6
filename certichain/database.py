import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from certichain.errors import BackendUnavailable, InvalidCertificateData
from certichain.models import ActivityEntry, AnchorRecord, Certificate, STATUS_ACTIVE

logger = logging.getLogger(__name__)

db = SQLAlchemy()


def uid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


@contextmanager
def database_errors(operation):
    """Roll back and translate driver failures into BackendUnavailable.

    Integrity errors are re-raised untouched so callers can map them to
    domain errors. Values the database rejects, such as an oversized
    string, become InvalidCertificateData.
    """
    try:
        yield
    except IntegrityError:
        db.session.rollback()
        raise
    except DataError as exc:
        db.session.rollback()
        logger.warning("Database rejected values during %s: %s", operation, exc.orig)
        raise InvalidCertificateData(f"Invalid value rejected during {operation}") from exc
    except (OperationalError, PoolTimeoutError, DBAPIError) as exc:
        db.session.rollback()
        logger.error("Database unavailable during %s: %s", operation, exc)
        raise BackendUnavailable(f"Database unavailable during {operation}") from exc


class Institution(db.Model):
    __tablename__ = "institutions"

    id = db.Column(db.String(36), primary_key=True, default=uid)
    encrypted_name = db.Column(db.LargeBinary, nullable=False)
    secret_hash = db.Column(db.String(256), nullable=False)
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)


class CertificateRow(db.Model):
    __tablename__ = "certificates"

    id = db.Column(db.String(36), primary_key=True, default=uid)
    unique_id = db.Column(db.String(100), unique=True, nullable=False, index=True)

    student_name = db.Column(db.String(150), nullable=False)
    student_email = db.Column(db.String(255), nullable=False, index=True)
    course_name = db.Column(db.String(255), nullable=False)
    institution_name = db.Column(db.String(255), nullable=False)
    institution_id = db.Column(db.String(36), nullable=False, index=True)
    issue_date = db.Column(db.String(40), nullable=False)

    expiry_date = db.Column(db.String(40), nullable=True)
    grade = db.Column(db.String(50), nullable=True)
    description = db.Column(db.Text, nullable=True)
    blockchain_tx_hash = db.Column(db.String(66), nullable=True)

    status = db.Column(db.String(20), nullable=False, default=STATUS_ACTIVE)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_certificate(self):
        return Certificate(
            id=self.id,
            unique_id=self.unique_id,
            student_name=self.student_name,
            student_email=self.student_email,
            course_name=self.course_name,
            institution_name=self.institution_name,
            institution_id=self.institution_id,
            issue_date=self.issue_date,
            expiry_date=self.expiry_date,
            grade=self.grade,
            description=self.description,
            blockchain_tx_hash=self.blockchain_tx_hash,
            status=self.status,
            created_at=_iso(self.created_at) or "",
            updated_at=_iso(self.updated_at),
        )


class BlockchainAnchor(db.Model):
    __tablename__ = "blockchain_anchors"

    id = db.Column(db.String(36), primary_key=True, default=uid)
    certificate_id = db.Column(db.String(36), unique=True, nullable=False)
    unique_id = db.Column(db.String(100), unique=True, nullable=False, index=True)
    hash = db.Column(db.String(66), nullable=False)
    block_number = db.Column(db.Integer, unique=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_record(self):
        return AnchorRecord(
            certificate_id=self.certificate_id,
            unique_id=self.unique_id,
            hash=self.hash,
            block_number=self.block_number,
            created_at=_iso(self.created_at) or "",
        )


class ActivityLogEntry(db.Model):
    __tablename__ = "activity_logs"

    id = db.Column(db.String(36), primary_key=True, default=uid)
    user_id = db.Column(db.String(36), nullable=False, index=True)
    user_name = db.Column(db.String(255), nullable=False)
    action = db.Column(db.String(100), nullable=False)
    details = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(20), nullable=False)
    unique_id = db.Column(db.String(100), nullable=True, index=True)
    outcome = db.Column(db.String(40), nullable=True)
    timestamp = db.Column(db.DateTime(timezone=True), default=utcnow, index=True)

    def to_entry(self):
        return ActivityEntry(
            id=self.id,
            user_id=self.user_id,
            user_name=self.user_name,
            action=self.action,
            details=self.details,
            type=self.type,
            timestamp=_iso(self.timestamp) or "",
            unique_id=self.unique_id,
            outcome=self.outcome,
        )
