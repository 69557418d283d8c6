import abc
import threading
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from certichain.database import CertificateRow, database_errors, db, utcnow
from certichain.errors import CertificateNotFound, InvalidCertificateData
from certichain.models import (
    EDITABLE_FIELDS,
    STATUSES,
    Certificate,
    utcnow_iso,
)
from certichain.storage import JsonDocumentStore

SEARCH_FIELDS = ("student_name", "student_email", "course_name", "unique_id", "institution_name")


def _check_status(status):
    if status not in STATUSES:
        raise InvalidCertificateData(f"Unknown certificate status: {status!r}")


def _check_updates(updates):
    unknown = set(updates) - set(EDITABLE_FIELDS)
    if unknown:
        raise InvalidCertificateData(f"Fields cannot be edited: {', '.join(sorted(unknown))}")


def matches_query(certificate: Certificate, query: str) -> bool:
    q = query.lower()
    return any(q in (getattr(certificate, name) or "").lower() for name in SEARCH_FIELDS)


class CertificateStore(abc.ABC):
    name = "abstract"

    @abc.abstractmethod
    def get_by_unique_id(self, unique_id: str) -> Optional[Certificate]:
        pass

    @abc.abstractmethod
    def get_by_id(self, certificate_id: str) -> Optional[Certificate]:
        pass

    @abc.abstractmethod
    def create(self, certificate: Certificate) -> Certificate:
        pass

    @abc.abstractmethod
    def update_status(self, certificate_id: str, status: str) -> Certificate:
        pass

    @abc.abstractmethod
    def update_fields(self, certificate_id: str, updates: dict) -> Certificate:
        """Apply ``updates`` without touching the certificate's anchor."""

    @abc.abstractmethod
    def delete(self, certificate_id: str) -> None:
        """Remove a certificate whose issuance could not be completed."""

    @abc.abstractmethod
    def list_certificates(self, institution_id=None, student_email=None) -> List[Certificate]:
        pass

    def search(self, query: str) -> List[Certificate]:
        return [c for c in self.list_certificates() if matches_query(c, query)]


class LocalCertificateStore(CertificateStore):
    name = "local"

    def __init__(self, store: Optional[JsonDocumentStore] = None) -> None:
        self._store = store if store is not None else JsonDocumentStore()
        self._certificates = [Certificate.from_dict(r) for r in self._store.records]
        self._lock = threading.Lock()

    def _persist(self, certificates):
        self._store.save([c.to_dict() for c in certificates])
        self._certificates = certificates

    def _find(self, certificate_id):
        for certificate in self._certificates:
            if certificate.id == certificate_id:
                return certificate
        raise CertificateNotFound(f"Certificate {certificate_id} not found")

    def _replace(self, certificate_id, **changes):
        with self._lock:
            current = self._find(certificate_id)
            updated = Certificate.from_dict({**current.to_dict(), **changes, "updated_at": utcnow_iso()})
            self._persist([updated if c.id == certificate_id else c for c in self._certificates])
        return updated

    def get_by_unique_id(self, unique_id):
        return next((c for c in self._certificates if c.unique_id == unique_id), None)

    def get_by_id(self, certificate_id):
        return next((c for c in self._certificates if c.id == certificate_id), None)

    def create(self, certificate):
        with self._lock:
            if any(c.unique_id == certificate.unique_id or c.id == certificate.id
                   for c in self._certificates):
                raise InvalidCertificateData(f"Certificate {certificate.unique_id} already exists")
            if not certificate.created_at:
                certificate.created_at = utcnow_iso()
            self._persist(self._certificates + [certificate])
        return certificate

    def update_status(self, certificate_id, status):
        _check_status(status)
        return self._replace(certificate_id, status=status)

    def update_fields(self, certificate_id, updates):
        _check_updates(updates)
        return self._replace(certificate_id, **updates)

    def delete(self, certificate_id):
        with self._lock:
            self._find(certificate_id)
            self._persist([c for c in self._certificates if c.id != certificate_id])

    def list_certificates(self, institution_id=None, student_email=None):
        result = list(self._certificates)
        if institution_id is not None:
            result = [c for c in result if c.institution_id == institution_id]
        if student_email is not None:
            email = student_email.lower()
            result = [c for c in result if c.student_email.lower() == email]
        return result


class DatabaseCertificateStore(CertificateStore):
    name = "database"

    def _row(self, certificate_id):
        row = db.session.get(CertificateRow, certificate_id)
        if row is None:
            raise CertificateNotFound(f"Certificate {certificate_id} not found")
        return row

    def get_by_unique_id(self, unique_id):
        with database_errors("certificate lookup"):
            row = CertificateRow.query.filter_by(unique_id=unique_id).first()
        return row.to_certificate() if row else None

    def get_by_id(self, certificate_id):
        with database_errors("certificate lookup"):
            row = db.session.get(CertificateRow, certificate_id)
        return row.to_certificate() if row else None

    def create(self, certificate):
        values = certificate.to_dict()
        values.pop("created_at")
        values.pop("updated_at")
        row = CertificateRow(**values)
        with database_errors("certificate insert"):
            db.session.add(row)
            try:
                db.session.commit()
            except IntegrityError as exc:
                db.session.rollback()
                raise InvalidCertificateData(
                    f"Certificate {certificate.unique_id} already exists"
                ) from exc
        return row.to_certificate()

    def update_status(self, certificate_id, status):
        _check_status(status)
        with database_errors("certificate status update"):
            row = self._row(certificate_id)
            row.status = status
            row.updated_at = utcnow()
            db.session.commit()
        return row.to_certificate()

    def update_fields(self, certificate_id, updates):
        _check_updates(updates)
        with database_errors("certificate update"):
            row = self._row(certificate_id)
            for name, value in updates.items():
                setattr(row, name, value)
            row.updated_at = utcnow()
            db.session.commit()
        return row.to_certificate()

    def delete(self, certificate_id):
        with database_errors("certificate delete"):
            db.session.delete(self._row(certificate_id))
            db.session.commit()

    def list_certificates(self, institution_id=None, student_email=None):
        with database_errors("certificate listing"):
            query = CertificateRow.query
            if institution_id is not None:
                query = query.filter_by(institution_id=institution_id)
            if student_email is not None:
                query = query.filter(db.func.lower(CertificateRow.student_email) == student_email.lower())
            rows = query.order_by(CertificateRow.created_at.desc()).all()
        return [row.to_certificate() for row in rows]
