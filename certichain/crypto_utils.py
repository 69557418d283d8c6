import base64
import hashlib
import hmac
import json
import re
from datetime import date, datetime

from cryptography.fernet import Fernet
from web3 import Web3

from certichain.errors import InvalidCertificateData, InvalidIssueDate
from certichain.models import IDENTITY_FIELDS, Certificate

# snake_case field -> key used in the canonical JSON document
CANONICAL_KEYS = {
    "student_name": "studentName",
    "course_name": "courseName",
    "institution_name": "institutionName",
    "issue_date": "issueDate",
    "unique_id": "uniqueId",
}

# fromisoformat before Python 3.11 only takes 3 or 6 fractional digits
_FRACTION = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")


# ---------- ISSUE DATE ----------
def normalize_issue_date(value) -> str:
    """Reduce an issue date to ``YYYY-MM-DD``.

    The calendar date is taken as written; any time or UTC offset is dropped
    rather than converted, so the result never depends on the host timezone.
    """
    if value is None or value == "":
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", text)
    try:
        return datetime.fromisoformat(text).date().isoformat()
    except ValueError:
        raise InvalidIssueDate(f"Unrecognised issue date: {value!r}")


# ---------- HASHING ----------
def _identity_values(certificate):
    if isinstance(certificate, Certificate):
        return certificate.identity()

    values = {}
    for field, key in CANONICAL_KEYS.items():
        if field in certificate:
            values[field] = certificate[field]
        else:
            values[field] = certificate.get(key)
    return values


def canonicalize(certificate, normalize_date=True) -> str:
    values = _identity_values(certificate)
    if not values.get("unique_id"):
        raise InvalidCertificateData("Cannot hash a certificate without a unique id")

    issue_date = values["issue_date"]
    if normalize_date:
        issue_date = normalize_issue_date(issue_date)

    document = {}
    for field in IDENTITY_FIELDS:
        value = issue_date if field == "issue_date" else values[field]
        document[CANONICAL_KEYS[field]] = "" if value is None else str(value)
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False)


def keccak256_hex(data: str) -> str:
    return Web3.to_hex(Web3.keccak(text=data))


def compute_hash(certificate) -> str:
    """Keccak-256 of the canonical identity document, as ``0x``-prefixed hex."""
    return keccak256_hex(canonicalize(certificate))


def legacy_hash(certificate) -> str:
    """Hash computed from the issue date exactly as stored, without normalization.

    Older anchors were written this way; only the anchor audit uses it.
    """
    return keccak256_hex(canonicalize(certificate, normalize_date=False))


# ---------- HMAC AUTH ----------
def generate_hmac(message: str, secret: bytes) -> str:
    return hmac.new(secret, message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_hmac(message: str, signature: str, secret: bytes) -> bool:
    expected = generate_hmac(message, secret)
    return hmac.compare_digest(expected, signature)


# ---------- SYMMETRIC ENCRYPTION ----------
def get_cipher(master_key: bytes) -> Fernet:
    key = base64.urlsafe_b64encode(hashlib.sha256(master_key).digest())
    return Fernet(key)


def encrypt(text: str, cipher: Fernet) -> bytes:
    return cipher.encrypt(text.encode("utf-8"))


def decrypt(token: bytes, cipher: Fernet) -> str:
    return cipher.decrypt(token).decode("utf-8")
