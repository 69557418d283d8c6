"""Simulated blockchain: an append-only list of certificate hashes.

Each anchor gets a block number equal to the number of anchors already
stored plus one. There is no hash chaining between blocks.
"""

import abc
import logging
import secrets
import string
import threading
import time
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from certichain.database import BlockchainAnchor, database_errors, db
from certichain.errors import BackendUnavailable, DuplicateAnchorError
from certichain.models import AnchorReceipt, AnchorRecord, utcnow_iso
from certichain.storage import JsonLinesLog

logger = logging.getLogger(__name__)

# attempts at a free block number when concurrent writers collide
BLOCK_NUMBER_ATTEMPTS = 5

BASE36 = string.digits + string.ascii_uppercase


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(BASE36[rem])
    return "".join(reversed(digits))


def generate_unique_id() -> str:
    timestamp = to_base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(BASE36) for _ in range(6))
    return f"CERT-{timestamp}-{random_part}"


def normalize_unique_id(unique_id) -> str:
    return (unique_id or "").strip().upper()


def get_verification_url(base_url: str, unique_id: str) -> str:
    return f"{base_url.rstrip('/')}/api/verify/{unique_id}"


class AnchorStore(abc.ABC):
    """Where certificate hashes are anchored at issuance."""

    name = "abstract"

    @abc.abstractmethod
    def append_anchor(self, certificate_id: str, unique_id: str, cert_hash: str) -> AnchorReceipt:
        """Store the hash for a certificate and return its block number.

        Raises DuplicateAnchorError if the certificate is already anchored.
        """

    @abc.abstractmethod
    def get_anchor(self, unique_id: str) -> Optional[AnchorRecord]:
        """Return the anchor for ``unique_id``, or None."""

    @abc.abstractmethod
    def count(self) -> int:
        pass

    @abc.abstractmethod
    def list_anchors(self) -> List[AnchorRecord]:
        pass


class LocalAnchorStore(AnchorStore):
    """Anchors kept in an append-only JSONL file.

    Lookups scan the whole list, which is fine for a single-institution
    deployment but not for large volumes; use the database backend there.
    """

    name = "local"

    def __init__(self, log: Optional[JsonLinesLog] = None) -> None:
        self._log = log if log is not None else JsonLinesLog()
        self._lock = threading.Lock()

    def append_anchor(self, certificate_id, unique_id, cert_hash):
        with self._lock:
            for record in self._log.records:
                if record["certificate_id"] == certificate_id or record["unique_id"] == unique_id:
                    raise DuplicateAnchorError(f"Blockchain: certificate {unique_id} already anchored")

            block_number = len(self._log) + 1
            self._log.append({
                "certificate_id": certificate_id,
                "unique_id": unique_id,
                "hash": cert_hash,
                "block_number": block_number,
                "created_at": utcnow_iso(),
            })
        logger.info("Anchored %s in local block %d", unique_id, block_number)
        return AnchorReceipt(hash=cert_hash, block_number=block_number)

    def get_anchor(self, unique_id):
        for record in self._log.records:
            if record["unique_id"] == unique_id:
                return AnchorRecord(**record)
        return None

    def count(self):
        return len(self._log)

    def list_anchors(self):
        return [AnchorRecord(**record) for record in self._log.records]


class DatabaseAnchorStore(AnchorStore):
    """Anchors in the ``blockchain_anchors`` table, looked up by indexed unique_id."""

    name = "database"

    def _next_block_number(self) -> int:
        return (db.session.query(func.max(BlockchainAnchor.block_number)).scalar() or 0) + 1

    def _already_anchored(self, certificate_id, unique_id) -> bool:
        return BlockchainAnchor.query.filter(
            (BlockchainAnchor.certificate_id == certificate_id)
            | (BlockchainAnchor.unique_id == unique_id)
        ).first() is not None

    def append_anchor(self, certificate_id, unique_id, cert_hash):
        with database_errors("anchor write"):
            for _ in range(BLOCK_NUMBER_ATTEMPTS):
                block_number = self._next_block_number()
                db.session.add(BlockchainAnchor(
                    certificate_id=certificate_id,
                    unique_id=unique_id,
                    hash=cert_hash,
                    block_number=block_number,
                ))
                try:
                    db.session.commit()
                except IntegrityError as exc:
                    db.session.rollback()
                    if self._already_anchored(certificate_id, unique_id):
                        raise DuplicateAnchorError(
                            f"Blockchain: certificate {unique_id} already anchored"
                        ) from exc
                    # another writer took this block number
                    logger.info("Block %d taken, retrying anchor for %s", block_number, unique_id)
                    continue
                logger.info("Anchored %s in block %d", unique_id, block_number)
                return AnchorReceipt(hash=cert_hash, block_number=block_number)

        raise BackendUnavailable(
            f"Blockchain: no free block number for {unique_id} after {BLOCK_NUMBER_ATTEMPTS} attempts"
        )

    def get_anchor(self, unique_id):
        with database_errors("anchor lookup"):
            anchor = BlockchainAnchor.query.filter_by(unique_id=unique_id).first()
        return anchor.to_record() if anchor else None

    def count(self):
        with database_errors("anchor count"):
            return db.session.query(func.count(BlockchainAnchor.id)).scalar()

    def list_anchors(self):
        with database_errors("anchor listing"):
            anchors = BlockchainAnchor.query.order_by(BlockchainAnchor.block_number).all()
        return [anchor.to_record() for anchor in anchors]
