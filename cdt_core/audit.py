"""
Audit Log Module

Append-only, hash-chained record of every lifecycle action taken on a
certificate. Each certificate has its own SHA-256 chain so tampering with any
entry of its trail is detectable.

Entries are written through the same storage as the certificates, so an
append made inside a storage transaction commits or rolls back together with
the state change that triggered it.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .certificates import ActorRole, CertificateStatus
from .storage import StorageInterface, StorageRecord


class AuditAction(Enum):
    """Lifecycle actions recorded in the audit log"""
    CREATED = "created"
    UPDATED = "updated"
    SUBMITTED_FOR_REVIEW = "submitted_for_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    STATUS_CHANGED = "status_changed"
    DELETED = "deleted"


class AuditDetails(BaseModel):
    """
    Base payload. Readers accept both snake_case and camelCase keys and
    ignore unknown ones, so entries written by older versions stay readable.
    """
    model_config = ConfigDict(
        extra='ignore',
        populate_by_name=True,
        alias_generator=to_camel,
        frozen=True,
    )

    schema_version: int = 1

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')


class CreatedDetails(AuditDetails):
    user_id: str
    amount: Decimal
    term_days: int
    interest_rate: Decimal
    new_status: CertificateStatus = CertificateStatus.DRAFT


class UpdatedDetails(AuditDetails):
    user_id: str
    changes: Dict[str, Any]


class SubmittedDetails(AuditDetails):
    user_id: str
    previous_status: CertificateStatus
    new_status: CertificateStatus = CertificateStatus.PENDING


class ApprovedDetails(AuditDetails):
    admin_id: str
    admin_notes: Optional[str] = None
    previous_status: CertificateStatus = CertificateStatus.PENDING
    new_status: CertificateStatus = CertificateStatus.ACTIVE


class RejectedDetails(AuditDetails):
    admin_id: str
    reason: str
    previous_status: CertificateStatus = CertificateStatus.PENDING
    new_status: CertificateStatus = CertificateStatus.REJECTED


class CancelledDetails(AuditDetails):
    actor_id: str
    actor_role: ActorRole
    reason: str
    previous_status: CertificateStatus
    new_status: CertificateStatus = CertificateStatus.CANCELLED


class CompletedDetails(AuditDetails):
    final_amount: Decimal
    previous_status: CertificateStatus = CertificateStatus.ACTIVE
    new_status: CertificateStatus = CertificateStatus.COMPLETED


class StatusChangedDetails(AuditDetails):
    actor_id: str
    actor_role: ActorRole
    previous_status: CertificateStatus
    new_status: CertificateStatus
    reason: Optional[str] = None


class DeletedDetails(AuditDetails):
    actor_id: str
    actor_role: ActorRole
    previous_status: CertificateStatus


class RawDetails(AuditDetails):
    """Fallback view of a payload that no longer matches its schema"""
    schema_version: int = 0
    payload: Dict[str, Any]


DETAILS_BY_ACTION: Dict[AuditAction, Type[AuditDetails]] = {
    AuditAction.CREATED: CreatedDetails,
    AuditAction.UPDATED: UpdatedDetails,
    AuditAction.SUBMITTED_FOR_REVIEW: SubmittedDetails,
    AuditAction.APPROVED: ApprovedDetails,
    AuditAction.REJECTED: RejectedDetails,
    AuditAction.CANCELLED: CancelledDetails,
    AuditAction.COMPLETED: CompletedDetails,
    AuditAction.STATUS_CHANGED: StatusChangedDetails,
    AuditAction.DELETED: DeletedDetails,
}


def parse_details(action: AuditAction, data: Dict[str, Any]) -> AuditDetails:
    """Typed view of a stored payload; never fails on legacy data"""
    model = DETAILS_BY_ACTION.get(action)
    if model is not None:
        try:
            return model.model_validate(data)
        except ValidationError:
            pass
    return RawDetails(payload=dict(data))


@dataclass
class AuditLogEntry(StorageRecord):
    """
    Immutable audit entry with hash chaining for tamper detection.

    details holds the payload exactly as stored; payload gives the typed view.
    """
    cdt_id: str
    sequence: int               # 1-based position in the certificate's trail
    action: AuditAction
    details: Dict[str, Any]
    previous_hash: str
    current_hash: str

    @property
    def payload(self) -> AuditDetails:
        return parse_details(self.action, self.details)

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'cdt_id': self.cdt_id,
            'sequence': self.sequence,
            'action': self.action.value,
            'details': self.details,
            'previous_hash': self.previous_hash,
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['action'] = self.action.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditLogEntry':
        data = dict(data)
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['action'], str):
            data['action'] = AuditAction(data['action'])

        return cls(**data)


class AuditLog:
    """
    Append-only audit log keyed by certificate id.

    There is no update or delete path: entries are retained indefinitely,
    including after the certificate itself has been deleted.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "cdt_audit_logs"):
        self.storage = storage
        self.table_name = table_name

    def _last_entry(self, cdt_id: str) -> Optional[AuditLogEntry]:
        rows = self.storage.find(
            self.table_name, {'cdt_id': cdt_id},
            order_by='sequence', descending=True, limit=1
        )
        return AuditLogEntry.from_dict(rows[0]) if rows else None

    def append(self, cdt_id: str, action: AuditAction, details: AuditDetails) -> AuditLogEntry:
        """
        Append one entry to a certificate's trail.

        Runs in the caller's transaction when there is one. Storage failures
        propagate: an action that cannot be audited must not happen.

        Args:
            cdt_id: Certificate the action was taken on
            action: What happened
            details: Typed payload for the action

        Returns:
            Created AuditLogEntry
        """
        expected = DETAILS_BY_ACTION[action]
        if not isinstance(details, expected):
            raise TypeError(
                f"{action.value} entries take {expected.__name__}, got {type(details).__name__}"
            )

        with self.storage.atomic():
            previous = self._last_entry(cdt_id)
            now = datetime.now(timezone.utc)

            entry = AuditLogEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                cdt_id=cdt_id,
                sequence=previous.sequence + 1 if previous else 1,
                action=action,
                details=details.to_storage(),
                previous_hash=previous.current_hash if previous else "",
                current_hash="",
            )
            entry.current_hash = entry.calculate_hash()

            self.storage.insert(self.table_name, entry.id, entry.to_dict())

        return entry

    def list_by_certificate(self, cdt_id: str, newest_first: bool = False) -> List[AuditLogEntry]:
        """
        All entries of a certificate's trail.

        Args:
            cdt_id: Certificate id
            newest_first: Reverse chronological order when True

        Returns:
            Entries ordered by their position in the trail
        """
        rows = self.storage.find(
            self.table_name, {'cdt_id': cdt_id},
            order_by='sequence', descending=newest_first
        )
        return [AuditLogEntry.from_dict(row) for row in rows]

    def get_entry(self, entry_id: str) -> Optional[AuditLogEntry]:
        data = self.storage.load(self.table_name, entry_id)
        if data:
            return AuditLogEntry.from_dict(data)
        return None

    def count_entries(self, cdt_id: Optional[str] = None) -> int:
        filters = {'cdt_id': cdt_id} if cdt_id else None
        return self.storage.count(self.table_name, filters)

    def verify_integrity(self, cdt_id: str) -> Dict[str, Any]:
        """
        Verify the hash chain of one certificate's trail

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        entries = self.list_by_certificate(cdt_id)
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash or entry.sequence != position + 1:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result
