"""
Certificate Repository Module

Typed access to stored certificates: get, insert, conditional update,
filtered queries, counts and the unit-of-work primitive shared with the
audit log.
"""

from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .certificates import Certificate, CertificateStatus, ListFilters
from .storage import StorageInterface


def to_stored(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


class CertificateRepository:
    """Certificate persistence on top of a StorageInterface"""

    def __init__(self, storage: StorageInterface, table_name: str = "cdts"):
        self.storage = storage
        self.table_name = table_name

    @contextmanager
    def transaction(self):
        with self.storage.atomic():
            yield

    def get(self, cdt_id: str) -> Optional[Certificate]:
        data = self.storage.load(self.table_name, cdt_id)
        if data:
            return Certificate.from_dict(data)
        return None

    def insert(self, certificate: Certificate) -> None:
        self.storage.insert(self.table_name, certificate.id, certificate.to_dict())

    def update_where(self, cdt_id: str, expected_status: CertificateStatus,
                     patch: Dict[str, Any]) -> int:
        """
        Apply patch only while the certificate is still in expected_status.

        Returns:
            Rows affected; 0 means the certificate is gone or moved on
        """
        stored_patch = {key: to_stored(value) for key, value in patch.items()}
        stored_patch['updated_at'] = to_stored(
            patch.get('updated_at') or datetime.now(timezone.utc)
        )
        return self.storage.update_where(
            self.table_name, cdt_id, {'status': expected_status.value}, stored_patch
        )

    def delete_where(self, cdt_id: str, expected_status: CertificateStatus) -> bool:
        return self.storage.delete(
            self.table_name, cdt_id, {'status': expected_status.value}
        )

    def query(self, filters: ListFilters) -> List[Certificate]:
        rows = self.storage.find(
            self.table_name,
            filters.to_storage_filters(),
            order_by='created_at',
            descending=True,
            limit=filters.limit,
            offset=filters.offset
        )
        return [Certificate.from_dict(row) for row in rows]

    def count(self, filters: Optional[ListFilters] = None) -> int:
        storage_filters = filters.to_storage_filters() if filters else {}
        return self.storage.count(self.table_name, storage_filters)

    def find_by_status(self, statuses: Iterable[CertificateStatus],
                       order_by: str = 'created_at') -> List[Certificate]:
        """All certificates in any of the given statuses, oldest first by order_by"""
        certificates = []
        for status in statuses:
            rows = self.storage.find(self.table_name, {'status': status.value})
            certificates.extend(Certificate.from_dict(row) for row in rows)
        certificates.sort(key=lambda c: (getattr(c, order_by) or c.created_at, c.id))
        return certificates
