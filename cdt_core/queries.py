"""
Query and Stats Module

Read side of the engine: filtered and paginated listings, per-user and admin
views, the review queue, aggregate statistics and audit trail access.

Reads go through the cache (cache-aside). Cached values are JSON projections
and every result is rebuilt from its projection, so a cold cache returns
exactly what a warm one does.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from .audit import AuditLog, AuditLogEntry
from .cache import CacheBackend, CacheKeys, fail_safe
from .certificates import (
    ActorRole, Certificate, CertificateStatus, ListFilters, Page, as_role, as_status
)
from .errors import NotFoundError, PermissionDeniedError, PreconditionFailedError
from .logging_config import get_logger
from .repository import CertificateRepository


def _status(value: Union[CertificateStatus, str]) -> CertificateStatus:
    try:
        return as_status(value)
    except ValueError:
        raise PreconditionFailedError(f"Unknown status '{value}'")


def _is_admin(role: Union[ActorRole, str]) -> bool:
    try:
        return as_role(role) == ActorRole.ADMIN
    except ValueError:
        raise PermissionDeniedError(f"Unknown role '{role}'")


@dataclass
class CacheTtl:
    """Time-to-live in seconds per kind of cached read"""
    certificate: int = 600
    listing: int = 300
    pending: int = 60
    stats: int = 120

    @classmethod
    def from_config(cls, config) -> 'CacheTtl':
        return cls(
            certificate=config.cache_ttl_certificate_seconds,
            listing=config.cache_ttl_list_seconds,
            pending=config.cache_ttl_pending_seconds,
            stats=config.cache_ttl_stats_seconds,
        )


@dataclass
class AdminStats:
    """Portfolio summary; money totals cover active certificates only"""
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    total_invested: Decimal = Decimal('0')
    total_estimated_return: Decimal = Decimal('0')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'by_status': dict(self.by_status),
            'total_invested': str(self.total_invested),
            'total_estimated_return': str(self.total_estimated_return),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AdminStats':
        return cls(
            total=data['total'],
            by_status=dict(data['by_status']),
            total_invested=Decimal(data['total_invested']),
            total_estimated_return=Decimal(data['total_estimated_return']),
        )


class CertificateQueries:
    """Cache-backed read operations over certificates"""

    def __init__(self, repository: CertificateRepository, audit_log: AuditLog,
                 cache: CacheBackend, ttl: Optional[CacheTtl] = None,
                 default_page_size: int = 20):
        self.repository = repository
        self.audit_log = audit_log
        self.cache = fail_safe(cache)
        self.ttl = ttl or CacheTtl()
        self.default_page_size = default_page_size
        self.logger = get_logger("cdt_core.queries")

    def _cached(self, key: str, ttl: int, compute: Callable[[], Any]) -> Any:
        value = self.cache.get(key)
        if value is not None:
            return value

        # Read before compute(): a write committed meanwhile bumps it and the fill is dropped
        generation = self.cache.generation()
        value = compute()
        if value is not None and generation is not None:
            self.cache.set_if_generation(key, value, generation, ttl)
        return value

    def _list(self, key: str, filters: ListFilters) -> List[Certificate]:
        rows = self._cached(
            key, self.ttl.listing,
            lambda: [c.to_dict() for c in self.repository.query(filters)]
        )
        return [Certificate.from_dict(row) for row in rows]

    def _page(self, key: str, filters: ListFilters) -> Page:
        def compute():
            return Page(
                items=self.repository.query(filters),
                total=self.repository.count(filters),
                limit=filters.limit,
                offset=filters.offset
            ).to_dict()

        return Page.from_dict(self._cached(key, self.ttl.listing, compute))

    # Listings

    def find_all(self, filters: Optional[ListFilters] = None) -> List[Certificate]:
        """Certificates matching the filters, newest first"""
        filters = filters or ListFilters(limit=self.default_page_size)
        return self._list(CacheKeys.all_list(filters), filters)

    def find_by_user_id(self, user_id: str, filters: Optional[ListFilters] = None) -> List[Certificate]:
        """One user's certificates matching the filters, newest first"""
        filters = replace(filters or ListFilters(limit=self.default_page_size), user_id=user_id)
        return self._list(CacheKeys.user_list(user_id, filters), filters)

    def find_by_status(self, status: Union[CertificateStatus, str],
                       user_id: Optional[str] = None) -> List[Certificate]:
        """Every certificate in a status, optionally for one user"""
        filters = ListFilters(status=_status(status), limit=None)
        if user_id:
            return self.find_by_user_id(user_id, filters)
        return self.find_all(filters)

    def count(self, filters: Optional[ListFilters] = None) -> int:
        """Total matches for the filters; limit and offset are ignored"""
        filters = (filters or ListFilters()).without_paging()
        return self._cached(
            CacheKeys.all_count(filters), self.ttl.listing,
            lambda: self.repository.count(filters)
        )

    def list_page(self, filters: Optional[ListFilters] = None) -> Page:
        """One page of results plus pagination metadata"""
        filters = filters or ListFilters(limit=self.default_page_size)
        return self._page(CacheKeys.all_page(filters), filters)

    # Views

    def get_certificate(self, cdt_id: str, user_id: str,
                        role: Union[ActorRole, str] = ActorRole.USER) -> Certificate:
        """
        Single certificate, visible to its owner and to administrators

        Args:
            cdt_id: Certificate id
            user_id: Requesting user
            role: Role of the requesting user

        Returns:
            Certificate
        """
        def compute():
            certificate = self.repository.get(cdt_id)
            return certificate.to_dict() if certificate else None

        data = self._cached(CacheKeys.certificate(cdt_id), self.ttl.certificate, compute)
        if data is None:
            raise NotFoundError(f"Certificate {cdt_id} not found", cdt_id)

        certificate = Certificate.from_dict(data)
        if not _is_admin(role) and not certificate.is_owned_by(user_id):
            raise PermissionDeniedError("You do not have access to this certificate", cdt_id)
        return certificate

    def get_user_certificates(self, user_id: str, page: int = 1, limit: Optional[int] = None,
                              status: Optional[Union[CertificateStatus, str]] = None) -> Page:
        """A page of one user's certificates, newest first"""
        limit = limit or self.default_page_size
        if page < 1:
            raise PreconditionFailedError("page must be 1 or greater")
        status = _status(status) if status else None

        filters = ListFilters(status=status, user_id=user_id, limit=limit,
                              offset=(page - 1) * limit)
        return self._page(CacheKeys.user_page(user_id, status, page, limit), filters)

    def get_all_for_admin(self, filters: Optional[ListFilters] = None) -> Page:
        """Every user's certificates, paginated"""
        return self.list_page(filters)

    def get_pending(self) -> List[Certificate]:
        """Review queue: pending certificates, oldest submission first"""
        def compute():
            pending = self.repository.find_by_status(
                [CertificateStatus.PENDING], order_by='submitted_at'
            )
            return [c.to_dict() for c in pending]

        rows = self._cached(CacheKeys.PENDING, self.ttl.pending, compute)
        return [Certificate.from_dict(row) for row in rows]

    def get_admin_stats(self) -> AdminStats:
        """Per-status counts plus invested and expected return over active certificates"""
        def compute():
            stats = AdminStats(total=self.repository.count())
            for status in CertificateStatus:
                stats.by_status[status.value] = self.repository.count(ListFilters(status=status))
            for certificate in self.repository.find_by_status([CertificateStatus.ACTIVE]):
                stats.total_invested += certificate.amount
                stats.total_estimated_return += certificate.estimated_return
            return stats.to_dict()

        return AdminStats.from_dict(self._cached(CacheKeys.ADMIN_STATS, self.ttl.stats, compute))

    def get_audit_log(self, cdt_id: str, user_id: str,
                      role: Union[ActorRole, str] = ActorRole.USER,
                      newest_first: bool = False) -> List[AuditLogEntry]:
        """
        Audit trail of a certificate for its owner or an administrator.

        Trails outlive deleted certificates; those remain visible to
        administrators only.
        """
        is_admin = _is_admin(role)
        certificate = self.repository.get(cdt_id)

        if certificate is None:
            if not is_admin:
                raise NotFoundError(f"Certificate {cdt_id} not found", cdt_id)
            entries = self.audit_log.list_by_certificate(cdt_id, newest_first=newest_first)
            if not entries:
                raise NotFoundError(f"Certificate {cdt_id} not found", cdt_id)
            return entries

        if not is_admin and not certificate.is_owned_by(user_id):
            raise PermissionDeniedError(
                "You do not have access to this certificate's audit log", cdt_id
            )
        return self.audit_log.list_by_certificate(cdt_id, newest_first=newest_first)
