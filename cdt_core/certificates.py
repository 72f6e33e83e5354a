"""
Certificate Module

The fixed-term deposit certificate (CDT) record, its status and renovation
enums, the generic status transition table, the creation rules and the list
filter and page types shared by the lifecycle and query components.
"""

from decimal import Decimal
from datetime import datetime, date, timedelta
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional, Union
from enum import Enum
import math

from .errors import PreconditionFailedError
from .interest import to_decimal
from .storage import StorageRecord


class CertificateStatus(Enum):
    """Certificate lifecycle states"""
    DRAFT = "draft"            # Being prepared by the owner
    PENDING = "pending"        # Submitted, waiting for admin review
    ACTIVE = "active"          # Approved, accruing interest
    REJECTED = "rejected"      # Review refused (terminal)
    COMPLETED = "completed"    # Matured and settled (terminal)
    CANCELLED = "cancelled"    # Withdrawn before maturity (terminal)

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self]


class RenovationOption(Enum):
    """What happens to the funds at maturity"""
    NONE = "none"
    CAPITAL = "capital"
    CAPITAL_INTEREST = "capital_interest"


class ActorRole(Enum):
    """Roles relevant to certificate operations"""
    USER = "user"
    ADMIN = "admin"


TRANSITIONS: Dict[CertificateStatus, FrozenSet[CertificateStatus]] = {
    CertificateStatus.DRAFT: frozenset({CertificateStatus.PENDING, CertificateStatus.CANCELLED}),
    CertificateStatus.PENDING: frozenset({
        CertificateStatus.ACTIVE, CertificateStatus.REJECTED, CertificateStatus.CANCELLED
    }),
    CertificateStatus.ACTIVE: frozenset({CertificateStatus.COMPLETED, CertificateStatus.CANCELLED}),
    CertificateStatus.REJECTED: frozenset(),
    CertificateStatus.COMPLETED: frozenset(),
    CertificateStatus.CANCELLED: frozenset(),
}


def as_status(value: Union[CertificateStatus, str]) -> CertificateStatus:
    return value if isinstance(value, CertificateStatus) else CertificateStatus(value)


def as_role(value: Union[ActorRole, str]) -> ActorRole:
    return value if isinstance(value, ActorRole) else ActorRole(value)


def validate_transition(current: Union[CertificateStatus, str],
                        new: Union[CertificateStatus, str]) -> bool:
    """Check a status change against the generic transition table"""
    try:
        current, new = as_status(current), as_status(new)
    except ValueError:
        return False
    return new in TRANSITIONS[current]


def allowed_transitions(status: Union[CertificateStatus, str]) -> FrozenSet[CertificateStatus]:
    return TRANSITIONS[as_status(status)]


def _parse_datetime(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _parse_date(value: Optional[Union[str, date]]) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


@dataclass
class Certificate(StorageRecord):
    """
    Fixed-term deposit certificate.

    The principal, rate and term are fixed once the certificate leaves draft;
    status only changes through the lifecycle engine.
    """
    user_id: str
    amount: Decimal
    term_days: int
    interest_rate: Decimal          # Annual percentage (e.g. 8.5 for 8.5%)
    start_date: date
    end_date: date
    estimated_return: Decimal
    status: CertificateStatus = CertificateStatus.DRAFT
    renovation_option: RenovationOption = RenovationOption.CAPITAL
    submitted_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    admin_notes: Optional[str] = None

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        self.interest_rate = to_decimal(self.interest_rate)
        self.estimated_return = to_decimal(self.estimated_return)

        if self.amount <= Decimal('0'):
            raise ValueError("Certificate amount must be positive")
        if self.term_days <= 0:
            raise ValueError("Certificate term must be positive")

    @property
    def final_amount(self) -> Decimal:
        """Amount paid out at maturity"""
        return self.amount + self.estimated_return

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_owned_by(self, user_id: str) -> bool:
        return self.user_id == user_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'amount': str(self.amount),
            'term_days': self.term_days,
            'interest_rate': str(self.interest_rate),
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'estimated_return': str(self.estimated_return),
            'status': self.status.value,
            'renovation_option': self.renovation_option.value,
            'submitted_at': self.submitted_at.isoformat() if self.submitted_at else None,
            'reviewed_by': self.reviewed_by,
            'reviewed_at': self.reviewed_at.isoformat() if self.reviewed_at else None,
            'admin_notes': self.admin_notes,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Certificate':
        return cls(
            id=data['id'],
            created_at=_parse_datetime(data['created_at']),
            updated_at=_parse_datetime(data['updated_at']),
            user_id=data['user_id'],
            amount=Decimal(str(data['amount'])),
            term_days=int(data['term_days']),
            interest_rate=Decimal(str(data['interest_rate'])),
            start_date=_parse_date(data['start_date']),
            end_date=_parse_date(data['end_date']),
            estimated_return=Decimal(str(data['estimated_return'])),
            status=CertificateStatus(data.get('status', CertificateStatus.DRAFT.value)),
            renovation_option=RenovationOption(
                data.get('renovation_option') or RenovationOption.CAPITAL.value
            ),
            submitted_at=_parse_datetime(data.get('submitted_at')),
            reviewed_by=data.get('reviewed_by'),
            reviewed_at=_parse_datetime(data.get('reviewed_at')),
            admin_notes=data.get('admin_notes'),
        )


@dataclass
class CertificateRules:
    """Limits a new or edited draft must satisfy"""
    min_amount: Decimal = Decimal('500000')
    max_amount: Decimal = Decimal('500000000')
    min_term_days: int = 30
    max_term_days: int = 730
    min_interest_rate: Decimal = Decimal('0.5')
    max_interest_rate: Decimal = Decimal('9.5')
    days_per_month: int = 30
    max_start_offset_days: int = 30

    @classmethod
    def from_config(cls, config) -> 'CertificateRules':
        return cls(
            min_amount=config.min_amount,
            max_amount=config.max_amount,
            min_term_days=config.min_term_days,
            max_term_days=config.max_term_days,
            min_interest_rate=config.min_interest_rate,
            max_interest_rate=config.max_interest_rate,
            days_per_month=config.days_per_month,
            max_start_offset_days=config.max_start_offset_days,
        )

    def validate(self, amount: Decimal, term_days: int, interest_rate: Decimal,
                 start_date: date, today: Optional[date]) -> None:
        """
        Raise PreconditionFailedError on the first violated rule.

        today=None skips the start date window, for edits that keep the
        original start date.
        """
        if amount <= Decimal('0'):
            raise PreconditionFailedError("Amount must be positive")
        if term_days <= 0:
            raise PreconditionFailedError("Term must be positive")
        if interest_rate <= Decimal('0'):
            raise PreconditionFailedError("Interest rate must be positive")

        if amount < self.min_amount:
            raise PreconditionFailedError(f"Minimum amount is {self.min_amount}")
        if amount > self.max_amount:
            raise PreconditionFailedError(f"Maximum amount is {self.max_amount}")
        if term_days < self.min_term_days:
            raise PreconditionFailedError(f"Minimum term is {self.min_term_days} days")
        if term_days > self.max_term_days:
            raise PreconditionFailedError(f"Maximum term is {self.max_term_days} days")
        if interest_rate < self.min_interest_rate:
            raise PreconditionFailedError(f"Minimum interest rate is {self.min_interest_rate}%")
        if interest_rate > self.max_interest_rate:
            raise PreconditionFailedError(f"Maximum interest rate is {self.max_interest_rate}%")

        if today is None:
            return
        if start_date < today:
            raise PreconditionFailedError("Start date cannot be in the past")
        if start_date > today + timedelta(days=self.max_start_offset_days):
            raise PreconditionFailedError(
                f"Start date cannot be more than {self.max_start_offset_days} days ahead"
            )


@dataclass(frozen=True)
class ListFilters:
    """
    Filters for certificate listings.

    status and user_id narrow the result; limit=None returns every match.
    Results are ordered newest first.
    """
    status: Optional[CertificateStatus] = None
    user_id: Optional[str] = None
    limit: Optional[int] = 20
    offset: int = 0

    def __post_init__(self):
        if self.status is not None and not isinstance(self.status, CertificateStatus):
            try:
                object.__setattr__(self, 'status', CertificateStatus(self.status))
            except ValueError:
                raise PreconditionFailedError(f"Unknown status '{self.status}'")
        if self.limit is not None and self.limit <= 0:
            raise PreconditionFailedError("limit must be positive")
        if self.offset < 0:
            raise PreconditionFailedError("offset cannot be negative")

    def without_paging(self) -> 'ListFilters':
        return replace(self, limit=None, offset=0)

    def to_storage_filters(self) -> Dict[str, Any]:
        filters = {}
        if self.status is not None:
            filters['status'] = self.status.value
        if self.user_id is not None:
            filters['user_id'] = self.user_id
        return filters

    def cache_fragment(self) -> str:
        status = self.status.value if self.status else 'all'
        user = self.user_id or 'all'
        limit = self.limit if self.limit is not None else 'all'
        return f"status:{status}:user:{user}:limit:{limit}:offset:{self.offset}"


@dataclass
class Page:
    """One page of certificates plus pagination metadata"""
    items: List[Certificate] = field(default_factory=list)
    total: int = 0
    limit: Optional[int] = None
    offset: int = 0

    @property
    def page(self) -> int:
        if not self.limit:
            return 1
        return self.offset // self.limit + 1

    @property
    def total_pages(self) -> int:
        if not self.limit:
            return 1 if self.total else 0
        return math.ceil(self.total / self.limit)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'items': [item.to_dict() for item in self.items],
            'pagination': {
                'total': self.total,
                'page': self.page,
                'limit': self.limit,
                'offset': self.offset,
                'total_pages': self.total_pages,
            }
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Page':
        pagination = data['pagination']
        return cls(
            items=[Certificate.from_dict(item) for item in data['items']],
            total=pagination['total'],
            limit=pagination['limit'],
            offset=pagination['offset'],
        )
