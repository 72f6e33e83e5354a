"""
Lifecycle State Machine Module

Drives a certificate from draft to settlement. Every state change is a
conditional write (update where id = ? and status = expected) executed in one
storage transaction together with its audit entry; cache invalidation follows
the commit and happens before the operation returns.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .audit import (
    AuditAction, AuditDetails, AuditLog, ApprovedDetails, CancelledDetails,
    CompletedDetails, CreatedDetails, DeletedDetails, RejectedDetails,
    StatusChangedDetails, SubmittedDetails, UpdatedDetails
)
from .cache import CacheBackend, fail_safe, invalidate_certificate
from .certificates import (
    ActorRole, Certificate, CertificateRules, CertificateStatus, RenovationOption,
    as_role, as_status, validate_transition
)
from .errors import (
    CertificateError, ConflictError, InvalidTransitionError, NotFoundError,
    PermissionDeniedError, PreconditionFailedError
)
from .interest import (
    Number, calculate_end_date, calculate_return, months_to_days, to_decimal
)
from .logging_config import get_logger, log_action
from .repository import CertificateRepository, to_stored


EDITABLE_FIELDS = frozenset({
    'amount', 'term_days', 'interest_rate', 'start_date', 'renovation_option'
})

# Generic status changes only an admin may make
ADMIN_ONLY_TARGETS = frozenset({
    CertificateStatus.ACTIVE, CertificateStatus.REJECTED, CertificateStatus.COMPLETED
})

CANCELLABLE_STATUSES = frozenset({CertificateStatus.PENDING, CertificateStatus.ACTIVE})
DELETABLE_STATUSES = frozenset({CertificateStatus.DRAFT, CertificateStatus.CANCELLED})


def _decimal(value: Number, field_name: str) -> Decimal:
    try:
        number = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise PreconditionFailedError(f"{field_name} must be a number")
    if not number.is_finite():
        raise PreconditionFailedError(f"{field_name} must be a finite number")
    return number


def _whole_number(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise PreconditionFailedError(f"{field_name} must be a whole number")
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        raise PreconditionFailedError(f"{field_name} must be a whole number")
    if number != value and str(number) != str(value):
        raise PreconditionFailedError(f"{field_name} must be a whole number")
    return number


def _date(value: Union[date, str], field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise PreconditionFailedError(f"{field_name} must be an ISO date (YYYY-MM-DD)")


def _renovation(value: Union[RenovationOption, str]) -> RenovationOption:
    try:
        return value if isinstance(value, RenovationOption) else RenovationOption(value)
    except ValueError:
        raise PreconditionFailedError(f"Unknown renovation option '{value}'")


def _role(value: Union[ActorRole, str]) -> ActorRole:
    try:
        return as_role(value)
    except ValueError:
        raise PermissionDeniedError(f"Unknown role '{value}'")


def _reason(reason: Optional[str], message: str) -> str:
    if reason is None or not str(reason).strip():
        raise PreconditionFailedError(message)
    return str(reason).strip()


class CertificateLifecycle:
    """
    Certificate state machine.

    Dedicated operations (submit_for_review, approve, reject, cancel,
    complete) add role and field rules on top of the generic transition
    table; change_status is the free-form path driven by the table alone.
    """

    def __init__(self, repository: CertificateRepository, audit_log: AuditLog,
                 cache: CacheBackend, rules: Optional[CertificateRules] = None,
                 today: Callable[[], date] = date.today):
        self.repository = repository
        self.audit_log = audit_log
        self.cache = fail_safe(cache)
        self.rules = rules or CertificateRules()
        self._today = today
        self.logger = get_logger("cdt_core.lifecycle")

    # Helpers

    def _load(self, cdt_id: str) -> Certificate:
        certificate = self.repository.get(cdt_id)
        if certificate is None:
            raise NotFoundError(f"Certificate {cdt_id} not found", cdt_id)
        return certificate

    def _lost_race(self, cdt_id: str, expected: CertificateStatus) -> CertificateError:
        current = self.repository.get(cdt_id)
        if current is None:
            return NotFoundError(f"Certificate {cdt_id} not found", cdt_id)
        return ConflictError(
            f"Certificate {cdt_id} changed concurrently: expected status "
            f"{expected.value}, found {current.status.value}",
            cdt_id
        )

    def _apply(self, certificate: Certificate, patch: Dict[str, Any],
               action: AuditAction, details: AuditDetails) -> Certificate:
        """Conditional write plus audit entry in one transaction, then invalidate"""
        patch = {key: value for key, value in patch.items() if value is not None}

        with self.repository.transaction():
            updated = self.repository.update_where(certificate.id, certificate.status, patch)
            if updated == 0:
                raise self._lost_race(certificate.id, certificate.status)
            self.audit_log.append(certificate.id, action, details)
            result = self.repository.get(certificate.id)

        invalidate_certificate(self.cache, certificate.id, certificate.user_id)
        return result

    def _resolve_term(self, term_days: Optional[int], term_months: Optional[int]) -> int:
        if term_days is not None and term_months is not None:
            raise PreconditionFailedError("Give the term in days or in months, not both")
        if term_months is not None:
            return months_to_days(_whole_number(term_months, "term_months"),
                                  self.rules.days_per_month)
        if term_days is None:
            raise PreconditionFailedError("term_days or term_months is required")
        return _whole_number(term_days, "term_days")

    def _status_change_error(self, certificate: Certificate, actor_id: str,
                             role: ActorRole, new_status: CertificateStatus,
                             reason: Optional[str]) -> Optional[CertificateError]:
        if new_status in ADMIN_ONLY_TARGETS and role != ActorRole.ADMIN:
            return PermissionDeniedError(
                f"Only administrators can change a certificate to {new_status.value}",
                certificate.id
            )
        if role != ActorRole.ADMIN and not certificate.is_owned_by(actor_id):
            return PermissionDeniedError(
                "You do not have permission to change the status of this certificate",
                certificate.id
            )
        if not validate_transition(certificate.status, new_status):
            return InvalidTransitionError(
                f"Invalid status transition from {certificate.status.value} "
                f"to {new_status.value}",
                certificate.id
            )
        if new_status == CertificateStatus.REJECTED and (reason is None or not reason.strip()):
            return PreconditionFailedError("A reason is required to reject a certificate",
                                           certificate.id)
        return None

    # Creation and drafts

    def create(
        self,
        user_id: str,
        amount: Number,
        interest_rate: Number,
        term_days: Optional[int] = None,
        term_months: Optional[int] = None,
        start_date: Optional[Union[date, str]] = None,
        renovation_option: Union[RenovationOption, str] = RenovationOption.CAPITAL
    ) -> Certificate:
        """
        Create a draft certificate

        Args:
            user_id: Owner of the certificate
            amount: Principal to invest
            interest_rate: Annual rate in percent, fixed for the certificate's life
            term_days: Term in days
            term_months: Term in months, converted at the configured days per month
            start_date: First day of the term (defaults to today)
            renovation_option: What happens to the funds at maturity

        Returns:
            Created Certificate in DRAFT status
        """
        if not user_id:
            raise PreconditionFailedError("user_id is required")

        amount = _decimal(amount, "amount")
        rate = _decimal(interest_rate, "interest_rate")
        term = self._resolve_term(term_days, term_months)
        today = self._today()
        start = _date(start_date, "start_date") if start_date is not None else today
        renovation = _renovation(renovation_option)

        self.rules.validate(amount, term, rate, start, today)

        now = datetime.now(timezone.utc)
        certificate = Certificate(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            amount=amount,
            term_days=term,
            interest_rate=rate,
            start_date=start,
            end_date=calculate_end_date(start, term),
            estimated_return=calculate_return(amount, rate, term),
            status=CertificateStatus.DRAFT,
            renovation_option=renovation
        )

        with self.repository.transaction():
            self.repository.insert(certificate)
            self.audit_log.append(certificate.id, AuditAction.CREATED, CreatedDetails(
                user_id=user_id,
                amount=amount,
                term_days=term,
                interest_rate=rate
            ))

        invalidate_certificate(self.cache, certificate.id, user_id)

        log_action(
            self.logger, "info", f"CDT created: {certificate.id}",
            user_id=user_id, action="create_cdt", resource=f"cdt:{certificate.id}",
            extra={
                "amount": str(amount),
                "term_days": term,
                "interest_rate": str(rate),
                "estimated_return": str(certificate.estimated_return)
            }
        )
        return certificate

    def update_draft(self, cdt_id: str, user_id: str, changes: Dict[str, Any]) -> Certificate:
        """
        Edit the terms of a draft. Only the owner may edit, and only while
        the certificate is a draft; end date and estimated return are
        recomputed from the edited terms.
        """
        changes = {key: value for key, value in (changes or {}).items() if value is not None}
        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise PreconditionFailedError(f"Fields cannot be edited: {', '.join(unknown)}", cdt_id)
        if not changes:
            raise PreconditionFailedError("No changes given", cdt_id)

        certificate = self._load(cdt_id)
        if not certificate.is_owned_by(user_id):
            raise PermissionDeniedError("You can only edit your own certificates", cdt_id)
        if certificate.status != CertificateStatus.DRAFT:
            raise PreconditionFailedError(
                f"Only draft certificates can be edited (current status: "
                f"{certificate.status.value})",
                cdt_id
            )

        amount = _decimal(changes.get('amount', certificate.amount), "amount")
        rate = _decimal(changes.get('interest_rate', certificate.interest_rate), "interest_rate")
        term = _whole_number(changes.get('term_days', certificate.term_days), "term_days")
        start = _date(changes.get('start_date', certificate.start_date), "start_date")
        renovation = _renovation(changes.get('renovation_option', certificate.renovation_option))

        self.rules.validate(amount, term, rate, start,
                            self._today() if 'start_date' in changes else None)

        proposed = {
            'amount': amount,
            'term_days': term,
            'interest_rate': rate,
            'start_date': start,
            'renovation_option': renovation,
        }
        changed = {
            key: to_stored(value) for key, value in proposed.items()
            if value != getattr(certificate, key)
        }
        if not changed:
            return certificate

        patch = dict(proposed)
        patch['end_date'] = calculate_end_date(start, term)
        patch['estimated_return'] = calculate_return(amount, rate, term)

        result = self._apply(certificate, patch, AuditAction.UPDATED,
                             UpdatedDetails(user_id=user_id, changes=changed))

        log_action(
            self.logger, "info", f"CDT updated: {cdt_id}",
            user_id=user_id, action="update_cdt", resource=f"cdt:{cdt_id}",
            extra={"changes": changed}
        )
        return result

    # Review workflow

    def submit_for_review(self, cdt_id: str, user_id: str) -> Certificate:
        """Move the owner's draft to PENDING"""
        certificate = self._load(cdt_id)
        if not certificate.is_owned_by(user_id):
            raise PermissionDeniedError("You can only submit your own certificates", cdt_id)
        if certificate.status != CertificateStatus.DRAFT:
            raise PreconditionFailedError(
                f"Only draft certificates can be submitted for review (current status: "
                f"{certificate.status.value})",
                cdt_id
            )

        result = self._apply(
            certificate,
            {'status': CertificateStatus.PENDING, 'submitted_at': datetime.now(timezone.utc)},
            AuditAction.SUBMITTED_FOR_REVIEW,
            SubmittedDetails(user_id=user_id, previous_status=certificate.status)
        )

        log_action(
            self.logger, "info", f"CDT submitted for review: {cdt_id}",
            user_id=user_id, action="submit_cdt", resource=f"cdt:{cdt_id}"
        )
        return result

    def approve(self, cdt_id: str, admin_id: str, notes: Optional[str] = None) -> Certificate:
        """
        Approve a pending certificate

        Args:
            cdt_id: Certificate to approve
            admin_id: Reviewing administrator
            notes: Optional review notes

        Returns:
            Certificate in ACTIVE status
        """
        certificate = self._load(cdt_id)
        if certificate.status != CertificateStatus.PENDING:
            raise PreconditionFailedError(
                f"Only pending certificates can be approved (current status: "
                f"{certificate.status.value})",
                cdt_id
            )

        result = self._apply(
            certificate,
            {
                'status': CertificateStatus.ACTIVE,
                'reviewed_by': admin_id,
                'reviewed_at': datetime.now(timezone.utc),
                'admin_notes': notes,
            },
            AuditAction.APPROVED,
            ApprovedDetails(admin_id=admin_id, admin_notes=notes)
        )

        log_action(
            self.logger, "info", f"CDT approved: {cdt_id}",
            user_id=admin_id, action="approve_cdt", resource=f"cdt:{cdt_id}"
        )
        return result

    def reject(self, cdt_id: str, admin_id: str, reason: str) -> Certificate:
        """
        Reject a pending certificate

        Args:
            cdt_id: Certificate to reject
            admin_id: Reviewing administrator
            reason: Why it was rejected; stored as the admin notes

        Returns:
            Certificate in REJECTED status
        """
        reason = _reason(reason, "A rejection reason is required")

        certificate = self._load(cdt_id)
        if certificate.status != CertificateStatus.PENDING:
            raise PreconditionFailedError(
                f"Only pending certificates can be rejected (current status: "
                f"{certificate.status.value})",
                cdt_id
            )

        result = self._apply(
            certificate,
            {
                'status': CertificateStatus.REJECTED,
                'reviewed_by': admin_id,
                'reviewed_at': datetime.now(timezone.utc),
                'admin_notes': reason,
            },
            AuditAction.REJECTED,
            RejectedDetails(admin_id=admin_id, reason=reason)
        )

        log_action(
            self.logger, "info", f"CDT rejected: {cdt_id}",
            user_id=admin_id, action="reject_cdt", resource=f"cdt:{cdt_id}",
            extra={"reason": reason}
        )
        return result

    def cancel(self, cdt_id: str, actor_id: str, actor_role: Union[ActorRole, str],
               reason: str) -> Certificate:
        """
        Cancel a pending or active certificate.

        Owners may cancel while the certificate is pending; cancelling an
        active certificate takes an administrator.
        """
        reason = _reason(reason, "A cancellation reason is required")
        role = _role(actor_role)

        certificate = self._load(cdt_id)
        if role != ActorRole.ADMIN and not certificate.is_owned_by(actor_id):
            raise PermissionDeniedError("You can only cancel your own certificates", cdt_id)

        if certificate.status == CertificateStatus.DRAFT:
            raise PreconditionFailedError(
                "Draft certificates cannot be cancelled; delete the draft instead", cdt_id
            )
        if certificate.status not in CANCELLABLE_STATUSES:
            raise PreconditionFailedError(
                f"Certificate is already {certificate.status.value} and cannot be cancelled",
                cdt_id
            )
        if role != ActorRole.ADMIN and certificate.status != CertificateStatus.PENDING:
            raise PermissionDeniedError(
                "Only administrators can cancel an active certificate", cdt_id
            )

        result = self._apply(
            certificate,
            {'status': CertificateStatus.CANCELLED, 'admin_notes': reason},
            AuditAction.CANCELLED,
            CancelledDetails(
                actor_id=actor_id,
                actor_role=role,
                reason=reason,
                previous_status=certificate.status
            )
        )

        log_action(
            self.logger, "info", f"CDT cancelled: {cdt_id}",
            user_id=actor_id, action="cancel_cdt", resource=f"cdt:{cdt_id}",
            extra={"reason": reason, "previous_status": certificate.status.value}
        )
        return result

    def complete(self, cdt_id: str) -> Certificate:
        """Settle an active certificate; invoked by an external scheduler"""
        certificate = self._load(cdt_id)
        if certificate.status != CertificateStatus.ACTIVE:
            raise PreconditionFailedError(
                f"Only active certificates can be completed (current status: "
                f"{certificate.status.value})",
                cdt_id
            )

        result = self._apply(
            certificate,
            {'status': CertificateStatus.COMPLETED},
            AuditAction.COMPLETED,
            CompletedDetails(final_amount=certificate.final_amount)
        )

        log_action(
            self.logger, "info", f"CDT completed: {cdt_id}",
            action="complete_cdt", resource=f"cdt:{cdt_id}",
            extra={"final_amount": str(certificate.final_amount)}
        )
        return result

    def complete_matured(self, as_of: Optional[date] = None) -> List[Certificate]:
        """
        Complete every active certificate whose end date has been reached.

        Certificates that change concurrently are skipped; the next run
        picks them up if they are still active.
        """
        as_of = as_of or self._today()
        completed = []

        for certificate in self.repository.find_by_status([CertificateStatus.ACTIVE]):
            if certificate.end_date > as_of:
                continue
            try:
                completed.append(self.complete(certificate.id))
            except (ConflictError, NotFoundError, PreconditionFailedError) as e:
                self.logger.warning(f"Skipping maturity of CDT {certificate.id}: {e}")

        self.logger.info(f"Completed {len(completed)} matured CDTs as of {as_of.isoformat()}")
        return completed

    # Generic status changes

    def change_status(self, cdt_id: str, actor_id: str, actor_role: Union[ActorRole, str],
                      new_status: Union[CertificateStatus, str],
                      reason: Optional[str] = None) -> Certificate:
        """
        Free-form status change validated against the generic transition table

        Args:
            cdt_id: Certificate to change
            actor_id: Who is making the change
            actor_role: Role of the actor
            new_status: Target status
            reason: Free-text reason; required when rejecting

        Returns:
            Updated Certificate
        """
        role = _role(actor_role)
        try:
            target = as_status(new_status)
        except ValueError:
            raise InvalidTransitionError(f"Unknown status '{new_status}'", cdt_id)

        certificate = self._load(cdt_id)
        error = self._status_change_error(certificate, actor_id, role, target, reason)
        if error is not None:
            raise error

        reason = reason.strip() if reason and reason.strip() else None
        now = datetime.now(timezone.utc)
        patch: Dict[str, Any] = {'status': target}
        if target == CertificateStatus.PENDING:
            patch['submitted_at'] = now
        if certificate.status == CertificateStatus.PENDING and target in (
                CertificateStatus.ACTIVE, CertificateStatus.REJECTED):
            patch['reviewed_by'] = actor_id
            patch['reviewed_at'] = now
        if reason is not None and target != CertificateStatus.PENDING:
            patch['admin_notes'] = reason

        result = self._apply(
            certificate, patch, AuditAction.STATUS_CHANGED,
            StatusChangedDetails(
                actor_id=actor_id,
                actor_role=role,
                previous_status=certificate.status,
                new_status=target,
                reason=reason
            )
        )

        log_action(
            self.logger, "info",
            f"CDT status changed: {cdt_id} from {certificate.status.value} to {target.value}",
            user_id=actor_id, action="change_cdt_status", resource=f"cdt:{cdt_id}"
        )
        return result

    def can_transition_to(self, cdt_id: str, actor_id: str, actor_role: Union[ActorRole, str],
                          new_status: Union[CertificateStatus, str],
                          reason: Optional[str] = None) -> Tuple[bool, Optional[str]]:
        """Dry run of change_status; returns (allowed, reason when not allowed)"""
        try:
            role = _role(actor_role)
            target = as_status(new_status)
        except (CertificateError, ValueError) as e:
            return False, str(e)

        certificate = self.repository.get(cdt_id)
        if certificate is None:
            return False, f"Certificate {cdt_id} not found"

        # Dry runs do not know the reason yet, so only a given blank one fails
        dry_run_reason = reason if reason is not None else "-"
        error = self._status_change_error(certificate, actor_id, role, target, dry_run_reason)
        if error is not None:
            return False, error.message
        return True, None

    def delete(self, cdt_id: str, actor_id: str, actor_role: Union[ActorRole, str]) -> None:
        """
        Delete a draft or cancelled certificate. Its audit trail is kept,
        ending with a DELETED entry.
        """
        role = _role(actor_role)
        certificate = self._load(cdt_id)
        if role != ActorRole.ADMIN and not certificate.is_owned_by(actor_id):
            raise PermissionDeniedError("You do not have permission to delete this certificate",
                                        cdt_id)
        if certificate.status not in DELETABLE_STATUSES:
            raise PreconditionFailedError(
                f"Only draft or cancelled certificates can be deleted (current status: "
                f"{certificate.status.value})",
                cdt_id
            )

        with self.repository.transaction():
            if not self.repository.delete_where(cdt_id, certificate.status):
                raise self._lost_race(cdt_id, certificate.status)
            self.audit_log.append(cdt_id, AuditAction.DELETED, DeletedDetails(
                actor_id=actor_id,
                actor_role=role,
                previous_status=certificate.status
            ))

        invalidate_certificate(self.cache, cdt_id, certificate.user_id)

        log_action(
            self.logger, "info", f"CDT deleted: {cdt_id}",
            user_id=actor_id, action="delete_cdt", resource=f"cdt:{cdt_id}"
        )
