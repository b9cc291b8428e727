"""
Loan Module

Handles the loan lifecycle from submission through approval, disbursement,
repayment and completion or default: state transitions, explicit
recalculation of derived financial fields, payment application, lateness
assessment, and the read-time projections (progress, next payment date).

Remaining balance tracks principal. Payments reduce it one for one, so a
loan completes once payments cover the principal; total_amount and
monthly_payment describe the interest-inclusive schedule.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from enum import Enum
import math
import uuid

from .amortization import (
    ScheduledInstallment, TermUnit, add_term, compute_schedule, days_late,
    days_until, late_fee, next_payment_date, project_schedule
)
from .audit import AuditTrail, AuditEventType
from .config import LoanEngineConfig, get_config
from .currency import Money, to_decimal
from .exceptions import (
    FieldViolation, InvalidAmountError, InvalidStateError, NotFoundError, ValidationError
)
from .logging_config import get_logger, log_action, setup_logging
from .storage import StorageInterface, StorageRecord, create_storage
from .terms import LoanTerms
from .validation import raise_for_violations, validate_risk_score, validate_terms

logger = get_logger("loan_engine.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"          # Submitted, awaiting a decision
    APPROVED = "approved"        # Approved, not yet disbursed
    REJECTED = "rejected"        # Declined (terminal)
    ACTIVE = "active"            # Disbursed and in repayment
    COMPLETED = "completed"      # Principal fully repaid (terminal)
    DEFAULTED = "defaulted"      # Declared in default (terminal)


# Statuses in which total_amount and monthly_payment are defined
FINANCIAL_STATUSES = frozenset({
    LoanStatus.APPROVED, LoanStatus.ACTIVE, LoanStatus.COMPLETED, LoanStatus.DEFAULTED
})


class PaymentStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class DocumentType(Enum):
    INCOME_PROOF = "income_proof"
    BANK_STATEMENT = "bank_statement"
    IDENTITY_DOCUMENT = "identity_document"
    COLLATERAL_DOCUMENT = "collateral_document"
    OTHER = "other"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _parse_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


@dataclass
class LoanPayment:
    """A payment made against a loan"""
    id: str
    amount: Decimal
    date: datetime
    status: PaymentStatus
    transaction_ref: Optional[str] = None   # e.g. on-chain transaction hash
    failure_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'amount': str(self.amount),
            'date': self.date.isoformat(),
            'status': self.status.value,
            'transaction_ref': self.transaction_ref,
            'failure_reason': self.failure_reason
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPayment':
        return cls(
            id=data['id'],
            amount=Decimal(data['amount']),
            date=datetime.fromisoformat(data['date']),
            status=PaymentStatus(data['status']),
            transaction_ref=data.get('transaction_ref'),
            failure_reason=data.get('failure_reason')
        )


@dataclass
class LoanNote:
    content: str
    author_id: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {'content': self.content, 'author_id': self.author_id, 'created_at': self.created_at.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanNote':
        return cls(data['content'], data['author_id'], datetime.fromisoformat(data['created_at']))


@dataclass
class LoanDocument:
    """Reference to a supporting document stored elsewhere"""
    id: str
    type: DocumentType
    name: str
    url: str
    uploaded_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'name': self.name,
            'url': self.url,
            'uploaded_at': self.uploaded_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanDocument':
        return cls(
            id=data['id'],
            type=DocumentType(data['type']),
            name=data['name'],
            url=data['url'],
            uploaded_at=datetime.fromisoformat(data['uploaded_at'])
        )


@dataclass
class ContractReference:
    """Where an on-chain counterpart of the loan lives; recorded only"""
    contract_address: str
    chain_loan_id: str
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'contract_address': self.contract_address,
            'chain_loan_id': self.chain_loan_id,
            'transaction_hash': self.transaction_hash,
            'block_number': self.block_number
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContractReference':
        return cls(**data)


@dataclass
class Loan(StorageRecord):
    """Loan with its terms, derived financial fields and history"""
    borrower_id: str
    terms: LoanTerms
    status: LoanStatus = LoanStatus.PENDING

    # Derived financial fields, set by recalculation only
    total_amount: Optional[Decimal] = None
    monthly_payment: Optional[Decimal] = None
    remaining_balance: Optional[Decimal] = None

    # Timeline, each set once by the transition that produces it
    approval_date: Optional[datetime] = None
    disbursement_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    defaulted_date: Optional[datetime] = None

    payments: List[LoanPayment] = field(default_factory=list)

    late_fees: Decimal = Decimal('0')
    days_late: int = 0

    risk_score: Optional[Decimal] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    notes: List[LoanNote] = field(default_factory=list)
    documents: List[LoanDocument] = field(default_factory=list)
    contract: Optional[ContractReference] = None

    version: int = 0

    def __post_init__(self):
        if self.remaining_balance is None:
            self.remaining_balance = self.terms.amount

    @property
    def amount(self) -> Decimal:
        return self.terms.amount

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def confirmed_payments(self) -> List[LoanPayment]:
        return [p for p in self.payments if p.status == PaymentStatus.CONFIRMED]

    @property
    def total_paid(self) -> Decimal:
        return sum((p.amount for p in self.confirmed_payments), Decimal('0'))

    def find_payment(self, payment_id: str) -> Optional[LoanPayment]:
        for payment in self.payments:
            if payment.id == payment_id:
                return payment
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Stored fields only; read-time projections are never persisted"""
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'borrower_id': self.borrower_id,
            'terms': self.terms.to_dict(),
            'status': self.status.value,
            'total_amount': str(self.total_amount) if self.total_amount is not None else None,
            'monthly_payment': str(self.monthly_payment) if self.monthly_payment is not None else None,
            'remaining_balance': str(self.remaining_balance),
            'approval_date': _iso(self.approval_date),
            'disbursement_date': _iso(self.disbursement_date),
            'due_date': _iso(self.due_date),
            'completed_date': _iso(self.completed_date),
            'defaulted_date': _iso(self.defaulted_date),
            'payments': [p.to_dict() for p in self.payments],
            'late_fees': str(self.late_fees),
            'days_late': self.days_late,
            'risk_score': str(self.risk_score) if self.risk_score is not None else None,
            'approved_by': self.approved_by,
            'rejection_reason': self.rejection_reason,
            'notes': [n.to_dict() for n in self.notes],
            'documents': [d.to_dict() for d in self.documents],
            'contract': self.contract.to_dict() if self.contract else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_id=data['borrower_id'],
            terms=LoanTerms.from_dict(data['terms']),
            status=LoanStatus(data['status']),
            total_amount=_parse_decimal(data.get('total_amount')),
            monthly_payment=_parse_decimal(data.get('monthly_payment')),
            remaining_balance=_parse_decimal(data.get('remaining_balance')),
            approval_date=_parse_datetime(data.get('approval_date')),
            disbursement_date=_parse_datetime(data.get('disbursement_date')),
            due_date=_parse_datetime(data.get('due_date')),
            completed_date=_parse_datetime(data.get('completed_date')),
            defaulted_date=_parse_datetime(data.get('defaulted_date')),
            payments=[LoanPayment.from_dict(p) for p in data.get('payments', [])],
            late_fees=Decimal(data.get('late_fees', '0')),
            days_late=data.get('days_late', 0),
            risk_score=_parse_decimal(data.get('risk_score')),
            approved_by=data.get('approved_by'),
            rejection_reason=data.get('rejection_reason'),
            notes=[LoanNote.from_dict(n) for n in data.get('notes', [])],
            documents=[LoanDocument.from_dict(d) for d in data.get('documents', [])],
            contract=ContractReference.from_dict(data['contract']) if data.get('contract') else None,
            version=data.get('version', 0)
        )


# Read-time projections. These are recomputed on every read and never stored.

def progress(loan: Loan) -> int:
    """Percent of principal repaid, 0 unless the loan is active or completed"""
    if loan.status not in (LoanStatus.ACTIVE, LoanStatus.COMPLETED):
        return 0
    paid = loan.amount - loan.remaining_balance
    percent = paid / loan.amount * Decimal('100')
    return int(percent.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def loan_next_payment_date(loan: Loan) -> Optional[datetime]:
    """When the next payment is due; only active loans have one"""
    if loan.status != LoanStatus.ACTIVE:
        return None
    return next_payment_date((p.date for p in loan.confirmed_payments), loan.disbursement_date)


def days_until_next_payment(loan: Loan, now: datetime) -> Optional[int]:
    return days_until(loan_next_payment_date(loan), now)


def serialize_loan(loan: Loan, now: datetime) -> Dict[str, Any]:
    """Stored fields plus progress, next payment date and days until it"""
    result = loan.to_dict()
    result['version'] = loan.version
    next_date = loan_next_payment_date(loan)
    result['progress'] = progress(loan)
    result['next_payment_date'] = _iso(next_date)
    result['days_until_next_payment'] = days_until(next_date, now)
    return result


TERM_FIELDS = frozenset({
    'amount', 'interest_rate', 'term', 'term_unit', 'loan_type', 'purpose', 'currency', 'collateral'
})


class LoanManager:
    """
    Manages loan lifecycle from submission through completion or default

    Every mutator loads the loan, checks its preconditions, applies the change
    and saves with a version check, all before returning. A failed
    precondition raises without writing anything. Two writers racing on the
    same loan get a StaleRecordError on the losing save; retrying is up to
    the caller.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        config: Optional[LoanEngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.loans_table = "loans"

    # -- submission and terms ------------------------------------------------

    def create_loan(self, borrower_id: str, terms: LoanTerms) -> Loan:
        """
        Submit a new loan in PENDING status

        Args:
            borrower_id: Reference to the borrowing user
            terms: Requested loan terms

        Returns:
            Created Loan object

        Raises:
            ValidationError: Listing every invalid field
        """
        violations = []
        if not borrower_id:
            violations.append(FieldViolation("borrower_id", "Borrower is required"))
        violations += validate_terms(terms, self.config)
        raise_for_violations(violations)

        now = self.clock()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_id=borrower_id,
            terms=terms
        )

        self._commit(loan, AuditEventType.LOAN_SUBMITTED, user_id=borrower_id, metadata={
            "amount": self._money(loan, loan.amount),
            "interest_rate": str(terms.interest_rate),
            "term": terms.term,
            "term_unit": terms.term_unit.value,
            "loan_type": terms.loan_type.value
        })
        return loan

    def update_terms(self, loan_id: str, updated_by: Optional[str] = None, **changes) -> Loan:
        """
        Change terms before disbursement

        Pending loans are only re-validated. Approved loans also get their
        total amount and monthly payment recalculated. Active loans must go
        through restructure_loan instead.
        """
        loan = self._require_loan(loan_id)
        self._require_status(loan, "update terms of", LoanStatus.PENDING, LoanStatus.APPROVED)

        unknown = sorted(set(changes) - TERM_FIELDS)
        if unknown:
            raise ValidationError([FieldViolation(name, "Not a loan term") for name in unknown])
        if not changes:
            raise ValidationError([FieldViolation("terms", "No changes given")])

        new_terms = loan.terms.with_changes(**changes)
        raise_for_violations(validate_terms(new_terms, self.config))

        old_terms = loan.terms.to_dict()
        loan.terms = new_terms
        # Nothing has been paid before disbursement
        loan.remaining_balance = new_terms.amount
        if loan.status == LoanStatus.APPROVED:
            self._recalculate(loan)

        self._commit(loan, AuditEventType.LOAN_TERMS_UPDATED, user_id=updated_by, metadata={
            "changed": sorted(changes),
            "old_terms": old_terms,
            "new_terms": new_terms.to_dict()
        })
        return loan

    def restructure_loan(
        self,
        loan_id: str,
        authorized_by: str,
        interest_rate: Optional[Union[Decimal, str]] = None,
        term: Optional[int] = None,
        term_unit: Optional[TermUnit] = None
    ) -> Loan:
        """
        Change rate or term of an ACTIVE loan

        This is the only way terms change after disbursement. The schedule and
        due date are recalculated from the original disbursement date;
        remaining balance and payment history are kept.
        """
        loan = self._require_loan(loan_id)
        self._require_status(loan, "restructure", LoanStatus.ACTIVE)

        violations = []
        if not authorized_by:
            violations.append(FieldViolation("authorized_by", "Restructuring must be authorized"))
        changes = {
            name: value for name, value in
            (('interest_rate', interest_rate), ('term', term), ('term_unit', term_unit))
            if value is not None
        }
        if not changes:
            violations.append(FieldViolation("terms", "No changes given"))
        raise_for_violations(violations)

        new_terms = loan.terms.with_changes(**changes)
        raise_for_violations(validate_terms(new_terms, self.config))

        old = {
            "terms": loan.terms.to_dict(),
            "total_amount": str(loan.total_amount),
            "monthly_payment": str(loan.monthly_payment),
            "due_date": _iso(loan.due_date)
        }
        loan.terms = new_terms
        self._recalculate(loan)
        loan.due_date = add_term(loan.disbursement_date, new_terms.term, new_terms.term_unit)

        self._commit(loan, AuditEventType.LOAN_RESTRUCTURED, user_id=authorized_by, metadata={
            "old": old,
            "new": {
                "terms": new_terms.to_dict(),
                "total_amount": str(loan.total_amount),
                "monthly_payment": str(loan.monthly_payment),
                "due_date": _iso(loan.due_date)
            }
        })
        return loan

    # -- decisions and disbursement ------------------------------------------

    def approve_loan(self, loan_id: str, approver_id: str, risk_score: Union[int, float, Decimal]) -> Loan:
        """
        Approve a PENDING loan and compute its schedule

        Raises:
            InvalidStateError: If the loan is not pending
            ValidationError: If approver or risk score is invalid
        """
        loan = self._require_loan(loan_id)
        self._require_status(loan, "approve", LoanStatus.PENDING)

        violations = validate_risk_score(risk_score)
        if not approver_id:
            violations.append(FieldViolation("approver_id", "Approver is required"))
        raise_for_violations(violations)

        loan.status = LoanStatus.APPROVED
        loan.approval_date = self.clock()
        loan.approved_by = approver_id
        loan.risk_score = to_decimal(risk_score)
        self._recalculate(loan)

        self._commit(loan, AuditEventType.LOAN_APPROVED, user_id=approver_id, metadata={
            "risk_score": loan.risk_score,
            "total_amount": self._money(loan, loan.total_amount),
            "monthly_payment": self._money(loan, loan.monthly_payment)
        })
        return loan

    def reject_loan(self, loan_id: str, reason: str, rejected_by: Optional[str] = None) -> Loan:
        """Reject a PENDING loan; no financial fields are computed"""
        loan = self._require_loan(loan_id)
        self._require_status(loan, "reject", LoanStatus.PENDING)

        if not reason or not reason.strip():
            raise ValidationError([FieldViolation("reason", "Rejection reason is required")])

        loan.status = LoanStatus.REJECTED
        loan.rejection_reason = reason

        self._commit(loan, AuditEventType.LOAN_REJECTED, user_id=rejected_by, metadata={"reason": reason})
        return loan

    def disburse_loan(self, loan_id: str, disbursed_by: Optional[str] = None) -> Loan:
        """
        Release funds for an APPROVED loan, starting the repayment clock

        The due date is the disbursement date plus the full term.
        """
        loan = self._require_loan(loan_id)
        self._require_status(loan, "disburse", LoanStatus.APPROVED)

        now = self.clock()
        loan.status = LoanStatus.ACTIVE
        loan.disbursement_date = now
        loan.due_date = add_term(now, loan.terms.term, loan.terms.term_unit)
        if loan.remaining_balance is None:
            loan.remaining_balance = loan.amount

        self._commit(loan, AuditEventType.LOAN_DISBURSED, user_id=disbursed_by, metadata={
            "amount": self._money(loan, loan.amount),
            "due_date": loan.due_date
        })
        return loan

    def mark_defaulted(self, loan_id: str, actor_id: str, reason: str) -> Loan:
        """Administrative ACTIVE -> DEFAULTED transition; the engine never defaults a loan by itself"""
        loan = self._require_loan(loan_id)
        self._require_status(loan, "default", LoanStatus.ACTIVE)

        violations = []
        if not actor_id:
            violations.append(FieldViolation("actor_id", "Default must be declared by someone"))
        if not reason or not reason.strip():
            violations.append(FieldViolation("reason", "Default reason is required"))
        raise_for_violations(violations)

        now = self.clock()
        loan.status = LoanStatus.DEFAULTED
        loan.defaulted_date = now
        loan.notes.append(LoanNote(content=f"Defaulted: {reason}", author_id=actor_id, created_at=now))

        self._commit(loan, AuditEventType.LOAN_DEFAULTED, user_id=actor_id, metadata={
            "reason": reason,
            "remaining_balance": self._money(loan, loan.remaining_balance),
            "late_fees": self._money(loan, loan.late_fees)
        })
        return loan

    # -- payments ------------------------------------------------------------

    def add_payment(self, loan_id: str, amount: Union[Decimal, Money, int, str],
                    transaction_ref: Optional[str] = None) -> Loan:
        """
        Apply a confirmed payment to an ACTIVE loan

        The balance never drops below zero; an overpayment is recorded in full
        but only clears the remaining balance. Reaching zero completes the loan.

        Raises:
            InvalidAmountError: If amount is not positive
            InvalidStateError: If the loan is not active
        """
        loan = self._require_loan(loan_id)
        self._require_status(loan, "pay", LoanStatus.ACTIVE)
        value = self._payment_amount(loan, amount)

        now = self.clock()
        payment = LoanPayment(
            id=str(uuid.uuid4()),
            amount=value,
            date=now,
            status=PaymentStatus.CONFIRMED,
            transaction_ref=transaction_ref
        )
        loan.payments.append(payment)
        self._apply_payment(loan, payment, now)
        return loan

    def record_pending_payment(self, loan_id: str, amount: Union[Decimal, Money, int, str],
                               transaction_ref: str) -> LoanPayment:
        """
        Record a payment whose settlement is not yet verified

        The balance is untouched until confirm_payment is called.
        """
        loan = self._require_loan(loan_id)
        self._require_status(loan, "pay", LoanStatus.ACTIVE)
        if not transaction_ref:
            raise ValidationError([FieldViolation("transaction_ref", "Pending payments need a transaction reference")])

        value = self._payment_amount(loan, amount)

        payment = LoanPayment(
            id=str(uuid.uuid4()),
            amount=value,
            date=self.clock(),
            status=PaymentStatus.PENDING,
            transaction_ref=transaction_ref
        )
        loan.payments.append(payment)

        self._commit(loan, AuditEventType.LOAN_PAYMENT_RECORDED, metadata={
            "payment_id": payment.id,
            "amount": self._money(loan, value),
            "transaction_ref": transaction_ref
        })
        return payment

    def confirm_payment(self, loan_id: str, payment_id: str) -> Loan:
        """Settle a pending payment and apply it to the balance"""
        loan = self._require_loan(loan_id)
        self._require_status(loan, "confirm a payment on", LoanStatus.ACTIVE)
        payment = self._require_pending_payment(loan, payment_id, "confirm")

        payment.status = PaymentStatus.CONFIRMED
        self._apply_payment(loan, payment, self.clock())
        return loan

    def fail_payment(self, loan_id: str, payment_id: str, reason: Optional[str] = None) -> Loan:
        """Mark a pending payment as failed; it never affects the balance"""
        loan = self._require_loan(loan_id)
        payment = self._require_pending_payment(loan, payment_id, "fail")

        payment.status = PaymentStatus.FAILED
        payment.failure_reason = reason

        self._commit(loan, AuditEventType.LOAN_PAYMENT_FAILED, metadata={
            "payment_id": payment.id,
            "amount": self._money(loan, payment.amount),
            "reason": reason
        })
        return loan

    def _apply_payment(self, loan: Loan, payment: LoanPayment, now: datetime) -> None:
        balance_before = loan.remaining_balance
        loan.remaining_balance = max(Decimal('0'), balance_before - payment.amount)

        completed = loan.remaining_balance == 0
        if completed:
            loan.status = LoanStatus.COMPLETED
            loan.completed_date = now

        follow_up = []
        if completed:
            follow_up.append((AuditEventType.LOAN_COMPLETED, {
                "total_paid": self._money(loan, loan.total_paid)
            }))

        self._commit(loan, AuditEventType.LOAN_PAYMENT_CONFIRMED, metadata={
            "payment_id": payment.id,
            "amount": self._money(loan, payment.amount),
            "transaction_ref": payment.transaction_ref,
            "balance_before": self._money(loan, balance_before),
            "balance_after": self._money(loan, loan.remaining_balance)
        }, follow_up=follow_up)

    # -- lateness ------------------------------------------------------------

    def assess_lateness(self, loan_id: str, as_of: Optional[datetime] = None) -> Loan:
        """
        Recompute late fees and days late for an ACTIVE loan

        Fees are recomputed from scratch rather than accumulated, so repeated
        calls with the same as_of leave the loan unchanged. Non-active loans
        are returned as they are. Status is never changed here.
        """
        loan = self._require_loan(loan_id)
        if loan.status != LoanStatus.ACTIVE:
            return loan

        now = as_of or self.clock()
        reference = loan.due_date or loan_next_payment_date(loan)
        fee = late_fee(
            loan.monthly_payment, reference, now,
            fee_rate_percent=self.config.late_fee_rate_percent,
            period_days=self.config.late_fee_period_days
        )
        overdue_days = days_late(reference, now)

        if fee == loan.late_fees and overdue_days == loan.days_late:
            return loan

        loan.late_fees = fee
        loan.days_late = overdue_days
        self._commit(loan, AuditEventType.LOAN_LATENESS_ASSESSED, metadata={
            "as_of": now,
            "reference_date": reference,
            "days_late": overdue_days,
            "late_fees": self._money(loan, fee)
        })
        return loan

    # -- notes, documents, contract references -------------------------------

    def add_note(self, loan_id: str, content: str, author_id: str) -> Loan:
        """Append a note to the loan's permanent record"""
        violations = []
        if not content or not content.strip():
            violations.append(FieldViolation("content", "Note content is required"))
        if not author_id:
            violations.append(FieldViolation("author_id", "Note author is required"))
        raise_for_violations(violations)

        loan = self._require_loan(loan_id)
        loan.notes.append(LoanNote(content=content, author_id=author_id, created_at=self.clock()))

        self._commit(loan, AuditEventType.LOAN_NOTE_ADDED, user_id=author_id, metadata={
            "note_index": len(loan.notes) - 1
        })
        return loan

    def attach_document(self, loan_id: str, document_type: Union[DocumentType, str],
                        name: str, url: str, uploaded_by: Optional[str] = None) -> Loan:
        """Record a reference to an uploaded supporting document"""
        violations = []
        try:
            document_type = DocumentType(document_type)
        except ValueError:
            violations.append(FieldViolation(
                "document_type", f"Document type must be one of {', '.join(t.value for t in DocumentType)}"
            ))
        if not name:
            violations.append(FieldViolation("name", "Document name is required"))
        if not url:
            violations.append(FieldViolation("url", "Document URL is required"))
        raise_for_violations(violations)

        loan = self._require_loan(loan_id)
        document = LoanDocument(
            id=str(uuid.uuid4()),
            type=document_type,
            name=name,
            url=url,
            uploaded_at=self.clock()
        )
        loan.documents.append(document)

        self._commit(loan, AuditEventType.LOAN_DOCUMENT_ATTACHED, user_id=uploaded_by, metadata={
            "document_id": document.id,
            "type": document.type.value,
            "name": name
        })
        return loan

    def link_contract(self, loan_id: str, contract_address: str, chain_loan_id: str,
                      transaction_hash: Optional[str] = None,
                      block_number: Optional[int] = None) -> Loan:
        """Record the on-chain contract backing this loan; set once"""
        violations = []
        if not contract_address:
            violations.append(FieldViolation("contract_address", "Contract address is required"))
        if not chain_loan_id:
            violations.append(FieldViolation("chain_loan_id", "On-chain loan id is required"))
        raise_for_violations(violations)

        loan = self._require_loan(loan_id)
        if loan.contract is not None:
            raise ValidationError([FieldViolation(
                "contract", f"Loan is already linked to {loan.contract.contract_address}"
            )])

        loan.contract = ContractReference(
            contract_address=contract_address,
            chain_loan_id=chain_loan_id,
            transaction_hash=transaction_hash,
            block_number=block_number
        )
        self._commit(loan, AuditEventType.LOAN_CONTRACT_LINKED, metadata=loan.contract.to_dict())
        return loan

    # -- queries -------------------------------------------------------------

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def find_loans_by_status(self, status: LoanStatus) -> List[Loan]:
        return self._find({'status': LoanStatus(status).value})

    def find_active_loans(self) -> List[Loan]:
        return self.find_loans_by_status(LoanStatus.ACTIVE)

    def find_overdue_loans(self, as_of: Optional[datetime] = None) -> List[Loan]:
        """Active loans whose due date is before as_of"""
        now = as_of or self.clock()
        return [
            loan for loan in self.find_active_loans()
            if loan.due_date is not None and loan.due_date < now
        ]

    def find_loans_by_borrower(self, borrower_id: str) -> List[Loan]:
        return self._find({'borrower_id': borrower_id})

    def payment_schedule(self, loan_id: str) -> List[ScheduledInstallment]:
        """
        Project the installments of an approved or disbursed loan

        Installments start at the disbursement date (or now, for loans not
        yet disbursed). Terms not a whole number of months are rounded up to
        the next whole installment.
        """
        loan = self._require_loan(loan_id)
        self._require_status(loan, "project a schedule for", *sorted(FINANCIAL_STATUSES, key=lambda s: s.value))

        term_months = loan.terms.term_months
        return project_schedule(
            loan.amount,
            loan.terms.interest_rate,
            term_months,
            first_payment_date=loan.disbursement_date or self.clock(),
            installments=max(1, math.ceil(term_months))
        )

    def get_loan_view(self, loan_id: str, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """Read view of a loan, including its read-time projections"""
        loan = self._require_loan(loan_id)
        return serialize_loan(loan, as_of or self.clock())

    # -- internals -----------------------------------------------------------

    def _find(self, filters: Dict[str, Any]) -> List[Loan]:
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def _require_status(self, loan: Loan, operation: str, *allowed: LoanStatus) -> None:
        if loan.status in allowed:
            return
        log_action(
            logger, "warning", f"Refused to {operation} loan in status {loan.status.value}",
            action=operation, loan_id=loan.id, status=loan.status, version=loan.version
        )
        raise InvalidStateError(
            loan.id, loan.status.value, [s.value for s in allowed], operation=operation
        )

    def _require_pending_payment(self, loan: Loan, payment_id: str, operation: str) -> LoanPayment:
        payment = loan.find_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found on loan {loan.id}")
        if payment.status != PaymentStatus.PENDING:
            raise InvalidStateError(
                payment_id, payment.status.value, [PaymentStatus.PENDING.value],
                operation=operation, entity="payment"
            )
        return payment

    def _payment_amount(self, loan: Loan, amount: Union[Decimal, Money, int, str]) -> Decimal:
        if isinstance(amount, Money):
            if amount.currency != loan.terms.currency:
                raise ValidationError([FieldViolation(
                    "currency",
                    f"Payment in {amount.currency.code} on a {loan.terms.currency.code} loan"
                )])
            amount = amount.amount
        try:
            value = to_decimal(amount)
        except ValueError:
            raise ValidationError([FieldViolation("amount", f"Payment amount must be a number, got {amount!r}")])
        if not value.is_finite() or value <= 0:
            raise InvalidAmountError(amount)
        return value

    def _recalculate(self, loan: Loan) -> None:
        """Overwrite total_amount and monthly_payment from the current terms"""
        summary = compute_schedule(loan.amount, loan.terms.interest_rate, loan.terms.term_months)
        loan.total_amount = summary.total_amount
        loan.monthly_payment = summary.monthly_payment

    def _money(self, loan: Loan, amount: Optional[Decimal]) -> Optional[str]:
        if amount is None:
            return None
        return Money(amount, loan.terms.currency).to_string()

    def _save_loan(self, loan: Loan) -> None:
        loan.version = self.storage.save(
            self.loans_table, loan.id, loan.to_dict(), expected_version=loan.version
        )

    def _audit(self, loan: Loan, event_type: AuditEventType, metadata: Dict[str, Any],
               user_id: Optional[str] = None) -> None:
        if self.config.enable_audit_logging:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata=metadata,
                user_id=user_id
            )

    def _commit(self, loan: Loan, event_type: AuditEventType, metadata: Dict[str, Any],
                user_id: Optional[str] = None,
                follow_up: Sequence[Tuple[AuditEventType, Dict[str, Any]]] = ()) -> None:
        """Save the loan and its audit events together, then log the action"""
        loan.updated_at = self.clock()
        with self.storage.atomic():
            self._save_loan(loan)
            self._audit(loan, event_type, metadata, user_id)
            for follow_up_type, follow_up_metadata in follow_up:
                self._audit(loan, follow_up_type, follow_up_metadata, user_id)

        log_action(
            logger, "info", event_type.value.replace("_", " "),
            action=event_type.value, loan_id=loan.id, status=loan.status,
            version=loan.version, user_id=user_id
        )


def create_loan_manager(config: Optional[LoanEngineConfig] = None,
                        clock: Optional[Callable[[], datetime]] = None) -> LoanManager:
    """
    Build a LoanManager from configuration

    Opens the storage named by ``database_url`` and keeps the audit chain in
    it, so each commit covers the loan and its events together. The
    ``loan_engine`` logger is configured from ``log_level`` and ``log_format``.
    """
    config = config or get_config()
    setup_logging(config.log_level, log_format=config.log_format)
    storage = create_storage(config.database_url)
    return LoanManager(storage, AuditTrail(storage), config, clock)
