"""
Pydantic schemas for the callers of the engine

LoanApplication is what an API layer receives from a borrower; LoanView is
what it returns: the stored loan plus its read-time projections.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .loans import Loan, serialize_loan
from .terms import Collateral, LoanTerms


class CollateralModel(BaseModel):
    type: str = Field(..., description="real_estate, vehicle, crypto, stocks or other")
    description: Optional[str] = None
    value: Optional[str] = None  # Decimal as string
    documents: List[str] = []

    def to_collateral(self) -> Collateral:
        return Collateral(
            type=self.type,
            description=self.description,
            value=self.value,
            documents=self.documents
        )


class LoanApplication(BaseModel):
    borrower_id: str
    amount: str = Field(..., description="Principal, decimal as string")
    interest_rate: str = Field(..., description="Annual percent, decimal as string")
    term: int
    term_unit: str = "months"
    loan_type: str = Field(..., description="personal, business, mortgage, auto or student")
    purpose: str
    currency: str = "USD"
    collateral: Optional[CollateralModel] = None

    def to_loan_terms(self) -> LoanTerms:
        """Bounds are not checked here; LoanManager.create_loan validates"""
        return LoanTerms(
            amount=self.amount,
            interest_rate=self.interest_rate,
            term=self.term,
            term_unit=self.term_unit,
            loan_type=self.loan_type,
            purpose=self.purpose,
            currency=self.currency,
            collateral=self.collateral.to_collateral() if self.collateral else None
        )


class PaymentModel(BaseModel):
    id: str
    amount: str
    date: str
    status: str
    transaction_ref: Optional[str] = None
    failure_reason: Optional[str] = None


class NoteModel(BaseModel):
    content: str
    author_id: str
    created_at: str


class DocumentModel(BaseModel):
    id: str
    type: str
    name: str
    url: str
    uploaded_at: str


class ContractModel(BaseModel):
    contract_address: str
    chain_loan_id: str
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None


class TermsModel(BaseModel):
    amount: str
    interest_rate: str
    term: int
    term_unit: str
    loan_type: str
    purpose: str
    currency: str
    collateral: Optional[CollateralModel] = None


class LoanView(BaseModel):
    id: str
    version: int
    created_at: str
    updated_at: str
    borrower_id: str
    terms: TermsModel
    status: str
    total_amount: Optional[str] = None
    monthly_payment: Optional[str] = None
    remaining_balance: str
    approval_date: Optional[str] = None
    disbursement_date: Optional[str] = None
    due_date: Optional[str] = None
    completed_date: Optional[str] = None
    defaulted_date: Optional[str] = None
    payments: List[PaymentModel] = []
    late_fees: str
    days_late: int
    risk_score: Optional[str] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    notes: List[NoteModel] = []
    documents: List[DocumentModel] = []
    contract: Optional[ContractModel] = None

    # Read-time projections
    progress: int
    next_payment_date: Optional[str] = None
    days_until_next_payment: Optional[int] = None

    @classmethod
    def from_loan(cls, loan: Loan, now: datetime) -> 'LoanView':
        return cls(**serialize_loan(loan, now))
