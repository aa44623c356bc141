from datetime import date, datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class InvoiceStatus(str, Enum):
    RECEIVED = "RECEIVED"
    EXTRACTED = "EXTRACTED"
    MATCHED = "MATCHED"
    VALIDATED = "VALIDATED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    APPROVED = "APPROVED"
    POSTED = "POSTED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({InvoiceStatus.POSTED, InvoiceStatus.FAILED})


class ValidationSeverity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    FAIL = "FAIL"


class RuleOutcome(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ReviewDetermination(str, Enum):
    UPHOLD = "UPHOLD"
    OVERRIDE_APPROVE = "OVERRIDE_APPROVE"
    REQUIRE_MORE_EVIDENCE = "REQUIRE_MORE_EVIDENCE"


class CamelModel(BaseModel):
    """Accepts both snake_case and the camelCase keys of the extraction service."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ValidationResult(CamelModel):
    rule_id: str
    rule_name: str = ""
    severity: ValidationSeverity
    result: RuleOutcome
    details: Optional[str] = None

    @property
    def is_failure(self) -> bool:
        return self.result == RuleOutcome.FAIL


class LineItem(CamelModel):
    description: str = ""
    service_date: Optional[str] = None
    qty: float = 0
    unit_price: float = 0
    line_total: float = 0
    tax_code_guess: Optional[str] = None
    mapped_service_code: Optional[str] = None


class RiskAssessment(CamelModel):
    level: RiskLevel
    score: int = Field(ge=0, le=100)
    justification: str = ""
    action_recommendation: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, v):
        try:
            return max(0, min(100, int(round(float(v)))))
        except (TypeError, ValueError):
            return 50


class ChiefAuditorReview(CamelModel):
    determination: ReviewDetermination
    confidence: int = Field(default=0, ge=0, le=100)
    final_verdict: str = ""
    citations: List[str] = Field(default_factory=list)
    audit_log_entry: str = ""
    reviewed_at: Optional[datetime] = None


class SpendingStatus(str, Enum):
    NORMAL = "NORMAL"
    OVERSPEND_RISK = "OVERSPEND_RISK"
    UNDERSPEND_RISK = "UNDERSPEND_RISK"


class SpendingAnalysis(CamelModel):
    status: SpendingStatus = SpendingStatus.NORMAL
    summary: str = ""
    unspent_amount: float = 0.0
    unspent_percentage: float = 0.0
    projected_quarter_spend: Optional[float] = None
    recommendations: List[str] = Field(default_factory=list)
    care_plan_review_needed: bool = False


class SupplierVerification(CamelModel):
    supplier_name: str = ""
    summary: str = ""
    legitimate: Optional[bool] = None
    primary_services: List[str] = Field(default_factory=list)
    care_relevant: Optional[bool] = None
    sources: List[str] = Field(default_factory=list)
    live_search: bool = False
    available: bool = True
    checked_at: Optional[datetime] = None


class EmailDraft(CamelModel):
    to: str = ""
    subject: str = ""
    body: str = ""


class RejectionDrafts(CamelModel):
    vendor_email: EmailDraft
    client_email: EmailDraft


class Invoice(CamelModel):
    id: str
    tenant_id: str
    intake_id: str = ""
    supplier_name: str = ""
    supplier_abn: str = Field(default="", alias="supplierABN")
    invoice_number: str = ""
    invoice_date: str = ""
    total_amount: float = 0.0
    po_number_extracted: Optional[str] = None
    po_number_matched: Optional[str] = None
    status: InvoiceStatus = InvoiceStatus.RECEIVED
    confidence_score: float = 0.0
    file_url: str = ""
    line_items: List[LineItem] = Field(default_factory=list)
    validation_results: List[ValidationResult] = Field(default_factory=list)
    risk_assessment: Optional[RiskAssessment] = None
    chief_auditor_review: Optional[ChiefAuditorReview] = None
    spending_analysis: Optional[SpendingAnalysis] = None
    rejection_drafts: Optional[RejectionDrafts] = None
    supplier_verification: Optional[SupplierVerification] = None
    raw_content: Optional[str] = None

    @property
    def po_number(self) -> Optional[str]:
        return (self.po_number_extracted or "").strip() or (self.po_number_matched or "").strip() or None

    @property
    def has_reasoning_error(self) -> bool:
        return any(r.rule_id == "AI-ERROR" for r in self.validation_results)

    @property
    def has_reasoning_results(self) -> bool:
        return any(r.rule_id.startswith("AI-") for r in self.validation_results)


class PurchaseOrder(CamelModel):
    po_number: str
    client_id: str
    client_name: str = ""
    service_codes: List[str] = Field(default_factory=list)
    budget_remaining: float = 0.0
    quarterly_budget_cap: float = 0.0
    current_quarter_spend: float = 0.0
    current_quarter_end: Optional[date] = None
    valid_from: str
    valid_to: str


class FundingPackage(CamelModel):
    source: str
    start_date: Optional[str] = None
    supplements: List[str] = Field(default_factory=list)


class ClientProfile(CamelModel):
    id: str
    tenant_id: str = ""
    name: str = ""
    email: str = ""
    status: str = "ACTIVE"
    total_budget_cap: float = 0.0
    total_budget_used: float = 0.0
    funding_packages: List[FundingPackage] = Field(default_factory=list)
    specific_approvals: List[str] = Field(default_factory=list)
    active_schemes: List[str] = Field(default_factory=list)
    mmm_level: Optional[str] = None
    dva_card_type: Optional[str] = None
    is_indigenous: bool = False

    @property
    def classification(self) -> str:
        return ", ".join(p.source for p in self.funding_packages) or "UNCLASSIFIED"

    @property
    def supplements(self) -> list[str]:
        return [s for p in self.funding_packages for s in p.supplements]


class InvoiceIntake(CamelModel):
    """Structured output of the extraction collaborator."""

    supplier_name: str = "Unknown Supplier"
    supplier_abn: str = Field(default="", alias="supplierABN")
    invoice_number: str = "PENDING"
    invoice_date: Optional[str] = None
    total_amount: float = 0.0
    po_number_extracted: Optional[str] = None
    confidence_score: float = 0.0
    file_url: str = ""
    line_items: List[LineItem] = Field(default_factory=list)
    raw_content: Optional[str] = None
