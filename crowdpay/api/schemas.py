"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class InitiatePaymentRequest(BaseModel):
    """Request schema for starting a contribution payment."""

    provider: str = Field(..., description="Provider id (mtn, moov, flooz, orange, wave, paypal, stripe)")
    payer: Optional[str] = Field(
        default=None, description="Payer phone number (required for mobile money)"
    )
    amount: Decimal = Field(..., gt=0, description="Contribution amount")
    currency: str = Field(default="XOF", min_length=3, max_length=3, description="Currency code")
    project_id: int = Field(..., description="Project receiving the contribution")
    user_id: int = Field(..., description="Contributor")
    description: Optional[str] = Field(default=None, max_length=255, description="Payment description")

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Provider ids are lower case."""
        return v.strip().lower()

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "provider": "mtn",
                    "payer": "+228 90 12 34 56",
                    "amount": "5000",
                    "currency": "XOF",
                    "project_id": 6,
                    "user_id": 42,
                    "description": "Contribution to project #6",
                }
            ]
        }
    }


class InitiatePaymentResponse(BaseModel):
    """Response schema for payment initiation."""

    success: bool
    transaction_id: str = Field(..., description="Transaction id, echoed back by the provider")
    provider: str
    provider_name: str
    status: str = Field(..., description="Always 'pending' on initiation")
    amount: Decimal = Field(..., description="Amount sent to the provider")
    currency: str = Field(..., description="Currency sent to the provider")
    requested_amount: Decimal
    requested_currency: str
    provider_reference: Optional[str] = Field(default=None, description="Provider-side reference")
    redirect_url: Optional[str] = Field(
        default=None, description="Hosted payment page for gateway providers"
    )
    message: str


class TransactionResponse(BaseModel):
    """A stored payment transaction."""

    id: int
    transaction_id: str
    status: str
    amount: Decimal
    currency: str
    requested_amount: Optional[Decimal] = None
    requested_currency: Optional[str] = None
    method: str
    provider: str
    phone_number: Optional[str] = None
    provider_reference: Optional[str] = None
    error_message: Optional[str] = None
    user_id: int
    project_id: int
    created_at: datetime
    updated_at: datetime


class ContributionResponse(BaseModel):
    id: int
    amount: Decimal
    status: str
    payment_method: str
    created_at: datetime


class ProjectProgressResponse(BaseModel):
    id: int
    title: str
    currency: str
    current_amount: Decimal
    target_amount: Decimal
    progress: int = Field(..., description="Funding progress in percent")


class TransactionStatusResponse(BaseModel):
    """Response schema for a status check."""

    success: bool
    transaction: TransactionResponse
    contribution: Optional[ContributionResponse] = None
    project: Optional[ProjectProgressResponse] = None
    provider_error: Optional[str] = Field(
        default=None, description="Set when the provider could not be polled"
    )


class CancelTransactionResponse(BaseModel):
    """Response schema for a cancellation."""

    success: bool
    transaction_id: str
    status: str
    applied: bool = Field(..., description="True if this call cancelled the transaction")
    provider_cancelled: bool = Field(..., description="True if the provider confirmed the cancel")
    message: str
    transaction: TransactionResponse


class CallbackResponse(BaseModel):
    """Response schema for provider callbacks."""

    success: bool
    status: str
    transaction_id: Optional[str] = None
    applied: bool = False
    message: Optional[str] = None


class ProviderInfo(BaseModel):
    id: str
    name: str
    kind: str
    method: str
    countries: List[str]
    currencies: List[str]


class ProvidersResponse(BaseModel):
    providers: List[ProviderInfo]


class IdentifyProviderResponse(BaseModel):
    phone_number: str = Field(..., description="Normalized phone number")
    provider: Optional[str] = Field(default=None, description="Detected operator, if any")
    provider_name: Optional[str] = None


class ReconciliationResults(BaseModel):
    processed: int
    completed: int
    failed: int
    remained_pending: int
    errors: int


class ReconciliationResponse(BaseModel):
    """Response schema for a reconciliation sweep."""

    success: bool
    timestamp: datetime
    older_than_hours: float
    results: ReconciliationResults


class ReportBucket(BaseModel):
    count: int
    amount: Decimal
    successful: int


class ProjectReportRow(ReportBucket):
    project_id: int
    title: str


class ReportSummary(BaseModel):
    total_transactions: int
    total_amount: Decimal
    currency: str = Field(
        ..., description="Currency of total_amount and of the provider/project buckets"
    )
    successful_transactions: int
    success_rate: float = Field(..., description="Completed share in percent, 2 decimals")
    unconverted_transactions: int = Field(
        default=0, description="Transactions left out of converted totals (no exchange rate)"
    )


class ReportResponse(BaseModel):
    """Response schema for transaction reports."""

    period: Dict[str, datetime]
    summary: ReportSummary
    by_currency: Dict[str, ReportBucket]
    by_provider: Dict[str, ReportBucket]
    by_project: List[ProjectReportRow]


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/degraded/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
