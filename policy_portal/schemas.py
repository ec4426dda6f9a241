"""
Pydantic schemas for the policy portal API.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class ReconciliationSummaryModel(BaseModel):
    dryRun: bool
    limit: int
    totalOrphansFound: int
    processed: int
    createdProfiles: int
    linkedProfiles: int
    skippedNoEmail: int
    conflicts: int
    errors: int
    emailsSent: int


class ReconciliationDetailModel(BaseModel):
    clientId: str
    email: Optional[str] = None
    action: Literal[
        "skipped_no_email",
        "would_link",
        "linked",
        "would_create",
        "created",
        "conflict",
        "error",
    ]
    reason: str
    authUserId: Optional[str] = None


class FixProfilesResponse(BaseModel):
    summary: ReconciliationSummaryModel
    details: list[ReconciliationDetailModel]


class SignInRequest(BaseModel):
    email: str
    password: str


class SignInResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    user_id: str
    role: str
    redirect_to: str


class ForgotPasswordRequest(BaseModel):
    email: str
    redirect_to: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    password: str = Field(..., max_length=256)


class StatusResponse(BaseModel):
    status: Literal["ok"]


class ClientModel(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    document: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    client_number: Optional[int] = None
    created_at: datetime
    has_access: Optional[bool] = None


class MeResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None
    client: Optional[ClientModel] = None
    needs_password_change: bool
    redirect_to: str


class CompanyModel(BaseModel):
    id: str
    name: str


class PolicyModel(BaseModel):
    id: str
    client_id: str
    company_id: Optional[str] = None
    policy_number: str
    type: str
    start_date: date
    end_date: date
    status: Optional[str] = None
    notes: Optional[str] = None
    insured_name: Optional[str] = None
    insured_document: Optional[str] = None
    relationship: Optional[str] = None
    file_urls: list[str] = []
    created_at: datetime
    client_name: Optional[str] = None
    company_name: Optional[str] = None


class ClientDetailResponse(BaseModel):
    client: ClientModel
    policies: list[PolicyModel]


class ListClientsResponse(BaseModel):
    clients: list[ClientModel]


class ListPoliciesResponse(BaseModel):
    policies: list[PolicyModel]


class CreateClientRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    document: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    client_number: Optional[int] = None


class CreateClientResponse(BaseModel):
    client: ClientModel
    temp_password: str
    email_sent: bool


class UpdateClientRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    document: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    client_number: Optional[Union[int, str]] = None
    create_user_account: bool = False


class UpdateClientResponse(ClientModel):
    temp_password: Optional[str] = None
    email_sent: Optional[bool] = None
    user_created: Optional[bool] = None


class DeleteClientResponse(BaseModel):
    success: bool
    message: str


class PolicyCreateRequest(BaseModel):
    client_id: str
    company_id: Optional[str] = None
    policy_number: str = Field(..., max_length=128)
    type: str
    start_date: date
    end_date: date
    status: Optional[str] = None
    notes: Optional[str] = None
    insured_name: Optional[str] = None
    insured_document: Optional[str] = None
    relationship: Optional[str] = None
    file_urls: list[str] = []


class PolicyUpdateRequest(BaseModel):
    company_id: Optional[str] = None
    policy_number: Optional[str] = None
    type: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    insured_name: Optional[str] = None
    insured_document: Optional[str] = None
    relationship: Optional[str] = None
    file_urls: Optional[list[str]] = None


class AdminStatsResponse(BaseModel):
    total_clients: int
    total_policies: int
    active_policies: int
    expiring_policies: int
    clients_by_month: dict[str, int]
    policies_by_company: dict[str, int]


class ClientStatsResponse(BaseModel):
    total_policies: int
    active_policies: int
    expiring_policies: int
    expired_policies: int
