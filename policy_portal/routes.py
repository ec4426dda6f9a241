"""
HTTP routes for the policy portal API.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    HTTPException,
    Query,
    UploadFile,
)

from policy_portal.accounts import (
    ProvisioningError,
    deliver_welcome_email,
    provision_client_account,
    rollback_account,
    validate_password_strength,
)
from policy_portal.auth import AuthAdminClient
from policy_portal.config import get_settings
from policy_portal.db import (
    ROLE_CLIENT,
    STATUS_RENEWED,
    ClientRecord,
    DbClient,
    PolicyFilter,
)
from policy_portal.dependencies import (
    CurrentUser,
    get_auth_client,
    get_db_client,
    get_notifier,
    get_storage_client,
    landing_path,
    require_admin,
    require_client,
    require_user,
)
from policy_portal.notifier import Notifier
from policy_portal.policies import (
    admin_stats,
    client_stats,
    document_path,
    near_expiration_filter,
    policy_payload,
    sweep_renewed_to_pending,
)
from policy_portal.reconciliation import (
    ReconciliationSetupError,
    parse_batch_limit,
    run_reconciliation,
)
from policy_portal.schemas import (
    AdminStatsResponse,
    ChangePasswordRequest,
    ClientDetailResponse,
    ClientModel,
    ClientStatsResponse,
    CompanyModel,
    CreateClientRequest,
    CreateClientResponse,
    DeleteClientResponse,
    FixProfilesResponse,
    ForgotPasswordRequest,
    ListClientsResponse,
    ListPoliciesResponse,
    MeResponse,
    PolicyCreateRequest,
    PolicyModel,
    PolicyUpdateRequest,
    SignInRequest,
    SignInResponse,
    StatusResponse,
    UpdateClientRequest,
    UpdateClientResponse,
)
from policy_portal.service_http import BackendServiceError
from policy_portal.storage import StorageClient, path_from_public_url

logger = logging.getLogger(__name__)

router = APIRouter()


def _client_model(client: ClientRecord, has_access: Optional[bool] = None) -> ClientModel:
    return ClientModel(**client.as_dict(), has_access=has_access)


def _coerce_client_number(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _is_duplicate_account_error(exc: ProvisioningError) -> bool:
    cause = exc.__cause__
    if isinstance(cause, BackendServiceError) and cause.status_code == 422:
        return True
    message = str(exc).lower()
    return any(
        phrase in message
        for phrase in ("already exists", "already registered", "already been registered")
    )


@router.post("/admin/fix-profiles", response_model=FixProfilesResponse)
def fix_orphan_profiles(
    dryRun: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    sendEmails: Optional[str] = Query(None),
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
    auth: AuthAdminClient = Depends(get_auth_client),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Link or create access accounts for clients that have none.
    Dry run unless ``dryRun=false``; emails only when ``sendEmails=true``.
    """
    dry_run = dryRun != "false"
    batch_limit = parse_batch_limit(limit)
    send_emails = sendEmails == "true"
    logger.info(
        "Orphan profile reconciliation requested by %s (dry_run=%s, limit=%d, send_emails=%s)",
        current.user.id,
        dry_run,
        batch_limit,
        send_emails,
    )
    try:
        result = run_reconciliation(
            db=db,
            auth=auth,
            notifier=notifier,
            dry_run=dry_run,
            limit=batch_limit,
            send_emails=send_emails,
            page_size=get_settings().auth_users_page_size,
        )
    except ReconciliationSetupError as exc:
        logger.error("Orphan profile reconciliation aborted: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))
    return result.as_dict()


@router.post("/auth/signin", response_model=SignInResponse)
def sign_in(
    payload: SignInRequest,
    auth: AuthAdminClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
):
    try:
        session = auth.sign_in_with_password(payload.email, payload.password)
    except BackendServiceError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    profile = db.get_profile(session.user.id)
    if not profile:
        logger.error("No user profile for signed-in user %s", session.user.id)
        raise HTTPException(status_code=400, detail="User profile not found")
    return SignInResponse(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_in=session.expires_in,
        user_id=session.user.id,
        role=profile.role,
        redirect_to=landing_path(profile.role),
    )


@router.post("/auth/forgot-password", response_model=StatusResponse)
def forgot_password(
    payload: ForgotPasswordRequest,
    auth: AuthAdminClient = Depends(get_auth_client),
):
    try:
        auth.send_password_recovery(payload.email, redirect_to=payload.redirect_to)
    except BackendServiceError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return StatusResponse(status="ok")


@router.post("/auth/change-password", response_model=StatusResponse)
def change_password(
    payload: ChangePasswordRequest,
    current: CurrentUser = Depends(require_user),
    auth: AuthAdminClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
):
    errors = validate_password_strength(payload.password)
    if errors:
        raise HTTPException(
            status_code=400,
            detail="Password does not meet the requirements:\n" + "\n".join(errors),
        )
    try:
        auth.update_password(current.access_token, payload.password)
    except BackendServiceError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    try:
        db.update_profile(current.user.id, {"first_login": False})
    except Exception:
        logger.exception("Failed to clear first_login for %s", current.user.id)
    return StatusResponse(status="ok")


@router.get("/me", response_model=MeResponse)
def me(current: CurrentUser = Depends(require_user)):
    profile = current.profile
    return MeResponse(
        user_id=current.user.id,
        email=current.user.email,
        role=current.role,
        client=_client_model(current.client) if current.client else None,
        needs_password_change=bool(
            profile and profile.role == ROLE_CLIENT and profile.first_login
        ),
        redirect_to=landing_path(current.role),
    )


@router.get("/clients", response_model=ListClientsResponse)
def list_clients(
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
):
    linked = {p.client_id for p in db.list_profiles() if p.client_id}
    clients = sorted(db.list_clients(), key=lambda c: c.created_at, reverse=True)
    return ListClientsResponse(
        clients=[_client_model(c, has_access=c.id in linked) for c in clients]
    )


@router.get("/clients/{client_id}", response_model=ClientDetailResponse)
def get_client(
    client_id: str,
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
):
    client = db.get_client(client_id)
    if not client:
        raise HTTPException(status_code=404, detail="Client not found")
    companies = {c.id: c.name for c in db.list_companies()}
    policies = db.list_policies(PolicyFilter(client_id=client_id))
    return ClientDetailResponse(
        client=_client_model(client, has_access=db.get_profile_for_client(client_id) is not None),
        policies=[PolicyModel(**policy_payload(p, company_names=companies)) for p in policies],
    )


@router.post("/create-client", response_model=CreateClientResponse)
def create_client(
    payload: CreateClientRequest,
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
    auth: AuthAdminClient = Depends(get_auth_client),
    notifier: Notifier = Depends(get_notifier),
):
    if not payload.name or not payload.email or not payload.document:
        raise HTTPException(
            status_code=400, detail="Name, email and document are required"
        )
    client = db.create_client(
        name=payload.name,
        email=payload.email,
        document=payload.document,
        phone=payload.phone,
        address=payload.address,
        client_number=payload.client_number,
    )
    try:
        account = provision_client_account(
            auth=auth,
            db=db,
            client_id=client.id,
            email=payload.email,
            full_name=payload.name,
        )
    except ProvisioningError as exc:
        # The client row stays; the orphan reconciliation can link it later.
        logger.error("[%s] Client created without access account: %s", client.id, exc)
        raise HTTPException(status_code=500, detail=str(exc))

    email_sent = deliver_welcome_email(
        notifier,
        email=payload.email,
        name=payload.name,
        temp_password=account.temp_password,
    )
    return CreateClientResponse(
        client=_client_model(client, has_access=True),
        temp_password=account.temp_password,
        email_sent=email_sent,
    )


@router.patch("/clients/{client_id}", response_model=UpdateClientResponse)
def update_client(
    client_id: str,
    payload: UpdateClientRequest,
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
    auth: AuthAdminClient = Depends(get_auth_client),
    notifier: Notifier = Depends(get_notifier),
):
    changes = payload.model_dump(exclude_unset=True)
    create_account = changes.pop("create_user_account", False)
    if "client_number" in changes:
        changes["client_number"] = _coerce_client_number(changes["client_number"])

    existing = db.get_client(client_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Client not found")

    new_number = changes.get("client_number")
    if new_number and new_number != existing.client_number:
        if db.find_client("client_number", new_number, exclude_id=client_id):
            raise HTTPException(
                status_code=409,
                detail="Another client already uses that client number",
            )
    new_document = changes.get("document")
    if new_document and new_document != existing.document:
        if db.find_client("document", new_document, exclude_id=client_id):
            raise HTTPException(
                status_code=409,
                detail="Another client already uses that identity document",
            )
    new_email = changes.get("email")
    if create_account and new_email and new_email != existing.email:
        if db.find_client("email", new_email, exclude_id=client_id):
            raise HTTPException(
                status_code=409,
                detail="Another client already uses that email",
            )

    account = None
    email_sent = False
    if create_account and new_email and not existing.email:
        log_prefix = f"[ClientUpdate][{client_id}]"
        name = changes.get("name") or existing.name
        try:
            account = provision_client_account(
                auth=auth, db=db, client_id=client_id, email=new_email, full_name=name
            )
        except ProvisioningError as exc:
            logger.error("%s Account creation failed: %s", log_prefix, exc)
            if exc.stage == "auth" and _is_duplicate_account_error(exc):
                raise HTTPException(
                    status_code=409,
                    detail="This email is already registered by another user",
                )
            raise HTTPException(status_code=500, detail=str(exc))
        logger.info("%s Created access account %s", log_prefix, account.user.id)
        email_sent = deliver_welcome_email(
            notifier, email=new_email, name=name, temp_password=account.temp_password
        )

    try:
        updated = db.update_client(client_id, changes)
    except Exception:
        logger.exception("Error updating client %s", client_id)
        updated = None
    if updated is None:
        if account:
            db.delete_profile(account.user.id)
            rollback_account(auth, account.user.id)
        raise HTTPException(status_code=500, detail="Error updating client")

    response = UpdateClientResponse(**updated.as_dict())
    if account:
        response.temp_password = account.temp_password
        response.email_sent = email_sent
        response.user_created = True
    return response


@router.delete("/clients/{client_id}", response_model=DeleteClientResponse)
def delete_client(
    client_id: str,
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
    auth: AuthAdminClient = Depends(get_auth_client),
    storage: StorageClient = Depends(get_storage_client),
):
    if not db.get_client(client_id):
        raise HTTPException(status_code=404, detail="Client not found")

    profile = db.get_profile_for_client(client_id)
    policies = db.list_policies(PolicyFilter(client_id=client_id))

    urls = dict.fromkeys(url for p in policies for url in p.document_urls())
    for url in urls:
        path = path_from_public_url(url, storage.bucket)
        if not path:
            logger.warning("Could not find bucket in URL: %s", url)
            continue
        try:
            storage.remove([path])
        except Exception:
            logger.exception("Error deleting policy file %s", path)

    if policies:
        db.delete_policies_for_client(client_id)

    if profile:
        db.delete_profile(profile.id)
        try:
            auth.delete_user(profile.id)
        except BackendServiceError as exc:
            logger.error("Error deleting auth user %s: %s", profile.id, exc)
            raise HTTPException(
                status_code=500, detail="Error deleting the authentication user"
            )

    db.delete_client(client_id)
    return DeleteClientResponse(success=True, message="Client deleted")


@router.get("/companies", response_model=list[CompanyModel])
def list_companies(
    current: CurrentUser = Depends(require_user),
    db: DbClient = Depends(get_db_client),
):
    return [CompanyModel(id=c.id, name=c.name) for c in db.list_companies()]


def _name_maps(db: DbClient) -> tuple[dict, dict]:
    clients = {c.id: c.name for c in db.list_clients()}
    companies = {c.id: c.name for c in db.list_companies()}
    return clients, companies


@router.get("/policies", response_model=ListPoliciesResponse)
def list_policies(
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
):
    clients, companies = _name_maps(db)
    policies = db.list_policies(PolicyFilter(newest_first=True))
    return ListPoliciesResponse(
        policies=[PolicyModel(**policy_payload(p, clients, companies)) for p in policies]
    )


@router.post("/policies", response_model=PolicyModel, status_code=201)
def create_policy(
    payload: PolicyCreateRequest,
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
):
    if not db.get_client(payload.client_id):
        raise HTTPException(status_code=400, detail="Unknown client")
    data = payload.model_dump()
    if not data.get("insured_name"):
        # The policy holder is the insured person.
        data["relationship"] = "Titular"
    policy = db.create_policy(data)
    return PolicyModel(**policy_payload(policy))


@router.get("/policies/near-expiration", response_model=ListPoliciesResponse)
def policies_near_expiration(
    background_tasks: BackgroundTasks,
    month: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}$"),
    company: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
):
    today = date.today()
    if status != STATUS_RENEWED:
        background_tasks.add_task(sweep_renewed_to_pending, db, today)
    try:
        flt = near_expiration_filter(
            today=today,
            month=month,
            company_id=company,
            policy_type=type,
            status=status,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    clients, companies = _name_maps(db)
    return ListPoliciesResponse(
        policies=[
            PolicyModel(**policy_payload(p, clients, companies))
            for p in db.list_policies(flt)
        ]
    )


@router.get("/policies/{policy_id}", response_model=PolicyModel)
def get_policy(
    policy_id: str,
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
):
    policy = db.get_policy(policy_id)
    if not policy:
        raise HTTPException(status_code=404, detail="Policy not found")
    clients, companies = _name_maps(db)
    return PolicyModel(**policy_payload(policy, clients, companies))


@router.patch("/policies/{policy_id}", response_model=PolicyModel)
def update_policy(
    policy_id: str,
    payload: PolicyUpdateRequest,
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
):
    policy = db.update_policy(policy_id, payload.model_dump(exclude_unset=True))
    if not policy:
        raise HTTPException(status_code=404, detail="Policy not found")
    return PolicyModel(**policy_payload(policy))


@router.post("/policies/{policy_id}/documents", response_model=PolicyModel)
async def upload_policy_document(
    policy_id: str,
    file: UploadFile = File(...),
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    policy = db.get_policy(policy_id)
    if not policy:
        raise HTTPException(status_code=404, detail="Policy not found")
    if not file.filename:
        raise HTTPException(status_code=400, detail="File required")

    data = await file.read()
    path = document_path(policy.client_id, policy.id, file.filename)
    storage.upload_bytes(
        path, data, content_type=file.content_type or "application/octet-stream"
    )
    url = storage.public_url(path)
    logger.info("[%s] Uploaded policy document to %s", policy_id, path)

    updated = db.update_policy(policy_id, {"file_urls": [*policy.file_urls, url]})
    return PolicyModel(**policy_payload(updated))


@router.get("/cliente/policies", response_model=ListPoliciesResponse)
def my_policies(
    current: CurrentUser = Depends(require_client),
    db: DbClient = Depends(get_db_client),
):
    companies = {c.id: c.name for c in db.list_companies()}
    policies = db.list_policies(PolicyFilter(client_id=current.profile.client_id))
    return ListPoliciesResponse(
        policies=[PolicyModel(**policy_payload(p, company_names=companies)) for p in policies]
    )


@router.get("/admin/stats", response_model=AdminStatsResponse)
def get_admin_stats(
    current: CurrentUser = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
):
    return AdminStatsResponse(**admin_stats(db))


@router.get("/cliente/stats", response_model=ClientStatsResponse)
def get_client_stats(
    current: CurrentUser = Depends(require_client),
    db: DbClient = Depends(get_db_client),
):
    return ClientStatsResponse(**client_stats(db, current.profile.client_id))
