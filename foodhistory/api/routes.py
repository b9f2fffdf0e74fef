from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from foodhistory.api.schemas import (
    AccountResponse,
    Envelope,
    LoginRequest,
    OAuthStartResponse,
    PrincipalResponse,
    RegisterRequest,
)
from foodhistory.config import Settings
from foodhistory.logging import get_logger
from foodhistory.service.auth import LoginOutcome
from foodhistory.service.errors import AuthenticationError, ForbiddenError
from foodhistory.service.runtime import get_runtime
from foodhistory.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _apply_remember_me_cookie(response: Response, settings: Settings, value: str) -> None:
    response.set_cookie(
        settings.remember_me_cookie_name,
        value,
        max_age=settings.remember_me_max_age_seconds,
        path="/",
        httponly=True,
        secure=settings.remember_me_cookie_secure,
        samesite=settings.remember_me_cookie_samesite,
    )


def _principal(outcome: LoginOutcome, *, redirect_to: Optional[str] = None) -> PrincipalResponse:
    account = outcome.account
    return PrincipalResponse(
        account_id=account.id,
        username=account.username,
        email=account.email,
        effective_username=outcome.effective_username,
        authorities=sorted(outcome.authorities),
        federation_authorized=account.federation_authorized,
        remember_me=outcome.remember_me_cookie is not None,
        redirect_to=redirect_to,
    )


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        username=account.username,
        email=account.email,
        roles=sorted(account.roles),
        enabled=account.enabled,
        federation_authorized=account.federation_authorized,
    )


async def get_remembered_principal(request: Request) -> LoginOutcome:
    runtime = get_runtime()
    cookie_value = request.cookies.get(runtime.settings.remember_me_cookie_name)
    outcome = runtime.auth.restore(cookie_value, ip=_client_ip(request))
    if outcome is None:
        raise AuthenticationError("authentication required")
    return outcome


async def get_admin_principal(
    principal: LoginOutcome = Depends(get_remembered_principal),
) -> LoginOutcome:
    if not principal.is_admin:
        raise ForbiddenError("admin access required")
    return principal


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a local account with a password credential."""
    runtime = get_runtime()
    account = runtime.auth.register(
        body.username,
        body.password,
        body.confirm_password,
        email=body.email,
    )
    return Envelope(status="ok", data=_account_response(account))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with username (or email) and password.

    Sets the remember-me cookie when the caller opted in and a grant was minted.
    """
    runtime = get_runtime()
    outcome = runtime.auth.login(
        body.username,
        body.password,
        remember_me=body.remember_me,
        ip=_client_ip(request),
    )
    if outcome.remember_me_cookie:
        _apply_remember_me_cookie(response, runtime.settings, outcome.remember_me_cookie)
    return Envelope(status="ok", data=_principal(outcome))


@router.get("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(provider: str = Path(..., description="OAuth provider")):
    runtime = get_runtime()
    start = runtime.oauth.start(provider)
    return Envelope(
        status="ok",
        data=OAuthStartResponse(
            authorization_url=start["authorization_url"],
            state=start["state"],
            provider=provider,
        ),
    )


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    request: Request,
    response: Response,
    provider: str = Path(..., description="OAuth provider"),
    code: str = Query(..., max_length=512),
    state: str = Query(..., max_length=128),
    remember_me: bool = Query(True),
):
    """Complete the authorization-code flow and reconcile the federated identity."""
    runtime = get_runtime()
    claims = await runtime.oauth.complete(provider, code, state)
    outcome = runtime.auth.federated_login(
        claims, remember_me=remember_me, ip=_client_ip(request)
    )
    if outcome.remember_me_cookie:
        _apply_remember_me_cookie(response, runtime.settings, outcome.remember_me_cookie)
    return Envelope(
        status="ok",
        data=_principal(outcome, redirect_to=runtime.settings.oauth_post_login_redirect),
    )


@router.post("/auth/remember-me", response_model=Envelope, tags=["auth"])
async def remember_me(principal: LoginOutcome = Depends(get_remembered_principal)):
    """Restore the principal from the remember-me cookie."""
    return Envelope(status="ok", data=_principal(principal))


@router.post("/users/{account_id}/authorize", response_model=Envelope, tags=["admin"])
async def authorize_account(
    account_id: str = Path(..., max_length=64),
    principal: LoginOutcome = Depends(get_admin_principal),
):
    runtime = get_runtime()
    account = runtime.auth.authorize_account(account_id)
    logger.info(
        "admin_authorized_account", admin_id=principal.account.id, account_id=account.id
    )
    return Envelope(status="ok", data=_account_response(account))
