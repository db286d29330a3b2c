from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response

from eventflow_auth.api.schemas import (
    AuthBundleResponse,
    Envelope,
    LoginRequest,
    PrincipalResponse,
    RefreshTokenRequest,
    RegisterRequest,
    RevokeTokenRequest,
    UserResponse,
)
from eventflow_auth.service.auth import AuthBundle
from eventflow_auth.service.runtime import get_runtime
from eventflow_auth.service.token_validation import AccessTokenValidator, TokenPrincipal

router = APIRouter(prefix="/api/auth")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _bundle_response(bundle: AuthBundle) -> AuthBundleResponse:
    return AuthBundleResponse(
        access_token=bundle.access_token,
        refresh_token=bundle.refresh_token,
        access_token_expiry=bundle.access_token_expiry,
        user=UserResponse(
            id=bundle.user.id,
            email=bundle.user.email,
            first_name=bundle.user.first_name,
            last_name=bundle.user.last_name,
            role=bundle.user.role,
        ),
    )


async def get_bearer_token(authorization: Optional[str] = Header(None)) -> str:
    token = AccessTokenValidator.extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return token


async def get_principal(token: str = Depends(get_bearer_token)) -> TokenPrincipal:
    principal = await get_runtime().validator.validate(token)
    if not principal:
        raise _http_error("unauthorized", "invalid access token", status_code=401)
    return principal


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account with the default role and return a fresh token pair.

    Raises:
        409: If the email (compared case-insensitively) is already registered
    """
    runtime = get_runtime()
    bundle = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=_bundle_response(bundle))


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    bundle = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_bundle_response(bundle))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshTokenRequest):
    """Exchange a refresh token for a new pair; the presented token is spent."""
    runtime = get_runtime()
    bundle = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_bundle_response(bundle))


@router.post("/revoke", status_code=204, tags=["auth"])
async def revoke(
    body: RevokeTokenRequest,
    token: str = Depends(get_bearer_token),
    principal: TokenPrincipal = Depends(get_principal),
):
    runtime = get_runtime()
    await runtime.auth.revoke(body.refresh_token, owner_id=principal.user_id)
    # The access token used for logout stops working immediately
    await runtime.validator.revoke_access_token(token)
    return Response(status_code=204)


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: TokenPrincipal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.user_id,
            email=principal.email,
            role=principal.role,
            first_name=principal.first_name,
            last_name=principal.last_name,
            expires_at=principal.expires_at,
        ),
    )
