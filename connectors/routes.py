"""
Connector API routes — link / unlink, connection status, file listing and
browsing, and the browser OAuth round trip (auth-url → callback).

Route prefix: /api/v1
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import RedirectResponse

from auth.dependencies import get_current_user_id, get_services
from config.settings import config
from connectors.models import ConnectionStatusResponse, FileMetadata, ProviderFilePage
from core.service_factory import LinkingServices
from utils.schemas import (
    AuthUrlResponse,
    FileListResponse,
    FileViewUrlResponse,
    LinkRequest,
    ProviderInfo,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])


# ── State token helpers (CSRF protection) ──────────────────────────────


def _sign_state(raw: bytes) -> str:
    return hmac.new(config.oauth_state_secret.encode(), raw, hashlib.sha256).hexdigest()[:32]


def create_state(user_id: str, provider: str) -> str:
    """Opaque state binding user_id + provider + expiry + nonce."""
    payload = json.dumps(
        {
            "user_id": user_id,
            "provider": provider,
            "exp": int(time.time()) + config.oauth_state_ttl_seconds,
            "nonce": secrets.token_urlsafe(8),
        }
    ).encode()
    return urlsafe_b64encode(payload).decode() + "." + _sign_state(payload)


def verify_state(state: str, provider: str) -> str:
    """Verify state token, return user_id. Raises HTTPException(400) on failure."""
    try:
        body, sep, sig = state.partition(".")
        if not sep:
            raise ValueError("bad format")
        raw = urlsafe_b64decode(body.encode())
        if not hmac.compare_digest(sig, _sign_state(raw)):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("state expired")
        if payload.get("provider") != provider:
            raise ValueError("provider mismatch")
        return payload["user_id"]
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid or expired OAuth state: {exc}",
        ) from exc


# ── Providers & OAuth round trip ───────────────────────────────────────


@router.get("/connect/providers", response_model=List[ProviderInfo])
async def list_providers(services: LinkingServices = Depends(get_services)) -> list[dict]:
    """Registered providers and whether their OAuth client is configured."""
    registered = {p.value for p in services.providers.providers()}
    return [info for info in services.connectors.list_providers() if info["provider"] in registered]


@router.get("/connect/{provider}/auth-url", response_model=AuthUrlResponse)
async def get_auth_url(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    services: LinkingServices = Depends(get_services),
) -> AuthUrlResponse:
    """OAuth authorization URL for the frontend to open."""
    descriptor = services.providers.descriptor_for(provider)
    connector = services.connectors.get(descriptor.provider)
    state = create_state(user_id, descriptor.provider.value)
    return AuthUrlResponse(provider=descriptor.provider, auth_url=connector.get_auth_url(state))


@router.get("/connect/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: str = Query(...),
    state: str = Query(...),
    services: LinkingServices = Depends(get_services),
) -> RedirectResponse:
    """
    The provider redirects here after consent.  Exchanges the code, stores
    the link and sends the browser back to the frontend.
    """
    descriptor = services.providers.descriptor_for(provider)
    provider_id = descriptor.provider.value
    user_id = verify_state(state, provider_id)
    connector = services.connectors.get(descriptor.provider)

    try:
        token_data = await connector.handle_callback(code)
    except Exception as exc:
        logger.error("OAuth callback failed for %s: %s", provider_id, exc)
        query = urlencode({"provider": provider_id, "error": "exchange_failed"})
        return RedirectResponse(f"{config.frontend_base_url}/connections/failure?{query}")

    await services.tokens.establish_link(
        user_id,
        descriptor.provider,
        token_data.get("scopes") or connector.scopes,
        token_data["access_token"],
        token_data.get("refresh_token"),
        ttl=token_data.get("expires_in"),
    )
    logger.info("OAuth connected: user=%s provider=%s", user_id, provider_id)
    query = urlencode({"provider": provider_id})
    return RedirectResponse(f"{config.frontend_base_url}/connections/success?{query}")


# ── Link / unlink ──────────────────────────────────────────────────────


@router.post(
    "/connect/{provider}/link",
    response_model=ConnectionStatusResponse,
    status_code=status.HTTP_201_CREATED,
)
async def link_provider(
    provider: str,
    body: LinkRequest,
    user_id: str = Depends(get_current_user_id),
    services: LinkingServices = Depends(get_services),
) -> ConnectionStatusResponse:
    """Store grant material obtained by an out-of-band authorization flow."""
    record = await services.tokens.establish_link(
        user_id,
        provider,
        body.scopes,
        body.access_token,
        body.refresh_token,
        ttl=body.expires_in,
    )
    return ConnectionStatusResponse.from_record(record, record.provider)


@router.post("/connect/{provider}/disconnect", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect_provider(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    services: LinkingServices = Depends(get_services),
) -> Response:
    """Revoke the link. Safe to call repeatedly."""
    await services.tokens.revoke(user_id, provider)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Status ─────────────────────────────────────────────────────────────


@router.get("/connections/status", response_model=List[ConnectionStatusResponse])
async def connection_status(
    user_id: str = Depends(get_current_user_id),
    services: LinkingServices = Depends(get_services),
) -> List[ConnectionStatusResponse]:
    return await services.status.status_for_all_providers(user_id)


@router.get("/connections/status/{provider}", response_model=ConnectionStatusResponse)
async def provider_status(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    services: LinkingServices = Depends(get_services),
) -> ConnectionStatusResponse:
    return await services.status.status_for(user_id, provider)


# ── Files ──────────────────────────────────────────────────────────────


@router.get("/files", response_model=FileListResponse)
async def list_files(
    sort: str = Query("provider", pattern="^(provider|modified)$"),
    page_size: Optional[int] = Query(None, ge=1, le=1000),
    user_id: str = Depends(get_current_user_id),
    services: LinkingServices = Depends(get_services),
) -> FileListResponse:
    """Files from every linked provider; failing providers appear in ``errors``."""
    result = await services.files.list_files(
        user_id, sort_by_modified=sort == "modified", page_size=page_size
    )
    return FileListResponse(items=result.items, errors=result.errors)


@router.get("/files/{provider}", response_model=ProviderFilePage)
async def list_provider_files(
    provider: str,
    folder_id: Optional[str] = Query(None),
    page_size: Optional[int] = Query(None, ge=1, le=1000),
    page_token: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    services: LinkingServices = Depends(get_services),
) -> ProviderFilePage:
    """One page from a single provider, optionally inside ``folder_id``."""
    return await services.files.list_provider_files(
        user_id,
        provider,
        folder_id=folder_id,
        page_size=page_size,
        page_token=page_token,
    )


@router.get("/files/{provider}/{file_id}/metadata", response_model=FileMetadata)
async def file_metadata(
    provider: str,
    file_id: str,
    user_id: str = Depends(get_current_user_id),
    services: LinkingServices = Depends(get_services),
) -> FileMetadata:
    return await services.files.get_file_metadata(user_id, provider, file_id)


@router.get("/files/{provider}/{file_id}/view")
async def view_file(
    provider: str,
    file_id: str,
    user_id: str = Depends(get_current_user_id),
    services: LinkingServices = Depends(get_services),
) -> RedirectResponse:
    """Redirect the browser to the provider's web view of the file."""
    url = await services.files.get_file_view_url(user_id, provider, file_id)
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/files/{provider}/{file_id}/view-url", response_model=FileViewUrlResponse)
async def view_file_url(
    provider: str,
    file_id: str,
    user_id: str = Depends(get_current_user_id),
    services: LinkingServices = Depends(get_services),
) -> FileViewUrlResponse:
    """Same as ``/view`` but as JSON, for frontends that open a new tab."""
    url = await services.files.get_file_view_url(user_id, provider, file_id)
    return FileViewUrlResponse(url=url)
