"""
OneDriveConnector — Microsoft identity platform OAuth2 + Graph file listing.

Microsoft rotates refresh tokens on every redeem, so the grant returned by
``refresh_access_token`` always carries the new one.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx

from config.settings import Settings, config
from connectors.base import BaseConnector
from connectors.errors import InvalidPageToken
from connectors.models import FileMetadata, FilePage, ProviderType, RawFileItem, TokenGrant

logger = logging.getLogger(__name__)

_LOGIN_BASE = "https://login.microsoftonline.com"
_GRAPH_API = "https://graph.microsoft.com/v1.0"

MICROSOFT_SCOPES = ["offline_access", "Files.Read", "Sites.Read.All"]


class OneDriveConnector(BaseConnector):
    """OAuth2 connector for Microsoft OneDrive."""

    def __init__(
        self,
        settings: Settings = config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    @property
    def provider(self) -> ProviderType:
        return ProviderType.MICROSOFT

    @property
    def display_name(self) -> str:
        return "OneDrive"

    @property
    def scopes(self) -> List[str]:
        return list(MICROSOFT_SCOPES)

    def is_configured(self) -> bool:
        return bool(self._settings.microsoft_client_id and self._settings.microsoft_client_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport)

    def _endpoint(self, name: str) -> str:
        return f"{_LOGIN_BASE}/{self._settings.microsoft_tenant}/oauth2/v2.0/{name}"

    def _redirect_uri(self) -> str:
        return f"{self._settings.oauth_redirect_base}/api/v1/connect/microsoft/callback"

    def _ttl(self, data: Dict[str, Any]) -> timedelta:
        return timedelta(
            seconds=int(data.get("expires_in", self._settings.microsoft_token_ttl_seconds))
        )

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": self._settings.microsoft_client_id,
            "redirect_uri": self._redirect_uri(),
            "response_type": "code",
            "response_mode": "query",
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{self._endpoint('authorize')}?{urlencode(params)}"

    async def _token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        payload = {
            "client_id": self._settings.microsoft_client_id,
            "client_secret": self._settings.microsoft_client_secret,
            "scope": " ".join(self.scopes),
            **form,
        }
        async with self._client() as client:
            resp = await client.post(self._endpoint("token"), data=payload)
            data = resp.json() if resp.content else {}
            if "error" in data:
                raise ValueError(
                    f"Microsoft OAuth error: {data.get('error_description', data['error'])}"
                )
            resp.raise_for_status()
        return data

    async def handle_callback(self, code: str) -> Dict[str, Any]:
        data = await self._token_request(
            {
                "code": code,
                "redirect_uri": self._redirect_uri(),
                "grant_type": "authorization_code",
            }
        )
        return {
            "access_token": data["access_token"],
            "refresh_token": data.get("refresh_token"),
            "expires_in": int(self._ttl(data).total_seconds()),
            "scopes": data.get("scope", "").split(),
        }

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        data = await self._token_request(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"}
        )
        return TokenGrant(
            access_token_ref=data["access_token"],
            refresh_token_ref=data.get("refresh_token"),
            ttl=self._ttl(data),
        )

    async def _graph_get(
        self,
        url: str,
        access_token: str,
        user_id: str,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            if resp.is_error:
                logger.error(
                    "Microsoft Graph API error for user %s: %s %s",
                    user_id, resp.status_code, resp.text[:200],
                )
            resp.raise_for_status()
            return resp.json()

    @staticmethod
    def _to_item(item: Dict[str, Any]) -> RawFileItem:
        return RawFileItem(
            id=item["id"],
            name=item.get("name", ""),
            mime_type=(item.get("file") or {}).get("mimeType"),   # None for folders
            size_bytes=item.get("size"),
            modified_utc=item.get("lastModifiedDateTime"),
        )

    async def list_files(
        self,
        access_token: str,
        user_id: str,
        *,
        folder_id: Optional[str] = None,
        page_size: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> FilePage:
        if page_token:
            # Graph pages by handing back the full @odata.nextLink URL
            if not page_token.startswith(f"{_GRAPH_API}/"):
                raise InvalidPageToken(
                    "OneDrive page token is not a Microsoft Graph link",
                    provider=self.provider.value,
                    user_id=user_id,
                )
            data = await self._graph_get(page_token, access_token, user_id)
        else:
            if folder_id:
                url = f"{_GRAPH_API}/me/drive/items/{quote(folder_id, safe='')}/children"
            else:
                url = f"{_GRAPH_API}/me/drive/root/children"
            params = {
                "$top": str(page_size or self._settings.listing_page_size),
                "$orderby": "lastModifiedDateTime desc",
            }
            data = await self._graph_get(url, access_token, user_id, params)

        return FilePage(
            items=[self._to_item(item) for item in data.get("value", [])],
            next_page_token=data.get("@odata.nextLink"),
        )

    async def _drive_item(self, access_token: str, file_id: str, user_id: str) -> Dict[str, Any]:
        return await self._graph_get(
            f"{_GRAPH_API}/me/drive/items/{quote(file_id, safe='')}", access_token, user_id
        )

    async def get_file_metadata(self, access_token: str, file_id: str, user_id: str) -> FileMetadata:
        data = await self._drive_item(access_token, file_id, user_id)
        return FileMetadata(
            **self._to_item(data).model_dump(),
            provider=self.provider,
            web_url=data.get("webUrl"),
            provider_details=data,
        )

    async def get_view_url(self, access_token: str, file_id: str, user_id: str) -> str:
        data = await self._drive_item(access_token, file_id, user_id)
        if not data.get("webUrl"):
            raise ValueError(f"OneDrive returned no webUrl for item {file_id}")
        return data["webUrl"]
