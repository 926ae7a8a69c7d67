"""
GoogleDriveConnector — OAuth2 web flow + Drive v3 file listing.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx

from config.settings import Settings, config
from connectors.base import BaseConnector
from connectors.models import FileMetadata, FilePage, ProviderType, RawFileItem, TokenGrant

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_DRIVE_FILES_URL = "https://www.googleapis.com/drive/v3/files"

GOOGLE_SCOPES = [
    "openid",
    "email",
    "profile",
    "https://www.googleapis.com/auth/drive.readonly",
]


class GoogleDriveConnector(BaseConnector):
    """OAuth2 connector for Google Drive."""

    def __init__(
        self,
        settings: Settings = config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    @property
    def provider(self) -> ProviderType:
        return ProviderType.GOOGLE

    @property
    def display_name(self) -> str:
        return "Google Drive"

    @property
    def scopes(self) -> List[str]:
        return list(GOOGLE_SCOPES)

    def is_configured(self) -> bool:
        return bool(self._settings.google_client_id and self._settings.google_client_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport)

    def _redirect_uri(self) -> str:
        return f"{self._settings.oauth_redirect_base}/api/v1/connect/google/callback"

    def _ttl(self, data: Dict[str, Any]) -> timedelta:
        return timedelta(
            seconds=int(data.get("expires_in", self._settings.google_token_ttl_seconds))
        )

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": self._settings.google_client_id,
            "redirect_uri": self._redirect_uri(),
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
            "state": state,
        }
        return f"{_GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(self, code: str) -> Dict[str, Any]:
        """Exchange auth code for tokens."""
        async with self._client() as client:
            resp = await client.post(
                _GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self._settings.google_client_id,
                    "client_secret": self._settings.google_client_secret,
                    "redirect_uri": self._redirect_uri(),
                    "grant_type": "authorization_code",
                },
            )
            resp.raise_for_status()
            data = resp.json()

        return {
            "access_token": data["access_token"],
            "refresh_token": data.get("refresh_token"),
            "expires_in": int(self._ttl(data).total_seconds()),
            "scopes": data.get("scope", "").split(),
        }

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Use the refresh token to get a new access token."""
        async with self._client() as client:
            resp = await client.post(
                _GOOGLE_TOKEN_URL,
                data={
                    "client_id": self._settings.google_client_id,
                    "client_secret": self._settings.google_client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
            resp.raise_for_status()
            data = resp.json()

        # Google rarely rotates refresh tokens; None keeps the stored one
        return TokenGrant(
            access_token_ref=data["access_token"],
            refresh_token_ref=data.get("refresh_token"),
            ttl=self._ttl(data),
        )

    async def revoke_token(self, token: str) -> bool:
        """Revoke the token at Google."""
        async with self._client() as client:
            resp = await client.post(_GOOGLE_REVOKE_URL, params={"token": token})
        return resp.status_code == 200

    async def _drive_get(
        self, url: str, access_token: str, user_id: str, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            if resp.is_error:
                logger.error(
                    "Google Drive API error for user %s: %s %s",
                    user_id, resp.status_code, resp.text[:200],
                )
            resp.raise_for_status()
            return resp.json()

    @staticmethod
    def _to_item(f: Dict[str, Any]) -> RawFileItem:
        return RawFileItem(
            id=f["id"],
            name=f.get("name", ""),
            mime_type=f.get("mimeType"),
            size_bytes=f.get("size"),       # absent for Google Docs
            modified_utc=f.get("modifiedTime"),
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
        query = "trashed = false"
        if folder_id:
            escaped = folder_id.replace("\\", "\\\\").replace("'", "\\'")
            query = f"'{escaped}' in parents and {query}"
        params: Dict[str, Any] = {
            "q": query,
            "fields": "nextPageToken,files(id,name,mimeType,size,modifiedTime)",
            "pageSize": page_size or self._settings.listing_page_size,
            "orderBy": "modifiedTime desc",
        }
        if page_token:
            params["pageToken"] = page_token

        data = await self._drive_get(_DRIVE_FILES_URL, access_token, user_id, params)
        return FilePage(
            items=[self._to_item(f) for f in data.get("files", [])],
            next_page_token=data.get("nextPageToken"),
        )

    async def get_file_metadata(self, access_token: str, file_id: str, user_id: str) -> FileMetadata:
        data = await self._drive_get(
            f"{_DRIVE_FILES_URL}/{quote(file_id, safe='')}",
            access_token,
            user_id,
            {"fields": "id,name,mimeType,size,modifiedTime,webViewLink"},
        )
        return FileMetadata(
            **self._to_item(data).model_dump(),
            provider=self.provider,
            web_url=data.get("webViewLink"),
            provider_details=data,
        )

    async def get_view_url(self, access_token: str, file_id: str, user_id: str) -> str:
        data = await self._drive_get(
            f"{_DRIVE_FILES_URL}/{quote(file_id, safe='')}",
            access_token,
            user_id,
            {"fields": "webViewLink"},
        )
        link = data.get("webViewLink")
        if not link:
            raise ValueError(f"Google Drive returned no webViewLink for file {file_id}")
        return link
