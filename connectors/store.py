"""
LinkStore — keyed storage of LinkRecords, one per (user_id, provider).

Every write bumps ``version``; callers pass ``expected_version`` to turn the
upsert into a compare-and-swap so a stale refresh can never overwrite a
concurrent revoke.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import TokenCipher
from connectors.errors import ConcurrentLinkModification
from connectors.models import LinkRecord, LinkStatus, ProviderType
from database.models import ProviderLink

logger = logging.getLogger(__name__)

_REPLACE_ATTEMPTS = 3


class LinkStore(ABC):
    @abstractmethod
    async def get(self, user_id: str, provider: ProviderType) -> Optional[LinkRecord]:
        ...

    @abstractmethod
    async def upsert(
        self, record: LinkRecord, *, expected_version: Optional[int] = None
    ) -> LinkRecord:
        """
        Atomically insert or replace the record for ``record.key``.

        ``expected_version=None`` replaces whatever is stored, even if another
        writer got there first.  ``expected_version=0`` means "only if
        absent".  With an expected version, raises
        ``ConcurrentLinkModification`` when the stored version differs.
        Returns the stored copy with its new version.
        """

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[LinkRecord]:
        ...


def _conflict(record: LinkRecord, expected: int, found: int) -> ConcurrentLinkModification:
    return ConcurrentLinkModification(
        f"{record.provider.value} link for user {record.user_id} changed "
        f"(expected version {expected}, found {found})",
        provider=record.provider.value,
        user_id=record.user_id,
    )


class InMemoryLinkStore(LinkStore):
    """Process-local store for tests and ``database_url=memory://``."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, ProviderType], LinkRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str, provider: ProviderType) -> Optional[LinkRecord]:
        return self._records.get((user_id, provider))

    async def upsert(
        self, record: LinkRecord, *, expected_version: Optional[int] = None
    ) -> LinkRecord:
        async with self._lock:
            current = self._records.get(record.key)
            current_version = current.version if current else 0
            if expected_version is not None and expected_version != current_version:
                raise _conflict(record, expected_version, current_version)
            stored = record.model_copy(update={"version": current_version + 1})
            self._records[record.key] = stored
            return stored

    async def list_for_user(self, user_id: str) -> List[LinkRecord]:
        return sorted(
            (r for (uid, _), r in self._records.items() if uid == user_id),
            key=lambda r: r.provider.value,
        )

    def __len__(self) -> int:
        return len(self._records)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlLinkStore(LinkStore):
    """SQLAlchemy-backed store; token refs are encrypted at rest."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: TokenCipher,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher

    def _to_record(self, row: ProviderLink) -> LinkRecord:
        return LinkRecord(
            user_id=row.user_id,
            provider=ProviderType(row.provider),
            status=LinkStatus(row.status),
            granted_scopes=frozenset(row.scopes or []),
            access_token_ref=self._cipher.decrypt(row.access_token),
            refresh_token_ref=self._cipher.decrypt(row.refresh_token),
            expires_at_utc=_aware(row.expires_at),
            revoked_at_utc=_aware(row.revoked_at),
            linked_at_utc=_aware(row.linked_at),
            last_refreshed_utc=_aware(row.last_refreshed),
            version=row.version,
        )

    def _columns(self, record: LinkRecord) -> dict:
        return {
            "status": record.status.value,
            "scopes": sorted(record.granted_scopes),
            "access_token": self._cipher.encrypt(record.access_token_ref),
            "refresh_token": self._cipher.encrypt(record.refresh_token_ref),
            "expires_at": record.expires_at_utc,
            "revoked_at": record.revoked_at_utc,
            "linked_at": record.linked_at_utc,
            "last_refreshed": record.last_refreshed_utc,
        }

    async def get(self, user_id: str, provider: ProviderType) -> Optional[LinkRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProviderLink).where(
                    ProviderLink.user_id == user_id,
                    ProviderLink.provider == provider.value,
                )
            )
            row = result.scalar_one_or_none()
            return self._to_record(row) if row else None

    async def _current_version(self, session: AsyncSession, record: LinkRecord) -> Optional[int]:
        result = await session.execute(
            select(ProviderLink.version).where(
                ProviderLink.user_id == record.user_id,
                ProviderLink.provider == record.provider.value,
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self, record: LinkRecord, *, expected_version: Optional[int] = None
    ) -> LinkRecord:
        if expected_version is not None:
            return await self._write(record, expected_version)

        # Unconditional replace: a writer that slips in between our read and
        # write is overwritten on the next attempt
        attempt = 1
        while True:
            try:
                return await self._write(record, None)
            except ConcurrentLinkModification:
                if attempt >= _REPLACE_ATTEMPTS:
                    raise
                attempt += 1
                logger.info(
                    "Replace of %s link for user %s raced a writer; retrying",
                    record.provider.value, record.user_id,
                )

    async def _write(self, record: LinkRecord, expected_version: Optional[int]) -> LinkRecord:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    current = await self._current_version(session, record)
                    current_version = current or 0
                    if expected_version is not None and expected_version != current_version:
                        raise _conflict(record, expected_version, current_version)

                    new_version = current_version + 1
                    if current is None:
                        session.add(
                            ProviderLink(
                                user_id=record.user_id,
                                provider=record.provider.value,
                                version=new_version,
                                **self._columns(record),
                            )
                        )
                    else:
                        result = await session.execute(
                            update(ProviderLink)
                            .where(
                                ProviderLink.user_id == record.user_id,
                                ProviderLink.provider == record.provider.value,
                                ProviderLink.version == current_version,
                            )
                            .values(version=new_version, **self._columns(record))
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount != 1:
                            raise _conflict(record, current_version, -1)
        except IntegrityError as exc:
            # Another writer inserted the same key between our read and insert
            raise _conflict(record, current_version, -1) from exc

        logger.debug(
            "Stored %s link for user %s at version %d",
            record.provider.value, record.user_id, new_version,
        )
        return record.model_copy(update={"version": new_version})

    async def list_for_user(self, user_id: str) -> List[LinkRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProviderLink)
                .where(ProviderLink.user_id == user_id)
                .order_by(ProviderLink.provider)
            )
            return [self._to_record(row) for row in result.scalars().all()]
