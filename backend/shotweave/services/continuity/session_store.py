"""Versioned persistence for continuity sessions.

Sessions live in two tables while the legacy continuity-only store is being
retired:

- writes go to the unified ``sessions`` table (authoritative for ``version``)
  and, while ``storage.legacy_dual_write`` is on, are mirrored to
  ``continuity_sessions``;
- reads prefer the unified table and, while ``storage.legacy_read_fallback``
  is on, fall back to the legacy table, backfilling the unified row on a hit.

Once ``backfill_legacy()`` migrates nothing, both flags can be switched off.
"""

import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shotweave.config import settings
from shotweave.db.models import LegacyContinuitySessionRecord, UnifiedSessionRecord
from shotweave.schemas.continuity import ContinuitySession, utcnow
from shotweave.services.continuity.errors import (
    ContinuitySessionNotFoundError,
    ContinuitySessionVersionMismatchError,
)
from shotweave.services.continuity.serialization import (
    deserialize_session,
    serialize_session,
    split_unified,
)

logger = logging.getLogger(__name__)

SESSION_TYPE = "continuity"

Mutation = Callable[[ContinuitySession], Union[None, Awaitable[None]]]


class UnifiedSessionRepository:
    """Generic ``sessions`` rows with the continuity data in ``payload``."""

    async def load(self, db: AsyncSession, session_id: str) -> Optional[dict]:
        record = await db.get(UnifiedSessionRecord, session_id, populate_existing=True)
        if record is None or record.session_type != SESSION_TYPE:
            return None
        return self._to_document(record)

    async def current_version(self, db: AsyncSession, session_id: str) -> Optional[int]:
        result = await db.execute(
            select(UnifiedSessionRecord.version).where(UnifiedSessionRecord.id == session_id)
        )
        return result.scalar_one_or_none()

    async def insert(self, db: AsyncSession, document: dict) -> None:
        db.add(self._to_record(document))
        await db.flush()

    async def upsert(self, db: AsyncSession, document: dict) -> None:
        await db.merge(self._to_record(document))
        await db.flush()

    async def compare_and_set(self, db: AsyncSession, document: dict, expected_version: int) -> bool:
        """Write the row only if it is still at ``expected_version``."""
        columns, payload = split_unified(document)
        result = await db.execute(
            update(UnifiedSessionRecord)
            .where(
                UnifiedSessionRecord.id == columns["id"],
                UnifiedSessionRecord.version == expected_version,
            )
            .values(
                user_id=columns["user_id"],
                name=columns["name"],
                status=columns.get("status", "active"),
                version=columns["version"],
                payload=payload,
                updated_at_ms=columns["updated_at_ms"],
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delete(self, db: AsyncSession, session_id: str) -> bool:
        result = await db.execute(
            delete(UnifiedSessionRecord).where(UnifiedSessionRecord.id == session_id)
        )
        return result.rowcount > 0

    async def find_by_user(self, db: AsyncSession, user_id: str) -> list[dict]:
        result = await db.execute(
            select(UnifiedSessionRecord).where(
                UnifiedSessionRecord.user_id == user_id,
                UnifiedSessionRecord.session_type == SESSION_TYPE,
            )
        )
        return [self._to_document(record) for record in result.scalars().all()]

    async def existing_ids(self, db: AsyncSession) -> set[str]:
        result = await db.execute(select(UnifiedSessionRecord.id))
        return set(result.scalars().all())

    @staticmethod
    def _to_record(document: dict) -> UnifiedSessionRecord:
        columns, payload = split_unified(document)
        return UnifiedSessionRecord(
            id=columns["id"],
            user_id=columns["user_id"],
            session_type=SESSION_TYPE,
            name=columns["name"],
            status=columns.get("status", "active"),
            version=columns["version"],
            payload=payload,
            created_at_ms=columns["created_at_ms"],
            updated_at_ms=columns["updated_at_ms"],
        )

    @staticmethod
    def _to_document(record: UnifiedSessionRecord) -> dict:
        return {
            **(record.payload or {}),
            "id": record.id,
            "user_id": record.user_id,
            "name": record.name,
            "status": record.status,
            "version": record.version,
            "created_at_ms": record.created_at_ms,
            "updated_at_ms": record.updated_at_ms,
        }


class LegacySessionRepository:
    """Continuity-only ``continuity_sessions`` documents."""

    async def load(self, db: AsyncSession, session_id: str) -> Optional[dict]:
        record = await db.get(LegacyContinuitySessionRecord, session_id, populate_existing=True)
        if record is None:
            return None
        return self._to_document(record)

    async def current_version(self, db: AsyncSession, session_id: str) -> Optional[int]:
        result = await db.execute(
            select(LegacyContinuitySessionRecord.version).where(
                LegacyContinuitySessionRecord.id == session_id
            )
        )
        return result.scalar_one_or_none()

    async def upsert(self, db: AsyncSession, document: dict) -> None:
        await db.merge(
            LegacyContinuitySessionRecord(
                id=document["id"],
                user_id=document["user_id"],
                version=document["version"],
                document=document,
                updated_at_ms=document.get("updated_at_ms"),
            )
        )
        await db.flush()

    async def delete(self, db: AsyncSession, session_id: str) -> bool:
        result = await db.execute(
            delete(LegacyContinuitySessionRecord).where(
                LegacyContinuitySessionRecord.id == session_id
            )
        )
        return result.rowcount > 0

    async def find_by_user(self, db: AsyncSession, user_id: str) -> list[dict]:
        result = await db.execute(
            select(LegacyContinuitySessionRecord).where(
                LegacyContinuitySessionRecord.user_id == user_id
            )
        )
        return [self._to_document(record) for record in result.scalars().all()]

    async def all_documents(self, db: AsyncSession) -> list[dict]:
        result = await db.execute(select(LegacyContinuitySessionRecord))
        return [self._to_document(record) for record in result.scalars().all()]

    @staticmethod
    def _to_document(record: LegacyContinuitySessionRecord) -> dict:
        # The row's version column wins over whatever the document carries
        return {**(record.document or {}), "id": record.id, "version": record.version}


class ContinuitySessionStore:
    """Optimistic-concurrency store over the unified and legacy session tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dual_write: Optional[bool] = None,
        read_fallback: Optional[bool] = None,
    ):
        self.session_factory = session_factory
        self.unified = UnifiedSessionRepository()
        self.legacy = LegacySessionRepository()
        self.dual_write = settings.storage.legacy_dual_write if dual_write is None else dual_write
        self.read_fallback = (
            settings.storage.legacy_read_fallback if read_fallback is None else read_fallback
        )

    async def get(self, session_id: str) -> Optional[ContinuitySession]:
        async with self.session_factory() as db:
            document = await self.unified.load(db, session_id)
            if document is not None:
                return deserialize_session(document)

            if not self.read_fallback:
                return None

            legacy_document = await self.legacy.load(db, session_id)
            if legacy_document is None:
                return None

            session = deserialize_session(legacy_document)
            await self._backfill(db, session)
            return session

    async def get_version(self, session_id: str) -> Optional[int]:
        async with self.session_factory() as db:
            return await self._current_version(db, session_id)

    async def find_by_user(self, user_id: str) -> list[ContinuitySession]:
        async with self.session_factory() as db:
            documents = await self.unified.find_by_user(db, user_id)
            if self.read_fallback:
                seen = {document["id"] for document in documents}
                documents.extend(
                    document
                    for document in await self.legacy.find_by_user(db, user_id)
                    if document["id"] not in seen
                )

        sessions = [deserialize_session(document) for document in documents]
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    async def save(self, session: ContinuitySession) -> int:
        """Unconditional write; the stored version is bumped by one."""
        async with self.session_factory() as db:
            async with db.begin():
                current = await self._current_version(db, session.id) or 0
                new_version = current + 1
                document = self._stamp(session, new_version)
                await self.unified.upsert(db, document)
                if self.dual_write:
                    await self.legacy.upsert(db, document)

        session.version = new_version
        logger.debug(f"Saved session {session.id} at version {new_version}")
        return new_version

    async def save_with_version(self, session: ContinuitySession, expected_version: int) -> int:
        """Compare-and-set write.

        Raises:
            ContinuitySessionVersionMismatchError: If the stored version is not
                ``expected_version`` (never-persisted sessions count as 0).
        """
        new_version = expected_version + 1
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    current = await self._current_version(db, session.id) or 0
                    if current != expected_version:
                        raise ContinuitySessionVersionMismatchError(
                            session.id, expected_version, current
                        )

                    document = self._stamp(session, new_version)
                    if await self.unified.current_version(db, session.id) is None:
                        await self.unified.insert(db, document)
                    elif not await self.unified.compare_and_set(db, document, expected_version):
                        actual = await self.unified.current_version(db, session.id)
                        raise ContinuitySessionVersionMismatchError(
                            session.id, expected_version, actual if actual is not None else -1
                        )

                    if self.dual_write:
                        await self.legacy.upsert(db, document)
        except IntegrityError as e:
            # Lost an insert race for a brand-new session
            actual = await self.get_version(session.id)
            raise ContinuitySessionVersionMismatchError(
                session.id, expected_version, actual if actual is not None else -1
            ) from e

        session.version = new_version
        logger.debug(f"Saved session {session.id} at version {new_version}")
        return new_version

    async def update(self, session_id: str, mutate: Mutation) -> ContinuitySession:
        """Load, mutate and save with version check, reloading once on conflict.

        Raises:
            ContinuitySessionNotFoundError: If the session does not exist.
            ContinuitySessionVersionMismatchError: On a second consecutive conflict.
        """
        reloaded = False
        while True:
            session = await self.get(session_id)
            if session is None:
                raise ContinuitySessionNotFoundError(session_id)

            expected_version = session.version
            result = mutate(session)
            if inspect.isawaitable(result):
                await result

            try:
                await self.save_with_version(session, expected_version)
                return session
            except ContinuitySessionVersionMismatchError as e:
                if reloaded:
                    raise
                reloaded = True
                logger.warning(
                    f"Version conflict updating session {session_id} "
                    f"(expected {e.expected_version}, found {e.actual_version}), reloading"
                )

    async def delete(self, session_id: str) -> bool:
        async with self.session_factory() as db:
            async with db.begin():
                removed_unified = await self.unified.delete(db, session_id)
                removed_legacy = await self.legacy.delete(db, session_id)
        return removed_unified or removed_legacy

    async def backfill_legacy(self) -> int:
        """Copy every legacy-only session into the unified table."""
        migrated = 0
        async with self.session_factory() as db:
            existing = await self.unified.existing_ids(db)
            for document in await self.legacy.all_documents(db):
                if document["id"] in existing:
                    continue
                if await self._backfill(db, deserialize_session(document)):
                    migrated += 1

        logger.info(f"Backfilled {migrated} legacy continuity session(s)")
        return migrated

    async def _current_version(self, db: AsyncSession, session_id: str) -> Optional[int]:
        version = await self.unified.current_version(db, session_id)
        if version is None:
            version = await self.legacy.current_version(db, session_id)
        return version

    async def _backfill(self, db: AsyncSession, session: ContinuitySession) -> bool:
        try:
            await self.unified.insert(db, serialize_session(session))
            await db.commit()
        except IntegrityError:
            # Another reader backfilled it first
            await db.rollback()
            return False
        logger.info(f"Backfilled unified session row for {session.id} (version {session.version})")
        return True

    @staticmethod
    def _stamp(session: ContinuitySession, version: int) -> dict:
        session.updated_at = utcnow()
        document = serialize_session(session)
        document["version"] = version
        return document
