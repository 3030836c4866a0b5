"""Transaction state store: single-use, expiring pending authorizations."""

import logging
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import Delete, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from broker.crypto.pkce import hash_token
from broker.crypto.sealing import Sealer, SealingError
from broker.db.models_transaction import PendingAuthorizationEntity
from broker.flow.types import PendingAuthorization

logger = logging.getLogger(__name__)


class TransactionExistsError(Exception):
    """A live transaction already occupies this id."""


def _is_expired(expires_at: datetime) -> bool:
    now = datetime.now(UTC)
    if expires_at.tzinfo is None:
        now = now.replace(tzinfo=None)
    return now >= expires_at


def _expired_rows() -> Delete:
    return delete(PendingAuthorizationEntity).where(
        PendingAuthorizationEntity.expires_at <= datetime.now(UTC)
    )


def fingerprint(transaction_id: str) -> str:
    """Short, non-reversible tag for log lines."""
    return hash_token(transaction_id)[:8]


class TransactionStore(Protocol):
    """Storage for pending authorizations between flow steps."""

    async def create(self, pending: PendingAuthorization) -> str:
        """Persist a bundle under its transaction id and return the id."""
        ...

    async def get(self, transaction_id: str) -> PendingAuthorization | None:
        """Return the live bundle, or None if unknown, consumed or expired."""
        ...

    async def consume(self, transaction_id: str) -> PendingAuthorization | None:
        """Atomically read and invalidate. Only one caller ever gets the bundle."""
        ...

    async def invalidate(self, transaction_id: str) -> None:
        """Drop the bundle; the id never resolves again."""
        ...


class InMemoryTransactionStore:
    """Process-local store for single-instance deployments and tests.

    All operations complete without awaiting, so each one is atomic on the
    event loop.
    """

    def __init__(self) -> None:
        self._entries: dict[str, PendingAuthorization] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _sweep(self) -> None:
        expired = [k for k, v in self._entries.items() if _is_expired(v.expires_at)]
        for key in expired:
            del self._entries[key]

    async def create(self, pending: PendingAuthorization) -> str:
        self._sweep()
        key = hash_token(pending.transaction_id)
        if key in self._entries:
            raise TransactionExistsError(fingerprint(pending.transaction_id))
        self._entries[key] = pending
        return pending.transaction_id

    async def get(self, transaction_id: str) -> PendingAuthorization | None:
        key = hash_token(transaction_id)
        pending = self._entries.get(key)
        if pending is None:
            return None
        if _is_expired(pending.expires_at):
            del self._entries[key]
            return None
        return pending

    async def consume(self, transaction_id: str) -> PendingAuthorization | None:
        pending = self._entries.pop(hash_token(transaction_id), None)
        if pending is None or _is_expired(pending.expires_at):
            return None
        return pending

    async def invalidate(self, transaction_id: str) -> None:
        self._entries.pop(hash_token(transaction_id), None)


class SqlTransactionStore:
    """Database-backed store shared by several broker instances.

    Payloads are sealed at rest: they hold the PKCE verifier and nonce.
    """

    def __init__(
        self, factory: async_sessionmaker[AsyncSession], sealer: Sealer
    ) -> None:
        self._factory = factory
        self._sealer = sealer

    async def create(self, pending: PendingAuthorization) -> str:
        key = hash_token(pending.transaction_id)
        entity = PendingAuthorizationEntity(
            key=key,
            payload=self._sealer.seal(pending.model_dump_json()),
            expires_at=pending.expires_at,
        )
        async with self._factory() as session:
            # Sweep abandoned flows of every id, not just this one.
            await session.execute(_expired_rows())
            session.add(entity)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                tag = fingerprint(pending.transaction_id)
                raise TransactionExistsError(tag) from exc
        return pending.transaction_id

    async def get(self, transaction_id: str) -> PendingAuthorization | None:
        key = hash_token(transaction_id)
        async with self._factory() as session:
            entity = await session.get(PendingAuthorizationEntity, key)
            if entity is None:
                return None
            if _is_expired(entity.expires_at):
                await session.delete(entity)
                await session.commit()
                return None
            return self._open(entity.payload)

    async def consume(self, transaction_id: str) -> PendingAuthorization | None:
        key = hash_token(transaction_id)
        async with self._factory() as session:
            entity = await session.get(PendingAuthorizationEntity, key)
            if entity is None:
                return None
            payload, expires_at = entity.payload, entity.expires_at
            result = await session.execute(
                delete(PendingAuthorizationEntity).where(
                    PendingAuthorizationEntity.key == key
                )
            )
            await session.commit()
            # A concurrent consumer deleted the row first.
            if result.rowcount != 1:
                return None
            if _is_expired(expires_at):
                return None
            return self._open(payload)

    async def invalidate(self, transaction_id: str) -> None:
        async with self._factory() as session:
            await session.execute(
                delete(PendingAuthorizationEntity).where(
                    PendingAuthorizationEntity.key == hash_token(transaction_id)
                )
            )
            await session.commit()

    async def purge_expired(self) -> int:
        """Delete every expired row. Returns the number removed."""
        async with self._factory() as session:
            result = await session.execute(_expired_rows())
            await session.commit()
            return result.rowcount

    def _open(self, payload: str) -> PendingAuthorization | None:
        try:
            raw = self._sealer.unseal(payload)
            return PendingAuthorization.model_validate_json(raw)
        except SealingError:
            logger.warning("Discarding transaction with unreadable payload")
            return None
