"""Persisted claim ledger.

Row-state partition: live verifications only touch rows with
confirmed = FALSE, the reaper only touches rows with confirmed = TRUE.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import asyncpg

from .errors import ChallengeCollision
from .models import PendingKey, TransferRecord

log = logging.getLogger("gate.store")

MANUAL_DESTINATION = "MANUAL"


class TransferStore(abc.ABC):
    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abc.abstractmethod
    async def insert_pending_challenge(self, record: TransferRecord) -> TransferRecord:
        """Raises ChallengeCollision when (destination, mint, amount) is taken."""

    @abc.abstractmethod
    async def find_pending(self, key: PendingKey) -> Optional[TransferRecord]:
        ...

    @abc.abstractmethod
    async def confirm_atomic(
        self,
        key: PendingKey,
        expected_amount: Optional[int],
        signature: str,
        source: str,
        received: int,
        block_time: datetime,
    ) -> int:
        """Single conditional write; returns the number of rows confirmed (0 or 1).

        Matches only an unconfirmed row for the key whose amount equals
        expected_amount and whose creation is not later than block_time.
        """

    @abc.abstractmethod
    async def delete_pending_for(self, session_key: int) -> int:
        ...

    @abc.abstractmethod
    async def find_confirmed_excluding(
        self, mint: str, exclude_user_ids: Iterable[int]
    ) -> List[TransferRecord]:
        ...

    @abc.abstractmethod
    async def delete_confirmed(self, session_key: int) -> int:
        ...

    @abc.abstractmethod
    async def release_claim(self, signature: str) -> int:
        """Drops a confirmed row that did not end in a grant."""

    @abc.abstractmethod
    async def source_bound(self, source: str, mint: str, excluding_signature: str) -> bool:
        ...

    @abc.abstractmethod
    async def insert_manual_grant(self, user_id: int, wallet: str, mint: str) -> None:
        ...

    @abc.abstractmethod
    async def distinct_sessions(self) -> List[int]:
        ...

    @abc.abstractmethod
    async def claim_refund(self, signature: str, session_key: Optional[int]) -> bool:
        """Records that a payment is being returned. False if it already was.

        A claimed signature can no longer be confirmed by any challenge.
        """

    @abc.abstractmethod
    async def signature_settled(self, signature: str) -> bool:
        """True once a payment has been granted against or claimed for a refund."""

    @abc.abstractmethod
    async def is_granted(self, signature: str) -> bool:
        ...

    @abc.abstractmethod
    async def delete_pending_at(self, destination: str) -> int:
        ...


def _truncate(ts: datetime) -> datetime:
    # Block times have one second resolution.
    return ts.replace(microsecond=0)


class MemoryTransferStore(TransferStore):
    """Process-local store with the same invariants as the SQL schema."""

    def __init__(self) -> None:
        self.rows: List[TransferRecord] = []
        # signature -> session that claimed the refund
        self.refunds: Dict[str, Optional[int]] = {}
        self._lock = asyncio.Lock()

    def _key_matches(self, row: TransferRecord, key: PendingKey) -> bool:
        if row.confirmed or row.destination != key.destination:
            return False
        if key.session_key is not None and row.session_key != key.session_key:
            return False
        if key.source is not None and row.source != key.source:
            return False
        return True

    async def insert_pending_challenge(self, record: TransferRecord) -> TransferRecord:
        async with self._lock:
            if record.amount is not None:
                for row in self.rows:
                    if (row.destination, row.mint, row.amount) == (
                        record.destination,
                        record.mint,
                        record.amount,
                    ):
                        raise ChallengeCollision(
                            f"{record.destination}/{record.mint}/{record.amount} already claimed"
                        )
            stored = replace(record, confirmed=False)
            self.rows.append(stored)
            return replace(stored)

    async def find_pending(self, key: PendingKey) -> Optional[TransferRecord]:
        async with self._lock:
            # Newest first: a stale claim of the same session must not shadow the live one.
            for row in reversed(self.rows):
                if self._key_matches(row, key):
                    return replace(row)
        return None

    async def confirm_atomic(self, key, expected_amount, signature, source, received, block_time) -> int:
        async with self._lock:
            if signature in self.refunds or any(r.signature == signature for r in self.rows):
                return 0
            for row in self.rows:
                if not self._key_matches(row, key):
                    continue
                if row.amount != expected_amount:
                    continue
                if _truncate(row.created_at) > block_time:
                    continue
                row.confirmed = True
                row.signature = signature
                row.source = source
                row.received = received
                row.block_time = block_time
                return 1
        return 0

    async def delete_pending_for(self, session_key: int) -> int:
        async with self._lock:
            before = len(self.rows)
            self.rows = [r for r in self.rows if r.confirmed or r.session_key != session_key]
            return before - len(self.rows)

    async def find_confirmed_excluding(self, mint, exclude_user_ids) -> List[TransferRecord]:
        excluded = set(exclude_user_ids)
        async with self._lock:
            return [
                replace(r)
                for r in self.rows
                if r.confirmed and r.mint == mint and r.user_id not in excluded
            ]

    async def delete_confirmed(self, session_key: int) -> int:
        async with self._lock:
            before = len(self.rows)
            self.rows = [r for r in self.rows if not (r.confirmed and r.session_key == session_key)]
            return before - len(self.rows)

    async def release_claim(self, signature: str) -> int:
        async with self._lock:
            before = len(self.rows)
            self.rows = [r for r in self.rows if not (r.confirmed and r.signature == signature)]
            return before - len(self.rows)

    async def source_bound(self, source: str, mint: str, excluding_signature: str) -> bool:
        async with self._lock:
            return any(
                r.confirmed
                and r.source == source
                and r.mint == mint
                and r.signature != excluding_signature
                for r in self.rows
            )

    async def insert_manual_grant(self, user_id: int, wallet: str, mint: str) -> None:
        async with self._lock:
            self.rows.append(
                TransferRecord(
                    session_key=user_id,
                    user_id=user_id,
                    mint=mint,
                    destination=MANUAL_DESTINATION,
                    amount=None,
                    source=wallet,
                    confirmed=True,
                )
            )

    async def distinct_sessions(self) -> List[int]:
        async with self._lock:
            return sorted({r.session_key for r in self.rows if r.session_key >= 0})

    async def claim_refund(self, signature: str, session_key: Optional[int]) -> bool:
        async with self._lock:
            if signature in self.refunds:
                return False
            self.refunds[signature] = session_key
            return True

    async def signature_settled(self, signature: str) -> bool:
        async with self._lock:
            if signature in self.refunds:
                return True
            return any(r.confirmed and r.signature == signature for r in self.rows)

    async def is_granted(self, signature: str) -> bool:
        async with self._lock:
            return any(r.confirmed and r.signature == signature for r in self.rows)

    async def delete_pending_at(self, destination: str) -> int:
        async with self._lock:
            before = len(self.rows)
            self.rows = [r for r in self.rows if r.confirmed or r.destination != destination]
            return before - len(self.rows)


SCHEMA = """
CREATE TABLE IF NOT EXISTS transfers (
    signature TEXT DEFAULT NULL,
    session_key BIGINT NOT NULL,
    user_id BIGINT NOT NULL,
    mint VARCHAR(44) NOT NULL,
    source VARCHAR(44) DEFAULT NULL,
    destination VARCHAR(44) NOT NULL,
    amount BIGINT DEFAULT NULL,
    received BIGINT DEFAULT NULL,
    confirmed BOOLEAN NOT NULL DEFAULT FALSE,
    block_time TIMESTAMPTZ DEFAULT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (destination, mint, amount)
);
CREATE UNIQUE INDEX IF NOT EXISTS transfers_signature_key
    ON transfers (signature) WHERE signature IS NOT NULL;
CREATE INDEX IF NOT EXISTS transfers_session_idx ON transfers (session_key);
CREATE INDEX IF NOT EXISTS transfers_source_idx ON transfers (source, mint) WHERE confirmed;
CREATE TABLE IF NOT EXISTS refunds (
    signature TEXT PRIMARY KEY,
    session_key BIGINT DEFAULT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


def _row_to_record(row: asyncpg.Record) -> TransferRecord:
    return TransferRecord(
        session_key=row["session_key"],
        user_id=row["user_id"],
        mint=row["mint"],
        destination=row["destination"],
        amount=row["amount"],
        source=row["source"],
        signature=row["signature"],
        confirmed=row["confirmed"],
        received=row["received"],
        block_time=row["block_time"],
        created_at=row["created_at"],
    )


def _rows_affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 1" / "DELETE 3"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PgTransferStore(TransferStore):
    def __init__(self, database_url: str, min_size: int = 1, max_size: int = 10) -> None:
        self._database_url = database_url
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def connect(self, retries: int = 5, delay_s: float = 2.0) -> None:
        for attempt in range(retries + 1):
            try:
                self._pool = await asyncpg.create_pool(
                    self._database_url,
                    min_size=self._min_size,
                    max_size=self._max_size,
                    timeout=5.0,
                )
                break
            except (OSError, asyncpg.PostgresError) as e:
                if attempt == retries:
                    raise RuntimeError(
                        "Failed to connect to the database after multiple attempts."
                    ) from e
                log.warning(
                    "Database connect failed (%s); retrying in %.0fs (%d attempts left)",
                    e,
                    delay_s,
                    retries - attempt,
                )
                await asyncio.sleep(delay_s)
        await self.init_schema()
        log.info("Connected to the database")

    async def init_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PgTransferStore used before connect()")
        return self._pool

    async def insert_pending_challenge(self, record: TransferRecord) -> TransferRecord:
        try:
            row = await self.pool.fetchrow(
                """
                INSERT INTO transfers (session_key, user_id, mint, source, destination, amount)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
                """,
                record.session_key,
                record.user_id,
                record.mint,
                record.source,
                record.destination,
                record.amount,
            )
        except asyncpg.UniqueViolationError as e:
            raise ChallengeCollision(
                f"{record.destination}/{record.mint}/{record.amount} already claimed"
            ) from e
        return _row_to_record(row)

    async def find_pending(self, key: PendingKey) -> Optional[TransferRecord]:
        row = await self.pool.fetchrow(
            """
            SELECT * FROM transfers
            WHERE destination = $1
              AND ($2::BIGINT IS NULL OR session_key = $2)
              AND ($3::TEXT IS NULL OR source = $3)
              AND confirmed = FALSE
            ORDER BY created_at DESC
            LIMIT 1
            """,
            key.destination,
            key.session_key,
            key.source,
        )
        return _row_to_record(row) if row else None

    async def confirm_atomic(self, key, expected_amount, signature, source, received, block_time) -> int:
        try:
            status = await self.pool.execute(
                """
                UPDATE transfers
                SET confirmed = TRUE, signature = $1, source = $2, received = $3, block_time = $4
                WHERE destination = $5
                  AND ($6::BIGINT IS NULL OR session_key = $6)
                  AND ($7::TEXT IS NULL OR source = $7)
                  AND amount IS NOT DISTINCT FROM $8::BIGINT
                  AND date_trunc('second', created_at) <= $4
                  AND confirmed = FALSE
                  AND NOT EXISTS (SELECT 1 FROM refunds WHERE refunds.signature = $1)
                """,
                signature,
                source,
                received,
                block_time,
                key.destination,
                key.session_key,
                key.source,
                expected_amount,
            )
        except asyncpg.UniqueViolationError:
            log.warning("Signature %s already claimed by another record", signature)
            return 0
        return _rows_affected(status)

    async def delete_pending_for(self, session_key: int) -> int:
        status = await self.pool.execute(
            "DELETE FROM transfers WHERE session_key = $1 AND confirmed = FALSE",
            session_key,
        )
        return _rows_affected(status)

    async def find_confirmed_excluding(self, mint, exclude_user_ids) -> List[TransferRecord]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM transfers
            WHERE confirmed = TRUE AND mint = $1 AND NOT (user_id = ANY($2::BIGINT[]))
            ORDER BY created_at
            """,
            mint,
            list(exclude_user_ids),
        )
        return [_row_to_record(r) for r in rows]

    async def delete_confirmed(self, session_key: int) -> int:
        status = await self.pool.execute(
            "DELETE FROM transfers WHERE session_key = $1 AND confirmed = TRUE",
            session_key,
        )
        return _rows_affected(status)

    async def release_claim(self, signature: str) -> int:
        status = await self.pool.execute(
            "DELETE FROM transfers WHERE signature = $1 AND confirmed = TRUE",
            signature,
        )
        return _rows_affected(status)

    async def source_bound(self, source: str, mint: str, excluding_signature: str) -> bool:
        row = await self.pool.fetchrow(
            """
            SELECT 1 FROM transfers
            WHERE confirmed = TRUE AND source = $1 AND mint = $2
              AND signature IS DISTINCT FROM $3
            LIMIT 1
            """,
            source,
            mint,
            excluding_signature,
        )
        return row is not None

    async def insert_manual_grant(self, user_id: int, wallet: str, mint: str) -> None:
        await self.pool.execute(
            """
            INSERT INTO transfers (session_key, user_id, mint, source, destination, confirmed)
            VALUES ($1, $2, $3, $4, $5, TRUE)
            """,
            user_id,
            user_id,
            mint,
            wallet,
            MANUAL_DESTINATION,
        )

    async def distinct_sessions(self) -> List[int]:
        rows = await self.pool.fetch(
            "SELECT DISTINCT session_key FROM transfers WHERE session_key >= 0 ORDER BY session_key"
        )
        return [r["session_key"] for r in rows]

    async def claim_refund(self, signature: str, session_key: Optional[int]) -> bool:
        status = await self.pool.execute(
            "INSERT INTO refunds (signature, session_key) VALUES ($1, $2) ON CONFLICT DO NOTHING",
            signature,
            session_key,
        )
        return _rows_affected(status) == 1

    async def signature_settled(self, signature: str) -> bool:
        row = await self.pool.fetchrow(
            """
            SELECT 1 FROM refunds WHERE signature = $1
            UNION ALL
            SELECT 1 FROM transfers WHERE signature = $1 AND confirmed = TRUE
            LIMIT 1
            """,
            signature,
        )
        return row is not None

    async def is_granted(self, signature: str) -> bool:
        row = await self.pool.fetchrow(
            "SELECT 1 FROM transfers WHERE signature = $1 AND confirmed = TRUE",
            signature,
        )
        return row is not None

    async def delete_pending_at(self, destination: str) -> int:
        status = await self.pool.execute(
            "DELETE FROM transfers WHERE destination = $1 AND confirmed = FALSE",
            destination,
        )
        return _rows_affected(status)
