"""Typed document store for pipeline records.

Provides RecordStore with a generic create/update/get/find interface over the
``documents`` table plus typed helpers for rewards, burns, metrics snapshots,
and milestones. All SQL is isolated behind this interface.

CRITICAL: Decimals are stored as strings inside the JSON body and restored as
Decimal on read. Read-modify-write operations are serialized through a single
asyncio.Lock so concurrent callers never interleave on one connection.
"""

import asyncio
import json
import time
from collections.abc import Iterable
from dataclasses import replace
from decimal import InvalidOperation
from typing import Any, TypeVar

from burnbot.exceptions import RecordNotFound, RecordStoreCorruption
from burnbot.logging import get_logger
from burnbot.models import (
    BurnRecord,
    MetricsSnapshot,
    MilestoneRecord,
    RewardRecord,
    RewardStatus,
    from_document,
    to_document,
    validate_transition,
)
from burnbot.storage.database import RecordDatabase

logger = get_logger(__name__)

REWARDS = "rewards"
BURNS = "burns"
METRICS = "metrics"
MILESTONES = "milestones"

RecordT = TypeVar("RecordT")
Condition = tuple[str, str, Any]

_COMPARISONS = frozenset({"=", "<", "<=", ">", ">="})
# Fields mirrored into their own indexed column
_COLUMN_FIELDS = frozenset({"status"})


def _status_column(document: dict[str, Any]) -> str | None:
    status = document.get("status")
    return status if isinstance(status, str) else None


class RecordStore:
    """Async document store for rewards, burns, metrics and milestones.

    Wraps RecordDatabase. Documents are dicts with an ``id`` key; the typed
    helpers convert them to and from the dataclasses in ``burnbot.models``.

    Usage:
        async with RecordDatabase("data/records.db") as database:
            store = RecordStore(database)
            reward = await store.create_reward(record)
    """

    def __init__(self, database: RecordDatabase) -> None:
        self._database = database
        self._write_lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Generic document interface
    # ──────────────────────────────────────────────

    async def create(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        """Insert a new document. The document must carry an ``id``."""
        async with self._write_lock, self._database.transaction():
            await self._insert(collection, document)
        logger.debug("document_created", collection=collection, id=document["id"])
        return document

    async def update(
        self, collection: str, record_id: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        """Merge ``patch`` into an existing document and return the result.

        Raises:
            RecordNotFound: If no document has this id.
        """
        async with self._write_lock, self._database.transaction():
            current = await self._fetch(collection, record_id)
            merged = {**current, **patch}
            await self._replace(collection, merged)
        return merged

    async def get(self, collection: str, record_id: str) -> dict[str, Any]:
        """Fetch one document by id.

        Raises:
            RecordNotFound: If no document has this id.
            RecordStoreCorruption: If the stored body is not valid JSON.
        """
        return await self._fetch(collection, record_id)

    async def find(
        self,
        collection: str,
        where: Iterable[Condition] = (),
        sort: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Query a collection. Filtering, ordering and the limit run in SQL.

        Args:
            collection: Collection name.
            where: ``(field, op, value)`` conditions, ANDed together. ``op``
                is one of ``=``, ``<``, ``<=``, ``>``, ``>=`` or ``in``
                (value is then an iterable). A missing field never matches.
            sort: Document field to order by. Missing values sort last.
                Defaults to insertion order (created_at).
            descending: Reverse the sort order. Ties keep newest-inserted first.
            limit: Maximum number of documents returned.
        """
        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        for field_name, op, value in where:
            clause = self._condition_sql(field_name, op, value, params)
            if clause is None:
                return []
            clauses.append(clause)

        direction = "DESC" if descending else "ASC"
        order = f"created_at {direction}, rowid {direction}"
        if sort is not None:
            key = "CASE WHEN json_valid(body) THEN json_extract(body, ?) END"
            order = f"{key} IS NULL, {key} {direction}, {order}"
            params.extend([f"$.{sort}", f"$.{sort}"])

        sql = f"SELECT id, body FROM documents WHERE {' AND '.join(clauses)} ORDER BY {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        cursor = await self._database.db.execute(sql, params)
        rows = await cursor.fetchall()
        return [await self._decode(collection, record_id, body) for record_id, body in rows]

    async def count(self, collection: str) -> int:
        cursor = await self._database.db.execute(
            "SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,)
        )
        return (await cursor.fetchone())[0]

    # ──────────────────────────────────────────────
    # Rewards
    # ──────────────────────────────────────────────

    async def create_reward(self, record: RewardRecord) -> RewardRecord:
        record.check_invariants()
        await self.create(REWARDS, to_document(record))
        logger.info(
            "reward_record_created",
            reward_id=record.id,
            status=record.status.value,
            reward_amount=str(record.reward_amount),
        )
        return record

    async def get_reward(self, record_id: str) -> RewardRecord:
        document = await self.get(REWARDS, record_id)
        return await self._to_record(RewardRecord, REWARDS, document)

    async def update_reward(self, record_id: str, **changes: Any) -> RewardRecord:
        """Apply field changes to a reward, validating the status transition.

        ``updated_at`` is refreshed on every write.

        Raises:
            RecordNotFound: If the reward does not exist.
            InvalidStatusTransition: If the change regresses or skips a status,
                or leaves transaction references inconsistent with it.
        """
        async with self._write_lock, self._database.transaction():
            current = await self._load_reward(record_id)
            updated = self._apply_reward_changes(current, changes)
            await self._replace(REWARDS, to_document(updated))

        if updated.status != current.status:
            logger.info(
                "reward_status_changed",
                reward_id=record_id,
                previous=current.status.value,
                status=updated.status.value,
            )
        return updated

    async def find_rewards(
        self,
        status: RewardStatus | Iterable[RewardStatus] | None = None,
        updated_before: float | None = None,
        updated_after: float | None = None,
        limit: int | None = None,
        newest_first: bool = True,
    ) -> list[RewardRecord]:
        """Query rewards by status and last update, newest first by default.

        ``updated_before`` is exclusive, ``updated_after`` inclusive.
        """
        where: list[Condition] = []
        if isinstance(status, RewardStatus):
            where.append(("status", "=", status.value))
        elif status is not None:
            where.append(("status", "in", [s.value for s in status]))
        if updated_before is not None:
            where.append(("updated_at", "<", updated_before))
        if updated_after is not None:
            where.append(("updated_at", ">=", updated_after))

        documents = await self.find(
            REWARDS, where, sort="created_at", descending=newest_first, limit=limit
        )
        return [await self._to_record(RewardRecord, REWARDS, d) for d in documents]

    # ──────────────────────────────────────────────
    # Burns
    # ──────────────────────────────────────────────

    async def record_burn(
        self, burn: BurnRecord, **reward_changes: Any
    ) -> tuple[RewardRecord, BurnRecord]:
        """Insert a BurnRecord and mark its reward burned in one transaction.

        Either both writes commit or neither does.
        """
        reward_changes.setdefault("status", RewardStatus.BURNED)
        async with self._write_lock:
            async with self._database.transaction():
                current = await self._load_reward(burn.reward_id)
                updated = self._apply_reward_changes(current, reward_changes)
                await self._insert(BURNS, to_document(burn))
                await self._replace(REWARDS, to_document(updated))

        logger.info(
            "burn_record_created",
            burn_id=burn.id,
            reward_id=burn.reward_id,
            amount=str(burn.amount),
            burn_tx_ref=burn.burn_tx_ref,
        )
        return updated, burn

    async def find_burns(
        self,
        after: float | None = None,
        limit: int | None = None,
        newest_first: bool = True,
    ) -> list[BurnRecord]:
        """Query burns, optionally only those with timestamp > ``after``."""
        where: list[Condition] = [] if after is None else [("timestamp", ">", after)]
        documents = await self.find(
            BURNS, where, sort="timestamp", descending=newest_first, limit=limit
        )
        return [await self._to_record(BurnRecord, BURNS, d) for d in documents]

    async def find_burn_for_reward(self, reward_id: str) -> BurnRecord | None:
        documents = await self.find(
            BURNS, [("reward_id", "=", reward_id)], limit=1
        )
        if not documents:
            return None
        return await self._to_record(BurnRecord, BURNS, documents[0])

    # ──────────────────────────────────────────────
    # Metrics and milestones
    # ──────────────────────────────────────────────

    async def append_metrics(self, snapshot: MetricsSnapshot) -> MetricsSnapshot:
        await self.create(METRICS, to_document(snapshot))
        logger.info(
            "metrics_snapshot_appended",
            snapshot_id=snapshot.id,
            total_supply=str(snapshot.total_supply),
            reserve_wallet_balance=str(snapshot.reserve_wallet_balance),
            update_reason=snapshot.update_reason,
        )
        return snapshot

    async def latest_metrics(self) -> MetricsSnapshot | None:
        history = await self.metrics_history(limit=1)
        return history[0] if history else None

    async def metrics_history(self, limit: int | None = None) -> list[MetricsSnapshot]:
        """Metrics snapshots, newest first."""
        documents = await self.find(
            METRICS, sort="timestamp", descending=True, limit=limit
        )
        return [await self._to_record(MetricsSnapshot, METRICS, d) for d in documents]

    async def create_milestone(self, milestone: MilestoneRecord) -> MilestoneRecord:
        await self.create(MILESTONES, to_document(milestone))
        return milestone

    async def find_milestones(self) -> list[MilestoneRecord]:
        """Milestones ordered by market-cap threshold."""
        documents = await self.find(MILESTONES)
        milestones = [
            await self._to_record(MilestoneRecord, MILESTONES, d) for d in documents
        ]
        return sorted(milestones, key=lambda m: m.market_cap)

    # ──────────────────────────────────────────────
    # Internal
    # ──────────────────────────────────────────────

    @staticmethod
    def _condition_sql(
        field_name: str, op: str, value: Any, params: list[Any]
    ) -> str | None:
        """Render one find() condition, appending its parameters.

        Returns None for an ``in`` with no values, which matches nothing.
        """
        if op == "in":
            values = list(value)
            if not values:
                return None
            placeholders = ", ".join("?" * len(values))
            if field_name in _COLUMN_FIELDS:
                params.extend(values)
                return f"{field_name} IN ({placeholders})"
            test = f"json_extract(body, ?) IN ({placeholders})"
            params.extend([f"$.{field_name}", *values])
        elif op in _COMPARISONS:
            if field_name in _COLUMN_FIELDS:
                params.append(value)
                return f"{field_name} {op} ?"
            test = f"json_extract(body, ?) {op} ?"
            params.extend([f"$.{field_name}", value])
        else:
            raise ValueError(f"Unsupported find() operator: {op!r}")
        # Undecodable bodies always match so that reading them reports the corruption
        return f"CASE WHEN json_valid(body) THEN {test} ELSE 1 END"

    async def _insert(self, collection: str, document: dict[str, Any]) -> None:
        now = time.time()
        created_at = document.get("created_at") or document.get("timestamp") or now
        await self._database.db.execute(
            "INSERT INTO documents (collection, id, created_at, updated_at, status, body) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                collection,
                document["id"],
                created_at,
                now,
                _status_column(document),
                json.dumps(document),
            ),
        )

    async def _replace(self, collection: str, document: dict[str, Any]) -> None:
        cursor = await self._database.db.execute(
            "UPDATE documents SET body = ?, updated_at = ?, status = ? "
            "WHERE collection = ? AND id = ?",
            (
                json.dumps(document),
                time.time(),
                _status_column(document),
                collection,
                document["id"],
            ),
        )
        if cursor.rowcount == 0:
            raise RecordNotFound(f"{collection}/{document['id']} not found")

    async def _fetch(self, collection: str, record_id: str) -> dict[str, Any]:
        cursor = await self._database.db.execute(
            "SELECT body FROM documents WHERE collection = ? AND id = ?",
            (collection, record_id),
        )
        row = await cursor.fetchone()
        if row is None:
            raise RecordNotFound(f"{collection}/{record_id} not found")
        return await self._decode(collection, record_id, row[0])

    async def _load_reward(self, record_id: str) -> RewardRecord:
        document = await self._fetch(REWARDS, record_id)
        return await self._to_record(RewardRecord, REWARDS, document)

    @staticmethod
    def _apply_reward_changes(
        current: RewardRecord, changes: dict[str, Any]
    ) -> RewardRecord:
        updated = replace(current, **changes, updated_at=time.time())
        validate_transition(current.status, updated.status)
        updated.check_invariants()
        return updated

    async def _decode(self, collection: str, record_id: str, body: str) -> dict[str, Any]:
        try:
            document = json.loads(body)
        except json.JSONDecodeError as exc:
            await self._quarantine(collection, record_id, body, exc)
            raise RecordStoreCorruption(
                f"{collection}/{record_id} is not valid JSON: {exc}"
            ) from exc
        if not isinstance(document, dict):
            error = ValueError(f"expected an object, got {type(document).__name__}")
            await self._quarantine(collection, record_id, body, error)
            raise RecordStoreCorruption(f"{collection}/{record_id}: {error}")
        return document

    async def _to_record(
        self, cls: type[RecordT], collection: str, document: dict[str, Any]
    ) -> RecordT:
        try:
            return from_document(cls, document)
        except (TypeError, ValueError, InvalidOperation) as exc:
            record_id = str(document.get("id", "?"))
            await self._quarantine(collection, record_id, json.dumps(document), exc)
            raise RecordStoreCorruption(
                f"{collection}/{record_id} cannot be decoded as {cls.__name__}: {exc}"
            ) from exc

    async def _quarantine(
        self, collection: str, record_id: str, body: str, error: Exception
    ) -> None:
        """Copy a corrupt document aside. The original row is left untouched."""
        await self._database.db.execute(
            "INSERT INTO corrupt_documents (collection, id, body, error, detected_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (collection, record_id, body, str(error), time.time()),
        )
        await self._database.db.commit()
        logger.error(
            "record_store_corruption",
            collection=collection,
            id=record_id,
            error=str(error),
        )
