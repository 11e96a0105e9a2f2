from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from storescout.core.config import get_settings
from storescout.services.records import (
    CATEGORIES,
    GATED_PHASES,
    PHASES,
    CandidateRecord,
    Category,
    Phase,
)

if TYPE_CHECKING:
    from storescout.services.store import InMemoryCandidateStore

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class UpsertResult:
    record: CandidateRecord
    created: bool
    enqueued: bool


SCHEMA_SQL = """
create table if not exists candidates (
  id uuid primary key,
  url text not null unique,
  dedup_key text not null unique,
  discovery_source text not null,
  discovery_metadata jsonb not null default '{}'::jsonb,
  discovered_at timestamptz not null,
  display_name text,

  platform_status text not null default 'unverified'
    check (platform_status in ('confirmed', 'probable', 'unlikely', 'unverified')),
  platform_confidence double precision not null default 0
    check (platform_confidence >= 0 and platform_confidence <= 1),
  platform_signals jsonb not null default '{}'::jsonb,
  platform_signals_last_observed jsonb not null default '{}'::jsonb,

  health_status text not null default 'unknown'
    check (health_status in ('healthy', 'possibly_inactive', 'rate_limited', 'unknown')),
  is_access_restricted boolean not null default false,
  catalog_size integer,
  catalog_size_status text not null default 'unknown'
    check (catalog_size_status in ('confirmed', 'estimated', 'unknown', 'rate_limited')),
  catalog_size_estimate integer,
  health_signals jsonb not null default '{}'::jsonb,
  theme_name text,
  country text,

  primary_category text
    check (primary_category is null or primary_category in
      ('print_on_demand', 'dropshipping', 'branded_ecommerce', 'marketplace')),
  category_confidence double precision,
  category_scores jsonb not null default '{}'::jsonb,
  category_signals jsonb not null default '{}'::jsonb,
  behavioral_tags text[] not null default '{}',

  tags_locked boolean not null default false,
  tags_locked_by text,
  tags_locked_at timestamptz,

  last_verification_attempt timestamptz,
  verification_next_retry_at timestamptz,
  verification_retry_count integer not null default 0,
  last_health_check_attempt timestamptz,
  health_check_next_retry_at timestamptz,
  health_check_retry_count integer not null default 0,
  last_classification_attempt timestamptz,
  classification_next_retry_at timestamptz,
  classification_retry_count integer not null default 0,

  is_active boolean generated always as (
    platform_status in ('confirmed', 'probable') and health_status <> 'possibly_inactive'
  ) stored,

  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now(),

  constraint candidates_catalog_size_confirmed
    check (catalog_size is null or catalog_size_status = 'confirmed'),
  constraint candidates_category_floor
    check (primary_category is null or tags_locked or category_confidence >= 0.7)
);

create index if not exists candidates_verification_due_idx
  on candidates (verification_next_retry_at);
create index if not exists candidates_health_check_due_idx
  on candidates (health_check_next_retry_at) where platform_status in ('confirmed', 'probable');
create index if not exists candidates_classification_due_idx
  on candidates (classification_next_retry_at) where platform_status in ('confirmed', 'probable');
create index if not exists candidates_active_idx on candidates (is_active, platform_status);
"""

CANDIDATE_COLUMNS = """
  id::text as id,
  url,
  dedup_key,
  discovery_source,
  discovery_metadata,
  discovered_at,
  display_name,
  platform_status,
  platform_confidence,
  platform_signals,
  platform_signals_last_observed,
  health_status,
  is_access_restricted,
  catalog_size,
  catalog_size_status,
  catalog_size_estimate,
  health_signals,
  theme_name,
  country,
  primary_category,
  category_confidence,
  category_scores,
  category_signals,
  behavioral_tags,
  tags_locked,
  tags_locked_by,
  tags_locked_at,
  last_verification_attempt,
  verification_next_retry_at,
  verification_retry_count,
  last_health_check_attempt,
  health_check_next_retry_at,
  health_check_retry_count,
  last_classification_attempt,
  classification_next_retry_at,
  classification_retry_count,
  created_at,
  updated_at
"""

JSON_COLUMNS = {
    "discovery_metadata",
    "platform_signals",
    "platform_signals_last_observed",
    "health_signals",
    "category_scores",
    "category_signals",
}
PHASE_RESULT_COLUMNS: dict[Phase, tuple[str, ...]] = {
    "verification": (
        "platform_status",
        "platform_confidence",
        "platform_signals",
        "platform_signals_last_observed",
    ),
    "health_check": (
        "health_status",
        "is_access_restricted",
        "catalog_size",
        "catalog_size_status",
        "catalog_size_estimate",
        "health_signals",
        "display_name",
        "theme_name",
        "country",
    ),
    "classification": ("category_scores", "category_signals", "behavioral_tags"),
}
# Written only while the record is not locked by an operator.
LOCKABLE_COLUMNS = ("primary_category", "category_confidence")


def phase_bookkeeping_columns(phase: Phase) -> tuple[str, ...]:
    return (f"last_{phase}_attempt", f"{phase}_next_retry_at", f"{phase}_retry_count")


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        async with self._connection() as conn:
            await conn.execute(SCHEMA_SQL)

    async def upsert_discovered(
        self,
        *,
        url: str,
        dedup_key: str,
        source: str,
        metadata: dict[str, Any],
        display_name: str | None,
        now: datetime,
    ) -> UpsertResult:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                insert into candidates (
                  id,
                  url,
                  dedup_key,
                  discovery_source,
                  discovery_metadata,
                  discovered_at,
                  display_name,
                  verification_next_retry_at,
                  created_at,
                  updated_at
                )
                values ($1::uuid, $2, $3, $4, jsonb_build_object($4::text, $5::jsonb), $6, $7, $6, $6, $6)
                on conflict (dedup_key) do update set
                  discovery_metadata = candidates.discovery_metadata || jsonb_build_object($4::text, $5::jsonb),
                  verification_next_retry_at = case
                    when candidates.last_verification_attempt is null
                      then least(candidates.verification_next_retry_at, $6)
                    else candidates.verification_next_retry_at
                  end,
                  updated_at = $6
                returning {CANDIDATE_COLUMNS}, (xmax = 0) as inserted
                """,
                str(uuid.uuid4()),
                url,
                dedup_key,
                source,
                json.dumps(metadata),
                now,
                display_name,
            )
        if row is None:  # pragma: no cover - upsert always returns a row
            raise RepositoryError("candidate upsert returned no row")
        record = self._row_to_record(row)
        created = bool(row["inserted"])
        return UpsertResult(
            record=record,
            created=created,
            enqueued=created or record.last_verification_attempt is None,
        )

    async def get_candidate(self, record_id: str) -> CandidateRecord:
        self._require_uuid(record_id)
        async with self._connection() as conn:
            row = await conn.fetchrow(f"select {CANDIDATE_COLUMNS} from candidates where id = $1::uuid", record_id)
        if row is None:
            raise RepositoryNotFoundError("candidate not found")
        return self._row_to_record(row)

    async def list_candidates(
        self,
        *,
        limit: int,
        offset: int,
        platform_status: str | None = None,
        health_status: str | None = None,
        primary_category: str | None = None,
        is_active: bool | None = None,
    ) -> list[CandidateRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {CANDIDATE_COLUMNS}
                from candidates
                where ($3::text is null or platform_status = $3::text)
                  and ($4::text is null or health_status = $4::text)
                  and ($5::text is null or primary_category = $5::text)
                  and ($6::boolean is null or is_active = $6::boolean)
                order by discovered_at desc, id
                limit $1
                offset $2
                """,
                limit,
                offset,
                platform_status,
                health_status,
                primary_category,
                is_active,
            )
        return [self._row_to_record(row) for row in rows]

    async def list_due(self, phase: Phase, *, now: datetime, limit: int, max_attempts: int) -> list[CandidateRecord]:
        self._require_phase(phase)
        gate = "and platform_status in ('confirmed', 'probable')" if phase in GATED_PHASES else ""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {CANDIDATE_COLUMNS}
                from candidates
                where (
                    {phase}_next_retry_at <= $1
                    or ({phase}_next_retry_at is null and last_{phase}_attempt is null)
                  )
                  and {phase}_retry_count < $2
                  {gate}
                order by coalesce({phase}_next_retry_at, discovered_at) asc, id
                limit $3
                """,
                now,
                max(1, max_attempts),
                max(1, limit),
            )
        return [self._row_to_record(row) for row in rows]

    async def save_phase_result(self, phase: Phase, record: CandidateRecord) -> CandidateRecord:
        self._require_phase(phase)
        columns = PHASE_RESULT_COLUMNS[phase] + phase_bookkeeping_columns(phase)
        assignments, values = self._assignments(record, columns, start=2)
        if phase == "classification":
            for column in LOCKABLE_COLUMNS:
                values.append(getattr(record, column))
                assignments.append(f"{column} = case when tags_locked then {column} else ${len(values) + 1} end")
        return await self._update(record.id, assignments, values)

    async def save_phase_attempt(self, phase: Phase, record: CandidateRecord) -> CandidateRecord:
        self._require_phase(phase)
        assignments, values = self._assignments(record, phase_bookkeeping_columns(phase), start=2)
        return await self._update(record.id, assignments, values)

    async def lock_tags(
        self,
        record_id: str,
        *,
        category: Category | None,
        operator_id: str,
        now: datetime,
    ) -> CandidateRecord:
        self._require_uuid(record_id)
        validate_lock_request(category, operator_id)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                update candidates
                set
                  tags_locked = true,
                  tags_locked_by = $2,
                  tags_locked_at = $3,
                  primary_category = $4::text,
                  category_confidence = case when $4::text is null then null else 1.0 end,
                  updated_at = $3
                where id = $1::uuid
                returning {CANDIDATE_COLUMNS}
                """,
                record_id,
                operator_id.strip(),
                now,
                category,
            )
        if row is None:
            raise RepositoryNotFoundError("candidate not found")
        logger.info("tags locked record=%s operator=%s category=%s", record_id, operator_id, category)
        return self._row_to_record(row)

    async def unlock_tags(self, record_id: str, *, operator_id: str, now: datetime) -> CandidateRecord:
        self._require_uuid(record_id)
        if not operator_id.strip():
            raise RepositoryValidationError("operator_id is required")
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                update candidates
                set
                  tags_locked = false,
                  tags_locked_by = null,
                  tags_locked_at = null,
                  classification_next_retry_at = $2,
                  classification_retry_count = 0,
                  updated_at = $2
                where id = $1::uuid
                returning {CANDIDATE_COLUMNS}
                """,
                record_id,
                now,
            )
        if row is None:
            raise RepositoryNotFoundError("candidate not found")
        logger.info("tags unlocked record=%s operator=%s", record_id, operator_id)
        return self._row_to_record(row)

    async def reset_retries(self, record_id: str, phase: Phase, *, now: datetime) -> CandidateRecord:
        self._require_uuid(record_id)
        self._require_phase(phase)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                update candidates
                set {phase}_retry_count = 0, {phase}_next_retry_at = $2, updated_at = $2
                where id = $1::uuid
                returning {CANDIDATE_COLUMNS}
                """,
                record_id,
                now,
            )
        if row is None:
            raise RepositoryNotFoundError("candidate not found")
        return self._row_to_record(row)

    async def _update(self, record_id: str, assignments: list[str], values: list[Any]) -> CandidateRecord:
        self._require_uuid(record_id)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                update candidates
                set {", ".join(assignments)}, updated_at = now()
                where id = $1::uuid
                returning {CANDIDATE_COLUMNS}
                """,
                record_id,
                *values,
            )
        if row is None:
            raise RepositoryNotFoundError("candidate not found")
        return self._row_to_record(row)

    @staticmethod
    def _assignments(record: CandidateRecord, columns: tuple[str, ...], *, start: int) -> tuple[list[str], list[Any]]:
        assignments: list[str] = []
        values: list[Any] = []
        for offset, column in enumerate(columns):
            value = getattr(record, column)
            placeholder = f"${start + offset}"
            if column in JSON_COLUMNS:
                value = json.dumps(value)
                placeholder = f"{placeholder}::jsonb"
            assignments.append(f"{column} = {placeholder}")
            values.append(value)
        return assignments, values

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except (OSError, asyncpg.InterfaceError, pg_exc.PostgresConnectionError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("invalid candidate payload") from exc
        except pg_exc.CheckViolationError as exc:
            raise RepositoryConflictError(str(exc)) from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _require_uuid(record_id: str) -> None:
        try:
            uuid.UUID(str(record_id))
        except ValueError as exc:
            raise RepositoryNotFoundError("candidate not found") from exc

    @staticmethod
    def _require_phase(phase: str) -> None:
        if phase not in PHASES:
            raise RepositoryValidationError(f"unknown phase: {phase}")

    @classmethod
    def _row_to_record(cls, row: asyncpg.Record) -> CandidateRecord:
        payload = {name: row[name] for name in CandidateRecord.__dataclass_fields__}
        for column in JSON_COLUMNS:
            payload[column] = cls._coerce_json_dict(payload[column])
        payload["platform_confidence"] = float(payload["platform_confidence"] or 0.0)
        if payload["category_confidence"] is not None:
            payload["category_confidence"] = float(payload["category_confidence"])
        payload["behavioral_tags"] = list(payload["behavioral_tags"] or [])
        return CandidateRecord(**payload)

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


def validate_lock_request(category: str | None, operator_id: str) -> None:
    if category is not None and category not in CATEGORIES:
        raise RepositoryValidationError(f"unknown category: {category}")
    if not operator_id or not operator_id.strip():
        raise RepositoryValidationError("operator_id is required")


@lru_cache
def get_repository() -> PostgresRepository | InMemoryCandidateStore:
    settings = get_settings()
    if settings.storage_backend == "memory":
        from storescout.services.store import InMemoryCandidateStore

        return InMemoryCandidateStore()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
