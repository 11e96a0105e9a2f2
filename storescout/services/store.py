from __future__ import annotations

import asyncio
import copy
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any

from storescout.services.records import PHASES, CandidateRecord, Category, Phase
from storescout.services.repository import (
    LOCKABLE_COLUMNS,
    PHASE_RESULT_COLUMNS,
    RepositoryNotFoundError,
    RepositoryValidationError,
    UpsertResult,
    phase_bookkeeping_columns,
    validate_lock_request,
)


class InMemoryCandidateStore:
    """Process-local candidate store with the same contract as the Postgres repository."""

    def __init__(self) -> None:
        self.records: dict[str, CandidateRecord] = {}
        self._by_dedup_key: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    async def ensure_schema(self) -> None:
        return None

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
        async with self._lock:
            record_id = self._by_dedup_key.get(dedup_key)
            if record_id is None:
                record = CandidateRecord(
                    id=str(uuid.uuid4()),
                    url=url,
                    dedup_key=dedup_key,
                    discovery_source=source,
                    discovered_at=now,
                    display_name=display_name,
                    discovery_metadata={source: copy.deepcopy(metadata)},
                    verification_next_retry_at=now,
                    created_at=now,
                    updated_at=now,
                )
                self.records[record.id] = record
                self._by_dedup_key[dedup_key] = record.id
                return UpsertResult(record=copy.deepcopy(record), created=True, enqueued=True)

            existing = self.records[record_id]
            merged = dict(existing.discovery_metadata)
            merged[source] = copy.deepcopy(metadata)
            next_retry_at = existing.verification_next_retry_at
            if existing.last_verification_attempt is None:
                next_retry_at = min(next_retry_at, now) if next_retry_at else now
            record = replace(
                existing,
                discovery_metadata=merged,
                verification_next_retry_at=next_retry_at,
                updated_at=now,
            )
            self.records[record_id] = record
            return UpsertResult(
                record=copy.deepcopy(record),
                created=False,
                enqueued=record.last_verification_attempt is None,
            )

    async def get_candidate(self, record_id: str) -> CandidateRecord:
        async with self._lock:
            return copy.deepcopy(self._require(record_id))

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
        async with self._lock:
            rows = [
                record
                for record in self.records.values()
                if (platform_status is None or record.platform_status == platform_status)
                and (health_status is None or record.health_status == health_status)
                and (primary_category is None or record.primary_category == primary_category)
                and (is_active is None or record.is_active == is_active)
            ]
            rows.sort(key=lambda record: (record.discovered_at, record.id), reverse=True)
            return [copy.deepcopy(record) for record in rows[offset : offset + limit]]

    async def list_due(self, phase: Phase, *, now: datetime, limit: int, max_attempts: int) -> list[CandidateRecord]:
        async with self._lock:
            due = [record for record in self.records.values() if record.is_eligible(phase, now, max(1, max_attempts))]
            due.sort(key=lambda record: (record.due_at(phase), record.id))
            return [copy.deepcopy(record) for record in due[: max(1, limit)]]

    async def save_phase_result(self, phase: Phase, record: CandidateRecord) -> CandidateRecord:
        columns = PHASE_RESULT_COLUMNS[phase] + phase_bookkeeping_columns(phase)
        async with self._lock:
            current = self._require(record.id)
            changes = {column: copy.deepcopy(getattr(record, column)) for column in columns}
            if phase == "classification" and not current.tags_locked:
                changes.update({column: getattr(record, column) for column in LOCKABLE_COLUMNS})
            return self._store(replace(current, **changes, updated_at=_now_like(record, phase)))

    async def save_phase_attempt(self, phase: Phase, record: CandidateRecord) -> CandidateRecord:
        async with self._lock:
            current = self._require(record.id)
            changes = {column: getattr(record, column) for column in phase_bookkeeping_columns(phase)}
            return self._store(replace(current, **changes, updated_at=_now_like(record, phase)))

    async def lock_tags(
        self,
        record_id: str,
        *,
        category: Category | None,
        operator_id: str,
        now: datetime,
    ) -> CandidateRecord:
        validate_lock_request(category, operator_id)
        async with self._lock:
            current = self._require(record_id)
            return self._store(
                replace(
                    current,
                    tags_locked=True,
                    tags_locked_by=operator_id.strip(),
                    tags_locked_at=now,
                    primary_category=category,
                    category_confidence=1.0 if category is not None else None,
                    updated_at=now,
                )
            )

    async def unlock_tags(self, record_id: str, *, operator_id: str, now: datetime) -> CandidateRecord:
        if not operator_id.strip():
            raise RepositoryValidationError("operator_id is required")
        async with self._lock:
            current = self._require(record_id)
            return self._store(
                replace(
                    current,
                    tags_locked=False,
                    tags_locked_by=None,
                    tags_locked_at=None,
                    classification_next_retry_at=now,
                    classification_retry_count=0,
                    updated_at=now,
                )
            )

    async def reset_retries(self, record_id: str, phase: Phase, *, now: datetime) -> CandidateRecord:
        if phase not in PHASES:
            raise RepositoryValidationError(f"unknown phase: {phase}")
        async with self._lock:
            current = self._require(record_id)
            changes = {f"{phase}_retry_count": 0, f"{phase}_next_retry_at": now}
            return self._store(replace(current, **changes, updated_at=now))

    def _require(self, record_id: str) -> CandidateRecord:
        record = self.records.get(record_id)
        if record is None:
            raise RepositoryNotFoundError("candidate not found")
        return record

    def _store(self, record: CandidateRecord) -> CandidateRecord:
        self.records[record.id] = record
        return copy.deepcopy(record)


def _now_like(record: CandidateRecord, phase: Phase) -> datetime | None:
    return record.last_attempt(phase) or record.updated_at
