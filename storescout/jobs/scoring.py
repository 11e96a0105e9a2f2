"""Weighted-evidence scoring shared by the probing phases.

A signal is a named, weighted observation that resolves to ``True``/``False``,
a partial score in ``[0, 1]``, or ``None`` when nothing could be observed.
Unobservable signals are excluded from both sides of the weighted mean so a
failed probe never counts as negative evidence.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from storescout.jobs.probes import ProbeFailure
from storescout.services.records import UNKNOWN

logger = logging.getLogger(__name__)

ContextT = TypeVar("ContextT")
Observation = bool | float | None


@dataclass(slots=True, frozen=True)
class Signal(Generic[ContextT]):
    name: str
    weight: float
    observe: Callable[[ContextT], Awaitable[Observation]]
    # Corroborating signals only count once some independent signal was observed.
    corroborating: bool = False


@dataclass(slots=True)
class SignalOutcome:
    name: str
    weight: float
    value: Observation
    corroborating: bool = False
    failure: str | None = None

    @property
    def observed(self) -> bool:
        return self.value is not None

    @property
    def score(self) -> float:
        if self.value is None:
            return 0.0
        return _clamp(float(self.value))


async def observe_signals(signals: Iterable[Signal[ContextT]], context: ContextT) -> dict[str, SignalOutcome]:
    """Run every signal's probe concurrently; probe failures become unknowns."""
    signal_list = list(signals)
    values = await asyncio.gather(*(_observe_one(signal, context) for signal in signal_list))
    return {outcome.name: outcome for outcome in values}


def weighted_confidence(outcomes: Mapping[str, SignalOutcome]) -> float | None:
    independent = [row for row in outcomes.values() if row.observed and not row.corroborating]
    if not independent:
        return None
    counted = independent + [row for row in outcomes.values() if row.observed and row.corroborating]
    total_weight = sum(row.weight for row in counted)
    if total_weight <= 0:
        return None
    return round(_clamp(sum(row.weight * row.score for row in counted) / total_weight), 4)


def independent_signal_observed(outcomes: Mapping[str, SignalOutcome]) -> bool:
    return any(row.observed and not row.corroborating for row in outcomes.values())


def carry_forward(outcomes: Mapping[str, SignalOutcome], previous: Mapping[str, Any]) -> list[str]:
    """Fill unobservable outcomes with their last recorded value, in place."""
    carried: list[str] = []
    for name, outcome in outcomes.items():
        if outcome.observed:
            continue
        last = previous.get(name)
        if isinstance(last, bool) or (isinstance(last, (int, float)) and 0.0 <= float(last) <= 1.0):
            outcome.value = last
            carried.append(name)
    return carried


def observed_values(outcomes: Mapping[str, SignalOutcome]) -> dict[str, Any]:
    return {name: outcome.value for name, outcome in outcomes.items() if outcome.observed}


def explain_outcomes(outcomes: Mapping[str, SignalOutcome]) -> dict[str, Any]:
    explained: dict[str, Any] = {}
    for name, outcome in outcomes.items():
        if outcome.value is None:
            explained[name] = UNKNOWN
        elif isinstance(outcome.value, bool):
            explained[name] = outcome.value
        else:
            explained[name] = round(_clamp(float(outcome.value)), 4)
    return explained


async def _observe_one(signal: Signal[ContextT], context: ContextT) -> SignalOutcome:
    try:
        value = await signal.observe(context)
    except ProbeFailure as exc:
        logger.debug("signal %s unobservable: %s", signal.name, exc)
        return SignalOutcome(
            name=signal.name,
            weight=signal.weight,
            value=None,
            corroborating=signal.corroborating,
            failure=exc.kind,
        )
    return SignalOutcome(name=signal.name, weight=signal.weight, value=value, corroborating=signal.corroborating)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
