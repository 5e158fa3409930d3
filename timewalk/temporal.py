"""Temporal validity for versioned records.

Every versioned row describes its logical object over the half-open window
[valid_from, valid_to): valid_from is inclusive, valid_to exclusive, and a
null valid_to means the version still holds. A record is valid at day d iff

    valid_from <= d AND (valid_to IS NULL OR valid_to > d)

which is the predicate valid_at() builds for SQL and ValidityInterval
evaluates in process. The *_current views use it with d = CURRENT_DATE.

Superseding a version at day d closes the old window at d and opens the new
one at d, so the two never share a day. Overlapping windows for the same
logical key are anomalies: resolve_as_of() returns all of them and reports
them, it never picks one.
"""

import logging
import os
from collections import defaultdict
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import and_, or_

logger = logging.getLogger(__name__)

# When false, overlapping versions become an ingestion contract: they are
# still reported by resolve_as_of() and find_overlaps(), just not rejected
# by the repository or by the store.
ENFORCE_NON_OVERLAP = os.getenv("TIMEWALK_ENFORCE_NON_OVERLAP", "true").lower() == "true"


class ValidityError(ValueError):
    """A validity window is empty or a supersession date is out of range."""


class VersionOverlapError(ValueError):
    """A write would give one logical object two overlapping versions."""

    def __init__(self, key: Hashable, conflicts: Iterable[Any]):
        self.key = key
        self.conflicts = list(conflicts)
        ids = ", ".join(str(getattr(c, "id", c)) for c in self.conflicts)
        super().__init__(f"Validity window for {key!r} overlaps existing version(s): {ids}")


def today() -> date:
    return date.today()


@dataclass(frozen=True)
class ValidityInterval:
    valid_from: date
    valid_to: date | None = None

    def __post_init__(self):
        if self.valid_from is None:
            raise ValidityError("valid_from is required")
        if self.valid_to is not None and self.valid_to <= self.valid_from:
            raise ValidityError(
                f"valid_to ({self.valid_to}) must be later than valid_from ({self.valid_from})"
            )

    @classmethod
    def of(cls, record: Any) -> "ValidityInterval":
        return cls(record.valid_from, record.valid_to)

    @property
    def is_open(self) -> bool:
        return self.valid_to is None

    def contains(self, day: date) -> bool:
        return self.valid_from <= day and (self.valid_to is None or self.valid_to > day)

    def overlaps(self, other: "ValidityInterval") -> bool:
        """True if some day lies in both windows. Adjacent windows do not overlap."""
        starts_before_other_ends = other.valid_to is None or self.valid_from < other.valid_to
        other_starts_before_end = self.valid_to is None or other.valid_from < self.valid_to
        return starts_before_other_ends and other_starts_before_end

    def close(self, at: date) -> "ValidityInterval":
        """The window cut short at `at` (exclusive)."""
        if at <= self.valid_from:
            raise ValidityError(
                f"Cannot close a version at {at}: it only starts on {self.valid_from}"
            )
        if self.valid_to is not None and at > self.valid_to:
            raise ValidityError(f"Version already ended on {self.valid_to}")
        return ValidityInterval(self.valid_from, at)


# =============================================================================
# PREDICATES
# =============================================================================


def valid_at(model, day=None):
    """SQL predicate selecting rows of `model` valid on `day` (default today).

    `day` may be a date or a SQL expression such as func.current_date().
    """
    if day is None:
        day = today()
    return and_(
        model.valid_from <= day,
        or_(model.valid_to.is_(None), model.valid_to > day),
    )


def is_valid_at(record: Any, day: date) -> bool:
    return ValidityInterval.of(record).contains(day)


def logical_key(record: Any) -> Hashable:
    """The value identifying a record's logical object across versions.

    Rows without a logical key are treated as their own object.
    """
    column = getattr(type(record), "__logical_key__", None)
    value = getattr(record, column, None) if column else None
    return value if value is not None else ("id", getattr(record, "id", None) or id(record))


# =============================================================================
# RESOLUTION
# =============================================================================


@dataclass
class Resolution:
    """The versions valid at one day."""

    as_of: date
    records: list[Any] = field(default_factory=list)
    anomalies: dict[Hashable, list[Any]] = field(default_factory=dict)

    @property
    def is_consistent(self) -> bool:
        return not self.anomalies


def resolve_as_of(
    records: Iterable[Any],
    day: date | None = None,
    key: Callable[[Any], Hashable] = logical_key,
) -> Resolution:
    """Select the records valid at `day` and flag keys with several matches."""
    day = day or today()
    matched = [record for record in records if is_valid_at(record, day)]

    by_key: dict[Hashable, list[Any]] = defaultdict(list)
    for record in matched:
        by_key[key(record)].append(record)
    anomalies = {k: rows for k, rows in by_key.items() if len(rows) > 1}

    if anomalies:
        logger.warning(
            f"{len(anomalies)} logical object(s) have more than one version valid at {day}: "
            f"{sorted(str(k) for k in anomalies)}"
        )
    return Resolution(as_of=day, records=matched, anomalies=anomalies)


@dataclass(frozen=True)
class Overlap:
    key: Hashable
    first: Any
    second: Any


def find_overlaps(
    records: Iterable[Any],
    key: Callable[[Any], Hashable] = logical_key,
) -> list[Overlap]:
    """Every pair of versions of the same logical object whose windows overlap."""
    groups: dict[Hashable, list[Any]] = defaultdict(list)
    for record in records:
        groups[key(record)].append(record)

    found: list[Overlap] = []
    for k, versions in groups.items():
        versions.sort(key=lambda r: r.valid_from)
        for i, earlier in enumerate(versions):
            window = ValidityInterval.of(earlier)
            for later in versions[i + 1:]:
                # sorted by start: once a later version starts after this one ends, so do the rest
                if window.valid_to is not None and later.valid_from >= window.valid_to:
                    break
                found.append(Overlap(key=k, first=earlier, second=later))
    return found


def ensure_no_overlap(interval: ValidityInterval, siblings: Iterable[Any], key: Hashable = None) -> None:
    """Raise VersionOverlapError if `interval` overlaps any sibling version."""
    conflicts = [s for s in siblings if interval.overlaps(ValidityInterval.of(s))]
    if conflicts:
        raise VersionOverlapError(key, conflicts)
