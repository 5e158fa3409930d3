"""Tests for validity windows and as-of resolution."""

from datetime import date

import pytest
from sqlalchemy import func
from sqlalchemy.dialects import postgresql

from conftest import make_building, make_parcel
from timewalk.models import Building
from timewalk.temporal import (
    ValidityError,
    ValidityInterval,
    VersionOverlapError,
    ensure_no_overlap,
    find_overlaps,
    is_valid_at,
    logical_key,
    resolve_as_of,
    valid_at,
)


class TestValidityInterval:
    def test_rejects_empty_window(self):
        with pytest.raises(ValidityError):
            ValidityInterval(date(1776, 1, 1), date(1776, 1, 1))
        with pytest.raises(ValidityError):
            ValidityInterval(date(1776, 1, 1), date(1700, 1, 1))

    def test_half_open(self):
        window = ValidityInterval(date(1660, 1, 1), date(1776, 1, 1))
        assert window.contains(date(1660, 1, 1))
        assert window.contains(date(1775, 12, 31))
        assert not window.contains(date(1776, 1, 1))
        assert not window.contains(date(1659, 12, 31))

    def test_open_window_contains_future(self):
        window = ValidityInterval(date(1776, 1, 1))
        assert window.is_open
        assert window.contains(date(2100, 1, 1))

    def test_adjacent_windows_do_not_overlap(self):
        first = ValidityInterval(date(1660, 1, 1), date(1776, 1, 1))
        second = ValidityInterval(date(1776, 1, 1))
        assert not first.overlaps(second)
        assert not second.overlaps(first)

    def test_overlapping_windows(self):
        first = ValidityInterval(date(1660, 1, 1), date(1780, 1, 1))
        second = ValidityInterval(date(1776, 1, 1))
        assert first.overlaps(second)
        assert second.overlaps(first)
        assert ValidityInterval(date(1700, 1, 1)).overlaps(ValidityInterval(date(1800, 1, 1)))

    def test_close(self):
        window = ValidityInterval(date(1776, 1, 1))
        assert window.close(date(1800, 6, 1)) == ValidityInterval(date(1776, 1, 1), date(1800, 6, 1))

    def test_close_rejects_dates_outside_window(self):
        window = ValidityInterval(date(1776, 1, 1), date(1790, 1, 1))
        with pytest.raises(ValidityError):
            window.close(date(1776, 1, 1))
        with pytest.raises(ValidityError):
            window.close(date(1795, 1, 1))


class TestValidAtPredicate:
    def test_compiles_half_open_predicate(self):
        sql = str(
            valid_at(Building, func.current_date()).compile(
                dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True}
            )
        )
        assert "buildings.valid_from <= CURRENT_DATE" in sql
        assert "buildings.valid_to IS NULL" in sql
        assert "buildings.valid_to > CURRENT_DATE" in sql

    def test_matches_in_process_check(self):
        building = make_building(valid_from=date(1776, 1, 1), valid_to=date(1800, 6, 1))
        assert is_valid_at(building, date(1800, 5, 31))
        assert not is_valid_at(building, date(1800, 6, 1))


class TestResolveAsOf:
    def test_supersession_scenario(self):
        original = make_building("B1", valid_from=date(1776, 1, 1))
        assert resolve_as_of([original], date(1800, 1, 1)).records == [original]

        successor = make_building("B1", valid_from=date(1800, 6, 1))
        original.valid_to = date(1800, 6, 1)
        versions = [original, successor]

        at_switch = resolve_as_of(versions, date(1800, 6, 1))
        assert at_switch.records == [successor]
        assert at_switch.is_consistent

        before = resolve_as_of(versions, date(1790, 1, 1))
        assert before.records == [original]

    def test_exactly_one_current_version_around_supersession(self):
        original = make_building("B1", valid_from=date(1776, 1, 1), valid_to=date(1800, 6, 1))
        successor = make_building("B1", valid_from=date(1800, 6, 1))
        for day in (date(1776, 1, 1), date(1800, 5, 31), date(1800, 6, 1), date(1900, 1, 1)):
            assert len(resolve_as_of([original, successor], day).records) == 1

    def test_overlaps_are_reported_not_deduplicated(self, caplog):
        first = make_building("B1", valid_from=date(1776, 1, 1))
        second = make_building("B1", valid_from=date(1790, 1, 1))
        other = make_building("B2", valid_from=date(1776, 1, 1))

        resolution = resolve_as_of([first, second, other], date(1795, 1, 1))

        assert len(resolution.records) == 3
        assert resolution.anomalies == {"B1": [first, second]}
        assert not resolution.is_consistent
        assert "more than one version" in caplog.text

    def test_unkeyed_records_are_distinct_objects(self):
        first = make_building(None)
        second = make_building(None)
        assert logical_key(first) != logical_key(second)
        assert resolve_as_of([first, second], date(1800, 1, 1)).is_consistent

    def test_uses_each_tables_logical_key(self):
        assert logical_key(make_parcel("LOT-7")) == "LOT-7"
        assert logical_key(make_building("B-7")) == "B-7"


class TestOverlapValidation:
    def test_find_overlaps(self):
        a = make_building("B1", valid_from=date(1776, 1, 1), valid_to=date(1800, 1, 1))
        b = make_building("B1", valid_from=date(1790, 1, 1), valid_to=date(1810, 1, 1))
        c = make_building("B1", valid_from=date(1810, 1, 1))
        d = make_building("B2", valid_from=date(1776, 1, 1))

        overlaps = find_overlaps([c, b, d, a])

        assert len(overlaps) == 1
        assert overlaps[0].key == "B1"
        assert (overlaps[0].first, overlaps[0].second) == (a, b)

    def test_find_overlaps_with_open_windows(self):
        a = make_building("B1", valid_from=date(1776, 1, 1))
        b = make_building("B1", valid_from=date(1790, 1, 1))
        c = make_building("B1", valid_from=date(1800, 1, 1))
        assert len(find_overlaps([a, b, c])) == 3

    def test_ensure_no_overlap(self):
        existing = make_building("B1", valid_from=date(1776, 1, 1), valid_to=date(1800, 1, 1))
        ensure_no_overlap(ValidityInterval(date(1800, 1, 1)), [existing], "B1")

        with pytest.raises(VersionOverlapError) as excinfo:
            ensure_no_overlap(ValidityInterval(date(1799, 1, 1)), [existing], "B1")
        assert excinfo.value.key == "B1"
        assert excinfo.value.conflicts == [existing]
