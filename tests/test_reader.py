"""Tests for read parsing and the mock reader."""

import asyncio

import pytest

from tagplace.reader.base import (
    INVALID_RSSI,
    ConnectionState,
    normalize_identifier,
    parse_signal_strength,
)
from tagplace.reader.mock import MockReader


class TestParseSignalStrength:
    def test_rounds_to_nearest(self):
        assert parse_signal_strength("-75.80") == -76
        assert parse_signal_strength("-75.40") == -75

    def test_half_rounds_up(self):
        assert parse_signal_strength("-75.5") == -75
        assert parse_signal_strength("-40.5") == -40

    def test_integer_string(self):
        assert parse_signal_strength("-60") == -60

    def test_surrounding_whitespace(self):
        assert parse_signal_strength("  -52.1 ") == -52

    def test_unparseable_is_sentinel(self):
        assert parse_signal_strength("n/a") == INVALID_RSSI
        assert parse_signal_strength("nan") == INVALID_RSSI

    def test_missing_is_zero(self):
        assert parse_signal_strength(None) == 0
        assert parse_signal_strength("") == 0


class TestNormalizeIdentifier:
    def test_trims_and_uppercases(self):
        assert normalize_identifier("  e2801160abc ") == "E2801160ABC"

    def test_none(self):
        assert normalize_identifier(None) == ""


class TestMockReader:
    def test_sweep_dominated_by_target(self):
        reader = MockReader(reads_per_sweep=4)
        reads = reader._generate_reads()
        counts: dict[str, int] = {}
        for identifier, rssi in reads:
            counts[identifier] = counts.get(identifier, 0) + 1
            float(rssi)
        assert max(counts.values()) == 4

    def test_power_level_range(self):
        reader = MockReader()
        assert reader.set_power_level(20) is True
        assert reader.set_power_level(40) is False
        assert reader.set_power_level(4) is False

    def test_battery_invalid_when_disconnected(self):
        reader = MockReader()
        assert reader.get_battery_percent() == 87
        reader.set_connection_state(ConnectionState.disconnected)
        assert reader.get_battery_percent() < 0

    @pytest.mark.asyncio
    async def test_refuses_start_when_disconnected(self):
        reader = MockReader()
        reader.set_connection_state(ConnectionState.disconnected)
        assert reader.start_continuous_read() is False

    @pytest.mark.asyncio
    async def test_continuous_read_delivers_reads(self):
        reader = MockReader(sweep_interval=0.05, reads_per_sweep=2)
        received: list[tuple[str, str]] = []
        reader.on_tag_read(lambda identifier, rssi: received.append((identifier, rssi)))

        assert reader.start_continuous_read() is True
        await asyncio.sleep(0.2)
        reader.stop_continuous_read()

        assert len(received) >= 2
        assert reader._task is None
