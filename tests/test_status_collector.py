"""Tests for status aggregation and heartbeat crash detection."""

import json
import os
import sys
from datetime import datetime
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fleet.models import DriveState
from fleet.status_collector import StatusAggregator, parse_status_record
from fleet.system_executor import ProbeResult


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def write_status(status_dir, device, **fields):
    with open(os.path.join(status_dir, f"{device}.json"), 'w') as f:
        json.dump(fields, f)


@pytest.fixture
def fleet_dirs(tmp_path):
    dev_dir = tmp_path / 'dev'
    status_dir = tmp_path / 'status'
    dev_dir.mkdir()
    status_dir.mkdir()
    for device in ('sr0', 'sr1', 'sda'):
        (dev_dir / device).touch()
    return str(dev_dir), str(status_dir)


@pytest.fixture
def clock():
    return Clock(1000.0)


@pytest.fixture
def prober():
    return MagicMock(return_value=ProbeResult.TIMEOUT)


@pytest.fixture
def aggregator(fleet_dirs, clock, prober, tmp_path):
    dev_dir, status_dir = fleet_dirs
    return StatusAggregator(
        status_dir=status_dir,
        dev_dir=dev_dir,
        log_dir=str(tmp_path / 'logs'),
        crash_timeout=300,
        prober=prober,
        clock=clock,
        now_fn=lambda: datetime(2024, 3, 1, 12, 0, 0),
    )


class TestParseStatusRecord:

    def test_full_record(self):
        status = parse_status_record('sr0', {
            'state': 'ripping',
            'discName': 'MOVIE_DISC',
            'discType': 'bluray',
            'progress': 42.5,
            'operation': 'Saving titles',
            'titleCurrent': 2,
            'titleTotal': 5,
            'startTime': 900,
            'elapsed': 100,
            'heartbeat': 995,
            'eta': '00:12:00',
        }, log_dir='/var/log')

        assert status.state == DriveState.RIPPING
        assert status.disc_name == 'MOVIE_DISC'
        assert status.progress == 42.5
        assert status.title_total == 5
        assert status.heartbeat == 995
        assert status.log_file == '/var/log/autorip-sr0.log'

    def test_not_an_object_is_idle(self):
        status = parse_status_record('sr0', ['ripping'])
        assert status.state == DriveState.IDLE
        assert status.heartbeat is None

    def test_unknown_state_is_idle(self):
        assert parse_status_record('sr0', {'state': 'melting'}).state == DriveState.IDLE

    def test_progress_is_clamped(self):
        assert parse_status_record('sr0', {'progress': 140}).progress == 100
        assert parse_status_record('sr0', {'progress': -3}).progress == 0
        assert parse_status_record('sr0', {'progress': 'lots'}).progress == 0

    def test_to_dict_uses_camel_case(self):
        data = parse_status_record('sr1', {'state': 'idle'}).to_dict()
        assert data['device'] == 'sr1'
        assert data['devicePath'] == '/dev/sr1'
        assert data['state'] == 'idle'
        assert 'titleCurrent' in data
        assert 'errorMessage' in data


class TestRefresh:

    def test_missing_record_is_idle(self, aggregator):
        drives = aggregator.refresh()

        assert [drive.device for drive in drives] == ['sr0', 'sr1']
        assert all(drive.state == DriveState.IDLE for drive in drives)

    def test_corrupt_record_is_idle(self, aggregator, fleet_dirs):
        _, status_dir = fleet_dirs
        with open(os.path.join(status_dir, 'sr0.json'), 'w') as f:
            f.write('{"state": "ripp')

        aggregator.refresh()
        assert aggregator.get('sr0').state == DriveState.IDLE

    @pytest.mark.parametrize("record", [
        '{"state": "ripping", "titleCurrent": Infinity}',
        '{"state": "ripping", "titleTotal": NaN}',
        '{"state": ["ripping"]}',
        '{"state": {"value": "ripping"}}',
        '{"state": "ripping", "progress": NaN, "heartbeat": -Infinity}',
    ])
    def test_malformed_record_does_not_stop_refresh(self, aggregator, fleet_dirs, record):
        _, status_dir = fleet_dirs
        with open(os.path.join(status_dir, 'sr0.json'), 'w') as f:
            f.write(record)
        write_status(status_dir, 'sr1', state='ripping', heartbeat=999)

        drives = aggregator.refresh()

        assert [drive.device for drive in drives] == ['sr0', 'sr1']
        sr0 = aggregator.get('sr0')
        assert sr0.progress == 0
        assert sr0.heartbeat is None
        assert sr0.title_current == 0
        assert sr0.title_total == 0
        assert aggregator.get('sr1').state == DriveState.RIPPING

    def test_non_string_state_is_idle(self, aggregator, fleet_dirs):
        _, status_dir = fleet_dirs
        with open(os.path.join(status_dir, 'sr0.json'), 'w') as f:
            f.write('{"state": ["ripping"]}')

        aggregator.refresh()
        assert aggregator.get('sr0').state == DriveState.IDLE

    def test_producer_cannot_declare_crash(self, aggregator, fleet_dirs):
        _, status_dir = fleet_dirs
        write_status(status_dir, 'sr0', state='crashed', heartbeat=999)

        aggregator.refresh()
        assert aggregator.get('sr0').state == DriveState.ERROR

    def test_vanished_device_is_removed(self, aggregator, fleet_dirs):
        dev_dir, _ = fleet_dirs
        aggregator.refresh()
        os.remove(os.path.join(dev_dir, 'sr1'))

        aggregator.refresh()
        assert aggregator.get('sr1') is None
        assert [drive.device for drive in aggregator.snapshot()] == ['sr0']

    def test_revision_changes_only_on_change(self, aggregator, fleet_dirs):
        _, status_dir = fleet_dirs
        aggregator.refresh()
        revision = aggregator.revision

        aggregator.refresh()
        assert aggregator.revision == revision

        write_status(status_dir, 'sr0', state='detecting')
        aggregator.refresh()
        assert aggregator.revision == revision + 1

    def test_devices_in_state(self, aggregator, fleet_dirs):
        _, status_dir = fleet_dirs
        write_status(status_dir, 'sr1', state='ripping', heartbeat=999)
        aggregator.refresh()

        assert aggregator.devices_in_state(['sr0', 'sr1', 'sr9'], DriveState.RIPPING) == ['sr1']


class TestCrashDetection:

    def test_fresh_heartbeat_is_never_probed(self, aggregator, fleet_dirs, prober, clock):
        _, status_dir = fleet_dirs
        write_status(status_dir, 'sr0', state='ripping', heartbeat=clock.now - 10)

        assert aggregator.check_for_crashes() == []
        prober.assert_not_called()
        assert aggregator.get('sr0').state == DriveState.RIPPING

    def test_heartbeat_exactly_at_timeout_is_not_stale(self, aggregator, fleet_dirs, prober, clock):
        _, status_dir = fleet_dirs
        write_status(status_dir, 'sr0', state='ripping', heartbeat=clock.now - 300)

        assert aggregator.check_for_crashes() == []
        prober.assert_not_called()

    def test_idle_drive_with_old_heartbeat_is_ignored(self, aggregator, fleet_dirs, prober):
        _, status_dir = fleet_dirs
        write_status(status_dir, 'sr0', state='idle', heartbeat=1)

        assert aggregator.check_for_crashes() == []
        prober.assert_not_called()

    def test_stale_unresponsive_drive_crashes_once(self, aggregator, fleet_dirs, prober, clock):
        _, status_dir = fleet_dirs
        write_status(status_dir, 'sr0', state='ripping', heartbeat=1000)
        clock.now = 1301

        events = aggregator.check_for_crashes()

        assert len(events) == 1
        assert events[0].device == 'sr0'
        assert events[0].heartbeat_age == 301
        prober.assert_called_once_with('sr0')
        drive = aggregator.get('sr0')
        assert drive.state == DriveState.CRASHED
        assert drive.error_message == "Drive unresponsive (heartbeat: 301s, probe timed out)"

        # Still stale on the next check, but already crashed
        clock.now = 1310
        assert aggregator.check_for_crashes() == []
        assert aggregator.get('sr0').state == DriveState.CRASHED
        assert [event.device for event in aggregator.crash_events()] == ['sr0']
        assert list(aggregator.crash_events()) == []

    def test_responsive_drive_is_only_slow(self, aggregator, fleet_dirs, prober, clock):
        _, status_dir = fleet_dirs
        write_status(status_dir, 'sr0', state='ripping', heartbeat=1000)
        clock.now = 1400
        prober.return_value = ProbeResult.RESPONSIVE

        assert aggregator.check_for_crashes() == []
        assert aggregator.get('sr0').state == DriveState.RIPPING

    def test_failed_probe_is_not_a_crash(self, aggregator, fleet_dirs, prober, clock):
        _, status_dir = fleet_dirs
        write_status(status_dir, 'sr0', state='ripping', heartbeat=1000)
        clock.now = 1400
        prober.return_value = ProbeResult.FAILED

        assert aggregator.check_for_crashes() == []

    def test_probe_exception_is_not_a_crash(self, aggregator, fleet_dirs, prober, clock):
        _, status_dir = fleet_dirs
        write_status(status_dir, 'sr0', state='ripping', heartbeat=1000)
        clock.now = 1400
        prober.side_effect = RuntimeError("boom")

        assert aggregator.check_for_crashes() == []
        assert aggregator.get('sr0').state == DriveState.RIPPING

    def test_only_suspects_are_probed(self, aggregator, fleet_dirs, prober, clock):
        _, status_dir = fleet_dirs
        write_status(status_dir, 'sr0', state='ripping', heartbeat=1000)
        write_status(status_dir, 'sr1', state='ripping', heartbeat=1390)
        clock.now = 1400

        events = aggregator.check_for_crashes()

        assert [event.device for event in events] == ['sr0']
        prober.assert_called_once_with('sr0')
        assert aggregator.get('sr1').state == DriveState.RIPPING


class TestCrashRecovery:

    @pytest.fixture
    def crashed(self, aggregator, fleet_dirs, clock):
        _, status_dir = fleet_dirs
        write_status(status_dir, 'sr0', state='ripping', heartbeat=1000)
        clock.now = 1301
        aggregator.check_for_crashes()
        return status_dir

    def test_same_heartbeat_keeps_crash(self, aggregator, crashed):
        aggregator.refresh()
        assert aggregator.get('sr0').state == DriveState.CRASHED

    def test_newer_but_stale_heartbeat_keeps_crash(self, aggregator, crashed, clock):
        write_status(crashed, 'sr0', state='ripping', heartbeat=1000.5)
        aggregator.refresh()
        assert aggregator.get('sr0').state == DriveState.CRASHED

    def test_fresh_heartbeat_clears_crash(self, aggregator, crashed, clock):
        write_status(crashed, 'sr0', state='ripping', heartbeat=1300)
        aggregator.refresh()
        assert aggregator.get('sr0').state == DriveState.RIPPING

    def test_fresh_idle_record_clears_crash(self, aggregator, crashed, clock):
        write_status(crashed, 'sr0', state='idle', heartbeat=1300)
        aggregator.refresh()
        assert aggregator.get('sr0').state == DriveState.IDLE

    def test_record_without_heartbeat_keeps_crash(self, aggregator, crashed):
        write_status(crashed, 'sr0', state='idle')
        aggregator.refresh()
        assert aggregator.get('sr0').state == DriveState.CRASHED


def test_default_probe_uses_executor(fleet_dirs, tmp_path):
    dev_dir, status_dir = fleet_dirs
    executor = MagicMock()
    executor.probe_device.return_value = ProbeResult.RESPONSIVE
    aggregator = StatusAggregator(status_dir=status_dir, dev_dir=dev_dir, probe_timeout=2, executor=executor)

    assert aggregator._default_probe('sr0') == ProbeResult.RESPONSIVE
    executor.probe_device.assert_called_once_with('/dev/sr0', timeout=2)


def test_ensure_status_dir_creates_directory(tmp_path):
    status_dir = tmp_path / 'nested' / 'status'
    aggregator = StatusAggregator(status_dir=str(status_dir), dev_dir=str(tmp_path))

    aggregator.ensure_status_dir()
    assert status_dir.is_dir()
