"""Tests for optical drive enumeration."""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fleet.devices import is_optical_device, list_optical_devices


def test_lists_optical_drives_in_numeric_order(tmp_path):
    for name in ('sr10', 'sr2', 'sda', 'sr0', 'sr1a', 'loop0'):
        (tmp_path / name).touch()

    assert list_optical_devices(str(tmp_path)) == ['sr0', 'sr2', 'sr10']


def test_missing_dev_dir(tmp_path):
    assert list_optical_devices(str(tmp_path / 'nope')) == []


def test_is_optical_device():
    assert is_optical_device('sr0')
    assert not is_optical_device('sr')
    assert not is_optical_device('sda1')
    assert not is_optical_device(None)
