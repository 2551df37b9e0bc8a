"""Tests for the on-disk PID record."""

from datetime import datetime

import pytest

from buckle.core.state import PID_FILE_NAME, PORT_FILE_NAME, ProcessRecord, StateStore
from buckle.errors import CorruptStateError


class TestReadRecord:
    def test_missing_file_returns_none(self, store):
        assert store.read_record() is None

    def test_missing_directory_returns_none(self, tmp_path):
        store = StateStore(tmp_path / "does" / "not" / "exist")
        assert store.read_record() is None

    def test_reads_pid_with_whitespace(self, store, state_dir):
        state_dir.mkdir()
        (state_dir / PID_FILE_NAME).write_text(" 4242\n")

        record = store.read_record()
        assert record.pid == 4242
        assert isinstance(record.started_at, datetime)

    @pytest.mark.parametrize("content", ["", "abc", "12.5", "0", "-7", "+5", "1_000", "12 34"])
    def test_invalid_content_is_corrupt(self, store, state_dir, content):
        state_dir.mkdir()
        (state_dir / PID_FILE_NAME).write_text(content)

        with pytest.raises(CorruptStateError) as exc_info:
            store.read_record()
        assert exc_info.value.content == content

    def test_non_ascii_digits_are_corrupt(self, store, state_dir):
        state_dir.mkdir()
        (state_dir / PID_FILE_NAME).write_text("\u0663\u0664", encoding="utf-8")

        with pytest.raises(CorruptStateError):
            store.read_record()

    def test_undecodable_bytes_are_corrupt(self, store, state_dir):
        state_dir.mkdir()
        (state_dir / PID_FILE_NAME).write_bytes(b"\xff\xfe\x00")

        with pytest.raises(CorruptStateError):
            store.read_record()

    def test_huge_pid_is_read_as_is(self, store, state_dir):
        state_dir.mkdir()
        (state_dir / PID_FILE_NAME).write_text("99999999999")
        assert store.read_record().pid == 99999999999


class TestWriteRecord:
    def test_creates_directory_and_writes_decimal_pid(self, store, state_dir):
        record = store.write_record(1234)

        assert isinstance(record, ProcessRecord)
        assert record.pid == 1234
        assert (state_dir / PID_FILE_NAME).read_text() == "1234"

    def test_overwrites_existing_record(self, store):
        store.write_record(1)
        store.write_record(2)
        assert store.read_record().pid == 2

    def test_leaves_no_temp_files(self, store, state_dir):
        store.write_record(99)
        assert [p.name for p in state_dir.iterdir()] == [PID_FILE_NAME]

    def test_rejects_non_positive_pid(self, store):
        with pytest.raises(ValueError):
            store.write_record(0)
        assert store.read_record() is None

    def test_records_port_alongside_pid(self, store, state_dir):
        store.write_record(1234, port=8123)

        assert (state_dir / PID_FILE_NAME).read_text() == "1234"
        assert (state_dir / PORT_FILE_NAME).read_text() == "8123"
        assert store.read_record().port == 8123

    def test_record_without_port_drops_previous_port(self, store):
        store.write_record(1, port=8123)
        store.write_record(2)
        assert store.read_record().port is None

    @pytest.mark.parametrize("content", ["", "abc", "0", "70000", b"\xff"])
    def test_unusable_port_file_reads_as_unknown(self, store, state_dir, content):
        store.write_record(42)
        port_file = state_dir / PORT_FILE_NAME
        if isinstance(content, bytes):
            port_file.write_bytes(content)
        else:
            port_file.write_text(content)

        record = store.read_record()
        assert record.pid == 42
        assert record.port is None


class TestClearRecord:
    def test_removes_record(self, store):
        store.write_record(77)
        store.clear_record()
        assert store.read_record() is None

    def test_removes_port_file(self, store, state_dir):
        store.write_record(77, port=8000)
        store.clear_record()
        assert not (state_dir / PORT_FILE_NAME).exists()

    def test_idempotent_without_record(self, store):
        store.clear_record()
        store.clear_record()
        assert store.read_record() is None


def test_log_file_lives_in_state_dir(store, state_dir):
    assert store.log_file.parent == state_dir
    assert store.pid_file.parent == state_dir


def test_ensure_dir_tolerates_existing(store, state_dir):
    state_dir.mkdir()
    store.ensure_dir()
    assert state_dir.is_dir()
