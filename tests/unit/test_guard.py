"""
Unit tests for the execution guard (drbackup/backup/guard.py).
"""

import multiprocessing
import os
from unittest.mock import patch

import pytest

from drbackup.backup.guard import ExecutionGuard, GuardBusy
from drbackup.models import PipelineKind


def _check_is_held(lock_dir, kind_value, queue):
    queue.put(ExecutionGuard(lock_dir).is_held(PipelineKind(kind_value)))


class TestExecutionGuard:
    """Test lock acquisition and release."""

    def test_acquire_returns_token(self, guard):
        token = guard.acquire(PipelineKind.FULL)

        assert token.kind == PipelineKind.FULL
        assert token.released is False
        assert token.path.endswith('drbackup_full.lock')

        guard.release(token)

    def test_acquire_writes_holder_pid(self, guard):
        token = guard.acquire(PipelineKind.FULL)

        with open(token.path) as f:
            assert f.read().strip() == str(os.getpid())

        guard.release(token)

    def test_second_acquire_same_kind_is_busy(self, guard):
        token = guard.acquire(PipelineKind.INCREMENTAL)

        with pytest.raises(GuardBusy, match="already running") as exc_info:
            guard.acquire(PipelineKind.INCREMENTAL)

        assert exc_info.value.kind == PipelineKind.INCREMENTAL
        assert exc_info.value.holder == str(os.getpid())
        guard.release(token)

    def test_busy_from_separate_guard_instance(self, guard, lock_dir):
        token = guard.acquire(PipelineKind.ARCHIVELOG)

        other = ExecutionGuard(str(lock_dir))
        with pytest.raises(GuardBusy):
            other.acquire(PipelineKind.ARCHIVELOG)

        guard.release(token)

    def test_kinds_are_independent(self, guard):
        tokens = [guard.acquire(kind) for kind in PipelineKind]

        assert len({t.path for t in tokens}) == len(PipelineKind)

        for token in tokens:
            guard.release(token)

    def test_release_then_reacquire(self, guard):
        token = guard.acquire(PipelineKind.FULL)
        guard.release(token)

        token2 = guard.acquire(PipelineKind.FULL)
        assert token2.released is False
        guard.release(token2)

    def test_release_is_idempotent(self, guard):
        token = guard.acquire(PipelineKind.FULL)

        guard.release(token)
        guard.release(token)

        assert token.released is True
        assert guard.is_held(PipelineKind.FULL) is False

    def test_release_clears_holder(self, guard):
        token = guard.acquire(PipelineKind.FULL)
        guard.release(token)

        with open(token.path) as f:
            assert f.read() == ''

    def test_lock_file_is_kept_after_release(self, guard):
        token = guard.acquire(PipelineKind.FULL)
        guard.release(token)

        assert os.path.exists(token.path)

    def test_is_held(self, guard):
        assert guard.is_held(PipelineKind.DR_TRIGGER) is False

        token = guard.acquire(PipelineKind.DR_TRIGGER)
        assert guard.is_held(PipelineKind.DR_TRIGGER) is True

        guard.release(token)
        assert guard.is_held(PipelineKind.DR_TRIGGER) is False

    def test_creates_lock_dir(self, tmp_path):
        lock_dir = tmp_path / 'nested' / 'locks'

        ExecutionGuard(str(lock_dir))

        assert lock_dir.is_dir()


class TestIsHeld:
    """is_held reads the recorded holder and never takes the lock."""

    def test_check_does_not_block_concurrent_acquire(self, guard, lock_dir):
        guard.lock_path(PipelineKind.FULL).write_text("424242\n")
        other = ExecutionGuard(str(lock_dir))
        acquired = []

        def acquire_during_check(pid, sig):
            acquired.append(other.acquire(PipelineKind.FULL))
            raise ProcessLookupError()

        with patch('drbackup.backup.guard.os.kill', side_effect=acquire_during_check):
            assert guard.is_held(PipelineKind.FULL) is False

        assert len(acquired) == 1
        assert acquired[0].released is False
        other.release(acquired[0])

    def test_check_leaves_holder_pid(self, guard, lock_dir):
        token = guard.acquire(PipelineKind.INCREMENTAL)

        assert ExecutionGuard(str(lock_dir)).is_held(PipelineKind.INCREMENTAL) is True

        with open(token.path) as f:
            assert f.read().strip() == str(os.getpid())
        guard.release(token)

    def test_dead_holder_is_idle(self, guard):
        guard.lock_path(PipelineKind.ARCHIVELOG).write_text("424242\n")

        with patch('drbackup.backup.guard.os.kill', side_effect=ProcessLookupError()):
            assert guard.is_held(PipelineKind.ARCHIVELOG) is False

    def test_holder_of_other_user_is_running(self, guard):
        guard.lock_path(PipelineKind.ARCHIVELOG).write_text("1\n")

        with patch('drbackup.backup.guard.os.kill', side_effect=PermissionError()):
            assert guard.is_held(PipelineKind.ARCHIVELOG) is True

    @pytest.mark.parametrize("content", ['', 'garbage', '0', '-5'])
    def test_unreadable_holder_is_idle(self, guard, content):
        guard.lock_path(PipelineKind.DR_TRIGGER).write_text(content)

        assert guard.holder_pid(PipelineKind.DR_TRIGGER) is None
        assert guard.is_held(PipelineKind.DR_TRIGGER) is False

    def test_missing_lock_file(self, guard):
        assert guard.holder_pid(PipelineKind.FULL) is None
        assert guard.is_held(PipelineKind.FULL) is False


class TestScopedHold:
    """Test the hold() context manager."""

    def test_hold_releases_on_normal_exit(self, guard):
        with guard.hold(PipelineKind.FULL) as token:
            assert guard.is_held(PipelineKind.FULL) is True

        assert token.released is True
        assert guard.is_held(PipelineKind.FULL) is False

    def test_hold_releases_on_exception(self, guard):
        with pytest.raises(RuntimeError):
            with guard.hold(PipelineKind.FULL):
                raise RuntimeError("stage blew up")

        assert guard.is_held(PipelineKind.FULL) is False

    def test_hold_releases_on_keyboard_interrupt(self, guard):
        with pytest.raises(KeyboardInterrupt):
            with guard.hold(PipelineKind.FULL):
                raise KeyboardInterrupt()

        assert guard.is_held(PipelineKind.FULL) is False

    def test_hold_busy_raises_before_body(self, guard):
        token = guard.acquire(PipelineKind.FULL)
        entered = []

        with pytest.raises(GuardBusy):
            with guard.hold(PipelineKind.FULL):
                entered.append(True)

        assert entered == []
        guard.release(token)


class TestSystemWideVisibility:
    """The lock is visible to other processes."""

    def test_other_process_sees_lock(self, guard, lock_dir):
        ctx = multiprocessing.get_context('fork')
        queue = ctx.Queue()

        token = guard.acquire(PipelineKind.FULL)
        proc = ctx.Process(target=_check_is_held, args=(str(lock_dir), 'full', queue))
        proc.start()
        held = queue.get(timeout=30)
        proc.join(timeout=30)
        guard.release(token)

        assert held is True

    def test_other_process_sees_free_lock(self, guard, lock_dir):
        ctx = multiprocessing.get_context('fork')
        queue = ctx.Queue()

        proc = ctx.Process(target=_check_is_held, args=(str(lock_dir), 'full', queue))
        proc.start()
        held = queue.get(timeout=30)
        proc.join(timeout=30)

        assert held is False
