from warden.service.lockout import LockoutTracker
from warden.service.results import Failure, Success
from warden.storage.errors import StoreUnavailable
from warden.storage.memory import MemoryStore


def _tracker(store, clock, **kwargs):
    return LockoutTracker(store, clock=clock, **kwargs)


def _fail(tracker, identifier="scout", times=1):
    for _ in range(times):
        tracker.record_attempt(identifier, "10.0.0.1", False)


def test_exact_threshold_locks(store, clock):
    tracker = _tracker(store, clock)
    _fail(tracker, times=4)
    assert tracker.is_locked_out("scout") is False
    _fail(tracker)
    state = tracker.check("scout")
    assert state.locked is True
    assert state.remaining_minutes == 30


def test_successes_do_not_count(store, clock):
    tracker = _tracker(store, clock)
    _fail(tracker, times=4)
    tracker.record_attempt("scout", None, True)
    assert tracker.failed_count("scout") == 4
    assert tracker.is_locked_out("scout") is False


def test_remaining_minutes_rounds_up(store, clock):
    tracker = _tracker(store, clock)
    _fail(tracker, times=5)
    clock.advance(minutes=10, seconds=30)
    assert tracker.check("scout").remaining_minutes == 20


def test_clear_lockout_unlocks_immediately(store, clock):
    tracker = _tracker(store, clock)
    _fail(tracker, times=5)
    assert tracker.clear_lockout("scout") == 5
    assert tracker.is_locked_out("scout") is False
    assert tracker.failed_count("scout") == 0


def test_lockout_decays_regardless_of_history(store, clock):
    tracker = _tracker(store, clock)
    for _ in range(4):
        _fail(tracker, times=5)
        clock.advance(hours=2)
    _fail(tracker, times=5)
    assert tracker.is_locked_out("scout") is True
    clock.advance(minutes=31)
    assert tracker.is_locked_out("scout") is False


def test_window_slides(store, clock):
    tracker = _tracker(store, clock)
    _fail(tracker, times=3)
    clock.advance(minutes=16)
    _fail(tracker, times=2)
    assert tracker.failed_count("scout") == 2
    assert tracker.is_locked_out("scout") is False


def test_duration_anchors_to_latest_failure(store, clock):
    tracker = _tracker(store, clock, window_minutes=60, lockout_minutes=30)
    _fail(tracker, times=4)
    clock.advance(minutes=20)
    _fail(tracker)
    clock.advance(minutes=25)
    # 45 minutes after the first failure, 25 after the last
    assert tracker.check("scout").locked is True
    assert tracker.check("scout").remaining_minutes == 5


def test_identifiers_are_independent(store, clock):
    tracker = _tracker(store, clock)
    _fail(tracker, "scout", times=5)
    assert tracker.is_locked_out("ranger") is False


def test_status_view(store, clock):
    tracker = _tracker(store, clock)
    _fail(tracker, times=2)
    status = tracker.status("scout").to_dict()
    assert status == {
        "failed_attempts": 2,
        "max_attempts": 5,
        "locked": False,
        "remaining_minutes": 0,
        "attempts_remaining": 3,
    }


def test_unknown_identifier_can_be_locked(store, clock):
    tracker = _tracker(store, clock)
    _fail(tracker, "nobody-registered-this", times=5)
    assert tracker.is_locked_out("nobody-registered-this") is True


class _BrokenStore(MemoryStore):
    def record_login_attempt(self, attempt):
        raise StoreUnavailable("disk full")


def test_record_attempt_never_raises(clock):
    tracker = _tracker(_BrokenStore(), clock)
    result = tracker.record_attempt("scout", None, False)
    assert isinstance(result, Failure)
    assert isinstance(result.error, StoreUnavailable)


def test_record_attempt_success_result(store, clock):
    assert isinstance(_tracker(store, clock).record_attempt("scout", None, False), Success)


def test_purge_keeps_recent_attempts(store, clock):
    tracker = _tracker(store, clock)
    _fail(tracker, times=3)
    clock.advance(minutes=61)
    _fail(tracker, times=1)
    assert tracker.purge() == 3
    assert len(store.login_attempts) == 1
