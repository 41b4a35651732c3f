import random
from datetime import datetime, timedelta, timezone

import pytest

from app.services import session_clock as sc
from app.services.session_clock import (
    AlreadyClockedIn,
    ApprovalNotAllowed,
    BreakAlreadyActive,
    InvalidTransitionTime,
    Location,
    NoActiveBreak,
    SessionNotOpen,
    SessionStatus,
)

T0 = datetime(2024, 1, 1, 8, 0, 0, tzinfo=timezone.utc)


def h(hours: float) -> datetime:
    return T0 + timedelta(hours=hours)


def _clocked_in():
    return sc.clock_in(101, T0, session_id="s-1")


def test_full_shift_with_one_break():
    s = _clocked_in()
    s = sc.start_break(s, h(4))
    assert s.status == SessionStatus.ON_BREAK
    s = sc.end_break(s, h(4.5))
    assert s.status == SessionStatus.CLOCKED_IN
    s = sc.clock_out(s, h(8))

    assert s.status == SessionStatus.CLOCKED_OUT
    assert sc.elapsed_since_clock_in(s, h(12)) == timedelta(hours=8)
    assert sc.total_break_duration(s, h(12)) == timedelta(minutes=30)
    assert sc.worked_duration(s, h(12)) == timedelta(hours=7, minutes=30)


def test_clock_out_on_break_closes_break_at_clock_out():
    s = sc.start_break(_clocked_in(), h(2))
    s = sc.clock_out(s, h(2.25))

    assert s.open_break is None
    assert all(b.end_at is not None for b in s.breaks)
    assert s.breaks[-1].end_at == s.clock_out_at == h(2.25)
    assert sc.total_break_duration(s, h(5)) == timedelta(minutes=15)
    assert sc.worked_duration(s, h(5)) == timedelta(hours=2)


def test_end_break_while_clocked_in_fails_and_leaves_session_unchanged():
    s = _clocked_in()
    before = sc.session_to_dict(s)

    with pytest.raises(NoActiveBreak):
        sc.end_break(s, h(1))

    assert sc.session_to_dict(s) == before
    assert s.status == SessionStatus.CLOCKED_IN


def test_second_clock_in_fails():
    s = _clocked_in()
    with pytest.raises(AlreadyClockedIn):
        sc.clock_in(101, h(1), open_session=s)


def test_clock_in_allowed_after_previous_session_closed():
    closed = sc.clock_out(_clocked_in(), h(8))
    s = sc.clock_in(101, h(9), open_session=closed)
    assert s.status == SessionStatus.CLOCKED_IN
    assert s.id != closed.id


def test_double_start_break_fails():
    s = sc.start_break(_clocked_in(), h(1))
    with pytest.raises(BreakAlreadyActive):
        sc.start_break(s, h(1.5))


@pytest.mark.parametrize(
    "transition",
    [
        lambda s: sc.start_break(s, h(9)),
        lambda s: sc.end_break(s, h(9)),
        lambda s: sc.clock_out(s, h(9)),
    ],
)
def test_transitions_on_closed_session_fail(transition):
    closed = sc.clock_out(_clocked_in(), h(8))
    with pytest.raises(SessionNotOpen):
        transition(closed)


def test_transitions_on_missing_session_fail():
    with pytest.raises(SessionNotOpen):
        sc.start_break(None, h(1))


def test_errors_carry_codes_and_are_value_errors():
    assert issubclass(NoActiveBreak, ValueError)
    assert NoActiveBreak.code == "NoActiveBreak"
    assert AlreadyClockedIn("x").code == "AlreadyClockedIn"


def test_out_of_order_timestamps_rejected():
    s = _clocked_in()
    with pytest.raises(InvalidTransitionTime):
        sc.clock_out(s, T0)
    with pytest.raises(InvalidTransitionTime):
        sc.start_break(s, h(-1))

    on_break = sc.start_break(s, h(2))
    with pytest.raises(InvalidTransitionTime):
        sc.end_break(on_break, h(2))

    after_break = sc.end_break(on_break, h(3))
    with pytest.raises(InvalidTransitionTime):
        sc.clock_out(after_break, h(2.5))
    with pytest.raises(InvalidTransitionTime):
        sc.start_break(after_break, h(2.5))


def test_durations_clamp_to_zero_when_now_precedes_clock_in():
    s = _clocked_in()
    earlier = h(-1)
    assert sc.elapsed_since_clock_in(s, earlier) == timedelta(0)
    assert sc.worked_duration(s, earlier) == timedelta(0)

    on_break = sc.start_break(s, h(1))
    assert sc.total_break_duration(on_break, h(0.5)) == timedelta(0)


def test_open_break_accrues_until_now():
    s = sc.start_break(_clocked_in(), h(1))
    assert sc.total_break_duration(s, h(1.5)) == timedelta(minutes=30)
    assert sc.worked_duration(s, h(1.5)) == timedelta(hours=1)
    assert sc.worked_duration(s, h(3)) <= sc.elapsed_since_clock_in(s, h(3))


def test_multiple_breaks_accumulate():
    s = _clocked_in()
    s = sc.end_break(sc.start_break(s, h(1)), h(1.25))
    s = sc.end_break(sc.start_break(s, h(3)), h(3.5))
    s = sc.clock_out(s, h(6))

    assert len(s.breaks) == 2
    assert sc.total_break_duration(s, h(6)) == timedelta(minutes=45)
    assert sc.worked_duration(s, h(6)) == timedelta(hours=5, minutes=15)


def test_naive_datetimes_are_treated_as_utc():
    s = sc.clock_in(7, datetime(2024, 1, 1, 8, 0, 0))
    assert s.clock_in_at == T0
    s = sc.clock_out(s, datetime(2024, 1, 1, 9, 0, 0))
    assert sc.worked_duration(s, h(2)) == timedelta(hours=1)


def test_clock_out_records_notes_and_location():
    s = sc.clock_out(_clocked_in(), h(8), notes="left site", location="40.7128, -74.0060")
    assert s.notes == "left site"
    assert s.clock_out_location == Location(40.7128, -74.006)


def test_serialization_round_trip_preserves_status_and_durations():
    s = _clocked_in()
    s = sc.end_break(sc.start_break(s, h(1)), h(1.5))
    s = sc.start_break(s, h(3))
    now = h(4)

    restored = sc.session_from_dict(sc.session_to_dict(s))

    assert restored == s
    assert restored.status == s.status == SessionStatus.ON_BREAK
    assert sc.worked_duration(restored, now) == sc.worked_duration(s, now)
    assert sc.total_break_duration(restored, now) == sc.total_break_duration(s, now)


def test_status_is_derived_not_read_back():
    data = sc.session_to_dict(sc.clock_out(_clocked_in(), h(8)))
    data["status"] = "clocked_in"
    assert sc.session_from_dict(data).status == SessionStatus.CLOCKED_OUT


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("12.5,-3.25", Location(12.5, -3.25)),
        ({"latitude": 1, "longitude": 2}, Location(1.0, 2.0)),
        ({"lat": "1", "lng": "2"}, Location(1.0, 2.0)),
        ("not a place", None),
        ("95,10", None),
        ("10,200", None),
        ("1,2,3", None),
        (None, None),
    ],
)
def test_location_parsing_is_best_effort(raw, expected):
    assert Location.parse(raw) == expected


def test_unparseable_location_does_not_block_clock_in():
    s = sc.clock_in(5, T0, location="somewhere")
    assert s.clock_in_location is None
    assert s.status == SessionStatus.CLOCKED_IN


def test_approval_requires_clocked_out_session_and_can_be_revised():
    s = _clocked_in()
    with pytest.raises(ApprovalNotAllowed):
        sc.set_approval(s, True)

    closed = sc.clock_out(s, h(8))
    approved = sc.set_approval(closed, True)
    assert approved.supervisor_approved is True
    assert sc.set_approval(approved, False).supervisor_approved is False
    assert closed.supervisor_approved is False


# status expected after each transition, keyed by (status before, transition)
_NEXT_STATUS = {
    (SessionStatus.CLOCKED_IN, "start_break"): SessionStatus.ON_BREAK,
    (SessionStatus.CLOCKED_IN, "clock_out"): SessionStatus.CLOCKED_OUT,
    (SessionStatus.ON_BREAK, "end_break"): SessionStatus.CLOCKED_IN,
    (SessionStatus.ON_BREAK, "clock_out"): SessionStatus.CLOCKED_OUT,
}


def _apply(s, op, at):
    if op == "start_break":
        return sc.start_break(s, at)
    if op == "end_break":
        return sc.end_break(s, at)
    return sc.clock_out(s, at)


def _random_shift(rng: random.Random):
    """Yields (transition, instant) pairs forming one valid session after clock-in at T0."""
    at = T0
    status = SessionStatus.CLOCKED_IN
    while status != SessionStatus.CLOCKED_OUT:
        at = at + timedelta(minutes=rng.randint(1, 90), seconds=rng.randint(0, 59))
        options = [op for (st, op) in _NEXT_STATUS if st == status]
        # bias toward longer sessions so breaks accumulate
        op = "clock_out" if rng.random() < 0.15 else rng.choice([o for o in options if o != "clock_out"])
        yield op, at
        status = _NEXT_STATUS[(status, op)]


def _assert_invariants(s, now):
    closed = [b for b in s.breaks if not b.is_open]
    assert len(s.breaks) - len(closed) <= 1
    assert all(not b.is_open for b in s.breaks[:-1])

    for b in closed:
        assert b.end_at > b.start_at
    for prev, nxt in zip(s.breaks, s.breaks[1:]):
        assert prev.end_at is not None
        assert nxt.start_at >= prev.end_at
    for b in s.breaks:
        assert b.start_at >= s.clock_in_at
        if s.clock_out_at is not None:
            assert b.end_at is not None and b.end_at <= s.clock_out_at

    elapsed = sc.elapsed_since_clock_in(s, now)
    worked = sc.worked_duration(s, now)
    assert timedelta(0) <= worked <= elapsed
    assert worked + sc.total_break_duration(s, now) == elapsed


@pytest.mark.parametrize("seed", range(40))
def test_random_valid_sequences_follow_transition_table(seed):
    rng = random.Random(seed)
    s = _clocked_in()
    history = []

    for op, at in _random_shift(rng):
        expected = _NEXT_STATUS[(s.status, op)]
        s = _apply(s, op, at)
        history.append((op, at))

        assert s.status == expected
        _assert_invariants(s, at)
        _assert_invariants(s, at + timedelta(minutes=rng.randint(0, 600)))

    assert s.status == SessionStatus.CLOCKED_OUT

    replayed = _clocked_in()
    for op, at in history:
        replayed = _apply(replayed, op, at)
    assert replayed == s
    assert sc.session_from_dict(sc.session_to_dict(s)) == s


@pytest.mark.parametrize("seed", range(10))
def test_random_sequences_reject_out_of_table_transitions(seed):
    rng = random.Random(seed)
    s = _clocked_in()

    for op, at in _random_shift(rng):
        if s.status == SessionStatus.CLOCKED_IN:
            with pytest.raises(NoActiveBreak):
                sc.end_break(s, at)
        else:
            with pytest.raises(BreakAlreadyActive):
                sc.start_break(s, at)
        s = _apply(s, op, at)

    for transition in (sc.start_break, sc.end_break, sc.clock_out):
        with pytest.raises(SessionNotOpen):
            transition(s, s.clock_out_at + timedelta(minutes=1))
