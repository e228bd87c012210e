"""SOS button gesture state machine tests."""

from nearhelp.schemas.records import TriggerReason
from nearhelp.services.sos_activation import ActivationState, SosActivation
from tests.fakes import ManualScheduler


def _machine(**kwargs):
    scheduler = ManualScheduler()
    triggers: list[TriggerReason] = []
    machine = SosActivation(scheduler, triggers.append, **kwargs)
    return machine, scheduler, triggers


def _tap(machine, scheduler, hold_s=0.1):
    machine.press()
    scheduler.advance(hold_s)
    machine.release()


def test_full_hold_moves_to_confirming():
    """Holding for 3000 ms reaches confirmation with progress reset."""
    m, s, triggers = _machine()
    m.press()
    assert m.state == ActivationState.HOLDING
    s.advance(2.95)
    assert m.state == ActivationState.HOLDING
    assert 95 < m.hold_progress < 100
    s.advance(0.05)
    assert m.state == ActivationState.CONFIRMING
    assert m.hold_progress == 0
    assert m.countdown == 5
    assert triggers == []


def test_progress_is_linear():
    m, s, _ = _machine()
    m.press()
    s.advance(1.5)
    assert m.hold_progress == 50.0


def test_early_release_counts_one_tap():
    """Release with 0 < progress < 100 is exactly one rapid tap."""
    m, s, triggers = _machine()
    m.press()
    s.advance(0.5)
    m.release()
    assert m.tap_count == 1
    assert m.hold_progress == 0
    assert m.state == ActivationState.RAPID_COUNTING
    assert triggers == []


def test_release_without_progress_is_not_a_tap():
    m, s, _ = _machine()
    m.press()
    m.release()
    assert m.tap_count == 0
    assert m.state == ActivationState.IDLE


def test_release_after_hold_complete_is_ignored():
    m, s, _ = _machine()
    m.press()
    s.advance(3.0)
    m.release()
    assert m.state == ActivationState.CONFIRMING
    assert m.tap_count == 0


def test_three_rapid_taps_trigger_directly():
    m, s, triggers = _machine()
    _tap(m, s)
    _tap(m, s)
    assert triggers == []
    _tap(m, s)
    assert triggers == [TriggerReason.RAPID_TAP]
    assert m.state == ActivationState.IDLE
    assert m.tap_count == 0


def test_tap_after_window_restarts_count():
    """Window expiry clears the counter; the next tap counts as the first."""
    m, s, triggers = _machine()
    _tap(m, s)
    _tap(m, s)
    assert m.tap_count == 2
    s.advance(1.6)
    assert m.tap_count == 0
    assert m.state == ActivationState.IDLE
    _tap(m, s)
    assert m.tap_count == 1
    assert triggers == []


def test_tap_window_restarts_on_every_tap():
    m, s, triggers = _machine()
    _tap(m, s)
    s.advance(1.2)
    _tap(m, s)
    s.advance(1.2)
    # 2.6 s since the first tap, but only 1.2 s since the second
    assert m.tap_count == 2
    _tap(m, s)
    assert triggers == [TriggerReason.RAPID_TAP]


def test_countdown_auto_triggers_exactly_once():
    m, s, triggers = _machine()
    m.press()
    s.advance(3.0)
    s.advance(4.0)
    assert m.countdown == 1
    assert triggers == []
    s.advance(1.0)
    assert triggers == [TriggerReason.AUTO]
    s.advance(30.0)
    assert triggers == [TriggerReason.AUTO]
    assert m.state == ActivationState.IDLE


def test_confirm_triggers_with_confirmed_reason():
    m, s, triggers = _machine()
    m.press()
    s.advance(3.0)
    s.advance(2.0)
    m.confirm()
    assert triggers == [TriggerReason.CONFIRMED]
    m.confirm()
    s.advance(10.0)
    assert triggers == [TriggerReason.CONFIRMED]


def test_cancel_returns_to_idle_and_resets_countdown():
    m, s, triggers = _machine()
    m.press()
    s.advance(3.0)
    s.advance(2.0)
    assert m.countdown == 3
    m.cancel()
    assert m.state == ActivationState.IDLE
    assert m.countdown == 5
    s.advance(10.0)
    assert triggers == []


def test_press_ignored_while_busy():
    m, s, _ = _machine(is_busy=lambda: True)
    m.press()
    assert m.state == ActivationState.IDLE


def test_hold_start_hook_runs_on_press():
    calls = []
    m, s, _ = _machine(on_hold_start=lambda: calls.append("warm"))
    m.press()
    assert calls == ["warm"]


def test_on_change_reports_states():
    seen = []
    m, s, _ = _machine(on_change=lambda snap: seen.append(snap.state))
    m.press()
    s.advance(3.0)
    m.confirm()
    assert ActivationState.CONFIRMING in seen
    assert ActivationState.TRIGGERED in seen
    assert seen[-1] == ActivationState.IDLE


def test_dispose_clears_timers():
    m, s, triggers = _machine()
    m.press()
    s.advance(3.0)
    m.dispose()
    assert s.pending() == 0
    s.advance(10.0)
    m.press()
    assert triggers == []
    assert m.state == ActivationState.IDLE
