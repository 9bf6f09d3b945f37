"""Tests for ElapsedTimer."""

from rms.stopwatch import ElapsedTimer


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_elapsed_is_zero_before_start():
    timer = ElapsedTimer(clock=FakeClock())
    assert not timer.running
    assert timer.elapsed == 0.0


def test_elapsed_since_start():
    clock = FakeClock()
    timer = ElapsedTimer(clock=clock)
    timer.start()
    clock.now += 61
    assert timer.running
    assert timer.elapsed == 61


def test_reset_restarts_measurement():
    clock = FakeClock()
    timer = ElapsedTimer(clock=clock)
    timer.start()
    clock.now += 90
    timer.reset()
    assert timer.elapsed == 0
    clock.now += 5
    assert timer.elapsed == 5
