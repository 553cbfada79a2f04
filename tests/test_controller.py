import json
import random

import pytest

import devices
from controller import ConfigError, MonitorConfig, MonitorController, validate_config_payload
from devices import BOT_CAMERA, DRAIN_CAMERA, FLOW_METER, DeviceError, EndpointUnreachable, parse_flow_payload
from flow_monitor import FlowSimulator, ThresholdPolicy, WarningState

URL = "http://meter.local/api/data"


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class StubClient:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = []
        self.timeout = 5.0

    def fetch(self, url, now):
        self.calls.append(url)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return parse_flow_payload(json.dumps(result).encode(), url, now)


class ExplodingSimulator:
    def next_reading(self, now):
        raise AssertionError("simulator must not run while a URL is configured")


class FakeTimer:
    def __init__(self, seconds, fn):
        self.seconds = seconds
        self.fn = fn
        self.cancelled = False

    def start(self):
        pass

    def cancel(self):
        self.cancelled = True


def sync_dispatch(fn, *args):
    fn(*args)


def _live_controller(*results, policy=ThresholdPolicy.IMMEDIATE, threshold=100.0, clock=None):
    config = MonitorConfig(flow_meter_url=URL, threshold=threshold, policy=policy)
    return MonitorController(
        config,
        client=StubClient(*results),
        simulator=ExplodingSimulator(),
        clock=clock or FakeClock(),
        dispatch=sync_dispatch,
    )


def test_live_reading_marks_device_connected():
    ctl = _live_controller({"flowRate": 42.5, "totalVolume": 10.0})
    ctl.tick()
    assert ctl.current.flow_rate == 42.5
    assert ctl.total_volume == 10.0
    flow = ctl.registry.get(FLOW_METER)
    assert flow.connected is True
    assert flow.using_real_data is True
    assert ctl.status()["simulation"] is False


def test_timeout_does_not_fall_back():
    ctl = _live_controller(EndpointUnreachable(URL, "timed out"))
    ctl.tick()
    ctl.tick()
    flow = ctl.registry.get(FLOW_METER)
    assert flow.connected is False
    assert flow.using_real_data is True
    assert ctl.current is None
    assert ctl.stats.snapshot()["count"] == 0
    failures = [e for e in ctl.events.get() if e["category"] == FLOW_METER]
    assert len(failures) == 1
    assert failures[0]["meta"]["kind"] == "endpoint_unreachable"


def test_recovers_after_failure():
    ctl = _live_controller(EndpointUnreachable(URL, "refused"), {"flowRate": 30.0})
    ctl.tick()
    ctl.tick()
    assert ctl.registry.get(FLOW_METER).connected is True
    assert ctl.current.flow_rate == 30.0


def test_unconfigured_uses_simulator():
    ctl = MonitorController(simulator=FlowSimulator(random.Random(7)), clock=FakeClock(), dispatch=sync_dispatch)
    for _ in range(60):
        reading = ctl.tick()
        assert reading.source == "simulated"
        assert 60.0 <= reading.flow_rate <= 250.0
    flow = ctl.registry.get(FLOW_METER)
    assert flow.using_real_data is False
    assert flow.connected is False
    assert ctl.stats.snapshot()["count"] == 30


def test_relaxed_threshold_clears_warning_immediately():
    ctl = _live_controller({"flowRate": 120.0})
    ctl.tick()
    assert ctl.engine.warning_active

    assert ctl.set_threshold(110.0) is None
    transition = ctl.set_threshold(150.0)
    assert transition is not None
    assert transition.state is WarningState.NORMAL
    assert ctl.engine.warning_active is False


def test_threshold_validation():
    ctl = _live_controller({"flowRate": 10.0})
    with pytest.raises(ConfigError):
        ctl.set_threshold(-1)
    with pytest.raises(ConfigError):
        ctl.set_threshold("high")
    assert ctl.set_threshold(50) is None


def test_debounced_policy_over_ticks():
    clock = FakeClock()
    ctl = _live_controller({"flowRate": 90.0}, policy=ThresholdPolicy.DEBOUNCED, clock=clock)
    for _ in range(3):
        ctl.tick()
        assert not ctl.engine.warning_active
        clock.advance(2.0)
    assert ctl.engine.state is WarningState.PENDING
    ctl.tick()
    assert ctl.engine.state is WarningState.WARNING
    ctl.tick()
    warnings = [e for e in ctl.events.get() if e["category"] == "threshold"]
    assert len(warnings) == 1


def test_stale_fetch_dropped_after_reconfigure():
    jobs = []
    ctl = MonitorController(
        MonitorConfig(flow_meter_url=URL),
        client=StubClient({"flowRate": 77.0}),
        clock=FakeClock(),
        dispatch=lambda fn, *args: jobs.append((fn, args)),
    )
    ctl.tick()
    ctl.apply_config({"flow_meter_url": "http://other.local/api/data"})
    fn, args = jobs.pop()
    fn(*args)
    assert ctl.current is None
    assert ctl.registry.get(FLOW_METER).connected is False


def test_out_of_order_results_keep_newest():
    jobs = []
    ctl = MonitorController(
        MonitorConfig(flow_meter_url=URL),
        client=StubClient({"flowRate": 10.0}, {"flowRate": 20.0}),
        clock=FakeClock(),
        dispatch=lambda fn, *args: jobs.append((fn, args)),
    )
    ctl.tick()
    ctl.tick()
    first, second = jobs
    second[0](*second[1])
    first[0](*first[1])
    assert [r.flow_rate for r in ctl.stats.history] == [10.0]


def test_apply_config_resets_devices_and_optionally_stats():
    ctl = _live_controller({"flowRate": 42.0})
    ctl.tick()
    result = ctl.apply_config({"drain_camera_url": "http://cam.local/stream"})
    assert ctl.registry.get(FLOW_METER).connected is False
    assert ctl.stats.snapshot()["count"] == 1
    assert "bot_camera_url" in result["mock"]
    assert "drain_camera_url" not in result["mock"]

    ctl.apply_config({"reset_stats": True})
    assert ctl.stats.snapshot()["count"] == 0

    with pytest.raises(ConfigError) as info:
        ctl.apply_config({"flow_meter_url": "ftp://meter", "threshold": -3})
    assert len(info.value.errors) == 2


def test_policy_switch_announces_return_to_normal():
    clock = FakeClock()
    ctl = _live_controller({"flowRate": 50.0}, policy=ThresholdPolicy.DEBOUNCED, clock=clock)
    ctl.tick()
    clock.advance(6.0)
    ctl.tick()
    assert ctl.engine.warning_active

    result = ctl.apply_config({"policy": "immediate"})
    assert not ctl.engine.warning_active
    assert ctl.last_transition.state is WarningState.NORMAL
    assert result["transition"]["state"] == "normal"
    messages = [e["message"] for e in ctl.events.get() if e["category"] == "threshold"]
    assert messages[-1] == "Flow rate returned to normal"


def test_policy_switch_reevaluates_under_new_policy():
    clock = FakeClock()
    ctl = _live_controller({"flowRate": 150.0}, policy=ThresholdPolicy.DEBOUNCED, clock=clock)
    ctl.tick()
    assert ctl.engine.state is WarningState.NORMAL

    result = ctl.apply_config({"policy": "immediate"})
    assert ctl.engine.warning_active
    assert result["transition"]["state"] == "warning"


class SlowClient(StubClient):
    def __init__(self, clock, delay, *results):
        super().__init__(*results)
        self.clock = clock
        self.delay = delay

    def fetch(self, url, now):
        reading = super().fetch(url, now)
        self.clock.advance(self.delay)
        return reading


def test_late_result_counts_as_timeout():
    clock = FakeClock()
    ctl = _live_controller({"flowRate": 42.0}, clock=clock)
    ctl.client = SlowClient(clock, 7.0, {"flowRate": 42.0})
    ctl.tick()
    assert ctl.current is None
    assert ctl.stats.snapshot()["count"] == 0
    device = ctl.registry.get(FLOW_METER)
    assert device.connected is False
    assert "Timed out" in device.last_error

    ctl.client.delay = 1.0
    ctl.tick()
    assert ctl.current.flow_rate == 42.0
    assert ctl.registry.get(FLOW_METER).connected is True


def test_drain_camera_events():
    ctl = MonitorController(MonitorConfig(drain_camera_url="http://cam.local/stream"), clock=FakeClock())
    assert ctl.embed_event(DRAIN_CAMERA, "load")["connected"] is True
    device = ctl.embed_event(DRAIN_CAMERA, "error", "img onerror")
    assert device["connected"] is False
    assert device["using_real_data"] is False
    assert ctl.events.get()[-1]["meta"]["kind"] == "embed_load_failure"

    with pytest.raises(DeviceError):
        ctl.embed_event(FLOW_METER, "load")
    with pytest.raises(ConfigError):
        ctl.embed_event(DRAIN_CAMERA, "flicker")


def test_embed_event_ignored_without_url():
    ctl = MonitorController(clock=FakeClock())
    assert ctl.embed_event(DRAIN_CAMERA, "load")["connected"] is False


def test_bot_commands_and_reconfigure(monkeypatch):
    monkeypatch.setattr(devices.threading, "Timer", FakeTimer)
    ctl = MonitorController(MonitorConfig(bot_camera_url="http://bot.local/ui"), clock=FakeClock())
    assert ctl.toggle_bot() is True
    assert ctl.bot.deployed
    first = ctl.bot._settle_timer

    ctl.apply_config({"bot_camera_url": "http://bot2.local/ui"})
    assert first.cancelled is True
    assert ctl.bot._settle_timer is not first
    assert ctl.bot.interface_url() == "http://bot2.local/ui"

    assert ctl.deploy_bot() is False
    assert ctl.toggle_bot() is True
    assert not ctl.bot.deployed
    assert ctl.registry.get(BOT_CAMERA).connected is False


def test_warning_does_not_move_bot():
    ctl = _live_controller({"flowRate": 500.0})
    ctl.tick()
    assert ctl.engine.warning_active
    assert ctl.bot.deployed is False


def test_status_payload_and_log_view():
    ctl = MonitorController(simulator=FlowSimulator(random.Random(1)), clock=FakeClock(), dispatch=sync_dispatch)
    for _ in range(12):
        ctl.tick()
    status = ctl.status()
    for key in ("flow_rate", "gauge_percent", "zone", "stats", "warning_active", "bot", "devices", "log", "events"):
        assert key in status
    log = status["log"]
    assert len(log) == 10
    assert log[0]["flow_rate"] == status["flow_rate"]
    assert [entry["index"] for entry in log] == list(range(1, 11))


def test_validate_config_payload():
    assert validate_config_payload({"flow_meter_url": "", "threshold": 0}) == []
    assert validate_config_payload({"flow_meter_url": "  "}) == []
    errors = validate_config_payload({"policy": "sometimes", "threshold": True, "update_interval_seconds": 0})
    assert len(errors) == 3
    assert validate_config_payload([]) == ["config must be an object"]
