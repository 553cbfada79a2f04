import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from devices import (
    BOT_CAMERA,
    DRAIN_CAMERA,
    FETCH_TIMEOUT_SECONDS,
    FLOW_METER,
    BotController,
    DeviceError,
    DeviceRegistry,
    EmbedLoadFailure,
    EndpointUnreachable,
    FlowMeterClient,
    SourceError,
)
from flow_monitor import (
    FlowSimulator,
    FlowStats,
    Reading,
    ThresholdEngine,
    ThresholdPolicy,
    Transition,
    flow_zone,
    format_flow,
    gauge_percent,
)

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 150.0
UPDATE_INTERVAL_SECONDS = 2.0
LOG_VIEW_SIZE = 10
EVENT_LOG_SIZE = 50
URL_KEYS = ("flow_meter_url", "drain_camera_url", "bot_camera_url")
EMBED_CHANNELS = (DRAIN_CAMERA, BOT_CAMERA)
EMBED_EVENTS = ("load", "error")

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class ConfigError(Exception):
    def __init__(self, errors: List[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def validate_config_payload(cfg: Any) -> List[str]:
    if not isinstance(cfg, dict):
        return ["config must be an object"]
    errors: List[str] = []
    for key in URL_KEYS:
        if key not in cfg:
            continue
        value = cfg[key]
        if value is None:
            continue
        if not isinstance(value, str):
            errors.append(f"{key} must be a string")
            continue
        value = value.strip()
        if not value:
            continue
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append(f"{key} must be an http(s) URL or empty")
    if "threshold" in cfg:
        if not _is_number(cfg["threshold"]):
            errors.append("threshold must be a number")
        elif cfg["threshold"] < 0:
            errors.append("threshold must not be negative")
    if "policy" in cfg and cfg["policy"] not in [p.value for p in ThresholdPolicy]:
        errors.append("policy must be 'immediate' or 'debounced'")
    for key in ("update_interval_seconds", "fetch_timeout_seconds"):
        if key in cfg and (not _is_number(cfg[key]) or cfg[key] <= 0):
            errors.append(f"{key} must be a positive number")
    if "reset_stats" in cfg and not isinstance(cfg["reset_stats"], bool):
        errors.append("reset_stats must be true/false")
    return errors


@dataclass
class MonitorConfig:
    flow_meter_url: str = ""
    drain_camera_url: str = ""
    bot_camera_url: str = ""
    threshold: float = DEFAULT_THRESHOLD
    policy: ThresholdPolicy = ThresholdPolicy.IMMEDIATE
    update_interval_seconds: float = UPDATE_INTERVAL_SECONDS
    fetch_timeout_seconds: float = FETCH_TIMEOUT_SECONDS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitorConfig":
        errors = validate_config_payload(data)
        if errors:
            raise ConfigError(errors)
        cfg = cls()
        cfg.update(data)
        return cfg

    def update(self, data: Dict[str, Any]) -> None:
        for key in URL_KEYS:
            if key in data:
                setattr(self, key, str(data[key] or "").strip())
        if "threshold" in data:
            self.threshold = float(data["threshold"])
        if "policy" in data:
            self.policy = ThresholdPolicy(data["policy"])
        if "update_interval_seconds" in data:
            self.update_interval_seconds = float(data["update_interval_seconds"])
        if "fetch_timeout_seconds" in data:
            self.fetch_timeout_seconds = float(data["fetch_timeout_seconds"])

    def as_dict(self) -> Dict[str, Any]:
        return {
            "flow_meter_url": self.flow_meter_url,
            "drain_camera_url": self.drain_camera_url,
            "bot_camera_url": self.bot_camera_url,
            "threshold": self.threshold,
            "policy": self.policy.value,
            "update_interval_seconds": self.update_interval_seconds,
            "fetch_timeout_seconds": self.fetch_timeout_seconds,
        }


class EventLog:
    def __init__(self, size: int = EVENT_LOG_SIZE, clock: Callable[[], float] = time.time) -> None:
        self.size = size
        self.clock = clock
        self.events: List[Dict[str, Any]] = []
        self.lock = threading.Lock()

    def add(self, level: str, category: str, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        entry = {"ts": self.clock(), "level": level, "category": category, "message": message, "meta": meta}
        with self.lock:
            self.events.append(entry)
            self.events = self.events[-self.size:]
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "[%s] %s", category, message)

    def get(self) -> List[Dict[str, Any]]:
        with self.lock:
            return list(self.events)


def _spawn(fn: Callable[..., Any], *args: Any) -> None:
    threading.Thread(target=fn, args=args, daemon=True).start()


class MonitorController:
    """Owns the monitoring state and is the only way to change it.

    Every entry point takes the one lock, so the scheduler thread, fetch
    threads, the bot feed timer and request handlers never interleave.
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        client: Optional[FlowMeterClient] = None,
        simulator: Optional[FlowSimulator] = None,
        clock: Callable[[], float] = time.time,
        dispatch: Optional[Callable[..., None]] = None,
        events: Optional[EventLog] = None,
    ) -> None:
        self.lock = threading.RLock()
        self.clock = clock
        self.config = config or MonitorConfig()
        self.client = client or FlowMeterClient(timeout=self.config.fetch_timeout_seconds)
        self.simulator = simulator or FlowSimulator()
        self.stats = FlowStats()
        self.engine = ThresholdEngine(self.config.policy)
        self.registry = DeviceRegistry()
        self.bot = BotController(self.registry, self.lock, clock=clock)
        self.events = events or EventLog(clock=clock)
        self.current: Optional[Reading] = None
        self.total_volume: Optional[float] = None
        self.last_transition: Optional[Transition] = None
        self.last_tick_ts: Optional[float] = None
        self.generation = 0
        self._fetch_seq = 0
        self._applied_seq = 0
        self._dispatch = dispatch or _spawn
        with self.lock:
            self._init_devices()

    def _init_devices(self) -> None:
        self.registry.reset_all()
        self.registry.set_url(FLOW_METER, self.config.flow_meter_url)
        self.registry.set_url(DRAIN_CAMERA, self.config.drain_camera_url)
        self.bot.configure(self.config.bot_camera_url)
        if self.bot.deployed:
            self.bot.activate_feed()

    # Sampling

    def tick(self) -> Optional[Reading]:
        """Run one sampling cycle.

        Without a flow meter URL a simulated reading is ingested right away.
        With one, the fetch is handed to the dispatcher and its result lands
        later through poll_live().
        """
        with self.lock:
            now = self.clock()
            self.last_tick_ts = now
            url = self.config.flow_meter_url
            if not url:
                reading = self.simulator.next_reading(now)
                self.registry.set_status(FLOW_METER, False, False, ts=now)
                self._ingest(reading)
                return self.current
            self._fetch_seq += 1
            seq = self._fetch_seq
            generation = self.generation
        self._dispatch(self._fetch_job, url, generation, seq)
        return None

    def _fetch_job(self, url: str, generation: int, seq: int) -> None:
        try:
            self.poll_live(url, generation, seq)
        except Exception as exc:
            self.events.add("error", FLOW_METER, f"Flow fetch crashed: {exc}", None)

    def poll_live(self, url: str, generation: int, seq: int) -> Optional[Reading]:
        started = self.clock()
        try:
            reading = self.client.fetch(url, started)
            if self.clock() - started > self.client.timeout:
                raise EndpointUnreachable(url, f"Timed out after {self.client.timeout:g}s")
        except SourceError as exc:
            self._fetch_failed(exc, generation, seq)
            return None
        with self.lock:
            if not self._is_fresh(generation, seq):
                logger.debug("Dropping stale flow reading from %s", url)
                return None
            self._applied_seq = seq
            changed = self.registry.set_status(FLOW_METER, True, True, ts=reading.ts)
            self._ingest(reading)
            stored = self.current
        if changed:
            self.events.add("info", FLOW_METER, f"Flow meter connected: {url}", None)
        return stored

    def _fetch_failed(self, exc: SourceError, generation: int, seq: int) -> None:
        with self.lock:
            if not self._is_fresh(generation, seq):
                return
            self._applied_seq = seq
            changed = self.registry.set_status(FLOW_METER, False, True, error=str(exc), ts=self.clock())
        if changed:
            self.events.add("warning", FLOW_METER, f"Flow meter error: {exc}", {"kind": exc.kind})
        else:
            logger.debug("Flow meter still failing: %s", exc)

    def _is_fresh(self, generation: int, seq: int) -> bool:
        return generation == self.generation and seq > self._applied_seq

    def _ingest(self, reading: Reading) -> Optional[Transition]:
        self.stats.record(reading)
        self.current = self.stats.history[-1]
        if reading.total_volume is not None:
            self.total_volume = reading.total_volume
        transition = self.engine.evaluate(self.current.flow_rate, self.config.threshold, reading.ts)
        self._announce(transition)
        return transition

    def _announce(self, transition: Optional[Transition]) -> None:
        if transition is None:
            return
        self.last_transition = transition
        if transition.warning:
            self.events.add(
                "warning",
                "threshold",
                f"Flow {transition.flow_rate} L/min crossed threshold {transition.threshold} L/min",
                transition.as_dict(),
            )
        else:
            self.events.add("info", "threshold", "Flow rate returned to normal", transition.as_dict())

    # Operator commands

    def set_threshold(self, value: Any) -> Optional[Transition]:
        errors = validate_config_payload({"threshold": value})
        if errors:
            raise ConfigError(errors)
        with self.lock:
            self.config.threshold = float(value)
            return self._reevaluate()

    def _reevaluate(self) -> Optional[Transition]:
        if self.current is None:
            return None
        transition = self.engine.evaluate(self.current.flow_rate, self.config.threshold, self.clock())
        self._announce(transition)
        return transition

    def apply_config(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        errors = validate_config_payload(payload)
        if errors:
            raise ConfigError(errors)
        with self.lock:
            policy_before = self.config.policy
            self.config.update(payload)
            self.client.timeout = self.config.fetch_timeout_seconds
            cleared = None
            if self.config.policy is not policy_before:
                if self.current is not None:
                    cleared = self.engine.clear(self.current.flow_rate, self.config.threshold, self.clock())
                    self._announce(cleared)
                self.engine = ThresholdEngine(self.config.policy)
            self.generation += 1
            self._init_devices()
            if payload.get("reset_stats"):
                self.stats.reset()
            transition = self._reevaluate() or cleared
            applied = self.config.as_dict()
        mock = [key for key in URL_KEYS if not applied[key]]
        self.events.add("info", "config", "Configuration applied", {"mock": mock})
        return {"config": applied, "mock": mock, "transition": transition.as_dict() if transition else None}

    def reset_stats(self) -> None:
        with self.lock:
            self.stats.reset()
        self.events.add("info", "stats", "Statistics reset", None)

    def deploy_bot(self) -> bool:
        with self.lock:
            changed = self.bot.deploy()
        if changed:
            self.events.add("info", "bot", "Cleaning bot deployed", None)
        return changed

    def return_bot(self) -> bool:
        with self.lock:
            changed = self.bot.return_to_dock()
        if changed:
            self.events.add("info", "bot", "Cleaning bot returned to dock", None)
        return changed

    def toggle_bot(self) -> bool:
        with self.lock:
            if self.bot.deployed:
                return self.return_bot()
            return self.deploy_bot()

    def embed_event(self, channel: str, event: str, detail: Optional[str] = None) -> Dict[str, Any]:
        if channel not in EMBED_CHANNELS:
            raise DeviceError(f"Unknown embedded feed: {channel}")
        if event not in EMBED_EVENTS:
            raise ConfigError([f"event must be one of {', '.join(EMBED_EVENTS)}"])
        with self.lock:
            url = self.registry.get(channel).url
            if not url:
                return self.registry.snapshot()[channel]
            if channel == BOT_CAMERA:
                if event == "load":
                    self.bot.feed_loaded()
                else:
                    self.bot.feed_failed(detail)
            elif event == "load":
                self.registry.set_status(channel, True, True, ts=self.clock())
            else:
                self.registry.set_status(channel, False, False, error=detail, ts=self.clock())
            result = self.registry.snapshot()[channel]
        if event == "error":
            failure = EmbedLoadFailure(url, detail or "load error")
            self.events.add("warning", channel, f"Feed failed: {failure}", {"kind": failure.kind})
        else:
            self.events.add("info", channel, f"Feed connected: {url}", None)
        return result

    # Presentation

    def log_view(self, count: int = LOG_VIEW_SIZE) -> List[Dict[str, Any]]:
        with self.lock:
            recent = self.stats.recent(count)
        return [
            {"index": i + 1, "ts": r.ts, "flow_rate": r.flow_rate, "display": format_flow(r.flow_rate), "source": r.source}
            for i, r in enumerate(recent)
        ]

    def status(self) -> Dict[str, Any]:
        with self.lock:
            current = self.current
            flow = current.flow_rate if current else None
            return {
                "timestamp": self.clock(),
                "last_tick_ts": self.last_tick_ts,
                "flow_rate": flow,
                "flow_display": format_flow(flow),
                "total_volume": self.total_volume,
                "reading": current.as_dict() if current else None,
                "gauge_percent": round(gauge_percent(flow), 1),
                "zone": flow_zone(flow, self.config.threshold, self.config.policy),
                "threshold": self.config.threshold,
                "policy": self.config.policy.value,
                "stats": self.stats.snapshot(),
                "warning_active": self.engine.warning_active,
                "warning": self.engine.status(),
                "last_transition": self.last_transition.as_dict() if self.last_transition else None,
                "bot": self.bot.status(),
                "devices": self.registry.snapshot(),
                "simulation": not self.config.flow_meter_url,
                "log": self.log_view(),
                "events": self.events.get(),
                "config": self.config.as_dict(),
            }
