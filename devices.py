import http.client
import json
import logging
import math
import threading
import time
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from flow_monitor import Reading

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_SECONDS = 5.0
EMBED_SETTLE_SECONDS = 2.0
READ_CHUNK_BYTES = 4096

FLOW_METER = "flow_meter"
DRAIN_CAMERA = "drain_camera"
BOT_CAMERA = "bot_camera"
CHANNELS: Tuple[str, ...] = (FLOW_METER, DRAIN_CAMERA, BOT_CAMERA)


class SourceError(Exception):
    kind = "source_error"

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{message} ({url})")
        self.url = url
        self.detail = message


class EndpointUnreachable(SourceError):
    kind = "endpoint_unreachable"


class HttpError(SourceError):
    kind = "http_error"

    def __init__(self, url: str, status: int, reason: str = "") -> None:
        super().__init__(url, f"HTTP {status}" + (f": {reason}" if reason else ""))
        self.status = status


class MalformedPayload(SourceError):
    kind = "malformed_payload"


class EmbedLoadFailure(SourceError):
    kind = "embed_load_failure"


class DeviceError(Exception):
    pass


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def parse_flow_payload(body: bytes, url: str, now: float) -> Reading:
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise MalformedPayload(url, f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedPayload(url, "payload must be a JSON object")
    flow = data.get("flowRate")
    if not _is_number(flow):
        raise MalformedPayload(url, "flowRate must be a number")
    if flow < 0:
        raise MalformedPayload(url, "flowRate must not be negative")
    volume = data.get("totalVolume")
    return Reading(
        ts=now,
        flow_rate=float(flow),
        total_volume=float(volume) if _is_number(volume) else None,
        source="live",
    )


class FlowMeterClient:
    """Reads the flow meter's JSON endpoint ({"flowRate": .., "totalVolume": ..})."""

    def __init__(self, timeout: float = FETCH_TIMEOUT_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self.timeout = timeout
        self.clock = clock

    def fetch(self, url: str, now: float) -> Reading:
        # urlopen's timeout bounds each socket operation; the deadline bounds the whole request.
        deadline = self.clock() + self.timeout
        req = urllib.request.Request(
            url,
            method="GET",
            headers={"Accept": "application/json", "Cache-Control": "no-cache"},
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310 (configured device URL)
                status = int(getattr(resp, "status", 200) or 200)
                reason = str(getattr(resp, "reason", "") or "")
                if not 200 <= status < 300:
                    raise HttpError(url, status, reason)
                body = self._read_body(resp, url, deadline)
        except urllib.error.HTTPError as exc:
            raise HttpError(url, exc.code, str(exc.reason or "")) from exc
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as exc:
            reason = getattr(exc, "reason", None) or exc
            raise EndpointUnreachable(url, f"{type(exc).__name__}: {reason}") from exc
        return parse_flow_payload(body, url, now)

    def _read_body(self, resp: Any, url: str, deadline: float) -> bytes:
        chunks = []
        while True:
            if self.clock() > deadline:
                raise EndpointUnreachable(url, f"Timed out after {self.timeout:g}s")
            chunk = resp.read1(READ_CHUNK_BYTES)
            if not chunk:
                return b"".join(chunks)
            chunks.append(chunk)


@dataclass
class DeviceStatus:
    using_real_data: bool = False
    connected: bool = False
    url: str = ""
    last_error: Optional[str] = None
    updated_ts: Optional[float] = None


class DeviceRegistry:
    def __init__(self, channels: Tuple[str, ...] = CHANNELS) -> None:
        self.devices: Dict[str, DeviceStatus] = {name: DeviceStatus() for name in channels}

    def get(self, channel: str) -> DeviceStatus:
        if channel not in self.devices:
            raise DeviceError(f"Unknown device channel: {channel}")
        return self.devices[channel]

    def set_status(
        self,
        channel: str,
        connected: bool,
        using_real_data: bool,
        error: Optional[str] = None,
        ts: Optional[float] = None,
    ) -> bool:
        """Store the flags for one channel; True when either flag changed."""
        status = self.get(channel)
        changed = status.connected != bool(connected) or status.using_real_data != bool(using_real_data)
        status.connected = bool(connected)
        status.using_real_data = bool(using_real_data)
        status.last_error = error
        status.updated_ts = ts if ts is not None else time.time()
        return changed

    def set_url(self, channel: str, url: str) -> None:
        self.get(channel).url = url

    def reset_all(self) -> None:
        for status in self.devices.values():
            status.connected = False
            status.using_real_data = False
            status.last_error = None
            status.updated_ts = None

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: asdict(status) for name, status in self.devices.items()}


class BotState(str, Enum):
    STANDBY = "standby"
    DEPLOYED = "deployed"


class BotController:
    """Standby/Deployed state of the cleaning bot plus its camera feed.

    The feed is a cross-origin frame, so a configured feed counts as loaded
    once the settle delay passes without an error event.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        lock: Any,
        settle_seconds: float = EMBED_SETTLE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.lock = lock
        self.settle_seconds = settle_seconds
        self.clock = clock
        self.state = BotState.STANDBY
        self.url = ""
        self.deployed_ts: Optional[float] = None
        self._settle_timer: Optional[threading.Timer] = None
        self._feed_seq = 0

    @property
    def deployed(self) -> bool:
        return self.state is BotState.DEPLOYED

    def configure(self, url: str) -> None:
        self.cancel_settle()
        self.url = (url or "").strip()
        self.registry.set_url(BOT_CAMERA, self.url)

    def interface_url(self) -> Optional[str]:
        return self.url or None

    def deploy(self) -> bool:
        if self.deployed:
            return False
        self.state = BotState.DEPLOYED
        self.deployed_ts = self.clock()
        self.activate_feed()
        return True

    def return_to_dock(self) -> bool:
        if not self.deployed:
            return False
        self.state = BotState.STANDBY
        self.deployed_ts = None
        self.cancel_settle()
        return True

    def activate_feed(self) -> None:
        self.cancel_settle()
        if not self.url:
            self.registry.set_status(BOT_CAMERA, False, False, ts=self.clock())
            return
        self._feed_seq += 1
        seq = self._feed_seq
        timer = threading.Timer(self.settle_seconds, lambda: self._feed_settled(seq))
        timer.daemon = True
        self._settle_timer = timer
        timer.start()

    def _feed_settled(self, seq: int) -> None:
        with self.lock:
            if seq != self._feed_seq or not self.deployed:
                return
            self._settle_timer = None
            self.registry.set_status(BOT_CAMERA, True, True, ts=self.clock())
        logger.info("Bot interface assumed loaded: %s", self.url)

    def feed_loaded(self) -> None:
        self.cancel_settle()
        self.registry.set_status(BOT_CAMERA, True, True, ts=self.clock())

    def feed_failed(self, detail: Optional[str] = None) -> None:
        self.cancel_settle()
        self.registry.set_status(BOT_CAMERA, False, False, error=detail, ts=self.clock())

    def cancel_settle(self) -> None:
        self._feed_seq += 1
        timer = self._settle_timer
        self._settle_timer = None
        if timer is not None:
            timer.cancel()

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "deployed": self.deployed,
            "deployed_ts": self.deployed_ts,
            "interface_url": self.interface_url(),
            "feed_pending": self._settle_timer is not None,
        }
