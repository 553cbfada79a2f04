#!/usr/bin/env python3
"""Bench stand-in for the ESP32 YF-S201 flow meter.

Serves GET /api/data as {"flowRate": 12.34, "totalVolume": 5.678} so the
panel can run in live mode without hardware. Pulses are synthesised around
a target flow and converted the same way the firmware does.
"""
from __future__ import annotations

import argparse
import random
import threading
import time
from typing import Any, Callable, Dict, Optional

from flask import Flask, jsonify

CALIBRATION_FACTOR = 4.5  # pulses per second per L/min
SAMPLE_WINDOW_SECONDS = 0.1


class PulseFlowMeter:
    def __init__(
        self,
        target_flow: float = 120.0,
        jitter: float = 0.1,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.target_flow = target_flow
        self.jitter = jitter
        self.rng = rng or random.Random()
        self.clock = clock
        self.flow_rate = 0.0
        self.total_volume = 0.0
        self.last_ts = clock()
        self.lock = threading.Lock()

    def count_pulses(self, elapsed: float) -> int:
        expected = self.target_flow * CALIBRATION_FACTOR * elapsed
        noisy = expected * (1 + self.rng.uniform(-self.jitter, self.jitter))
        return max(0, int(round(noisy)))

    def sample(self) -> Dict[str, float]:
        with self.lock:
            now = self.clock()
            elapsed = now - self.last_ts
            if elapsed >= SAMPLE_WINDOW_SECONDS:
                pulses = self.count_pulses(elapsed)
                self.flow_rate = (pulses / elapsed) / CALIBRATION_FACTOR
                self.total_volume += (self.flow_rate / 60.0) * elapsed
                self.last_ts = now
            return {"flowRate": round(self.flow_rate, 2), "totalVolume": round(self.total_volume, 3)}


def create_app(meter: PulseFlowMeter, fail_rate: float = 0.0, rng: Optional[random.Random] = None) -> Flask:
    app = Flask(__name__)
    chooser = rng or random.Random()

    @app.route("/api/data")
    def api_data() -> Any:
        if fail_rate > 0 and chooser.random() < fail_rate:
            resp = jsonify({"error": "sensor busy"})
            resp.status_code = 503
        else:
            resp = jsonify(meter.sample())
        resp.headers["Access-Control-Allow-Origin"] = "*"
        return resp

    return app


def main() -> int:
    parser = argparse.ArgumentParser(description="Fake YF-S201 flow meter endpoint.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8077)
    parser.add_argument("--flow", type=float, default=120.0, help="Target flow in L/min.")
    parser.add_argument("--jitter", type=float, default=0.1, help="Relative pulse noise (0.1 = ±10%%).")
    parser.add_argument("--fail-rate", type=float, default=0.0, help="Share of requests answered with HTTP 503.")
    args = parser.parse_args()

    meter = PulseFlowMeter(target_flow=args.flow, jitter=args.jitter)
    create_app(meter, fail_rate=args.fail_rate).run(host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
