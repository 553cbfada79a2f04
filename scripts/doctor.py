#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import jsonschema

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from controller import URL_KEYS, validate_config_payload  # noqa: E402
from devices import FlowMeterClient, SourceError  # noqa: E402


@dataclass
class Issue:
    level: str
    message: str
    path: str | None = None

    def format(self) -> str:
        prefix = f"[{self.level}]"
        if self.path:
            return f"{prefix} {self.path}: {self.message}"
        return f"{prefix} {self.message}"


def _load_json(path: Path, issues: list[Issue]) -> Any | None:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        issues.append(Issue("ERROR", "File not found.", str(path)))
    except json.JSONDecodeError as exc:
        issues.append(Issue("ERROR", f"JSON parse error: {exc}", str(path)))
    except OSError as exc:
        issues.append(Issue("ERROR", f"Read error: {exc}", str(path)))
    return None


def _schema_validate(instance: Any, schema_path: Path, issues: list[Issue]) -> None:
    schema = _load_json(schema_path, issues)
    if schema is None:
        return
    validator_cls = jsonschema.validators.validator_for(schema)
    try:
        validator_cls.check_schema(schema)
    except jsonschema.SchemaError as exc:
        issues.append(Issue("ERROR", f"Broken schema: {exc.message}", str(schema_path)))
        return
    validator = validator_cls(schema)
    for err in sorted(validator.iter_errors(instance), key=str):
        loc = ".".join(str(p) for p in err.path) if err.path else ""
        issues.append(Issue("ERROR", f"Schema error{f' ({loc})' if loc else ''}: {err.message}", str(schema_path)))


def _validate_dashboard(cfg: Any, issues: list[Issue]) -> None:
    for msg in validate_config_payload(cfg):
        issues.append(Issue("ERROR", msg, "dashboard.json"))
    if not isinstance(cfg, dict):
        return
    for key in URL_KEYS:
        if not str(cfg.get(key) or "").strip():
            issues.append(Issue("WARN", f"{key} empty; that channel runs in mock mode.", "dashboard.json"))
    interval = cfg.get("update_interval_seconds")
    timeout = cfg.get("fetch_timeout_seconds")
    if isinstance(interval, (int, float)) and isinstance(timeout, (int, float)) and timeout > interval:
        issues.append(Issue("WARN", "fetch_timeout_seconds > update_interval_seconds; slow fetches will overlap.", "dashboard.json"))


def _probe_flow_meter(cfg: dict[str, Any], issues: list[Issue]) -> None:
    url = str(cfg.get("flow_meter_url") or "").strip()
    if not url:
        issues.append(Issue("WARN", "No flow_meter_url to probe.", "probe"))
        return
    client = FlowMeterClient(timeout=float(cfg.get("fetch_timeout_seconds") or 5))
    try:
        reading = client.fetch(url, time.time())
    except SourceError as exc:
        issues.append(Issue("ERROR", f"{exc.kind}: {exc}", "probe"))
        return
    print(f"[OK] {url}: flowRate={reading.flow_rate} totalVolume={reading.total_volume}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Aqua panel config check (file + schema, optional endpoint probe).")
    parser.add_argument("--config", type=Path, default=ROOT_DIR / "config" / "dashboard.json")
    parser.add_argument("--probe", action="store_true", help="Fetch the flow meter endpoint once.")
    parser.add_argument("--strict", action="store_true", help="Treat warnings as errors.")
    args = parser.parse_args(argv)

    schema_path = ROOT_DIR / "config" / "schema" / "dashboard.schema.json"
    issues: list[Issue] = []

    cfg = _load_json(args.config, issues)
    if cfg is not None:
        _schema_validate(cfg, schema_path, issues)
        _validate_dashboard(cfg, issues)
        if args.probe and isinstance(cfg, dict):
            _probe_flow_meter(cfg, issues)

    errors = [i for i in issues if i.level == "ERROR"]
    warns = [i for i in issues if i.level == "WARN"]

    for issue in issues:
        print(issue.format())

    if not issues:
        print("[OK] All clean.")

    if errors:
        print(f"[FAIL] {len(errors)} errors, {len(warns)} warnings.")
        return 1

    if args.strict and warns:
        print(f"[FAIL] strict mode: {len(warns)} warnings counted as errors.")
        return 1

    print(f"[OK] {len(warns)} warnings.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
