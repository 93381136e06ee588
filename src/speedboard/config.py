from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import find_dotenv, load_dotenv

MIN_WORKERS = 1
MAX_WORKERS = 64


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name, str(default)).strip()
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name, str(default)).strip()
    try:
        return float(value)
    except ValueError:
        return default


def clamp_workers(value: int) -> int:
    return max(MIN_WORKERS, min(MAX_WORKERS, int(value)))


@dataclass(slots=True)
class EngineConfig:
    worker_count: int = 16
    tick_seconds: float = 1.0
    ping_interval_seconds: float = 1.0
    ping_timeout_seconds: float = 5.0
    rotate_seconds: float = 2.0
    backoff_seconds: float = 0.05
    request_timeout_seconds: float = 15.0
    max_points: int = 120
    log_limit: int = 50
    failure_threshold: int = 10


@dataclass(slots=True)
class AppConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    nodes_file: str = "nodes.json"
    default_group: str = ""
    log_level: str = "INFO"
    log_file: str = ""


def load_engine_config() -> EngineConfig:
    return EngineConfig(
        worker_count=clamp_workers(_env_int("SPEEDBOARD_WORKERS", 16)),
        tick_seconds=max(0.05, _env_float("SPEEDBOARD_TICK_SECONDS", 1.0)),
        ping_interval_seconds=max(
            0.05, _env_float("SPEEDBOARD_PING_INTERVAL", 1.0)
        ),
        ping_timeout_seconds=max(0.1, _env_float("SPEEDBOARD_PING_TIMEOUT", 5.0)),
        rotate_seconds=max(0.1, _env_float("SPEEDBOARD_ROTATE_SECONDS", 2.0)),
        backoff_seconds=max(0, _env_int("SPEEDBOARD_BACKOFF_MS", 50)) / 1000,
        request_timeout_seconds=max(
            0.1, _env_float("SPEEDBOARD_REQUEST_TIMEOUT", 15.0)
        ),
        max_points=max(1, _env_int("SPEEDBOARD_MAX_POINTS", 120)),
        log_limit=max(1, _env_int("SPEEDBOARD_LOG_LIMIT", 50)),
        failure_threshold=max(1, _env_int("SPEEDBOARD_FAILURE_THRESHOLD", 10)),
    )


def load_config() -> AppConfig:
    load_dotenv(find_dotenv(usecwd=True))

    return AppConfig(
        engine=load_engine_config(),
        nodes_file=os.getenv("SPEEDBOARD_NODES_FILE", "nodes.json").strip()
        or "nodes.json",
        default_group=os.getenv("SPEEDBOARD_GROUP", "").strip(),
        log_level=os.getenv("SPEEDBOARD_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        log_file=os.getenv("SPEEDBOARD_LOG_FILE", "").strip(),
    )
