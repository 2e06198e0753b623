"""Harness Configuration - Schema and loading"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .constants import Defaults

ENV_PREFIX = "FANOUT_STRESS_"
BACKENDS = ("memory", "redis")


@dataclass(frozen=True)
class HarnessSettings:
    """Run parameters shared by every scenario of one harness invocation."""
    consumer_count: int = Defaults.CONSUMER_COUNT
    producer_count: int = Defaults.PRODUCER_COUNT
    topic: str = Defaults.TOPIC
    receive_timeout: float = Defaults.RECEIVE_TIMEOUT
    ready_timeout: float = Defaults.READY_TIMEOUT
    run_seconds: float = Defaults.RUN_SECONDS
    shutdown_grace: float = Defaults.SHUTDOWN_GRACE
    priority: int = Defaults.PRIORITY
    time_to_live: float = Defaults.TIME_TO_LIVE
    backend: str = Defaults.BACKEND
    redis_url: str = Defaults.REDIS_URL
    key_prefix: str = Defaults.KEY_PREFIX
    log_level: str = Defaults.LOG_LEVEL

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'HarnessSettings':
        return cls().merge(data)

    @classmethod
    def load(cls, path: str) -> 'HarnessSettings':
        """Load settings from a YAML file. Unknown keys are rejected."""
        with open(Path(path), 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at top level")
        return cls.from_dict(data.get('harness', data))

    @classmethod
    def from_env(cls, base: Optional['HarnessSettings'] = None,
                 environ: Optional[Mapping[str, str]] = None) -> 'HarnessSettings':
        """Override `base` with FANOUT_STRESS_<FIELD> environment variables."""
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            value = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if value is not None:
                overrides[f.name] = value
        return (base or cls()).merge(overrides)

    def merge(self, data: Mapping[str, Any]) -> 'HarnessSettings':
        known = {f.name: f for f in fields(self)}
        unknown = set(data) - set(known)
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        coerced = {
            name: _coerce(known[name].type, value)
            for name, value in data.items()
            if value is not None
        }
        return replace(self, **coerced)

    def validate(self) -> 'HarnessSettings':
        if self.consumer_count < 1:
            raise ValueError(f"consumer_count must be >= 1, got {self.consumer_count}")
        if self.producer_count < 1:
            raise ValueError(f"producer_count must be >= 1, got {self.producer_count}")
        if self.receive_timeout <= 0:
            raise ValueError(f"receive_timeout must be > 0, got {self.receive_timeout}")
        if self.ready_timeout <= 0 or self.run_seconds < 0:
            raise ValueError("ready_timeout must be > 0 and run_seconds >= 0")
        if self.shutdown_grace < self.receive_timeout:
            raise ValueError(
                f"shutdown_grace ({self.shutdown_grace}s) must cover one receive timeout "
                f"({self.receive_timeout}s)"
            )
        if not 0 <= self.priority <= 9:
            raise ValueError(f"priority must be in 0..9, got {self.priority}")
        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown backend {self.backend!r}, expected one of {BACKENDS}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce(type_name, value):
    kind = type_name if isinstance(type_name, str) else getattr(type_name, "__name__", "")
    if kind == "int":
        return int(value)
    if kind == "float":
        return float(value)
    return str(value)
