"""
Scenario Metrics Collection

Provides:
- ScenarioMetrics: thread-safe counters shared by all workers of one run
- Throughput calculation
- Report generation
"""
import json
import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

MESSAGES_SENT = "messages_sent"
MESSAGES_RECEIVED = "messages_received"
CORRUPT_MESSAGES = "corrupt_messages"
TYPE_ANOMALIES = "type_anomalies"
ACK_FAILURES = "ack_failures"
SEND_FAILURES = "send_failures"
FLOW_CONTROL_WAITS = "flow_control_waits"
CONNECTION_FAULTS = "connection_faults"
WORKER_ERRORS = "worker_errors"

COUNTERS = (
    MESSAGES_SENT,
    MESSAGES_RECEIVED,
    CORRUPT_MESSAGES,
    TYPE_ANOMALIES,
    ACK_FAILURES,
    SEND_FAILURES,
    FLOW_CONTROL_WAITS,
    CONNECTION_FAULTS,
    WORKER_ERRORS,
)


class ScenarioMetrics:

    def __init__(self, scenario_id: str):
        self.scenario_id = scenario_id
        self.start_time = time.time()
        self.end_time: Optional[float] = None
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in COUNTERS}
        self._gauges: Dict[str, float] = {}
        self.corruption_events: List[Dict[str, Any]] = []
        self.warnings: List[str] = []

    def increment(self, name: str, value: int = 1):
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def set_gauge(self, name: str, value: float):
        with self._lock:
            self._gauges[name] = value

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def record_corruption(self, consumer: str, consumer_index: int, encoding: str, message_id: str):
        with self._lock:
            self._counters[CORRUPT_MESSAGES] += 1
            self.corruption_events.append({
                "consumer": consumer,
                "consumer_index": consumer_index,
                "encoding": encoding,
                "message_id": message_id,
                "timestamp": time.time()
            })

    def add_warning(self, warning: str):
        with self._lock:
            self.warnings.append(warning)

    def finalize(self) -> 'ScenarioMetrics':
        self.end_time = time.time()
        return self

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or time.time()
        return end - self.start_time

    @property
    def receive_throughput(self) -> float:
        if self.duration_seconds == 0:
            return 0.0
        return self.counter(MESSAGES_RECEIVED) / self.duration_seconds

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            gauges = {k: round(v, 4) for k, v in self._gauges.items()}
            events = list(self.corruption_events[:20])
            warnings = list(self.warnings[:20])
        return {
            "scenario_id": self.scenario_id,
            "start_time": datetime.fromtimestamp(self.start_time).isoformat(),
            "end_time": datetime.fromtimestamp(self.end_time).isoformat() if self.end_time else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "receive_throughput_per_sec": round(self.receive_throughput, 2),
            "counters": counters,
            "gauges": gauges,
            "corruption_events": events,
            "warnings": warnings
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def print_summary(self, verdict: str = ""):
        counters = self.to_dict()["counters"]
        print(f"\n{'='*60}")
        print(f"SCENARIO: {self.scenario_id} {verdict}".rstrip())
        print(f"{'='*60}")
        print(f"Duration: {self.duration_seconds:.2f}s")
        print(f"Sent: {counters[MESSAGES_SENT]}  Received: {counters[MESSAGES_RECEIVED]}")
        print(f"Throughput: {self.receive_throughput:.1f} deliveries/sec")
        print(f"Corrupt: {counters[CORRUPT_MESSAGES]}  Type anomalies: {counters[TYPE_ANOMALIES]}")
        if self._gauges:
            print(f"Gauges: {self._gauges}")
        if self.corruption_events:
            print(f"Corruption events ({len(self.corruption_events)}): {self.corruption_events[:5]}")
        if self.warnings:
            print(f"Warnings ({len(self.warnings)}): {self.warnings[:5]}")
        print(f"{'='*60}\n")
