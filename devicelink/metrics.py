import time
from collections import defaultdict
from dataclasses import dataclass, field, fields
from typing import DefaultDict


@dataclass
class Metrics:
    """Process-wide counters; every ``*_total`` field is exported as-is."""

    started_at: float = field(default_factory=time.time)

    # broker connections
    connects_total: int = 0
    connect_failures_total: int = 0
    disconnects_total: int = 0
    reconnects_total: int = 0

    # session operations
    subscribes_total: int = 0
    unsubscribes_total: int = 0
    publishes_total: int = 0
    publish_retries_total: int = 0
    publish_failures_total: int = 0
    messages_in_total: int = 0

    # wire
    bytes_in_total: int = 0
    bytes_out_total: int = 0

    # per packet type handling time
    handled: DefaultDict[str, int] = field(default_factory=lambda: defaultdict(int))
    handled_ms_sum: DefaultDict[str, float] = field(default_factory=lambda: defaultdict(float))
    handled_ms_max: DefaultDict[str, float] = field(default_factory=lambda: defaultdict(float))

    def observe_packet(self, name: str, ms: float):
        self.handled[name] += 1
        self.handled_ms_sum[name] += ms
        if ms > self.handled_ms_max[name]:
            self.handled_ms_max[name] = ms

    def counters(self):
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name.endswith("_total")}

    def snapshot(self):
        snap = {"uptime_sec": round(time.time() - self.started_at, 2)}
        snap.update(self.counters())
        snap["packet_count"] = dict(self.handled)
        snap["packet_avg_ms"] = {
            name: round(self.handled_ms_sum[name] / count, 3) for name, count in self.handled.items() if count
        }
        snap["packet_max_ms"] = {name: round(ms, 3) for name, ms in self.handled_ms_max.items()}
        return snap

    def prometheus(self) -> str:
        snap = self.snapshot()
        lines = [f"devicelink_uptime_sec {snap['uptime_sec']}"]
        lines += [f"devicelink_{name} {value}" for name, value in self.counters().items()]
        for series in ("packet_count", "packet_avg_ms", "packet_max_ms"):
            for name, value in snap[series].items():
                lines.append(f'devicelink_{series}{{type="{name}"}} {value}')
        return "\n".join(lines) + "\n"


METRICS = Metrics()
