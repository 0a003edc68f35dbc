from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional


def _percentile(values: list[float], ratio: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    index = (len(ordered) - 1) * ratio
    lower = int(index)
    upper = min(lower + 1, len(ordered) - 1)
    if lower == upper:
        return ordered[lower]
    weight = index - lower
    return ordered[lower] * (1.0 - weight) + ordered[upper] * weight


@dataclass
class _ChannelStats:
    latencies: list[float] = field(default_factory=list)
    segments_logged: int = 0
    error_events: int = 0

    def summary(self) -> dict[str, Any]:
        return {
            "segments_logged": self.segments_logged,
            "error_events": self.error_events,
            "issue_rate_pct": (self.error_events / max(1, self.segments_logged + self.error_events)) * 100.0,
            "latency_avg_s": (sum(self.latencies) / len(self.latencies)) if self.latencies else 0.0,
            "latency_p50_s": _percentile(self.latencies, 0.50),
            "latency_p95_s": _percentile(self.latencies, 0.95),
            "latency_max_s": max(self.latencies) if self.latencies else 0.0,
        }


class SessionMetricsReporter:
    """JSONL event log plus a JSON summary per call, broken down by channel."""

    def __init__(self, enabled: bool, output_path: str, summary_path: str, append_mode: bool = False) -> None:
        self._enabled = enabled
        self._output_path = Path(output_path)
        self._summary_path = Path(summary_path)
        self._append_mode = append_mode
        self._session_started_at: Optional[datetime] = None
        self._channels: dict[str, _ChannelStats] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start_session(self) -> None:
        if not self._enabled:
            return
        self._session_started_at = datetime.now()
        self._channels.clear()
        self._ensure_parent_dirs()
        if not self._append_mode:
            self._output_path.write_text("", encoding="utf-8")

    def record_segment(
        self,
        channel: str,
        translation_s: float,
        synthesis_s: float,
        source_chars: int,
        translated_chars: int,
    ) -> None:
        if not self._enabled:
            return
        stats = self._stats(channel)
        latency = max(0.0, translation_s) + max(0.0, synthesis_s)
        stats.latencies.append(latency)
        stats.segments_logged += 1
        self._append_jsonl(
            {
                "event_type": "segment",
                "recorded_at": datetime.now().isoformat(timespec="milliseconds"),
                "channel": channel,
                "latency_translation_s": translation_s,
                "latency_synthesis_s": synthesis_s,
                "latency_total_s": latency,
                "source_chars": source_chars,
                "translated_chars": translated_chars,
            }
        )

    def record_error(self, channel: str, stage: str, error: str) -> None:
        if not self._enabled:
            return
        self._stats(channel).error_events += 1
        self._append_jsonl(
            {
                "event_type": "error",
                "recorded_at": datetime.now().isoformat(timespec="milliseconds"),
                "channel": channel,
                "stage": stage,
                "error": error,
            }
        )

    def snapshot(self, channel: str) -> dict[str, float]:
        stats = self._channels.get(channel)
        if stats is None:
            return {"avg_latency_s": 0.0, "p95_latency_s": 0.0, "issue_rate_pct": 0.0}
        summary = stats.summary()
        return {
            "avg_latency_s": summary["latency_avg_s"],
            "p95_latency_s": summary["latency_p95_s"],
            "issue_rate_pct": summary["issue_rate_pct"],
        }

    def finalize_session(self) -> dict[str, Any]:
        if not self._enabled:
            return {}
        now = datetime.now()
        started = self._session_started_at or now
        summary = {
            "session_started_at": started.isoformat(timespec="milliseconds"),
            "session_ended_at": now.isoformat(timespec="milliseconds"),
            "session_duration_s": max(0.0, (now - started).total_seconds()),
            "segments_logged": sum(stats.segments_logged for stats in self._channels.values()),
            "error_events": sum(stats.error_events for stats in self._channels.values()),
            "channels": {name: stats.summary() for name, stats in sorted(self._channels.items())},
        }
        self._write_summary(summary)
        self._session_started_at = None
        return summary

    def _stats(self, channel: str) -> _ChannelStats:
        return self._channels.setdefault(channel, _ChannelStats())

    def _ensure_parent_dirs(self) -> None:
        self._output_path.parent.mkdir(parents=True, exist_ok=True)
        self._summary_path.parent.mkdir(parents=True, exist_ok=True)

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        self._ensure_parent_dirs()
        line = json.dumps(payload, ensure_ascii=False)
        with self._output_path.open("a", encoding="utf-8") as handle:
            handle.write(line)
            handle.write("\n")

    def _write_summary(self, summary: dict[str, Any]) -> None:
        self._ensure_parent_dirs()
        with self._summary_path.open("w", encoding="utf-8") as handle:
            json.dump(summary, handle, ensure_ascii=False, indent=2)
