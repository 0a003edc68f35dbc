from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from metrics_reporter import SessionMetricsReporter


class SessionMetricsReporterTests(unittest.TestCase):
    def test_writes_jsonl_and_summary(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            output = Path(tmpdir) / "session_metrics.jsonl"
            summary = Path(tmpdir) / "session_summary.json"
            reporter = SessionMetricsReporter(True, str(output), str(summary))
            reporter.start_session()
            reporter.record_segment("agent", translation_s=0.4, synthesis_s=0.8, source_chars=12, translated_chars=14)
            reporter.record_segment("agent", translation_s=1.0, synthesis_s=1.8, source_chars=20, translated_chars=22)
            reporter.record_segment("customer", translation_s=0.5, synthesis_s=0.5, source_chars=5, translated_chars=6)
            reporter.record_error("customer", "translation", "timeout")
            result = reporter.finalize_session()

            self.assertTrue(output.exists())
            self.assertTrue(summary.exists())
            self.assertEqual(result["segments_logged"], 3)
            self.assertEqual(result["error_events"], 1)
            self.assertEqual(result["channels"]["agent"]["segments_logged"], 2)
            self.assertAlmostEqual(result["channels"]["agent"]["latency_max_s"], 2.8)
            self.assertAlmostEqual(result["channels"]["customer"]["issue_rate_pct"], 50.0)

            lines = output.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 4)
            parsed = [json.loads(line) for line in lines]
            self.assertEqual(parsed[0]["event_type"], "segment")
            self.assertEqual(parsed[0]["channel"], "agent")
            self.assertEqual(parsed[-1]["event_type"], "error")
            self.assertEqual(parsed[-1]["stage"], "translation")

            saved_summary = json.loads(summary.read_text(encoding="utf-8"))
            self.assertEqual(saved_summary["segments_logged"], 3)

    def test_snapshot_of_unknown_channel_is_zeroed(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = SessionMetricsReporter(True, f"{tmpdir}/m.jsonl", f"{tmpdir}/s.json")
            self.assertEqual(reporter.snapshot("agent")["avg_latency_s"], 0.0)
            reporter.record_segment("agent", 0.2, 0.2, 1, 1)
            self.assertAlmostEqual(reporter.snapshot("agent")["avg_latency_s"], 0.4)

    def test_disabled_reporter_writes_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            output = Path(tmpdir) / "nested" / "m.jsonl"
            reporter = SessionMetricsReporter(False, str(output), str(Path(tmpdir) / "nested" / "s.json"))
            reporter.start_session()
            reporter.record_segment("agent", 0.1, 0.1, 1, 1)
            self.assertEqual(reporter.finalize_session(), {})
            self.assertFalse(output.exists())


if __name__ == "__main__":
    unittest.main()
