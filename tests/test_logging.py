"""
Dialectic Core — Structured Logging Tests

JSON-lines output, trace/span correlation per session and job, level
filtering, and the job events a worker emits during a stage run.
"""

import io
import json
import logging
import os
import sys
import unittest
import uuid

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dialectic.logging import JobLogger, JSONFormatter, configure_logging, get_logger, span_id_for, trace_id_for


def _parse(buf):
    return [json.loads(line) for line in buf.getvalue().splitlines() if line.strip()]


class LoggingTestCase(unittest.TestCase):

    def setUp(self):
        self.buf = io.StringIO()
        configure_logging(level="DEBUG", stream=self.buf)

    def tearDown(self):
        root = logging.getLogger("dialectic")
        root.handlers.clear()
        root.propagate = True
        root.setLevel(logging.NOTSET)


class TestFormatter(LoggingTestCase):

    def test_plain_record(self):
        get_logger("store").info("Claimed %s", "job-1")
        entry = _parse(self.buf)[0]
        self.assertEqual(entry["message"], "Claimed job-1")
        self.assertEqual(entry["logger"], "dialectic.store")
        self.assertEqual(entry["level"], "INFO")
        self.assertEqual(entry["service.name"], "dialectic")
        self.assertIn("timestamp", entry)

    def test_exception_fields(self):
        try:
            raise ValueError("bad row")
        except ValueError:
            get_logger("db").exception("Write failed")
        entry = _parse(self.buf)[0]
        self.assertEqual(entry["exception.type"], "ValueError")
        self.assertEqual(entry["exception.message"], "bad row")

    def test_every_line_is_json(self):
        for i in range(5):
            get_logger("x").warning("line %d", i)
        self.assertEqual(len(_parse(self.buf)), 5)

    def test_service_name(self):
        record = logging.LogRecord("dialectic", logging.INFO, "", 0, "hi", (), None)
        entry = json.loads(JSONFormatter(service_name="worker").format(record))
        self.assertEqual(entry["service.name"], "worker")

    def test_reconfigure_does_not_stack_handlers(self):
        configure_logging(level="INFO", stream=self.buf)
        configure_logging(level="INFO", stream=self.buf)
        get_logger("x").info("once")
        self.assertEqual(len(_parse(self.buf)), 1)


class TestCorrelation(unittest.TestCase):

    def test_trace_id_from_uuid_session(self):
        sid = str(uuid.uuid4())
        self.assertEqual(trace_id_for(sid), uuid.UUID(sid).hex)

    def test_trace_id_stable_for_other_ids(self):
        self.assertEqual(trace_id_for("session-a"), trace_id_for("session-a"))
        self.assertNotEqual(trace_id_for("session-a"), trace_id_for("session-b"))
        self.assertEqual(len(trace_id_for("session-a")), 32)

    def test_span_id_length(self):
        self.assertEqual(len(span_id_for(str(uuid.uuid4()))), 16)
        self.assertEqual(len(span_id_for("job-7")), 16)


class TestJobLogger(LoggingTestCase):

    def test_fields(self):
        jlog = JobLogger(session_id="s-1", job_id="j-1", job_type="EXECUTE",
                         stage="thesis", iteration=2)
        jlog.on_model_call_end("model-alpha", output_tokens=40, elapsed=1.25)
        entry = _parse(self.buf)[0]
        self.assertEqual(entry["action"], "model_call_end")
        self.assertEqual(entry["trace_id"], trace_id_for("s-1"))
        self.assertEqual(entry["span_id"], span_id_for("j-1"))
        self.assertEqual(entry["job_type"], "EXECUTE")
        self.assertEqual(entry["stage"], "thesis")
        self.assertEqual(entry["iteration"], 2)
        self.assertEqual(entry["latency_ms"], 1250.0)

    def test_session_only_logger_has_no_span(self):
        JobLogger(session_id="s-1").on_status_change("pending", "processing")
        entry = _parse(self.buf)[0]
        self.assertNotIn("span_id", entry)
        self.assertEqual(entry["new_status"], "processing")

    def test_failure_is_warning_and_truncated(self):
        JobLogger(session_id="s", job_id="j").on_job_failed("MODEL_CALL_FAILED", "x" * 2000)
        entry = _parse(self.buf)[0]
        self.assertEqual(entry["level"], "WARNING")
        self.assertEqual(len(entry["error"]), 500)

    def test_level_filtering(self):
        configure_logging(level="INFO", stream=self.buf)
        jlog = JobLogger(session_id="s", job_id="j")
        jlog.on_model_call_start("model-alpha", prompt_chars=900)
        jlog.on_job_claimed("w1")
        self.assertEqual([e["action"] for e in _parse(self.buf)], ["job_claimed"])


class TestStageRunEvents(LoggingTestCase):

    def test_events_share_the_session_trace(self):
        from support import make_project, make_runtime, start_session
        from scheduler.worker import JobWorker

        rt = make_runtime()
        try:
            session = start_session(rt, make_project(rt))
            rt.stages.start_stage(session.id)
            JobWorker(rt, worker_id="w-log").run_until_idle()
        finally:
            rt.close()

        events = [e for e in _parse(self.buf) if "action" in e]
        actions = {e["action"] for e in events}
        for expected in ("job_claimed", "children_planned", "prompt_resolved",
                         "context_compressed", "model_call_end", "contribution_saved",
                         "render_complete", "cascade_decision", "status_change"):
            self.assertIn(expected, actions)
        self.assertEqual({e["trace_id"] for e in events}, {trace_id_for(session.id)})
        claimed = [e for e in events if e["action"] == "job_claimed"]
        self.assertEqual(len({e["span_id"] for e in claimed}), 5)
        root_changes = [(e["old_status"], e["new_status"]) for e in events
                        if e["action"] == "status_change" and e["job_type"] == "PLAN"]
        self.assertIn(("waiting_for_children", "pending_next_step"), root_changes)


if __name__ == "__main__":
    unittest.main()
