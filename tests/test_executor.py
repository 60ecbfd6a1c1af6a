"""
Dialectic Core — Contribution Executor Tests

One claimed EXECUTE job at a time against a seeded in-memory runtime
and a scripted model adapter.
"""

import json
import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from support import DEFAULT_REPLY, HEADER_REPLY, ScriptedModelAdapter, make_project, make_runtime, start_session

from dialectic.errors import ModelCallError, ModelTimeoutError
from dialectic.llm import ModelResponse
from scheduler.types import AIModel, ExecutePayload, JobStatus, JobType, OutputType, PlanPayload


class ExecutorTestCase(unittest.TestCase):

    def setUp(self):
        self.adapter = ScriptedModelAdapter()
        self.rt = make_runtime(self.adapter)
        self.project = make_project(self.rt)
        self.session = start_session(self.rt, self.project)

    def tearDown(self):
        self.rt.close()

    def claimed(self, stage="thesis", model_id="model-alpha", document_key="business_case",
                output_type=OutputType.MARKDOWN_DOCUMENT, prompt_id=None, session=None,
                parent_job_id=None, **payload_fields):
        session = session or self.session
        payload = ExecutePayload(
            project_id=session.project_id,
            session_id=session.id,
            stage_slug=stage,
            iteration_number=session.iteration_count,
            model_id=model_id,
            output_type=output_type,
            step_key=document_key,
            document_key=document_key,
            prompt_id=prompt_id,
            **payload_fields,
        )
        job = self.rt.store.create_job(JobType.EXECUTE, session.id, stage,
                                       session.iteration_count, payload,
                                       parent_job_id=parent_job_id, owner_id="user-1")
        self.assertTrue(self.rt.store.set_status(job.id, JobStatus.PROCESSING, JobStatus.PENDING))
        return self.rt.store.get_job(job.id)

    def run_job(self, **kwargs):
        job = self.claimed(**kwargs)
        return job, self.rt.executor.process(job)


class TestSuccess(ExecutorTestCase):

    def test_contribution_persisted(self):
        job, result = self.run_job()
        self.assertTrue(result.succeeded)
        c = self.rt.repo.get_contribution(result.contribution.id)
        self.assertEqual(c.model_id, "model-alpha")
        self.assertEqual(c.model_name, "Model Alpha")
        self.assertEqual(c.stage, "thesis")
        self.assertEqual(c.document_key, "business_case")
        self.assertEqual(c.job_id, job.id)
        self.assertEqual(c.edit_version, 1)
        self.assertTrue(c.is_latest_edit)
        self.assertEqual(c.original_model_contribution_id, c.id)
        self.assertEqual(self.rt.storage.download_text(c.full_path), DEFAULT_REPLY)
        self.assertEqual(c.size_bytes, len(DEFAULT_REPLY.encode("utf-8")))
        self.assertEqual(self.rt.store.get_job(job.id).status, JobStatus.COMPLETED)

    def test_raw_response_kept(self):
        _, result = self.run_job()
        raw = json.loads(self.rt.storage.download_text(result.raw_response_path))
        self.assertEqual(raw["content"], DEFAULT_REPLY)
        self.assertIn("/raw_responses/", result.raw_response_path)
        self.assertTrue(result.raw_response_path.endswith("_raw.json"))

    def test_storage_layout(self):
        _, result = self.run_job()
        c = result.contribution
        expected_dir = (f"projects/{self.project.id}/sessions/{self.session.id}"
                        f"/iteration_1/thesis")
        self.assertEqual(c.storage_path, expected_dir)
        self.assertTrue(c.file_name.startswith("model_alpha_"))
        self.assertTrue(c.file_name.endswith("_business_case.md"))

    def test_render_job_queued(self):
        plan = self.rt.store.create_job(
            JobType.PLAN, self.session.id, "thesis", 1,
            PlanPayload(project_id=self.project.id, session_id=self.session.id,
                        stage_slug="thesis", iteration_number=1))
        job, result = self.run_job(parent_job_id=plan.id)
        render = self.rt.store.get_job(result.render_job_id)
        self.assertEqual(render.job_type, JobType.RENDER)
        self.assertEqual(render.status, JobStatus.PENDING)
        self.assertEqual(render.parent_job_id, job.id)
        self.assertEqual(self.rt.store.get_job(job.id).status, JobStatus.COMPLETED)
        self.assertEqual(render.payload["contribution_id"], result.contribution.id)
        self.assertEqual([c.id for c in self.rt.store.list_children(job.id)], [render.id])

    def test_render_disabled_by_config(self):
        self.rt.executor.render_documents = False
        _, result = self.run_job()
        self.assertTrue(result.succeeded)
        self.assertIsNone(result.render_job_id)

    def test_prompt_rendered_and_sent(self):
        self.run_job()
        prompt_text, config = self.adapter.calls[0]
        self.assertTrue(prompt_text.startswith("Rendered System Prompt for Thesis:\n"))
        self.assertIn("independent agents", prompt_text)
        self.assertIn("Initial User Prompt:\n" + self.project.initial_user_prompt, prompt_text)
        self.assertEqual(config.api_identifier, "fake-alpha")
        self.assertEqual(config.max_output_tokens, 1024)

    def test_ledger_events(self):
        job, _ = self.run_job()
        events = [e["event_type"] for e in self.rt.store.get_ledger(job_id=job.id)]
        self.assertIn("prompt_resolved", events)
        self.assertIn("contribution_saved", events)
        resolved = self.rt.store.get_ledger(job_id=job.id, event_type="prompt_resolved")[0]
        self.assertEqual(resolved["details"]["source_tier"], "DEFAULT")
        self.assertEqual(resolved["details"]["prompt_id"], "prompt-thesis")

    def test_header_context_step(self):
        self.adapter.default = HEADER_REPLY
        _, result = self.run_job(document_key="header_context",
                                 output_type=OutputType.HEADER_CONTEXT)
        self.assertTrue(result.succeeded)
        self.assertEqual(result.contribution.mime_type, "application/json")
        self.assertTrue(result.contribution.file_name.endswith(".json"))
        self.assertIsNone(result.render_job_id)
        stored = json.loads(self.rt.storage.download_text(result.contribution.full_path))
        self.assertEqual(set(stored), {"system_materials", "header_context_artifact",
                                       "context_for_documents"})

    def test_overlay_values_reach_the_prompt(self):
        project = make_project(self.rt, domain_id="dom-software",
                               overlay_id="overlay-software-thesis")
        session = start_session(self.rt, project)
        job = self.claimed(session=session)
        self.rt.executor.process(job)
        prompt_text = self.adapter.calls[-1][0]
        self.assertIn("Prefer tables for comparisons.", prompt_text)
        self.assertIn("Domain: Software Development.", prompt_text)


class TestContext(ExecutorTestCase):

    def test_prior_stage_material_included(self):
        self.adapter.by_model["model-beta"] = "# Beta thesis\n\nUse a double-entry journal."
        self.run_job(model_id="model-beta")
        self.run_job(stage="antithesis", document_key="business_case_critique")
        request = self.adapter.calls[-1][0]
        self.assertIn("## Context", request)
        self.assertIn("Use a double-entry journal.", request)
        self.assertIn("### thesis / Model Beta / business_case", request)

    def test_later_stage_material_excluded(self):
        self.adapter.by_model["model-beta"] = "# Critique\n\nSECRET-CRITIQUE"
        self.run_job(stage="antithesis", model_id="model-beta",
                     document_key="business_case_critique")
        self.run_job()
        self.assertNotIn("SECRET-CRITIQUE", self.adapter.calls[-1][0])

    def test_gather_relevance(self):
        self.run_job(model_id="model-beta")
        job = self.claimed(stage="antithesis", document_key="business_case_critique")
        docs = self.rt.executor.gather_context(job, job.typed_payload(), self.project)
        self.assertEqual(len(docs), 1)
        self.assertAlmostEqual(docs[0].relevance, 0.5)

    def test_undecodable_content_skipped(self):
        _, prior = self.run_job(model_id="model-beta")
        self.rt.storage.upload(prior.contribution.full_path, b"\xff\xfe\x80 not utf-8")
        job = self.claimed(stage="antithesis", document_key="business_case_critique")
        with self.assertLogs("dialectic.executor", level="WARNING") as logs:
            docs = self.rt.executor.gather_context(job, job.typed_payload(), self.project)
        self.assertEqual(docs, [])
        self.assertIn("not UTF-8", logs.output[0])
        _, result = self.run_job(stage="antithesis", document_key="business_case_critique")
        self.assertTrue(result.succeeded)

    def test_context_trimmed_to_budget(self):
        self.rt.repo.upsert_ai_model(AIModel("model-small", "Small", "fake-small", provider="fake",
                                             context_window_tokens=700, max_output_tokens=100))
        self.adapter.by_model["model-beta"] = "long thesis " * 2000
        self.run_job(model_id="model-beta")
        _, result = self.run_job(stage="antithesis", model_id="model-small",
                                 document_key="business_case_critique")
        self.assertTrue(result.succeeded)
        request = self.adapter.calls[-1][0]
        self.assertIn("(truncated)", request)
        self.assertLess(len(request), 700 * 4)


class TestFailures(ExecutorTestCase):

    def assertFailed(self, job, code):
        stored = self.rt.store.get_job(job.id)
        self.assertEqual(stored.status, JobStatus.FAILED)
        self.assertEqual(stored.error_details["code"], code)
        self.assertEqual(self.rt.repo.list_contributions(self.session.id), [])
        return stored

    def test_invalid_shape_keeps_raw_and_fails(self):
        self.adapter.default = '{"files_to_generate": []}'
        job, result = self.run_job()
        self.assertFalse(result.succeeded)
        stored = self.assertFailed(job, "RESPONSE_VALIDATION_FAILED")
        raw_path = stored.error_details["details"]["raw_response_storage_path"]
        self.assertEqual(raw_path, result.raw_response_path)
        self.assertTrue(self.rt.storage.exists(raw_path))
        self.assertEqual(self.rt.store.list_jobs(job_type=JobType.RENDER), [])

    def test_header_with_extra_key_fails(self):
        self.adapter.default = json.dumps({**json.loads(HEADER_REPLY), "files_to_generate": []})
        job, _ = self.run_job(output_type=OutputType.HEADER_CONTEXT, document_key="header_context")
        self.assertFailed(job, "RESPONSE_VALIDATION_FAILED")

    def test_model_error(self):
        self.adapter.default = ModelCallError("provider unavailable")
        job, result = self.run_job()
        self.assertFailed(job, "MODEL_CALL_FAILED")
        self.assertEqual(result.error["message"], "provider unavailable")

    def test_model_timeout(self):
        self.adapter.default = ModelTimeoutError("fake-alpha call exceeded 120s")
        job, _ = self.run_job()
        self.assertFailed(job, "MODEL_TIMEOUT")

    def test_missing_direct_prompt(self):
        job, result = self.run_job(prompt_id="prompt-nope")
        stored = self.assertFailed(job, "PROMPT_NOT_FOUND")
        self.assertIn("'prompt-nope'", stored.error_details["message"])
        self.assertEqual(self.adapter.calls, [])

    def test_unknown_model(self):
        job, _ = self.run_job(model_id="model-missing")
        self.assertFailed(job, "MODEL_NOT_FOUND")

    def test_prompt_larger_than_window(self):
        self.rt.repo.upsert_ai_model(AIModel("model-tiny", "Tiny", "fake-tiny", provider="fake",
                                             context_window_tokens=10, max_output_tokens=5))
        job, _ = self.run_job(model_id="model-tiny")
        self.assertFailed(job, "CONTEXT_WINDOW_EXCEEDED")
        self.assertEqual(self.adapter.calls, [])

    def test_cancelled_during_call_leaves_no_contribution(self):
        def cancel_then_answer(prompt_text, config):
            self.rt.store.cancel_job(self.current.id)
            return DEFAULT_REPLY

        self.adapter.default = cancel_then_answer
        self.current = self.claimed()
        result = self.rt.executor.process(self.current)
        self.assertFalse(result.succeeded)
        self.assertEqual(result.error["code"], "STATUS_CONFLICT")
        self.assertEqual(self.rt.store.get_job(self.current.id).status, JobStatus.CANCELLED)
        self.assertEqual(self.rt.repo.list_contributions(self.session.id), [])
        self.assertEqual(self.rt.store.list_jobs(job_type=JobType.RENDER), [])


class TestContinuation(ExecutorTestCase):

    FIRST = "# Draft\n\nThe ledger keeps every posting in one"
    SECOND = " append-only table, balanced per member."

    def truncated(self, content):
        return ModelResponse(content=content, input_tokens=40, output_tokens=10,
                             finish_reason="length", processing_time_ms=5)

    def plan(self):
        return self.rt.store.create_job(
            JobType.PLAN, self.session.id, "thesis", 1,
            PlanPayload(project_id=self.project.id, session_id=self.session.id,
                        stage_slug="thesis", iteration_number=1))

    def claim(self, job_id):
        self.assertTrue(self.rt.store.set_status(job_id, JobStatus.PROCESSING, JobStatus.PENDING))
        return self.rt.store.get_job(job_id)

    def test_truncated_response_queues_continuation(self):
        self.adapter.default = self.truncated(self.FIRST)
        plan = self.plan()
        job, result = self.run_job(parent_job_id=plan.id)
        self.assertTrue(result.succeeded)
        self.assertIsNone(result.render_job_id)
        nxt = self.rt.store.get_job(result.continuation_job_id)
        self.assertEqual(nxt.job_type, JobType.EXECUTE)
        self.assertEqual(nxt.status, JobStatus.PENDING)
        self.assertEqual(nxt.parent_job_id, plan.id)
        self.assertEqual(nxt.payload["target_contribution_id"], result.contribution.id)
        self.assertEqual(nxt.payload["continuation_count"], 1)
        self.assertEqual(nxt.payload["document_key"], "business_case")
        self.assertEqual(self.rt.store.get_job(job.id).status, JobStatus.COMPLETED)
        self.assertEqual(self.rt.store.list_jobs(job_type=JobType.RENDER), [])
        events = [e["event_type"] for e in self.rt.store.get_ledger(job_id=job.id)]
        self.assertIn("continuation_queued", events)

    def test_continuation_extends_the_contribution(self):
        self.adapter.default = self.truncated(self.FIRST)
        plan = self.plan()
        _, first = self.run_job(parent_job_id=plan.id)

        self.adapter.default = self.SECOND
        nxt = self.claim(first.continuation_job_id)
        result = self.rt.executor.process(nxt)
        self.assertTrue(result.succeeded)
        self.assertIsNone(result.continuation_job_id)

        prompt_text, _ = self.adapter.calls[-1]
        self.assertIn("## Partial Response", prompt_text)
        self.assertIn(self.FIRST, prompt_text)

        latest = self.rt.repo.list_contributions(self.session.id, latest_only=True)
        self.assertEqual([c.id for c in latest], [result.contribution.id])
        c = latest[0]
        self.assertEqual(self.rt.storage.download_text(c.full_path), self.FIRST + self.SECOND)
        self.assertEqual(c.original_model_contribution_id, first.contribution.id)
        self.assertEqual(c.target_contribution_id, first.contribution.id)
        self.assertEqual(c.tokens_used_input, 40 + len(prompt_text) // 4)
        self.assertFalse(self.rt.repo.get_contribution(first.contribution.id).is_latest_edit)

        render = self.rt.store.get_job(result.render_job_id)
        self.assertEqual(render.parent_job_id, nxt.id)
        self.assertEqual(render.payload["contribution_id"], c.id)

    def test_prior_chunk_not_repeated_as_context(self):
        self.adapter.default = self.truncated(self.FIRST)
        _, first = self.run_job()
        nxt = self.claim(first.continuation_job_id)
        payload = nxt.typed_payload()
        docs = self.rt.executor.gather_context(nxt, payload, self.project)
        self.assertNotIn(first.contribution.id, [d.id for d in docs])

    def test_complete_response_does_not_continue(self):
        _, result = self.run_job()
        self.assertIsNone(result.continuation_job_id)
        self.assertIsNotNone(result.render_job_id)

    def test_stops_at_max_continuations(self):
        self.rt.executor.max_continuations = 2
        _, seed = self.run_job()
        job = self.claimed(target_contribution_id=seed.contribution.id, continuation_count=2)
        self.adapter.default = self.truncated(self.SECOND)
        with self.assertLogs("dialectic.executor", "WARNING") as logs:
            result = self.rt.executor.process(job)
        self.assertTrue(result.succeeded)
        self.assertIsNone(result.continuation_job_id)
        self.assertIsNotNone(result.render_job_id)
        self.assertIn("after 2 continuations", "\n".join(logs.output))

    def test_disabled_by_config(self):
        self.rt.executor.continue_until_complete = False
        self.adapter.default = self.truncated(self.FIRST)
        _, result = self.run_job()
        self.assertTrue(result.succeeded)
        self.assertIsNone(result.continuation_job_id)
        self.assertIsNotNone(result.render_job_id)

    def test_no_continuation_under_cancelled_parent(self):
        plan = self.plan()
        self.rt.store.cancel_job(plan.id)
        self.adapter.default = self.truncated(self.FIRST)
        job = self.claimed(parent_job_id=plan.id)
        result = self.rt.executor.process(job)
        self.assertIsNone(result.continuation_job_id)

    def test_missing_target_fails_job(self):
        job = self.claimed(target_contribution_id="gone", continuation_count=1)
        result = self.rt.executor.process(job)
        self.assertFalse(result.succeeded)
        self.assertEqual(result.error["code"], "CONTRIBUTION_NOT_FOUND")
        self.assertEqual(self.adapter.calls, [])


if __name__ == "__main__":
    unittest.main()
