"""
Dialectic Core — Document Renderer Tests
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from support import DEFAULT_REPLY, make_project, make_runtime, start_session

from scheduler.types import JobStatus, JobType, RenderPayload
from scheduler.worker import JobWorker


class TestRenderer(unittest.TestCase):

    def setUp(self):
        self.rt = make_runtime()
        self.project = make_project(self.rt)
        self.session = start_session(self.rt, self.project, models=("model-alpha",))

    def tearDown(self):
        self.rt.close()

    def render_job(self, contribution_id, document_key="business_case"):
        payload = RenderPayload(project_id=self.project.id, session_id=self.session.id,
                                stage_slug="thesis", iteration_number=1,
                                contribution_id=contribution_id, document_key=document_key)
        job = self.rt.store.create_job(JobType.RENDER, self.session.id, "thesis", 1, payload)
        self.rt.store.set_status(job.id, JobStatus.PROCESSING, JobStatus.PENDING)
        return self.rt.store.get_job(job.id)

    def contribution(self):
        self.rt.executor.render_documents = False
        self.rt.stages.start_stage(self.session.id)
        JobWorker(self.rt).run_until_idle()
        return self.rt.repo.list_contributions(self.session.id)[0]

    def test_renders_with_header(self):
        c = self.contribution()
        path = self.rt.renderer.process(self.render_job(c.id))
        self.assertEqual(
            path,
            f"projects/{self.project.id}/sessions/{self.session.id}/iteration_1"
            f"/thesis/documents/business_case_model_alpha.md",
        )
        body = self.rt.storage.download_text(path)
        self.assertTrue(body.startswith("# Business Case\n\n- Stage: Thesis\n- Iteration: 1\n"))
        self.assertIn("- Model: Model Alpha", body)
        self.assertTrue(body.endswith(DEFAULT_REPLY.strip() + "\n"))

    def test_missing_contribution_fails_job(self):
        job = self.render_job("no-such-contribution")
        self.assertIsNone(self.rt.renderer.process(job))
        stored = self.rt.store.get_job(job.id)
        self.assertEqual(stored.status, JobStatus.FAILED)
        self.assertEqual(stored.error_details["code"], "NOT_FOUND")


if __name__ == "__main__":
    unittest.main()
