"""
Dialectic Core — API Server + Worker Backend Tests

Action payload validation, the inline/thread/arq worker backends, the
arq drain task, and the HTTP surface through FastAPI's TestClient over
an in-memory runtime.
"""

import asyncio
import os
import sys
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest import mock

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from support import make_project, make_runtime, start_session

from api.models import (
    CreateProjectRequest,
    DispatchRequest,
    DispatchResult,
    GenerateContributionsRequest,
    SaveContributionEditRequest,
    StartSessionRequest,
    UpdateProjectConfigurationRequest,
)
from api.worker import ArqBackend, InlineBackend, ThreadPoolBackend, create_backend
from scheduler.types import JobStatus


# ═══════════════════════════════════════════════════════════════════
# Payload Models
# ═══════════════════════════════════════════════════════════════════

class TestPayloadModels(unittest.TestCase):

    def test_dispatch_request(self):
        self.assertEqual(DispatchRequest("createProject", {}).validate(), [])
        self.assertEqual(len(DispatchRequest("", []).validate()), 2)

    def test_dispatch_result(self):
        self.assertEqual(DispatchResult(200, data=[1]).to_dict(), {"data": [1]})
        err = DispatchResult(404, error={"code": "NOT_FOUND", "message": "x"})
        self.assertFalse(err.ok)
        self.assertEqual(err.to_dict(), {"error": {"code": "NOT_FOUND", "message": "x"}})

    def test_create_project_keys(self):
        req = CreateProjectRequest.from_payload({
            "projectName": "P", "initialUserPrompt": "Q", "selectedDomainId": "dom-general",
            "selectedDomainOverlayId": "ov-1",
        })
        self.assertEqual(req.validate(), [])
        self.assertEqual(req.selected_domain_overlay_id, "ov-1")
        self.assertIsNone(req.process_template_id)

    def test_start_session_models(self):
        ok = StartSessionRequest.from_payload({"projectId": "p", "selectedModelIds": ["m"]})
        self.assertEqual(ok.validate(), [])
        for models in ([], [""], "model-alpha", None):
            with self.subTest(models=models):
                req = StartSessionRequest.from_payload({"projectId": "p", "selectedModelIds": models})
                self.assertEqual(len(req.validate()), 1)

    def test_generate_iteration_number(self):
        for value, errors in ((None, 0), (1, 0), (0, 1), ("2", 1)):
            with self.subTest(value=value):
                req = GenerateContributionsRequest.from_payload(
                    {"sessionId": "s", "iterationNumber": value})
                self.assertEqual(len(req.validate()), errors)

    def test_configuration_null_overlay_clears(self):
        req = UpdateProjectConfigurationRequest.from_payload(
            {"projectId": "p", "selectedDomainOverlayId": None})
        self.assertTrue(req.clear_overlay)
        req = UpdateProjectConfigurationRequest.from_payload({"projectId": "p"})
        self.assertFalse(req.clear_overlay)

    def test_edit_text_required(self):
        req = SaveContributionEditRequest.from_payload(
            {"originalContributionIdToEdit": "c", "editedContentText": 42})
        self.assertEqual(req.validate(), ["editedContentText must be a string"])


# ═══════════════════════════════════════════════════════════════════
# Worker Backends
# ═══════════════════════════════════════════════════════════════════

class BackendTestCase(unittest.TestCase):

    def setUp(self):
        self.rt = make_runtime()
        self.session = start_session(self.rt, make_project(self.rt))

    def tearDown(self):
        self.rt.close()

    def stage_status(self):
        return self.rt.repo.get_session(self.session.id).status


class TestBackends(BackendTestCase):

    def test_inline_drains_on_notify(self):
        backend = InlineBackend(self.rt)
        job_id = self.rt.stages.start_stage(self.session.id)
        backend.notify([job_id])
        self.assertEqual(self.stage_status(), "pending_antithesis")
        stats = backend.tracker.stats
        self.assertEqual(stats["notified"], 1)
        self.assertEqual(stats["drains"], 1)
        self.assertEqual(stats["jobs_handled"], 6)

    def test_thread_pool_drains(self):
        backend = ThreadPoolBackend(self.rt, max_workers=3)
        try:
            job_id = self.rt.stages.start_stage(self.session.id)
            backend.notify([job_id])
            backend.wait(timeout=30)
            # A drain that went idle while the root was waiting may leave
            # the resumable PLAN behind; one more notify picks it up.
            backend.notify([job_id])
            backend.wait(timeout=30)
        finally:
            backend.shutdown()
        self.assertEqual(self.rt.store.get_job(job_id).status, JobStatus.COMPLETED)
        self.assertEqual(backend.tracker.stats["jobs_handled"], 6)
        self.assertEqual(backend.tracker.stats["failures"], 0)

    def test_create_backend_modes(self):
        self.assertIsInstance(create_backend(self.rt, mode="inline"), InlineBackend)
        pool = create_backend(self.rt, mode="thread", max_workers=2)
        self.assertIsInstance(pool, ThreadPoolBackend)
        self.assertEqual(pool.max_workers, 2)
        pool.shutdown()
        arq_backend = create_backend(self.rt, mode="arq", redis_url="redis://cache:6379")
        self.assertIsInstance(arq_backend, ArqBackend)
        self.assertEqual(arq_backend.redis_url, "redis://cache:6379")

    def test_mode_from_environment(self):
        with mock.patch.dict(os.environ, {"DIALECTIC_WORKER_MODE": "INLINE"}):
            self.assertEqual(create_backend(self.rt).mode, "inline")


class TestArqTasks(BackendTestCase):

    def test_drain_jobs(self):
        from api.arq_worker import drain_jobs, reap_stuck_jobs

        job_id = self.rt.stages.start_stage(self.session.id)
        pool = ThreadPoolExecutor(max_workers=2)
        ctx = {"runtime": self.rt, "pool": pool, "job_id": "arq-1"}
        try:
            handled = asyncio.run(drain_jobs(ctx, job_ids=[job_id]))
            handled += asyncio.run(drain_jobs(ctx, job_ids=[job_id]))
            reaped = asyncio.run(reap_stuck_jobs(ctx))
        finally:
            pool.shutdown(wait=True)
        self.assertEqual(handled, 6)
        self.assertEqual(reaped, 0)
        self.assertEqual(self.stage_status(), "pending_antithesis")


# ═══════════════════════════════════════════════════════════════════
# HTTP Surface
# ═══════════════════════════════════════════════════════════════════

class TestServer(unittest.TestCase):

    def setUp(self):
        from fastapi.testclient import TestClient
        from api.server import create_app

        self.rt = make_runtime()
        self.client = TestClient(create_app(runtime=self.rt, backend=InlineBackend(self.rt)))

    def tearDown(self):
        self.rt.close()

    def post(self, action, payload=None, user="user-1"):
        headers = {"X-User-Id": user} if user else {}
        return self.client.post("/v1/dialectic", json={"action": action, "payload": payload or {}},
                                headers=headers)

    def test_health(self):
        r = self.client.get("/health")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["status"], "ok")

    def test_ready(self):
        r = self.client.get("/ready")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["checks"]["database"], "sqlite")
        self.assertEqual(r.json()["checks"]["process_templates"], 1)

    def test_not_ready_without_catalog(self):
        from fastapi.testclient import TestClient
        from api.server import create_app

        bare = make_runtime(seed=False)
        try:
            client = TestClient(create_app(runtime=bare, backend=InlineBackend(bare)))
            r = client.get("/ready")
        finally:
            bare.close()
        self.assertEqual(r.status_code, 503)
        self.assertEqual(r.json()["status"], "fail")

    def test_invalid_envelope(self):
        r = self.client.post("/v1/dialectic", json={"payload": {}}, headers={"X-User-Id": "u"})
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json()["error"]["code"], "INVALID_PAYLOAD")

    def test_unauthenticated(self):
        r = self.post("listProjects", user=None)
        self.assertEqual(r.status_code, 401)
        self.assertEqual(r.json()["error"]["code"], "UNAUTHENTICATED")

    def test_public_action(self):
        r = self.post("listAvailableDomainTags", user=None)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(len(r.json()["data"]), 3)

    def test_stage_run_over_http(self):
        project = self.post("createProject", {
            "projectName": "Ledger",
            "initialUserPrompt": "Design a shared ledger.",
            "selectedDomainId": "dom-general",
        }).json()["data"]
        session = self.post("startSession", {
            "projectId": project["id"], "selectedModelIds": ["model-alpha"],
        }).json()["data"]
        r = self.post("generateContributions", {"sessionId": session["id"]})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["data"]["status"], "pending_antithesis")

        details = self.post("getSessionDetails", {"sessionId": session["id"]}).json()["data"]
        self.assertEqual(len(details["contributions"]), 1)

        stats = self.client.get("/v1/stats").json()
        self.assertEqual(stats["worker"]["mode"], "inline")
        self.assertEqual(stats["worker"]["jobs_handled"], 4)
        self.assertEqual(stats["jobs"], {"completed": 3})

    def test_foreign_user_gets_404(self):
        project = self.post("createProject", {
            "projectName": "Ledger", "initialUserPrompt": "x", "selectedDomainId": "dom-general",
        }).json()["data"]
        r = self.post("getProjectDetails", {"projectId": project["id"]}, user="someone-else")
        self.assertEqual(r.status_code, 404)


if __name__ == "__main__":
    unittest.main()
