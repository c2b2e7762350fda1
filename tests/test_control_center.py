import tempfile
import time
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from codex_relay.app_container import build_services
from codex_relay.config import Config
from codex_relay.control_center.app import create_app
from codex_relay.domain.contracts import RunResult
from codex_relay.persistence.database import ConnectionRegistry
from codex_relay.services.notify import NullNotifier


class _FakeRunner:
    def __init__(self):
        self.prompts = []

    async def invoke(self, request):
        self.prompts.append(request.prompt)
        return RunResult(
            output=f"echo:{request.prompt}",
            error=None,
            exit_code=0,
            duration_ms=2,
            continuation_token=None,
        )


class TestControlCenter(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        config = Config(
            telegram_token="",
            allowed_chat_ids=frozenset(),
            config_dir=root,
            env_path=root / ".env",
            db_path=root / "relay.db",
            codex_sessions_dir=root / "sessions",
        )
        self.connections = ConnectionRegistry()
        self.runner = _FakeRunner()
        self.services = build_services(config, self.connections, runner=self.runner, notifier=NullNotifier())
        self.client = TestClient(create_app(self.services))
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        self.connections.close_all()
        self.tmp.cleanup()

    def _headers(self, chat_id: str = "c1"):
        return {"X-Chat-Id": chat_id}

    def _wait_terminal(self, job_id: str, chat_id: str = "c1") -> dict:
        for _ in range(200):
            body = self.client.get(f"/api/jobs/{job_id}", headers=self._headers(chat_id)).json()
            if body["terminal"]:
                return body
            time.sleep(0.02)
        self.fail(f"job {job_id} never finished")

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")
        self.assertEqual(resp.json()["busy_sessions"], 0)

    def test_chat_id_header_is_required(self):
        self.assertEqual(self.client.get("/api/session").status_code, 400)
        self.assertEqual(self.client.post("/api/command", json={"text": "/help"}).status_code, 400)

    def test_session_and_commands(self):
        session = self.client.get("/api/session", headers=self._headers()).json()
        self.assertEqual(session["session"]["slot"], "A")
        self.assertFalse(session["plan_mode"])
        self.assertEqual(session["reasoning_effort"], "none")

        resp = self.client.post("/api/command", json={"text": "/new"}, headers=self._headers())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["reply"], "Switched to session slot B")
        self.assertEqual(resp.json()["session"]["slot"], "B")
        self.assertFalse(resp.json()["failed"])

        rejected = self.client.post("/api/command", json={"text": "/session nope"}, headers=self._headers())
        self.assertTrue(rejected.json()["failed"])
        self.assertTrue(rejected.json()["reply"].startswith("Session not found: nope"))

    def test_command_endpoint_runs_plain_prompts(self):
        resp = self.client.post("/api/command", json={"text": "hello there"}, headers=self._headers())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["reply"], "echo:hello there")

    def test_job_submit_poll_and_history(self):
        resp = self.client.post("/api/jobs", json={"prompt": "write tests"}, headers=self._headers())
        self.assertEqual(resp.status_code, 202)
        job = resp.json()
        self.assertEqual(job["status"], "pending")
        self.assertEqual(job["session_slot"], "A")

        done = self._wait_terminal(job["id"])
        self.assertEqual(done["status"], "completed")
        self.assertEqual(done["output"], "echo:write tests")

        history = self.client.get("/api/history", headers=self._headers()).json()
        self.assertEqual([h["input"] for h in history], ["write tests"])
        by_slot = self.client.get("/api/history?target=a", headers=self._headers()).json()
        self.assertEqual(len(by_slot), 1)

    def test_jobs_are_private_to_their_chat(self):
        job = self.client.post("/api/jobs", json={"prompt": "secret"}, headers=self._headers("c1")).json()
        self.assertEqual(self.client.get(f"/api/jobs/{job['id']}", headers=self._headers("c2")).status_code, 404)
        self.assertEqual(self.client.get("/api/jobs/job_missing", headers=self._headers()).status_code, 404)
        self._wait_terminal(job["id"])

    def test_job_submit_rejects_empty_and_commands(self):
        self.assertEqual(self.client.post("/api/jobs", json={"prompt": "  "}, headers=self._headers()).status_code, 400)
        self.assertEqual(
            self.client.post("/api/jobs", json={"prompt": "/new"}, headers=self._headers()).status_code,
            400,
        )

    def test_stream_emits_state_then_end(self):
        job = self.client.post("/api/jobs", json={"prompt": "stream me"}, headers=self._headers()).json()
        self._wait_terminal(job["id"])

        resp = self.client.get(f"/api/jobs/{job['id']}/stream", headers=self._headers())

        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.headers["content-type"].startswith("text/event-stream"))
        self.assertIn("event: job", resp.text)
        self.assertIn('"status": "completed"', resp.text)
        self.assertTrue(resp.text.rstrip().endswith(f'data: {{"id": "{job["id"]}"}}'))
        self.assertEqual(self.services.events.subscriber_count(job["id"]), 0)

    def test_stream_for_foreign_job_is_404(self):
        job = self.client.post("/api/jobs", json={"prompt": "mine"}, headers=self._headers("c1")).json()
        resp = self.client.get(f"/api/jobs/{job['id']}/stream", headers=self._headers("c2"))
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(self.services.events.subscriber_count(job["id"]), 0)
        self._wait_terminal(job["id"])

    def test_history_target_errors(self):
        self.client.get("/api/session", headers=self._headers("c2"))
        foreign = self.services.registry.list_sessions("c2")[0]
        self.assertEqual(self.client.get("/api/history?target=zzz", headers=self._headers()).status_code, 404)
        self.assertEqual(
            self.client.get(f"/api/history?target={foreign.id}", headers=self._headers()).status_code,
            404,
        )


if __name__ == "__main__":
    unittest.main()
