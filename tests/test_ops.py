import json
import os
import tempfile
import unittest
from pathlib import Path

from codex_relay.domain.errors import ValidationError
from codex_relay.persistence.database import Database
from codex_relay.persistence.session_store import SessionRegistry
from codex_relay.services.crash_log import CrashLog, build_review_prompt, review_pending_crashes
from codex_relay.services.process_lock import ProcessLock, ProcessLockError
from codex_relay.services.session_files import CodexSessionFiles
from codex_relay.services.slot_bindings import (
    export_bindings,
    import_bindings,
    read_bindings_file,
    write_bindings_file,
)
from codex_relay.util import redact


class TestSlotBindings(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = Database(Path(self.tmp.name) / "relay.db")
        self.registry = SessionRegistry(self.db)
        self.registry.init()

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def test_export_only_includes_bound_slots(self):
        self.registry.create_and_activate("c1")
        bound = self.registry.bind_continuation("c1", "C", "tok-c")

        payload = export_bindings(self.registry, "c1")

        self.assertEqual(
            payload,
            {"chat_id": "c1", "bindings": [{"slot": "C", "continuation_token": "tok-c", "session_id": bound.id}]},
        )

    def test_file_round_trip_into_another_chat(self):
        self.registry.bind_continuation("c1", "A", "tok-a")
        self.registry.bind_continuation("c1", "B", "tok-b")
        path = Path(self.tmp.name) / "export" / "slots.json"

        self.assertEqual(write_bindings_file(self.registry, "c1", path), 2)
        report = read_bindings_file(self.registry, path, chat_id="c2")

        self.assertEqual(report.chat_id, "c2")
        self.assertEqual(report.applied, 2)
        self.assertEqual(
            [(b.slot, b.continuation_token) for b in self.registry.list_slot_bindings("c2")],
            [("A", "tok-a"), ("B", "tok-b")],
        )

    def test_import_skips_invalid_rows(self):
        payload = {
            "chat_id": "c3",
            "bindings": [
                {"slot": "a", "continuation_token": "tok-1"},
                {"slot": "AA", "continuation_token": "tok-2"},
                {"slot": "D", "continuation_token": "  "},
            ],
        }
        report = import_bindings(self.registry, payload)

        self.assertEqual(report.applied, 1)
        self.assertEqual(report.skipped, ["invalid slot: AA", "empty continuation token: D"])
        self.assertEqual([b.slot for b in self.registry.list_slot_bindings("c3")], ["A"])

    def test_import_requires_chat_and_valid_json(self):
        with self.assertRaises(ValidationError):
            import_bindings(self.registry, {"bindings": []})
        bad = Path(self.tmp.name) / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        with self.assertRaises(ValidationError):
            read_bindings_file(self.registry, bad, chat_id="c1")
        bad.write_text("[]", encoding="utf-8")
        with self.assertRaises(ValidationError):
            read_bindings_file(self.registry, bad, chat_id="c1")


class TestProcessLock(unittest.TestCase):
    def test_second_holder_is_refused_until_release(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "locks" / "cron-worker.lock"
            first = ProcessLock(path, "cron-worker")
            first.acquire()
            self.assertEqual(first.read()["pid"], os.getpid())

            with self.assertRaises(ProcessLockError):
                ProcessLock(path, "cron-worker").acquire()

            first.release()
            self.assertFalse(path.exists())
            with ProcessLock(path, "cron-worker"):
                self.assertTrue(path.exists())
            self.assertFalse(path.exists())

    def test_stale_lock_is_replaced(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "telegram.lock"
            path.write_text(json.dumps({"pid": 999999999, "label": "telegram"}), encoding="utf-8")

            lock = ProcessLock(path, "telegram")
            lock.acquire()

            self.assertEqual(lock.read()["pid"], os.getpid())
            lock.release()

    def test_unreadable_lock_is_replaced(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "telegram.lock"
            path.write_text("garbage", encoding="utf-8")
            with ProcessLock(path, "telegram") as lock:
                self.assertEqual(lock.read()["label"], "telegram")


class TestCrashLog(unittest.IsolatedAsyncioTestCase):
    async def test_pending_records_are_reviewed_once(self):
        with tempfile.TemporaryDirectory() as tmp:
            log = CrashLog(Path(tmp) / "crash_log.json")
            try:
                raise KeyError("missing-key")
            except KeyError as exc:
                record = log.append("telegram", exc)
            self.assertTrue(record.id.startswith("te_"))
            self.assertIn("KeyError", record.stack)

            prompts = []

            async def _review(prompt):
                prompts.append(prompt)

            self.assertEqual(await review_pending_crashes(log, _review), 1)
            self.assertEqual(await review_pending_crashes(log, _review), 0)

            self.assertEqual(len(prompts), 1)
            self.assertIn(record.id, prompts[0])
            self.assertIn("missing-key", prompts[0])
            self.assertEqual(log.unprocessed(), [])

    async def test_failed_review_leaves_records_pending(self):
        with tempfile.TemporaryDirectory() as tmp:
            log = CrashLog(Path(tmp) / "crash_log.json")
            log.append("telegram", RuntimeError("boom"))

            async def _review(prompt):
                raise RuntimeError("agent offline")

            with self.assertRaises(RuntimeError):
                await review_pending_crashes(log, _review)
            self.assertEqual(len(log.unprocessed()), 1)

    def test_corrupt_file_reads_as_empty(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "crash_log.json"
            path.write_text("{{{", encoding="utf-8")
            self.assertEqual(CrashLog(path).unprocessed(), [])
            self.assertTrue(build_review_prompt([]).startswith("The relay recorded"))


class TestCodexSessionFiles(unittest.TestCase):
    def test_delete_removes_matching_transcripts(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            day = root / "2026" / "03" / "01"
            day.mkdir(parents=True)
            (day / "rollout-2026-03-01-tok123.jsonl").write_text("{}", encoding="utf-8")
            (day / "rollout-2026-03-01-other.jsonl").write_text("{}", encoding="utf-8")
            files = CodexSessionFiles(root)

            self.assertEqual(len(files.find("tok123")), 1)
            self.assertEqual(files("tok123"), 1)
            self.assertEqual(files.find("tok123"), [])
            self.assertEqual(files.delete(""), 0)
            self.assertEqual(CodexSessionFiles(root / "missing").delete("tok123"), 0)


class TestRedact(unittest.TestCase):
    def test_masks_known_secret_shapes(self):
        text = redact("OPENAI_API_KEY=abc123 Authorization: Bearer xyz.789 bot 123456:ABCDEFGHIJKLMNOPQRSTUVWXYZabcdef")
        self.assertIn("OPENAI_API_KEY=REDACTED", text)
        self.assertIn("Bearer REDACTED", text)
        self.assertIn("TELEGRAM_TOKEN_REDACTED", text)
        self.assertNotIn("abc123", text)
        self.assertEqual(redact("session id: 0199aa"), "session id: 0199aa")
        self.assertEqual(redact(None), "")


if __name__ == "__main__":
    unittest.main()
