import asyncio
import tempfile
import unittest
from pathlib import Path

from codex_relay.domain.contracts import RunResult
from codex_relay.domain.sessions import Channel
from codex_relay.persistence.cron_store import ScheduledJobStore
from codex_relay.persistence.database import Database
from codex_relay.persistence.interaction_log import InteractionLog
from codex_relay.persistence.session_store import SessionRegistry
from codex_relay.services.commands import HELP_TEXT, CommandRouter, is_command, parse_args
from codex_relay.services.prompt_mode import PLAN_MODE_HEADER
from codex_relay.services.prompt_runner import PromptRunner
from codex_relay.services.run_locks import SessionLocks


class _FakeRunner:
    def __init__(self):
        self.requests = []
        self.gate = None
        self.output = "agent says hi"
        self.error = None
        self.exit_code = 0

    async def invoke(self, request):
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        return RunResult(
            output=self.output,
            error=self.error,
            exit_code=self.exit_code,
            duration_ms=4,
            continuation_token=None,
        )


class TestParsing(unittest.TestCase):
    def test_is_command(self):
        self.assertTrue(is_command("/help"))
        self.assertTrue(is_command("  :where"))
        self.assertFalse(is_command("hello /help"))
        self.assertFalse(is_command(""))

    def test_parse_args_splits_flags_and_quotes(self):
        positional, flags = parse_args('add --session A --cron "*/5 * * * *" --prompt "status report"')
        self.assertEqual(positional, ["add"])
        self.assertEqual(flags, {"session": "A", "cron": "*/5 * * * *", "prompt": "status report"})


class TestCommandRouter(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = Database(Path(self.tmp.name) / "relay.db")
        self.registry = SessionRegistry(self.db)
        self.registry.init()
        self.runner = _FakeRunner()
        self.locks = SessionLocks()
        self.interactions = InteractionLog(self.db)
        self.prompt_runner = PromptRunner(self.registry, self.runner, self.locks, interactions=self.interactions)
        self.cron_store = ScheduledJobStore(self.db)
        self.router = CommandRouter(
            self.registry,
            self.prompt_runner,
            self.cron_store,
            self.interactions,
            default_tz="Asia/Seoul",
            max_output_chars=200,
        )

    async def asyncTearDown(self):
        self.db.close()
        self.tmp.cleanup()

    async def _say(self, text: str, chat_id: str = "c1", channel: Channel = Channel.BOT) -> str:
        reply = await self.router.handle(chat_id, channel, text)
        return reply.text

    async def test_help_and_unknown(self):
        self.assertEqual(await self._say("/help"), HELP_TEXT)
        self.assertEqual(await self._say("/start"), HELP_TEXT)
        self.assertTrue((await self._say("/frobnicate")).startswith("Unknown command: /frobnicate"))

    async def test_bot_username_suffix_is_ignored(self):
        self.assertEqual(await self._say("/help@relay_bot"), HELP_TEXT)

    async def test_new_and_switch_sessions(self):
        self.assertIn("Session Slot: A", await self._say("/where"))
        self.assertEqual(await self._say("/new"), "Switched to session slot B")
        self.assertEqual(await self._say("/session a"), "Switched to session slot A")
        listing = await self._say("/session")
        self.assertIn("* A |", listing)
        self.assertIn("  B |", listing)

    async def test_unknown_session_target_shows_usage(self):
        text = await self._say("/session nope")
        self.assertTrue(text.startswith("Session not found: nope"))
        self.assertIn("Usage: /session", text)

    async def test_reset_recreates_current_slot(self):
        before = self.router.current_session("c1", Channel.BOT)
        self.assertEqual(await self._say("/reset"), "Started a fresh session in slot A")
        after = self.router.current_session("c1", Channel.BOT)
        self.assertEqual(after.slot, "A")
        self.assertNotEqual(after.id, before.id)

    async def test_reset_refused_while_running(self):
        self.runner.gate = asyncio.Event()
        pending = asyncio.create_task(self.router.handle("c1", Channel.BOT, "long task"))
        await asyncio.sleep(0.01)

        text = await self._say("/reset")
        busy_prompt = await self._say("another prompt")

        self.runner.gate.set()
        await pending
        self.assertIn("is busy. Try again shortly.", text)
        self.assertIn("is busy. Try again shortly.", busy_prompt)

    async def test_new_refuses_to_recycle_a_running_session(self):
        running = self.registry.create_and_activate("c1", Channel.WEB)
        for _ in range(25):
            self.registry.create_and_activate("c1", Channel.BOT)
        self.assertEqual(running.slot, "A")

        self.runner.gate = asyncio.Event()
        pending = asyncio.create_task(self.router.handle("c1", Channel.WEB, "long task"))
        await asyncio.sleep(0.01)
        refused = await self.router.handle("c1", Channel.BOT, "/new")

        self.runner.gate.set()
        finished = await pending
        self.assertTrue(refused.failed)
        self.assertIn("is busy. Try again shortly.", refused.text)
        self.assertFalse(finished.failed)
        self.assertEqual(finished.text, "agent says hi")
        self.assertEqual([r.input for r in self.registry.list_history(running.id)], ["long task"])
        self.assertEqual(await self._say("/new"), "Switched to session slot A")

    async def test_session_move_refuses_to_evict_a_running_session(self):
        foreign = self.registry.create_and_activate("c2")
        self.runner.gate = asyncio.Event()
        pending = asyncio.create_task(self.router.handle("c1", Channel.WEB, "long task"))
        await asyncio.sleep(0.01)

        text = await self._say(f"/session {foreign.id}")

        self.runner.gate.set()
        await pending
        self.assertIn("is busy. Try again shortly.", text)
        self.assertEqual(self.registry.get_session(foreign.id).chat_id, "c2")

    async def test_prompt_whose_session_vanished_mid_run_is_reported(self):
        self.runner.gate = asyncio.Event()
        pending = asyncio.create_task(self.router.handle("c1", Channel.BOT, "long task"))
        await asyncio.sleep(0.01)
        self.registry.recreate_at_slot("c1", "A", Channel.BOT)

        self.runner.gate.set()
        reply = await pending

        self.assertTrue(reply.failed)
        self.assertTrue(reply.text.startswith("Session not found"))

    async def test_failed_flag_marks_usage_errors_only(self):
        self.assertFalse((await self.router.handle("c1", Channel.BOT, "/help")).failed)
        self.assertTrue((await self.router.handle("c1", Channel.BOT, "/frobnicate")).failed)
        self.assertTrue((await self.router.handle("c1", Channel.BOT, "/session nope")).failed)

    async def test_colon_prefix_works_like_slash(self):
        self.assertIn("Session Slot: A", await self._say(":where", channel=Channel.TERMINAL))

    async def test_plan_and_reasoning_toggle_preferences(self):
        self.assertEqual(await self._say("/plan on"), "Plan mode: ON")
        self.assertEqual(await self._say("/plan"), "Plan mode: ON")
        self.assertEqual(await self._say("/reasoning high"), "Reasoning effort: high")
        bad = await self._say("/reasoning ludicrous")
        self.assertIn("Invalid reasoning effort", bad)
        self.assertIn("Usage: /reasoning", bad)

        await self._say("do the thing")
        request = self.runner.requests[0]
        self.assertTrue(request.prompt.startswith(PLAN_MODE_HEADER[0]))
        self.assertEqual(request.reasoning_effort, "high")

    async def test_prompt_reply_body_and_error(self):
        self.runner.error = "warning text"
        self.runner.exit_code = 1
        text = await self._say("run it")
        self.assertEqual(text, "agent says hi\n\nERR:\nwarning text")

    async def test_long_output_is_truncated(self):
        self.runner.output = "x" * 500
        text = await self._say("run it")
        self.assertTrue(text.startswith("x" * 200))
        self.assertTrue(text.endswith("[truncated 300 chars]"))

    async def test_log_on_adds_headers(self):
        self.assertEqual(await self._say("/log on"), "Interaction log: ON")
        self.runner.exit_code = 7
        text = await self._say("hello")

        self.assertTrue(text.startswith("Req#: 1\nSession Slot: A\nSession Name: "))
        self.assertIn("Exit: 7", text)
        self.assertEqual(await self._say("/log off"), "Interaction log: OFF")
        self.assertEqual(await self._say("hello"), "agent says hi")

    async def test_history_lists_runs(self):
        self.assertEqual(await self._say("/history"), "No history yet.")
        await self._say("first prompt")
        history = await self._say("/history 5")
        self.assertIn("first prompt", history)
        self.assertIn("exit=0", history)
        self.assertIn("Invalid history size", await self._say("/history many"))

    async def test_slot_bind_and_show(self):
        bound = await self._say("/slot bind C tok-123")
        self.assertTrue(bound.startswith("Bound C -> tok-123"))
        self.assertIn("Continuation: tok-123", await self._say("/slot show c"))
        self.assertIn("C | session=", await self._say("/slot list"))
        self.assertEqual(await self._say("/slot show Q"), "No session in slot Q")

    async def test_cron_lifecycle(self):
        created = await self._say('/cron add --session A --cron "*/5 * * * *" --prompt "status report"')
        self.assertTrue(created.startswith("Created cj_"))
        job_id = created.split()[1]

        job = self.cron_store.get(job_id)
        self.assertEqual(job.timezone, "Asia/Seoul")
        self.assertEqual(job.chat_id, "c1")
        self.assertIn(job_id, await self._say("/cron list"))

        self.assertEqual(await self._say(f"/cron remove {job_id}", chat_id="c2"), "Access denied for this job.")
        self.assertEqual(await self._say(f"/cron disable {job_id}"), f"Disabled {job_id}")
        self.assertFalse(self.cron_store.get(job_id).enabled)
        self.assertEqual(await self._say(f"/cron enable {job_id}"), f"Enabled {job_id}")
        self.assertEqual(await self._say(f"/cron remove {job_id}"), f"Removed {job_id}")
        self.assertEqual(await self._say("/cron list"), "No cron jobs.")

    async def test_cron_once_and_validation(self):
        created = await self._say('/cron once --session B --at "2099-01-01T09:00:00+09:00" --prompt "one shot"')
        self.assertTrue(created.startswith("Created one-shot cj_"))
        job = self.cron_store.list("c1")[0]
        self.assertTrue(job.run_once)
        self.assertEqual(job.cron, "0 9 1 1 *")

        past = await self._say('/cron once --session B --at "2001-01-01T09:00:00+09:00" --prompt "late"')
        self.assertIn("future", past)

        missing = await self._say('/cron add --session A --cron "* * * * *"')
        self.assertIn("Missing --session, --cron or --prompt.", missing)
        self.assertIn("Usage:", missing)

        self.assertIn("Not found: cj_nope", await self._say("/cron remove cj_nope"))


if __name__ == "__main__":
    unittest.main()
