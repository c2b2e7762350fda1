import tempfile
import unittest
from pathlib import Path

from codex_relay.config import (
    DEFAULT_DB_NAME,
    apply_env_defaults,
    get_env_value,
    load_config,
    load_env_file,
    parse_allowlist,
)
from codex_relay.providers.codex_cli import DEFAULT_ARGS_TEMPLATE


class TestEnvFile(unittest.TestCase):
    def test_load_env_file_skips_comments_and_strips_quotes(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / ".env"
            path.write_text('# comment\nA=1\nB="two"\n\nnot a pair\nC = \'three\'\n', encoding="utf-8")
            self.assertEqual(load_env_file(path), {"A": "1", "B": "two", "C": "three"})
            self.assertEqual(load_env_file(Path(tmp) / "missing.env"), {})

    def test_process_env_wins_over_file(self):
        self.assertEqual(get_env_value("K", {"K": "file"}, {"K": "env"}), "env")
        self.assertEqual(get_env_value("K", {"K": "file"}, {}), "file")
        self.assertIsNone(get_env_value("K", {}, {}))

    def test_apply_env_defaults_never_overwrites(self):
        target = {"KEEP": "mine", "BLANK": "  "}
        applied = apply_env_defaults({"KEEP": "theirs", "BLANK": "filled", "NEW": "x", "": "ignored"}, target)
        self.assertEqual(applied, 2)
        self.assertEqual(target, {"KEEP": "mine", "BLANK": "filled", "NEW": "x"})

    def test_parse_allowlist(self):
        self.assertEqual(parse_allowlist(" 1, 2 ,,3 "), frozenset({"1", "2", "3"}))
        self.assertEqual(parse_allowlist(None), frozenset())


class TestLoadConfig(unittest.TestCase):
    def test_defaults(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / ".env").write_text("TELEGRAM_BOT_TOKEN=\n", encoding="utf-8")
            config = load_config(Path(tmp), environ={})

        self.assertEqual(config.db_path, Path(tmp) / DEFAULT_DB_NAME)
        self.assertEqual(config.codex_command, "auto")
        self.assertEqual(config.codex_args_template, DEFAULT_ARGS_TEMPLATE)
        self.assertEqual(config.codex_timeout_sec, 120)
        self.assertEqual(config.cron_poll_sec, 10)
        self.assertTrue(config.cron_notify_telegram)
        self.assertEqual(config.cron_default_tz, "UTC")
        self.assertTrue(config.is_allowed("anyone"))

    def test_env_file_and_overrides(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / ".env").write_text(
                "\n".join(
                    [
                        "TELEGRAM_BOT_TOKEN=123456:ABCDEF",
                        "ALLOWED_CHAT_IDS=100,200",
                        "CODEX_TIMEOUT_SEC=45",
                        "CRON_POLL_SEC=not-a-number",
                        "CRON_NOTIFY_VERBOSE=yes",
                        f"DB_FILE={tmp}/custom.db",
                        "crash_review_slot=ignored-lowercase-key",
                        "CRASH_REVIEW_SLOT=z",
                    ]
                ),
                encoding="utf-8",
            )
            config = load_config(Path(tmp), environ={"CODEX_TIMEOUT_SEC": "90", "CHAT_JOB_CONCURRENCY": "0"})

        self.assertEqual(config.telegram_token, "123456:ABCDEF")
        self.assertEqual(config.allowed_chat_ids, frozenset({"100", "200"}))
        self.assertTrue(config.is_allowed("100"))
        self.assertFalse(config.is_allowed("300"))
        self.assertEqual(config.codex_timeout_sec, 90)
        self.assertEqual(config.cron_poll_sec, 10)
        self.assertTrue(config.cron_notify_verbose)
        self.assertEqual(config.chat_job_concurrency, 1)
        self.assertEqual(config.db_path, Path(tmp) / "custom.db")
        self.assertEqual(config.crash_review_slot, "Z")

    def test_redacted_hides_token(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = load_config(Path(tmp), environ={"TELEGRAM_BOT_TOKEN": "123456:SECRET", "ALLOWED_CHAT_IDS": "2,1"})
        shown = config.redacted()
        self.assertEqual(shown["telegram_token"], "1234...REDACTED")
        self.assertEqual(shown["allowed_chat_ids"], "1,2")
        self.assertNotIn("SECRET", " ".join(shown.values()))


if __name__ == "__main__":
    unittest.main()
