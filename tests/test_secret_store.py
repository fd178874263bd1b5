#!/usr/bin/env python3
"""Tests for cache dir resolution, FileSecretStore and atomic writes.

Run: python3 -m pytest tests/test_secret_store.py -v
"""
import json
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parent))
import _bootstrap  # noqa: F401, E402

from _secret_utils import (  # noqa: E402
    FileSecretStore,
    PatternsUnavailableError,
    get_cache_dir,
    log_secret_guard,
    truncate_command,
    truncate_path,
    write_json_atomic,
)


class TestGetCacheDir(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="secret_cache_dir_")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_env_override_used_verbatim_and_created(self):
        target = os.path.join(self.tmpdir, "nested", "cache")
        with patch.dict(os.environ, {"CLAUDE_SECURITY_CACHE_DIR": target}):
            result = get_cache_dir()
        self.assertEqual(result, Path(target))
        self.assertTrue(result.is_dir())

    def test_idempotent(self):
        target = os.path.join(self.tmpdir, "cache")
        with patch.dict(os.environ, {"CLAUDE_SECURITY_CACHE_DIR": target}):
            self.assertEqual(get_cache_dir(), get_cache_dir())

    def test_fallback_is_per_user_under_tmp(self):
        env = dict(os.environ)
        env.pop("CLAUDE_SECURITY_CACHE_DIR", None)
        with patch.dict(os.environ, env, clear=True), patch(
            "tempfile.gettempdir", return_value=self.tmpdir
        ):
            result = get_cache_dir()
        self.assertEqual(result.parent, Path(self.tmpdir))
        self.assertTrue(result.name.startswith("claude-security-"))
        if hasattr(os, "getuid"):
            self.assertEqual(result.name, f"claude-security-{os.getuid()}")
        self.assertTrue(result.is_dir())


class TestFileSecretStorePatterns(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="secret_store_")
        self.store = FileSecretStore(Path(self.tmpdir))

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_write_then_load(self):
        self.store.write_patterns([".env", "*.pem"], [".env.example"])
        self.assertEqual(self.store.load_patterns(), ([".env", "*.pem"], [".env.example"]))

    def test_files_are_flat_json_arrays(self):
        self.store.write_patterns([".env"], [])
        deny = json.loads((Path(self.tmpdir) / "deny-patterns.json").read_text())
        allow = json.loads((Path(self.tmpdir) / "allow-patterns.json").read_text())
        self.assertEqual(deny, [".env"])
        self.assertEqual(allow, [])

    def test_missing_files_raise(self):
        with self.assertRaises(PatternsUnavailableError):
            self.store.load_patterns()

    def test_missing_allow_file_raises(self):
        (Path(self.tmpdir) / "deny-patterns.json").write_text('[".env"]')
        with self.assertRaises(PatternsUnavailableError):
            self.store.load_patterns()

    def test_corrupt_json_raises(self):
        (Path(self.tmpdir) / "deny-patterns.json").write_text('[".env", ')
        (Path(self.tmpdir) / "allow-patterns.json").write_text("[]")
        with self.assertRaises(PatternsUnavailableError):
            self.store.load_patterns()

    def test_wrong_shape_raises(self):
        (Path(self.tmpdir) / "deny-patterns.json").write_text('{"deny": [".env"]}')
        (Path(self.tmpdir) / "allow-patterns.json").write_text("[]")
        with self.assertRaises(PatternsUnavailableError):
            self.store.load_patterns()

    def test_non_string_entries_raise(self):
        (Path(self.tmpdir) / "deny-patterns.json").write_text('[".env", 42]')
        (Path(self.tmpdir) / "allow-patterns.json").write_text("[]")
        with self.assertRaises(PatternsUnavailableError):
            self.store.load_patterns()


class TestFileSecretStoreExemptions(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="secret_store_")
        self.cache = Path(self.tmpdir) / "cache"
        self.store = FileSecretStore(self.cache)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_empty_when_file_absent(self):
        self.assertEqual(self.store.load_exemptions(), set())

    def test_append_creates_directory_and_file(self):
        self.assertTrue(self.store.append_exemption(".env"))
        self.assertEqual((self.cache / "secret-overrides").read_text(), ".env\n")

    def test_append_dedups(self):
        self.assertTrue(self.store.append_exemption(".env"))
        self.assertFalse(self.store.append_exemption(".env"))
        self.assertTrue(self.store.append_exemption("/project/.env"))
        self.assertEqual(self.store.load_exemptions(), {".env", "/project/.env"})
        self.assertEqual((self.cache / "secret-overrides").read_text().count(".env\n"), 2)

    def test_blank_lines_ignored(self):
        self.cache.mkdir(parents=True)
        (self.cache / "secret-overrides").write_text("\n.env\n\n*.pem\n")
        self.assertEqual(self.store.load_exemptions(), {".env", "*.pem"})


class TestWriteJsonAtomic(unittest.TestCase):
    def setUp(self):
        self.tmpdir = Path(tempfile.mkdtemp(prefix="secret_atomic_"))

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_replaces_existing_file(self):
        target = self.tmpdir / "deny-patterns.json"
        target.write_text('["old"]')
        write_json_atomic(target, ["new"])
        self.assertEqual(json.loads(target.read_text()), ["new"])

    def test_no_temp_files_left_behind(self):
        write_json_atomic(self.tmpdir / "a.json", [1, 2])
        self.assertEqual(os.listdir(self.tmpdir), ["a.json"])

    def test_failed_rename_cleans_up_and_keeps_original(self):
        target = self.tmpdir / "a.json"
        target.write_text('["old"]')
        with patch("os.replace", side_effect=OSError("rename failed")):
            with self.assertRaises(OSError):
                write_json_atomic(target, ["new"])
        self.assertEqual(json.loads(target.read_text()), ["old"])
        self.assertEqual(os.listdir(self.tmpdir), ["a.json"])


class TestLogging(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="secret_log_")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_log_line_format(self):
        with patch.dict(os.environ, {"CLAUDE_SECURITY_CACHE_DIR": self.tmpdir}):
            log_secret_guard("BLOCK", "Read: /p/.env")
        content = (Path(self.tmpdir) / "secret-guard.log").read_text()
        self.assertIn("[BLOCK] Read: /p/.env", content)

    def test_dry_run_marker(self):
        env = {"CLAUDE_SECURITY_CACHE_DIR": self.tmpdir, "CLAUDE_HOOK_DRY_RUN": "1"}
        with patch.dict(os.environ, env):
            log_secret_guard("BLOCK", "x")
        content = (Path(self.tmpdir) / "secret-guard.log").read_text()
        self.assertIn("[BLOCK] [DRY-RUN] x", content)

    def test_rotation(self):
        log_file = Path(self.tmpdir) / "secret-guard.log"
        log_file.write_text("x" * 1_000_001)
        with patch.dict(os.environ, {"CLAUDE_SECURITY_CACHE_DIR": self.tmpdir}):
            log_secret_guard("INFO", "after rotation")
        self.assertTrue((Path(self.tmpdir) / "secret-guard.log.1").exists())
        self.assertIn("after rotation", log_file.read_text())
        self.assertLess(log_file.stat().st_size, 1000)

    def test_logging_failure_is_silent(self):
        blocker = Path(self.tmpdir) / "not-a-dir"
        blocker.write_text("")
        with patch.dict(os.environ, {"CLAUDE_SECURITY_CACHE_DIR": str(blocker / "cache")}):
            log_secret_guard("INFO", "dropped")  # must not raise


class TestTruncation(unittest.TestCase):
    def test_truncate_path_keeps_end(self):
        path = "/very/long/" + "x" * 100 + "/.env"
        result = truncate_path(path)
        self.assertEqual(len(result), 60)
        self.assertTrue(result.endswith("/.env"))

    def test_truncate_command_keeps_start(self):
        command = "cat " + "x" * 200
        result = truncate_command(command)
        self.assertEqual(len(result), 80)
        self.assertTrue(result.startswith("cat "))

    def test_short_values_untouched(self):
        self.assertEqual(truncate_path(".env"), ".env")
        self.assertEqual(truncate_command("ls"), "ls")


if __name__ == "__main__":
    unittest.main()
