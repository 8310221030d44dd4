import os
import shutil
import tempfile
import time
import unittest
from pathlib import Path

from sabi.agent.executor import NO_OUTPUT_MARKER, PYTHON_PROGRAM, CommandExecutor, CommandResult, search_command
from sabi.agent.tool_call import ToolCall
from sabi.exceptions import CommandCancelled, CommandLaunchFailed


@unittest.skipIf(os.name == "nt", "requires a POSIX shell")
class CommandExecutorRunTests(unittest.TestCase):
    def setUp(self):
        self.executor = CommandExecutor(kill_grace_period=0.5, drain_timeout=1.0)

    def test_captures_stdout_on_success(self):
        result = self.executor.run("echo hello")

        self.assertTrue(result.success)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.stdout, "hello\n")
        self.assertFalse(result.truncated)
        self.assertEqual(result.combined_output(), "hello\n")

    def test_failure_keeps_exit_code_and_both_streams(self):
        result = self.executor.run("echo out; echo err 1>&2; exit 3")

        self.assertFalse(result.success)
        self.assertEqual(result.exit_code, 3)
        self.assertEqual(result.stdout, "out\n")
        self.assertEqual(result.stderr, "err\n")
        self.assertEqual(result.combined_output(), "out\nerr")

    def test_silent_success_gets_marker(self):
        result = self.executor.run("true")

        self.assertEqual(result.stdout, NO_OUTPUT_MARKER)
        self.assertTrue(result.success)

    def test_silent_failure_has_no_marker(self):
        result = self.executor.run("false")

        self.assertEqual(result.stdout, "")
        self.assertEqual(result.exit_code, 1)

    def test_unknown_program_reports_shell_error(self):
        result = self.executor.run("definitely-not-a-program-sabi")

        self.assertFalse(result.success)
        self.assertEqual(result.exit_code, 127)
        self.assertTrue(result.stderr)

    def test_stdin_is_not_inherited(self):
        result = self.executor.run("cat")

        self.assertTrue(result.success)
        self.assertEqual(result.stdout, NO_OUTPUT_MARKER)

    def test_runs_in_configured_directory(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            executor = CommandExecutor(cwd=Path(tmp_dir))
            result = executor.run("pwd")

        self.assertEqual(os.path.realpath(result.stdout.strip()), os.path.realpath(tmp_dir))

    def test_large_output_is_truncated(self):
        executor = CommandExecutor(max_output_bytes=1000, max_output_lines=10_000)

        result = executor.run("seq 1 100000")

        self.assertTrue(result.truncated)
        self.assertLessEqual(len(result.stdout.encode("utf-8")), 1000)
        self.assertTrue(result.stdout.startswith("1\n2\n3\n"))
        self.assertTrue(result.stdout.endswith("\n"))

    def test_line_cap_applies(self):
        executor = CommandExecutor(max_output_lines=5)

        result = executor.run("seq 1 20")

        self.assertTrue(result.truncated)
        self.assertEqual(result.stdout, "1\n2\n3\n4\n5\n")

    def test_bad_working_directory_fails_to_launch(self):
        executor = CommandExecutor(cwd=Path("/nonexistent/sabi/dir"))

        with self.assertRaises(CommandLaunchFailed) as ctx:
            executor.start("echo hi")
        self.assertTrue(str(ctx.exception).startswith("Failed to execute command:"))

    def test_cancel_terminates_process_group(self):
        running = self.executor.start("sleep 30")
        started = time.monotonic()

        running.cancel()
        with self.assertRaises(CommandCancelled):
            running.wait()

        self.assertTrue(running.cancelled)
        self.assertLess(time.monotonic() - started, 10)
        self.assertIsNotNone(running.process.poll())

    def test_cancel_escalates_when_sigterm_is_ignored(self):
        running = self.executor.start("trap '' TERM; sleep 30")
        time.sleep(0.2)
        started = time.monotonic()

        running.cancel()
        with self.assertRaises(CommandCancelled):
            running.wait()

        self.assertLess(time.monotonic() - started, 10)

    def test_cancel_after_exit_is_harmless(self):
        running = self.executor.start("true")
        running.process.wait()

        running.cancel()
        with self.assertRaises(CommandCancelled):
            running.wait()

    def test_cancel_reaches_background_children_after_shell_exit(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            marker = Path(tmp_dir) / "survived"
            running = self.executor.start(f"(sleep 1; touch {marker}) & echo started")
            running.process.wait()

            running.cancel()
            with self.assertRaises(CommandCancelled):
                running.wait()
            time.sleep(1.5)

            self.assertFalse(marker.exists())


class ToolLaunchTests(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp_dir.cleanup)
        self.root = Path(self.tmp_dir.name)
        self.executor = CommandExecutor(cwd=self.root, max_output_bytes=64, max_output_lines=100)

    def test_write_then_read_relative_to_working_directory(self):
        written = self.executor.start_tool(ToolCall.write_file("notes.txt", "héllo\n")).wait()

        self.assertTrue(written.success)
        self.assertEqual(written.stdout, "Successfully wrote 7 bytes to notes.txt")
        self.assertEqual((self.root / "notes.txt").read_text(encoding="utf-8"), "héllo\n")

        read = self.executor.start_tool(ToolCall.read_file("notes.txt")).wait()
        self.assertEqual(read.stdout, "héllo\n")
        self.assertFalse(read.truncated)

    def test_read_missing_file_reports_failure(self):
        result = self.executor.start_tool(ToolCall.read_file("missing.txt")).wait()

        self.assertFalse(result.success)
        self.assertEqual(result.exit_code, 1)
        self.assertTrue(result.stderr.startswith("Failed to read file:"))

    def test_read_large_file_is_truncated(self):
        (self.root / "big.txt").write_text("line\n" * 100, encoding="utf-8")

        result = self.executor.read_file("big.txt")

        self.assertTrue(result.truncated)
        self.assertLessEqual(len(result.stdout), 64)

    def test_write_into_missing_directory_fails(self):
        result = self.executor.write_file("no/such/dir/a.txt", "x")

        self.assertFalse(result.success)
        self.assertTrue(result.stderr.startswith("Failed to write file:"))

    def test_cancelled_file_task_does_not_write(self):
        task = self.executor.start_tool(ToolCall.write_file("later.txt", "x"))

        task.cancel()
        with self.assertRaises(CommandCancelled):
            task.wait()
        self.assertFalse((self.root / "later.txt").exists())

    @unittest.skipIf(os.name == "nt", "requires a POSIX shell")
    def test_search_lists_matching_names(self):
        (self.root / "a.py").write_text("", encoding="utf-8")
        (self.root / "sub").mkdir()
        (self.root / "sub" / "b.py").write_text("", encoding="utf-8")
        (self.root / "c.txt").write_text("", encoding="utf-8")

        result = self.executor.start_tool(ToolCall.search("*.py", ".")).wait()

        names = sorted(os.path.basename(line) for line in result.stdout.splitlines())
        self.assertEqual(names, ["a.py", "b.py"])

    def test_search_arguments_are_quoted(self):
        line = search_command("*.py; rm -rf x", "-odd dir")

        self.assertEqual(line, "find './-odd dir' -name '*.py; rm -rf x' 2>/dev/null | head -100")
        self.assertTrue(search_command("*.md").startswith("find . -name"))

    @unittest.skipIf(shutil.which(PYTHON_PROGRAM) is None, "needs a python interpreter on PATH")
    def test_run_python_uses_interpreter(self):
        result = self.executor.start_tool(ToolCall.run_python("print(2 ** 10)")).wait()

        self.assertTrue(result.success)
        self.assertEqual(result.stdout.strip(), "1024")

    def test_unknown_tool_fails_to_launch(self):
        with self.assertRaises(CommandLaunchFailed):
            self.executor.start_tool(ToolCall("browse", "example.com"))


class TruncateOutputTests(unittest.TestCase):
    def test_short_output_is_untouched(self):
        executor = CommandExecutor(max_output_bytes=100, max_output_lines=10)
        self.assertEqual(executor.truncate_output(b"a\nb\n"), ("a\nb\n", False))

    def test_byte_cap_cuts_at_last_newline(self):
        executor = CommandExecutor(max_output_bytes=10, max_output_lines=100)
        text, truncated = executor.truncate_output(b"1234\n5678\n90ab\n")
        self.assertEqual(text, "1234\n5678\n")
        self.assertTrue(truncated)

    def test_single_long_line_cut_at_cap(self):
        executor = CommandExecutor(max_output_bytes=8, max_output_lines=100)
        text, truncated = executor.truncate_output(b"x" * 50)
        self.assertEqual(text, "x" * 8)
        self.assertTrue(truncated)

    def test_cut_never_splits_a_utf8_character(self):
        executor = CommandExecutor(max_output_bytes=5, max_output_lines=100)
        # "ééé" is six bytes, the cap lands inside the third character
        text, truncated = executor.truncate_output("ééé".encode("utf-8"))
        self.assertEqual(text, "éé")
        self.assertTrue(truncated)

    def test_line_cap_after_byte_cap(self):
        executor = CommandExecutor(max_output_bytes=12, max_output_lines=2)
        text, truncated = executor.truncate_output(b"a\nb\nc\nd\ne\nf\ng\n")
        self.assertEqual(text, "a\nb\n")
        self.assertTrue(truncated)

    def test_exactly_at_line_cap_is_not_truncated(self):
        executor = CommandExecutor(max_output_bytes=100, max_output_lines=2)
        self.assertEqual(executor.truncate_output(b"a\nb\n"), ("a\nb\n", False))
        self.assertEqual(executor.truncate_output(b"a\nb"), ("a\nb", False))


class CommandResultTests(unittest.TestCase):
    def test_failure_with_only_stderr(self):
        result = CommandResult(stdout="", stderr="boom\n", exit_code=2, success=False)
        self.assertEqual(result.combined_output(), "boom")


if __name__ == "__main__":
    unittest.main()
