import tempfile
import unittest
from pathlib import Path

from sabi.agent.tool_call import TOOL_ARGUMENTS, parse_tool_call
from sabi.prompts import DEFAULT_SYSTEM_PROMPT, PromptManager, system_context


class PromptManagerTests(unittest.TestCase):
    def setUp(self):
        self.manager = PromptManager()

    def test_empty_source_uses_default(self):
        self.assertEqual(self.manager.resolve_prompt_source(""), DEFAULT_SYSTEM_PROMPT)
        self.assertEqual(self.manager.resolve_prompt_source("   "), DEFAULT_SYSTEM_PROMPT)

    def test_inline_text_is_used_verbatim(self):
        self.assertEqual(self.manager.resolve_prompt_source("Be terse."), "Be terse.")

    def test_file_path_is_read(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            prompt_file = Path(tmp_dir) / "prompt.txt"
            prompt_file.write_text("from file", encoding="utf-8")

            self.assertEqual(self.manager.resolve_prompt_source(str(prompt_file)), "from file")

    def test_build_appends_system_context(self):
        prompt = self.manager.build_system_prompt("Be terse.")

        self.assertTrue(prompt.startswith("Be terse.\n\nSYSTEM CONTEXT:"))
        self.assertIn("- Working directory:", prompt)

    def test_default_prompt_describes_tool_format(self):
        self.assertIn('{"tool": "run_cmd", "command": "<shell command>"}', DEFAULT_SYSTEM_PROMPT)

    def test_default_prompt_documents_every_tool(self):
        calls = [parse_tool_call(line) for line in DEFAULT_SYSTEM_PROMPT.splitlines() if '{"tool"' in line]

        self.assertTrue(all(call is not None and call.is_supported for call in calls))
        self.assertEqual({call.tool for call in calls}, set(TOOL_ARGUMENTS))

    def test_system_context_lists_host_facts(self):
        context = system_context()
        for label in ("Current time", "User", "Shell", "Working directory", "OS"):
            self.assertIn(f"- {label}:", context)


if __name__ == "__main__":
    unittest.main()
