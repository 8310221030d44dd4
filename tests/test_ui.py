import io
import unittest

from rich.console import Console

from sabi.agent.safety import SafetyVerdict
from sabi.state_machine import AgentState, ControllerSnapshot
from sabi.ui import ChatUI


def snapshot(state=AgentState.INPUT, **fields):
    values = dict(pending_command=None, safety_verdict=None, execution_output="", error=None)
    values.update(fields)
    return ControllerSnapshot(state=state, **values)


class ChatUIRenderTests(unittest.TestCase):
    def setUp(self):
        self.output = io.StringIO()
        self.ui = ChatUI(console=Console(file=self.output, width=100, color_system=None))
        self.addCleanup(self.ui.stop_busy)

    def test_prompt_session_is_created_on_first_use(self):
        self.assertIsNone(self.ui._session)

    def test_output_panel_follows_execution(self):
        self.ui.render(snapshot(AgentState.EXECUTING, pending_command="echo hi"))
        self.ui.render(snapshot(AgentState.FINALIZING, execution_output="hi\n"))

        text = self.output.getvalue()
        self.assertIn("Output", text)
        self.assertIn("hi", text)

    def test_output_panel_shown_even_if_execution_was_never_rendered(self):
        self.ui.render(snapshot(AgentState.REVIEW_ACTION, pending_command="echo hi"))
        self.ui.render(snapshot(AgentState.FINALIZING, execution_output="hello there\n"))

        self.assertIn("hello there", self.output.getvalue())

    def test_output_panel_printed_once_per_execution(self):
        self.ui.render(snapshot(AgentState.FINALIZING, execution_output="only once\n"))
        self.ui.render(snapshot(AgentState.FINALIZING, execution_output="only once\n", spinner_frame=1))

        self.assertEqual(self.output.getvalue().count("only once"), 1)

    def test_repeated_error_is_shown_each_time_it_is_raised(self):
        self.ui.render(snapshot(AgentState.REVIEW_ACTION, error="Cannot run interactive command: vim", error_count=1))
        self.ui.render(snapshot(AgentState.REVIEW_ACTION, error="Cannot run interactive command: vim", error_count=2))

        self.assertEqual(self.output.getvalue().count("Cannot run interactive command: vim"), 2)

    def test_same_error_is_not_reprinted_on_unrelated_render(self):
        self.ui.render(snapshot(error="timeout", error_count=1))
        self.ui.render(snapshot(error="timeout", error_count=1, terminal_size=(80, 24)))

        self.assertEqual(self.output.getvalue().count("timeout"), 1)


class PendingCommandPanelTests(unittest.TestCase):
    def setUp(self):
        self.output = io.StringIO()
        self.ui = ChatUI(console=Console(file=self.output, width=100, color_system=None))

    def test_shell_command_panel(self):
        self.ui.render_pending_command(
            snapshot(
                AgentState.REVIEW_ACTION,
                pending_command="ls -la",
                safety_verdict=SafetyVerdict(),
                pending_tool="run_cmd",
            )
        )

        self.assertIn("Proposed command", self.output.getvalue())

    def test_other_tools_are_called_actions(self):
        self.ui.render_pending_command(
            snapshot(
                AgentState.REVIEW_ACTION,
                pending_command="read_file: notes.txt",
                safety_verdict=SafetyVerdict(),
                pending_tool="read_file",
            )
        )

        text = self.output.getvalue()
        self.assertIn("Proposed action", text)
        self.assertIn("read_file: notes.txt", text)

    def test_destructive_action_carries_a_warning(self):
        self.ui.render_pending_command(
            snapshot(
                AgentState.REVIEW_ACTION,
                pending_command="write_file: a.txt (5 bytes)",
                safety_verdict=SafetyVerdict(dangerous=True),
                pending_tool="write_file",
            )
        )

        text = self.output.getvalue()
        self.assertIn("DANGEROUS ACTION", text)
        self.assertIn("Warning: this action is potentially destructive.", text)


if __name__ == "__main__":
    unittest.main()
