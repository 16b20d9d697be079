import json
import unittest

from fakes import RecordingHandler, json_response, mock_client
from zetra_ai.domain.models.copilot_state import (
    ActionItem, ActionPriority, AiMeta, AskContext, TaskBridgeReport
)
from zetra_ai.domain.parsing.assistant_text import pack_assistant_text, task_footer
from zetra_ai.domain.tool.task_bridge import RpcTaskSink, TaskBridge


class RecordingSink:
    def __init__(self, fail_titles=()):
        self.calls = []
        self.fail_titles = set(fail_titles)

    async def create_task(self, params):
        self.calls.append(params)
        if params["p_title"] in self.fail_titles:
            raise RuntimeError("permission denied")


ACTIONS = [
    ActionItem(title="Count stock", steps=["Shelf A", "Shelf B"], priority=ActionPriority.HIGH, eta="today"),
    ActionItem(title="Call supplier"),
]


class TestTaskBridge(unittest.IsolatedAsyncioTestCase):
    async def test_disabled_is_noop(self) -> None:
        sink = RecordingSink()
        bridge = TaskBridge(sink, enabled=False)

        report = await bridge.save(ACTIONS, AskContext(org_id="org-1"))

        self.assertIsNone(report)
        self.assertEqual(sink.calls, [])

    async def test_requires_org_and_actions(self) -> None:
        sink = RecordingSink()
        bridge = TaskBridge(sink, enabled=True)

        self.assertIsNone(await bridge.save(ACTIONS, AskContext()))
        self.assertIsNone(await bridge.save([], AskContext(org_id="org-1")))
        self.assertEqual(sink.calls, [])

    async def test_one_call_per_action(self) -> None:
        sink = RecordingSink()
        bridge = TaskBridge(sink, enabled=True)

        report = await bridge.save(ACTIONS, AskContext(org_id="org-1", store_id="store-9"))

        self.assertEqual(report.created, 2)
        self.assertEqual(report.failed, 0)
        self.assertEqual(sink.calls[0], {
            "p_org_id": "org-1",
            "p_store_id": "store-9",
            "p_title": "Count stock",
            "p_steps": ["Shelf A", "Shelf B"],
            "p_priority": "HIGH",
            "p_eta": "today",
        })
        self.assertEqual(sink.calls[1]["p_steps"], [])
        self.assertIsNone(sink.calls[1]["p_priority"])

    async def test_failures_are_counted_not_raised(self) -> None:
        bridge = TaskBridge(RecordingSink(fail_titles={"Call supplier"}), enabled=True)

        report = await bridge.save(ACTIONS, AskContext(org_id="org-1"))

        self.assertEqual(report.created, 1)
        self.assertEqual(report.failed, 1)
        self.assertEqual(report.errors, ["permission denied"])


class TestRpcTaskSink(unittest.IsolatedAsyncioTestCase):
    async def test_posts_to_rpc_route(self) -> None:
        handler = RecordingHandler(json_response(200, {}))
        sink = RpcTaskSink(mock_client(handler), "https://db.test/rest/v1/rpc/", api_key="anon")

        await sink.create_task({"p_title": "x"})

        request = handler.requests[0]
        self.assertEqual(str(request.url), "https://db.test/rest/v1/rpc/create_task_from_ai")
        self.assertEqual(request.headers["apikey"], "anon")
        self.assertEqual(json.loads(request.content), {"p_title": "x"})

    async def test_http_error_message_is_reported(self) -> None:
        handler = RecordingHandler(json_response(403, {"message": "not an owner"}))
        bridge = TaskBridge(RpcTaskSink(mock_client(handler), "https://db.test/rpc"), enabled=True)

        report = await bridge.save(ACTIONS[:1], AskContext(org_id="org-1"))

        self.assertEqual(report.failed, 1)
        self.assertEqual(report.errors, ["not an owner"])


class TestAssistantText(unittest.TestCase):
    def test_reply_actions_next_move_and_footer(self) -> None:
        meta = AiMeta(text="Here is the plan.", actions=ACTIONS, next_move="Start counting")

        text = pack_assistant_text(meta, task_footer(TaskBridgeReport(created=2)))

        self.assertTrue(text.startswith("Here is the plan."))
        self.assertIn("### ✅ ACTIONS", text)
        self.assertIn("- **Count stock** (priority: HIGH • eta: today)", text)
        self.assertIn("  - Shelf A", text)
        self.assertIn("- **Call supplier**", text)
        self.assertIn("🎯 NEXT MOVE\nStart counting", text)
        self.assertTrue(text.endswith("✅ Saved to Tasks: 2"))

    def test_next_move_not_repeated(self) -> None:
        meta = AiMeta(text="Plan...\n🎯 NEXT MOVE: call now", next_move="call now")

        self.assertEqual(pack_assistant_text(meta), "Plan...\n🎯 NEXT MOVE: call now")

    def test_footer_variants(self) -> None:
        self.assertEqual(task_footer(None), "")
        self.assertEqual(task_footer(TaskBridgeReport(created=1, failed=2)), "✅ Saved to Tasks: 1 • Failed: 2")
        self.assertIn("could not be saved", task_footer(TaskBridgeReport(failed=1)))


if __name__ == "__main__":
    unittest.main()
