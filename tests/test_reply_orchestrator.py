import asyncio
import base64
import json
import random
import unittest

import httpx
from langchain_core.messages import HumanMessage

from fakes import (
    ManualClock, PartialRecorder, RecordingHandler, RecordingSleep,
    json_response, mock_client, sse_frame, sse_response, structured_reply
)
from zetra_ai.domain.context.memory.conversation_memory_store import (
    ConversationMemoryStore, persisted_key
)
from zetra_ai.domain.errors import (
    DispatchError, EmptyMessageError, MessageTooLongError, ReplyCancelledError
)
from zetra_ai.domain.models.copilot_state import (
    AiMode, AskContext, AttachedImage, ChatRetryPayload, ConversationState, ReplyLang, utcnow
)
from zetra_ai.domain.orchestration.core.reply_orchestrator import ReplyOrchestrator
from zetra_ai.domain.orchestration.recovery.recovery_bridge import BridgeState, RecoveryBridge
from zetra_ai.domain.streaming.pacing import TypingPacer
from zetra_ai.domain.tool.task_bridge import TaskBridge
from zetra_ai.infrastructure.config.settings import CopilotSettings
from zetra_ai.infrastructure.storage.durable_store import InMemoryDurableStore
from zetra_ai.infrastructure.transport.dispatcher import TransportDispatcher

ORG = AskContext(org_id="org-1", org_name="Duka Letu")

REPLY_META = {
    "lang": "sw",
    "nextMove": "Hesabu stock leo",
    "actions": [{"title": "Hesabu stock", "steps": ["Rafu A"], "priority": "HIGH", "eta": "leo"}],
    "memory": {"topic": "Stock", "objective": "Punguza upotevu", "strategyLevel": "EXECUTION"},
}


class RecordingSink:
    def __init__(self):
        self.calls = []

    async def create_task(self, params):
        self.calls.append(params)


def make_orchestrator(handler, streaming: bool = True, task_sink=None, durable=None):
    client = mock_client(handler)
    settings = CopilotSettings(
        worker_url="https://worker.test",
        max_retries=0,
        streaming_enabled=streaming,
    )
    clock = ManualClock()
    sleep = RecordingSleep(clock)
    dispatcher = TransportDispatcher(client, settings, sleep=sleep)
    pacer = TypingPacer(sleep=sleep, rng=random.Random(3), clock=clock)
    memory = ConversationMemoryStore(durable or InMemoryDurableStore())
    return ReplyOrchestrator(
        settings=settings,
        dispatcher=dispatcher,
        memory_store=memory,
        pacer=pacer,
        task_bridge=TaskBridge(task_sink, enabled=task_sink is not None),
    )


def stream_of(raw: str, size: int = 7) -> httpx.Response:
    frames = [sse_frame("delta", raw[i:i + size]) for i in range(0, len(raw), size)]
    return sse_response(*frames, sse_frame("done"))


def assert_growing(test: unittest.TestCase, updates):
    for before, after in zip(updates, updates[1:]):
        test.assertTrue(after.startswith(before), (before, after))


class TestReplyOrchestrator(unittest.IsolatedAsyncioTestCase):
    async def test_streamed_reply_end_to_end(self) -> None:
        handler = RecordingHandler(stream_of(structured_reply("Sawa mkuu, tuanze na stock.", REPLY_META)))
        orchestrator = make_orchestrator(handler)
        recorder = PartialRecorder()

        reply = await orchestrator.ask("Nisaidie na stock", AiMode.AUTO, [], ORG, recorder)
        await orchestrator.memory_store.flush()

        self.assertTrue(reply.streamed)
        self.assertFalse(reply.fell_back)
        self.assertEqual(reply.meta.text, "Sawa mkuu, tuanze na stock.")
        self.assertEqual(reply.meta.actions[0].title, "Hesabu stock")
        self.assertTrue(reply.display_text.startswith("Sawa mkuu, tuanze na stock."))
        self.assertIn("🎯 NEXT MOVE\nHesabu stock leo", reply.display_text)
        self.assertEqual(recorder.updates[-1], reply.display_text)
        assert_growing(self, recorder.updates)

        memory = orchestrator.memory_store.get("org-1")
        self.assertEqual(memory.topic, "Stock")
        self.assertEqual(memory.lang, ReplyLang.SW)
        self.assertIn(persisted_key("org-1"), orchestrator.memory_store.durable.data)

        body = json.loads(handler.requests[0].content)
        self.assertTrue(body["message"].endswith("USER MESSAGE:\nNisaidie na stock"))
        self.assertIn("- orgName: Duka Letu", body["message"])

    async def test_one_shot_reply_is_paced(self) -> None:
        handler = RecordingHandler(json_response(200, {"reply": structured_reply("Here is the plan.", {"lang": "en"})}))
        orchestrator = make_orchestrator(handler, streaming=False)
        recorder = PartialRecorder()

        reply = await orchestrator.ask("What should I do about slow stock?", on_partial=recorder)

        self.assertFalse(reply.streamed)
        self.assertEqual(reply.display_text, "Here is the plan.")
        self.assertGreater(len(recorder.updates), 1)
        self.assertEqual(recorder.updates[-1], "Here is the plan.")
        assert_growing(self, recorder.updates)
        self.assertEqual(handler.requests[0].url.path, "/v1/chat")

    async def test_memory_is_packed_into_next_request(self) -> None:
        durable = InMemoryDurableStore()
        await durable.set_json(
            persisted_key("org-1"),
            ConversationState(topic="Pricing", objective="Raise margin", updated_at=utcnow()).to_record(),
        )
        handler = RecordingHandler(json_response(200, {"reply": "plain answer"}))
        orchestrator = make_orchestrator(handler, streaming=False, durable=durable)

        reply = await orchestrator.ask("And for next month?", context=ORG)

        body = json.loads(handler.requests[0].content)
        self.assertIn("- topic: Pricing", body["message"])
        self.assertEqual(reply.meta.text, "plain answer")
        self.assertEqual(reply.meta.actions, [])

    async def test_validation(self) -> None:
        orchestrator = make_orchestrator(RecordingHandler(json_response(200, {"reply": "x"})))

        with self.assertRaises(EmptyMessageError):
            await orchestrator.ask("   ")
        with self.assertRaises(MessageTooLongError):
            await orchestrator.ask("x" * 12_001)

    async def test_terminal_failure_raises_and_leaves_memory(self) -> None:
        handler = RecordingHandler(json_response(400, {"error": "bad request"}))
        orchestrator = make_orchestrator(handler, streaming=False)

        with self.assertRaises(DispatchError) as ctx:
            await orchestrator.ask("Hello there", context=ORG)

        self.assertEqual(ctx.exception.failure.status, 400)
        self.assertFalse(ctx.exception.retryable)
        self.assertIsNone(orchestrator.memory_store.get("org-1"))

    async def test_empty_reply_is_terminal(self) -> None:
        orchestrator = make_orchestrator(RecordingHandler(json_response(200, {"reply": ""})), streaming=False)

        with self.assertRaises(DispatchError) as ctx:
            await orchestrator.ask("Hello there")

        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(ctx.exception.failure.message, "AI returned an empty reply")

    async def test_stop_during_stream_cancels_without_memory(self) -> None:
        handler = RecordingHandler(stream_of(structured_reply("A long streamed answer.", REPLY_META), size=3))
        orchestrator = make_orchestrator(handler)

        def on_partial(text: str) -> None:
            orchestrator.stop()

        with self.assertRaises(ReplyCancelledError):
            await orchestrator.ask("Tell me", context=ORG, on_partial=on_partial)

        self.assertIsNone(orchestrator.memory_store.get("org-1"))

    async def test_task_autosave_adds_footer(self) -> None:
        sink = RecordingSink()
        handler = RecordingHandler(json_response(200, {"reply": structured_reply("Plan ready.", REPLY_META)}))
        orchestrator = make_orchestrator(handler, streaming=False, task_sink=sink)

        reply = await orchestrator.ask("Make a stock plan", context=ORG)

        self.assertEqual(reply.task_report.created, 1)
        self.assertEqual(sink.calls[0]["p_title"], "Hesabu stock")
        self.assertTrue(reply.display_text.endswith("✅ Saved to Tasks: 1"))

    async def test_vision_request_carries_images(self) -> None:
        handler = RecordingHandler(json_response(200, {"reply": "A receipt for 3 items."}))
        orchestrator = make_orchestrator(handler)
        image = AttachedImage(id="img-1", source_ref="file://r.jpg", embedded_data="data:image/jpeg;base64,AAA")

        reply = await orchestrator.ask_vision("What is this?", [image], history=[HumanMessage(content="hi")])

        body = json.loads(handler.requests[0].content)
        self.assertEqual(handler.requests[0].url.path, "/v1/vision")
        self.assertEqual(body["images"], [{"id": "img-1", "data": "data:image/jpeg;base64,AAA"}])
        self.assertEqual(reply.meta.text, "A receipt for 3 items.")

    async def test_generate_image(self) -> None:
        handler = RecordingHandler(json_response(200, {"images": [{"url": "https://img.test/a.png"}, {"b64_json": "QUJD"}]}))
        orchestrator = make_orchestrator(handler)

        refs = await orchestrator.generate_image("Logo for Duka Letu")

        self.assertEqual(refs, ["https://img.test/a.png", "data:image/png;base64,QUJD"])
        self.assertEqual(json.loads(handler.requests[0].content), {"prompt": "Logo for Duka Letu"})

    async def test_generate_image_without_images_fails(self) -> None:
        orchestrator = make_orchestrator(RecordingHandler(json_response(200, {})))

        with self.assertRaises(DispatchError):
            await orchestrator.generate_image("Logo")

    async def test_transcribe(self) -> None:
        handler = RecordingHandler(json_response(200, {"text": " Habari za leo "}))
        orchestrator = make_orchestrator(handler)

        text = await orchestrator.transcribe(b"RIFF", "audio/wav")

        self.assertEqual(text, "Habari za leo")
        body = json.loads(handler.requests[0].content)
        self.assertEqual(body, {"audio": base64.b64encode(b"RIFF").decode("ascii"), "mimeType": "audio/wav"})

    async def test_clear_memory(self) -> None:
        handler = RecordingHandler(json_response(200, {"reply": structured_reply("Ok.", REPLY_META)}))
        orchestrator = make_orchestrator(handler, streaming=False)
        await orchestrator.ask("Remember this", context=ORG)
        await orchestrator.memory_store.flush()
        self.assertIn(persisted_key("org-1"), orchestrator.memory_store.durable.data)

        await orchestrator.clear_memory(ORG)
        await orchestrator.memory_store.flush()

        self.assertIsNone(orchestrator.memory_store.get("org-1"))
        self.assertNotIn(persisted_key("org-1"), orchestrator.memory_store.durable.data)


async def late_failure(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/stream":
        return httpx.Response(404)
    await asyncio.sleep(0.05)
    return httpx.Response(400, json={"error": "bad"})


class TestStopWhileRequestInFlight(unittest.IsolatedAsyncioTestCase):
    async def assert_stop_cancels(self, streaming: bool) -> None:
        orchestrator = make_orchestrator(late_failure, streaming=streaming)
        bridge = RecoveryBridge(orchestrator, context=ORG)
        payload = ChatRetryPayload(text="first")

        task = asyncio.create_task(bridge.submit(payload))
        await asyncio.sleep(0.01)
        orchestrator.stop()

        with self.assertRaises(ReplyCancelledError):
            await task

        self.assertEqual(bridge.state, BridgeState.IDLE)
        self.assertIs(bridge.payload, payload)
        self.assertIsNone(bridge.retry_label)
        self.assertIsNone(orchestrator.memory_store.get("org-1"))

    async def test_one_shot_request(self) -> None:
        await self.assert_stop_cancels(streaming=False)

    async def test_streaming_fallback_request(self) -> None:
        await self.assert_stop_cancels(streaming=True)

    async def test_new_ask_supersedes_failing_one(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            if "first" in json.loads(request.content)["message"]:
                await asyncio.sleep(0.05)
                return httpx.Response(400, json={"error": "bad"})
            return httpx.Response(200, json={"reply": "second answer"})

        orchestrator = make_orchestrator(handler, streaming=False)

        first = asyncio.create_task(orchestrator.ask("first question"))
        await asyncio.sleep(0.01)
        reply = await orchestrator.ask("second question")

        self.assertEqual(reply.meta.text, "second answer")
        with self.assertRaises(ReplyCancelledError):
            await first


if __name__ == "__main__":
    unittest.main()
