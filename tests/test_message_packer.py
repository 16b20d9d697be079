import unittest

from langchain_core.messages import AIMessage, HumanMessage

from fakes import WallClock
from zetra_ai.domain.context.language import (
    infer_last_user_lang, is_short_ambiguous, looks_swahili
)
from zetra_ai.domain.context.memory.conversation_memory_store import ConversationMemoryStore
from zetra_ai.domain.context.message_packer import MessagePacker
from zetra_ai.domain.models.copilot_state import (
    AiMode, AskContext, ConversationState, ReplyLang
)
from zetra_ai.domain.parsing.structured_output import ACTIONS_MARKER, REPLY_MARKER
from zetra_ai.infrastructure.storage.durable_store import InMemoryDurableStore


class TestLanguageHeuristics(unittest.TestCase):
    def test_looks_swahili(self) -> None:
        self.assertTrue(looks_swahili("Habari mkuu, nisaidie na biashara yangu"))
        self.assertFalse(looks_swahili("Please help me price my products"))
        self.assertFalse(looks_swahili("asante"))

    def test_short_ambiguous(self) -> None:
        self.assertTrue(is_short_ambiguous("Mkuu"))
        self.assertTrue(is_short_ambiguous(""))
        self.assertTrue(is_short_ambiguous("what about the weekly stock count"[:26]))
        self.assertFalse(is_short_ambiguous("How should I price the new product line this month?"))

    def test_last_user_turn_decides(self) -> None:
        history = [
            HumanMessage(content="Habari, nisaidie na mawazo ya biashara"),
            AIMessage(content="Sure, here are some ideas"),
            HumanMessage(content="ok"),
        ]
        self.assertEqual(infer_last_user_lang(history), ReplyLang.SW)
        self.assertIsNone(infer_last_user_lang([HumanMessage(content="hi")]))


class TestMessagePacker(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = WallClock()
        self.memory = ConversationMemoryStore(InMemoryDurableStore(), clock=self.clock)
        self.packer = MessagePacker(self.memory)

    def test_swahili_history_overrides_short_message(self) -> None:
        history = [HumanMessage(content="Habari, nisaidie na biashara yangu sana")]

        packed = self.packer.pack("Mkuu", AiMode.AUTO, history)

        self.assertEqual(packed.lang_override, ReplyLang.SW)
        self.assertIn("Respond fully in Kiswahili.", packed.text)

    def test_memory_lang_wins_over_history(self) -> None:
        self.memory.cache["org-1"] = ConversationState(lang=ReplyLang.EN, updated_at=self.clock.now)
        history = [HumanMessage(content="Habari, nisaidie na biashara yangu sana")]

        packed = self.packer.pack("Mkuu", AiMode.AUTO, history, AskContext(org_id="org-1"))

        self.assertEqual(packed.lang_override, ReplyLang.EN)

    def test_long_message_has_no_override(self) -> None:
        history = [HumanMessage(content="Habari, nisaidie na biashara yangu sana")]

        packed = self.packer.pack("How do I set prices for the new product line this month?", AiMode.AUTO, history)

        self.assertIsNone(packed.lang_override)
        self.assertIn("Respond in the language used by the user.", packed.text)

    def test_forced_english(self) -> None:
        packed = self.packer.pack("Mkuu", AiMode.EN)
        self.assertIsNone(packed.lang_override)
        self.assertIn("Respond fully in English.", packed.text)

    def test_sections_and_output_contract(self) -> None:
        self.memory.cache["org-1"] = ConversationState(
            topic="Pricing", objective="Raise margin", updated_at=self.clock.now
        )
        history = [
            HumanMessage(content="First question"),
            AIMessage(content="   "),
            AIMessage(content="First answer"),
        ]
        context = AskContext(org_id="org-1", org_name="Duka Letu", currency="TZS")

        packed = self.packer.pack("  What next?  ", AiMode.AUTO, history, context)

        self.assertIn(REPLY_MARKER, packed.text)
        self.assertIn(ACTIONS_MARKER, packed.text)
        self.assertIn("- topic: Pricing", packed.text)
        self.assertIn("- orgName: Duka Letu", packed.text)
        self.assertIn("- currency: TZS", packed.text)
        self.assertIn("USER: First question", packed.text)
        self.assertIn("ASSISTANT: First answer", packed.text)
        self.assertTrue(packed.text.endswith("USER MESSAGE:\nWhat next?"))
        self.assertEqual(packed.history_turns, 2)
        self.assertTrue(packed.has_memory)
        self.assertEqual(packed.conversation_key, "org-1")

    def test_no_memory_section_without_memory(self) -> None:
        packed = self.packer.pack("Hello there, how are you doing today?")

        self.assertNotIn("CONVERSATION MEMORY", packed.text)
        self.assertNotIn("CONTEXT (ZETRA BMS)", packed.text)
        self.assertFalse(packed.has_memory)

    def test_history_is_limited_and_clipped(self) -> None:
        packer = MessagePacker(self.memory, history_limit=3, history_turn_chars=10)
        history = [HumanMessage(content=f"turn {i} " + "x" * 50) for i in range(20)]

        trimmed = packer.trim_history(history)

        self.assertEqual(len(trimmed), 3)
        self.assertTrue(all(len(turn.content) <= 10 for turn in trimmed))
        self.assertTrue(trimmed[0].content.startswith("turn 17"))


if __name__ == "__main__":
    unittest.main()
