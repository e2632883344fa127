import dataclasses
import unittest

from langchain_core.language_models import FakeListChatModel

from webrag.chunk_index import DocumentChunk
from webrag.exceptions import GenerationError
from webrag.graders import ANSWER_CAVEAT, NO_ANSWER_MESSAGE
from webrag.rag_pipeline import (
    ConversationTurn,
    PipelineState,
    RagPipeline,
    Stage,
    build_answer_inputs,
    format_history,
)


class _FakeIndex:
    def __init__(self, chunks):
        self.chunks = list(chunks)
        self.queries = []

    async def asearch(self, query, k):
        self.queries.append((query, k))
        return self.chunks[:k]


class _FakeChain:
    def __init__(self, output="", error=None):
        self.output = output
        self.error = error
        self.payloads = []

    async def ainvoke(self, payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return self.output


def _chunks(*texts):
    return [DocumentChunk(text=text, source_url="https://example.com/a") for text in texts]


class TestRagPipeline(unittest.IsolatedAsyncioTestCase):
    def _pipeline(self, answer="An answer.", doc_verdict="yes", answer_verdict="yes"):
        self.answer_chain = _FakeChain(answer)
        self.document_grader = _FakeChain(doc_verdict)
        self.answer_grader = _FakeChain(answer_verdict)
        return RagPipeline(self.answer_chain, self.document_grader, self.answer_grader)

    async def test_full_run_retrieves_ten_grades_and_generates(self):
        pipeline = self._pipeline()
        index = _FakeIndex(_chunks(*[f"chunk {i}" for i in range(12)]))

        result = await pipeline.run(PipelineState.start("What is this about?", ["https://example.com/a"]), index)

        self.assertEqual(index.queries, [("What is this about?", 10)])
        self.assertEqual(len(self.document_grader.payloads), 10)
        self.assertEqual(len(self.answer_chain.payloads), 1)
        self.assertEqual(result.answer, "An answer.")
        self.assertEqual(len(result.documents), 10)
        self.assertEqual(result.documents[0], "chunk 0")

    async def test_no_retrieved_chunks_skips_generation(self):
        pipeline = self._pipeline()
        result = await pipeline.run(PipelineState.start("q"), _FakeIndex([]))

        self.assertEqual(self.answer_chain.payloads, [])
        self.assertEqual(self.answer_grader.payloads, [])
        self.assertEqual(result.answer, "")
        self.assertEqual(result.documents, [])

    async def test_grading_branch_goes_to_done_when_nothing_is_left(self):
        pipeline = self._pipeline()
        state = dataclasses.replace(PipelineState.start("q"), stage=Stage.GRADE_DOCUMENTS)
        graded = await pipeline.grade_documents(state)
        self.assertIs(graded.stage, Stage.DONE)

        state = dataclasses.replace(state, retrieved_chunks=tuple(_chunks("a")))
        graded = await pipeline.grade_documents(state)
        self.assertIs(graded.stage, Stage.GENERATE)

    async def test_rejected_chunks_fall_back_and_still_generate(self):
        pipeline = self._pipeline(doc_verdict="no")
        result = await pipeline.run(PipelineState.start("q"), _FakeIndex(_chunks("a", "b", "c", "d")))
        self.assertEqual(result.documents, ["a", "b", "c"])
        self.assertEqual(len(self.answer_chain.payloads), 1)

    async def test_negative_answer_grade_appends_caveat(self):
        pipeline = self._pipeline(answer_verdict="no")
        result = await pipeline.run(PipelineState.start("q"), _FakeIndex(_chunks("a")))
        self.assertEqual(result.answer, "An answer." + ANSWER_CAVEAT)

    async def test_blank_generation_becomes_fixed_message(self):
        pipeline = self._pipeline(answer="  ")
        result = await pipeline.run(PipelineState.start("q"), _FakeIndex(_chunks("a")))
        self.assertEqual(result.answer, NO_ANSWER_MESSAGE)
        self.assertEqual(self.answer_grader.payloads, [])

    async def test_generation_failure_propagates(self):
        pipeline = self._pipeline()
        pipeline.answer_chain = _FakeChain(error=RuntimeError("model overloaded"))
        with self.assertRaises(GenerationError):
            await pipeline.run(PipelineState.start("q"), _FakeIndex(_chunks("a")))

    async def test_generation_prompt_carries_recent_history_and_context(self):
        pipeline = self._pipeline()
        history = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"turn {i}"} for i in range(8)]
        state = PipelineState.start("And then?", ["https://example.com/a"], history)

        await pipeline.run(state, _FakeIndex(_chunks("first", "second")))

        payload = self.answer_chain.payloads[0]
        self.assertEqual(payload["question"], "And then?")
        self.assertEqual(payload["context"], "first\n\nsecond")
        self.assertTrue(payload["history_block"].startswith("Previous conversation:\nUser: turn 2\n"))
        self.assertIn("Assistant: turn 7", payload["history_block"])
        self.assertNotIn("turn 1", payload["history_block"])

    async def test_chains_built_from_a_chat_model(self):
        llm = FakeListChatModel(responses=["yes", "no", "Generated from context.", "yes"])
        pipeline = RagPipeline.from_llm(llm)

        result = await pipeline.run(PipelineState.start("q"), _FakeIndex(_chunks("kept", "dropped")))

        self.assertEqual(result.documents, ["kept"])
        self.assertEqual(result.answer, "Generated from context.")


class TestPipelineState(unittest.TestCase):
    def test_state_is_immutable(self):
        state = PipelineState.start("q", ["https://a"], [{"role": "user", "content": "hi"}])
        with self.assertRaises(dataclasses.FrozenInstanceError):
            state.generated_answer = "changed"
        self.assertEqual(state.conversation_history, (ConversationTurn("user", "hi"),))
        self.assertIs(state.stage, Stage.RETRIEVE)

    def test_format_history_keeps_last_six_oldest_first(self):
        turns = [ConversationTurn("user" if i % 2 == 0 else "assistant", str(i)) for i in range(8)]
        rendered = format_history(turns)
        self.assertEqual(
            rendered.splitlines(),
            ["User: 2", "Assistant: 3", "User: 4", "Assistant: 5", "User: 6", "Assistant: 7"],
        )

    def test_answer_inputs_without_history_omit_the_block(self):
        state = dataclasses.replace(PipelineState.start("q"), retrieved_chunks=tuple(_chunks("a")))
        inputs = build_answer_inputs(state)
        self.assertEqual(inputs["history_block"], "")
        self.assertEqual(inputs["context"], "a")


if __name__ == "__main__":
    unittest.main()
