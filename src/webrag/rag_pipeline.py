# /webrag/rag_pipeline.py
"""
Question-answering pipeline over a built chunk index.

Stages run in a fixed order on an immutable PipelineState:
RETRIEVE -> GRADE_DOCUMENTS -> (GENERATE -> GRADE_ANSWER) -> DONE.
Generation is skipped entirely when grading leaves no chunks.
"""
from __future__ import annotations

import enum
import os
import time
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Sequence

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_groq import ChatGroq
from langchain_openai import ChatOpenAI

from .chunk_index import ChunkIndex, DocumentChunk
from .config import (
    HISTORY_TURNS_FOR_CONTEXT,
    LLM_MODEL_NAME,
    LLM_PROVIDER,
    LLM_TEMPERATURE,
    RETRIEVAL_K,
    console,
    required_api_key_env,
)
from .exceptions import GenerationError
from .graders import create_answer_grader, create_document_grader, grade_answer, grade_documents
from .observability import get_logger

logger = get_logger(__name__)


class Stage(enum.Enum):
    RETRIEVE = "retrieve"
    GRADE_DOCUMENTS = "grade_documents"
    GENERATE = "generate"
    GRADE_ANSWER = "grade_answer"
    DONE = "done"


class GradeOutcome(enum.Enum):
    RELEVANT = "relevant"
    NO_RELEVANT = "no_relevant"

    @classmethod
    def of(cls, chunks: Sequence[DocumentChunk]) -> "GradeOutcome":
        return cls.RELEVANT if chunks else cls.NO_RELEVANT


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: str

    @classmethod
    def from_mapping(cls, raw: Any) -> "ConversationTurn":
        if isinstance(raw, ConversationTurn):
            return raw
        if isinstance(raw, dict):
            return cls(role=str(raw.get("role", "")), content=str(raw.get("content", "")))
        return cls(role=str(getattr(raw, "role", "")), content=str(getattr(raw, "content", "")))


@dataclass(frozen=True)
class PipelineState:
    question: str
    source_urls: tuple[str, ...] = ()
    conversation_history: tuple[ConversationTurn, ...] = ()
    retrieved_chunks: tuple[DocumentChunk, ...] = ()
    generated_answer: str = ""
    stage: Stage = Stage.RETRIEVE

    @classmethod
    def start(
        cls,
        question: str,
        source_urls: Iterable[str] = (),
        conversation_history: Iterable[Any] = (),
    ) -> "PipelineState":
        return cls(
            question=question,
            source_urls=tuple(source_urls),
            conversation_history=tuple(ConversationTurn.from_mapping(turn) for turn in conversation_history),
        )


@dataclass(frozen=True)
class PipelineResult:
    answer: str
    chunks: tuple[DocumentChunk, ...] = field(default_factory=tuple)

    @property
    def documents(self) -> list[str]:
        return [chunk.text for chunk in self.chunks]


# --- LLM & Chain Initialization ---

def initialize_llm(temperature: float = LLM_TEMPERATURE, provider: str | None = None):
    """Initializes the chat model for the configured provider. Raises when the API key is missing."""
    mode = str(provider or LLM_PROVIDER).strip().lower()
    key_name = required_api_key_env(mode)
    api_key = os.getenv(key_name, "").strip()
    if not api_key:
        raise RuntimeError(f"{key_name} is not set; cannot initialize the {mode} LLM.")
    if mode == "groq":
        console.print(f"[green]Using Groq model: {LLM_MODEL_NAME}[/green]")
        return ChatGroq(
            model_name=LLM_MODEL_NAME,
            temperature=temperature,
            groq_api_key=api_key,
        )
    console.print(f"[green]Using OpenAI model: {LLM_MODEL_NAME}[/green]")
    return ChatOpenAI(
        model=LLM_MODEL_NAME,
        temperature=temperature,
        api_key=api_key,
    )


def format_history(turns: Sequence[ConversationTurn], limit: int = HISTORY_TURNS_FOR_CONTEXT) -> str:
    """Renders the most recent turns, oldest first, as 'User:'/'Assistant:' lines."""
    if not turns or limit <= 0:
        return ""
    lines = []
    for turn in list(turns)[-limit:]:
        speaker = "User" if turn.role == "user" else "Assistant"
        lines.append(f"{speaker}: {turn.content}")
    return "\n".join(lines)


def format_context(chunks: Sequence[DocumentChunk]) -> str:
    return "\n\n".join(chunk.text for chunk in chunks)


def _answer_prompt() -> ChatPromptTemplate:
    return ChatPromptTemplate.from_template(
        """You are an assistant for question-answering tasks. Use the following pieces of retrieved context to answer the question accurately and comprehensively.

Instructions:
- Extract relevant information from the context to answer the question
- If the context contains the answer, provide it clearly
- If the context doesn't contain enough information, say what you can determine from the available context
- Be specific and cite information from the context when possible
- Keep the answer informative but concise (2-4 sentences)

{history_block}Context from documents:
{context}

Question: {question}

Answer:"""
    )


def create_answer_chain(llm):
    """Creates the chain mapping {history_block, context, question} to answer text."""
    if not llm: return None
    return _answer_prompt() | llm | StrOutputParser()


def build_answer_inputs(state: PipelineState) -> dict[str, str]:
    history = format_history(state.conversation_history)
    history_block = f"Previous conversation:\n{history}\n\n" if history else ""
    return {
        "history_block": history_block,
        "context": format_context(state.retrieved_chunks),
        "question": state.question,
    }


class RagPipeline:
    """Runs the retrieve/grade/generate/grade state machine for one request at a time per state."""

    def __init__(self, answer_chain, document_grader, answer_grader, *, retrieval_k: int = RETRIEVAL_K):
        self.answer_chain = answer_chain
        self.document_grader = document_grader
        self.answer_grader = answer_grader
        self.retrieval_k = int(retrieval_k)

    @classmethod
    def from_llm(cls, llm) -> "RagPipeline":
        return cls(
            answer_chain=create_answer_chain(llm),
            document_grader=create_document_grader(llm),
            answer_grader=create_answer_grader(llm),
        )

    async def retrieve(self, state: PipelineState, index: ChunkIndex) -> PipelineState:
        """Reads question; writes retrieved_chunks."""
        chunks = await index.asearch(state.question, self.retrieval_k)
        logger.info("pipeline_retrieved", chunks=len(chunks), urls=len(state.source_urls))
        return replace(state, retrieved_chunks=tuple(chunks), stage=Stage.GRADE_DOCUMENTS)

    async def grade_documents(self, state: PipelineState) -> PipelineState:
        """Reads question, retrieved_chunks; writes retrieved_chunks and picks the next stage."""
        relevant = tuple(await grade_documents(state.question, state.retrieved_chunks, self.document_grader))
        match GradeOutcome.of(relevant):
            case GradeOutcome.RELEVANT:
                next_stage = Stage.GENERATE
            case GradeOutcome.NO_RELEVANT:
                next_stage = Stage.DONE
        return replace(state, retrieved_chunks=relevant, stage=next_stage)

    async def generate(self, state: PipelineState) -> PipelineState:
        """Reads conversation_history, retrieved_chunks, question; writes generated_answer."""
        inputs = build_answer_inputs(state)
        logger.info(
            "pipeline_generating",
            chunks=len(state.retrieved_chunks),
            context_chars=len(inputs["context"]),
            history_turns=min(len(state.conversation_history), HISTORY_TURNS_FOR_CONTEXT),
        )
        try:
            answer = await self.answer_chain.ainvoke(inputs)
        except Exception as exc:
            logger.error("answer_generation_failed", error=str(exc))
            raise GenerationError(f"Answer generation failed: {exc}") from exc
        answer = str(answer or "")
        logger.info("pipeline_generated", answer_chars=len(answer))
        return replace(state, generated_answer=answer, stage=Stage.GRADE_ANSWER)

    async def grade_answer(self, state: PipelineState) -> PipelineState:
        """Reads question, generated_answer; writes generated_answer."""
        graded = await grade_answer(state.question, state.generated_answer, self.answer_grader)
        return replace(state, generated_answer=graded, stage=Stage.DONE)

    async def step(self, state: PipelineState, index: ChunkIndex) -> PipelineState:
        match state.stage:
            case Stage.RETRIEVE:
                return await self.retrieve(state, index)
            case Stage.GRADE_DOCUMENTS:
                return await self.grade_documents(state)
            case Stage.GENERATE:
                return await self.generate(state)
            case Stage.GRADE_ANSWER:
                return await self.grade_answer(state)
            case Stage.DONE:
                return state

    async def run(self, state: PipelineState, index: ChunkIndex) -> PipelineResult:
        start = time.perf_counter()
        while state.stage is not Stage.DONE:
            stage_start = time.perf_counter()
            current = state.stage
            state = await self.step(state, index)
            logger.info(
                "pipeline_stage",
                stage=current.value,
                next_stage=state.stage.value,
                elapsed_ms=round((time.perf_counter() - stage_start) * 1000.0, 2),
            )
        logger.info(
            "pipeline_finished",
            chunks=len(state.retrieved_chunks),
            has_answer=bool(state.generated_answer),
            elapsed_ms=round((time.perf_counter() - start) * 1000.0, 2),
        )
        return PipelineResult(answer=state.generated_answer, chunks=state.retrieved_chunks)
