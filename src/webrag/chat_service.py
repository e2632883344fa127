# /webrag/chat_service.py
"""
Request handling for chat, legacy query and sample-question calls.

The chat path validates input, answers small talk directly, then races the
index build and the pipeline run against cold/warm deadlines.
"""
from __future__ import annotations

import asyncio
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate

from .config import MAX_SOURCE_URLS, SAMPLE_QUESTIONS_K, RequestTimeouts
from .conversation import match_shortcut
from .exceptions import InvalidInputError, RequestTimeoutError
from .graders import NO_ANSWER_MESSAGE
from .index_cache import IndexCache
from .observability import get_logger
from .rag_pipeline import PipelineState, RagPipeline, format_context
from .timeouts import BackgroundTasks, race_deadline

logger = get_logger(__name__)

SAMPLE_QUESTIONS_QUERY = "main topics and key information"
SAMPLE_QUESTIONS_CONTEXT_DOCS = 3
MAX_SAMPLE_QUESTIONS = 5
DEFAULT_SAMPLE_QUESTIONS = (
    "What is the main topic of this document?",
    "Can you summarize the key points?",
    "What are the important details mentioned?",
)
_NUMBERED_LINE_RE = re.compile(r"^\d+[.)]")
_BULLET_PREFIX_RE = re.compile(r"^(?:[-*•]\s+)")


@dataclass(frozen=True)
class ChatReply:
    message: str
    documents: list[str] = field(default_factory=list)
    cold: bool = False
    shortcut: bool = False


@dataclass(frozen=True)
class QueryReply:
    question: str
    documents: list[str]
    generated_answer: str


def validate_urls(urls: Any) -> list[str]:
    if not urls or not isinstance(urls, (list, tuple)):
        raise InvalidInputError("Please provide at least one URL", field="urls")
    if len(urls) > MAX_SOURCE_URLS:
        raise InvalidInputError(
            f"Too many URLs. Please provide a maximum of {MAX_SOURCE_URLS} URLs at a time.",
            field="urls",
        )
    cleaned = [str(url).strip() if isinstance(url, str) else "" for url in urls]
    if any(not url for url in cleaned):
        raise InvalidInputError("Every URL must be a non-empty string", field="urls")
    return cleaned


def validate_text(value: Any, field_name: str, message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(message, field=field_name)
    return value


def parse_sample_questions(text: str, limit: int = MAX_SAMPLE_QUESTIONS) -> list[str]:
    """One question per line; numbered lines and blanks are dropped."""
    questions: list[str] = []
    for line in str(text or "").splitlines():
        candidate = _BULLET_PREFIX_RE.sub("", line.strip()).strip()
        if not candidate or _NUMBERED_LINE_RE.match(candidate):
            continue
        questions.append(candidate)
        if len(questions) >= limit:
            break
    return questions


def create_sample_question_chain(llm):
    if not llm: return None
    prompt = ChatPromptTemplate.from_template(
        """Based on the following document excerpts, generate 5 diverse and interesting questions that someone might ask about this content.
Make the questions specific and relevant to the content. Return only the questions, one per line, without numbering or bullets.

Document excerpts:
{context}

Generate 5 sample questions:"""
    )
    return prompt | llm | StrOutputParser()


class ChatService:
    """Owns the request-level policies around the shared index cache and the pipeline."""

    def __init__(
        self,
        cache: IndexCache,
        pipeline: RagPipeline,
        *,
        question_chain=None,
        timeouts: RequestTimeouts | None = None,
        rng: random.Random | None = None,
    ):
        self.cache = cache
        self.pipeline = pipeline
        self.question_chain = question_chain
        self.timeouts = timeouts or RequestTimeouts.from_config()
        self.rng = rng or random.Random()
        self.background = BackgroundTasks()

    async def _index_within_deadline(self, urls: Sequence[str], cold: bool):
        cancel = self.timeouts.cancel_build_on_timeout
        build_task = asyncio.create_task(self.cache.get_or_build(urls), name="await-index")
        try:
            return await race_deadline(
                build_task,
                self.timeouts.build_deadline(cold),
                phase="index_build",
                cold=cold,
                cancel_on_timeout=cancel,
                background=self.background,
            )
        except RequestTimeoutError as exc:
            if not cancel:
                raise
            # Stop waiting first; the shared build is only cancelled when no other request still waits on it.
            await asyncio.wait({build_task})
            cancelled = self.cache.cancel_build(urls)
            raise RequestTimeoutError(
                phase=exc.phase, cold=exc.cold, timeout_s=exc.timeout_s, build_cancelled=cancelled
            ) from exc

    async def chat(self, urls: Any, message: Any, conversation_history: Iterable[Any] | None = None) -> ChatReply:
        url_list = validate_urls(urls)
        text = validate_text(message, "message", "Please provide a message")

        canned = match_shortcut(text, self.rng)
        if canned is not None:
            logger.info("chat_shortcut_reply")
            return ChatReply(message=canned, documents=[], shortcut=True)

        history = list(conversation_history or [])
        cold = not self.cache.is_cached(url_list)
        logger.info(
            "chat_request",
            urls=len(url_list),
            history_turns=len(history),
            cold=cold,
            joins_build=self.cache.is_building(url_list),
            build_deadline_s=self.timeouts.build_deadline(cold),
        )
        start = time.perf_counter()

        index = await self._index_within_deadline(url_list, cold)

        state = PipelineState.start(text, url_list, history)
        pipeline_task = asyncio.create_task(self.pipeline.run(state, index), name="chat-pipeline")
        result = await race_deadline(
            pipeline_task,
            self.timeouts.pipeline_deadline(cold),
            phase="pipeline",
            cold=cold,
            cancel_on_timeout=self.timeouts.cancel_pipeline_on_timeout,
            background=self.background,
        )

        logger.info(
            "chat_completed",
            documents=len(result.chunks),
            has_answer=bool(result.answer),
            elapsed_ms=round((time.perf_counter() - start) * 1000.0, 2),
        )
        return ChatReply(
            message=result.answer or NO_ANSWER_MESSAGE,
            documents=result.documents,
            cold=cold,
        )

    async def query(self, urls: Any, question: Any) -> QueryReply:
        url_list = validate_urls(urls)
        text = validate_text(question, "question", "Please provide a question")
        index = await self.cache.get_or_build(url_list)
        result = await self.pipeline.run(PipelineState.start(text, url_list), index)
        return QueryReply(question=text, documents=result.documents, generated_answer=result.answer)

    async def sample_questions(self, urls: Any) -> list[str]:
        url_list = validate_urls(urls)
        try:
            index = await self.cache.get_or_build(url_list)
            docs = await index.asearch(SAMPLE_QUESTIONS_QUERY, SAMPLE_QUESTIONS_K)
            if not docs or self.question_chain is None:
                return list(DEFAULT_SAMPLE_QUESTIONS)
            context = format_context(docs[:SAMPLE_QUESTIONS_CONTEXT_DOCS])
            raw = await self.question_chain.ainvoke({"context": context})
            questions = parse_sample_questions(raw)
        except Exception as exc:
            logger.warning("sample_questions_failed_using_defaults", error=str(exc))
            return list(DEFAULT_SAMPLE_QUESTIONS)
        return questions or list(DEFAULT_SAMPLE_QUESTIONS)

    async def close(self) -> None:
        await self.background.cancel_all()
        await self.cache.close()
