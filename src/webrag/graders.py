# /webrag/graders.py
"""
LLM-mediated relevance and answer grading.

Both graders are soft filters: only an explicit "no" changes anything, and a
failing judge never removes context or discards an answer.
"""
from __future__ import annotations

import re
from typing import Any, Sequence

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate

from .chunk_index import DocumentChunk
from .config import GRADE_DOC_MAX_CHARS, GRADE_FALLBACK_KEEP
from .exceptions import GradingFailure
from .observability import get_logger

logger = get_logger(__name__)

NO_ANSWER_MESSAGE = "I couldn't find a relevant answer to your question. Can I assist you with anything else?"
ANSWER_CAVEAT = " (Note: This information may be incomplete based on available documents.)"

_NEGATIVE_VERDICT_RE = re.compile(r"^no(?![a-z])")
_VERDICT_STRIP_CHARS = " \t\r\n\"'`*.!:;,"


def _document_grade_prompt() -> ChatPromptTemplate:
    return ChatPromptTemplate.from_template(
        """You are a grader deciding if a document is relevant to a question.
A document is relevant if it contains information that could help answer the question, even partially.
Consider documents relevant if they mention the topic, location, or related concepts.

Question: {question}

Document: {document}

Answer with a single word: 'yes' or 'no'. Do not return any other text."""
    )


def _answer_grade_prompt() -> ChatPromptTemplate:
    return ChatPromptTemplate.from_template(
        """You are a grader deciding if a generated answer is relevant and helpful for a question.
Consider an answer relevant if it:
- Directly answers the question
- Provides related information that could be useful
- Mentions the topic even if incomplete

Question: {question}

Generated Answer: {generated_answer}

Answer with a single word: 'yes' or 'no'."""
    )


def create_document_grader(llm):
    """Chain mapping {question, document} to a yes/no verdict string."""
    if not llm: return None
    return _document_grade_prompt() | llm | StrOutputParser()


def create_answer_grader(llm):
    """Chain mapping {question, generated_answer} to a yes/no verdict string."""
    if not llm: return None
    return _answer_grade_prompt() | llm | StrOutputParser()


def is_negative_verdict(verdict: Any) -> bool:
    """True only for an explicit 'no' (case, quotes and trailing punctuation ignored)."""
    text = str(verdict or "").strip().lower().strip(_VERDICT_STRIP_CHARS)
    return bool(_NEGATIVE_VERDICT_RE.match(text))


async def grade_documents(question: str, chunks: Sequence[DocumentChunk], grader) -> list[DocumentChunk]:
    """
    Keeps every chunk the judge does not explicitly reject. When nothing
    survives a non-empty input, the top-ranked chunks are kept anyway.
    """
    docs = list(chunks)
    logger.info("document_grading_started", chunks=len(docs))
    relevant: list[DocumentChunk] = []
    failures = 0

    for position, chunk in enumerate(docs):
        try:
            verdict = await grader.ainvoke(
                {"question": question, "document": chunk.text[:GRADE_DOC_MAX_CHARS]}
            )
        except Exception as exc:
            failures += 1
            failure = GradingFailure("Document grading call failed", {"position": position, "error": str(exc)})
            logger.warning("document_grading_failed_including_chunk", error=str(failure))
            relevant.append(chunk)
            continue
        if is_negative_verdict(verdict):
            continue
        relevant.append(chunk)

    if not relevant and docs:
        keep = min(GRADE_FALLBACK_KEEP, len(docs))
        logger.info("document_grading_fallback", kept=keep, graded=len(docs))
        relevant = docs[:keep]

    logger.info("document_grading_finished", relevant=len(relevant), graded=len(docs), failures=failures)
    return relevant


async def grade_answer(question: str, generated_answer: str, grader) -> str:
    """Returns the answer, annotated with a caveat when the judge rejects it."""
    if not generated_answer or not generated_answer.strip():
        return NO_ANSWER_MESSAGE

    try:
        verdict = await grader.ainvoke({"question": question, "generated_answer": generated_answer})
    except Exception as exc:
        failure = GradingFailure("Answer grading call failed", {"error": str(exc)})
        logger.warning("answer_grading_failed_returning_answer", error=str(failure))
        return generated_answer

    if is_negative_verdict(verdict):
        logger.info("answer_rejected_returning_with_caveat")
        return generated_answer + ANSWER_CAVEAT
    return generated_answer
