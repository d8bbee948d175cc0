"""
Answer composer for RAG.

Builds a bounded prompt context from ranked passages and asks the LLM to
answer (or write a tender brief) strictly from that context.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

from apps.indexing.errors import ProviderError
from apps.indexing.retry import GENERATION_RETRY_CONFIG, RetryExhausted, retry_with_backoff
from apps.rag.llm_client import BaseLLMClient, LLMError, LLMMessage
from apps.rag.retrieval import Passage

logger = logging.getLogger(__name__)

# Default chat parameters
DEFAULT_TEMPERATURE = 0.2  # Low for factuality
DEFAULT_MAX_TOKENS = 500
BRIEF_MAX_TOKENS = 1200

MAX_CONTEXT_CHARS = 8000
MAX_CITATIONS = 6

BRIEF_LENGTHS = ('short', 'medium', 'long')
BRIEF_TOP_K = 18
BRIEF_RETRIEVAL_QUESTION = (
    "Provide a structured tender brief covering purpose, key requirements, "
    "eligibility, submission details, and risks."
)
NOT_FOUND_ANSWER = "I couldn't find that in this document."


class ChatError(ProviderError):
    """Raised when chat completion fails."""
    pass


class NoGroundingError(Exception):
    """No retrieved passage could be placed in the prompt context."""
    pass


# System prompt with strict grounding rules
SYSTEM_PROMPT = """You are a tender document assistant. Answer questions using ONLY the provided context.

STRICT RULES:
1. Use ONLY information from the context. Do not use external knowledge.
2. If the answer is not in the context, say so explicitly.
3. Cite sources by their bracketed header, e.g. [Spec.pdf p.4].
4. Be concise and factual. Use bullet points when appropriate."""

BRIEF_SYSTEM_PROMPT = "You are a tender analyst. Create a structured brief ONLY from the provided context."

BRIEF_JSON_SHAPE = """{
  "purpose": [],
  "key_requirements": [],
  "eligibility": [],
  "submission": { "deadline": "", "method": "", "bid_security": "" },
  "risks": []
}"""


@dataclass
class ContextWindow:
    """Prompt context plus the passages that made it in, in rank order."""
    text: str
    used_passages: List[Passage] = field(default_factory=list)


@dataclass
class ChatResponse:
    """Response from the chat completion."""
    answer: str
    citations: List[Passage]
    model: str

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "citations": [p.to_citation() for p in self.citations[:MAX_CITATIONS]],
            "model": self.model,
        }


@dataclass
class BriefResponse:
    brief_json: Optional[Any]
    markdown: str
    citations: List[Passage]
    model: str

    def to_dict(self) -> dict:
        return {
            "briefJson": self.brief_json,
            "markdown": self.markdown,
            "citations": [p.to_citation() for p in self.citations[:MAX_CITATIONS]],
        }


def format_block(passage: Passage) -> str:
    header = f"[{passage.doc_name} p.{passage.page_label}]"
    heading = f"{passage.heading.strip()}\n" if passage.heading else ""
    return f"{header}\n{heading}{passage.text.strip()}\n"


def build_context(passages: Sequence[Passage], max_chars: int = MAX_CONTEXT_CHARS) -> ContextWindow:
    """
    Assemble passages into a context of at most `max_chars` characters.

    Blocks are appended in rank order; assembly stops at the first block
    that would overflow the budget.
    """
    blocks = []
    used = []
    total = 0
    for passage in passages:
        block = format_block(passage)
        if total + len(block) > max_chars:
            break
        blocks.append(block)
        used.append(passage)
        total += len(block)
    return ContextWindow(text="\n".join(blocks), used_passages=used)


def _generate(
    llm: BaseLLMClient,
    messages: List[LLMMessage],
    max_tokens: int,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    try:
        response = retry_with_backoff(
            lambda: llm.chat(messages, temperature=DEFAULT_TEMPERATURE, max_tokens=max_tokens),
            config=GENERATION_RETRY_CONFIG,
            exceptions=(LLMError,),
            sleep=sleep,
        )
    except RetryExhausted as e:
        raise ChatError(f"Generation failed after {e.attempts} attempts: {e.last_exception}") from e
    except LLMError as e:
        raise ChatError(f"Generation failed: {e}") from e
    return response.content.strip()


def compose_answer(
    question: str,
    passages: Sequence[Passage],
    llm: BaseLLMClient,
    max_chars: int = MAX_CONTEXT_CHARS,
    sleep: Callable[[float], None] = time.sleep,
) -> ChatResponse:
    """
    Answer `question` from `passages`.

    Raises:
        NoGroundingError: If no passage fits in the context budget
        ChatError: If the LLM keeps failing
    """
    window = build_context(passages, max_chars=max_chars)
    if not window.used_passages or not window.text.strip():
        raise NoGroundingError("No groundable content for this question")

    messages = [
        LLMMessage(role="system", content=SYSTEM_PROMPT),
        LLMMessage(
            role="user",
            content=f"Context:\n{window.text}\n\nQuestion:\n{question}",
        ),
    ]
    logger.debug(f"Answer prompt: {len(window.text)} context chars, {len(window.used_passages)} passages")

    answer = _generate(llm, messages, DEFAULT_MAX_TOKENS, sleep=sleep) or NOT_FOUND_ANSWER
    return ChatResponse(
        answer=answer,
        citations=window.used_passages[:MAX_CITATIONS],
        model=llm.model_name,
    )


def parse_brief_output(raw: str) -> Tuple[Optional[Any], str]:
    """
    Split model output into the leading JSON object and the Markdown after it.

    If no JSON object parses, the whole output is treated as Markdown.
    """
    start = raw.find('{')
    if start < 0:
        return None, raw.strip()

    try:
        brief_json, end = json.JSONDecoder().raw_decode(raw, start)
    except json.JSONDecodeError:
        return None, raw.strip()

    markdown = raw[end:].strip()
    if markdown.startswith('```'):
        markdown = markdown[3:].lstrip()
    return brief_json, markdown


def compose_brief(
    passages: Sequence[Passage],
    llm: BaseLLMClient,
    length: str = 'medium',
    max_chars: int = MAX_CONTEXT_CHARS,
    sleep: Callable[[float], None] = time.sleep,
) -> BriefResponse:
    """
    Write a structured tender brief from `passages`.

    Raises:
        ValueError: If `length` is not short, medium or long
        NoGroundingError: If no passage fits in the context budget
        ChatError: If the LLM keeps failing
    """
    if length not in BRIEF_LENGTHS:
        raise ValueError(f"length must be one of {', '.join(BRIEF_LENGTHS)}")

    window = build_context(passages, max_chars=max_chars)
    if not window.used_passages or not window.text.strip():
        raise NoGroundingError("No indexed content for this document")

    user_prompt = "\n".join([
        "Context:",
        window.text,
        "",
        "Return JSON with keys:",
        BRIEF_JSON_SHAPE,
        "Then provide a clean Markdown brief based on the JSON.",
        f"Length: {length}",
    ])
    messages = [
        LLMMessage(role="system", content=BRIEF_SYSTEM_PROMPT),
        LLMMessage(role="user", content=user_prompt),
    ]

    raw = _generate(llm, messages, BRIEF_MAX_TOKENS, sleep=sleep)
    if not raw:
        return BriefResponse(None, NOT_FOUND_ANSWER, window.used_passages[:MAX_CITATIONS], llm.model_name)

    brief_json, markdown = parse_brief_output(raw)
    return BriefResponse(
        brief_json=brief_json,
        markdown=markdown or NOT_FOUND_ANSWER,
        citations=window.used_passages[:MAX_CITATIONS],
        model=llm.model_name,
    )
