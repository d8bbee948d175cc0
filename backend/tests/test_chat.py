"""
Tests for prompt context assembly and the answer / brief composers.
"""
from types import SimpleNamespace

import pytest
from conftest import FakeLLM

from apps.indexing.vectors import DimensionMismatchError
from apps.rag.chat import (
    MAX_CITATIONS,
    NOT_FOUND_ANSWER,
    ChatError,
    NoGroundingError,
    build_context,
    compose_answer,
    compose_brief,
    format_block,
    parse_brief_output,
)
from apps.rag.embeddings import MAX_QUERY_LENGTH, QueryValidationError, normalize_query
from apps.rag.llm_client import LLMError
from apps.rag.retrieval import Passage, create_snippet, rank_sections


def passage(text="Bids close on 12 May.", page=3, doc_name="ITB.pdf", score=0.9):
    return Passage(doc_id='f1', doc_name=doc_name, text=text, score=score, page_start=page, page_end=page)


def section(pk, embedding, page, text=None, document_id='doc-a'):
    return SimpleNamespace(
        pk=pk,
        document_id=document_id,
        page_start=page,
        page_end=page,
        heading=None,
        text=text or f"section {pk}",
        embedding=embedding,
    )


def no_sleep(seconds):
    pass


class FlakyLLM(FakeLLM):
    """Fails with LLMError a fixed number of times before answering."""

    def __init__(self, failures: int, message: str = "LLM API returned 503: overloaded"):
        super().__init__()
        self.failures = failures
        self.message = message

    def chat(self, messages, temperature=0.2, max_tokens=500):
        if self.failures > 0:
            self.failures -= 1
            self.calls.append(list(messages))
            raise LLMError(self.message)
        return super().chat(messages, temperature, max_tokens)


# ============================================================================
# Context
# ============================================================================

class TestBuildContext:
    """Tests for the bounded prompt context."""

    def test_block_header_names_document_and_page(self):
        block = format_block(passage())

        assert block.startswith("[ITB.pdf p.3]\n")
        assert "Bids close on 12 May." in block

    def test_page_range_label(self):
        ranged = Passage(doc_id='f', doc_name='BOQ.xlsx', text="Rates", score=1.0, page_start=2, page_end=4)

        assert format_block(ranged).startswith("[BOQ.xlsx p.2-4]")

    def test_stops_at_first_overflowing_block(self):
        passages = [passage("a" * 40), passage("b" * 400), passage("c" * 10)]

        window = build_context(passages, max_chars=200)

        assert window.used_passages == passages[:1]
        assert "c" * 10 not in window.text

    def test_everything_fits(self):
        passages = [passage(f"clause {i}") for i in range(3)]

        window = build_context(passages)

        assert window.used_passages == passages


class TestQueryAndSnippets:

    def test_normalize_query(self):
        assert normalize_query("  what   is\nthe deadline? ") == "what is the deadline?"

    @pytest.mark.parametrize('query', ["", "   ", None, "x" * (MAX_QUERY_LENGTH + 1)])
    def test_invalid_queries(self, query):
        with pytest.raises(QueryValidationError):
            normalize_query(query)

    def test_snippet_breaks_at_word(self):
        snippet = create_snippet("word " * 100, max_length=50)

        assert snippet.endswith("…")
        assert len(snippet) <= 51


class TestRankSections:
    """Section rows from the incremental path, ranked against a query."""

    def test_keeps_best_section_per_page(self):
        sections = [
            section(1, [0.9, 0.1], page=2, text="second best on page 2"),
            section(2, [1.0, 0.0], page=2, text="best on page 2"),
            section(3, [0.5, 0.5], page=3, text="page 3"),
        ]

        passages = rank_sections(sections, [1.0, 0.0], 5)

        assert [p.text for p in passages] == ["best on page 2", "page 3"]
        assert passages[0].chunk_id == '2'

    def test_same_page_in_other_document_is_kept(self):
        sections = [
            section(1, [1.0, 0.0], page=1, document_id='doc-a'),
            section(2, [1.0, 0.0], page=1, document_id='doc-b'),
        ]

        passages = rank_sections(sections, [1.0, 0.0], 5)

        assert [p.doc_id for p in passages] == ['doc-a', 'doc-b']

    def test_top_k_counts_distinct_pages(self):
        sections = [section(i, [1.0, 0.0], page=1) for i in range(3)]
        sections.append(section(9, [0.8, 0.2], page=4))

        passages = rank_sections(sections, [1.0, 0.0], 2)

        assert [p.page_start for p in passages] == [1, 4]

    def test_sections_without_embedding_are_skipped(self):
        sections = [section(1, None, page=1), section(2, [0.0, 1.0], page=2)]

        passages = rank_sections(sections, [1.0, 0.0], 5)

        assert [p.page_start for p in passages] == [2]

    def test_mixed_embedding_sizes_raise(self):
        sections = [section(1, [1.0, 0.0], page=1), section(2, [1.0, 0.0, 0.0], page=2)]

        with pytest.raises(DimensionMismatchError):
            rank_sections(sections, [1.0, 0.0], 5)

    def test_query_size_mismatch_raises(self):
        with pytest.raises(DimensionMismatchError):
            rank_sections([section(1, [1.0, 0.0], page=1)], [1.0, 0.0, 0.0], 5)


# ============================================================================
# Answers
# ============================================================================

class TestComposeAnswer:

    def test_answer_with_citations(self):
        llm = FakeLLM()
        passages = [passage(page=i) for i in range(1, 10)]

        response = compose_answer("When do bids close?", passages, llm, sleep=no_sleep)

        assert response.answer == "The deadline is 12 May [1]."
        assert response.model == 'fake-llm'
        assert len(response.to_dict()['citations']) == MAX_CITATIONS
        system, user = llm.calls[0]
        assert system.role == 'system'
        assert user.content.endswith("Question:\nWhen do bids close?")

    def test_blank_reply_becomes_not_found(self):
        response = compose_answer("Q?", [passage()], FakeLLM(reply="   "), sleep=no_sleep)

        assert response.answer == NOT_FOUND_ANSWER

    def test_no_passages(self):
        llm = FakeLLM()

        with pytest.raises(NoGroundingError):
            compose_answer("Q?", [], llm, sleep=no_sleep)

        assert llm.calls == []

    def test_passage_larger_than_budget(self):
        with pytest.raises(NoGroundingError):
            compose_answer("Q?", [passage("x" * 500)], FakeLLM(), max_chars=100, sleep=no_sleep)

    def test_retries_transient_errors(self):
        llm = FlakyLLM(failures=2)

        response = compose_answer("Q?", [passage()], llm, sleep=no_sleep)

        assert response.answer == "The deadline is 12 May [1]."
        assert len(llm.calls) == 3

    def test_gives_up_after_retries(self):
        llm = FlakyLLM(failures=5)

        with pytest.raises(ChatError):
            compose_answer("Q?", [passage()], llm, sleep=no_sleep)

        assert len(llm.calls) == 3

    def test_client_errors_are_not_retried(self):
        llm = FlakyLLM(failures=5, message="LLM API returned 401: invalid key")

        with pytest.raises(ChatError):
            compose_answer("Q?", [passage()], llm, sleep=no_sleep)

        assert len(llm.calls) == 1


# ============================================================================
# Briefs
# ============================================================================

class TestParseBriefOutput:

    def test_json_then_markdown(self):
        brief_json, markdown = parse_brief_output('Here: {"purpose": ["Roads"]}\n# Brief\nText')

        assert brief_json == {'purpose': ["Roads"]}
        assert markdown == "# Brief\nText"

    def test_fenced_markdown_after_json(self):
        _, markdown = parse_brief_output('{"risks": []}\n```\n# Brief')

        assert markdown == "# Brief"

    def test_without_json(self):
        assert parse_brief_output("  Just prose.  ") == (None, "Just prose.")

    def test_broken_json(self):
        assert parse_brief_output('{"purpose": [') == (None, '{"purpose": [')


class TestComposeBrief:

    def test_brief(self):
        llm = FakeLLM(reply='{"purpose": ["Supply of pipes"]}\n## Brief\nPipes.')

        brief = compose_brief([passage()], llm, length='long', sleep=no_sleep)

        assert brief.brief_json == {'purpose': ["Supply of pipes"]}
        assert brief.to_dict()['markdown'] == "## Brief\nPipes."
        assert "Length: long" in llm.calls[0][1].content

    def test_empty_reply(self):
        brief = compose_brief([passage()], FakeLLM(reply=""), sleep=no_sleep)

        assert brief.brief_json is None
        assert brief.markdown == NOT_FOUND_ANSWER

    def test_invalid_length(self):
        with pytest.raises(ValueError):
            compose_brief([passage()], FakeLLM(), length='epic')

    def test_no_passages(self):
        with pytest.raises(NoGroundingError):
            compose_brief([], FakeLLM(), sleep=no_sleep)
