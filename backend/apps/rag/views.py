"""
RAG API views.

Provides endpoints for:
- Ask endpoint (grounded answer over one indexed document)
- Brief endpoint (structured tender brief)
- Release endpoint (drop a cached index from this process)
"""
import logging
import json
import uuid
from dataclasses import dataclass
from typing import List, Optional

from django.http import JsonResponse
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from django.utils.decorators import method_decorator

from apps.authn.middleware import auth_required
from apps.authn.audit import audit_brief, audit_plan_denied, audit_rag_query
from apps.docs.models import ArtifactStatus, Document, DocumentStatus, IndexArtifact
from apps.indexing.embedder import EmbeddingError, EmbeddingMismatchError
from apps.indexing.payloads import index_scope
from apps.indexing.runtime import get_runtime
from apps.indexing.vectors import DimensionMismatchError
from apps.rag.chat import (
    BRIEF_LENGTHS,
    BRIEF_RETRIEVAL_QUESTION,
    BRIEF_TOP_K,
    ChatError,
    NoGroundingError,
    compose_answer,
    compose_brief,
)
from apps.rag.embeddings import QueryValidationError, embed_query, normalize_query
from apps.rag.loader import clamp_top_k
from apps.rag.retrieval import Passage, passages_from_matches, retrieve_sections
from apps.usage.enforce import FEATURE_BRIEF, FEATURE_CHAT, PlanError, UsageBusyError, metered

logger = logging.getLogger(__name__)


class SourceError(Exception):
    """The requested document cannot be searched."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


@dataclass
class SearchSource:
    """Either a packaged index artifact or a document's section rows."""
    doc_hash: str
    artifact: Optional[IndexArtifact] = None
    document: Optional[Document] = None

    @property
    def scope(self) -> str:
        owner = self.artifact if self.artifact is not None else self.document
        return index_scope(owner.org_id, owner.tender_id, self.doc_hash)

    def _embedded_section(self):
        return self.document.sections.exclude(embedding_model='').first()

    @property
    def embedding_model(self) -> Optional[str]:
        if self.artifact is not None:
            return self.artifact.embedding_model or None
        section = self._embedded_section()
        return section.embedding_model if section else None

    @property
    def embedding_dimensions(self) -> Optional[int]:
        if self.artifact is not None:
            return self.artifact.embedding_dimensions or None
        section = self._embedded_section()
        if section is None or section.embedding is None:
            return None
        return len(section.embedding)


def resolve_source(org_id: str, tender_id: str, doc_hash: str, document_id=None) -> SearchSource:
    """
    Find what to search for a question.

    An explicit documentId selects the document's section rows. Otherwise
    the READY artifact for docHash is used, falling back to a document of
    the tender with that hash.

    Raises:
        SourceError: 404 when nothing matches, 409 when it is not READY
    """
    if document_id:
        try:
            document_uuid = uuid.UUID(str(document_id))
        except ValueError:
            raise SourceError(400, "documentId must be a UUID") from None
        document = Document.objects.filter(pk=document_uuid, org_id=org_id, tender_id=tender_id).first()
        if document is None:
            raise SourceError(404, "Document not found")
        if document.status != DocumentStatus.READY:
            raise SourceError(409, f"Document is not ready (status={document.status})")
        return SearchSource(doc_hash=document.doc_hash, document=document)

    artifact = IndexArtifact.objects.filter(doc_hash=doc_hash, org_id=org_id, tender_id=tender_id).first()
    if artifact is not None:
        if artifact.status != ArtifactStatus.READY or not artifact.storage_key:
            raise SourceError(409, f"Index is not ready (status={artifact.status})")
        return SearchSource(doc_hash=doc_hash, artifact=artifact)

    document = Document.objects.filter(doc_hash=doc_hash, org_id=org_id, tender_id=tender_id).first()
    if document is None:
        raise SourceError(404, "Document not found")
    if document.status != DocumentStatus.READY:
        raise SourceError(409, f"Document is not ready (status={document.status})")
    return SearchSource(doc_hash=doc_hash, document=document)


def search_source(runtime, source: SearchSource, question: str, top_k: int) -> List[Passage]:
    """Embed `question` with the source's model and return the best passages."""
    query_vector = embed_query(
        runtime.embedder,
        question,
        model=source.embedding_model,
        dimensions=source.embedding_dimensions,
    )

    if source.artifact is not None:
        loaded = runtime.artifacts.load(source.artifact.storage_key, scope=source.scope)
        matches = runtime.artifacts.search(loaded, query_vector, top_k)
        return passages_from_matches(loaded, matches)

    return retrieve_sections(source.document, query_vector, top_k)


def parse_body(request) -> Optional[dict]:
    if not request.body:
        return {}
    try:
        body = json.loads(request.body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def plan_denied_response(request, feature: str, e: PlanError) -> JsonResponse:
    audit_plan_denied(request, feature, e.code)
    return JsonResponse({"error": str(e), "code": e.code}, status=PlanError.http)


def embedding_mismatch_response() -> JsonResponse:
    return JsonResponse(
        {"error": "Index was embedded with a different model; rebuild it", "code": "EMBEDDING_MISMATCH"},
        status=409,
    )


def embedding_unavailable_response() -> JsonResponse:
    return JsonResponse(
        {"error": "Embedding provider unavailable", "code": "EMBEDDING_UNAVAILABLE"},
        status=503,
    )


@method_decorator(csrf_exempt, name='dispatch')
@method_decorator(auth_required, name='dispatch')
class AskView(View):
    """
    POST /api/tenders/<tenderId>/docs/<docHash>/ask

    Request body:
        {
            "question": "What is the submission deadline?",
            "topK": 8,            // optional, 1..24
            "documentId": "..."   // optional, search that document's sections
        }

    Response:
        {
            "answer": "Submissions close on 12 May [1]",
            "citations": [
                {"docId", "pageStart", "pageEnd", "page", "docName", "snippet", "score"}
            ],
            "docHash": "..."
        }
    """

    def post(self, request, tender_id, doc_hash):
        body = parse_body(request)
        if body is None:
            return JsonResponse({"error": "Invalid JSON"}, status=400)

        try:
            question = normalize_query(body.get("question", ""))
        except QueryValidationError as e:
            return JsonResponse({"error": str(e)}, status=400)

        top_k = clamp_top_k(body.get("topK"))
        principal = request.principal

        try:
            source = resolve_source(principal.org_id, tender_id, doc_hash, body.get("documentId"))
        except SourceError as e:
            return JsonResponse({"error": str(e)}, status=e.status)

        runtime = get_runtime()
        try:
            with metered(principal.org_id, FEATURE_CHAT, tender_id, runtime.locks):
                passages = search_source(runtime, source, question, top_k)
                chat_response = compose_answer(question, passages, runtime.get_llm())
        except PlanError as e:
            return plan_denied_response(request, FEATURE_CHAT, e)
        except UsageBusyError as e:
            return JsonResponse({"error": str(e), "code": "USAGE_BUSY"}, status=UsageBusyError.http)
        except NoGroundingError as e:
            return JsonResponse({"error": str(e), "code": "NO_CONTEXT"}, status=422)
        except (EmbeddingMismatchError, DimensionMismatchError):
            logger.exception(f"Query embedding does not match the index of {source.doc_hash[:12]}")
            return embedding_mismatch_response()
        except EmbeddingError:
            logger.exception(f"Query embedding failed for {source.doc_hash[:12]}")
            return embedding_unavailable_response()
        except ChatError:
            logger.exception(f"Answer generation failed for {source.doc_hash[:12]}")
            return JsonResponse({"error": "Failed to generate answer", "code": "LLM_UNAVAILABLE"}, status=500)
        except Exception:
            logger.exception(f"Ask failed for {source.doc_hash[:12]}")
            return JsonResponse({"error": "Internal error"}, status=500)

        audit_rag_query(
            request,
            question_length=len(question),
            top_k=top_k,
            citation_count=len(chat_response.citations),
        )

        response_data = chat_response.to_dict()
        response_data["docHash"] = source.doc_hash
        return JsonResponse(response_data)


@method_decorator(csrf_exempt, name='dispatch')
@method_decorator(auth_required, name='dispatch')
class BriefView(View):
    """
    POST /api/tenders/<tenderId>/docs/<docHash>/brief

    Request body:
        {"length": "short" | "medium" | "long"}   // optional, default medium

    Response:
        {"briefJson": {...} | null, "markdown": "...", "citations": [...]}
    """

    def post(self, request, tender_id, doc_hash):
        body = parse_body(request)
        if body is None:
            return JsonResponse({"error": "Invalid JSON"}, status=400)

        length = body.get("length") or "medium"
        if length not in BRIEF_LENGTHS:
            return JsonResponse(
                {"error": f"length must be one of {', '.join(BRIEF_LENGTHS)}"},
                status=400
            )

        principal = request.principal
        try:
            source = resolve_source(principal.org_id, tender_id, doc_hash)
        except SourceError as e:
            return JsonResponse({"error": str(e)}, status=e.status)

        runtime = get_runtime()
        try:
            with metered(principal.org_id, FEATURE_BRIEF, tender_id, runtime.locks):
                passages = search_source(runtime, source, BRIEF_RETRIEVAL_QUESTION, BRIEF_TOP_K)
                brief = compose_brief(passages, runtime.get_llm(), length=length)
        except PlanError as e:
            audit_brief(request, tender_id, 'denied', code=e.code)
            return plan_denied_response(request, FEATURE_BRIEF, e)
        except UsageBusyError as e:
            return JsonResponse({"error": str(e), "code": "USAGE_BUSY"}, status=UsageBusyError.http)
        except NoGroundingError as e:
            audit_brief(request, tender_id, 'no_context')
            return JsonResponse({"error": str(e), "code": "NO_CONTEXT"}, status=422)
        except (EmbeddingMismatchError, DimensionMismatchError):
            logger.exception(f"Query embedding does not match the index of {source.doc_hash[:12]}")
            audit_brief(request, tender_id, 'failed')
            return embedding_mismatch_response()
        except EmbeddingError:
            logger.exception(f"Query embedding failed for {source.doc_hash[:12]}")
            audit_brief(request, tender_id, 'failed')
            return embedding_unavailable_response()
        except Exception:
            logger.exception(f"Brief failed for {source.doc_hash[:12]}")
            audit_brief(request, tender_id, 'failed')
            return JsonResponse({"error": "Failed to generate brief"}, status=500)

        audit_brief(request, tender_id, 'created')
        return JsonResponse(brief.to_dict())


@method_decorator(csrf_exempt, name='dispatch')
@method_decorator(auth_required, name='dispatch')
class ReleaseView(View):
    """
    POST /api/tenders/<tenderId>/docs/<docHash>/release

    Drops the cached index for docHash from this process.
    """

    def post(self, request, tender_id, doc_hash):
        artifact = IndexArtifact.objects.filter(
            doc_hash=doc_hash, org_id=request.principal.org_id, tender_id=tender_id,
        ).first()
        if artifact is None:
            return JsonResponse({"error": "Index not found"}, status=404)

        released = get_runtime().artifacts.release(
            index_scope(request.principal.org_id, tender_id, doc_hash)
        )
        return JsonResponse({"docHash": doc_hash, "released": released})
