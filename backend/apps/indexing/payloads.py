"""
Typed job payloads for each pipeline stage.

Payloads travel through the queue as JSON in the camelCase wire schema:

    {kind, orgId, tenderId, documentId, docHash,
     storage: {bucket, rawKey, extractedKey, chunksKey, summaryKey},
     uploadId, filename, ...stage-specific fields}

decode_payload() turns a stored dict back into the right dataclass so
stage handlers work with explicit fields.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Type

from apps.indexing.models import JobKind


@dataclass(frozen=True)
class StoragePaths:
    """Blob locations of a document's raw file and stage outputs."""
    bucket: str
    raw_key: str
    extracted_key: str
    chunks_key: str
    summary_key: str

    def to_dict(self) -> Dict:
        return {
            'bucket': self.bucket,
            'rawKey': self.raw_key,
            'extractedKey': self.extracted_key,
            'chunksKey': self.chunks_key,
            'summaryKey': self.summary_key,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'StoragePaths':
        return cls(
            bucket=data['bucket'],
            raw_key=data['rawKey'],
            extracted_key=data['extractedKey'],
            chunks_key=data['chunksKey'],
            summary_key=data['summaryKey'],
        )


def document_base_path(org_id: str, tender_id: str, doc_hash: str) -> str:
    return f"org/{org_id}/tender/{tender_id}/docs/{doc_hash}"


def document_storage_paths(
    bucket: str,
    org_id: str,
    tender_id: str,
    doc_hash: str,
    extension: str = '.pdf',
    raw_key: Optional[str] = None,
) -> StoragePaths:
    """Deterministic per-document keys for every stage output."""
    base = document_base_path(org_id, tender_id, doc_hash)
    return StoragePaths(
        bucket=bucket,
        raw_key=raw_key or f"{base}/raw{extension}",
        extracted_key=f"{base}/extracted.jsonl.gz",
        chunks_key=f"{base}/chunks.jsonl.gz",
        summary_key=f"{base}/summaries.json",
    )


def index_scope(org_id: str, tender_id: str, doc_hash: str) -> str:
    """
    Key fragment for per-document state shared across stages.

    Progress, resume state, locks, build workspaces and cached artifacts
    are all keyed by it, so identical bytes in two orgs or two tenders
    never share any of them.
    """
    return f"{org_id}:{tender_id}:{doc_hash}"


def tender_manifest_key(org_id: str, tender_id: str) -> str:
    return f"org/{org_id}/tender/{tender_id}/manifest.json"


@dataclass(frozen=True)
class ManifestPayload:
    """Discover the documents inside an upload."""
    org_id: str
    tender_id: str
    upload_id: str

    kind = JobKind.MANIFEST

    @property
    def job_key(self) -> str:
        return f"{self.org_id}:{self.tender_id}:{self.upload_id}:manifest"

    def to_dict(self) -> Dict:
        return {
            'kind': self.kind.value,
            'orgId': self.org_id,
            'tenderId': self.tender_id,
            'uploadId': self.upload_id,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ManifestPayload':
        return cls(org_id=data['orgId'], tender_id=data['tenderId'], upload_id=data['uploadId'])


@dataclass(frozen=True)
class DocumentPayload:
    """Fields shared by every per-document stage."""
    org_id: str
    tender_id: str
    document_id: str
    doc_hash: str
    storage: StoragePaths
    upload_id: Optional[str] = None
    filename: Optional[str] = None

    kind = None

    @property
    def scope(self) -> str:
        return index_scope(self.org_id, self.tender_id, self.doc_hash)

    @property
    def job_key(self) -> str:
        return f"{self.scope}:{self.kind.value}"

    def _base_dict(self) -> Dict:
        return {
            'kind': self.kind.value,
            'orgId': self.org_id,
            'tenderId': self.tender_id,
            'documentId': self.document_id,
            'docHash': self.doc_hash,
            'storage': self.storage.to_dict(),
            'uploadId': self.upload_id,
            'filename': self.filename,
        }

    def to_dict(self) -> Dict:
        return self._base_dict()

    @staticmethod
    def _base_kwargs(data: Dict) -> Dict:
        return {
            'org_id': data['orgId'],
            'tender_id': data['tenderId'],
            'document_id': data['documentId'],
            'doc_hash': data['docHash'],
            'storage': StoragePaths.from_dict(data['storage']),
            'upload_id': data.get('uploadId'),
            'filename': data.get('filename'),
        }

    @classmethod
    def from_dict(cls, data: Dict):
        return cls(**cls._base_kwargs(data))

    def base_fields(self) -> Dict:
        return {
            'org_id': self.org_id,
            'tender_id': self.tender_id,
            'document_id': self.document_id,
            'doc_hash': self.doc_hash,
            'storage': self.storage,
            'upload_id': self.upload_id,
            'filename': self.filename,
        }


@dataclass(frozen=True)
class ExtractPayload(DocumentPayload):
    kind = JobKind.EXTRACT


@dataclass(frozen=True)
class ChunkPayload(DocumentPayload):
    extracted_pages: int = 0

    kind = JobKind.CHUNK

    def to_dict(self) -> Dict:
        return {**self._base_dict(), 'extractedPages': self.extracted_pages}

    @classmethod
    def from_dict(cls, data: Dict) -> 'ChunkPayload':
        return cls(**cls._base_kwargs(data), extracted_pages=int(data.get('extractedPages') or 0))


@dataclass(frozen=True)
class EmbedPayload(DocumentPayload):
    chunk_count: int = 0

    kind = JobKind.EMBED

    def to_dict(self) -> Dict:
        return {**self._base_dict(), 'chunkCount': self.chunk_count}

    @classmethod
    def from_dict(cls, data: Dict) -> 'EmbedPayload':
        return cls(**cls._base_kwargs(data), chunk_count=int(data.get('chunkCount') or 0))


@dataclass(frozen=True)
class SummaryPayload(DocumentPayload):
    section_count: int = 0

    kind = JobKind.SUMMARY

    def to_dict(self) -> Dict:
        return {**self._base_dict(), 'sectionCount': self.section_count}

    @classmethod
    def from_dict(cls, data: Dict) -> 'SummaryPayload':
        return cls(**cls._base_kwargs(data), section_count=int(data.get('sectionCount') or 0))


@dataclass(frozen=True)
class ArtifactPayload:
    """Build the packaged index of a whole upload."""
    org_id: str
    tender_id: str
    doc_hash: str
    upload_id: str
    bucket: str
    storage_key: str
    filename: str
    version: int = 1
    force: bool = False

    kind = JobKind.ARTIFACT

    @property
    def scope(self) -> str:
        return index_scope(self.org_id, self.tender_id, self.doc_hash)

    @property
    def job_key(self) -> str:
        return f"{self.scope}:artifact"

    def to_dict(self) -> Dict:
        return {
            'kind': self.kind.value,
            'orgId': self.org_id,
            'tenderId': self.tender_id,
            'docHash': self.doc_hash,
            'uploadId': self.upload_id,
            'bucket': self.bucket,
            'storageKey': self.storage_key,
            'filename': self.filename,
            'version': self.version,
            'force': self.force,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ArtifactPayload':
        return cls(
            org_id=data['orgId'],
            tender_id=data['tenderId'],
            doc_hash=data['docHash'],
            upload_id=data['uploadId'],
            bucket=data['bucket'],
            storage_key=data['storageKey'],
            filename=data.get('filename') or '',
            version=int(data.get('version') or 1),
            force=bool(data.get('force')),
        )


PAYLOAD_TYPES: Dict[str, Type] = {
    JobKind.MANIFEST.value: ManifestPayload,
    JobKind.EXTRACT.value: ExtractPayload,
    JobKind.CHUNK.value: ChunkPayload,
    JobKind.EMBED.value: EmbedPayload,
    JobKind.SUMMARY.value: SummaryPayload,
    JobKind.ARTIFACT.value: ArtifactPayload,
}


class PayloadError(ValueError):
    """A stored payload does not match its job kind."""
    permanent = True


def decode_payload(kind: str, data: Dict):
    """Rebuild the typed payload of a job."""
    payload_type = PAYLOAD_TYPES.get(kind)
    if payload_type is None:
        raise PayloadError(f"Unknown job kind: {kind}")
    if data.get('kind', kind) != kind:
        raise PayloadError(f"Payload tagged {data.get('kind')} stored on a {kind} job")
    try:
        return payload_type.from_dict(data)
    except (KeyError, TypeError) as e:
        raise PayloadError(f"Malformed {kind} payload: {e}") from e


def successor(payload: DocumentPayload, payload_type: Type, **extra):
    """Next-stage payload carrying over the shared document fields."""
    return payload_type(**payload.base_fields(), **extra)
