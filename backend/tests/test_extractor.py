"""
Tests for text extraction, archive expansion and blob storage.
"""
import io
import zipfile

import docx
import pytest

from apps.docs.storage import LOCAL_FALLBACK_PREFIX, FallbackBlobStore, LocalBlobStore, StorageError
from apps.indexing.archive import ArchiveError, expand_archive, looks_like_archive
from apps.indexing.extractor import (
    ExtractionError,
    decode_pages,
    encode_pages,
    extract_pages,
    guess_content_type,
    inspect_pdf,
)


def zip_bytes(files: dict) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as archive:
        for name, data in files.items():
            archive.writestr(name, data)
    return buffer.getvalue()


# ============================================================================
# Extraction
# ============================================================================

class TestExtractPages:

    def test_text_pages_split_on_form_feed(self):
        pages = extract_pages(b"Section 1\n\nScope\fSection 2\f", 'tender.txt')

        assert pages == ["Section 1 Scope", "Section 2", ""]

    def test_invalid_utf8_is_tolerated(self):
        assert extract_pages(b"Bid \xff security", 'notes.md') == ["Bid security"]

    def test_docx_paragraphs(self):
        document = docx.Document()
        document.add_paragraph("Instructions to Bidders")
        document.add_paragraph("Submit two copies.")
        buffer = io.BytesIO()
        document.save(buffer)

        pages = extract_pages(buffer.getvalue(), 'itb.docx')

        assert pages == ["Instructions to Bidders Submit two copies."]

    def test_corrupt_docx(self):
        with pytest.raises(ExtractionError):
            extract_pages(b"not a word document", 'broken.docx')

    def test_unsupported_format(self):
        with pytest.raises(ExtractionError):
            extract_pages(b"\x00", 'drawing.dwg')

    def test_content_type_hint(self):
        assert extract_pages(b"plain", 'upload', content_type='text/plain') == ["plain"]

    def test_pages_round_trip(self):
        pages = ["one", "", "three"]

        assert decode_pages(encode_pages(pages)) == pages

    def test_guess_content_type(self):
        assert guess_content_type('a/B.PDF') == 'application/pdf'
        assert guess_content_type('x.bin') == 'application/octet-stream'

    def test_inspect_pdf(self):
        data = b"%PDF-1.4 /Type /Pages /Type /Page /Type/Page BT (Hi) Tj ET"

        assert inspect_pdf(data) == {'pages': 2, 'hasText': True}


# ============================================================================
# Archives
# ============================================================================

class TestExpandArchive:

    def test_sorted_supported_entries(self):
        data = zip_bytes({
            'z/last.txt': "z",
            'a/first.md': "a",
            'a/.DS_Store': "junk",
            '__MACOSX/a/._first.md': "junk",
            'cad/site.dwg': "junk",
        })

        entries = expand_archive(data)

        assert [e.path for e in entries] == ['a/first.md', 'z/last.txt']
        assert entries[0].name == 'first.md'
        assert entries[0].data == b"a"

    def test_entry_limit(self):
        data = zip_bytes({f"doc{i}.txt": str(i) for i in range(5)})

        assert len(expand_archive(data, max_entries=2)) == 2

    def test_nothing_usable(self):
        with pytest.raises(ArchiveError):
            expand_archive(zip_bytes({'site.dwg': "x"}))

    def test_corrupt_archive(self):
        with pytest.raises(ArchiveError):
            expand_archive(b"PK not really")

    def test_looks_like_archive(self):
        zipped = zip_bytes({'a.txt': "a"})

        assert looks_like_archive('bundle.zip', b"")
        assert looks_like_archive('bundle', zipped)
        assert not looks_like_archive('form.docx', zipped)
        assert not looks_like_archive('bundle', b"plain text")


# ============================================================================
# Local blob store
# ============================================================================

class TestLocalBlobStore:

    def test_put_get_delete(self, blobs):
        key = blobs.put('uploads', 'org/o/a.txt', b"data")

        assert blobs.exists('uploads', key)
        assert blobs.get('uploads', key) == b"data"

        blobs.delete('uploads', key)
        assert not blobs.exists('uploads', key)

    def test_missing_blob(self, blobs):
        with pytest.raises(StorageError):
            blobs.get('uploads', 'missing.txt')

    def test_keys_cannot_escape_root(self, tmp_path):
        store = LocalBlobStore(root=tmp_path / 'blobs')

        with pytest.raises(StorageError):
            store.put('uploads', '../../etc/passwd', b"x")

    def test_fallback_store_spills_large_objects(self, tmp_path):
        primary = LocalBlobStore(root=tmp_path / 'primary', max_object_bytes=4)
        spill = LocalBlobStore(root=tmp_path / 'spill')
        store = FallbackBlobStore(primary, spill)

        small = store.put('indexes', 'a.bin', b"abc")
        large = store.put('indexes', 'b.bin', b"abcdefgh")

        assert small == 'a.bin'
        assert large == f"{LOCAL_FALLBACK_PREFIX}b.bin"
        assert store.get('indexes', large) == b"abcdefgh"
        assert store.get('indexes', 'b.bin') == b"abcdefgh"
        assert store.exists('indexes', 'b.bin')
