# =============================================================================
# Unit Tests — Job Orchestrator
# =============================================================================
#
# Most tests use the inline pipeline: dispatching a unit of work runs it
# immediately, so a single request_chunking call drives a job to its end.
# =============================================================================

from __future__ import annotations

import pytest

from app.db import chunk_store
from app.db.models import ChunkStatus, ChunkType, Document, DocumentStatus, JobStatus
from app.pipeline.errors import DocumentNotFoundError, InvalidTransitionError, JobNotFoundError
from app.services.chunking import ChunkingStrategy, sliding_windows

TRANSCRIPT = ("Q. Where were you that night? A. At home with my sister. " * 3000)[:150_000]


def _document(session_factory, document_id) -> Document:
    with session_factory.begin() as session:
        return session.get(Document, document_id)


class TestRequestChunking:
    def test_records_pending_job_and_dispatches_it(self, pipeline, dispatcher, make_document):
        document_id = make_document("motion.pdf")

        job = pipeline.orchestrator.request_chunking(document_id)

        assert job.status == JobStatus.PENDING
        assert job.case_id == "CASE-001"
        assert dispatcher.jobs == [job.id]
        assert _document(pipeline.session_factory, document_id).status == DocumentStatus.PROCESSING

    def test_second_request_returns_active_job(self, pipeline, dispatcher, make_document):
        document_id = make_document("motion.pdf")

        first = pipeline.orchestrator.request_chunking(document_id)
        second = pipeline.orchestrator.request_chunking(document_id)

        assert first.id == second.id
        assert dispatcher.jobs == [first.id]

    def test_unknown_document(self, pipeline):
        with pytest.raises(DocumentNotFoundError):
            pipeline.orchestrator.request_chunking(999)

    def test_tolerance_out_of_range(self, pipeline, make_document):
        document_id = make_document("motion.pdf")
        with pytest.raises(ValueError):
            pipeline.orchestrator.request_chunking(document_id, failure_tolerance=1.5)

    def test_start_job_is_safe_to_redeliver(self, pipeline, dispatcher, make_document):
        document_id = make_document("motion.pdf", page_count=4)
        job = pipeline.orchestrator.request_chunking(document_id)

        pipeline.orchestrator.start_job(job.id)
        pipeline.orchestrator.start_job(job.id)

        with pipeline.session_factory.begin() as session:
            assert chunk_store.count_chunks(session, job.id) == 4
        # The redelivery re-queues the same pending chunks, never new rows.
        assert sorted(set(dispatcher.chunk_ids)) == sorted(dispatcher.chunk_ids[:4])


class TestStrategies:
    def test_large_text_uses_sliding_windows(self, inline_pipeline, make_document):
        document_id = make_document("transcript.txt", page_count=None, text=TRANSCRIPT, size=150_000)

        job = inline_pipeline.orchestrator.request_chunking(document_id)

        progress = inline_pipeline.orchestrator.get_progress(job.id)
        assert progress.job.status == JobStatus.COMPLETED
        assert progress.job.total_units == len(sliding_windows(150_000, 4000, 500))
        assert progress.job.metadata_["chunking_strategy"] == {
            "type": "sliding-window",
            "chunkSize": 4000,
            "overlap": 500,
        }
        chunks = inline_pipeline.orchestrator.list_chunks(job.id)
        assert chunks[0].chunk_type == ChunkType.SLIDING_WINDOW
        assert chunks[1].content == TRANSCRIPT[3500:7500].strip()

    def test_small_text_is_one_page(self, inline_pipeline, make_document):
        document_id = make_document("notes.txt", page_count=None, text=TRANSCRIPT[:5000], size=50_000)

        job = inline_pipeline.orchestrator.request_chunking(document_id)

        chunks = inline_pipeline.orchestrator.list_chunks(job.id)
        assert [c.chunk_type for c in chunks] == [ChunkType.PAGE]

    def test_explicit_strategy_overrides_selection(self, inline_pipeline, make_document):
        document_id = make_document("notes.txt", page_count=None, text=TRANSCRIPT[:1000])
        strategy = ChunkingStrategy(ChunkType.SLIDING_WINDOW, chunk_size=400, overlap=100)

        job = inline_pipeline.orchestrator.request_chunking(document_id, strategy=strategy)

        assert inline_pipeline.orchestrator.get_job(job.id).total_units == 3

    def test_completed_job_aggregates_document_text(self, inline_pipeline, make_document):
        document_id = make_document("deposition.pdf", page_count=3)

        inline_pipeline.orchestrator.request_chunking(document_id)

        document = _document(inline_pipeline.session_factory, document_id)
        assert document.status == DocumentStatus.COMPLETED
        assert document.extracted_text.startswith("Page 1:")
        assert "Page 3:" in document.extracted_text
        assert document.extraction_method == "docling-pdf"

    def test_missing_file_fails_job_at_planning(self, inline_pipeline, extractor, make_document):
        document_id = make_document("lost.txt", page_count=None, text="x" * 200_000)
        extractor.missing.add("CASE-001/lost.txt")

        job = inline_pipeline.orchestrator.request_chunking(document_id)

        job = inline_pipeline.orchestrator.get_job(job.id)
        assert job.status == JobStatus.FAILED
        assert "Chunk planning failed" in job.metadata_["error"]
        assert _document(inline_pipeline.session_factory, document_id).status == DocumentStatus.FAILED


class TestFailureAndRetry:
    def test_three_of_ten_failed_then_retried(self, inline_pipeline, extractor, make_document):
        document_id = make_document("police-report.pdf", page_count=10)
        for page in (2, 5, 8):
            extractor.fail_pages.add(("CASE-001/police-report.pdf", page))

        job = inline_pipeline.orchestrator.request_chunking(document_id)

        job = inline_pipeline.orchestrator.get_job(job.id)
        assert job.status == JobStatus.FAILED
        assert (job.completed_units, job.failed_units) == (7, 3)
        assert "3 of 10 chunks failed" in job.metadata_["error"]

        extractor.fail_pages.clear()
        result = inline_pipeline.orchestrator.retry_failed_chunks(job.id)

        assert len(result.reset_chunk_ids) == 3
        assert result.dispatched == 3
        job = inline_pipeline.orchestrator.get_job(job.id)
        assert job.status == JobStatus.COMPLETED
        assert (job.completed_units, job.failed_units) == (10, 0)

        chunks = inline_pipeline.orchestrator.list_chunks(job.id)
        attempts = {c.metadata_["pageNumber"]: c.processing_attempts for c in chunks}
        assert attempts == {page: (2 if page in (2, 5, 8) else 1) for page in range(1, 11)}

    def test_failures_within_tolerance_complete_the_job(self, inline_pipeline, extractor, make_document):
        document_id = make_document("exhibits.pdf", page_count=10)
        extractor.fail_pages.add(("CASE-001/exhibits.pdf", 4))

        job = inline_pipeline.orchestrator.request_chunking(document_id, failure_tolerance=0.1)

        job = inline_pipeline.orchestrator.get_job(job.id)
        assert job.status == JobStatus.COMPLETED
        assert job.failed_units == 1

    def test_retry_without_failed_chunks_is_a_no_op(self, inline_pipeline, make_document):
        document_id = make_document("clean.pdf", page_count=2)
        job = inline_pipeline.orchestrator.request_chunking(document_id)

        result = inline_pipeline.orchestrator.retry_failed_chunks(job.id)

        assert result.reset_chunk_ids == []
        assert inline_pipeline.orchestrator.get_job(job.id).status == JobStatus.COMPLETED

    def test_retry_unknown_job(self, pipeline):
        with pytest.raises(JobNotFoundError):
            pipeline.orchestrator.retry_failed_chunks(12345)

    def test_progress_lists_failed_chunks(self, inline_pipeline, extractor, make_document):
        document_id = make_document("scan.pdf", page_count=4)
        extractor.fail_pages.add(("CASE-001/scan.pdf", 3))

        job = inline_pipeline.orchestrator.request_chunking(document_id)
        progress = inline_pipeline.orchestrator.get_progress(job.id)

        assert progress.stats.completed == 3
        assert progress.stats.failed == 1
        assert progress.stats.progress_percentage == 75.0
        assert [c.metadata_["pageNumber"] for c in progress.failed_chunks] == [3]
        assert progress.failed_chunks[0].error_log["code"] == "PDF_EXTRACTION_FAILED"


class TestCancelAndReprocess:
    def test_cancel_skips_pending_chunks(self, pipeline, dispatcher, make_document):
        document_id = make_document("brief.pdf", page_count=3)
        job = pipeline.orchestrator.request_chunking(document_id)
        pipeline.orchestrator.start_job(job.id)
        pipeline.orchestrator.handle_chunk(dispatcher.chunk_ids[0])

        cancelled = pipeline.orchestrator.cancel_job(job.id)

        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.completed_at is not None
        stats = pipeline.orchestrator.get_progress(job.id).stats
        assert (stats.completed, stats.skipped) == (1, 2)

    def test_cancel_twice_is_rejected(self, pipeline, make_document):
        document_id = make_document("brief.pdf")
        job = pipeline.orchestrator.request_chunking(document_id)
        pipeline.orchestrator.cancel_job(job.id)

        with pytest.raises(InvalidTransitionError):
            pipeline.orchestrator.cancel_job(job.id)

    def test_reprocess_case_starts_over(self, inline_pipeline, make_document):
        first_doc = make_document("a.pdf", page_count=2)
        second_doc = make_document("b.pdf", page_count=1)
        make_document("other.pdf", case_id="CASE-002")
        old_job = inline_pipeline.orchestrator.request_chunking(first_doc)

        result = inline_pipeline.orchestrator.reprocess_case("CASE-001")

        assert result.deleted_chunks == 2
        assert len(result.job_ids) == 2
        assert old_job.id not in result.job_ids
        for job_id in result.job_ids:
            assert inline_pipeline.orchestrator.get_job(job_id).status == JobStatus.COMPLETED
        assert _document(inline_pipeline.session_factory, second_doc).status == DocumentStatus.COMPLETED
        assert len(inline_pipeline.orchestrator.list_jobs("CASE-002")) == 0

    def test_list_jobs_active_only(self, pipeline, make_document):
        document_id = make_document("brief.pdf")
        job = pipeline.orchestrator.request_chunking(document_id)

        assert [j.id for j in pipeline.orchestrator.list_jobs("CASE-001", active_only=True)] == [job.id]
        pipeline.orchestrator.cancel_job(job.id)
        assert pipeline.orchestrator.list_jobs("CASE-001", active_only=True) == []


class TestEmbeddingBackfill:
    def test_backfill_embeds_chunks_without_vectors(self, inline_pipeline, make_document):
        document_id = make_document("memo.pdf", page_count=2)
        job = inline_pipeline.orchestrator.request_chunking(document_id, generate_embedding=False)

        summary = inline_pipeline.orchestrator.generate_missing_embeddings(job.id)

        assert summary == {"processed": 2, "failed": 0}
        with inline_pipeline.session_factory.begin() as session:
            assert chunk_store.chunks_missing_embedding(session, job_id=job.id) == []

    def test_backfill_request_goes_through_dispatcher(self, pipeline, dispatcher, make_document):
        document_id = make_document("memo.pdf")
        job = pipeline.orchestrator.request_chunking(document_id)

        assert pipeline.orchestrator.request_embedding_backfill(job.id) is True
        assert dispatcher.backfills == [job.id]

    def test_backfill_dispatch_failure_is_reported_not_raised(
        self, pipeline, dispatcher, make_document, monkeypatch
    ):
        def unreachable(_job_id=None):
            raise ConnectionError("broker unreachable")

        monkeypatch.setattr(dispatcher, "dispatch_embedding_backfill", unreachable)
        job = pipeline.orchestrator.request_chunking(make_document("memo.pdf"))

        assert pipeline.orchestrator.request_embedding_backfill(job.id) is False

    def test_failed_chunks_are_not_backfilled(self, inline_pipeline, extractor, make_document):
        document_id = make_document("scan.pdf", page_count=2)
        extractor.fail_pages.add(("CASE-001/scan.pdf", 1))
        job = inline_pipeline.orchestrator.request_chunking(document_id, generate_embedding=False)

        summary = inline_pipeline.orchestrator.generate_missing_embeddings(job.id)

        assert summary["processed"] == 1
        failed = inline_pipeline.orchestrator.list_chunks(job.id, status=ChunkStatus.FAILED)
        assert failed[0].embedding is None


class TestCaseStats:
    def test_totals_across_case_documents(self, inline_pipeline, extractor, make_document):
        first = make_document("scan.pdf", page_count=3)
        second = make_document("memo.pdf", page_count=2)
        make_document("unprocessed.pdf")
        make_document("other-case.pdf", case_id="CASE-002")
        extractor.fail_pages.add(("CASE-001/scan.pdf", 2))
        inline_pipeline.orchestrator.request_chunking(first, generate_embedding=False)
        inline_pipeline.orchestrator.request_chunking(second, generate_embedding=False)

        stats = inline_pipeline.orchestrator.get_case_stats("CASE-001")

        assert stats.total_documents == 3
        assert stats.chunked_documents == 2
        assert (stats.total_chunks, stats.completed_chunks, stats.failed_chunks) == (5, 4, 1)
        assert stats.completion_percentage == 80.0
        assert stats.total_characters > 0
        assert stats.average_confidence is not None

    def test_case_without_chunks(self, pipeline, make_document):
        make_document("waiting.pdf", case_id="CASE-003")

        stats = pipeline.orchestrator.get_case_stats("CASE-003")

        assert stats.total_documents == 1
        assert stats.total_chunks == 0
        assert stats.completion_percentage == 0.0
        assert stats.average_confidence is None
