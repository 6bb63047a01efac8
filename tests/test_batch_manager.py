# =============================================================================
# Unit Tests — Batch Session Manager
# =============================================================================
#
# test_settings uses batch_size=2 and a single worker thread, so documents
# are processed strictly in input order, two per checkpoint.
# =============================================================================

from __future__ import annotations

from unittest.mock import patch

import pytest
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from app.db import batch_store
from app.db.models import (
    BatchDocumentState,
    BatchDocumentStatus,
    BatchSession,
    BatchSessionStatus,
    Document,
    DocumentStatus,
)
from app.pipeline.errors import (
    BatchSessionNotFoundError,
    DocumentNotFoundError,
    InvalidTransitionError,
)


def _make_documents(make_document, count: int, case_id: str = "CASE-001") -> list[int]:
    return [
        make_document(f"exhibit-{n}.txt", case_id=case_id, page_count=1, text=f"Exhibit {n} text body.")
        for n in range(1, count + 1)
    ]


def _checkpoint_failing_once(error: BaseException):
    real_checkpoint = batch_store.checkpoint
    calls = []

    def checkpoint(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise error
        return real_checkpoint(*args, **kwargs)

    return checkpoint


def _states(pipeline, session_id) -> dict[int, BatchDocumentState]:
    with pipeline.session_factory.begin() as session:
        return {
            row.document_id: row.status
            for row in batch_store.list_document_statuses(session, session_id)
        }


class TestCreateSession:
    def test_counts_batches_and_keeps_order(self, pipeline, make_document):
        doc_ids = _make_documents(make_document, 5)

        batch = pipeline.batch_manager.create_session(list(reversed(doc_ids)))

        assert batch.status == BatchSessionStatus.CREATED
        assert batch.total_documents == 5
        assert batch.total_batches == 3
        assert batch.document_ids == list(reversed(doc_ids))
        assert set(_states(pipeline, batch.id).values()) == {BatchDocumentState.PENDING}

    def test_case_selects_documents_not_yet_completed(self, pipeline, make_document):
        doc_ids = _make_documents(make_document, 3)
        _make_documents(make_document, 2, case_id="CASE-002")
        with pipeline.session_factory.begin() as session:
            session.get(Document, doc_ids[1]).status = DocumentStatus.COMPLETED

        batch = pipeline.batch_manager.create_session(case_id="CASE-001")

        assert batch.document_ids == [doc_ids[0], doc_ids[2]]

    def test_unknown_document_is_rejected(self, pipeline, make_document):
        doc_id = make_document("real.txt")
        with pytest.raises(DocumentNotFoundError):
            pipeline.batch_manager.create_session([doc_id, 9999])

    def test_needs_ids_or_case(self, pipeline):
        with pytest.raises(ValueError):
            pipeline.batch_manager.create_session()


class TestRunSession:
    def test_runs_every_document_to_completion(self, inline_pipeline, extractor, make_document):
        doc_ids = _make_documents(make_document, 5)
        batch = inline_pipeline.batch_manager.create_session(doc_ids)

        inline_pipeline.batch_manager.start_session(batch.id)

        batch = inline_pipeline.batch_manager.get_session(batch.id)
        assert batch.status == BatchSessionStatus.COMPLETED
        assert (batch.documents_processed, batch.documents_succeeded, batch.documents_failed) == (5, 5, 0)
        assert batch.progress_percentage == 100.0
        assert batch.current_batch_number == 3
        assert batch.last_checkpoint is not None
        assert [extractor.calls[f"CASE-001/exhibit-{n}.txt"] for n in range(1, 6)] == [1] * 5

    def test_document_text_is_written_back(self, inline_pipeline, make_document):
        doc_id = make_document("statement.txt", text="The defendant was seen at the scene.")
        batch = inline_pipeline.batch_manager.create_session([doc_id])

        inline_pipeline.batch_manager.start_session(batch.id)

        with inline_pipeline.session_factory.begin() as session:
            document = session.get(Document, doc_id)
            assert document.status == DocumentStatus.COMPLETED
            assert document.extracted_text == "The defendant was seen at the scene."
        progress = inline_pipeline.batch_manager.get_progress(batch.id)
        assert progress.counts["completed"] == 1
        assert progress.remaining == 0

    def test_failing_document_does_not_stop_siblings(self, inline_pipeline, extractor, make_document):
        doc_ids = _make_documents(make_document, 3)
        extractor.missing.add("CASE-001/exhibit-2.txt")
        batch = inline_pipeline.batch_manager.create_session(doc_ids)

        inline_pipeline.batch_manager.start_session(batch.id)

        batch = inline_pipeline.batch_manager.get_session(batch.id)
        assert batch.status == BatchSessionStatus.COMPLETED
        assert (batch.documents_succeeded, batch.documents_failed) == (2, 1)
        assert _states(inline_pipeline, batch.id)[doc_ids[1]] == BatchDocumentState.FAILED

        errors = inline_pipeline.batch_manager.list_errors(batch.id)
        assert [e.document_id for e in errors] == [doc_ids[1]]
        assert "File not found" in errors[0].error_message
        assert errors[0].error_stack

    def test_enrichment_failure_is_not_fatal(self, inline_pipeline, make_document):
        doc_id = make_document("memo.txt", text="Memo body with enough words.")

        def broken_enrich(_document_id, _text):
            raise RuntimeError("entity service unavailable")

        inline_pipeline.batch_manager.enrich = broken_enrich
        batch = inline_pipeline.batch_manager.create_session([doc_id], options={"extract_entities": True})

        inline_pipeline.batch_manager.start_session(batch.id)

        with inline_pipeline.session_factory.begin() as session:
            row = batch_store.get_document_status(session, batch.id, doc_id)
            assert row.status == BatchDocumentState.COMPLETED
            assert row.result["enrichmentError"] == "entity service unavailable"

    def test_enrichment_result_is_stored(self, inline_pipeline, make_document):
        doc_id = make_document("memo.txt", text="Memo body with enough words.")
        inline_pipeline.batch_manager.enrich = lambda _id, text: {"words": len(text.split())}
        batch = inline_pipeline.batch_manager.create_session([doc_id], options={"extract_entities": True})

        inline_pipeline.batch_manager.start_session(batch.id)

        with inline_pipeline.session_factory.begin() as session:
            row = batch_store.get_document_status(session, batch.id, doc_id)
            assert row.result["enrichment"] == {"words": 5}

    def test_run_of_unknown_or_idle_session_is_a_no_op(self, pipeline, make_document):
        assert pipeline.batch_manager.run_session(777) is None
        batch = pipeline.batch_manager.create_session(_make_documents(make_document, 1))
        assert pipeline.batch_manager.run_session(batch.id).status == BatchSessionStatus.CREATED


class TestPauseResume:
    def test_pause_stops_after_current_batch_and_resume_finishes(
        self, inline_pipeline, extractor, make_document
    ):
        doc_ids = _make_documents(make_document, 5)
        batch = inline_pipeline.batch_manager.create_session(doc_ids)

        def pause_once(_locator):
            extractor.on_extract = None
            inline_pipeline.batch_manager.pause_session(batch.id)

        extractor.on_extract = pause_once
        paused = inline_pipeline.batch_manager.start_session(batch.id)

        assert paused.status == BatchSessionStatus.PAUSED
        assert paused.paused_at is not None
        assert paused.documents_processed == 2
        states = _states(inline_pipeline, batch.id)
        assert [states[d] for d in doc_ids] == [BatchDocumentState.COMPLETED] * 2 + [
            BatchDocumentState.PENDING
        ] * 3

        resumed = inline_pipeline.batch_manager.resume_session(batch.id)

        assert resumed.status == BatchSessionStatus.COMPLETED
        assert resumed.documents_processed == 5
        assert all(count == 1 for count in extractor.calls.values())
        assert sum(extractor.calls.values()) == 5

    def test_resume_requires_paused(self, pipeline, make_document):
        batch = pipeline.batch_manager.create_session(_make_documents(make_document, 1))
        pipeline.batch_manager.start_session(batch.id)

        with pytest.raises(InvalidTransitionError):
            pipeline.batch_manager.resume_session(batch.id)

    def test_crashed_run_skips_completed_documents(self, pipeline, dispatcher, extractor, make_document):
        doc_ids = _make_documents(make_document, 3)
        batch = pipeline.batch_manager.create_session(doc_ids)
        pipeline.batch_manager.start_session(batch.id)
        assert dispatcher.sessions == [batch.id]

        # The first runner got through one document before it died.
        first = pipeline.batch_manager.process_document(batch.id, doc_ids[0])
        assert first.status == "completed"

        pipeline.batch_manager.run_session(batch.id)

        assert extractor.calls["CASE-001/exhibit-1.txt"] == 1
        batch = pipeline.batch_manager.get_session(batch.id)
        assert batch.status == BatchSessionStatus.COMPLETED
        assert batch.documents_succeeded == 3

    def test_replayed_document_is_skipped(self, pipeline, make_document):
        doc_id = _make_documents(make_document, 1)[0]
        batch = pipeline.batch_manager.create_session([doc_id])

        pipeline.batch_manager.process_document(batch.id, doc_id)
        replay = pipeline.batch_manager.process_document(batch.id, doc_id)

        assert replay.status == "skipped"
        assert replay.result["extractedChars"] > 0

    def test_cancelled_session_stops_dispatching(self, pipeline, make_document):
        batch = pipeline.batch_manager.create_session(_make_documents(make_document, 2))
        pipeline.batch_manager.start_session(batch.id)
        pipeline.batch_manager.cancel_session(batch.id)

        result = pipeline.batch_manager.run_session(batch.id)

        assert result.status == BatchSessionStatus.CANCELLED
        assert set(_states(pipeline, batch.id).values()) == {BatchDocumentState.PENDING}

    def test_unknown_session(self, pipeline):
        with pytest.raises(BatchSessionNotFoundError):
            pipeline.batch_manager.pause_session(31337)


class TestCheckpoint:
    def test_processed_equals_succeeded_plus_failed(self, inline_pipeline, extractor, make_document):
        doc_ids = _make_documents(make_document, 4)
        extractor.missing.add("CASE-001/exhibit-3.txt")
        batch = inline_pipeline.batch_manager.create_session(doc_ids)
        snapshots = []

        def observe(_locator):
            with inline_pipeline.session_factory.begin() as session:
                row = batch_store.get_session(session, batch.id)
                snapshots.append(
                    (row.documents_processed, row.documents_succeeded, row.documents_failed)
                )

        extractor.on_extract = observe
        inline_pipeline.batch_manager.start_session(batch.id)

        batch = inline_pipeline.batch_manager.get_session(batch.id)
        snapshots.append((batch.documents_processed, batch.documents_succeeded, batch.documents_failed))
        assert all(processed == ok + failed for processed, ok, failed in snapshots)
        assert snapshots[-1] == (4, 3, 1)
        assert batch.checkpoint_data["batchNumber"] == 2


class TestRetryFailedDocuments:
    def test_retry_reopens_completed_session(self, inline_pipeline, extractor, make_document):
        doc_ids = _make_documents(make_document, 3)
        extractor.missing.add("CASE-001/exhibit-2.txt")
        batch = inline_pipeline.batch_manager.create_session(doc_ids)
        inline_pipeline.batch_manager.start_session(batch.id)

        extractor.missing.clear()
        reset = inline_pipeline.batch_manager.retry_failed_documents(batch.id)

        assert reset == [doc_ids[1]]
        batch = inline_pipeline.batch_manager.get_session(batch.id)
        assert batch.status == BatchSessionStatus.COMPLETED
        assert (batch.documents_succeeded, batch.documents_failed) == (3, 0)
        assert extractor.calls["CASE-001/exhibit-1.txt"] == 1
        with inline_pipeline.session_factory.begin() as session:
            row = batch_store.get_document_status(session, batch.id, doc_ids[1])
            assert row.retry_count == 1

    def test_exhausted_documents_are_not_retried(self, inline_pipeline, extractor, make_document):
        doc_id = _make_documents(make_document, 1)[0]
        extractor.missing.add("CASE-001/exhibit-1.txt")
        batch = inline_pipeline.batch_manager.create_session([doc_id])
        inline_pipeline.batch_manager.start_session(batch.id)
        with inline_pipeline.session_factory.begin() as session:
            session.execute(
                update(BatchDocumentStatus)
                .where(BatchDocumentStatus.session_id == batch.id)
                .values(retry_count=3)
            )

        assert inline_pipeline.batch_manager.retry_failed_documents(batch.id) == []
        assert inline_pipeline.batch_manager.get_session(batch.id).status == BatchSessionStatus.COMPLETED

    def test_cancelled_session_cannot_be_retried(self, pipeline, make_document):
        batch = pipeline.batch_manager.create_session(_make_documents(make_document, 1))
        pipeline.batch_manager.cancel_session(batch.id)

        with pytest.raises(InvalidTransitionError):
            pipeline.batch_manager.retry_failed_documents(batch.id)

    def test_list_sessions_by_case(self, pipeline, make_document):
        first = pipeline.batch_manager.create_session(_make_documents(make_document, 1), case_id="CASE-001")
        pipeline.batch_manager.create_session(
            _make_documents(make_document, 1, case_id="CASE-002"), case_id="CASE-002"
        )

        assert [s.id for s in pipeline.batch_manager.list_sessions("CASE-001")] == [first.id]


class TestInterruptedRun:
    """A run that dies between documents keeps every finished document."""

    def test_failed_run_resumes_from_first_open_document(self, pipeline, dispatcher, extractor, make_document):
        doc_ids = _make_documents(make_document, 4)
        batch = pipeline.batch_manager.create_session(doc_ids)
        pipeline.batch_manager.start_session(batch.id)

        with patch.object(batch_store, "checkpoint", side_effect=_checkpoint_failing_once(RuntimeError("disk full"))):
            failed = pipeline.batch_manager.run_session(batch.id)

        assert failed.status == BatchSessionStatus.FAILED
        assert failed.error_message == "disk full"
        states = _states(pipeline, batch.id)
        assert [states[d] for d in doc_ids] == [BatchDocumentState.COMPLETED] * 2 + [
            BatchDocumentState.PENDING
        ] * 2

        resumed = pipeline.batch_manager.resume_session(batch.id)

        assert resumed.status == BatchSessionStatus.RUNNING
        assert resumed.error_message is None
        assert dispatcher.sessions == [batch.id, batch.id]

        finished = pipeline.batch_manager.run_session(batch.id)

        assert finished.status == BatchSessionStatus.COMPLETED
        assert finished.documents_succeeded == 4
        assert all(count == 1 for count in extractor.calls.values())
        assert sum(extractor.calls.values()) == 4

    def test_retry_failed_reopens_session_with_open_documents(self, pipeline, dispatcher, make_document):
        doc_ids = _make_documents(make_document, 4)
        batch = pipeline.batch_manager.create_session(doc_ids)
        pipeline.batch_manager.start_session(batch.id)
        with patch.object(batch_store, "checkpoint", side_effect=_checkpoint_failing_once(RuntimeError("disk full"))):
            pipeline.batch_manager.run_session(batch.id)

        assert pipeline.batch_manager.retry_failed_documents(batch.id) == []

        assert pipeline.batch_manager.get_session(batch.id).status == BatchSessionStatus.RUNNING
        assert dispatcher.sessions == [batch.id, batch.id]
        assert pipeline.batch_manager.run_session(batch.id).status == BatchSessionStatus.COMPLETED

    def test_storage_error_propagates_and_leaves_session_running(self, pipeline, make_document):
        doc_ids = _make_documents(make_document, 4)
        batch = pipeline.batch_manager.create_session(doc_ids)
        pipeline.batch_manager.start_session(batch.id)
        db_down = OperationalError("UPDATE batch_sessions", {}, Exception("connection refused"))

        with patch.object(batch_store, "checkpoint", side_effect=_checkpoint_failing_once(db_down)):
            with pytest.raises(OperationalError):
                pipeline.batch_manager.run_session(batch.id)

        assert pipeline.batch_manager.get_session(batch.id).status == BatchSessionStatus.RUNNING

        finished = pipeline.batch_manager.run_session(batch.id)
        assert finished.status == BatchSessionStatus.COMPLETED
        assert finished.documents_processed == 4

    def test_time_limit_pauses_session(self, pipeline, make_document):
        doc_ids = _make_documents(make_document, 4)
        batch = pipeline.batch_manager.create_session(doc_ids)
        pipeline.batch_manager.start_session(batch.id)

        with patch.object(batch_store, "checkpoint", side_effect=_checkpoint_failing_once(SoftTimeLimitExceeded())):
            paused = pipeline.batch_manager.run_session(batch.id)

        assert paused.status == BatchSessionStatus.PAUSED
        assert "time limit" in paused.error_message

        pipeline.batch_manager.resume_session(batch.id)
        finished = pipeline.batch_manager.run_session(batch.id)

        assert finished.status == BatchSessionStatus.COMPLETED
        assert finished.error_message is None
        assert finished.documents_succeeded == 4

    def test_failed_session_without_open_documents_cannot_resume(self, inline_pipeline, make_document):
        batch = inline_pipeline.batch_manager.create_session(_make_documents(make_document, 2))
        inline_pipeline.batch_manager.start_session(batch.id)
        with inline_pipeline.session_factory.begin() as session:
            session.execute(
                update(BatchSession)
                .where(BatchSession.id == batch.id)
                .values(status=BatchSessionStatus.FAILED)
            )

        with pytest.raises(InvalidTransitionError):
            inline_pipeline.batch_manager.resume_session(batch.id)


class TestDispatchFailure:
    """Once a session is durably running, a broker outage is not an error."""

    @pytest.fixture
    def broker_down(self, dispatcher, monkeypatch):
        def unreachable(_session_id):
            raise ConnectionError("broker unreachable")

        monkeypatch.setattr(dispatcher, "dispatch_batch_session", unreachable)
        return monkeypatch

    def test_start_keeps_running_session(self, pipeline, dispatcher, broker_down, make_document):
        batch = pipeline.batch_manager.create_session(_make_documents(make_document, 2))

        started = pipeline.batch_manager.start_session(batch.id)

        assert started.status == BatchSessionStatus.RUNNING
        assert dispatcher.sessions == []

        broker_down.undo()
        pipeline.batch_manager.pause_session(batch.id)
        pipeline.batch_manager.resume_session(batch.id)
        assert dispatcher.sessions == [batch.id]

    def test_resume_and_retry_do_not_raise(self, pipeline, extractor, broker_down, make_document):
        doc_ids = _make_documents(make_document, 2)
        extractor.missing.add("CASE-001/exhibit-2.txt")
        batch = pipeline.batch_manager.create_session(doc_ids)
        pipeline.batch_manager.start_session(batch.id)
        pipeline.batch_manager.run_session(batch.id)
        extractor.missing.clear()

        assert pipeline.batch_manager.retry_failed_documents(batch.id) == [doc_ids[1]]
        assert pipeline.batch_manager.get_session(batch.id).status == BatchSessionStatus.RUNNING

        pipeline.batch_manager.pause_session(batch.id)
        resumed = pipeline.batch_manager.resume_session(batch.id)
        assert resumed.status == BatchSessionStatus.RUNNING


class TestProgressTiming:
    def test_rate_comes_from_finished_documents(self, pipeline, make_document):
        doc_ids = _make_documents(make_document, 3)
        batch = pipeline.batch_manager.create_session(doc_ids)

        idle = pipeline.batch_manager.get_progress(batch.id)
        assert idle.avg_processing_time_ms is None
        assert idle.documents_per_minute == 0.0
        assert idle.estimated_seconds_remaining is None

        for doc_id, elapsed in zip(doc_ids[:2], (1000, 3000)):
            pipeline.batch_manager.process_document(batch.id, doc_id)
            with pipeline.session_factory.begin() as session:
                session.execute(
                    update(BatchDocumentStatus)
                    .where(
                        BatchDocumentStatus.session_id == batch.id,
                        BatchDocumentStatus.document_id == doc_id,
                    )
                    .values(processing_time_ms=elapsed)
                )

        progress = pipeline.batch_manager.get_progress(batch.id)

        assert progress.avg_processing_time_ms == 2000.0
        assert progress.documents_per_minute == 30.0
        assert progress.remaining == 1
        assert progress.estimated_seconds_remaining == 2.0
