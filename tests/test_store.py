"""
Tests for the job/file stores.

Both implementations run through the same contract tests.
"""

import pytest

from conftest import PDF_CONTENT, FakeConverter
from pdfa_backend.database import SqliteJobStore
from pdfa_backend.job_manager import JobManager
from pdfa_backend.models import ConversionOptions, FileStatus, JobStatus
from pdfa_backend.store import InMemoryJobStore, NewFile, utcnow


def _files(*names):
    return [NewFile(original_name=name, original_size=100 + i, input_path=f"/scratch/{name}") for i, name in enumerate(names)]


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryJobStore()
    return SqliteJobStore(tmp_path / "jobs.db")


class TestCreateJob:
    def test_creates_pending_job_with_files_in_order(self, any_store):
        job = any_store.create_job(ConversionOptions(), _files("a.pdf", "b.pdf", "c.pdf"))

        assert job.status == JobStatus.PENDING
        assert job.completed_at is None
        files = any_store.list_files(job.id)
        assert [f.original_name for f in files] == ["a.pdf", "b.pdf", "c.pdf"]
        assert [f.position for f in files] == [0, 1, 2]
        assert all(f.status == FileStatus.PENDING and f.progress == 0 for f in files)
        assert all(f.job_id == job.id for f in files)
        assert files[1].original_size == 101

    def test_rejects_job_without_files(self, any_store):
        with pytest.raises(ValueError):
            any_store.create_job(ConversionOptions(), [])
        assert any_store.list_jobs() == []

    def test_ids_increase(self, any_store):
        first = any_store.create_job(ConversionOptions(), _files("a.pdf"))
        second = any_store.create_job(ConversionOptions(), _files("b.pdf"))
        assert second.id > first.id
        assert [job.id for job in any_store.list_jobs()] == [second.id, first.id]

    def test_options_round_trip(self, any_store):
        options = ConversionOptions(applyOcr=False, verifyCompliance=True, optimizeSize=True)
        job = any_store.create_job(options, _files("a.pdf"))
        assert any_store.get_job(job.id).options == options


class TestLookups:
    def test_unknown_ids_return_none(self, any_store):
        assert any_store.get_job(999) is None
        assert any_store.get_file(999) is None
        assert any_store.list_files(999) == []

    def test_returned_records_are_snapshots(self, any_store):
        job = any_store.create_job(ConversionOptions(), _files("a.pdf"))
        record = any_store.list_files(job.id)[0]
        record.status = FileStatus.COMPLETED
        record.progress = 100

        stored = any_store.get_file(record.id)
        assert stored.status == FileStatus.PENDING
        assert stored.progress == 0


class TestUpdates:
    def test_update_applies_changes(self, any_store):
        job = any_store.create_job(ConversionOptions(), _files("a.pdf"))
        finished = utcnow()

        assert any_store.update_job(job.id, status=JobStatus.COMPLETED, completed_at=finished)
        stored = any_store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.completed_at == finished

    def test_expected_status_mismatch_leaves_record_untouched(self, any_store):
        job = any_store.create_job(ConversionOptions(), _files("a.pdf"))
        file_id = any_store.list_files(job.id)[0].id

        applied = any_store.update_file(file_id, expected={FileStatus.PROCESSING}, status=FileStatus.COMPLETED)

        assert applied is False
        assert any_store.get_file(file_id).status == FileStatus.PENDING

    def test_expected_status_match(self, any_store):
        job = any_store.create_job(ConversionOptions(), _files("a.pdf"))
        file_id = any_store.list_files(job.id)[0].id

        assert any_store.update_file(file_id, expected={FileStatus.PENDING}, status=FileStatus.FAILED, error="bad")
        record = any_store.get_file(file_id)
        assert record.status == FileStatus.FAILED
        assert record.error == "bad"

    def test_update_unknown_record(self, any_store):
        assert any_store.update_job(42, status=JobStatus.FAILED) is False
        assert any_store.update_file(42, status=FileStatus.FAILED) is False

    def test_immutable_fields_are_rejected(self, any_store):
        job = any_store.create_job(ConversionOptions(), _files("a.pdf"))
        file_id = any_store.list_files(job.id)[0].id
        with pytest.raises(ValueError):
            any_store.update_file(file_id, original_name="other.pdf")
        with pytest.raises(ValueError):
            any_store.update_job(job.id, created_at=utcnow())

    def test_boolean_flags_persist(self, any_store):
        job = any_store.create_job(ConversionOptions(), _files("a.pdf"))
        file_id = any_store.list_files(job.id)[0].id
        any_store.update_file(file_id, is_pdfa=True, has_ocr=False, converted_size=55)
        record = any_store.get_file(file_id)
        assert record.is_pdfa is True
        assert record.has_ocr is False
        assert record.converted_size == 55


class TestReportProgress:
    def _processing_file(self, store):
        job = store.create_job(ConversionOptions(), _files("a.pdf"))
        file_id = store.list_files(job.id)[0].id
        store.update_file(file_id, status=FileStatus.PROCESSING)
        return file_id

    def test_only_moves_forward(self, any_store):
        file_id = self._processing_file(any_store)

        assert any_store.report_progress(file_id, 40)
        assert not any_store.report_progress(file_id, 20)
        assert not any_store.report_progress(file_id, 40)
        assert any_store.get_file(file_id).progress == 40

    def test_ignored_unless_processing(self, any_store):
        job = any_store.create_job(ConversionOptions(), _files("a.pdf"))
        file_id = any_store.list_files(job.id)[0].id

        assert not any_store.report_progress(file_id, 30)
        any_store.update_file(file_id, status=FileStatus.FAILED, error="cancelled by user")
        assert not any_store.report_progress(file_id, 30)
        assert any_store.get_file(file_id).progress == 0

    def test_clamps_below_completion(self, any_store):
        file_id = self._processing_file(any_store)
        any_store.report_progress(file_id, 150)
        assert any_store.get_file(file_id).progress == 99


class TestDeleteJob:
    def test_removes_job_and_files(self, any_store):
        job = any_store.create_job(ConversionOptions(), _files("a.pdf", "b.pdf"))
        file_ids = [f.id for f in any_store.list_files(job.id)]

        assert any_store.delete_job(job.id)
        assert any_store.get_job(job.id) is None
        assert all(any_store.get_file(file_id) is None for file_id in file_ids)
        assert any_store.delete_job(job.id) is False


class TestSqlitePersistence:
    def test_records_survive_reopen(self, tmp_path):
        path = tmp_path / "jobs.db"
        job = SqliteJobStore(path).create_job(ConversionOptions(optimizeSize=True), _files("a.pdf"))

        reopened = SqliteJobStore(path)
        stored = reopened.get_job(job.id)
        assert stored is not None
        assert stored.options.optimize_size is True
        assert reopened.list_files(job.id)[0].original_name == "a.pdf"

    def test_interrupted_jobs_resume_after_restart(self, tmp_path):
        path = tmp_path / "jobs.db"
        scratch = tmp_path / "scratch"
        scratch.mkdir()
        for name in ("a.pdf", "b.pdf", "c.pdf"):
            (scratch / name).write_bytes(PDF_CONTENT)

        before = SqliteJobStore(path)
        queued = before.create_job(ConversionOptions(), [NewFile("a.pdf", 10, str(scratch / "a.pdf"))])
        running = before.create_job(
            ConversionOptions(),
            [NewFile("b.pdf", 10, str(scratch / "b.pdf")), NewFile("c.pdf", 10, str(scratch / "c.pdf"))],
        )
        done_file, cut_file = before.list_files(running.id)
        before.update_job(running.id, status=JobStatus.PROCESSING)
        before.update_file(done_file.id, status=FileStatus.COMPLETED, progress=100, converted_name="b_PDFA2u.pdf")
        before.update_file(cut_file.id, status=FileStatus.PROCESSING, progress=40)

        reopened = SqliteJobStore(path)
        converter = FakeConverter()
        manager = JobManager(reopened, converter, output_root=tmp_path / "out", retention_seconds=0.05)
        try:
            assert manager.recover() == 2
            assert manager.wait(queued.id, timeout=5)
            assert manager.wait(running.id, timeout=5)
        finally:
            manager.shutdown()

        assert reopened.get_job(queued.id).status == JobStatus.COMPLETED
        resumed = reopened.get_job(running.id)
        assert resumed.status == JobStatus.COMPLETED
        assert resumed.completed_at is not None
        assert all(f.progress == 100 for f in reopened.list_files(running.id))
        assert sorted(converter.calls) == ["a.pdf", "c.pdf"]

    def test_recover_leaves_finished_jobs_alone(self, tmp_path):
        store = SqliteJobStore(tmp_path / "jobs.db")
        job = store.create_job(ConversionOptions(), _files("a.pdf"))
        store.update_job(job.id, status=JobStatus.FAILED, completed_at=utcnow())

        manager = JobManager(store, FakeConverter(), output_root=tmp_path / "out")
        try:
            assert manager.recover() == 0
        finally:
            manager.shutdown()
        assert store.get_job(job.id).status == JobStatus.FAILED
