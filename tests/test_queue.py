import pytest

from uploads.errors import (
    InvalidQueueTransition,
    QueueEntryNotFound,
    RetryExhausted,
    UploaderUnavailable,
    UploadFailure,
)
from uploads.queue import (
    COMPLETED,
    FAILED,
    PENDING,
    SegmentBundle,
    format_bytes,
    normalize_file_name,
)


class FlakyUploader:
    """Fails the first `failures` calls, then succeeds."""

    def __init__(self, failures=0, fail_ids=()):
        self.failures = failures
        self.fail_ids = set(fail_ids)
        self.calls = []

    def __call__(self, entry):
        self.calls.append(entry.id)
        if entry.id in self.fail_ids or len(self.calls) <= self.failures:
            raise UploadFailure("HTTP 502", status_code=502)
        return {"success": True, "transcript": {"id": f"tr-{entry.id}"}}


def _bundle(wav_files, session_id="sess-1"):
    return SegmentBundle(
        input_files=[wav_files["input_0.wav"], wav_files["input_1.wav"]],
        output_files=[wav_files["output_0.wav"]],
        session_id=session_id,
        metadata={"totalSegments": 2},
    )


class TestEnqueue:
    def test_copies_files_into_blob_dir(self, make_queue, wav_files, tmp_path):
        queue = make_queue()
        entry_id = queue.enqueue(_bundle(wav_files))

        entry = queue.get(entry_id)
        assert entry.status == PENDING
        assert entry.attempts == 0
        assert entry.session_id == "sess-1"
        assert [f.name for f in entry.input_files] == ["input_0.wav", "input_1.wav"]
        assert [f.name for f in entry.output_files] == ["output_0.wav"]
        for stored in entry.input_files + entry.output_files:
            assert stored.blob_ref.startswith(str(tmp_path / "queue" / entry_id))
            assert stored.type.startswith("audio/")

        # The queue owns its copies; the originals may be deleted
        for path in wav_files.values():
            path.unlink()
        assert all(
            (tmp_path / "queue" / entry_id / p).exists()
            for p in ("input_000_input_0.wav", "input_001_input_1.wav", "output_000_output_0.wav")
        )

    def test_requires_primary_audio(self, make_queue, wav_files):
        queue = make_queue()
        bundle = SegmentBundle(input_files=[], output_files=[wav_files["output_0.wav"]])
        with pytest.raises(ValueError):
            queue.enqueue(bundle)
        assert queue.list() == []

    def test_bundle_from_manifest_skips_failed_segments(self):
        manifest = {
            "sessionId": "s",
            "totalSegments": 2,
            "totalDuration": 61.0,
            "segments": [
                {"inputFile": "/a/in0.wav", "outputFile": "/a/out0.wav", "hasOutputAudio": True,
                 "status": "completed"},
                {"inputFile": "/a/in1.wav", "outputFile": None, "hasOutputAudio": False,
                 "status": "failed"},
            ],
        }
        bundle = SegmentBundle.from_manifest(manifest)
        assert [p.name for p in bundle.input_files] == ["in0.wav"]
        assert [p.name for p in bundle.output_files] == ["out0.wav"]
        assert bundle.metadata == {"totalSegments": 2, "totalDuration": 61.0}


class TestRetry:
    def test_succeeds_after_two_failures(self, make_queue, wav_files):
        uploader = FlakyUploader(failures=2)
        queue = make_queue(uploader=uploader, max_attempts=3)
        entry_id = queue.enqueue(_bundle(wav_files))

        assert queue.retry(entry_id).status == FAILED
        assert queue.retry(entry_id).status == FAILED
        entry = queue.retry(entry_id)

        assert entry.status == COMPLETED
        assert entry.attempts == 3
        assert entry.error is None
        assert entry.result["transcript"]["id"] == f"tr-{entry_id}"

    def test_exhausted_after_max_attempts(self, make_queue, wav_files):
        uploader = FlakyUploader(failures=10)
        queue = make_queue(uploader=uploader, max_attempts=3)
        entry_id = queue.enqueue(_bundle(wav_files))

        for _ in range(3):
            queue.retry(entry_id)
        entry = queue.get(entry_id)
        assert entry.status == FAILED
        assert entry.attempts == 3
        assert "502" in entry.error

        with pytest.raises(RetryExhausted):
            queue.retry(entry_id)
        assert len(uploader.calls) == 3

    def test_completed_entry_is_not_uploaded_again(self, make_queue, wav_files):
        uploader = FlakyUploader()
        queue = make_queue(uploader=uploader)
        entry_id = queue.enqueue(_bundle(wav_files))

        queue.retry(entry_id)
        queue.retry(entry_id)

        assert uploader.calls == [entry_id]

    def test_attempt_counted_before_upload(self, make_queue, wav_files):
        seen = []

        def uploader(entry):
            seen.append((entry.status, entry.attempts))
            return {"success": True}

        queue = make_queue(uploader=uploader)
        entry_id = queue.enqueue(_bundle(wav_files))
        queue.retry(entry_id)

        assert seen == [("uploading", 1)]

    def test_unexpected_error_marks_failed_and_propagates(self, make_queue, wav_files):
        def uploader(entry):
            raise KeyError("boom")

        queue = make_queue(uploader=uploader)
        entry_id = queue.enqueue(_bundle(wav_files))

        with pytest.raises(KeyError):
            queue.retry(entry_id)
        assert queue.get(entry_id).status == FAILED

    def test_unknown_entry(self, make_queue):
        with pytest.raises(QueueEntryNotFound):
            make_queue(uploader=FlakyUploader()).retry("offline_missing")

    def test_no_uploader_configured(self, make_queue, wav_files):
        queue = make_queue()
        entry_id = queue.enqueue(_bundle(wav_files))

        with pytest.raises(UploaderUnavailable):
            queue.retry(entry_id)
        entry = queue.get(entry_id)
        assert entry.status == PENDING
        assert entry.attempts == 0


class TestTransitions:
    def test_completed_requires_uploading(self, make_queue, wav_files):
        queue = make_queue()
        entry_id = queue.enqueue(_bundle(wav_files))

        with pytest.raises(InvalidQueueTransition):
            queue.mark_completed(entry_id, {"success": True})
        assert queue.get(entry_id).status == PENDING

    def test_completed_entry_cannot_fail(self, make_queue, wav_files):
        queue = make_queue()
        entry_id = queue.enqueue(_bundle(wav_files))
        queue.mark_uploading(entry_id)
        queue.mark_completed(entry_id, {"success": True})

        with pytest.raises(InvalidQueueTransition):
            queue.mark_failed(entry_id, "late error")
        entry = queue.get(entry_id)
        assert entry.status == COMPLETED
        assert entry.error is None
        assert entry.result == {"success": True}

    def test_completed_entry_cannot_upload_again(self, make_queue, wav_files):
        queue = make_queue()
        entry_id = queue.enqueue(_bundle(wav_files))
        queue.mark_uploading(entry_id)
        queue.mark_completed(entry_id)

        with pytest.raises(InvalidQueueTransition):
            queue.mark_uploading(entry_id)
        assert queue.get(entry_id).attempts == 1

    def test_failed_entry_can_upload_again(self, make_queue, wav_files):
        queue = make_queue()
        entry_id = queue.enqueue(_bundle(wav_files))
        queue.mark_uploading(entry_id)
        queue.mark_failed(entry_id, "HTTP 502")

        entry = queue.mark_uploading(entry_id)

        assert entry.status == "uploading"
        assert entry.attempts == 2
        assert entry.error is None

    def test_unknown_entry(self, make_queue):
        with pytest.raises(QueueEntryNotFound):
            make_queue().mark_failed("offline_missing", "x")


class TestRetryAll:
    def test_sequential_in_insertion_order_with_delay(self, make_queue, wav_files, clock):
        uploader = FlakyUploader()
        queue = make_queue(uploader=uploader, retry_delay=5.0)
        ids = [queue.enqueue(_bundle(wav_files, f"s{i}")) for i in range(3)]

        summary = queue.retry_all()

        assert uploader.calls == ids
        assert clock.sleeps == [5.0, 5.0]
        assert summary == {"attempted": 3, "succeeded": 3, "failed": 0, "skipped": 0}

    def test_one_failure_does_not_abort_batch(self, make_queue, wav_files):
        uploader = FlakyUploader()
        queue = make_queue(uploader=uploader)
        ids = [queue.enqueue(_bundle(wav_files, f"s{i}")) for i in range(3)]
        uploader.fail_ids = {ids[1]}

        summary = queue.retry_all()

        assert uploader.calls == ids
        assert summary["succeeded"] == 2
        assert summary["failed"] == 1
        assert queue.get(ids[1]).status == FAILED
        assert queue.get(ids[2]).status == COMPLETED

    def test_skips_exhausted_and_completed(self, make_queue, wav_files, clock):
        uploader = FlakyUploader()
        queue = make_queue(uploader=uploader, max_attempts=1)
        done = queue.enqueue(_bundle(wav_files, "done"))
        exhausted = queue.enqueue(_bundle(wav_files, "exhausted"))
        fresh = queue.enqueue(_bundle(wav_files, "fresh"))
        queue.retry(done)
        uploader.fail_ids = {exhausted}
        queue.retry(exhausted)
        uploader.calls.clear()

        summary = queue.retry_all()

        assert uploader.calls == [fresh]
        assert summary == {"attempted": 1, "succeeded": 1, "failed": 0, "skipped": 1}
        assert clock.sleeps == []


class TestPersistence:
    def test_interrupted_upload_is_pending_after_reopen(self, make_queue, wav_files, db):
        queue = make_queue()
        entry_id = queue.enqueue(_bundle(wav_files))
        queue.mark_uploading(entry_id)
        assert queue.get(entry_id).status == "uploading"

        reopened = make_queue(database=db)
        entry = reopened.get(entry_id)

        assert entry.status == PENDING
        assert entry.attempts == 1

    def test_stats_are_recomputed(self, make_queue, wav_files):
        uploader = FlakyUploader(fail_ids=set())
        queue = make_queue(uploader=uploader)
        first = queue.enqueue(_bundle(wav_files, "a"))
        second = queue.enqueue(_bundle(wav_files, "b"))
        uploader.fail_ids = {second}
        queue.retry(first)
        queue.retry(second)

        stats = queue.stats()
        entry_size = queue.get(first).size

        assert stats["totalRecordings"] == 2
        assert stats["completedRecordings"] == 1
        assert stats["failedRecordings"] == 1
        assert stats["pendingRecordings"] == 0
        assert stats["totalSizeBytes"] == 2 * entry_size
        assert stats["totalSize"] == format_bytes(2 * entry_size)

    def test_list_filters_by_status(self, make_queue, wav_files):
        uploader = FlakyUploader()
        queue = make_queue(uploader=uploader)
        first = queue.enqueue(_bundle(wav_files, "a"))
        queue.enqueue(_bundle(wav_files, "b"))
        queue.retry(first)

        assert [e.session_id for e in queue.list(PENDING)] == ["b"]
        assert [e.id for e in queue.list(COMPLETED)] == [first]

    def test_delete_removes_blobs(self, make_queue, wav_files, tmp_path):
        queue = make_queue()
        entry_id = queue.enqueue(_bundle(wav_files))

        queue.delete(entry_id)

        assert not (tmp_path / "queue" / entry_id).exists()
        with pytest.raises(QueueEntryNotFound):
            queue.get(entry_id)
        with pytest.raises(QueueEntryNotFound):
            queue.delete(entry_id)

    def test_clear_all(self, make_queue, wav_files, tmp_path):
        queue = make_queue()
        queue.enqueue(_bundle(wav_files, "a"))
        queue.enqueue(_bundle(wav_files, "b"))

        assert queue.clear_all() == 2
        assert queue.list() == []
        assert list((tmp_path / "queue").iterdir()) == []
        assert queue.stats()["totalSize"] == "0 Bytes"


def test_normalize_file_name():
    assert normalize_file_name('a:b/c*?.wav') == "a_b_c__.wav"


@pytest.mark.parametrize("size, expected", [
    (0, "0 Bytes"),
    (512, "512 Bytes"),
    (1024, "1 KB"),
    (1536, "1.5 KB"),
    (5 * 1024 ** 2, "5 MB"),
])
def test_format_bytes(size, expected):
    assert format_bytes(size) == expected
