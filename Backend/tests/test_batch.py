"""
test_batch.py
~~~~~~~~~~~~~
Correlation ids, manifest lines, poll resolution and the Files/Batches client wrapper.
"""
from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from subocr.core.errors import BatchServiceError, PreconditionError
from subocr.services.batch import (
    COMPLETIONS_ENDPOINT,
    EMPTY_SENTINEL,
    BatchClient,
    BatchPoll,
    CropMeta,
    CustomId,
    resolve_poll,
    wait_id,
    write_manifest,
)


class TestCustomId:

    def test_wire_format(self):
        assert CustomId("abc", 3, "2.1.png").encode() == "job-abc-frame-3-2.1.png"

    def test_decode_recovers_index_and_filename(self):
        decoded = CustomId.decode("job-abc-frame-12-10-1.png", "abc")
        assert decoded == CustomId("abc", 12, "10-1.png")

    def test_decode_rejects_other_jobs_and_garbage(self):
        assert CustomId.decode("job-other-frame-1-1.png", "abc") is None
        assert CustomId.decode("job-abc-frame-x-1.png", "abc") is None
        assert CustomId.decode("job-abc-frame-1-", "abc") is None
        assert CustomId.decode(None, "abc") is None


def test_wait_id_is_deterministic():
    assert wait_id("abc", 0) == "wait-batch-completion-abc-0"
    assert wait_id("abc", 4) == wait_id("abc", 4)


def test_manifest_lines(tmp_path):
    crops = [
        CropMeta("1.png", "jobs/abc/crops/1.png", "https://cdn/1.png"),
        CropMeta("1.1.png", "jobs/abc/crops/1.1.png", "https://cdn/1.1.png"),
    ]
    path = str(tmp_path / "ocr-batch.jsonl")

    assert write_manifest(path, "abc", crops) == 2

    with open(path, encoding="utf-8") as f:
        lines = [json.loads(line) for line in f]

    assert [line["custom_id"] for line in lines] == ["job-abc-frame-0-1.png", "job-abc-frame-1-1.1.png"]
    first = lines[0]
    assert first["method"] == "POST"
    assert first["url"] == COMPLETIONS_ENDPOINT
    assert first["body"]["temperature"] == 0
    assert first["body"]["max_tokens"] == 96
    content = first["body"]["messages"][0]["content"]
    assert content[0]["type"] == "text" and EMPTY_SENTINEL in content[0]["text"]
    assert content[1] == {"type": "image_url", "image_url": {"url": "https://cdn/1.png"}}


def test_manifest_requires_crops(tmp_path):
    with pytest.raises(PreconditionError):
        write_manifest(str(tmp_path / "m.jsonl"), "abc", [])


class TestResolvePoll:

    @pytest.mark.parametrize("status", ["validating", "in_progress", "finalizing"])
    def test_pending_states_keep_waiting(self, status):
        assert resolve_poll(BatchPoll(status=status)) is None

    @pytest.mark.parametrize("status", ["failed", "cancelled"])
    def test_terminal_failures(self, status):
        with pytest.raises(BatchServiceError):
            resolve_poll(BatchPoll(status=status))

    def test_completed(self):
        assert resolve_poll(BatchPoll(status="completed", output_file_id="file-out")) == "file-out"

    def test_completed_without_output(self):
        with pytest.raises(BatchServiceError):
            resolve_poll(BatchPoll(status="completed", error_file_id="file-err"))


def test_client_submit_poll_fetch(tmp_path):
    openai = MagicMock()
    openai.files.create.return_value = MagicMock(id="file-in")
    openai.batches.create.return_value = MagicMock(id="batch-1")
    openai.batches.retrieve.return_value = MagicMock(status="completed", output_file_id="file-out", error_file_id=None)
    openai.files.content.return_value.read.return_value = b'{"custom_id": "x"}\n'

    manifest = tmp_path / "m.jsonl"
    manifest.write_text("{}\n")
    client = BatchClient(openai)

    artifacts = client.submit(str(manifest))
    assert (artifacts.batch_id, artifacts.batch_input_id) == ("batch-1", "file-in")
    assert openai.files.create.call_args.kwargs["purpose"] == "batch"
    assert openai.batches.create.call_args.kwargs == {
        "input_file_id": "file-in",
        "endpoint": COMPLETIONS_ENDPOINT,
        "completion_window": "24h",
    }

    poll = client.poll("batch-1")
    assert poll == BatchPoll(status="completed", output_file_id="file-out", error_file_id=None)
    assert client.fetch_output("file-out") == '{"custom_id": "x"}\n'
