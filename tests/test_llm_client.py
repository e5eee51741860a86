"""Tests for the NDJSON generation stream client."""

import json

import pytest
import requests

from chat_memory import GenerationConfig, GenerationStreamClient
from chat_memory.errors import GenerationStreamError

from conftest import FakeResponse, RecordingPost


def _record(**fields) -> bytes:
    return json.dumps(fields).encode("utf-8")


@pytest.fixture
def client() -> GenerationStreamClient:
    return GenerationStreamClient(GenerationConfig(endpoint="http://generate.test/api/generate", model="chat-model"))


def _patch_post(monkeypatch, post: RecordingPost) -> RecordingPost:
    monkeypatch.setattr("chat_memory.llm_client.requests.post", post)
    return post


class TestStream:
    def test_yields_fragments_until_done(self, monkeypatch, client):
        """Test decoding, request payload and normal completion."""
        response = FakeResponse(
            lines=[
                _record(model="chat-model", response="Hel", done=False),
                _record(model="chat-model", response="lo", done=False),
                _record(model="chat-model", response="", done=True),
            ]
        )
        post = _patch_post(monkeypatch, RecordingPost(response))

        fragments = list(client.stream("Say hello"))

        assert fragments == ["Hel", "lo", ""]
        (call,) = post.calls
        assert call["json"] == {"model": "chat-model", "prompt": "Say hello"}
        assert call["stream"] is True
        assert response.closed

    def test_model_override(self, monkeypatch, client):
        """Test that a per-call model replaces the configured one."""
        post = _patch_post(monkeypatch, RecordingPost(FakeResponse(lines=[_record(done=True)])))
        list(client.stream("hi", model="other-model"))
        assert post.calls[0]["json"]["model"] == "other-model"

    def test_done_ignores_trailing_records(self, monkeypatch, client):
        """Test that nothing after the completion record is read."""
        response = FakeResponse(lines=[_record(response="a", done=True), _record(response="never")])
        _patch_post(monkeypatch, RecordingPost(response))

        assert list(client.stream("hi")) == ["a"]
        assert response.lines_read == 1

    def test_malformed_records_are_skipped(self, monkeypatch, client):
        """Test that bad lines do not end the stream."""
        response = FakeResponse(
            lines=[b"{not json", b"", b"[1, 2]", b"\xff\xfe", _record(response="ok"), _record(done=True)]
        )
        _patch_post(monkeypatch, RecordingPost(response))

        assert list(client.stream("hi")) == ["ok", ""]

    def test_non_success_status(self, monkeypatch, client):
        """Test that a failed status is one terminal error and the connection is closed."""
        response = FakeResponse(status_code=500)
        _patch_post(monkeypatch, RecordingPost(response))

        with pytest.raises(GenerationStreamError, match="status code 500"):
            list(client.stream("hi"))
        assert response.closed

    def test_connection_failure(self, monkeypatch, client):
        """Test that an unreachable backend is a terminal error."""
        _patch_post(monkeypatch, RecordingPost(error=requests.ConnectionError("refused")))
        with pytest.raises(GenerationStreamError, match="generation request failed"):
            list(client.stream("hi"))

    def test_mid_stream_read_failure(self, monkeypatch, client):
        """Test that fragments arrive before a read failure surfaces."""
        response = FakeResponse(lines=[_record(response="a"), _record(response="b")], fail_after_lines=True)
        _patch_post(monkeypatch, RecordingPost(response))

        received = []
        with pytest.raises(GenerationStreamError, match="error reading generation stream"):
            for fragment in client.stream("hi"):
                received.append(fragment)

        assert received == ["a", "b"]
        assert response.closed

    def test_end_without_done_is_an_error(self, monkeypatch, client):
        """Test that a body cut off before completion is reported."""
        _patch_post(monkeypatch, RecordingPost(FakeResponse(lines=[_record(response="partial")])))
        with pytest.raises(GenerationStreamError, match="ended before completion"):
            list(client.stream("hi"))

    def test_error_record(self, monkeypatch, client):
        """Test that a backend error record ends the stream."""
        _patch_post(monkeypatch, RecordingPost(FakeResponse(lines=[_record(error="model not found")])))
        with pytest.raises(GenerationStreamError, match="model not found"):
            list(client.stream("hi"))

    def test_closing_early_releases_connection(self, monkeypatch, client):
        """Test that abandoning the iterator closes the response."""
        response = FakeResponse(lines=[_record(response="a"), _record(response="b"), _record(done=True)])
        _patch_post(monkeypatch, RecordingPost(response))

        stream = client.stream("hi")
        assert next(stream) == "a"
        stream.close()

        assert response.closed

    def test_each_call_is_a_new_request(self, monkeypatch, client):
        """Test that streams are not resumed."""
        post = _patch_post(monkeypatch, RecordingPost(FakeResponse(lines=[_record(done=True)])))
        list(client.stream("one"))
        list(client.stream("two"))
        assert [call["json"]["prompt"] for call in post.calls] == ["one", "two"]
