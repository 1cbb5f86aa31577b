"""Tests for the notesync HTTP transport."""

import json

import httpx
import pytest

from notesync.client.api import HTTPTransport
from notesync.client.sync.types import OutboxEntry, PushStatus
from notesync.core.config import ServerConfig
from notesync.core.errors import AuthenticationError, NetworkError, ValidationError
from notesync.core.types import EntityType, Operation


def make_config(
    server_url: str = "http://test", token: str = "token123"
) -> ServerConfig:
    """Create a ServerConfig for testing."""
    return ServerConfig(server_url=server_url, token=token)


def make_entry(entry_id: int = 1, record_id: str = "t1") -> OutboxEntry:
    """Create an update entry for a todo."""
    return OutboxEntry(
        id=entry_id,
        entity_type=EntityType.TODO,
        record_id=record_id,
        operation=Operation.UPDATE,
        payload={"title": "Buy milk"},
        base_version=3,
        enqueued_at=100.0,
        changed_at={"title": 100.0},
    )


@pytest.fixture
def transport() -> HTTPTransport:
    with HTTPTransport(make_config()) as transport:
        yield transport


class TestHealthCheck:
    """Tests for HTTPTransport.health_check."""

    def test_health_check_success(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should return True when server is healthy."""
        httpx_mock.add_response(url="http://test/health", json={"status": "ok"})
        assert transport.health_check() is True

    def test_health_check_failure(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should return False on server error."""
        httpx_mock.add_response(url="http://test/health", status_code=500)
        assert transport.health_check() is False

    def test_health_check_unreachable(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should return False when the server cannot be reached."""
        httpx_mock.add_exception(httpx.ConnectError("refused"))
        assert transport.health_check() is False


class TestPush:
    """Tests for HTTPTransport.push."""

    def test_push_sends_batch(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should send every operation and return results in order."""
        httpx_mock.add_response(
            method="POST",
            url="http://test/sync/push",
            json={
                "results": [
                    {"status": "applied", "new_version": 4},
                    {
                        "status": "conflict",
                        "server_version": 9,
                        "server_record": {
                            "entity_type": "todo",
                            "record_id": "t2",
                            "version": 9,
                            "data": {"title": "Server"},
                            "changed_columns": ["title"],
                        },
                    },
                ]
            },
        )

        results = transport.push([make_entry(1, "t1"), make_entry(2, "t2")])

        assert [r.status for r in results] == [PushStatus.APPLIED, PushStatus.CONFLICT]
        assert results[0].new_version == 4
        assert results[1].server_version == 9
        assert results[1].server_record is not None
        assert results[1].server_record.changed_columns == frozenset({"title"})

        request = httpx_mock.get_request()
        assert request.headers["Authorization"] == "Bearer token123"
        body = json.loads(request.content)
        assert [op["op_id"] for op in body["operations"]] == [1, 2]
        assert body["operations"][0] == {
            "op_id": 1,
            "entity_type": "todo",
            "record_id": "t1",
            "operation": "update",
            "payload": {"title": "Buy milk"},
            "base_version": 3,
            "changed_at": {"title": 100.0},
        }

    def test_push_empty_batch(self, transport) -> None:  # type: ignore[no-untyped-def]
        """Should not contact the server for an empty batch."""
        assert transport.push([]) == []

    def test_push_rejected_result(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            url="http://test/sync/push",
            json={"results": [{"status": "rejected", "reason": "title too long"}]},
        )
        [result] = transport.push([make_entry()])
        assert result.status is PushStatus.REJECTED
        assert result.reason == "title too long"

    def test_push_result_count_mismatch(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A reply with the wrong number of results is malformed."""
        httpx_mock.add_response(
            url="http://test/sync/push",
            json={"results": [{"status": "applied", "new_version": 2}]},
        )
        with pytest.raises(NetworkError, match="Malformed"):
            transport.push([make_entry(1, "a"), make_entry(2, "b")])

    def test_push_applied_without_version(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            url="http://test/sync/push", json={"results": [{"status": "applied"}]}
        )
        with pytest.raises(NetworkError, match="new_version"):
            transport.push([make_entry()])

    def test_push_conflict_without_version(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            url="http://test/sync/push", json={"results": [{"status": "conflict"}]}
        )
        with pytest.raises(NetworkError, match="server_version"):
            transport.push([make_entry()])

    def test_push_not_json(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://test/sync/push", text="<html>oops</html>")
        with pytest.raises(NetworkError, match="Malformed"):
            transport.push([make_entry()])

    def test_push_unknown_status(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            url="http://test/sync/push", json={"results": [{"status": "maybe"}]}
        )
        with pytest.raises(NetworkError):
            transport.push([make_entry()])


class TestErrorClassification:
    """Tests for the mapping of failures to error types."""

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 408, 429])
    def test_retryable_status(self, transport, httpx_mock, status: int) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://test/sync/push", status_code=status)
        with pytest.raises(NetworkError) as exc_info:
            transport.push([make_entry()])
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize("status", [400, 413, 422])
    def test_validation_status(self, transport, httpx_mock, status: int) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            url="http://test/sync/push",
            status_code=status,
            json={"detail": "bad payload"},
        )
        with pytest.raises(ValidationError, match="bad payload"):
            transport.push([make_entry()])

    @pytest.mark.parametrize("status", [401, 403])
    def test_authentication_status(self, transport, httpx_mock, status: int) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://test/sync/push", status_code=status)
        with pytest.raises(AuthenticationError):
            transport.push([make_entry()])

    def test_timeout(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_exception(httpx.ReadTimeout("too slow"))
        with pytest.raises(NetworkError, match="timed out"):
            transport.push([make_entry()])

    def test_connection_error(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_exception(httpx.ConnectError("no route"))
        with pytest.raises(NetworkError, match="failed"):
            transport.pull(None, 10)


class TestPull:
    """Tests for HTTPTransport.pull."""

    def test_pull_page(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="GET",
            json={
                "records": [
                    {
                        "entity_type": "idea",
                        "record_id": "i1",
                        "version": 2,
                        "data": {"text": "hello"},
                        "updated_at": 50.0,
                    }
                ],
                "cursor": 50.0,
                "has_more": True,
            },
        )

        page = transport.pull(12.5, 50)

        assert page.cursor == 50.0
        assert page.has_more is True
        [record] = page.records
        assert record.entity_type is EntityType.IDEA
        assert record.data == {"text": "hello"}
        request = httpx_mock.get_request()
        assert request.url.path == "/sync/pull"
        assert request.url.params["since"] == "12.5"
        assert request.url.params["limit"] == "50"

    def test_first_pull_has_no_cursor(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(method="GET", json={"records": []})

        page = transport.pull(None, 100)

        assert page.records == []
        assert page.has_more is False
        assert "since" not in httpx_mock.get_request().url.params

    def test_pull_malformed(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(method="GET", json={"items": []})
        with pytest.raises(NetworkError, match="Malformed pull"):
            transport.pull(None, 100)


class TestUpload:
    """Tests for HTTPTransport.upload_binary."""

    def test_upload(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="PUT", url="http://test/sync/uploads/capture/c1", status_code=204
        )

        transport.upload_binary("capture", "c1", b"audio-bytes", "audio/m4a")

        request = httpx_mock.get_request()
        assert request.content == b"audio-bytes"
        assert request.headers["Content-Type"] == "audio/m4a"

    def test_upload_server_error(self, transport, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="PUT", url="http://test/sync/uploads/capture/c1", status_code=503
        )
        with pytest.raises(NetworkError):
            transport.upload_binary(EntityType.CAPTURE, "c1", b"x")
