"""Tests for the CompanionClient."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import Clock, make_response
from lighttrack_browser.client import CompanionClient, MockCompanionSession
from lighttrack_browser.models import ActivityRecord, ConnectionState, GithubContext, PageContext

if TYPE_CHECKING:
    from pytest import LogCaptureFixture


RECORD = ActivityRecord(
    url="https://example.com/a",
    title="A",
    timestamp="2024-01-01T00:00:00.000Z",
    browser="Chrome",
)


def post_body(mock_http: MagicMock, index: int = -1) -> Any:
    return json.loads(mock_http.post.call_args_list[index][1]["data"])


def test_rejects_non_loopback_host(mock_http: MagicMock) -> None:
    with pytest.raises(ValueError):
        CompanionClient(port=41417, host="example.com", session=mock_http)


def test_base_url_ipv6(mock_http: MagicMock) -> None:
    client = CompanionClient(port=41417, host="::1", session=mock_http)
    assert client.base_url == "http://[::1]:41417"


def test_initial_state_disconnected(companion_client: CompanionClient) -> None:
    assert companion_client.state == ConnectionState(False, None)
    assert not companion_client.connected


def test_probe_adopts_token(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    assert companion_client.probe() is True
    mock_http.get.assert_called_once_with("http://localhost:41417/status")
    assert companion_client.state == ConnectionState(True, "abc")


@pytest.mark.parametrize("response", [
    make_response(503, {"token": "abc"}),
    make_response(200, None),
    make_response(200, ["abc"]),
])
def test_probe_unavailable(companion_client: CompanionClient, mock_http: MagicMock, response: MagicMock) -> None:
    companion_client.probe()
    mock_http.get.return_value = response
    assert companion_client.probe() is False
    assert companion_client.state == ConnectionState(False, None)


def test_probe_without_token_is_connected_but_unusable(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    mock_http.get.return_value = make_response(200, {"version": "1.0"})
    assert companion_client.probe() is True
    assert companion_client.state == ConnectionState(True, None)
    assert not companion_client.state.usable


def test_probe_transport_error(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    companion_client.probe()
    mock_http.get.side_effect = requests.ConnectionError("refused")
    assert companion_client.probe() is False
    assert companion_client.state == ConnectionState(False, None)
    assert companion_client.transport_errors == 1


def test_unreachable_warning_rate_limited(companion_client: CompanionClient, mock_http: MagicMock,
                                          caplog: LogCaptureFixture) -> None:
    mock_http.get.side_effect = requests.ConnectionError("refused")
    with caplog.at_level(logging.WARNING):
        companion_client.probe()
        companion_client.probe()
        companion_client.probe()
    assert caplog.text.count("Companion unreachable") == 1


def test_send_activity_probes_first(companion_client: CompanionClient, mock_http: MagicMock, clock: Clock) -> None:
    assert companion_client.send_activity(RECORD) is True
    mock_http.get.assert_called_once()
    args, kwargs = mock_http.post.call_args
    assert args[0] == "http://localhost:41417/browser-activity"
    assert kwargs["headers"]["Authorization"] == "Bearer abc"
    assert kwargs["headers"]["Content-Type"] == "application/json"
    assert post_body(mock_http) == RECORD.to_dict()
    assert companion_client.last_send_time == clock.now
    assert companion_client.activities_sent == 1


def test_send_activity_reuses_token(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    companion_client.send_activity(RECORD)
    companion_client.send_activity(RECORD)
    assert mock_http.get.call_count == 1
    assert mock_http.post.call_count == 2


def test_no_post_without_token(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    mock_http.get.return_value = make_response(200, {})
    assert companion_client.send_activity(RECORD) is False
    mock_http.post.assert_not_called()
    assert companion_client.last_send_time is None


def test_no_post_when_companion_down(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    mock_http.get.side_effect = requests.ConnectionError("refused")
    assert companion_client.send_activity(RECORD) is False
    mock_http.post.assert_not_called()


def test_401_clears_token_and_reprobes_once(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    companion_client.probe()
    mock_http.get.reset_mock()
    mock_http.get.return_value = make_response(503)
    mock_http.post.return_value = make_response(401)

    assert companion_client.send_activity(RECORD) is False
    assert mock_http.post.call_count == 1
    mock_http.get.assert_called_once_with("http://localhost:41417/status")
    assert companion_client.state.token is None
    assert companion_client.auth_failures == 1
    assert companion_client.last_send_time is None


def test_401_reprobe_adopts_new_token_without_resend(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    companion_client.probe()
    mock_http.post.return_value = make_response(401)
    mock_http.get.return_value = make_response(200, {"token": "def"})

    assert companion_client.send_activity(RECORD) is False
    assert mock_http.post.call_count == 1
    assert companion_client.state == ConnectionState(True, "def")


def test_post_transport_error_disconnects(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    companion_client.probe()
    mock_http.post.side_effect = requests.Timeout("slow")
    assert companion_client.send_activity(RECORD) is False
    assert companion_client.state == ConnectionState(False, None)
    assert companion_client.last_send_time is None


def test_post_server_error_keeps_connection(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    companion_client.probe()
    mock_http.post.return_value = make_response(500)
    assert companion_client.send_activity(RECORD) is False
    assert companion_client.state == ConnectionState(True, "abc")
    assert companion_client.last_send_time is None


def test_send_context(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    context = PageContext(
        url="https://github.com/octo/app/pull/42",
        record=GithubContext(owner="octo", repo="app", type="pull", number=42),
    )
    assert companion_client.send_context(context) is True
    assert mock_http.post.call_args[0][0] == "http://localhost:41417/page-context"
    assert post_body(mock_http) == {
        "url": "https://github.com/octo/app/pull/42",
        "type": "github",
        "data": {"owner": "octo", "repo": "app", "type": "pull", "number": 42},
    }
    assert companion_client.contexts_sent == 1
    assert companion_client.last_send_time is None


def test_set_port_invalidates(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    companion_client.probe()
    companion_client.set_port(50000)
    assert companion_client.state == ConnectionState(False, None)
    assert companion_client.base_url == "http://localhost:50000"
    companion_client.probe()
    assert mock_http.get.call_args[0][0] == "http://localhost:50000/status"


def test_stale_probe_result_discarded(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    def answer_after_port_change(url: str) -> MagicMock:
        companion_client.set_port(50000)
        return make_response(200, {"token": "old-endpoint"})

    mock_http.get.side_effect = answer_after_port_change
    assert companion_client.probe() is False
    assert companion_client.state == ConnectionState(False, None)


def test_port_change_between_token_and_post(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    companion_client.probe()
    acquire = companion_client._ensure_token

    def acquire_then_switch() -> Any:
        endpoint = acquire()
        companion_client.set_port(50000)
        return endpoint

    with patch.object(companion_client, "_ensure_token", side_effect=acquire_then_switch):
        assert companion_client.send_activity(RECORD) is False
    mock_http.post.assert_not_called()
    assert companion_client.activities_sent == 0


def test_post_uses_endpoint_of_token(companion_client: CompanionClient, mock_http: MagicMock) -> None:
    companion_client.probe()
    endpoint = companion_client._endpoint()
    assert endpoint is not None
    token, base_url, _ = endpoint
    assert (token, base_url) == ("abc", "http://localhost:41417")

    companion_client.set_port(50000)
    assert companion_client._endpoint() is None


def test_testing_mode_uses_mock_session() -> None:
    client = CompanionClient(port=41417, testing=True)
    assert isinstance(client.session, MockCompanionSession)
    assert client.send_activity(RECORD) is True
    assert client.session.posts == [{"url": "http://localhost:41417/browser-activity", "body": RECORD.to_dict()}]


def test_mock_session_rejects_wrong_token() -> None:
    mock = MockCompanionSession(token="t")
    response = mock.post("http://localhost:1/browser-activity", data="{}", headers={"Authorization": "Bearer x"})
    assert response.status_code == 401
    assert mock.posts == []


def test_default_session_is_requests() -> None:
    with patch("lighttrack_browser.client.requests.Session") as session_cls:
        client = CompanionClient(port=41417)
    assert client.session is session_cls.return_value


def test_close_and_context_manager(mock_http: MagicMock) -> None:
    with CompanionClient(port=41417, session=mock_http) as client:
        assert "41417" in repr(client)
    mock_http.close.assert_called_once()
