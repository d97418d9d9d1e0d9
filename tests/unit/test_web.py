"""Tests for the web app: HTTP routes and the websocket event channel."""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from shadowtree.commands import CommandError
from shadowtree.container import ContainerInfo
from shadowtree.relay import Subscriber
from shadowtree.web.app import create_app, find_available_port, is_port_available
from shadowtree.web.channel import EventChannel
from tests.helpers import FakeStream

CONTAINER_ID = "0123456789abcdef"


@pytest.fixture
def stream() -> FakeStream:
    return FakeStream(chunks=[b"$ "])


@pytest.fixture
def runtime(stream) -> Mock:
    runtime = Mock()
    runtime.list_containers = AsyncMock(return_value=[
        ContainerInfo(id=CONTAINER_ID, name="claude-code-sandbox-1", status="running", image="sandbox:latest"),
    ])
    runtime.open_session = AsyncMock(return_value=stream)
    runtime.resize = AsyncMock()
    return runtime


@pytest.fixture
def app(config, runtime, tmp_path: Path):
    app = create_app(config, tmp_path, runtime=runtime)
    app.state.orchestrator.start_monitoring = AsyncMock()
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def receive_event(ws) -> dict:
    return json.loads(ws.receive_text())


class TestHttpRoutes:
    def test_health(self, client) -> None:
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_index_page(self, client, config) -> None:
        response = client.get("/")
        assert response.status_code == 200
        assert config.project in response.text
        assert "/ws" in response.text

    def test_containers(self, client, runtime, config) -> None:
        response = client.get("/api/containers")

        assert response.json() == [{
            "Id": CONTAINER_ID,
            "Name": "claude-code-sandbox-1",
            "State": "running",
            "Image": "sandbox:latest",
        }]
        runtime.list_containers.assert_awaited_once_with(config.container_prefix)

    def test_containers_failure(self, client, runtime) -> None:
        runtime.list_containers = AsyncMock(side_effect=RuntimeError("daemon down"))
        assert client.get("/api/containers").status_code == 500


class TestGitInfo:
    @pytest.fixture
    def git_patches(self):
        with patch("shadowtree.web.app.git_utils.get_head_ref", AsyncMock(return_value="main")) as head, \
             patch("shadowtree.web.app.git_utils.get_remote_url",
                   AsyncMock(return_value="git@github.com:owner/repo.git")), \
             patch("shadowtree.web.app.list_pull_requests", AsyncMock(return_value=[{"number": 7}])) as prs:
            yield head, prs

    def test_without_container_uses_host_repo(self, client, git_patches) -> None:
        response = client.get("/api/git/info")

        assert response.status_code == 200
        assert response.json() == {
            "currentBranch": "main",
            "branchUrl": "https://github.com/owner/repo/tree/main",
            "repoUrl": "https://github.com/owner/repo",
            "prs": [{"number": 7}],
        }

    def test_uninitialized_shadow_shows_placeholder(self, client, app, git_patches) -> None:
        head, prs = git_patches
        app.state.registry.get_or_create_shadow_repo(CONTAINER_ID, lambda: Mock(initialized=False))

        data = client.get("/api/git/info", params={"containerId": CONTAINER_ID}).json()

        assert data["currentBranch"] == "loading..."
        head.assert_not_awaited()

    def test_initialized_shadow_reports_its_branch(self, client, app, git_patches) -> None:
        shadow = Mock(initialized=True)
        shadow.current_branch = AsyncMock(return_value="claude-changes")
        app.state.registry.get_or_create_shadow_repo(CONTAINER_ID, lambda: shadow)

        data = client.get("/api/git/info", params={"containerId": CONTAINER_ID}).json()

        assert data["currentBranch"] == "claude-changes"
        assert data["branchUrl"] == "https://github.com/owner/repo/tree/claude-changes"

    def test_host_repo_failure_is_500(self, client) -> None:
        with patch("shadowtree.web.app.git_utils.get_head_ref",
                   AsyncMock(side_effect=CommandError(["git"], 128, "not a git repository"))):
            assert client.get("/api/git/info").status_code == 500

    def test_no_web_remote(self, client) -> None:
        with patch("shadowtree.web.app.git_utils.get_head_ref", AsyncMock(return_value="main")), \
             patch("shadowtree.web.app.git_utils.get_remote_url", AsyncMock(return_value=None)), \
             patch("shadowtree.web.app.list_pull_requests", AsyncMock(return_value=[])):
            data = client.get("/api/git/info").json()

        assert data == {"currentBranch": "main", "branchUrl": "", "repoUrl": "", "prs": []}


class TestEventChannel:
    def test_attach_then_output_and_input(self, client, stream) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"event": "attach", "data": {"containerId": CONTAINER_ID}}))

            assert receive_event(ws) == {"event": "attached", "data": {"containerId": CONTAINER_ID}}
            assert ws.receive_bytes() == b"$ "

            ws.send_bytes(b"ls\r")
            ws.send_text(json.dumps({"event": "input", "data": {"data": "pwd\r"}}))
            # Commit replies once everything before it was handled
            ws.send_text(json.dumps({"event": "commit-changes", "data": {
                "containerId": CONTAINER_ID, "commitMessage": "wip",
            }}))

            assert receive_event(ws) == {
                "event": "commit-error",
                "data": {"message": "Shadow repository not found"},
            }

        assert stream.written == [b"ls\r", b"pwd\r"]

    def test_attach_requires_container_id(self, client) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"event": "attach", "data": {}}))
            assert receive_event(ws)["event"] == "error"

    def test_attach_failure(self, client, runtime) -> None:
        runtime.open_session = AsyncMock(side_effect=RuntimeError("No such container: nope"))

        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"event": "attach", "data": {"containerId": "nope"}}))
            assert receive_event(ws) == {"event": "error", "data": {"message": "No such container: nope"}}

    def test_malformed_messages_ignored(self, client) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            ws.send_text(json.dumps(["not", "an", "object"]))
            ws.send_text(json.dumps({"event": "push-changes", "data": {"containerId": CONTAINER_ID}}))

            assert receive_event(ws) == {
                "event": "push-error",
                "data": {"message": "Shadow repository not found"},
            }

    def test_commit_runs_final_sync_under_gate(self, client, app) -> None:
        shadow = Mock()
        shadow.sync_from_container = AsyncMock()
        shadow.commit = AsyncMock()
        app.state.registry.get_or_create_shadow_repo(CONTAINER_ID, lambda: shadow)

        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"event": "commit-changes", "data": {
                "containerId": CONTAINER_ID, "commitMessage": "Add greeting",
            }}))
            assert receive_event(ws) == {
                "event": "commit-success",
                "data": {"message": "Changes committed successfully"},
            }

        shadow.sync_from_container.assert_awaited_once()
        shadow.commit.assert_awaited_once_with("Add greeting")

    def test_push_error_message(self, client, app) -> None:
        shadow = Mock()
        shadow.sync_from_container = AsyncMock()
        shadow.push = AsyncMock(side_effect=CommandError(["git", "push"], 1, "rejected"))
        app.state.registry.get_or_create_shadow_repo(CONTAINER_ID, lambda: shadow)

        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"event": "push-changes", "data": {
                "containerId": CONTAINER_ID, "branchName": "feature",
            }}))
            event = receive_event(ws)

        assert event["event"] == "push-error"
        assert "rejected" in event["data"]["message"]
        shadow.push.assert_awaited_once_with("feature")


class TestOutboundWriter:
    @pytest.mark.asyncio
    async def test_failed_send_detaches_subscriber(self) -> None:
        relay = Mock()
        channel = EventChannel(relay, Mock(), Mock())
        subscriber = Subscriber()
        subscriber.send_event("attached", {"containerId": CONTAINER_ID})
        subscriber.send_output(b"$ ")
        websocket = Mock()
        websocket.send_text = AsyncMock()
        websocket.send_bytes = AsyncMock(side_effect=RuntimeError("websocket closed"))

        await asyncio.wait_for(channel.write_outbound(websocket, subscriber), 1)

        websocket.send_text.assert_awaited_once()
        relay.detach.assert_called_once_with(subscriber)


class TestPorts:
    def test_free_port_found(self) -> None:
        with patch("shadowtree.web.app.is_port_available", side_effect=[False, False, True]):
            assert find_available_port("127.0.0.1", 3456) == 3458

    def test_no_free_port(self) -> None:
        with patch("shadowtree.web.app.is_port_available", return_value=False):
            with pytest.raises(RuntimeError):
                find_available_port("127.0.0.1", 3456)

    def test_bound_port_is_unavailable(self) -> None:
        import socket

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            sock.listen()
            port = sock.getsockname()[1]
            assert is_port_available("127.0.0.1", port) is False
