import pytest

from dbhost.commands import dispatch, fetch_result
from dbhost.errors import (
    AgentNotReady,
    CommandNotFound,
    InstanceNotRunning,
    ProviderAPIError,
)


def _instance(status="running"):
    return {"instance_id": "i-1", "status": status}


def test_dispatch_sends_whole_batch(provider):
    provider.agents["i-1"] = "Online"
    command_id = dispatch(provider, _instance(), ["echo one", "echo two"], timeout=300)

    assert command_id.startswith("cmd-")
    assert provider.sent == [("i-1", ["echo one", "echo two"], 300)]


@pytest.mark.parametrize("status", ["pending", "stopping", "stopped", "terminated"])
def test_dispatch_refuses_when_not_running(provider, status):
    provider.agents["i-1"] = "Online"
    with pytest.raises(InstanceNotRunning):
        dispatch(provider, _instance(status), ["echo hi"])
    assert provider.calls == []


def test_dispatch_propagates_agent_not_ready(provider):
    with pytest.raises(AgentNotReady):
        dispatch(
            provider, _instance(), ["echo hi"], max_attempts=2, poll_interval=0,
            sleep=lambda s: None,
        )
    assert provider.called("send_command") == []


def test_dispatch_does_not_retry_send_failure(provider):
    provider.agents["i-1"] = "Online"
    provider.send_error = ProviderAPIError("SendCommand", "InvalidInstanceId", "gone")
    with pytest.raises(ProviderAPIError):
        dispatch(provider, _instance(), ["echo hi"])
    assert len(provider.called("send_command")) == 1


def test_fetch_result_in_progress_is_incomplete(provider):
    provider.invocations[("cmd-1", "i-1")] = {
        "Status": "InProgress",
        "StandardOutputContent": "partial",
        "StandardErrorContent": "",
        "ExecutionStartDateTime": "2026-01-01T00:00:00Z",
        "ExecutionEndDateTime": "",
    }
    result = fetch_result(provider, "cmd-1", "i-1")
    assert result["is_complete"] is False
    assert result["stdout"] == "partial"
    assert result["started_at"] == "2026-01-01T00:00:00Z"
    assert result["ended_at"] is None


@pytest.mark.parametrize(
    "status,complete",
    [
        ("Pending", False),
        ("InProgress", False),
        ("Delayed", False),
        ("Cancelling", False),
        ("Success", True),
        ("Failed", True),
        ("Cancelled", True),
        ("TimedOut", True),
    ],
)
def test_fetch_result_completion_mapping(provider, status, complete):
    provider.invocations[("cmd-1", "i-1")] = {"Status": status}
    result = fetch_result(provider, "cmd-1", "i-1")
    assert result["is_complete"] is complete
    assert result["message"]


def test_fetch_result_missing_invocation(provider):
    with pytest.raises(CommandNotFound):
        fetch_result(provider, "cmd-unknown", "i-1")


def test_fetch_result_other_errors_propagate(provider):
    def fail(command_id, instance_id):
        raise ProviderAPIError("GetCommandInvocation", "AccessDenied", "nope")

    provider.get_command_invocation = fail
    with pytest.raises(ProviderAPIError):
        fetch_result(provider, "cmd-1", "i-1")
