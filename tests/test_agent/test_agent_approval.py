import json
from pathlib import Path

import pytest
import yaml

from watch_ai.agent import Agent
from watch_ai.config import get_config
from watch_ai.exceptions import ApprovalNotFoundError
from watch_ai.llm import LLMProvider, Message


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def text_round(text: str) -> str:
    return _sse({"choices": [{"delta": {"content": text}}]}) + "data: [DONE]\n\n"


def tool_round(*calls: tuple[str, str, dict]) -> str:
    body = ""
    for index, (call_id, name, args) in enumerate(calls):
        body += _sse({"choices": [{"delta": {"tool_calls": [
            {"index": index, "id": call_id, "function": {"name": name, "arguments": json.dumps(args)}},
        ]}}]})
    return body + "data: [DONE]\n\n"


class ScriptedProvider(LLMProvider):
    def __init__(self, rounds: list[str]):
        self.rounds = list(rounds)
        self.requests: list[list[Message]] = []

    async def stream_chat(self, messages, tools=None):
        self.requests.append(list(messages))
        yield self.rounds.pop(0)


MIXED_ROUND = tool_round(
    ("c1", "read_file", {"path": "app.py"}),
    ("c2", "run_command", {"command": "echo hi"}),
    ("c3", "list_dir", {}),
)


def _setup(workspace: Path, rounds: list[str]) -> tuple[Agent, ScriptedProvider, list[dict]]:
    (workspace / "app.py").write_text("print('hi')\n", encoding="utf-8")
    provider = ScriptedProvider(rounds)
    events: list[dict] = []
    agent = Agent(provider=provider, event_callback=events.append)
    return agent, provider, events


@pytest.mark.asyncio
async def test_run_command_pauses_turn_at_approval_boundary(config, workspace: Path):
    agent, provider, events = _setup(workspace, [MIXED_ROUND])

    await agent.send_message("Run it")

    tool_call = next(e for e in events if e["type"] == "tool_call")
    assert [c["id"] for c in tool_call["calls"]] == ["c1", "c2"]

    approval = next(e for e in events if e["type"] == "approval_required")
    assert approval["command"] == "echo hi"
    assert approval["cwd"] == str(workspace.resolve())
    assert approval["tool_call_id"] == "c2"
    assert events[-1]["type"] == "done"

    assistant = agent.transcript[1]
    assert [tc.id for tc in assistant.tool_calls] == ["c1", "c2"]
    assert agent.transcript.pending_tool_call_ids() == ["c2"]
    assert [a.id for a in agent.approvals.pending()] == [approval["id"]]
    assert len(provider.requests) == 1
    statuses = [(c["name"], c["status"]) for c in events[-1]["stats"]["tool_calls"]]
    assert statuses == [("read_file", "success"), ("run_command", "pending_approval")]


@pytest.mark.asyncio
async def test_approving_runs_command_once_and_resumes(config, workspace: Path):
    agent, provider, events = _setup(workspace, [MIXED_ROUND, text_round("The command printed hi.")])
    await agent.send_message("Run it")
    approval_id = next(e for e in events if e["type"] == "approval_required")["id"]
    events.clear()

    await agent.decide(approval_id, approved=True)

    step = next(e for e in events if e["type"] == "step")
    assert step["tool"] == "run_command"
    assert step["success"] is True
    assert events[-1]["type"] == "done"

    roles = [m.role for m in agent.transcript]
    assert roles == ["user", "assistant", "tool", "tool", "user", "assistant"]
    command_result = json.loads(agent.transcript[3].content)
    assert command_result["output"] == "hi"
    assert agent.transcript[4].content == "Command executed. Result: hi"
    assert provider.requests[1][-1].content == "Command executed. Result: hi"

    with pytest.raises(ApprovalNotFoundError):
        await agent.decide(approval_id, approved=True)


@pytest.mark.asyncio
async def test_rejecting_records_rejection_without_model_call(config, workspace: Path):
    marker = workspace / "ran.txt"
    round_ = tool_round(("c1", "run_command", {"command": f"touch {marker.name}"}))
    agent, provider, events = _setup(workspace, [round_])
    await agent.send_message("Touch a file")
    approval_id = next(e for e in events if e["type"] == "approval_required")["id"]
    events.clear()

    await agent.decide(approval_id, approved=False)

    assert not marker.exists()
    assert len(provider.requests) == 1
    assert [e["type"] for e in events] == ["step", "done"]
    assert events[0]["success"] is False
    result = json.loads(agent.transcript[-1].content)
    assert result["error_kind"] == "rejected"
    assert events[-1]["stats"]["tool_calls"][0]["status"] == "rejected"


@pytest.mark.asyncio
async def test_new_message_cancels_pending_approval(config, workspace: Path):
    agent, provider, events = _setup(workspace, [MIXED_ROUND, text_round("Never mind then.")])
    await agent.send_message("Run it")
    approval_id = next(e for e in events if e["type"] == "approval_required")["id"]

    await agent.send_message("Actually, skip that")

    assert not agent.approvals.has_pending()
    cancelled = json.loads(agent.transcript[3].content)
    assert agent.transcript[3].tool_call_id == "c2"
    assert cancelled["error_kind"] == "cancelled"
    assert [m.role for m in provider.requests[1][1:]] == ["user", "assistant", "tool", "tool", "user"]
    with pytest.raises(ApprovalNotFoundError):
        await agent.decide(approval_id, approved=True)


@pytest.mark.asyncio
async def test_blocked_command_fails_without_approval(config, workspace: Path):
    round_ = tool_round(("c1", "run_command", {"command": "rm -rf /"}))
    agent, provider, events = _setup(workspace, [round_, round_, text_round("unused")])

    await agent.send_message("Clean up")

    assert "approval_required" not in [e["type"] for e in events]
    step = next(e for e in events if e["type"] == "step")
    assert step["success"] is False
    assert "blocked" in step["message"]


@pytest.mark.asyncio
async def test_autopilot_runs_commands_without_asking(config, workspace: Path):
    config.approval.autopilot = True
    agent, provider, events = _setup(workspace, [
        tool_round(("c1", "run_command", {"command": "echo auto"}), ("c2", "list_dir", {})),
        text_round("Done."),
    ])

    await agent.send_message("Run it")

    assert "approval_required" not in [e["type"] for e in events]
    results = {m.tool_call_id: json.loads(m.content) for m in agent.transcript if m.role == "tool"}
    assert results["c1"]["output"] == "auto"
    assert results["c2"]["success"] is True


def test_set_autopilot_persists_to_config_file(config, tmp_path: Path):
    assert Agent.set_autopilot(True) is True
    assert get_config().approval.autopilot is True

    saved = yaml.safe_load((tmp_path / "home" / "config.yaml").read_text(encoding="utf-8"))
    assert saved["approval"]["autopilot"] is True

    assert Agent.set_autopilot(False, persist=False) is False
