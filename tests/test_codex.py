import json
import os
import queue
import time
from dataclasses import dataclass
from pathlib import Path

import pytest

from openpilot.providers.codex import (
    CodexCLIAdapter,
    CodexJSONEvent,
    codex_args,
    codex_writable_dirs,
    extract_codex_preview_chunk,
    extract_completed_agent_message,
    find_first_string,
    is_codex_handled_no_output_type,
    is_preview_event_type,
    normalize_codex_error_message,
    normalize_codex_event,
    normalize_codex_stderr_line,
    parse_codex_json_line,
    summarize_codex_failure,
)
from openpilot.providers.events import EventType, PromptRequest, StartRequest

WAIT_TIMEOUT = 10.0

FAKE_CODEX = r"""#!/usr/bin/env bash
set -eu
if [ -n "${OPEN_PILOT_ARGS_FILE:-}" ]; then
  printf '%s\n' "$*" >> "$OPEN_PILOT_ARGS_FILE"
fi
out_file=""
prev=""
for arg in "$@"; do
  if [ "$prev" = "--output-last-message" ]; then
    out_file="$arg"
  fi
  prev="$arg"
done
mode="${OPEN_PILOT_MODE:-success}"
thread_id="${OPEN_PILOT_THREAD_ID:-thread-123}"
last_message="${OPEN_PILOT_LAST_MESSAGE:-hello}"
if [ "$mode" = "success" ]; then
  printf '{"type":"thread.started","thread_id":"%s"}\n' "$thread_id"
  printf '{"type":"response.output_text.delta","delta":"%s"}\n' "$last_message"
  if [ -n "$out_file" ]; then
    printf '%s' "$last_message" > "$out_file"
  fi
  exit 0
fi
if [ "$mode" = "delayed_success" ]; then
  case "$*" in
    *" resume "*) sleep 4 ;;
  esac
  printf '{"type":"thread.started","thread_id":"%s"}\n' "$thread_id"
  printf '{"type":"response.output_text.delta","delta":"%s"}\n' "$last_message"
  if [ -n "$out_file" ]; then
    printf '%s' "$last_message" > "$out_file"
  fi
  exit 0
fi
if [ "$mode" = "fail" ]; then
  printf '{"type":"error","message":"Reconnecting... 1/5"}\n'
  printf '{"type":"turn.failed","error":{"message":"network down"}}\n'
  exit 1
fi
if [ "$mode" = "empty" ]; then
  printf '{"type":"thread.started","thread_id":"%s"}\n' "$thread_id"
  : > "$out_file"
  exit 0
fi
if [ "$mode" = "agent_message_only" ]; then
  printf '{"type":"thread.started","thread_id":"%s"}\n' "$thread_id"
  printf '{"type":"item.completed","item":{"id":"item_0","type":"agent_message","text":"hello from agent"}}\n'
  : > "$out_file"
  exit 0
fi
if [ "$mode" = "stream" ]; then
  printf '{"type":"thread.started","thread_id":"%s"}\n' "$thread_id"
  printf '{"type":"response.output_text.delta","delta":"hello "}\n'
  printf '{"type":"response.output_text.delta","delta":"world"}\n'
  printf '%s' "$last_message" > "$out_file"
  exit 0
fi
if [ "$mode" = "fail_stderr" ]; then
  printf 'authentication required; run codex login\n' >&2
  exit 1
fi
if [ "$mode" = "unknown_event" ]; then
  printf '{"type":"thread.started","thread_id":"%s"}\n' "$thread_id"
  printf '{"type":"item.completed","item":{"type":"tool_call","text":"patched files"}}\n'
  printf '{"type":"response.output_text.delta","delta":"%s"}\n' "$last_message"
  printf '%s' "$last_message" > "$out_file"
  exit 0
fi
if [ "$mode" = "lifecycle" ]; then
  printf '{"type":"thread.started","thread_id":"%s"}\n' "$thread_id"
  printf '{"type":"turn.started"}\n'
  printf '{"type":"item.completed","item":{"id":"item-r","type":"reasoning","text":"**Planning**"}}\n'
  printf '{"type":"item.started","item":{"id":"item-c","type":"command_execution","command":"go test ./...","aggregated_output":"","exit_code":null,"status":"in_progress"}}\n'
  printf '{"type":"item.completed","item":{"id":"item-c","type":"command_execution","command":"go test ./...","aggregated_output":"ok\\n","exit_code":0,"status":"completed"}}\n'
  printf '{"type":"response.output_text.delta","delta":"%s"}\n' "$last_message"
  printf '{"type":"turn.completed","usage":{"input_tokens":10,"cached_input_tokens":2,"output_tokens":3}}\n'
  printf '%s' "$last_message" > "$out_file"
  exit 0
fi
if [ "$mode" = "large_json_line" ]; then
  printf '{"type":"thread.started","thread_id":"%s"}\n' "$thread_id"
  big_payload=$(printf 'x%.0s' $(seq 1 70000))
  printf '{"type":"item.completed","item":{"id":"item-big","type":"command_execution","aggregated_output":"%s"}}\n' "$big_payload"
  printf '{"type":"response.output_text.delta","delta":"%s"}\n' "$last_message"
  printf '%s' "$last_message" > "$out_file"
  exit 0
fi
printf 'unknown mode: %s\n' "$mode" >&2
exit 2
"""


@dataclass
class FakeCodex:
    binary: str
    repo_dir: str
    args_file: Path
    provider_log: Path


@pytest.fixture
def fake_codex(tmp_path, monkeypatch):
    provider_log = tmp_path / "provider-debug.log"
    monkeypatch.setenv("OPEN_PILOT_CODEX_DEBUG_LOG", str(tmp_path / "codex-debug.log"))
    monkeypatch.setenv("OPEN_PILOT_PROVIDER_DEBUG_LOG", str(provider_log))

    def setup(mode, thread_id, message):
        args_file = tmp_path / "args.log"
        repo_dir = tmp_path / "repo"
        repo_dir.mkdir()
        script = tmp_path / "fake-codex"
        script.write_text(FAKE_CODEX)
        script.chmod(0o755)
        monkeypatch.setenv("OPEN_PILOT_MODE", mode)
        monkeypatch.setenv("OPEN_PILOT_THREAD_ID", thread_id)
        monkeypatch.setenv("OPEN_PILOT_LAST_MESSAGE", message)
        monkeypatch.setenv("OPEN_PILOT_ARGS_FILE", str(args_file))
        return FakeCodex(str(script), str(repo_dir), args_file, provider_log)

    return setup


def wait_event_type(stream, event_type, timeout=WAIT_TIMEOUT):
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            pytest.fail(f"timed out waiting for event {event_type!r}")
        try:
            event = stream.get(timeout=remaining)
        except queue.Empty:
            pytest.fail(f"timed out waiting for event {event_type!r}")
        if event is None:
            pytest.fail(f"event stream closed while waiting for {event_type!r}")
        if event.type == event_type:
            return event
        if event.type == EventType.ERROR and event_type != EventType.ERROR:
            pytest.fail(f"error event while waiting for {event_type!r}: {event.message}")


def collect_events_within(stream, seconds):
    seen = []
    deadline = time.monotonic() + seconds
    while (remaining := deadline - time.monotonic()) > 0:
        try:
            event = stream.get(timeout=remaining)
        except queue.Empty:
            break
        if event is None:
            break
        seen.append(event)
    return seen


def start_handle(adapter, repo_dir, thread_id=""):
    handle = adapter.start(
        StartRequest(
            session_id="sess-1", provider="codex", repo_path=repo_dir, provider_thread_id=thread_id
        )
    )
    events = adapter.events(handle)
    wait_event_type(events, EventType.READY)
    return handle, events


def prompt(env, request_id, text):
    return PromptRequest(id=request_id, session_id="sess-1", text=text, repo_path=env.repo_dir)


def read_invocations(env):
    return env.args_file.read_text().strip().split("\n")


# --- adapter behaviour -------------------------------------------------------


def test_first_prompt_stores_thread_id(fake_codex):
    env = fake_codex("success", "thread-first", "hello from assistant")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir)

    adapter.send(handle, prompt(env, "req-1", "hello"))
    final = wait_event_type(events, EventType.FINAL)
    assert final.text == "hello from assistant"
    assert adapter.thread_id(handle) == "thread-first"


def test_emits_thread_id_in_status_event(fake_codex):
    env = fake_codex("success", "thread-event", "hello from assistant")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir)

    adapter.send(handle, prompt(env, "req-1", "hello"))
    while True:
        status = wait_event_type(events, EventType.STATUS)
        if status.provider_thread_id:
            break
    assert status.provider_thread_id == "thread-event"


def test_subsequent_prompt_uses_resume(fake_codex):
    env = fake_codex("success", "thread-resume", "ok")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir)

    adapter.send(handle, prompt(env, "req-1", "first prompt"))
    wait_event_type(events, EventType.FINAL)
    adapter.send(handle, prompt(env, "req-2", "second prompt"))
    wait_event_type(events, EventType.FINAL)

    lines = read_invocations(env)
    assert len(lines) >= 2
    first, second = lines[0], lines[1]
    assert "exec --json" in first and "--output-last-message" in first
    assert "--skip-git-repo-check" in first
    assert "--sandbox workspace-write" in first
    assert "--add-dir" in first
    assert "exec " in second and " resume " in second
    assert "--skip-git-repo-check" in second
    assert "--sandbox workspace-write" in second
    assert "--add-dir" in second
    assert "--output-last-message" not in second
    assert " -- thread-resume second prompt" not in second
    assert "thread-resume second prompt" in second


def test_start_with_thread_id_resumes_on_first_prompt(fake_codex):
    env = fake_codex("success", "thread-start", "ok")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir, thread_id="thread-start")

    adapter.send(handle, prompt(env, "req-1", "hello"))
    wait_event_type(events, EventType.FINAL)

    first = read_invocations(env)[0]
    assert " resume " in first
    assert "thread-start" in first


def test_subsequent_prompt_resumes_when_second_response_is_delayed(fake_codex):
    env = fake_codex("delayed_success", "thread-resume-delayed", "ok")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir)

    adapter.send(handle, prompt(env, "req-1", "first prompt"))
    assert wait_event_type(events, EventType.FINAL).text == "ok"
    adapter.send(handle, prompt(env, "req-2", "second prompt"))
    final = wait_event_type(events, EventType.FINAL)
    assert final.request_id == "req-2"
    assert final.text == "ok"


def test_failure_emits_single_concise_error(fake_codex):
    env = fake_codex("fail", "", "")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir)

    adapter.send(handle, prompt(env, "req-1", "hello"))
    error = wait_event_type(events, EventType.ERROR)
    assert error.message == "network down"
    assert "reconnecting" not in error.message.lower()


def test_no_final_message_emits_error(fake_codex):
    env = fake_codex("empty", "thread-empty", "")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir)

    adapter.send(handle, prompt(env, "req-1", "hello"))
    error = wait_event_type(events, EventType.ERROR)
    assert error.message == "codex returned no assistant message"


def test_agent_message_without_output_file_does_not_emit_error(fake_codex):
    env = fake_codex("agent_message_only", "thread-agent", "")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir)

    adapter.send(handle, prompt(env, "req-1", "hello"))
    message = wait_event_type(events, EventType.AGENT_MESSAGE)
    assert message.text == "hello from agent"
    seen = collect_events_within(events, 0.3)
    assert all(event.type != EventType.ERROR for event in seen)


def test_streams_preview_chunks(fake_codex):
    env = fake_codex("stream", "thread-stream", "hello world")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir)

    adapter.send(handle, prompt(env, "req-1", "hello"))
    chunk1 = wait_event_type(events, EventType.CHUNK)
    chunk2 = wait_event_type(events, EventType.CHUNK)
    final = wait_event_type(events, EventType.FINAL)
    assert chunk1.text + chunk2.text == "hello world"
    assert final.text == "hello world"


def test_failure_falls_back_to_stderr_message(fake_codex):
    env = fake_codex("fail_stderr", "", "")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir)

    adapter.send(handle, prompt(env, "req-1", "hello"))
    error = wait_event_type(events, EventType.ERROR)
    assert error.message == "authentication required; run codex login"


def test_emits_unknown_events_and_logs_payload(fake_codex):
    env = fake_codex("unknown_event", "thread-unknown", "hello")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir)

    adapter.send(handle, prompt(env, "req-unknown", "hello"))
    unknown = wait_event_type(events, EventType.UNKNOWN)
    assert unknown.raw_type == "item.completed"
    assert '"item":{"type":"tool_call"' in unknown.raw_json
    wait_event_type(events, EventType.FINAL)

    assert '"raw_type":"item.completed"' in env.provider_log.read_text()


def test_emits_reasoning_and_command_lifecycle_events(fake_codex):
    env = fake_codex("lifecycle", "thread-life", "done")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir)

    adapter.send(handle, prompt(env, "req-life", "hello"))
    reasoning = wait_event_type(events, EventType.REASONING)
    assert "Planning" in reasoning.text

    command_start = wait_event_type(events, EventType.COMMAND_EXECUTION)
    assert command_start.command_status == "in_progress"
    assert command_start.command == "go test ./..."
    assert command_start.command_exit_code is None

    command_done = wait_event_type(events, EventType.COMMAND_EXECUTION)
    assert command_done.command_status == "completed"
    assert command_done.command_exit_code == 0

    usage = wait_event_type(events, EventType.TURN_USAGE)
    assert (usage.usage_input_tokens, usage.usage_cached_input_tokens, usage.usage_output_tokens) == (
        10,
        2,
        3,
    )
    assert wait_event_type(events, EventType.FINAL).text == "done"


def test_handles_large_stdout_json_line(fake_codex):
    env = fake_codex("large_json_line", "thread-large", "ok")
    adapter = CodexCLIAdapter(env.binary)
    handle, events = start_handle(adapter, env.repo_dir)

    adapter.send(handle, prompt(env, "req-large", "hello"))
    assert wait_event_type(events, EventType.FINAL).text == "ok"
    seen = collect_events_within(events, 0.3)
    assert all(event.type != EventType.ERROR for event in seen)


def test_send_to_unknown_handle_raises(tmp_path):
    adapter = CodexCLIAdapter(str(tmp_path / "missing"))
    with pytest.raises(LookupError):
        adapter.send("codex-unknown", PromptRequest("r", "s", "t", str(tmp_path)))


def test_stop_closes_event_stream(tmp_path):
    adapter = CodexCLIAdapter("codex")
    handle = adapter.start(StartRequest("sess-1", "codex", str(tmp_path)))
    events = adapter.events(handle)
    assert events.get(timeout=1).type == EventType.READY
    adapter.stop(handle)
    assert events.get(timeout=1) is None
    assert adapter.events(handle).get(timeout=1) is None
    assert adapter.provider_id() == "codex"


# --- pure helpers ------------------------------------------------------------


def test_parse_codex_json_line():
    parsed = parse_codex_json_line(b'{"type":"thread.started","thread_id":"thread-1"}')
    assert parsed is not None
    event, raw = parsed
    assert event.type == "thread.started"
    assert event.thread_id == "thread-1"
    assert raw == {"type": "thread.started", "thread_id": "thread-1"}


def test_parse_codex_json_line_ignores_non_json():
    assert parse_codex_json_line(b"OpenAI Codex v0.x") is None


def test_parse_codex_json_line_rejects_missing_or_mistyped_type():
    assert parse_codex_json_line('{"thread_id":"x"}') is None
    assert parse_codex_json_line('{"type":5}') is None


def test_parse_codex_json_line_reads_error_message():
    parsed = parse_codex_json_line('{"type":"turn.failed","error":{"message":"network down"}}')
    assert parsed[0].error_message == "network down"


def test_summarize_codex_failure_priority():
    assert summarize_codex_failure("turn failed", "last error", "stderr error") == "turn failed"
    assert summarize_codex_failure("", "last error", "stderr error") == "last error"
    assert summarize_codex_failure("", "", "stderr error") == "stderr error"
    assert summarize_codex_failure("", "", "") == ""


def test_extract_codex_preview_chunk():
    event = CodexJSONEvent(type="response.output_text.delta", delta="hel")
    assert extract_codex_preview_chunk(event, None) == "hel"

    raw = {"type": "response.output_text.delta", "data": {"text": "lo"}}
    assert extract_codex_preview_chunk(CodexJSONEvent(type="response.output_text.delta"), raw) == "lo"

    event = CodexJSONEvent(type="response.output_text.partial", text=" there")
    assert extract_codex_preview_chunk(event, None) == " there"

    raw = {"type": "item.completed", "item": {"type": "agent_message", "text": "final message"}}
    assert extract_codex_preview_chunk(CodexJSONEvent(type="item.completed"), raw) == ""


def test_is_preview_event_type():
    assert is_preview_event_type("response.output_text.delta")
    assert is_preview_event_type("response.message.partial")
    assert not is_preview_event_type("turn.failed")
    assert not is_preview_event_type("thread.started")


def test_extract_completed_agent_message():
    raw = {"type": "item.completed", "item": {"type": "agent_message", "text": "  done  "}}
    assert extract_completed_agent_message(raw) == "done"
    assert extract_completed_agent_message({"type": "item.started", "item": {}}) == ""
    assert extract_completed_agent_message(None) == ""


def test_normalize_codex_event_reasoning():
    raw = {
        "type": "item.completed",
        "item": {"id": "item-1", "type": "reasoning", "text": "**Planning project type detection**"},
    }
    event = normalize_codex_event(CodexJSONEvent(type="item.completed"), raw)
    assert event is not None
    assert event.type == EventType.REASONING
    assert event.item_type == "reasoning"
    assert event.item_id == "item-1"


def test_normalize_codex_event_command_execution():
    raw = {
        "type": "item.completed",
        "item": {
            "id": "item-2",
            "type": "command_execution",
            "command": "go test ./...",
            "aggregated_output": "ok",
            "status": "completed",
            "exit_code": 0.0,
        },
    }
    event = normalize_codex_event(CodexJSONEvent(type="item.completed"), raw)
    assert event.type == EventType.COMMAND_EXECUTION
    assert event.command == "go test ./..."
    assert event.command_status == "completed"
    assert event.command_exit_code == 0
    assert event.command_output == "ok"


def test_normalize_codex_event_agent_message():
    raw = {"type": "item.completed", "item": {"id": "item-3", "type": "agent_message", "text": "done"}}
    event = normalize_codex_event(CodexJSONEvent(type="item.completed"), raw)
    assert event.type == EventType.AGENT_MESSAGE
    assert event.item_id == "item-3"
    assert event.text == "done"


def test_normalize_codex_event_turn_usage():
    raw = {
        "type": "turn.completed",
        "usage": {"input_tokens": 10.0, "cached_input_tokens": 2.0, "output_tokens": 3.0},
    }
    event = normalize_codex_event(CodexJSONEvent(type="turn.completed"), raw)
    assert event.type == EventType.TURN_USAGE
    assert event.usage_input_tokens == 10
    assert event.usage_cached_input_tokens == 2
    assert event.usage_output_tokens == 3


def test_normalize_codex_event_started_agent_message_is_silent():
    raw = {"type": "item.started", "item": {"id": "i", "type": "agent_message"}}
    event = normalize_codex_event(CodexJSONEvent(type="item.started"), raw)
    assert event.type == ""


def test_normalize_codex_event_unmapped_item_returns_none():
    raw = {"type": "item.completed", "item": {"type": "tool_call"}}
    assert normalize_codex_event(CodexJSONEvent(type="item.completed"), raw) is None
    assert normalize_codex_event(CodexJSONEvent(type="response.delta"), {}) is None


def test_normalize_codex_error_message_drops_noise():
    assert normalize_codex_error_message("Reconnecting... 1/5") == ""
    assert normalize_codex_error_message("Failed to shutdown rollout recorder") == ""
    assert normalize_codex_error_message("  network down ") == "network down"


def test_normalize_codex_stderr_line_drops_noise():
    assert normalize_codex_stderr_line("ERROR codex_core::exec: boom") == ""
    assert normalize_codex_stderr_line("failed to record rollout items: x") == ""
    assert normalize_codex_stderr_line("WARNING: proceeding, even though we could not update PATH") == ""
    assert normalize_codex_stderr_line(" auth needed ") == "auth needed"


def test_is_codex_handled_no_output_type():
    assert is_codex_handled_no_output_type("Turn.Completed")
    assert is_codex_handled_no_output_type("")
    assert not is_codex_handled_no_output_type("item.completed")


def test_find_first_string_searches_nested_values():
    value = {"a": [{"b": 1}, {"c": {"text": "deep"}}]}
    assert find_first_string(value, "delta", "text") == "deep"
    assert find_first_string({"delta": "", "text": "x"}, "delta", "text") == "x"
    assert find_first_string(None, "text") == ""


def test_codex_args_fresh_and_resume(monkeypatch):
    monkeypatch.setenv("OPEN_PILOT_CODEX_ADD_DIRS", "")
    fresh = codex_args("", "/tmp/out.txt", "hi", "/repo")
    assert fresh[:5] == ["exec", "--json", "--skip-git-repo-check", "--sandbox", "workspace-write"]
    assert fresh[-4:] == ["--output-last-message", "/tmp/out.txt", "--", "hi"]

    resumed = codex_args("thread-1", "", "hi", "/repo")
    assert resumed[-3:] == ["resume", "thread-1", "hi"]
    assert "--output-last-message" not in resumed
    assert "--add-dir" in resumed


def test_codex_writable_dirs_deduplicates_and_cleans(monkeypatch, tmp_path):
    extra = str(tmp_path / "extra")
    monkeypatch.setenv(
        "OPEN_PILOT_CODEX_ADD_DIRS", os.pathsep.join([extra + "/", extra, "  ", str(tmp_path)])
    )
    dirs = codex_writable_dirs("/repo")
    assert dirs.count(extra) == 1
    assert str(tmp_path) in dirs
    assert len(dirs) == len(set(dirs))
    assert json.dumps(dirs)  # every entry is a plain string
    assert all(d == os.path.normpath(d) for d in dirs)