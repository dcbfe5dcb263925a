from __future__ import annotations

import json

import allure
import pytest
from agent_stream import (
    encode,
    encode_lines,
    result,
    system_init,
    text_block,
    tool_block,
    tool_result,
)

from kanban_agent.execution.events import (
    SessionResult,
    SessionStarted,
    TextFragment,
    ToolInvocationCompleted,
    ToolInvocationStarted,
    ToolResult,
)
from kanban_agent.execution.stream_decoder import (
    StreamDecoder,
    decode_chunks,
    flatten_tool_result_content,
)

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("Stream Decoding"),
]


def _session_script() -> list[dict]:
    return [
        system_init("s1"),
        {"type": "message_start", "message": {"id": "msg_1"}},
        *text_block(0, "Let me ", "look.\n"),
        *tool_block(1, "Read", "toolu_1", {"file_path": "src/app.py"}),
        tool_result("toolu_1", "print('hi')"),
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
        {"type": "message_stop"},
        result("success", session_id="s1"),
    ]


def test_decodes_a_session_into_typed_events() -> None:
    events = decode_chunks([encode(_session_script())])

    assert events == [
        SessionStarted(session_id="s1"),
        TextFragment(text="Let me "),
        TextFragment(text="look.\n"),
        ToolInvocationStarted(tool_name="Read", tool_id="toolu_1", block_index=1),
        ToolInvocationCompleted(
            tool_name="Read",
            tool_id="toolu_1",
            input={"file_path": "src/app.py"},
        ),
        ToolResult(tool_use_id="toolu_1", content="print('hi')"),
        SessionResult(status="success", session_id="s1", duration_ms=1200),
    ]


def test_wrapped_and_bare_encodings_produce_identical_events() -> None:
    wrapped = decode_chunks([encode(_session_script(), wrap=True)])
    bare = decode_chunks([encode(_session_script(), wrap=False)])

    assert wrapped == bare
    assert len(wrapped) == 7


def test_mixed_wrapped_and_bare_lines_share_block_state() -> None:
    script = tool_block(2, "Bash", "toolu_9", {"command": "ls -la"}, pieces=2)
    lines = encode_lines(script[:2], wrap=True) + encode_lines(script[2:], wrap=False)

    events = decode_chunks(lines)

    assert events[-1] == ToolInvocationCompleted(
        tool_name="Bash",
        tool_id="toolu_9",
        input={"command": "ls -la"},
    )


@pytest.mark.parametrize("piece_size", [1, 2, 7, 64])
def test_fragmented_feed_matches_single_feed(piece_size: int) -> None:
    payload = encode(_session_script())
    pieces = [payload[offset : offset + piece_size] for offset in range(0, len(payload), piece_size)]

    assert decode_chunks(pieces) == decode_chunks([payload])


def test_multibyte_text_split_across_chunks_is_preserved() -> None:
    payload = encode(text_block(0, "naïve café ✓\n"))
    split_at = payload.index("é".encode()) + 1

    events = decode_chunks([payload[:split_at], payload[split_at:]])

    assert events == [TextFragment(text="naïve café ✓\n")]


def test_partial_json_fragments_assemble_in_delivery_order() -> None:
    tool_input = {"questions": [{"question": "Proceed?", "options": [{"label": "Yes"}]}]}

    script = tool_block(0, "AskUserQuestion", "toolu_q", tool_input, pieces=9)

    events = decode_chunks([encode(script)])

    completed = [event for event in events if isinstance(event, ToolInvocationCompleted)]
    assert completed == [
        ToolInvocationCompleted(tool_name="AskUserQuestion", tool_id="toolu_q", input=tool_input),
    ]


def test_unparseable_tool_input_completes_with_empty_input() -> None:
    script = [
        {
            "type": "content_block_start",
            "index": 0,
            "content_block": {"type": "tool_use", "id": "toolu_x", "name": "Write"},
        },
        {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "input_json_delta", "partial_json": '{"file_path": "a.t'},
        },
        {"type": "content_block_stop", "index": 0},
    ]

    events = decode_chunks([encode(script)])

    assert events[-1] == ToolInvocationCompleted(tool_name="Write", tool_id="toolu_x", input={})


def test_block_started_at_reused_index_replaces_unfinished_block() -> None:
    first = tool_block(0, "Grep", "toolu_a", {"pattern": "todo"})
    second = tool_block(0, "Glob", "toolu_b", {"pattern": "*.py"})
    events: list = []
    decoder = StreamDecoder(events.append)

    # The first block never receives its stop.
    for line in encode_lines(first[:-1]):
        decoder.feed(line)
    assert decoder.open_blocks == (0,)
    for line in encode_lines(second):
        decoder.feed(line)

    assert events == [
        ToolInvocationStarted(tool_name="Grep", tool_id="toolu_a", block_index=0),
        ToolInvocationStarted(tool_name="Glob", tool_id="toolu_b", block_index=0),
        ToolInvocationCompleted(tool_name="Glob", tool_id="toolu_b", input={"pattern": "*.py"}),
    ]
    assert decoder.open_blocks == ()


def test_stop_without_start_emits_nothing() -> None:
    assert decode_chunks([encode([{"type": "content_block_stop", "index": 4}])]) == []


def test_malformed_lines_are_dropped_and_stream_continues() -> None:
    garbage = [
        b"not json at all\n",
        b"[1, 2, 3]\n",
        b'{"type": "stream_event", "event": 5}\n',
        b'{"type": "content_block_delta", "index": "zero", "delta": {"type": "input_json_delta"}}\n',
        b'{"type": "content_block_start", "index": 0, "content_block": "tool_use"}\n',
        b'{"type": "user", "message": {"content": "plain"}}\n',
        b'{"type": "system", "subtype": "init", "session_id": 42}\n',
        b'{"type": "unknown_kind"}\n',
        b"\n",
        b'{"type": "result", "subtype": ',
        b"\n",
    ]

    events = decode_chunks([*garbage, encode(text_block(0, "still here"))])

    assert events == [TextFragment(text="still here")]


def test_finish_processes_trailing_line_without_newline() -> None:
    events: list = []
    decoder = StreamDecoder(events.append)

    decoder.feed(json.dumps(result("error_max_turns", session_id="s2")))
    assert events == []
    decoder.finish()

    assert events == [SessionResult(status="error_max_turns", session_id="s2", duration_ms=1200)]


def test_result_status_falls_back_to_status_field_then_unknown() -> None:
    events = decode_chunks(
        [
            b'{"type": "result", "status": "completed"}\n',
            b'{"type": "result"}\n',
        ],
    )

    assert events == [SessionResult(status="completed"), SessionResult(status="unknown")]


def test_assistant_message_tool_use_completes_directly() -> None:
    line = {
        "type": "assistant",
        "message": {
            "role": "assistant",
            "content": [
                {"type": "text", "text": "Running tests"},
                {
                    "type": "tool_use",
                    "id": "toolu_7",
                    "name": "TaskCreate",
                    "input": {"subject": "Run tests", "status": "in_progress"},
                },
            ],
        },
    }

    events = decode_chunks([encode([line])])

    assert events == [
        ToolInvocationCompleted(
            tool_name="TaskCreate",
            tool_id="toolu_7",
            input={"subject": "Run tests", "status": "in_progress"},
        ),
    ]


def test_user_message_tool_results_are_flattened() -> None:
    lines = [
        tool_result("toolu_1", "plain output"),
        tool_result(
            "toolu_2",
            [{"type": "text", "text": "line one\n"}, {"type": "image"}, {"type": "text", "text": "two"}],
        ),
    ]

    events = decode_chunks([encode(lines)])

    assert events == [
        ToolResult(tool_use_id="toolu_1", content="plain output"),
        ToolResult(tool_use_id="toolu_2", content="line one\ntwo"),
    ]


def test_bare_init_line_announces_session() -> None:
    assert decode_chunks([b'{"type": "init", "session_id": "legacy"}\n']) == [
        SessionStarted(session_id="legacy"),
    ]


def test_flatten_tool_result_content_handles_missing_and_structured_values() -> None:
    assert flatten_tool_result_content(None) == ""
    assert flatten_tool_result_content({"exit": 0}) == '{"exit": 0}'
