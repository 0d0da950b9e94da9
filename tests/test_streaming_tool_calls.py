"""Tests for streamed tool-call reconstruction and inline markup parsing."""

from deecli.llm.response_parser import (
    ToolCallAccumulator,
    clean_tool_like_content,
    extract_markup_tool_calls,
    is_tool_finish,
    merge_tool_calls,
)
from deecli.types import ToolCall


def _frag(id="", name="", args="", index=None) -> ToolCall:
    return ToolCall(id=id, name=name, arguments=args, index=index)


class TestMergeToolCalls:
    def test_fragments_concatenate_by_id(self):
        merged = merge_tool_calls([], [_frag("a", args='{"x":')])
        merged = merge_tool_calls(merged, [_frag("a", args="1}")])
        assert len(merged) == 1
        assert merged[0].id == "a"
        assert merged[0].arguments == '{"x":1}'
        assert merged[0].parsed_arguments() == {"x": 1}

    def test_single_batch_equals_sequential(self):
        frags = [_frag("a", args='{"x":'), _frag("a", args="1}")]
        assert merge_tool_calls([], frags) == merge_tool_calls(
            merge_tool_calls([], frags[:1]), frags[1:],
        )

    def test_new_ids_appended_in_arrival_order(self):
        merged = merge_tool_calls([], [_frag("b", "second"), _frag("a", "first")])
        assert [c.id for c in merged] == ["b", "a"]

    def test_name_overwritten_only_when_non_empty(self):
        merged = merge_tool_calls([], [_frag("a", "read_file", "{")])
        merged = merge_tool_calls(merged, [_frag("a", "", "}")])
        assert merged[0].name == "read_file"
        merged = merge_tool_calls(merged, [_frag("a", "read_files", "")])
        assert merged[0].name == "read_files"

    def test_inputs_not_mutated(self):
        accumulated = [_frag("a", "f", "{")]
        fragments = [_frag("a", args="}")]
        merge_tool_calls(accumulated, fragments)
        assert accumulated == [_frag("a", "f", "{")]
        assert fragments == [_frag("a", args="}")]

    def test_idless_fragment_matches_index(self):
        merged = merge_tool_calls([], [
            _frag("a", "one", '{"p":', index=0),
            _frag("b", "two", '{"q":', index=1),
        ])
        merged = merge_tool_calls(merged, [_frag(args="1}", index=0), _frag(args="2}", index=1)])
        assert merged[0].arguments == '{"p":1}'
        assert merged[1].arguments == '{"q":2}'

    def test_idless_fragment_without_index_goes_to_last(self):
        merged = merge_tool_calls([], [_frag("a", "one", "{"), _frag("b", "two", "{")])
        merged = merge_tool_calls(merged, [_frag(args="}")])
        assert merged[0].arguments == "{"
        assert merged[1].arguments == "{}"

    def test_at_most_one_entry_per_id(self):
        frags = [_frag("a", "f", '{"k"'), _frag("b", "g", "{}"), _frag("a", "", ':"v"}')]
        merged = merge_tool_calls([], frags)
        assert len([c for c in merged if c.id == "a"]) == 1
        assert merged[0].arguments == '{"k":"v"}'


class TestToolCallAccumulator:
    def test_empty(self):
        acc = ToolCallAccumulator()
        assert not acc.has_calls()
        assert acc.finalize("finish_reason") == []
        assert acc.finalized_by == "finish_reason"

    def test_feed_and_finalize(self):
        acc = ToolCallAccumulator()
        acc.feed([_frag("call_1", "list_files", '{"recur')])
        acc.feed([_frag("call_1", "", 'sive": true}')])
        calls = acc.finalize("finish_reason")
        assert len(calls) == 1
        assert calls[0].arguments_complete
        assert calls[0].parsed_arguments() == {"recursive": True}

    def test_fragments_after_finalize_ignored(self):
        acc = ToolCallAccumulator()
        acc.feed([_frag("a", "f", "{}")])
        acc.finalize("finish_reason")
        acc.feed([_frag("b", "g", "{}")])
        assert [c.id for c in acc.calls] == ["a"]

    def test_first_finalize_reason_wins(self):
        acc = ToolCallAccumulator()
        acc.feed([_frag("a", "f", "{}")])
        acc.finalize("end_of_stream")
        acc.finalize("finish_reason")
        assert acc.finalized_by == "end_of_stream"

    def test_truncated_arguments_still_finalized(self):
        acc = ToolCallAccumulator()
        acc.feed([_frag("a", "f", '{"path": "x')])
        calls = acc.finalize("end_of_stream")
        assert len(calls) == 1
        assert not calls[0].arguments_complete


class TestFinishReason:
    def test_accepted_forms(self):
        assert is_tool_finish("tool_calls")
        assert is_tool_finish("function_call")

    def test_other_reasons(self):
        assert not is_tool_finish("stop")
        assert not is_tool_finish(None)


READ = "<｜tool▁call▁begin｜>read_file<｜tool▁sep｜>{\"path\": \"test.go\"}<｜tool▁call▁end｜>"
LIST = "<｜tool▁call▁begin｜>list_files<｜tool▁sep｜>{\"recursive\": true}<｜tool▁call▁end｜>"


def _block(*calls: str) -> str:
    return "<｜tool▁calls▁begin｜>" + "".join(calls) + "<｜tool▁calls▁end｜>"


class TestMarkupExtraction:
    def test_plain_text_untouched(self):
        calls, text = extract_markup_tool_calls("just text")
        assert calls == []
        assert text == "just text"

    def test_single_call(self):
        calls, text = extract_markup_tool_calls("I'll read the file for you.\n\n" + _block(READ))
        assert len(calls) == 1
        assert calls[0].id == "call_1"
        assert calls[0].name == "read_file"
        assert calls[0].parsed_arguments() == {"path": "test.go"}
        assert text == "I'll read the file for you."

    def test_multiple_calls_numbered(self):
        calls, _ = extract_markup_tool_calls("ok " + _block(READ, LIST))
        assert [c.id for c in calls] == ["call_1", "call_2"]
        assert [c.name for c in calls] == ["read_file", "list_files"]

    def test_unterminated_block_cut(self):
        calls, text = extract_markup_tool_calls(
            "Starting response <｜tool▁calls▁begin｜><｜tool▁call▁begin｜>read_file",
        )
        assert calls == []
        assert text == "Starting response"

    def test_missing_separator_skipped(self):
        bad = "<｜tool▁call▁begin｜>read_file{\"path\": \"x\"}<｜tool▁call▁end｜>"
        calls, text = extract_markup_tool_calls("Response " + _block(bad))
        assert calls == []
        assert text == "Response"


class TestCleanToolLikeContent:
    def test_argument_lines_removed(self):
        content = "Here is what I found in the directory listing.\n{\"path\": \"src\"}\n{}"
        cleaned = clean_tool_like_content(content)
        assert "path" not in cleaned
        assert "{}" not in cleaned
        assert cleaned.startswith("Here is what I found")

    def test_rich_json_kept(self):
        content = 'The config looks like this:\n{"path": "a", "mode": "r", "size": 3}'
        assert clean_tool_like_content(content) == content

    def test_short_remainder_replaced(self):
        assert clean_tool_like_content('{"pattern": "*.go"}') == (
            "Tool execution completed. You can continue the conversation."
        )
