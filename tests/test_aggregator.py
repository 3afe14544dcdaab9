"""Stream aggregation state machine."""

from __future__ import annotations

import json

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from genbridge.aggregator import StreamAggregator
from genbridge.models import Usage

pytestmark = pytest.mark.unit


def test_text_accumulates_per_choice() -> None:
    """Text for interleaved choices should stay separate and finalize independently."""
    agg = StreamAggregator()
    agg.set_role(0, "assistant")
    agg.append_text(0, "Hel")
    agg.append_text(1, "other")
    agg.append_text(0, "lo")

    choice = agg.finalize(0, "stop")

    assert choice.message.content == "Hello"
    assert choice.finish_reason == "stop"
    assert agg.is_open(1)
    assert not agg.is_open(0)


def test_tool_fragments_are_keyed_by_position_not_id() -> None:
    """Fragments join by announced position; finalized calls come out in position order."""
    agg = StreamAggregator()
    agg.open_tool(0, 1, id="call_b", name="second")
    agg.open_tool(0, 0, id="call_a", name="first")
    agg.append_tool_arguments(0, 1, '{"y":')
    agg.append_tool_arguments(0, 0, '{"x":1}')
    agg.append_tool_arguments(0, 1, "2}")

    calls = agg.finalize(0, "tool_calls").message.tool_calls

    assert [c.name for c in calls] == ["first", "second"]
    assert calls[0].arguments == {"x": 1}
    assert calls[1].arguments == {"y": 2}
    assert calls[1].raw_arguments == '{"y":2}'


def test_whole_tool_calls_take_next_position() -> None:
    """Tool calls delivered whole should be appended after earlier ones."""
    agg = StreamAggregator()
    agg.add_tool_call(0, id="c1", name="a", arguments={"k": 1})
    agg.add_tool_call(0, id="c2", name="b", arguments=None)

    calls = agg.finalize(0, "tool_calls").message.tool_calls

    assert [c.id for c in calls] == ["c1", "c2"]
    assert calls[0].raw_arguments == '{"k": 1}'
    assert calls[1].arguments == {}


def test_finalize_discards_state() -> None:
    """A finalized choice starts from scratch if frames keep coming."""
    agg = StreamAggregator()
    agg.append_text(0, "first")
    agg.finalize(0, "stop")
    agg.append_text(0, "second")
    assert agg.finalize(0, "stop").message.content == "second"


def test_finalize_unknown_choice_is_empty() -> None:
    choice = StreamAggregator().finalize(3, "stop")
    assert choice.index == 3
    assert choice.message.content == ""


def test_usage_keeps_latest_non_empty_report() -> None:
    """Empty usage reports should not erase an earlier one."""
    agg = StreamAggregator()
    agg.update_usage(Usage(prompt_tokens=1))
    agg.update_usage(Usage())
    agg.update_usage(None)
    assert agg.pending_usage == Usage(prompt_tokens=1)
    agg.update_usage(Usage(prompt_tokens=1, completion_tokens=5))
    assert agg.pending_usage.total_tokens == 6


def test_partial_response_prefers_last_emitted() -> None:
    """Characterize the partial response used when a stream ends early."""
    agg = StreamAggregator()
    assert agg.partial_response() is None
    agg.append_text(0, "draft")
    partial = agg.partial_response()
    assert partial is not None
    assert partial.text() == "draft"
    assert partial.finish_reason == ""

    final = agg.response([agg.finalize(0, "stop")])
    agg.last_response = final
    assert agg.partial_response() is final


def test_response_carries_stream_metadata() -> None:
    agg = StreamAggregator()
    agg.model = "m"
    agg.response_id = "r"
    response = agg.response(agg.finalize_all("stop"))
    assert response.model == "m"
    assert response.response_id == "r"
    assert response.choices == ()


# =============================================================================
# Properties
# =============================================================================


def _splits(text: str) -> st.SearchStrategy[list[str]]:
    if not text:
        return st.just([""])
    return st.lists(
        st.integers(min_value=0, max_value=len(text)), max_size=6
    ).map(lambda cuts: _cut(text, sorted(set(cuts))))


def _cut(text: str, cuts: list[int]) -> list[str]:
    bounds = [0, *cuts, len(text)]
    return [text[a:b] for a, b in zip(bounds, bounds[1:])]


_arguments = st.dictionaries(
    st.text(min_size=1, max_size=5),
    st.one_of(st.integers(), st.text(max_size=5), st.booleans()),
    max_size=4,
)


@settings(max_examples=50, deadline=None)
@given(st.data())
def test_fragment_boundaries_do_not_change_result(data: st.DataObject) -> None:
    """Where text and argument fragments are split should not matter."""
    arguments = data.draw(_arguments)
    raw = json.dumps(arguments)
    fragments = data.draw(_splits(raw))
    text = data.draw(st.text(max_size=30))
    text_parts = data.draw(_splits(text))

    agg = StreamAggregator()
    agg.open_tool(0, 0, id="call_1", name="f")
    for part in text_parts:
        agg.append_text(0, part)
    for fragment in fragments:
        agg.append_tool_arguments(0, 0, fragment)
    choice = agg.finalize(0, "tool_calls")

    assert choice.message.content == text
    assert choice.message.tool_calls[0].arguments == arguments
    assert choice.message.tool_calls[0].raw_arguments == raw


@settings(max_examples=30, deadline=None)
@given(st.lists(st.sampled_from([0, 1, 2]), min_size=1, max_size=20))
def test_interleaved_choices_stay_separate(order: list[int]) -> None:
    """Any interleaving of choice deltas should aggregate per choice."""
    agg = StreamAggregator()
    for i in order:
        agg.append_text(i, str(i))
    choices = {c.index: c for c in agg.finalize_all("stop")}
    for i in set(order):
        assert choices[i].message.content == str(i) * order.count(i)
