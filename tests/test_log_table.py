import pytest

from KLOG.streaming.line_parser import ParsedLogLine, error_line
from KLOG.UI.views.log_viewer.log_table import format_message, plan_update
from KLOG.UI.views.selector.target_selector import new_session_id, parse_tail_lines


def lines(*seqs):
    return [ParsedLogLine(raw=f"line {seq}", seq=seq) for seq in seqs]


def test_plan_update_appends_new_tail():
    update = plan_update([1, 2], lines(1, 2, 3, 4))

    assert update.reset is False
    assert update.remove == 0
    assert [line.seq for line in update.append] == [3, 4]


def test_plan_update_drops_evicted_rows():
    update = plan_update([1, 2, 3], lines(3, 4))

    assert update.reset is False
    assert update.remove == 2
    assert [line.seq for line in update.append] == [4]


def test_plan_update_resets_when_display_changes():
    """
    Tests that a filtered snapshot that skips shown rows redraws everything.
    """
    update = plan_update([1, 2, 3], lines(1, 3))

    assert update.reset is True
    assert [line.seq for line in update.append] == [1, 3]


@pytest.mark.parametrize("shown, reset", [([], False), ([1, 2], True)])
def test_plan_update_empty_snapshot(shown, reset):
    update = plan_update(shown, [])

    assert update.reset is reset
    assert update.append == []


def test_plan_update_nothing_new():
    update = plan_update([5, 6], lines(5, 6))

    assert update.reset is False
    assert update.remove == 0
    assert update.append == []


def test_format_message_truncates_long_lines():
    text = format_message(ParsedLogLine(raw="x" * 20), 8)

    assert text.plain == "x" * 8 + "..."


def test_format_message_styles_links():
    line = ParsedLogLine(raw="see https://example.com/docs now")

    text = format_message(line, 500)

    assert text.plain == "see https://example.com/docs now"
    link_spans = [span for span in text.spans if getattr(span.style, "link", None)]
    assert link_spans[0].style.link == "https://example.com/docs"


def test_format_message_error_lines_are_red():
    text = format_message(error_line("stream closed"), 500)

    assert text.plain == "[ERROR] stream closed"
    assert text.style == "red"


@pytest.mark.parametrize("value, expected", [
    ("", 500),
    ("  ", 500),
    ("100", 100),
    ("0", None),
    ("-5", None),
])
def test_parse_tail_lines(value, expected):
    assert parse_tail_lines(value, 500) == expected


def test_parse_tail_lines_rejects_text():
    with pytest.raises(ValueError):
        parse_tail_lines("lots", 500)


def test_new_session_ids_are_unique_and_id_safe():
    first, second = new_session_id(), new_session_id()

    assert first != second
    assert first.startswith("session-")
    assert "." not in first
