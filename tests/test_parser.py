from taskloop.tools.parser import parse_tool_calls


def test_single_call_with_arguments():
    text = "Let me look.\n<read_file>\n<path>src/app.py</path>\n</read_file>"

    calls = parse_tool_calls(text)

    assert len(calls) == 1
    assert calls[0].name == "read_file"
    assert calls[0].args == {"path": "src/app.py"}


def test_calls_are_returned_in_document_order():
    text = (
        "<read_file><path>a.txt</path></read_file>\n"
        "some prose\n"
        "<execute_command><command>ls -la</command></execute_command>\n"
        "<attempt_completion><result>ok</result></attempt_completion>"
    )

    assert [c.name for c in parse_tool_calls(text)] == ["read_file", "execute_command", "attempt_completion"]


def test_content_keeps_inner_whitespace():
    text = (
        "<write_file>\n"
        "<path>  notes.md  </path>\n"
        "<content>\n"
        "  indented\n"
        "\n"
        "trailing blank above\n"
        "</content>\n"
        "</write_file>"
    )

    call = parse_tool_calls(text)[0]

    assert call.args["path"] == "notes.md"
    assert call.args["content"] == "  indented\n\ntrailing blank above"


def test_markup_inside_content_is_kept_verbatim():
    text = "<write_file><path>i.html</path><content><b>bold</b></content></write_file>"

    assert parse_tool_calls(text)[0].args["content"] == "<b>bold</b>"


def test_no_tags_means_no_calls():
    assert parse_tool_calls("I am done thinking about this.") == []
    assert parse_tool_calls("") == []


def test_prose_tags_are_not_calls():
    text = "<thinking>maybe <read_file><path>x</path></read_file></thinking> use <b>bold</b>"

    assert parse_tool_calls(text) == []


def test_unknown_tool_with_arguments_is_reported():
    text = "<delete_everything><path>/</path></delete_everything>"

    calls = parse_tool_calls(text)

    assert calls[0].name == "delete_everything"
    assert calls[0].args == {"path": "/"}


def test_unterminated_tag_is_left_as_prose():
    text = "<read_file><path>a.txt</path>"

    assert parse_tool_calls(text) == []


def test_first_argument_occurrence_wins():
    text = "<read_file><path>first</path><path>second</path></read_file>"

    assert parse_tool_calls(text)[0].args == {"path": "first"}


def test_known_tool_without_arguments_is_a_call():
    calls = parse_tool_calls("<list_files></list_files>")

    assert calls[0].name == "list_files"
    assert calls[0].args == {}
