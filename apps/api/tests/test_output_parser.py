import json

import pytest

from services.errors import MalformedOutputError
from services.output_parser import (
    DEFAULT_MESSAGE,
    SCREENSHOT_MARKER,
    inject_screenshot_script,
    normalize_escapes,
    parse_generator_output,
    strip_wrappers,
)

HTML = "<html><body><canvas></canvas></body></html>"


def _payload(**overrides):
    data = {"message": "Let's go!", "html": HTML, "suggestedTitle": "Pong", "suggestedDescription": "Classic"}
    data.update(overrides)
    return json.dumps(data)


def test_plain_json_parses():
    parsed = parse_generator_output(_payload())
    assert parsed.html == HTML
    assert parsed.message == "Let's go!"
    assert parsed.suggested_title == "Pong"
    assert parsed.suggested_description == "Classic"
    assert parsed.repaired is False


def test_fenced_and_prose_wrapped_output_parses():
    fenced = f"```json\n{_payload()}\n```"
    prose = f"Sure! Here is your game:\n{_payload()}\nEnjoy."
    assert parse_generator_output(fenced).html == HTML
    assert parse_generator_output(prose).html == HTML
    assert parse_generator_output("\ufeff" + _payload()).html == HTML


def test_invalid_escape_in_script_is_preserved():
    raw = '{"message": "ok", "html": "<script>var r = /\\d+/;</script>"}'
    parsed = parse_generator_output(raw)
    assert parsed.html == "<script>var r = /\\d+/;</script>"


def test_valid_json_is_not_changed_by_escape_normalization():
    text = _payload(html='<p class=\\"x\\">a\\nb</p>')
    assert normalize_escapes(text) == text


def test_literal_newlines_and_trailing_commas_are_repaired():
    raw = '{"message": "ok", "html": "<html>\n<body></body>\n</html>",}'
    parsed = parse_generator_output(raw)
    assert parsed.repaired is True
    assert parsed.html == "<html>\n<body></body>\n</html>"


def test_alternate_field_names_are_accepted():
    raw = json.dumps({"message": "hi", "artifactBody": HTML, "suggested_title": "Alt"})
    parsed = parse_generator_output(raw)
    assert parsed.html == HTML
    assert parsed.suggested_title == "Alt"


def test_empty_message_gets_default():
    parsed = parse_generator_output(_payload(message="   "))
    assert parsed.message == DEFAULT_MESSAGE


@pytest.mark.parametrize(
    "raw",
    [
        "I'm sorry, I can't build that game.",
        "",
        '{"message": "no html here"}',
        '{"message": "ok", "html": ""}',
        '{"message": "ok", "html": "<html>',
        "[1, 2, 3]",
    ],
)
def test_unusable_output_fails_closed(raw):
    with pytest.raises(MalformedOutputError):
        parse_generator_output(raw)


def test_strip_wrappers_without_object_is_empty():
    assert strip_wrappers("no braces at all") == ""


def test_screenshot_script_goes_before_last_body_close():
    html = "<html><body><p>one</p></BODY></html>"
    injected = inject_screenshot_script(html, delay_ms=1500)
    assert SCREENSHOT_MARKER in injected
    assert "1500" in injected
    assert injected.index(SCREENSHOT_MARKER) < injected.lower().rindex("</body>")
    assert injected.endswith("</BODY></html>")


def test_screenshot_script_is_appended_without_body_and_injected_once():
    injected = inject_screenshot_script("<canvas></canvas>")
    assert injected.startswith("<canvas></canvas>")
    assert SCREENSHOT_MARKER in injected
    assert inject_screenshot_script(injected) == injected


def test_wrapped_output_matches_unwrapped_result():
    plain = parse_generator_output(_payload())
    wrapped = parse_generator_output(f"Here it is!\n```json\n{_payload()}\n```\nHave fun.")
    assert (wrapped.message, wrapped.html, wrapped.suggested_title) == (plain.message, plain.html, plain.suggested_title)
    assert wrapped.suggested_description == plain.suggested_description
