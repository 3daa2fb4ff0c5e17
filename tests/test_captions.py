import pytest
from pydantic import ValidationError

from captiondesk.captions import (
    CaptionOptions,
    PreviewContext,
    build_preview,
    preview_lines,
)


def test_defaults_and_aliases():
    options = CaptionOptions.model_validate({"lineColor": "#FFCC00", "maxWordsPerLine": 4, "unknown": 1})
    assert options.line_color == "#ffcc00"
    assert options.max_words_per_line == 4
    assert options.position == "bottom_center"
    assert options.style == "highlight"

    payload = options.to_payload()
    assert payload["lineColor"] == "#ffcc00"
    assert payload["maxWordsPerLine"] == 4
    assert "unknown" not in payload


@pytest.mark.parametrize(
    "data",
    [
        {"lineColor": "red"},
        {"wordColor": "#12345g"},
        {"position": "center"},
        {"maxWordsPerLine": 0},
        {"fontSize": 4},
        {"style": "neon"},
    ],
)
def test_invalid_options_rejected(data):
    with pytest.raises(ValidationError):
        CaptionOptions.model_validate(data)


def test_lines_respect_max_words():
    context = PreviewContext(CaptionOptions(max_words_per_line=3))
    assert preview_lines(context) == ["This is how", "your captions will", "look!"]


def test_focus_word_highlighted():
    preview = build_preview(PreviewContext(CaptionOptions(style="karaoke", all_caps=True)))
    focused = [segment.text for segment in preview.segments if segment.focus]
    assert focused == ["HOW"]
    assert preview.focus_class == "focus-karaoke"


def test_word_by_word_shows_single_word():
    preview = build_preview(PreviewContext(CaptionOptions(style="word_by_word")))
    assert [segment.text for segment in preview.segments] == ["how"]
    assert preview.style["backdrop-filter"] == "none"


def test_classic_style_css():
    options = CaptionOptions(style="classic", position="top_left", bold=True, font_family="Oswald")
    preview = build_preview(PreviewContext(options))
    assert len(preview.segments) == 1
    assert preview.style["top"] == "10%"
    assert preview.style["font-weight"] == "bold"
    assert preview.style["background"] == "rgba(0,0,0,0.6)"
    assert "font-family: 'Oswald', sans-serif" in preview.css
    assert preview.focus_class == ""
