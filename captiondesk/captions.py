"""Caption configuration and the sample preview shown before upload."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SAMPLE_TEXT = "This is how your captions will look!"
FOCUS_WORD_INDEX = 2

CaptionStyle = Literal["classic", "karaoke", "highlight", "underline", "word_by_word"]

FONT_STACKS: Dict[str, str] = {
    "Comic Neue": "'Comic Neue', sans-serif",
    "Fredericka the Great": "'Fredericka the Great', cursive",
    "Libre Baskerville": "'Libre Baskerville', serif",
    "Luckiest Guy": "'Luckiest Guy', cursive",
    "Nunito": "'Nunito', sans-serif",
    "Pacifico": "'Pacifico', cursive",
    "Permanent Marker": "'Permanent Marker', cursive",
    "Oswald": "'Oswald', sans-serif",
    "Arial": "Arial, sans-serif",
    "Arial Black": "Arial Black, sans-serif",
    "Roboto": "Roboto, sans-serif",
}

POSITION_STYLES: Dict[str, Dict[str, str]] = {
    "top_left": {"top": "10%", "left": "5px"},
    "top_center": {"top": "10%", "left": "50%", "transform": "translateX(-50%)"},
    "top_right": {"top": "10%", "right": "5px"},
    "middle_left": {"top": "50%", "left": "5px", "transform": "translateY(-50%)"},
    "middle_center": {"top": "50%", "left": "50%", "transform": "translate(-50%, -50%)"},
    "middle_right": {"top": "50%", "right": "5px", "transform": "translateY(-50%)"},
    "bottom_left": {"bottom": "10%", "left": "5px"},
    "bottom_center": {"bottom": "10%", "left": "50%", "transform": "translateX(-50%)"},
    "bottom_right": {"bottom": "10%", "right": "5px"},
}

FOCUS_CLASSES = {
    "karaoke": "focus-karaoke",
    "highlight": "focus-highlight",
    "underline": "focus-underline",
}

_HEX_DIGITS = set("0123456789abcdefABCDEF")


class CaptionOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    language: str = "auto"
    line_color: str = Field("#ffffff", alias="lineColor")
    word_color: str = Field("#ffffff", alias="wordColor")
    outline_color: str = Field("#000000", alias="outlineColor")
    all_caps: bool = Field(False, alias="allCaps")
    max_words_per_line: int = Field(3, alias="maxWordsPerLine", ge=1, le=20)
    position: str = "bottom_center"
    alignment: Literal["left", "center", "right"] = "center"
    font_family: str = Field("Arial", alias="fontFamily")
    font_size: int = Field(24, alias="fontSize", ge=8, le=200)
    bold: bool = False
    italic: bool = False
    strikeout: bool = False
    style: CaptionStyle = "highlight"
    output_type: str = Field("burned-in", alias="outputType")
    save_as_default: bool = Field(False, alias="saveAsDefault")

    @field_validator("line_color", "word_color", "outline_color")
    @classmethod
    def _validate_color(cls, value: str) -> str:
        value = value.strip()
        digits = value[1:]
        if not value.startswith("#") or len(digits) not in (3, 6) or not set(digits) <= _HEX_DIGITS:
            raise ValueError("colors must be hex values like #ffffff")
        return value.lower()

    @field_validator("position")
    @classmethod
    def _validate_position(cls, value: str) -> str:
        if value not in POSITION_STYLES:
            raise ValueError(f"position must be one of {sorted(POSITION_STYLES)}")
        return value

    def to_payload(self) -> Dict[str, object]:
        """camelCase form stored on the job and sent to the pipeline."""
        return self.model_dump(by_alias=True)


@dataclass
class PreviewSegment:
    text: str
    focus: bool = False


@dataclass
class PreviewContext:
    """Everything the preview renderer needs; built per request from options."""

    options: CaptionOptions
    sample_text: str = SAMPLE_TEXT
    focus_index: int = FOCUS_WORD_INDEX
    words: List[str] = field(init=False)

    def __post_init__(self) -> None:
        self.words = self.sample_text.split()
        if self.options.all_caps:
            self.words = [word.upper() for word in self.words]


@dataclass
class CaptionPreview:
    style: Dict[str, str]
    lines: List[str]
    segments: List[PreviewSegment]
    focus_class: str

    @property
    def css(self) -> str:
        return "; ".join(f"{key}: {value}" for key, value in self.style.items())


def preview_lines(context: PreviewContext) -> List[str]:
    size = context.options.max_words_per_line
    words = context.words
    return [" ".join(words[index:index + size]) for index in range(0, len(words), size)]


def preview_segments(context: PreviewContext) -> List[PreviewSegment]:
    style = context.options.style
    words = context.words
    if style == "word_by_word":
        index = min(context.focus_index, len(words) - 1)
        return [PreviewSegment(words[index], focus=False)] if words else []
    if style == "classic":
        return [PreviewSegment("\n".join(preview_lines(context)))]
    return [PreviewSegment(word, focus=index == context.focus_index) for index, word in enumerate(words)]


def preview_style(context: PreviewContext) -> Dict[str, str]:
    options = context.options
    style: Dict[str, str] = {
        "position": "absolute",
        "padding": "8px 16px",
        "border-radius": "4px",
        "max-width": "80%",
        "white-space": "pre-line",
        "text-align": options.alignment,
    }
    style.update(POSITION_STYLES[options.position])
    style.update(
        {
            "font-size": f"{options.font_size}px",
            "font-family": FONT_STACKS.get(options.font_family, options.font_family),
            "color": options.word_color,
            "font-weight": "bold" if options.bold else "normal",
            "font-style": "italic" if options.italic else "normal",
            "text-decoration": "line-through" if options.strikeout else "none",
            "background": "rgba(0,0,0,0.6)" if options.style == "classic" else "transparent",
            "backdrop-filter": "none" if options.style == "word_by_word" else "blur(2px)",
            "-webkit-text-stroke": f"1px {options.outline_color}",
            "text-shadow": f"2px 2px 4px {options.outline_color}",
        }
    )
    return style


def build_preview(context: PreviewContext) -> CaptionPreview:
    return CaptionPreview(
        style=preview_style(context),
        lines=preview_lines(context),
        segments=preview_segments(context),
        focus_class=FOCUS_CLASSES.get(context.options.style, ""),
    )
