"""Pydantic schemas for theme extraction output."""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def _coerce_text_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    result = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("text") or item.get("quote") or item.get("suggestion")
        if item is None:
            continue
        text = str(item).strip()
        if text:
            result.append(text)
    return result


class ThemeCandidate(BaseModel):
    """One theme proposed by the extraction model for a batch partition."""

    title: str = Field(..., description="Short theme title")
    description: str = Field(default="", description="One or two sentence summary")
    quotes: list[str] = Field(
        default_factory=list,
        description="Verbatim excerpts from the reviews supporting the theme",
    )
    suggestions: list[str] = Field(
        default_factory=list,
        description="Actionable product suggestions",
    )
    platform: Optional[str] = Field(None, description="Source platform tag")

    @field_validator("title", "description", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> str:
        if v is None:
            return ""
        return str(v).strip()

    @field_validator("quotes", "suggestions", mode="before")
    @classmethod
    def coerce_lists(cls, v: Any) -> list[str]:
        return _coerce_text_list(v)


class ExtractionResponse(BaseModel):
    """Expected top-level shape of the extraction model's JSON answer."""

    themes: list[ThemeCandidate] = Field(default_factory=list)

    model_config = {"extra": "ignore"}
