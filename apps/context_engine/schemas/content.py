"""Typed content payloads per content type.

Each payload renders the normalized text that gets embedded (`to_text`) and the
metadata stored next to the vector (`to_metadata`). Unknown keys are kept in the
model's extra map so callers can extend metadata without schema changes.
"""

from datetime import date
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from apps.context_engine.errors import ValidationError
from apps.context_engine.services.text import clean_text


class ContentType(str, Enum):
    MENU = "MENU"
    POLICY = "POLICY"
    FAQ = "FAQ"
    BUSINESS = "BUSINESS"


ALL_CONTENT_TYPES: tuple[ContentType, ...] = tuple(ContentType)

# Structured content vs. free-form business documents (different default thresholds)
STRUCTURED_CONTENT_TYPES = frozenset({ContentType.MENU, ContentType.POLICY, ContentType.FAQ})


def parse_content_type(value: "ContentType | str | None", *, allow_all: bool = False) -> ContentType | None:
    """Coerce 'menu' / 'MENU' / ContentType.MENU. 'ALL' or None -> None when allow_all."""
    if value is None:
        if allow_all:
            return None
        raise ValidationError("content_type is required")
    if isinstance(value, ContentType):
        return value
    raw = str(value).strip().upper()
    if allow_all and raw in ("", "ALL"):
        return None
    try:
        return ContentType(raw)
    except ValueError:
        raise ValidationError(
            f"invalid content type {value!r}; must be MENU, POLICY, FAQ or BUSINESS"
        ) from None


class _Content(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def extension(self) -> dict[str, Any]:
        """Keys the caller sent that are not part of the typed schema."""
        return dict(self.model_extra or {})

    def title(self) -> str:
        raise NotImplementedError

    def parts(self) -> list[str]:
        raise NotImplementedError

    def to_text(self) -> str:
        return clean_text(" - ".join(p for p in self.parts() if p))

    def to_metadata(self) -> dict[str, Any]:
        typed = self.model_dump(mode="json", exclude_none=True, exclude=set(self.extension()))
        return {"title": self.title(), **self.extension(), **typed}


class MenuItemContent(_Content):
    name: str = Field(..., min_length=1)
    description: str | None = None
    category: str | None = None
    price: float | None = None
    allergens: list[str] = Field(default_factory=list)
    calories: int | None = None
    prep_time: int | None = Field(None, alias="prepTime")

    def title(self) -> str:
        return self.name

    def parts(self) -> list[str]:
        out = [self.name, self.description or ""]
        if self.category:
            out.append(f"Category: {self.category}")
        if self.price is not None:
            out.append(f"Price: ${self.price:.2f}")
        if self.allergens:
            out.append(f"Allergens: {', '.join(self.allergens)}")
        if self.calories:
            out.append(f"Calories: {self.calories}")
        if self.prep_time:
            out.append(f"Prep time: {self.prep_time} minutes")
        return out


class PolicyContent(_Content):
    title_: str = Field(..., min_length=1, alias="title")
    content: str = ""
    type: str | None = None
    effective_date: date | None = Field(None, alias="effectiveDate")

    def title(self) -> str:
        return self.title_

    def parts(self) -> list[str]:
        out = [self.title_, self.content]
        if self.type:
            out.append(f"Type: {self.type}")
        if self.effective_date:
            out.append(f"Effective: {self.effective_date.isoformat()}")
        return out

    def to_metadata(self) -> dict[str, Any]:
        meta = super().to_metadata()
        meta.pop("title_", None)
        return meta


class FAQContent(_Content):
    question: str = Field(..., min_length=1)
    answer: str = ""
    category: str | None = None
    tags: list[str] = Field(default_factory=list)

    def title(self) -> str:
        return self.question

    def parts(self) -> list[str]:
        out = [f"Question: {self.question}"]
        if self.answer:
            out.append(f"Answer: {self.answer}")
        if self.category:
            out.append(f"Category: {self.category}")
        if self.tags:
            out.append(f"Tags: {', '.join(self.tags)}")
        return out


class BusinessContent(_Content):
    name: str = Field(..., min_length=1)
    description: str | None = None
    cuisine_type: str | None = Field(None, alias="cuisineType")
    location: str | None = None
    industry: str | None = None

    def title(self) -> str:
        return self.name

    def parts(self) -> list[str]:
        out = [self.name, self.description or ""]
        if self.cuisine_type:
            out.append(f"Cuisine: {self.cuisine_type}")
        if self.industry:
            out.append(f"Industry: {self.industry}")
        if self.location:
            out.append(f"Location: {self.location}")
        return out


ContentPayload = Union[MenuItemContent, PolicyContent, FAQContent, BusinessContent]

_MODELS: dict[ContentType, type[_Content]] = {
    ContentType.MENU: MenuItemContent,
    ContentType.POLICY: PolicyContent,
    ContentType.FAQ: FAQContent,
    ContentType.BUSINESS: BusinessContent,
}


def _prepare(content_type: ContentType, payload: dict[str, Any]) -> dict[str, Any]:
    data = dict(payload)
    if content_type is ContentType.MENU and isinstance(data.get("category"), dict):
        data["category"] = data["category"].get("name")
    if content_type is ContentType.FAQ:
        # CRUD layer stores FAQs as title/content
        if "question" not in data and "title" in data:
            data["question"] = data.pop("title")
        if "answer" not in data and "content" in data:
            data["answer"] = data.pop("content")
    if content_type is ContentType.BUSINESS and "location" not in data:
        locations = data.get("locations") or []
        if locations and isinstance(locations[0], dict) and locations[0].get("address"):
            data["location"] = locations[0]["address"]
    data.pop("id", None)
    return data


def parse_content(content_type: "ContentType | str", payload: dict[str, Any] | None) -> ContentPayload:
    """Validate a raw payload into its typed content model. Raises ValidationError."""
    ct = parse_content_type(content_type)
    if not isinstance(payload, dict):
        raise ValidationError(f"payload for {ct.value} must be an object")
    try:
        return _MODELS[ct].model_validate(_prepare(ct, payload))
    except PydanticValidationError as e:
        raise ValidationError(
            f"invalid {ct.value} payload",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e
