from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from itertools import groupby
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.desk.audit import record_event
from app.desk.constants import ANNOUNCEMENT_TYPES
from app.desk.modules.complaints.models import Category, Complaint, Tag
from app.desk.modules.content.models import Announcement, CannedResponse, Faq, KnowledgeArticle
from app.desk.utils import clean_text, optional_text, parse_bool, parse_datetime, parse_int, parse_keywords, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.desk.models import User


class ContentError(ValueError):
    pass


@dataclass(frozen=True)
class Field:
    name: str
    label: str
    kind: str = "text"  # text | textarea | bool | int | datetime | choice | list | color
    required: bool = False
    choices: tuple[str, ...] = ()


@dataclass(frozen=True)
class ContentType:
    """Describes one admin-managed content table for the generic CRUD pages."""

    key: str
    label: str
    model: type
    fields: tuple[Field, ...]
    list_columns: tuple[str, ...]
    order_by: tuple[str, ...] = ("id",)


CONTENT_TYPES: dict[str, ContentType] = {
    "announcements": ContentType(
        key="announcements",
        label="Announcements",
        model=Announcement,
        fields=(
            Field("title", "Title", required=True),
            Field("content", "Content", "textarea", required=True),
            Field("type", "Type", "choice", choices=ANNOUNCEMENT_TYPES),
            Field("starts_at", "Starts at", "datetime"),
            Field("expires_at", "Expires at", "datetime"),
            Field("is_active", "Active", "bool"),
        ),
        list_columns=("title", "type", "starts_at", "expires_at", "is_active"),
        order_by=("-created_at",),
    ),
    "canned-responses": ContentType(
        key="canned-responses",
        label="Canned responses",
        model=CannedResponse,
        fields=(
            Field("title", "Title", required=True),
            Field("content", "Content", "textarea", required=True),
            Field("category", "Category"),
            Field("is_active", "Active", "bool"),
        ),
        list_columns=("title", "category", "usage_count", "is_active"),
        order_by=("-usage_count", "title"),
    ),
    "faqs": ContentType(
        key="faqs",
        label="FAQs",
        model=Faq,
        fields=(
            Field("question", "Question", "textarea", required=True),
            Field("answer", "Answer", "textarea", required=True),
            Field("category", "Category"),
            Field("order_index", "Order", "int"),
            Field("is_active", "Active", "bool"),
        ),
        list_columns=("question", "category", "order_index", "views", "is_active"),
        order_by=("order_index", "id"),
    ),
    "knowledge-base": ContentType(
        key="knowledge-base",
        label="Knowledge base",
        model=KnowledgeArticle,
        fields=(
            Field("title", "Title", required=True),
            Field("content", "Content", "textarea", required=True),
            Field("category", "Category"),
            Field("tags", "Tags (comma separated)", "list"),
            Field("is_published", "Published", "bool"),
        ),
        list_columns=("title", "category", "views", "helpful", "not_helpful", "is_published"),
        order_by=("-updated_at",),
    ),
    "categories": ContentType(
        key="categories",
        label="Categories",
        model=Category,
        fields=(
            Field("name", "Name", required=True),
            Field("description", "Description", "textarea"),
            Field("color", "Color", "color"),
            Field("icon", "Icon"),
            Field("is_active", "Active", "bool"),
        ),
        list_columns=("name", "description", "is_active"),
        order_by=("name",),
    ),
    "tags": ContentType(
        key="tags",
        label="Tags",
        model=Tag,
        fields=(
            Field("name", "Name", required=True),
            Field("color", "Color", "color"),
        ),
        list_columns=("name", "color"),
        order_by=("name",),
    ),
}

_UNIQUE_NAME_MODELS = (Category, Tag)


def content_type(key: str) -> ContentType:
    ct = CONTENT_TYPES.get(key)
    if ct is None:
        raise KeyError(key)
    return ct


def list_items(s: "Session", ct: ContentType) -> list[Any]:
    q = s.query(ct.model)
    for key in ct.order_by:
        col = getattr(ct.model, key.lstrip("-"))
        q = q.order_by(col.desc() if key.startswith("-") else col.asc())
    return q.all()


def _parse_field(f: Field, raw: Any) -> Any:
    if f.kind == "bool":
        return parse_bool(raw)
    if f.kind == "int":
        return parse_int(raw) or 0
    if f.kind == "datetime":
        return parse_datetime(raw)
    if f.kind == "list":
        return parse_keywords(raw)
    if f.kind == "choice":
        value = clean_text(raw)
        return value or f.choices[0]
    if f.required:
        return clean_text(raw)
    return optional_text(raw)


def parse_payload(ct: ContentType, form) -> tuple[dict[str, Any], list[str]]:
    values: dict[str, Any] = {}
    errors: list[str] = []
    for f in ct.fields:
        raw = form.get(f.name)
        if f.required and not clean_text(raw):
            errors.append(f"{f.label} is required.")
        if f.kind == "choice" and clean_text(raw) and clean_text(raw) not in f.choices:
            errors.append(f"Invalid {f.label.lower()}. Must be one of: {', '.join(f.choices)}")
        values[f.name] = _parse_field(f, raw)
    starts, expires = values.get("starts_at"), values.get("expires_at")
    if starts and expires and expires <= starts:
        errors.append("Expiry must be after the start time.")
    return values, errors


def _check_unique_name(s: "Session", ct: ContentType, name: str, exclude_id: int | None) -> None:
    if ct.model not in _UNIQUE_NAME_MODELS:
        return
    q = s.query(ct.model).filter(ct.model.name == name)
    if exclude_id is not None:
        q = q.filter(ct.model.id != exclude_id)
    if q.first() is not None:
        raise ContentError(f'"{name}" already exists.')


def create_item(s: "Session", ct: ContentType, values: dict[str, Any], user: "User") -> Any:
    if "name" in values:
        _check_unique_name(s, ct, values["name"], None)
    item = ct.model(**values)
    if hasattr(item, "created_by_id"):
        item.created_by_id = user.id
    s.add(item)
    s.flush()
    record_event(
        s,
        actor=user,
        action=f"{ct.key}.create",
        entity_type=ct.model.__name__,
        entity_id=str(item.id),
        metadata={k: v for k, v in values.items() if k in ("title", "name", "question")},
    )
    return item


def update_item(s: "Session", ct: ContentType, item: Any, values: dict[str, Any], user: "User") -> Any:
    if "name" in values:
        _check_unique_name(s, ct, values["name"], item.id)
    changes: dict[str, dict[str, Any]] = {}
    for name, new in values.items():
        old = getattr(item, name)
        if old != new:
            changes[name] = {"old": old, "new": new}
            setattr(item, name, new)
    if hasattr(item, "updated_at"):
        item.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action=f"{ct.key}.edit",
        entity_type=ct.model.__name__,
        entity_id=str(item.id),
        metadata={"changes": changes},
    )
    return item


def delete_item(s: "Session", ct: ContentType, item: Any, user: "User") -> None:
    if isinstance(item, Category):
        in_use = s.query(Complaint.id).filter(Complaint.category_id == item.id).first()
        if in_use is not None:
            raise ContentError("This category is used by complaints. Deactivate it instead.")
    record_event(
        s,
        actor=user,
        action=f"{ct.key}.delete",
        entity_type=ct.model.__name__,
        entity_id=str(item.id),
    )
    s.delete(item)


# ---------- Announcements ----------
def active_announcements(s: "Session", now: datetime | None = None, limit: int | None = None) -> list[Announcement]:
    now = now or utcnow()
    q = (
        s.query(Announcement)
        .filter(Announcement.is_active.is_(True))
        .filter(or_(Announcement.starts_at.is_(None), Announcement.starts_at <= now))
        .filter(or_(Announcement.expires_at.is_(None), Announcement.expires_at > now))
        .order_by(Announcement.created_at.desc(), Announcement.id.desc())
    )
    if limit:
        q = q.limit(limit)
    return q.all()


# ---------- Canned responses ----------
def active_canned_responses(s: "Session") -> list[CannedResponse]:
    return (
        s.query(CannedResponse)
        .filter(CannedResponse.is_active.is_(True))
        .order_by(CannedResponse.usage_count.desc(), CannedResponse.title.asc())
        .all()
    )


def use_canned_response(s: "Session", response: CannedResponse) -> str:
    if not response.is_active:
        raise ContentError("This canned response is inactive.")
    response.usage_count = (response.usage_count or 0) + 1
    s.flush()
    return response.content


# ---------- FAQs ----------
def faqs_by_category(s: "Session") -> list[tuple[str, list[Faq]]]:
    faqs = (
        s.query(Faq)
        .filter(Faq.is_active.is_(True))
        .order_by(Faq.category.asc(), Faq.order_index.asc(), Faq.id.asc())
        .all()
    )
    faqs.sort(key=lambda f: ((f.category or "General").lower(), f.order_index, f.id))
    return [(cat, list(items)) for cat, items in groupby(faqs, key=lambda f: f.category or "General")]


def record_faq_view(s: "Session", faq: Faq) -> int:
    faq.views = (faq.views or 0) + 1
    s.flush()
    return faq.views


# ---------- Knowledge base ----------
def published_articles(s: "Session", search: str = "") -> list[KnowledgeArticle]:
    q = s.query(KnowledgeArticle).filter(KnowledgeArticle.is_published.is_(True))
    search = clean_text(search)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(KnowledgeArticle.title.ilike(like), KnowledgeArticle.content.ilike(like)))
    return q.order_by(KnowledgeArticle.views.desc(), KnowledgeArticle.title.asc()).all()


def record_article_view(s: "Session", article: KnowledgeArticle) -> int:
    article.views = (article.views or 0) + 1
    s.flush()
    return article.views


def vote_article(s: "Session", article: KnowledgeArticle, helpful: bool) -> KnowledgeArticle:
    if helpful:
        article.helpful = (article.helpful or 0) + 1
    else:
        article.not_helpful = (article.not_helpful or 0) + 1
    s.flush()
    return article


def active_categories(s: "Session") -> list[Category]:
    return s.query(Category).filter(Category.is_active.is_(True)).order_by(Category.name.asc()).all()
