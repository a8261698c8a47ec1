from __future__ import annotations

from flask import Blueprint, abort, jsonify, render_template, request

from app.desk.db import db_session
from app.desk.modules.content.models import Faq, KnowledgeArticle
from app.desk.modules.content.service import (
    faqs_by_category,
    published_articles,
    record_article_view,
    record_faq_view,
    vote_article,
)
from app.desk.rbac import login_required
from app.desk.utils import parse_bool

bp = Blueprint("content_portal", __name__)


@bp.get("/faqs")
@login_required
def faqs():
    return render_template("portal/faqs.html", groups=faqs_by_category(db_session()))


@bp.post("/faqs/<int:faq_id>/view")
@login_required
def faq_view(faq_id: int):
    s = db_session()
    faq = s.get(Faq, faq_id)
    if faq is None or not faq.is_active:
        abort(404)
    views = record_faq_view(s, faq)
    s.commit()
    return jsonify({"views": views})


@bp.get("/kb")
@login_required
def kb_list():
    search = (request.args.get("q") or "").strip()
    return render_template("portal/kb/list.html", articles=published_articles(db_session(), search), search=search)


@bp.get("/kb/<int:article_id>")
@login_required
def kb_detail(article_id: int):
    s = db_session()
    article = s.get(KnowledgeArticle, article_id)
    if article is None or not article.is_published:
        abort(404)
    record_article_view(s, article)
    s.commit()
    return render_template("portal/kb/detail.html", article=article)


@bp.post("/kb/<int:article_id>/vote")
@login_required
def kb_vote(article_id: int):
    s = db_session()
    article = s.get(KnowledgeArticle, article_id)
    if article is None or not article.is_published:
        abort(404)
    helpful = parse_bool(request.form.get("helpful"))
    vote_article(s, article, helpful)
    s.commit()
    return jsonify({"helpful": article.helpful, "not_helpful": article.not_helpful})
