from __future__ import annotations

from flask import Blueprint, Response, current_app, jsonify, render_template, request, stream_with_context

from app.desk.db import db_session
from app.desk.modules.assistant import gateway_client
from app.desk.modules.assistant.gateway_client import AIGatewayError, AIGatewayPaymentRequired, AIGatewayRateLimited
from app.desk.modules.assistant.service import AssistantInputError, assistant_messages, assistant_reply, validate_messages
from app.desk.rbac import require_permission

bp = Blueprint("assistant_portal", __name__)


def gateway_error_response(e: AIGatewayError):
    if isinstance(e, AIGatewayRateLimited):
        return jsonify({"error": "Rate limit exceeded, please try again later."}), 429
    if isinstance(e, AIGatewayPaymentRequired):
        return jsonify({"error": "Service temporarily unavailable."}), 402
    current_app.logger.error("AI gateway error: %s", e)
    return jsonify({"error": "The AI assistant is unavailable right now."}), 502


@bp.get("/assistant")
@require_permission("portal.use")
def assistant_page():
    return render_template("portal/assistant.html")


@bp.post("/assistant/chat")
@require_permission("portal.use")
def assistant_chat():
    s = db_session()
    body = request.get_json(silent=True) or {}
    try:
        if body.get("stream"):
            messages = assistant_messages(s, validate_messages(body.get("messages")))
            lines = gateway_client.client_from_config(current_app.config).stream_chat(messages)
            return Response(
                stream_with_context(lines),
                mimetype="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )
        client = gateway_client.client_from_config(current_app.config)
        reply = assistant_reply(s, client, body.get("messages"))
    except AssistantInputError as e:
        return jsonify({"error": str(e)}), 400
    except AIGatewayError as e:
        return gateway_error_response(e)
    return jsonify({"role": "assistant", "content": reply})
