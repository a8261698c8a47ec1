from __future__ import annotations

from typing import TYPE_CHECKING, Any

from app.desk.audit import record_event
from app.desk.modules.assistant.models import AiTrainingData
from app.desk.utils import clean_text, optional_text, parse_bool, parse_keywords, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.desk.models import User
    from app.desk.modules.assistant.gateway_client import AIGatewayClient

MAX_TRAINING_ROWS = 50
MAX_TURNS = 20
MAX_MESSAGE_CHARS = 4000

SMART_REPLY_SYSTEM_PROMPT = (
    "You are a helpful customer support assistant for an educational institution complaint management system. "
    "Generate a professional, empathetic, and solution-oriented response to the student's complaint. "
    "Keep responses concise (2-3 paragraphs), acknowledge their concern, and provide actionable next steps. "
    "Maintain a supportive and understanding tone appropriate for an educational environment."
)

ASSISTANT_SYSTEM_PROMPT = """You are a helpful AI assistant for the student complaint desk.
Your role is to help students with:
- Understanding how to file complaints effectively
- Explaining complaint processes and timelines
- Providing guidance on what information to include
- Answering general questions about the complaint system
- Offering support and empathy for student concerns
- Suggesting which category or priority level to use
- Explaining SLA policies and response times
{knowledge}
Always be professional, empathetic, and supportive. Keep responses concise and actionable.
If asked about specific complaints, guide students to check their complaint details page.
Never make promises about resolution times or outcomes - only explain the process.
When using information from the knowledge base, be natural and conversational."""


class AssistantInputError(ValueError):
    pass


def smart_reply_messages(title: str, description: str, category: str | None) -> list[dict[str, str]]:
    user_prompt = (
        "Generate a smart reply for this complaint:\n"
        f"Title: {title}\n"
        f"Category: {category or 'General'}\n"
        f"Description: {description}\n\n"
        "Provide a professional response that:\n"
        "1. Acknowledges the student's concern\n"
        "2. Shows empathy and understanding\n"
        "3. Outlines next steps or resolution timeline\n"
        "4. Maintains institutional professionalism"
    )
    return [
        {"role": "system", "content": SMART_REPLY_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


def generate_smart_reply(client: "AIGatewayClient", title: str, description: str, category: str | None) -> str:
    return client.chat(smart_reply_messages(title, description, category)).strip()


def active_training_rows(s: "Session", limit: int = MAX_TRAINING_ROWS) -> list[AiTrainingData]:
    return (
        s.query(AiTrainingData)
        .filter(AiTrainingData.is_active.is_(True))
        .order_by(AiTrainingData.id.asc())
        .limit(limit)
        .all()
    )


def build_assistant_prompt(rows: list[AiTrainingData]) -> str:
    knowledge = ""
    if rows:
        lines = ["", "You have access to the following verified Q&A knowledge base:", ""]
        for i, row in enumerate(rows[:MAX_TRAINING_ROWS], start=1):
            lines.append(f"{i}. Q: {row.question}")
            lines.append(f"   A: {row.answer}")
            if row.category:
                lines.append(f"   Category: {row.category}")
            if row.keywords:
                lines.append(f"   Keywords: {', '.join(row.keywords)}")
            lines.append("")
        lines.append(
            "Use this knowledge base to answer relevant questions accurately. If the question matches "
            "something in the knowledge base, provide that answer with appropriate context."
        )
        knowledge = "\n".join(lines) + "\n"
    return ASSISTANT_SYSTEM_PROMPT.format(knowledge=knowledge)


def validate_messages(raw: Any) -> list[dict[str, str]]:
    """Accept only user/assistant turns; the system prompt is always ours."""
    if not isinstance(raw, list) or not raw:
        raise AssistantInputError("messages must be a non-empty list.")
    if len(raw) > MAX_TURNS:
        raise AssistantInputError(f"At most {MAX_TURNS} messages are allowed.")
    out: list[dict[str, str]] = []
    for m in raw:
        if not isinstance(m, dict):
            raise AssistantInputError("Each message must be an object.")
        role = m.get("role")
        content = m.get("content")
        if role not in ("user", "assistant"):
            raise AssistantInputError("Message role must be 'user' or 'assistant'.")
        if not isinstance(content, str) or not content.strip():
            raise AssistantInputError("Message content is required.")
        if len(content) > MAX_MESSAGE_CHARS:
            raise AssistantInputError(f"Messages are limited to {MAX_MESSAGE_CHARS} characters.")
        out.append({"role": role, "content": content})
    if out[-1]["role"] != "user":
        raise AssistantInputError("The last message must come from the user.")
    return out


def assistant_messages(s: "Session", messages: list[dict[str, str]]) -> list[dict[str, str]]:
    return [{"role": "system", "content": build_assistant_prompt(active_training_rows(s))}, *messages]


def assistant_reply(s: "Session", client: "AIGatewayClient", raw_messages: Any) -> str:
    return client.chat(assistant_messages(s, validate_messages(raw_messages))).strip()


# ---------- Training data ----------
def validate_training_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean_text(payload.get("question")):
        errors.append("Question is required.")
    if not clean_text(payload.get("answer")):
        errors.append("Answer is required.")
    return errors


def create_training_row(s: "Session", payload: dict, user: "User") -> AiTrainingData:
    row = AiTrainingData(
        question=clean_text(payload.get("question")),
        answer=clean_text(payload.get("answer")),
        category=optional_text(payload.get("category")),
        keywords=parse_keywords(payload.get("keywords")),
        is_active=parse_bool(payload.get("is_active", "1")),
        created_by_id=user.id,
    )
    s.add(row)
    s.flush()
    record_event(s, actor=user, action="ai_training.create", entity_type="AiTrainingData", entity_id=str(row.id))
    return row


def update_training_row(s: "Session", row: AiTrainingData, payload: dict, user: "User") -> AiTrainingData:
    row.question = clean_text(payload.get("question"))
    row.answer = clean_text(payload.get("answer"))
    row.category = optional_text(payload.get("category"))
    row.keywords = parse_keywords(payload.get("keywords"))
    row.is_active = parse_bool(payload.get("is_active"))
    row.updated_at = utcnow()
    record_event(s, actor=user, action="ai_training.edit", entity_type="AiTrainingData", entity_id=str(row.id))
    return row


def delete_training_row(s: "Session", row: AiTrainingData, user: "User") -> None:
    record_event(s, actor=user, action="ai_training.delete", entity_type="AiTrainingData", entity_id=str(row.id))
    s.delete(row)
