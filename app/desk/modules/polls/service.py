from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from app.desk.audit import record_event
from app.desk.modules.polls.models import Poll, PollOption, PollVote
from app.desk.utils import clean_text, optional_text, parse_bool, parse_datetime, parse_id_list, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.desk.models import User

logger = logging.getLogger(__name__)

MIN_OPTIONS = 2
MAX_OPTIONS = 20


class PollError(ValueError):
    pass


@dataclass
class OptionResult:
    option: PollOption
    votes: int
    percent: float
    # None for anonymous polls
    voters: list[str] | None = None


@dataclass
class PollResults:
    poll: Poll
    total_votes: int
    total_voters: int
    options: list[OptionResult] = field(default_factory=list)


def option_texts(raw: str | None) -> list[str]:
    """One option per line; blanks and repeats dropped, order kept."""
    seen: set[str] = set()
    texts: list[str] = []
    for line in (raw or "").splitlines():
        text = clean_text(line)
        if text and text.lower() not in seen:
            seen.add(text.lower())
            texts.append(text[:255])
    return texts


def validate_poll_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not clean_text(payload.get("title")):
        errors.append("Title is required.")
    texts = option_texts(payload.get("options"))
    if len(texts) < MIN_OPTIONS:
        errors.append(f"A poll needs at least {MIN_OPTIONS} distinct options.")
    elif len(texts) > MAX_OPTIONS:
        errors.append(f"A poll can have at most {MAX_OPTIONS} options.")
    for key, label in (("starts_at", "Start"), ("ends_at", "End")):
        if clean_text(payload.get(key)) and parse_datetime(payload.get(key)) is None:
            errors.append(f"{label} must be a date or date and time.")
    starts, ends = parse_datetime(payload.get("starts_at")), parse_datetime(payload.get("ends_at"))
    if starts and ends and ends <= starts:
        errors.append("End must be after the start time.")
    return errors


def _apply_fields(poll: Poll, payload: dict) -> None:
    poll.title = clean_text(payload.get("title"))
    poll.description = optional_text(payload.get("description"))
    poll.allow_multiple = parse_bool(payload.get("allow_multiple"))
    poll.is_anonymous = parse_bool(payload.get("is_anonymous"))
    poll.starts_at = parse_datetime(payload.get("starts_at"))
    poll.ends_at = parse_datetime(payload.get("ends_at"))


def create_poll(s: "Session", payload: dict, user: "User") -> Poll:
    errors = validate_poll_payload(payload)
    if errors:
        raise PollError(" ".join(errors))
    poll = Poll(is_active=True, created_by_id=user.id)
    _apply_fields(poll, payload)
    poll.options = [PollOption(text=t, order_index=i) for i, t in enumerate(option_texts(payload.get("options")))]
    s.add(poll)
    s.flush()
    record_event(
        s,
        actor=user,
        action="poll.create",
        entity_type="Poll",
        entity_id=str(poll.id),
        metadata={"title": poll.title, "options": len(poll.options)},
    )
    return poll


def update_poll(s: "Session", poll: Poll, payload: dict, user: "User") -> Poll:
    """
    Edit a poll. Options can only be rewritten before the first vote; after
    that the option list must stay as it is so tallies keep their meaning.
    """
    errors = validate_poll_payload(payload)
    if errors:
        raise PollError(" ".join(errors))
    texts = option_texts(payload.get("options"))
    current = [o.text for o in poll.options]
    has_votes = s.query(PollVote.id).filter(PollVote.poll_id == poll.id).first() is not None
    if texts != current and has_votes:
        raise PollError("Options cannot change once voting has started.")

    before = {"title": poll.title, "starts_at": poll.starts_at, "ends_at": poll.ends_at}
    _apply_fields(poll, payload)
    if texts != current:
        poll.options = [PollOption(text=t, order_index=i) for i, t in enumerate(texts)]
    poll.updated_at = utcnow()
    s.flush()

    changes = {k: {"old": old, "new": getattr(poll, k)} for k, old in before.items() if getattr(poll, k) != old}
    if texts != current:
        changes["options"] = {"old": current, "new": texts}
    record_event(
        s,
        actor=user,
        action="poll.edit",
        entity_type="Poll",
        entity_id=str(poll.id),
        metadata={"title": poll.title, "changes": changes},
    )
    return poll


def toggle_poll(s: "Session", poll: Poll, user: "User") -> Poll:
    poll.is_active = not poll.is_active
    poll.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="poll.toggle",
        entity_type="Poll",
        entity_id=str(poll.id),
        metadata={"is_active": poll.is_active},
    )
    return poll


def delete_poll(s: "Session", poll: Poll, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="poll.delete",
        entity_type="Poll",
        entity_id=str(poll.id),
        metadata={"title": poll.title, "votes": len(poll.votes)},
    )
    s.delete(poll)


# ---------- Voting ----------
def is_open(poll: Poll, now: datetime | None = None) -> bool:
    now = now or utcnow()
    if not poll.is_active:
        return False
    if poll.starts_at is not None and now < poll.starts_at:
        return False
    if poll.ends_at is not None and now >= poll.ends_at:
        return False
    return True


def active_polls(s: "Session", now: datetime | None = None) -> list[Poll]:
    now = now or utcnow()
    return (
        s.query(Poll)
        .filter(Poll.is_active.is_(True))
        .filter(or_(Poll.starts_at.is_(None), Poll.starts_at <= now))
        .filter(or_(Poll.ends_at.is_(None), Poll.ends_at > now))
        .order_by(Poll.created_at.desc(), Poll.id.desc())
        .all()
    )


def user_choices(s: "Session", poll: Poll, user: "User") -> set[int]:
    rows = s.query(PollVote.option_id).filter(PollVote.poll_id == poll.id, PollVote.user_id == user.id).all()
    return {r[0] for r in rows}


def cast_vote(
    s: "Session",
    poll: Poll,
    user: "User",
    option_ids: list[str] | list[int],
    now: datetime | None = None,
) -> list[PollVote]:
    """
    Record user's selection, replacing any earlier vote on the same poll.
    Single-choice polls take exactly one option.
    """
    if not is_open(poll, now):
        raise PollError("This poll is not open for voting.")
    chosen = parse_id_list([str(i) for i in option_ids])
    if not chosen:
        raise PollError("Choose an option.")
    valid = {o.id for o in poll.options}
    if any(oid not in valid for oid in chosen):
        raise PollError("Unknown option for this poll.")
    if len(chosen) > 1 and not poll.allow_multiple:
        raise PollError("This poll accepts a single choice.")

    try:
        with s.begin_nested():
            previous = s.query(PollVote).filter(PollVote.poll_id == poll.id, PollVote.user_id == user.id).all()
            for vote in previous:
                s.delete(vote)
            # deletes must reach the database before the replacement rows
            s.flush()
            votes = [PollVote(poll_id=poll.id, option_id=oid, user_id=user.id) for oid in chosen]
            s.add_all(votes)
            s.flush()
    except IntegrityError:
        logger.warning("Concurrent vote on poll %s", poll.id)
        raise PollError("Your vote was already recorded. Refresh and try again.")
    s.expire(poll, ["votes"])
    logger.info("Vote recorded on poll %s (%s option(s), replaced=%s)", poll.id, len(votes), bool(previous))
    return votes


def results(s: "Session", poll: Poll) -> PollResults:
    """Per-option counts and percentages of all votes cast. Voter names only for named polls."""
    votes = s.query(PollVote).filter(PollVote.poll_id == poll.id).all()
    total = len(votes)
    out = PollResults(poll=poll, total_votes=total, total_voters=len({v.user_id for v in votes}))
    for option in poll.options:
        mine = [v for v in votes if v.option_id == option.id]
        voters = None
        if not poll.is_anonymous:
            voters = sorted(v.user.display_name for v in mine if v.user is not None)
        out.options.append(
            OptionResult(
                option=option,
                votes=len(mine),
                percent=round(100.0 * len(mine) / total, 1) if total else 0.0,
                voters=voters,
            )
        )
    return out
