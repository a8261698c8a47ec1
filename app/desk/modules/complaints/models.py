from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.desk.models import Base
from app.desk.utils import utcnow

if TYPE_CHECKING:
    from app.desk.models import User
    from app.desk.modules.sla.models import SlaTracking


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)  # hex, e.g. "#3b82f6"
    icon: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class ComplaintTag(Base):
    __tablename__ = "complaint_tags"
    complaint_id: Mapped[int] = mapped_column(ForeignKey("complaints.id", ondelete="CASCADE"), primary_key=True)
    tag_id: Mapped[int] = mapped_column(ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)


class Complaint(Base):
    __tablename__ = "complaints"
    __table_args__ = (
        Index("idx_complaints_status", "status"),
        Index("idx_complaints_priority", "priority"),
        Index("idx_complaints_student", "student_id"),
        Index("idx_complaints_assigned", "assigned_to_id"),
        Index("idx_complaints_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # TKT-2026-00042

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="open")

    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    assigned_to_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    satisfaction_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)

    first_response_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # SLA (see modules/sla)
    sla_breach_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    sla_status: Mapped[str | None] = mapped_column(String(16), nullable=True)  # on_track | at_risk | breached | met
    sla_notified_status: Mapped[str | None] = mapped_column(String(16), nullable=True)

    is_merged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    merged_into_id: Mapped[int | None] = mapped_column(ForeignKey("complaints.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    student: Mapped["User"] = relationship("User", foreign_keys=[student_id], lazy="selectin")
    assignee: Mapped["User | None"] = relationship("User", foreign_keys=[assigned_to_id], lazy="selectin")
    category: Mapped[Category | None] = relationship(Category, lazy="selectin")
    merged_into: Mapped["Complaint | None"] = relationship("Complaint", remote_side=[id], lazy="selectin")

    tags: Mapped[list[Tag]] = relationship(Tag, secondary="complaint_tags", lazy="selectin", order_by="Tag.name")
    comments: Mapped[list["Comment"]] = relationship(
        "Comment",
        back_populates="complaint",
        cascade="all, delete-orphan",
        order_by="Comment.created_at",
        lazy="selectin",
    )
    attachments: Mapped[list["Attachment"]] = relationship(
        "Attachment",
        back_populates="complaint",
        cascade="all, delete-orphan",
        order_by="Attachment.created_at",
        lazy="selectin",
    )
    watchers: Mapped[list["ComplaintWatcher"]] = relationship(
        "ComplaintWatcher",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    escalations: Mapped[list["Escalation"]] = relationship(
        "Escalation",
        back_populates="complaint",
        cascade="all, delete-orphan",
        order_by="Escalation.created_at",
        lazy="selectin",
    )
    survey: Mapped["SatisfactionSurvey | None"] = relationship(
        "SatisfactionSurvey",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )
    sla_tracking: Mapped["SlaTracking | None"] = relationship(
        "SlaTracking",
        back_populates="complaint",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )

    @property
    def submitter_label(self) -> str:
        if self.is_anonymous:
            return "Anonymous"
        return self.student.display_name if self.student else ""

    def hides_user(self, user_id: int | None) -> bool:
        """True when user_id is the submitter of an anonymous complaint."""
        return bool(self.is_anonymous and user_id is not None and user_id == self.student_id)

    def author_label(self, comment: "Comment") -> str:
        if self.hides_user(comment.user_id):
            return "Anonymous"
        return comment.author.display_name if comment.author else "Deleted user"

    @property
    def watcher_ids(self) -> set[int]:
        return {w.user_id for w in self.watchers or []}


class Comment(Base):
    __tablename__ = "comments"
    __table_args__ = (Index("idx_comments_complaint", "complaint_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    complaint_id: Mapped[int] = mapped_column(ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_internal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_solution: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    complaint: Mapped[Complaint] = relationship(Complaint, back_populates="comments")
    author: Mapped["User | None"] = relationship("User", lazy="selectin")


class Attachment(Base):
    __tablename__ = "attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    complaint_id: Mapped[int] = mapped_column(ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False)
    uploaded_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    complaint: Mapped[Complaint] = relationship(Complaint, back_populates="attachments")


class ComplaintWatcher(Base):
    __tablename__ = "complaint_watchers"

    complaint_id: Mapped[int] = mapped_column(ForeignKey("complaints.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    user: Mapped["User"] = relationship("User", lazy="selectin")


class Escalation(Base):
    __tablename__ = "escalations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    complaint_id: Mapped[int] = mapped_column(ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    escalated_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    escalated_to_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending | resolved
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    complaint: Mapped[Complaint] = relationship(Complaint, back_populates="escalations")
    escalated_by: Mapped["User | None"] = relationship("User", foreign_keys=[escalated_by_id], lazy="selectin")
    escalated_to: Mapped["User | None"] = relationship("User", foreign_keys=[escalated_to_id], lazy="selectin")


class MergedComplaint(Base):
    __tablename__ = "merged_complaints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_complaint_id: Mapped[int] = mapped_column(ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False)
    target_complaint_id: Mapped[int] = mapped_column(ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False)
    merged_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    merged_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class SatisfactionSurvey(Base):
    __tablename__ = "satisfaction_surveys"
    __table_args__ = (UniqueConstraint("complaint_id", name="uq_survey_complaint"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    complaint_id: Mapped[int] = mapped_column(ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False)
    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    overall_rating: Mapped[int] = mapped_column(Integer, nullable=False)
    response_time_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolution_quality_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    communication_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    feedback_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    would_recommend: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    suggestions: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
