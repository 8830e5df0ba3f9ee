from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Index, UniqueConstraint, text
from sqlmodel import Field, Relationship, SQLModel


class MemberRole(str, Enum):
    guardian = "guardian"
    participant = "participant"


class TaskCategory(str, Enum):
    cleaning = "cleaning"
    kitchen = "kitchen"
    learning = "learning"
    kindness = "kindness"
    prayer = "prayer"
    outdoor = "outdoor"
    personal = "personal"


class ScheduleType(str, Enum):
    one_time = "one_time"
    recurring_daily = "recurring_daily"
    time_sensitive = "time_sensitive"


class TaskStatus(str, Enum):
    open = "open"
    pending_approval = "pending_approval"
    approved = "approved"
    rejected = "rejected"
    expired = "expired"


class InstanceSource(str, Enum):
    manual = "manual"
    spin = "spin"
    recurrence = "recurrence"


class Decision(str, Enum):
    approved = "approved"
    rejected = "rejected"


class RewardStatus(str, Enum):
    active = "active"
    redeemed = "redeemed"
    retired = "retired"


class LedgerReason(str, Enum):
    task_completion = "task_completion"
    manual_bonus = "manual_bonus"
    manual_deduction = "manual_deduction"
    reward_redemption = "reward_redemption"


class Family(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    join_code: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    members: list["Member"] = Relationship(back_populates="family")


class Member(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    display_name: str
    role: MemberRole = Field(default=MemberRole.participant)
    email: Optional[str] = Field(default=None, index=True)
    hashed_password: Optional[str] = None
    push_token: Optional[str] = None
    removed: bool = Field(default=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    family: Family = Relationship(back_populates="members")

    @property
    def is_guardian(self) -> bool:
        return self.role == MemberRole.guardian


class TaskTemplate(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    title: str
    category: TaskCategory = Field(default=TaskCategory.personal)
    default_stars: int = Field(default=1)
    schedule_type: ScheduleType = Field(default=ScheduleType.one_time)
    time_window_minutes: Optional[int] = None
    enabled: bool = Field(default=True)
    archived: bool = Field(default=False)
    created_by_member_id: Optional[int] = Field(default=None, foreign_key="member.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class TaskInstance(SQLModel, table=True):
    __table_args__ = (
        # NULL recurrence_day never collides, so only recurring rows are constrained.
        UniqueConstraint(
            "template_id",
            "assignee_member_id",
            "recurrence_day",
            name="uq_taskinstance_recurrence",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    template_id: int = Field(foreign_key="tasktemplate.id")
    assignee_member_id: int = Field(foreign_key="member.id", index=True)
    assigned_by_member_id: int = Field(foreign_key="member.id")
    status: TaskStatus = Field(default=TaskStatus.open, index=True)
    source: InstanceSource = Field(default=InstanceSource.manual)
    due_at: datetime
    expires_at: Optional[datetime] = None
    recurrence_day: Optional[date] = None
    completion_requested_by: Optional[int] = Field(default=None, foreign_key="member.id")
    completion_requested_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cleared_by_member_id: Optional[int] = Field(default=None, foreign_key="member.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ApprovalRecord(SQLModel, table=True):
    __table_args__ = (
        Index(
            "uq_approvalrecord_approved",
            "task_instance_id",
            unique=True,
            sqlite_where=text("decision = 'approved'"),
            postgresql_where=text("decision = 'approved'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    task_instance_id: int = Field(foreign_key="taskinstance.id", index=True)
    approver_member_id: int = Field(foreign_key="member.id")
    decision: Decision
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class StarsLedgerEntry(SQLModel, table=True):
    __table_args__ = (
        Index(
            "uq_starsledgerentry_award",
            "task_instance_id",
            unique=True,
            sqlite_where=text("task_instance_id IS NOT NULL AND delta > 0"),
            postgresql_where=text("task_instance_id IS NOT NULL AND delta > 0"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    member_id: int = Field(foreign_key="member.id", index=True)
    delta: int
    reason: str
    created_by_member_id: int = Field(foreign_key="member.id")
    task_instance_id: Optional[int] = Field(default=None, foreign_key="taskinstance.id")
    reward_id: Optional[int] = Field(default=None, foreign_key="reward.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Reward(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    title: str
    description: Optional[str] = None
    star_cost: int
    status: RewardStatus = Field(default=RewardStatus.active)
    redeemed_by_member_id: Optional[int] = Field(default=None, foreign_key="member.id")
    redeemed_at: Optional[datetime] = None
    created_by_member_id: Optional[int] = Field(default=None, foreign_key="member.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)


__all__ = [
    "Family",
    "Member",
    "MemberRole",
    "TaskCategory",
    "ScheduleType",
    "TaskTemplate",
    "TaskStatus",
    "InstanceSource",
    "TaskInstance",
    "Decision",
    "ApprovalRecord",
    "LedgerReason",
    "StarsLedgerEntry",
    "RewardStatus",
    "Reward",
]
