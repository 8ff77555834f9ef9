from __future__ import annotations

from dataclasses import dataclass

from app.economy.referrals.constants import MILESTONE_REWARD_REASON_PREFIX


@dataclass(frozen=True, slots=True)
class Milestone:
    id: str
    name: str
    description: str
    required_referrals: int
    bonus_days: int

    @property
    def reward_reason(self) -> str:
        return f"{MILESTONE_REWARD_REASON_PREFIX}{self.id}"


MILESTONES: tuple[Milestone, ...] = (
    Milestone("first_referral", "First Steps", "Complete your first referral", 1, 0),
    Milestone("rising_star", "Rising Star", "Refer 5 friends", 5, 3),
    Milestone("social_butterfly", "Social Butterfly", "Refer 10 friends", 10, 7),
    Milestone("influencer", "Influencer", "Refer 25 friends", 25, 14),
    Milestone("ambassador", "Ambassador", "Refer 50 friends", 50, 30),
    Milestone("legend", "Legend", "Refer 100 friends", 100, 60),
)
MILESTONES_BY_ID = {milestone.id: milestone for milestone in MILESTONES}


def newly_achieved_milestone(previous_total: int, current_total: int) -> Milestone | None:
    """Highest milestone whose threshold lies in (previous_total, current_total]."""
    achieved: Milestone | None = None
    for milestone in MILESTONES:
        if previous_total < milestone.required_referrals <= current_total:
            achieved = milestone
    return achieved


def next_milestone(total_referrals: int) -> Milestone | None:
    for milestone in MILESTONES:
        if milestone.required_referrals > total_referrals:
            return milestone
    return None


def achieved_milestones(total_referrals: int) -> tuple[Milestone, ...]:
    return tuple(
        milestone for milestone in MILESTONES if milestone.required_referrals <= total_referrals
    )
