"""Reward components driven by the ledger cascade."""

from .cascade import CascadeSummary, RewardCascade  # noqa: F401
from .infinity import InfinityAward, InfinityCycleTracker  # noqa: F401
from .referral import CommissionAward, ReferralCommissionEngine  # noqa: F401
from .ripple import RippleAward, RippleRewardEngine  # noqa: F401
from .sequence import SequenceAssignor, SerialAssignment, SerialStats  # noqa: F401
from .statistics import InfinityStats, RewardStatistics, RippleStats, VoucherStats  # noqa: F401
from .step_up import MilestoneRewardCalculator, StepUpAward  # noqa: F401
from .vouchers import VoucherAward, VoucherDistributor, split_pool  # noqa: F401
