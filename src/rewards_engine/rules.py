"""Loader for externally managed reward rule tables."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import tomllib

from rewards_engine.core.errors import ConfigurationMissing
from rewards_engine.core.settings import settings
from rewards_engine.models.account import AccountRole
from rewards_engine.models.ledger import LedgerEntryKind


@dataclass(slots=True, frozen=True)
class QualificationRules:
    """When a customer becomes eligible for a serial number."""

    threshold: int
    qualifying_kinds: frozenset[LedgerEntryKind]


@dataclass(slots=True, frozen=True)
class StepUpRules:
    """Multiplier to reward table for milestone rewards."""

    rewards: Mapping[int, int]

    @property
    def multipliers(self) -> list[int]:
        return sorted(self.rewards)

    def reward_for(self, multiplier: int) -> int:
        try:
            return self.rewards[multiplier]
        except KeyError as error:
            raise ConfigurationMissing(f"No StepUp reward configured for multiplier {multiplier}") from error


@dataclass(slots=True, frozen=True)
class InfinityRules:
    """Geometric lifetime thresholds and the rewards paid at each cycle."""

    base_threshold: int
    threshold_ratio: int
    rewards: tuple[int, ...]
    reward_growth_factor: int | None = None
    max_cycles: int | None = None

    def threshold_for(self, cycle_number: int) -> int:
        return self.base_threshold * self.threshold_ratio**cycle_number

    def reward_for(self, cycle_number: int) -> int:
        if cycle_number < len(self.rewards):
            return self.rewards[cycle_number]
        if self.reward_growth_factor is None:
            raise ConfigurationMissing(
                f"No infinity reward configured for cycle {cycle_number} and no growth factor set"
            )
        overflow = cycle_number - len(self.rewards) + 1
        return self.rewards[-1] * self.reward_growth_factor**overflow

    def is_capped(self, cycle_number: int) -> bool:
        return self.max_cycles is not None and cycle_number >= self.max_cycles


@dataclass(slots=True, frozen=True)
class ReferralRules:
    """Lifetime commission rates keyed by the referred account's role."""

    rates: Mapping[AccountRole, Decimal]
    commission_kinds: frozenset[LedgerEntryKind]

    def rate_for(self, role: AccountRole) -> Decimal:
        try:
            return self.rates[role]
        except KeyError as error:
            raise ConfigurationMissing(f"No referral commission rate configured for role {role.value}") from error


@dataclass(slots=True, frozen=True)
class RippleRules:
    """Share of each StepUp reward paid to the beneficiary's referrer."""

    percentages: Mapping[int, Decimal]

    def percentage_for(self, multiplier: int) -> Decimal:
        try:
            return self.percentages[multiplier]
        except KeyError as error:
            raise ConfigurationMissing(f"No ripple percentage configured for multiplier {multiplier}") from error


@dataclass(slots=True, frozen=True)
class VoucherRules:
    """Voucher pool released per StepUp reward and the merchant activity window."""

    pool: int
    lookback_days: int = 30


@dataclass(slots=True, frozen=True)
class RewardRules:
    """Root rule set consumed by every reward component."""

    qualification: QualificationRules
    step_up: StepUpRules
    infinity: InfinityRules
    referral: ReferralRules
    ripple: RippleRules
    vouchers: VoucherRules
    source: str = field(default="<inline>", compare=False)


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name)
    if not isinstance(section, dict):
        raise ConfigurationMissing(f"Reward rules are missing the [{name}] section")
    return section


def _required(section: Mapping[str, Any], key: str, label: str) -> Any:
    if key not in section or section[key] is None:
        raise ConfigurationMissing(f"Reward rules are missing {label}.{key}")
    return section[key]


def _decimal(value: Any, label: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as error:
        raise ConfigurationMissing(f"Reward rule {label} is not a number: {value!r}") from error


def _kinds(values: Any, label: str) -> frozenset[LedgerEntryKind]:
    if not isinstance(values, list) or not values:
        raise ConfigurationMissing(f"Reward rule {label} must list at least one ledger kind")
    try:
        return frozenset(LedgerEntryKind(str(value)) for value in values)
    except ValueError as error:
        raise ConfigurationMissing(f"Reward rule {label} names an unknown ledger kind") from error


def _multiplier_table(table: Mapping[str, Any], label: str, *, as_decimal: bool) -> dict[int, Any]:
    if not table:
        raise ConfigurationMissing(f"Reward rule table {label} is empty")
    resolved: dict[int, Any] = {}
    for key, value in table.items():
        multiplier = int(key)
        resolved[multiplier] = _decimal(value, f"{label}.{key}") if as_decimal else int(value)
    return resolved


def parse_reward_rules(data: Mapping[str, Any], *, source: str = "<inline>") -> RewardRules:
    """Build :class:`RewardRules` from a decoded TOML document."""

    qualification = _section(data, "qualification")
    step_up = _section(data, "step_up")
    infinity = _section(data, "infinity")
    referral = _section(data, "referral")
    ripple = _section(data, "ripple")
    vouchers = _section(data, "vouchers")

    threshold_ratio = int(_required(infinity, "threshold_ratio", "infinity"))
    growth = infinity.get("reward_growth_factor", threshold_ratio)
    max_cycles = infinity.get("max_cycles")

    rate_table = _required(referral, "rates", "referral")
    rates: dict[AccountRole, Decimal] = {}
    for role_name, rate in rate_table.items():
        try:
            role = AccountRole(role_name)
        except ValueError as error:
            raise ConfigurationMissing(f"Unknown account role in referral.rates: {role_name!r}") from error
        rates[role] = _decimal(rate, f"referral.rates.{role_name}")

    rewards = tuple(int(value) for value in _required(infinity, "rewards", "infinity"))
    if not rewards:
        raise ConfigurationMissing("Reward rules infinity.rewards must not be empty")

    return RewardRules(
        qualification=QualificationRules(
            threshold=int(_required(qualification, "threshold", "qualification")),
            qualifying_kinds=_kinds(
                _required(qualification, "qualifying_kinds", "qualification"),
                "qualification.qualifying_kinds",
            ),
        ),
        step_up=StepUpRules(
            rewards=_multiplier_table(_required(step_up, "rewards", "step_up"), "step_up.rewards", as_decimal=False),
        ),
        infinity=InfinityRules(
            base_threshold=int(_required(infinity, "base_threshold", "infinity")),
            threshold_ratio=threshold_ratio,
            rewards=rewards,
            reward_growth_factor=int(growth) if growth is not None else None,
            max_cycles=int(max_cycles) if max_cycles is not None else None,
        ),
        referral=ReferralRules(
            rates=rates,
            commission_kinds=_kinds(
                _required(referral, "commission_kinds", "referral"),
                "referral.commission_kinds",
            ),
        ),
        ripple=RippleRules(
            percentages=_multiplier_table(
                _required(ripple, "percentages", "ripple"), "ripple.percentages", as_decimal=True
            ),
        ),
        vouchers=VoucherRules(
            pool=int(_required(vouchers, "pool", "vouchers")),
            lookback_days=int(vouchers.get("lookback_days", 30)),
        ),
        source=source,
    )


def load_reward_rules(config_path: Path) -> RewardRules:
    """Load reward rules from a TOML file."""

    if not config_path.exists():
        raise ConfigurationMissing(f"Reward rules file not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    return parse_reward_rules(data, source=str(config_path))


DEFAULT_RULES_PATH = Path(__file__).resolve().parent / "config" / "reward_rules.toml"


def resolve_rules_path(raw_path: str | None) -> Path:
    """Relative paths resolve against the working directory; no path selects the bundled rules."""

    if not raw_path:
        return DEFAULT_RULES_PATH
    return Path(raw_path).expanduser()


@lru_cache
def get_reward_rules() -> RewardRules:
    return load_reward_rules(resolve_rules_path(settings.reward_rules_path))


__all__ = [
    "DEFAULT_RULES_PATH",
    "InfinityRules",
    "QualificationRules",
    "ReferralRules",
    "RewardRules",
    "RippleRules",
    "StepUpRules",
    "VoucherRules",
    "get_reward_rules",
    "load_reward_rules",
    "parse_reward_rules",
    "resolve_rules_path",
]
