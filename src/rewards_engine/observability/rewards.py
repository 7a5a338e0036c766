from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Iterable


@dataclass
class RewardSnapshot:
    commands: Dict[str, int]
    conflicts: Dict[str, int]
    serials: Dict[str, int]
    step_up: Dict[str, int]
    payouts: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "commands": dict(self.commands),
            "conflicts": dict(self.conflicts),
            "serials": dict(self.serials),
            "step_up": dict(self.step_up),
            "payouts": dict(self.payouts),
        }


class RewardObservabilityStore:
    """Collect reward cascade telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._commands: Dict[str, int] = defaultdict(int)
        self._conflicts: Dict[str, int] = defaultdict(int)
        self._serials: Dict[str, int] = defaultdict(int)
        self._step_up: Dict[str, int] = defaultdict(int)
        self._payouts: Dict[str, int] = defaultdict(int)

    def record_command(self, operation: str, *, replayed: bool = False) -> None:
        with self._lock:
            self._commands[operation] += 1
            if replayed:
                self._commands[f"{operation}:replayed"] += 1

    def record_conflict(self, operation: str, *, exhausted: bool = False) -> None:
        with self._lock:
            self._conflicts["total"] += 1
            self._conflicts[f"operation:{operation}"] += 1
            if exhausted:
                self._conflicts["exhausted"] += 1

    def record_serials(self, regions: Iterable[str | None]) -> None:
        with self._lock:
            for region in regions:
                self._serials["global"] += 1
                if region:
                    self._serials[f"region:{region}"] += 1

    def record_step_up(self, multipliers: Iterable[int], points: int) -> None:
        with self._lock:
            for multiplier in multipliers:
                self._step_up[f"x{multiplier}"] += 1
                self._step_up["total"] += 1
            self._step_up["points"] += points

    def record_payout(self, kind: str, count: int, points: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self._payouts[kind] += count
            self._payouts[f"{kind}:points"] += points

    def snapshot(self) -> RewardSnapshot:
        with self._lock:
            return RewardSnapshot(
                commands=dict(self._commands),
                conflicts=dict(self._conflicts),
                serials=dict(self._serials),
                step_up=dict(self._step_up),
                payouts=dict(self._payouts),
            )

    def reset(self) -> None:
        with self._lock:
            self._commands.clear()
            self._conflicts.clear()
            self._serials.clear()
            self._step_up.clear()
            self._payouts.clear()


_STORE = RewardObservabilityStore()


def get_reward_store() -> RewardObservabilityStore:
    return _STORE


__all__ = ["get_reward_store", "RewardObservabilityStore", "RewardSnapshot"]
