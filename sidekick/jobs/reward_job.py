"""Reward distribution job payload and schedule identity."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sidekick.config import SCHEDULER_SETTINGS


@dataclass(frozen=True, slots=True)
class ScheduleKey:
    """(chainId, contractAddress) identifying at most one active schedule.

    The contract address is lower-cased so the rendered key does not depend on
    the caller's checksum casing.
    """

    chain_id: str
    contract_address: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "chain_id", str(self.chain_id).strip())
        object.__setattr__(self, "contract_address", str(self.contract_address).strip().lower())

    def render(self, prefix: str | None = None) -> str:
        prefix = prefix or str(SCHEDULER_SETTINGS["store_key_prefix"])
        return f"{prefix}:{self.chain_id}:{self.contract_address}"

    @classmethod
    def parse(cls, rendered: str, prefix: str | None = None) -> "ScheduleKey":
        prefix = prefix or str(SCHEDULER_SETTINGS["store_key_prefix"])
        head, _, rest = rendered.partition(":")
        chain_id, _, contract = rest.partition(":")
        if head != prefix or not chain_id or not contract:
            raise ValueError(f"Not a schedule key: {rendered!r}")
        return cls(chain_id=chain_id, contract_address=contract)

    def __str__(self) -> str:
        return self.render()


@dataclass(slots=True)
class RewardJob:
    """Payload handed to the recurring queue and replayed on every tick."""

    chain_id: str
    contract_address: str
    recipients: list[str] = field(default_factory=list)
    amounts: list[str] = field(default_factory=list)

    @property
    def schedule_key(self) -> ScheduleKey:
        return ScheduleKey(self.chain_id, self.contract_address)

    def pairs(self) -> list[tuple[str, str]]:
        return list(zip(self.recipients, self.amounts))

    def to_payload(self) -> dict[str, Any]:
        return {
            "scheduleKey": self.schedule_key.render(),
            "chainId": self.chain_id,
            "contractAddress": self.contract_address,
            "recipients": list(self.recipients),
            "amounts": list(self.amounts),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RewardJob":
        # payloads written by the /erc20/schedule route historically used "users"
        recipients = payload.get("recipients", payload.get("users")) or []
        return cls(
            chain_id=str(payload["chainId"]),
            contract_address=str(payload["contractAddress"]),
            recipients=[str(r) for r in recipients],
            amounts=[str(a) for a in payload.get("amounts") or []],
        )


__all__ = ["ScheduleKey", "RewardJob"]
