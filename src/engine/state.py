"""Reserve state and its persistence."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable

LOGGER = logging.getLogger("token_liquidity.state")

STATE_VERSION = 1


class StateUnavailable(Exception):
    """Raised when the persisted state is missing or unreadable."""


@dataclass(frozen=True)
class ReserveSnapshot:
    base_balance: Decimal
    token_balance: Decimal
    usd_per_base: Decimal


@dataclass
class ReserveState:
    base_balance: Decimal
    token_balance: Decimal
    initial_base_balance: Decimal
    initial_token_balance: Decimal
    usd_per_base: Decimal = Decimal("0")
    seen_transaction_ids: set[str] = field(default_factory=set)

    @classmethod
    def initial(
        cls,
        initial_base_balance: Decimal,
        initial_token_balance: Decimal,
        seen: Iterable[str] = (),
    ) -> "ReserveState":
        return cls(
            base_balance=initial_base_balance,
            token_balance=initial_token_balance,
            initial_base_balance=initial_base_balance,
            initial_token_balance=initial_token_balance,
            seen_transaction_ids=set(seen),
        )

    def snapshot(self) -> ReserveSnapshot:
        return ReserveSnapshot(
            base_balance=self.base_balance,
            token_balance=self.token_balance,
            usd_per_base=self.usd_per_base,
        )

    def mark_seen(self, *transaction_ids: str | None) -> None:
        for transaction_id in transaction_ids:
            if transaction_id:
                self.seen_transaction_ids.add(transaction_id)

    def apply_balances(self, base_balance: Decimal, token_balance: Decimal) -> None:
        if base_balance < 0 or token_balance < 0:
            raise ValueError(
                f"Reserve balances cannot go negative: base={base_balance} "
                f"token={token_balance}"
            )
        self.base_balance = base_balance
        self.token_balance = token_balance

    def to_payload(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "base_balance": str(self.base_balance),
            "token_balance": str(self.token_balance),
            "usd_per_base": str(self.usd_per_base),
            "initial_base_balance": str(self.initial_base_balance),
            "initial_token_balance": str(self.initial_token_balance),
            "seen_transaction_ids": sorted(self.seen_transaction_ids),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ReserveState":
        try:
            state = cls(
                base_balance=Decimal(str(payload["base_balance"])),
                token_balance=Decimal(str(payload["token_balance"])),
                usd_per_base=Decimal(str(payload.get("usd_per_base", "0"))),
                initial_base_balance=Decimal(str(payload["initial_base_balance"])),
                initial_token_balance=Decimal(str(payload["initial_token_balance"])),
                seen_transaction_ids={
                    str(item) for item in payload.get("seen_transaction_ids", [])
                },
            )
        except (KeyError, TypeError, InvalidOperation) as exc:
            raise StateUnavailable(f"State record is malformed: {exc}") from exc
        if (
            state.base_balance < 0
            or state.token_balance < 0
            or state.initial_base_balance <= 0
            or state.initial_token_balance <= 0
        ):
            raise StateUnavailable("State record holds out-of-range balances.")
        return state


class JsonStateStore:
    """Key-value state file written atomically via temp file and rename."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def read_state(self) -> dict[str, Any]:
        if not self.path.exists():
            raise StateUnavailable(f"State file not found: {self.path}")
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StateUnavailable(f"State file {self.path} is unreadable: {exc}") from exc
        if not isinstance(payload, dict):
            raise StateUnavailable(f"State file {self.path} must hold a JSON object.")
        return payload

    def write_state(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps(payload, indent=2, sort_keys=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class StateStoreAdapter:
    def __init__(self, store: JsonStateStore) -> None:
        self.store = store

    def load(self) -> ReserveState:
        return ReserveState.from_payload(self.store.read_state())

    def save(self, state: ReserveState) -> None:
        self.store.write_state(state.to_payload())
        LOGGER.debug(
            "Saved state: base=%s token=%s seen=%d",
            state.base_balance,
            state.token_balance,
            len(state.seen_transaction_ids),
        )

    def load_or_initialize(
        self, initial_base_balance: Decimal, initial_token_balance: Decimal
    ) -> tuple[ReserveState, bool]:
        """Return the persisted state, or a fresh one and ``True`` when missing."""
        try:
            state = self.load()
        except StateUnavailable as exc:
            LOGGER.warning(
                "Could not read persisted state (%s). Starting from configured "
                "reserves base=%s token=%s.",
                exc,
                initial_base_balance,
                initial_token_balance,
            )
            return ReserveState.initial(initial_base_balance, initial_token_balance), True
        if (
            state.initial_base_balance != initial_base_balance
            or state.initial_token_balance != initial_token_balance
        ):
            LOGGER.warning(
                "Configured curve anchor (base=%s token=%s) differs from the "
                "persisted anchor (base=%s token=%s); keeping the persisted values.",
                initial_base_balance,
                initial_token_balance,
                state.initial_base_balance,
                state.initial_token_balance,
            )
        return state, False
