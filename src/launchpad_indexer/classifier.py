"""Transfer classification.

Maps a raw Transfer event plus its originating transaction to a semantic
operation kind. The chain does not tag bonding-curve operations, so the kind
is inferred from addresses, attached native value and the call-data selector.

The classifier is a pure function: callers pass the contract and creator
addresses in, and nothing here performs I/O.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from enum import Enum

from launchpad_indexer.chain.client import TransactionInfo
from launchpad_indexer.chain.events import ZERO_ADDRESS


class TransferKind(str, Enum):
    """Semantic kind of a ledger transfer."""

    BUY = "BUY"
    SELL = "SELL"
    BUY_AND_LOCK = "BUY_AND_LOCK"
    UNLOCK = "UNLOCK"
    GRADUATION = "GRADUATION"
    CLAIM_AIRDROP = "CLAIM_AIRDROP"
    TRANSFER = "TRANSFER"
    OTHER = "OTHER"


# Kinds a call-data selector may map to directly.
SELECTOR_KINDS = frozenset(
    {
        TransferKind.BUY,
        TransferKind.SELL,
        TransferKind.CLAIM_AIRDROP,
        TransferKind.UNLOCK,
        TransferKind.BUY_AND_LOCK,
    }
)


class SelectorTable(Mapping[str, TransferKind]):
    """Call-data selector to kind mapping for one contract family."""

    def __init__(self, entries: Mapping[str, TransferKind | str] | None = None) -> None:
        normalized: dict[str, TransferKind] = {}
        for raw_selector, raw_kind in (entries or {}).items():
            sel = raw_selector.lower()
            if not sel.startswith("0x"):
                sel = "0x" + sel
            if len(sel) != 10:
                raise ValueError(f"Selector must be 4 bytes: {raw_selector!r}")
            kind = TransferKind(raw_kind)
            if kind not in SELECTOR_KINDS:
                raise ValueError(f"Selector {sel} cannot map to {kind.value}")
            normalized[sel] = kind
        self._entries = normalized

    def __getitem__(self, key: str) -> TransferKind:
        return self._entries[key.lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def merged(self, overrides: Mapping[str, TransferKind | str]) -> SelectorTable:
        """Return a new table with ``overrides`` applied on top."""
        combined: dict[str, TransferKind | str] = dict(self._entries)
        combined.update(overrides)
        return SelectorTable(combined)

    @classmethod
    def parse(cls, raw: str) -> dict[str, TransferKind]:
        """Parse ``0xselector=KIND`` comma-separated pairs."""
        parsed: dict[str, TransferKind] = {}
        for part in raw.split(","):
            part = part.strip()
            if not part:
                continue
            sel, _, kind = part.partition("=")
            parsed[sel.strip()] = TransferKind(kind.strip().upper())
        return parsed


# Launchpad bonding-curve token contract.
DEFAULT_SELECTORS = SelectorTable(
    {
        "0xb34ffc5f": TransferKind.BUY_AND_LOCK,  # creatorBuy
        "0x5b88349d": TransferKind.CLAIM_AIRDROP,
        "0xb4105e06": TransferKind.UNLOCK,
    }
)


def classify_transfer(
    *,
    from_address: str,
    to_address: str,
    contract_address: str,
    creator_address: str | None,
    tx: TransactionInfo | None,
    selectors: Mapping[str, TransferKind] = DEFAULT_SELECTORS,
) -> TransferKind:
    """Classify one transfer; first matching rule wins.

    Without transaction data the native value and selector are unknown, so
    rules that depend on them yield OTHER, leaving the row for backfill.
    """
    sender = from_address.lower()
    recipient = to_address.lower()
    contract = contract_address.lower()
    creator = creator_address.lower() if creator_address else None

    if tx is not None and tx.selector is not None:
        kind = selectors.get(tx.selector)
        if kind is not None:
            return kind

    value = tx.value if tx is not None else None

    if sender == ZERO_ADDRESS:
        if value is None:
            return TransferKind.OTHER
        if value > 0:
            if creator is not None and tx is not None and tx.sender.lower() == creator:
                return TransferKind.BUY_AND_LOCK
            return TransferKind.BUY
        if recipient == contract:
            return TransferKind.GRADUATION
        return TransferKind.TRANSFER

    if recipient == ZERO_ADDRESS:
        if value is None:
            return TransferKind.OTHER
        return TransferKind.SELL if value > 0 else TransferKind.TRANSFER

    if sender == contract:
        return TransferKind.UNLOCK
    if recipient == contract:
        return TransferKind.SELL

    if value is None:
        return TransferKind.OTHER
    if value > 0:
        return TransferKind.BUY
    return TransferKind.TRANSFER
