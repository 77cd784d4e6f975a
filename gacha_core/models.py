"""Value objects returned by the data layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True, frozen=True)
class SlotItem:
    """One card line when filling a gacha's slot pool."""

    name: str
    quantity: int
    prize_tier: str = "miss"
    conversion_points: int = 0
    image_url: str | None = None
    category: str | None = None


@dataclass(slots=True, frozen=True)
class DrawnCard:
    slot_id: str
    card_id: str
    name: str
    image_url: str | None
    prize_tier: str
    conversion_points: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "slotId": self.slot_id,
            "cardId": self.card_id,
            "name": self.name,
            "imageUrl": self.image_url,
            "prizeTier": self.prize_tier,
            "conversionPoints": self.conversion_points,
        }


@dataclass(slots=True, frozen=True)
class DrawResult:
    transaction_id: str
    drawn_cards: list[DrawnCard]
    total_cost: int
    new_balance: int
    remaining_slots: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "transactionId": self.transaction_id,
            "drawnCards": [card.to_dict() for card in self.drawn_cards],
            "totalCost": self.total_cost,
            "newBalance": self.new_balance,
        }


@dataclass(slots=True, frozen=True)
class SlotCreationResult:
    total_slots: int
    added_slots: int
    card_count: int
    append_mode: bool

    def to_dict(self) -> dict[str, Any]:
        action = "appended" if self.append_mode else "created"
        return {
            "success": True,
            "message": f"{self.added_slots} slots {action}",
            "totalSlots": self.total_slots,
            "addedSlots": self.added_slots,
            "cardCount": self.card_count,
        }


@dataclass(slots=True, frozen=True)
class ConversionResult:
    converted_count: int
    total_points: int
    new_balance: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "convertedCount": self.converted_count,
            "totalPoints": self.total_points,
            "newBalance": self.new_balance,
        }


@dataclass(slots=True)
class AutoConvertReport:
    processed: int = 0
    users: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": True, "processed": self.processed}
        if self.errors:
            payload["errors"] = list(self.errors)
        return payload


@dataclass(slots=True)
class ImportReport:
    """Outcome of one CSV import, recorded in the import history."""

    history_id: str
    data_type: str
    total_records: int
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    user_not_found: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self, *, error_limit: int = 20) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,
            "historyId": self.history_id,
            "dataType": self.data_type,
            "totalRecords": self.total_records,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "userNotFound": self.user_not_found,
            "errorCount": len(self.errors),
        }
        if self.errors:
            payload["errors"] = self.errors[:error_limit]
        return payload


@dataclass(slots=True)
class ProfileMigrationReport:
    processed: int = 0
    profiles_created: int = 0
    skipped_existing: int = 0
    marked_applied: int = 0
    total_remaining: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self, *, error_limit: int = 20) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,
            "processed": self.processed,
            "profilesCreated": self.profiles_created,
            "skippedExisting": self.skipped_existing,
            "markedApplied": self.marked_applied,
            "totalRemaining": self.total_remaining,
            "hasMore": self.total_remaining > 0,
            "errorCount": len(self.errors),
        }
        if self.errors:
            payload["errors"] = self.errors[:error_limit]
        return payload
