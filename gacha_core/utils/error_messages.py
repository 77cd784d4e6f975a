"""Standardized error messages for consistent API responses."""

from __future__ import annotations

from typing import Any


def get_error_message(error_type: str, **kwargs: Any) -> str:
    """
    Get formatted error message with variables.

    Args:
        error_type: Type of error (key from ERROR_MESSAGES)
        **kwargs: Variables to format into the message

    Returns:
        Formatted error message string
    """
    message_template = ERROR_MESSAGES.get(error_type, "An error occurred. Please try again later.")

    try:
        return message_template.format(**kwargs)
    except KeyError:
        # If a required variable is missing, return a generic message
        return f"{error_type.replace('_', ' ').capitalize()} error occurred."


ERROR_MESSAGES = {
    # Authentication / authorization
    "auth_required": "Authentication required.",
    "auth_failed": "Authentication failed.",
    "admin_required": "Admin access required.",
    "invalid_credentials": "Invalid email or password.",
    "email_taken": "An account with email {email} already exists.",
    "invalid_email": "A valid email address is required.",
    "weak_password": "Password must be at least {min_length} characters.",

    # Request shape
    "invalid_request": "Invalid request.",
    "invalid_json": "Request body must be valid JSON.",
    "tenant_required": "tenantId is required.",
    "csv_required": "csvData is required.",
    "invalid_csv": "Invalid CSV: {reason}.",
    "import_too_large": "Import file exceeds {limit_mb} MB.",
    "invalid_play_count": "playCount must be one of {allowed}.",
    "category_required": "Category is required.",
    "invalid_category": "Unknown card category: {category}.",
    "missing_gacha_items": "gachaId and items are required.",
    "invalid_slot_item": "Invalid item at index {index}: {reason}.",
    "no_items": "There are no items to convert.",
    "invalid_status": "Invalid status: {status}.",
    "invalid_role": "Unknown role: {role}.",
    "invalid_amount": "Amount must be a non-zero integer.",

    # Gacha / draw
    "gacha_not_found": "Gacha not found.",
    "gacha_unavailable": "This gacha is not currently available.",
    "gacha_not_draft": "Slots can only be appended to a draft gacha.",
    "gacha_not_activatable": "A gacha needs remaining slots before it can be activated.",
    "slots_already_drawn": "Slots cannot be regenerated after draws have started.",
    "insufficient_slots": "Not enough slots remaining (remaining: {remaining}).",
    "no_slots": "No available slots.",
    "slot_conflict": "A selected slot was drawn by another player. Please try again.",
    "profile_not_found": "Profile not found.",
    "insufficient_points": "Not enough points (required: {required}pt, balance: {balance}pt).",

    # Inventory
    "slot_not_convertible": "Slot {slot_id} is not in your inventory.",
    "action_not_found": "Inventory action not found.",

    # Admin
    "user_not_found": "User not found.",
    "tenant_exists": "A tenant with slug {slug} already exists.",
    "tenant_not_found": "Tenant not found.",
    "import_not_found": "Import history not found.",

    # Rate limiting / generic
    "rate_limited": "Too many requests. Please wait {retry_after}s and try again.",
    "internal_error": "An internal error occurred.",
}
