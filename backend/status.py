# =========================
# STATUS PRESENTATION
# =========================
# Shared by every list and badge the admin and driver views render.

_STATUS_COLORS = {
    # Active states
    "active": "green",
    "completed": "green",
    # In progress states
    "in_progress": "blue",
    "assigned": "blue",
    "allocated": "blue",
    # Pending / warning states
    "pending": "yellow",
    "inactive": "yellow",
    # Negative states
    "cancelled": "red",
    "canceled": "red",
    "failed": "red",
}

DEFAULT_STATUS_COLOR = "gray"


def get_status_color(status: str) -> str:
    """Colour scheme for a status string; unknown statuses are gray."""
    return _STATUS_COLORS.get((status or "").lower(), DEFAULT_STATUS_COLOR)


def format_status_text(status: str) -> str:
    """'in_progress' -> 'In Progress'"""
    return " ".join(word[:1].upper() + word[1:].lower() for word in (status or "").split("_"))
