"""Deterministic color and icon derivation from category names."""

# Checked in order; "non-fiction" must come before "fiction" since it contains it.
_KEYWORD_COLORS: tuple[tuple[str, str], ...] = (
    ("non-fiction", "#10b981"),
    ("fiction", "#3b82f6"),
    ("science", "#8b5cf6"),
    ("history", "#f59e0b"),
    ("biography", "#ef4444"),
    ("mystery", "#6b7280"),
    ("romance", "#ec4899"),
    ("fantasy", "#8b5cf6"),
    ("thriller", "#374151"),
    ("comedy", "#fbbf24"),
    ("drama", "#dc2626"),
    ("uncategorized", "#9ca3af"),
)

_KEYWORD_ICONS: tuple[tuple[str, str], ...] = (
    ("non-fiction", "fa-book-open"),
    ("fiction", "fa-book"),
    ("science", "fa-flask"),
    ("history", "fa-landmark"),
    ("biography", "fa-user"),
    ("mystery", "fa-question"),
    ("romance", "fa-heart"),
    ("fantasy", "fa-dragon"),
    ("thriller", "fa-mask"),
    ("comedy", "fa-laugh"),
    ("drama", "fa-theater-masks"),
    ("uncategorized", "fa-folder"),
)

DEFAULT_ICON = "fa-folder"


def name_hash(name: str) -> int:
    """Polynomial rolling hash (h * 31 + c), wrapped to a signed 32-bit int."""
    h = 0
    for ch in name:
        h = (ord(ch) + (h << 5) - h) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def color_for(name: str) -> str:
    """Return a CSS color for a category name.

    Known keywords map to fixed colors; anything else gets an HSL color
    derived from the name hash, so the same name always yields the same color.
    """
    lowered = name.lower()
    for keyword, color in _KEYWORD_COLORS:
        if keyword in lowered:
            return color

    h = abs(name_hash(name))
    hue = h % 360
    saturation = 60 + h % 20
    lightness = 45 + h % 10
    return f"hsl({hue}, {saturation}%, {lightness}%)"


def icon_for(name: str) -> str:
    """Return a Font Awesome icon class for a category name."""
    lowered = name.lower()
    for keyword, icon in _KEYWORD_ICONS:
        if keyword in lowered:
            return icon
    return DEFAULT_ICON
