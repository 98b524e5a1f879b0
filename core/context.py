from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Talent:
    # -------------------------------------------------
    # CORE
    # -------------------------------------------------
    id: str  # Holodex / YouTube channel id
    name: str
    english_name: str = ""

    # -------------------------------------------------
    # ROSTER
    # -------------------------------------------------
    branch: Optional[str] = None
    generation: Optional[str] = None

    # -------------------------------------------------
    # PRESENTATION
    # -------------------------------------------------
    emoji: str = ""
    icon: Optional[str] = None
    colour: int = 0
    twitter_handle: Optional[str] = None

    # Role pinged by live alerts (name or numeric id)
    discord_role: Optional[str] = None

    # -------------------------------------------------

    @property
    def display_name(self) -> str:
        return self.english_name or self.name

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Talent":
        channel_id = raw.get("id") or raw.get("youtube_ch_id")
        if not isinstance(channel_id, str) or not channel_id.strip():
            raise ValueError("talent has no channel id")

        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError(f"[{channel_id}] talent has no name")

        role = raw.get("discord_role")
        return cls(
            id=channel_id.strip(),
            name=name.strip(),
            english_name=str(raw.get("english_name") or ""),
            branch=raw.get("branch") or None,
            generation=raw.get("generation") or None,
            emoji=str(raw.get("emoji") or ""),
            icon=raw.get("icon") or None,
            colour=_parse_colour(raw.get("colour")),
            twitter_handle=raw.get("twitter_handle") or None,
            discord_role=str(role) if role not in (None, "") else None,
        )


def _parse_colour(value: Any) -> int:
    """Accepts 0xRRGGBB / #RRGGBB strings or plain ints."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"invalid colour {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw.startswith("#"):
            raw = raw[1:]
        elif raw.startswith("0x"):
            raw = raw[2:]
        return int(raw, 16)
    raise ValueError(f"invalid colour {value!r}")
