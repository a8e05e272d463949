"""
Pricing Service - Action tags, action costs and runtime-tunable limits.

Responsibilities:
- Validate/normalize action tags used on ledger entries
- Resolve the credit cost of an action (and tier)
- Read integer settings from app_config with config.py defaults

ACTION TAGS (stored on credits_ledger.action):
- image.gen        - Standard image generation
- video.gen        - Image-to-video animation (Kling std / pro)
- mask.gen         - Mask generation
- emotionmask      - Emotion mask preset
- preset           - Preset transform (alias: presets)
- custom           - Custom prompt transform
- ghiblireact      - Ghibli reaction preset
- neotokyoglitch   - Neo Tokyo glitch preset

APP_CONFIG KEYS:
- daily_cap        - rolling 24h spend ceiling (<= 0 disables the cap)
- starter_credits  - grant for a user's first ledger touch
- image_cost       - cost of image.gen and preset actions
- video_cost       - cost of video.gen (standard tier)
- video_cost_pro   - cost of video.gen (pro tier)
"""

from typing import Any, Dict, Optional

from stefna.config import config
from stefna.db import USE_DB, DatabaseError, Tables, fetch_one, query_one


class Actions:
    """Action tag constants."""
    IMAGE_GEN = "image.gen"
    VIDEO_GEN = "video.gen"
    MASK_GEN = "mask.gen"
    EMOTION_MASK = "emotionmask"
    PRESET = "preset"
    CUSTOM = "custom"
    GHIBLI_REACT = "ghiblireact"
    NEO_TOKYO_GLITCH = "neotokyoglitch"
    # Ledger-only tags (never accepted from clients)
    GRANT = "grant"
    STARTER_GRANT = "starter.grant"


ALLOWED_ACTIONS = frozenset({
    Actions.IMAGE_GEN,
    Actions.VIDEO_GEN,
    Actions.MASK_GEN,
    Actions.EMOTION_MASK,
    Actions.PRESET,
    Actions.CUSTOM,
    Actions.GHIBLI_REACT,
    Actions.NEO_TOKYO_GLITCH,
})

ACTION_ALIASES = {
    "presets": Actions.PRESET,
    "image": Actions.IMAGE_GEN,
    "video": Actions.VIDEO_GEN,
    "i2v": Actions.VIDEO_GEN,
}

DEFAULT_ACTION = Actions.IMAGE_GEN

SQL_GET_CONFIG = f"SELECT value FROM {Tables.APP_CONFIG} WHERE key = %s"


def normalize_action(action: Optional[str]) -> str:
    """
    Normalize a client-supplied action tag.

    Raises:
        ValueError: if the tag is not a known action

    Example:
        normalize_action("presets") -> "preset"
        normalize_action(None) -> "image.gen"
    """
    if not action:
        return DEFAULT_ACTION
    key = str(action).strip().lower()
    key = ACTION_ALIASES.get(key, key)
    if key not in ALLOWED_ACTIONS:
        raise ValueError(f"Unknown action '{action}'")
    return key


def _coerce_int(value: Any, default: int) -> int:
    # app_config.value is jsonb: 30, "30" and {"value": 30} all show up in practice
    if isinstance(value, dict):
        value = value.get("value")
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class PricingService:
    """Service for costs and app_config lookups."""

    @staticmethod
    def get_config_int(key: str, default: int, cur=None) -> int:
        """
        Read an integer from app_config, falling back to default.

        Pass `cur` to read inside an open transaction (the ledger does this
        so the cap it checks is the one seen under its row lock).
        """
        if cur is not None:
            cur.execute(SQL_GET_CONFIG, (key,))
            row = fetch_one(cur)
        else:
            if not USE_DB:
                return default
            try:
                row = query_one(SQL_GET_CONFIG, (key,))
            except DatabaseError as e:
                print(f"[PRICING] app_config read failed for {key}, using default {default}: {e}")
                return default
        if not row:
            return default
        return _coerce_int(row.get("value"), default)

    @staticmethod
    def get_daily_cap(cur=None) -> int:
        return PricingService.get_config_int("daily_cap", config.DAILY_CAP, cur=cur)

    @staticmethod
    def get_starter_credits(cur=None) -> int:
        return PricingService.get_config_int("starter_credits", config.STARTER_CREDITS, cur=cur)

    @staticmethod
    def get_action_cost(action: str, tier: Optional[str] = None) -> int:
        """
        Credit cost of an action.

        video.gen is priced per tier; every other action uses image_cost.
        """
        action = normalize_action(action)
        if action == Actions.VIDEO_GEN:
            if (tier or "").lower() == "pro":
                return PricingService.get_config_int("video_cost_pro", config.VIDEO_COST_PRO)
            return PricingService.get_config_int("video_cost", config.VIDEO_COST)
        return PricingService.get_config_int("image_cost", 2)

    @staticmethod
    def get_price_table() -> Dict[str, int]:
        """Current cost of every client-visible action (for the balance endpoint)."""
        table = {a: PricingService.get_action_cost(a) for a in sorted(ALLOWED_ACTIONS)}
        table["video.gen.pro"] = PricingService.get_action_cost(Actions.VIDEO_GEN, tier="pro")
        return table
