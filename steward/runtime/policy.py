"""Trust policy: which operations may run without a human decision."""

from __future__ import annotations

from .models.chat import ChatMode
from .models.operation import EffectClass

_MODE_RANKS: dict[ChatMode, int] = {
    ChatMode.NONE: 0,
    ChatMode.READ: 1,
    ChatMode.CREATE: 2,
    ChatMode.UPDATE: 3,
    ChatMode.DELETE: 4,
}

_EFFECT_RANKS: dict[EffectClass, int] = {
    EffectClass.READ: _MODE_RANKS[ChatMode.READ],
    EffectClass.CREATE: _MODE_RANKS[ChatMode.CREATE],
    EffectClass.UPDATE: _MODE_RANKS[ChatMode.UPDATE],
    EffectClass.DELETE: _MODE_RANKS[ChatMode.DELETE],
}


def mode_rank(mode: ChatMode | str) -> int:
    return _MODE_RANKS[ChatMode(mode)]


def effect_rank(effect: EffectClass | str) -> int:
    return _EFFECT_RANKS[EffectClass(effect)]


def should_auto_execute(mode: ChatMode | str, effect: EffectClass | str) -> bool:
    # Every effect ranks above NONE, so a NONE chat never auto-executes.
    return effect_rank(effect) <= mode_rank(mode)
