from __future__ import annotations

from dosekeeper.services.local_storage import HAPTIC_ENABLED_KEY, SOUND_ENABLED_KEY, LocalStorage


def is_sound_enabled(storage: LocalStorage) -> bool:
    return bool(storage.get(SOUND_ENABLED_KEY, True))


def set_sound_enabled(storage: LocalStorage, enabled: bool) -> None:
    storage.set(SOUND_ENABLED_KEY, bool(enabled))


def is_haptic_enabled(storage: LocalStorage) -> bool:
    return bool(storage.get(HAPTIC_ENABLED_KEY, True))


def set_haptic_enabled(storage: LocalStorage, enabled: bool) -> None:
    storage.set(HAPTIC_ENABLED_KEY, bool(enabled))
