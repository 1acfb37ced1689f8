"""Layered automation settings.

Settings resolve in three layers, each deep-merged over the previous one:

    defaults -> stored per-user overrides -> per-call overrides

Only the overrides are persisted. A field added to AutomationSettings later
therefore picks up its default for every existing user without a migration.
"""

import copy
import logging
from typing import Any

from magpie.queue.store import PipelineStore
from magpie.schemas.settings import AutomationSettings

logger = logging.getLogger(__name__)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict with *override* merged recursively over *base*.

    Nested dicts merge key by key; every other value (lists included) is
    replaced wholesale.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class SettingsBuilder:
    """Explicit layered-config builder for AutomationSettings.

    Usage::

        settings = (
            SettingsBuilder()
            .with_overrides(stored)
            .with_overrides({"confidence_threshold": 0.8})
            .build()
        )
    """

    def __init__(self) -> None:
        self._layers: list[dict[str, Any]] = [AutomationSettings().model_dump(mode="json")]

    def with_overrides(self, overrides: dict[str, Any] | None) -> "SettingsBuilder":
        if overrides:
            self._layers.append(overrides)
        return self

    def merged(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for layer in self._layers:
            result = deep_merge(result, layer)
        return result

    def build(self) -> AutomationSettings:
        """Merge all layers and validate.

        Raises:
            pydantic.ValidationError: If the merged result is invalid.
        """
        return AutomationSettings.model_validate(self.merged())


class SettingsManager:
    """Reads and writes per-user settings through the pipeline store.

    ``update`` is the only writer; it validates the merged result before
    persisting so a bad partial update never reaches the store.
    """

    def __init__(self, store: PipelineStore) -> None:
        self._store = store

    def get(self, user_id: str, overrides: dict[str, Any] | None = None) -> AutomationSettings:
        stored = self._store.get_settings_overrides(user_id)
        return SettingsBuilder().with_overrides(stored).with_overrides(overrides).build()

    def update(self, user_id: str, partial: dict[str, Any]) -> AutomationSettings:
        """Merge *partial* into the user's stored overrides and persist.

        Raises:
            pydantic.ValidationError: If the merged settings are invalid.
        """
        stored = self._store.get_settings_overrides(user_id)
        new_overrides = deep_merge(stored, partial)
        settings = SettingsBuilder().with_overrides(new_overrides).build()
        self._store.save_settings_overrides(user_id, new_overrides)
        logger.info("Updated automation settings for %s: %s", user_id, sorted(partial))
        return settings

    def reset(self, user_id: str) -> AutomationSettings:
        self._store.save_settings_overrides(user_id, {})
        logger.info("Reset automation settings for %s to defaults", user_id)
        return AutomationSettings()
