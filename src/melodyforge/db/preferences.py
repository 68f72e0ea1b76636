"""Settings persistence via the preferences table.

Stores and retrieves the audio settings (equalizer gains, custom EQ
presets, effects, playback rate) and engine configuration as JSON in the
preferences table. Corrupt or outdated JSON falls back to defaults.
"""

from __future__ import annotations

import logging
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from melodyforge.config import AudioConfig, MixConfig
from melodyforge.db.database import Database
from melodyforge.db.models import (
    EffectSettings,
    EqualizerPreset,
    EqualizerSettings,
    PlaybackSettings,
)

logger = logging.getLogger(__name__)

# Keys used in the preferences table
_KEY_EQUALIZER = "equalizer_settings"
_KEY_EFFECTS = "effect_settings"
_KEY_PLAYBACK = "playback_settings"
_KEY_AUDIO_CONFIG = "audio_config"
_KEY_MIX_CONFIG = "mix_config"
_PREFIX_CUSTOM_PRESET = "eq_preset:"

ModelT = TypeVar("ModelT", bound=BaseModel)


class PreferencesManager:
    """Read/write user preferences backed by the Database preferences table."""

    def __init__(self, database: Database) -> None:
        self.db = database

    def _save(self, key: str, model: BaseModel) -> None:
        self.db.set_preference(key, model.model_dump_json())

    def _load(self, key: str, model_cls: type[ModelT]) -> ModelT:
        raw = self.db.get_preference(key)
        if raw is None:
            return model_cls()
        try:
            return model_cls.model_validate_json(raw)
        except ValidationError:
            logger.warning("Invalid %s in preferences, using defaults", key)
            return model_cls()

    # ------------------------------------------------------------------
    # Equalizer
    # ------------------------------------------------------------------

    def save_equalizer_settings(self, settings: EqualizerSettings) -> None:
        """Persist the ordered 10-band gains, active preset and enabled flag."""
        self._save(_KEY_EQUALIZER, settings)

    def load_equalizer_settings(self) -> EqualizerSettings:
        """Load equalizer settings from DB, or return flat defaults."""
        return self._load(_KEY_EQUALIZER, EqualizerSettings)

    def save_custom_preset(self, preset: EqualizerPreset) -> None:
        self.db.set_preference(_PREFIX_CUSTOM_PRESET + preset.id, preset.model_dump_json())

    def load_custom_presets(self) -> list[EqualizerPreset]:
        """All stored custom presets, oldest first; corrupt entries are skipped."""
        presets = []
        for key, raw in self.db.get_preferences_with_prefix(_PREFIX_CUSTOM_PRESET).items():
            try:
                presets.append(EqualizerPreset.model_validate_json(raw))
            except ValidationError:
                logger.warning("Skipping invalid custom preset %s", key)
        presets.sort(key=lambda p: p.created_at)
        return presets

    def delete_custom_preset(self, preset_id: str) -> None:
        self.db.delete_preference(_PREFIX_CUSTOM_PRESET + preset_id)

    # ------------------------------------------------------------------
    # Effects and playback
    # ------------------------------------------------------------------

    def save_effect_settings(self, settings: EffectSettings) -> None:
        self._save(_KEY_EFFECTS, settings)

    def load_effect_settings(self) -> EffectSettings:
        return self._load(_KEY_EFFECTS, EffectSettings)

    def save_playback_settings(self, settings: PlaybackSettings) -> None:
        self._save(_KEY_PLAYBACK, settings)

    def load_playback_settings(self) -> PlaybackSettings:
        return self._load(_KEY_PLAYBACK, PlaybackSettings)

    # ------------------------------------------------------------------
    # Engine configuration
    # ------------------------------------------------------------------

    def save_audio_config(self, config: AudioConfig) -> None:
        self._save(_KEY_AUDIO_CONFIG, config)

    def load_audio_config(self) -> AudioConfig:
        return self._load(_KEY_AUDIO_CONFIG, AudioConfig)

    def save_mix_config(self, config: MixConfig) -> None:
        self._save(_KEY_MIX_CONFIG, config)

    def load_mix_config(self) -> MixConfig:
        return self._load(_KEY_MIX_CONFIG, MixConfig)
