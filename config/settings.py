"""
Configuration loader for the voice orchestrator.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

logger = structlog.get_logger()

STUB_MODE = "stub"
LIVE_MODE = "live"

SUPPORTED_LLM_PROVIDERS = {"openai"}


@dataclass
class CostModel:
    """Fixed per-stage unit costs (USD) used when a turn is sealed."""
    transcription_per_minute: float = 0.0043      # Deepgram Nova-2
    default_utterance_minutes: float = 0.083       # ~5s of user speech
    classification_input_per_million: float = 0.150
    classification_output_per_million: float = 0.600
    classification_input_tokens: int = 500
    classification_output_tokens: int = 50
    generation_input_per_million: float = 2.50
    generation_output_per_million: float = 10.00
    generation_default_tokens: int = 800
    generation_input_share: float = 0.7
    synthesis_per_minute: float = 0.05             # Cartesia Sonic
    default_response_minutes: float = 0.167        # ~10s of speech
    synthesis_sample_rate: int = 24000             # PCM16 mono


@dataclass
class TimeoutConfig:
    classification_s: float = 3.0
    generation_s: float = 10.0
    synthesis_s: float = 10.0
    transcription_connect_s: float = 5.0


@dataclass
class ProviderConfig:
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    classification_model: str = "gpt-4o-mini"
    generation_model: str = "gpt-4o"
    generation_max_tokens: int = 150
    cartesia_api_key: str = ""
    cartesia_voice_id: str = ""
    cartesia_model: str = "sonic-english"
    cartesia_base_url: str = "https://api.cartesia.ai"


@dataclass
class AudioConfig:
    queue_size: int = 200               # frames held before oldest-frame drop
    sample_rate: int = 16000            # inbound PCM16 mono
    output_sample_rate: int = 24000
    barge_in_threshold: float = 0.6     # VAD confidence needed to interrupt
    vad_energy_threshold: float = 0.02  # normalized RMS for the energy VAD


@dataclass
class StubConfig:
    """Simulated latencies (ms) reported by the stub adapters."""
    transcription_ms: float = 50.0
    classification_ms: float = 50.0
    generation_ms: float = 120.0
    synthesis_ms: float = 80.0
    simulate_delay: bool = True         # actually sleep for the latencies above


@dataclass
class VoiceSettings:
    app_name: str = "VoiceOrchestrator"
    debug: bool = False
    mode: str = STUB_MODE
    llm_provider: str = "openai"
    enable_prosody_tuning: bool = True
    enable_backchanneling: bool = False
    enable_speculative_tts: bool = False
    metrics_publish_interval_s: int = 30
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    stub: StubConfig = field(default_factory=StubConfig)
    costs: CostModel = field(default_factory=CostModel)

    @property
    def is_stub_mode(self) -> bool:
        return self.mode == STUB_MODE

    @property
    def is_live_mode(self) -> bool:
        return self.mode == LIVE_MODE


_settings: Optional[VoiceSettings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _merge_section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a raw dict, ignoring unknown keys."""
    known = {f for f in cls.__dataclass_fields__}
    return cls(**{k: v for k, v in (raw or {}).items() if k in known})


def validate_settings(settings: VoiceSettings) -> VoiceSettings:
    """
    Validate live-mode requirements. An unusable live config is
    downgraded to stub mode rather than failing the process.
    """
    if not settings.is_live_mode:
        logger.info("voice_config_stub_mode")
        return settings

    missing = []
    if settings.llm_provider not in SUPPORTED_LLM_PROVIDERS:
        missing.append(f"LLM_PROVIDER={settings.llm_provider} (unsupported)")
    p = settings.providers
    if not p.deepgram_api_key:
        missing.append("DEEPGRAM_API_KEY")
    if not p.cartesia_api_key:
        missing.append("CARTESIA_API_KEY")
    if not p.cartesia_voice_id:
        missing.append("CARTESIA_DEFAULT_VOICE_ID")
    if settings.llm_provider == "openai" and not p.openai_api_key:
        missing.append("OPENAI_API_KEY")

    if missing:
        logger.warning("voice_config_live_mode_incomplete", missing=missing, fallback=STUB_MODE)
        settings.mode = STUB_MODE
    else:
        logger.info("voice_config_live_mode_validated")
    return settings


def load_settings(config_path: str = None) -> VoiceSettings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "VOICE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = VoiceSettings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.mode = raw.get("mode", settings.mode) or settings.mode
        settings.llm_provider = raw.get("llm_provider", settings.llm_provider) or settings.llm_provider
        settings.metrics_publish_interval_s = raw.get(
            "metrics_publish_interval_s", settings.metrics_publish_interval_s,
        )

        features = raw.get("features", {})
        settings.enable_prosody_tuning = features.get("prosody_tuning", settings.enable_prosody_tuning)
        settings.enable_backchanneling = features.get("backchanneling", settings.enable_backchanneling)
        settings.enable_speculative_tts = features.get("speculative_tts", settings.enable_speculative_tts)

        if "timeouts" in raw:
            settings.timeouts = _merge_section(TimeoutConfig, raw["timeouts"])
        if "providers" in raw:
            settings.providers = _merge_section(ProviderConfig, raw["providers"])
        if "audio" in raw:
            settings.audio = _merge_section(AudioConfig, raw["audio"])
        if "stub" in raw:
            settings.stub = _merge_section(StubConfig, raw["stub"])
        if "costs" in raw:
            settings.costs = _merge_section(CostModel, raw["costs"])

    # Environment always wins over the file
    settings.mode = os.environ.get("VOICE_STACK_MODE", settings.mode)
    settings.llm_provider = os.environ.get("LLM_PROVIDER", settings.llm_provider)
    settings.enable_prosody_tuning = _env_flag("ENABLE_PROSODY_TUNING", settings.enable_prosody_tuning)
    settings.enable_backchanneling = _env_flag("ENABLE_BACKCHANNELING", settings.enable_backchanneling)
    settings.enable_speculative_tts = _env_flag("ENABLE_SPECULATIVE_TTS", settings.enable_speculative_tts)

    p = settings.providers
    p.deepgram_api_key = os.environ.get("DEEPGRAM_API_KEY", p.deepgram_api_key)
    p.openai_api_key = os.environ.get("OPENAI_API_KEY", p.openai_api_key)
    p.cartesia_api_key = os.environ.get("CARTESIA_API_KEY", p.cartesia_api_key)
    p.cartesia_voice_id = os.environ.get("CARTESIA_DEFAULT_VOICE_ID", p.cartesia_voice_id)

    _settings = validate_settings(settings)
    return _settings


def get_settings() -> VoiceSettings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
