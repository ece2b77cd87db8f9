"""
Process configuration.

Two layers:
- `PipelineSettings`: runtime knobs read from the environment (a local `.env`
  is loaded by the CLI via python-dotenv before this runs).
- `PolicyConfig`: declarative policy data (banned phrases, approved claims,
  cost ceiling, branding) loaded from a JSON file at start-up, so none of it
  lives in pipeline control flow.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .errors import ValidationError


DEFAULT_POLICY_PATH = Path(__file__).resolve().parent / "policy.json"


@dataclass(frozen=True)
class PipelineSettings:
    max_concurrency: int = 3
    analyzer_concurrency: int = 2
    max_retries: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    policy_path: Path = DEFAULT_POLICY_PATH
    log_level: str = "INFO"
    openai_api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    request_timeout: float = 60.0
    analysis_cache_ttl_hours: float = 24.0
    analysis_cache_size: int = 256


def load_settings(env: Optional[Mapping[str, str]] = None) -> PipelineSettings:
    env = os.environ if env is None else env

    settings = PipelineSettings(
        max_concurrency=_int(env, "ADFLOW_MAX_CONCURRENCY", 3),
        analyzer_concurrency=_int(env, "ADFLOW_ANALYZER_CONCURRENCY", 2),
        max_retries=_int(env, "ADFLOW_MAX_RETRIES", 3),
        backoff_seconds=_float(env, "ADFLOW_BACKOFF_SECONDS", 1.0),
        max_backoff_seconds=_float(env, "ADFLOW_MAX_BACKOFF_SECONDS", 30.0),
        policy_path=Path(env.get("ADFLOW_POLICY_PATH") or DEFAULT_POLICY_PATH),
        log_level=(env.get("ADFLOW_LOG_LEVEL") or "INFO").upper(),
        openai_api_key=env.get("OPENAI_API_KEY") or None,
        model=env.get("ADFLOW_MODEL") or "gpt-4o-mini",
        request_timeout=_float(env, "ADFLOW_REQUEST_TIMEOUT", 60.0),
        analysis_cache_ttl_hours=_float(env, "ADFLOW_ANALYSIS_CACHE_TTL_HOURS", 24.0),
        analysis_cache_size=_int(env, "ADFLOW_ANALYSIS_CACHE_SIZE", 256),
    )

    if settings.max_concurrency < 1:
        raise ValidationError("ADFLOW_MAX_CONCURRENCY must be >= 1")
    if settings.analyzer_concurrency < 1:
        raise ValidationError("ADFLOW_ANALYZER_CONCURRENCY must be >= 1")
    if settings.max_retries < 0:
        raise ValidationError("ADFLOW_MAX_RETRIES must be >= 0")
    if settings.analysis_cache_ttl_hours < 0:
        raise ValidationError("ADFLOW_ANALYSIS_CACHE_TTL_HOURS must be >= 0")
    if settings.analysis_cache_size < 0:
        raise ValidationError("ADFLOW_ANALYSIS_CACHE_SIZE must be >= 0")
    return settings


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{key} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"{key} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class AnalysisPricing:
    input_per_million: float = 0.30
    output_per_million: float = 2.50
    tokens_per_second: int = 258
    tokens_per_megapixel: int = 1100
    output_tokens: int = 1000


@dataclass(frozen=True)
class PolicyConfig:
    brand_name: str = "the brand"
    banned_phrases: List[str] = field(default_factory=list)
    approved_claims: List[str] = field(default_factory=list)
    # Preferred wording: key is the phrase to avoid, value the replacement.
    terminology: Dict[str, str] = field(default_factory=dict)
    max_analysis_cost_usd: float = 0.05
    default_description: str = "Learn more"
    default_landing_url: str = "example.com"
    utm_params: str = "utm_source=meta&utm_medium=cpc"
    headline_color: str = "#F97316"
    body_color: str = "#FFFFFF"
    call_to_action: str = "Learn more"
    font_path: Optional[str] = None
    analysis_pricing: AnalysisPricing = field(default_factory=AnalysisPricing)


def load_policy(path: Optional[Path] = None) -> PolicyConfig:
    """
    Load policy data from JSON. Unknown keys are rejected so a typo in the
    policy file fails loudly at start-up instead of silently dropping a rule.
    """
    path = path or DEFAULT_POLICY_PATH
    with Path(path).open("r", encoding="utf-8") as f:
        data = json.load(f)

    if not isinstance(data, dict):
        raise ValidationError(f"{path}: policy must be a JSON object")

    known = set(PolicyConfig.__dataclass_fields__)
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValidationError(f"{path}: unknown policy keys: {', '.join(unknown)}")

    pricing = data.pop("analysis_pricing", None) or {}
    if not isinstance(pricing, dict):
        raise ValidationError(f"{path}: 'analysis_pricing' must be an object")

    try:
        return PolicyConfig(analysis_pricing=AnalysisPricing(**pricing), **data)
    except TypeError as exc:
        raise ValidationError(f"{path}: {exc}") from exc
