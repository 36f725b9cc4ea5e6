"""
Configuration management and loading.

Defines the session configuration and the tier table, and loads both from a
strict YAML file.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..core.errors import ConfigConflictError
from ..core.families import ModelFamily, normalize_family
from ..core.pricing import ModelPricing, PricingTable


class ReasoningEffort(Enum):
    """Reasoning depth requested from the model."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    XHIGH = "xhigh"


class TierLevel(IntEnum):
    """Position in the tier table, most capable first."""
    PRIMARY = 0
    STANDARD = 1
    ECONOMY = 2


def check_exclusive_params(
    reasoning_effort: Optional[ReasoningEffort],
    temperature: Optional[float]
) -> None:
    """Reject a reasoning effort combined with a temperature.

    Effort NONE disables reasoning, so it may be combined with a temperature.

    Raises:
        ConfigConflictError: If both controls are set
    """
    if reasoning_effort not in (None, ReasoningEffort.NONE) and temperature is not None:
        raise ConfigConflictError(
            f"reasoning_effort={reasoning_effort.value} and temperature={temperature} "
            "are mutually exclusive"
        )


@dataclass(frozen=True)
class SessionConfig:
    """Settings for one resolution session.

    budget is a soft ceiling on model calls; None means unlimited and 0
    forces every query to be answered directly. resolution_timeout_s is the
    deadline for a whole resolution, sub-queries included.
    """
    max_depth: int = 2
    budget: Optional[int] = None
    default_tier: TierLevel = TierLevel.PRIMARY
    reasoning_effort: Optional[ReasoningEffort] = None
    temperature: Optional[float] = None
    model: str = "gpt-5.2"
    rlm_enabled: bool = True
    max_concurrent: int = 3
    complexity_threshold: int = 1
    max_sub_queries: int = 5
    call_timeout_s: float = 30.0
    resolution_timeout_s: Optional[float] = 120.0

    def __post_init__(self):
        """Validate ranges and reject conflicting parameters."""
        if self.max_depth < 0:
            raise ValueError("max_depth cannot be negative")
        if self.budget is not None and self.budget < 0:
            raise ValueError("budget cannot be negative")
        if not self.model or not self.model.strip():
            raise ValueError("model is required and cannot be empty")
        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise ValueError("temperature must be between 0 and 2")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.complexity_threshold < 0:
            raise ValueError("complexity_threshold cannot be negative")
        if self.max_sub_queries < 2:
            raise ValueError("max_sub_queries must be >= 2")
        if self.call_timeout_s <= 0:
            raise ValueError("call_timeout_s must be > 0")
        if self.resolution_timeout_s is not None and self.resolution_timeout_s <= 0:
            raise ValueError("resolution_timeout_s must be > 0")
        check_exclusive_params(self.reasoning_effort, self.temperature)

    def with_overrides(self, **changes: Any) -> "SessionConfig":
        """Copy with fields replaced; None values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def with_sampling(
        self,
        reasoning_effort: Optional[ReasoningEffort] = None,
        temperature: Optional[float] = None
    ) -> "SessionConfig":
        """Copy with one sampling control selected and the other cleared.

        Passing neither keeps the current controls; passing both is validated
        as usual and raises ConfigConflictError unless effort is NONE.
        """
        if reasoning_effort is None and temperature is None:
            return self
        if temperature is None:
            return replace(self, reasoning_effort=reasoning_effort, temperature=None)
        if reasoning_effort is None:
            return replace(self, reasoning_effort=None, temperature=temperature)
        return replace(self, reasoning_effort=reasoning_effort, temperature=temperature)

    def model_params(self) -> Dict[str, Any]:
        """Per-call parameters for the reasoning collaborator."""
        params: Dict[str, Any] = {}
        if self.reasoning_effort is not None:
            params["reasoning_effort"] = self.reasoning_effort.value
        if self.temperature is not None:
            params["temperature"] = self.temperature
        return params


@dataclass(frozen=True)
class TierConfig:
    """One tier: a model family with its rates and context window.

    supports_params is False for families that reject reasoning_effort and
    temperature; those controls are dropped when this tier is called.
    """
    family: str
    input_per_1m: Decimal
    output_per_1m: Decimal
    context_window: Optional[int] = None
    supports_params: bool = True

    def __post_init__(self):
        """Validate family and rates."""
        if not self.family or not self.family.strip():
            raise ValueError("tier family is required and cannot be empty")
        if self.input_per_1m < 0 or self.output_per_1m < 0:
            raise ValueError(f"rates for tier {self.family} cannot be negative")
        if self.context_window is not None and self.context_window <= 0:
            raise ValueError(f"context_window for tier {self.family} must be > 0")

    @property
    def canonical_family(self) -> str:
        return normalize_family(self.family)


@dataclass(frozen=True)
class RouterSettings:
    """Retry and backoff settings for the model router."""
    max_retries: int = 2
    backoff_base_s: float = 0.5
    backoff_max_s: float = 8.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.backoff_base_s < 0 or self.backoff_max_s < 0:
            raise ValueError("backoff values cannot be negative")


@dataclass(frozen=True)
class CacheSettings:
    """Retrieval cache sizing."""
    capacity: int = 50
    ttl_seconds: Optional[float] = 300.0

    def __post_init__(self):
        if self.capacity <= 0:
            raise ValueError("cache capacity must be > 0")
        if self.ttl_seconds is not None and self.ttl_seconds <= 0:
            raise ValueError("cache ttl_seconds must be > 0")


DEFAULT_TIERS: Tuple[TierConfig, ...] = (
    TierConfig(ModelFamily.GPT_5_2.value, Decimal("1.75"), Decimal("14.00"), 400_000),
    TierConfig(ModelFamily.GPT_5_MINI.value, Decimal("0.25"), Decimal("2.00"), 400_000,
               supports_params=False),
    TierConfig(ModelFamily.GPT_5_NANO.value, Decimal("0.05"), Decimal("0.40"), 400_000,
               supports_params=False),
)


@dataclass(frozen=True)
class RlmConfig:
    """Complete configuration."""
    session: SessionConfig = field(default_factory=SessionConfig)
    tiers: Tuple[TierConfig, ...] = DEFAULT_TIERS
    router: RouterSettings = field(default_factory=RouterSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)

    def __post_init__(self):
        """Validate the tier table."""
        if not self.tiers:
            raise ValueError("at least one tier is required")
        families = [tier.canonical_family for tier in self.tiers]
        if len(set(families)) != len(families):
            raise ValueError(f"duplicate tier families: {families}")

    def pricing_table(self) -> PricingTable:
        """Pricing for every configured tier family."""
        return PricingTable({
            tier.canonical_family: ModelPricing(
                input_cost_per_1m=tier.input_per_1m,
                output_cost_per_1m=tier.output_per_1m
            )
            for tier in self.tiers
        })

    def context_windows(self) -> Dict[str, int]:
        """Context capacity per family, for families that declare one."""
        return {
            tier.canonical_family: tier.context_window
            for tier in self.tiers
            if tier.context_window is not None
        }


DEFAULT_CONFIG = RlmConfig()


def load_config(path: str) -> RlmConfig:
    """Load and validate configuration from a YAML file.

    Every section is optional; missing values take their defaults. Unknown
    keys are rejected so typos never pass silently.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated RlmConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
        ConfigConflictError: If reasoning effort and temperature are both set
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _reject_unknown(raw_config, {'session', 'tiers', 'router', 'cache'}, "configuration")

    session = _parse_session(_section(raw_config, 'session'))
    tiers = _parse_tiers(raw_config.get('tiers'))
    router = _parse_router(_section(raw_config, 'router'))
    cache = _parse_cache(_section(raw_config, 'cache'))

    return RlmConfig(session=session, tiers=tiers, router=router, cache=cache)


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _parse_enum(enum_cls, value: Any, path: str):
    if not isinstance(value, str):
        raise ValueError(f"'{path}' must be a string")
    try:
        if issubclass(enum_cls, IntEnum):
            return enum_cls[value.upper()]
        return enum_cls(value.lower())
    except (KeyError, ValueError):
        if issubclass(enum_cls, IntEnum):
            valid = [member.name.lower() for member in enum_cls]
        else:
            valid = [member.value for member in enum_cls]
        raise ValueError(f"'{path}' must be one of: {valid}")


def _parse_session(data: Dict) -> SessionConfig:
    """Parse the session section.

    Args:
        data: Session configuration data

    Returns:
        Validated SessionConfig

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {
        'max_depth', 'budget', 'default_tier', 'reasoning_effort', 'temperature',
        'model', 'rlm_enabled', 'max_concurrent', 'complexity_threshold',
        'max_sub_queries', 'call_timeout_s', 'resolution_timeout_s'
    }
    _reject_unknown(data, allowed_keys, "session")

    values: Dict[str, Any] = {}
    for key in ('max_depth', 'budget', 'max_concurrent', 'complexity_threshold',
                'max_sub_queries'):
        if data.get(key) is not None:
            if not isinstance(data[key], int) or isinstance(data[key], bool):
                raise ValueError(f"'session.{key}' must be an integer")
            values[key] = data[key]

    for key in ('temperature', 'call_timeout_s', 'resolution_timeout_s'):
        if data.get(key) is not None:
            if not isinstance(data[key], (int, float)) or isinstance(data[key], bool):
                raise ValueError(f"'session.{key}' must be a number")
            values[key] = float(data[key])

    if data.get('model') is not None:
        values['model'] = str(data['model'])
    if data.get('rlm_enabled') is not None:
        if not isinstance(data['rlm_enabled'], bool):
            raise ValueError("'session.rlm_enabled' must be a boolean")
        values['rlm_enabled'] = data['rlm_enabled']
    if data.get('default_tier') is not None:
        values['default_tier'] = _parse_enum(TierLevel, data['default_tier'],
                                             "session.default_tier")
    if data.get('reasoning_effort') is not None:
        values['reasoning_effort'] = _parse_enum(ReasoningEffort, data['reasoning_effort'],
                                                 "session.reasoning_effort")

    return SessionConfig(**values)


def _parse_tiers(data: Any) -> Tuple[TierConfig, ...]:
    if data is None:
        return DEFAULT_TIERS
    if not isinstance(data, list) or not data:
        raise ValueError("'tiers' must be a non-empty list")

    tiers: List[TierConfig] = []
    for index, item in enumerate(data):
        path = f"tiers[{index}]"
        if not isinstance(item, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        _reject_unknown(item, {'family', 'input_per_1m', 'output_per_1m', 'context_window',
                               'supports_params'}, path)
        for key in ('family', 'input_per_1m', 'output_per_1m'):
            if key not in item:
                raise ValueError(f"Missing required '{key}' in {path}")

        for key in ('input_per_1m', 'output_per_1m'):
            if not isinstance(item[key], (int, float)) or item[key] < 0:
                raise ValueError(f"'{key}' in {path} must be >= 0")

        context_window = item.get('context_window')
        if context_window is not None and (not isinstance(context_window, int)
                                           or context_window <= 0):
            raise ValueError(f"'context_window' in {path} must be a positive integer")

        supports_params = item.get('supports_params', True)
        if not isinstance(supports_params, bool):
            raise ValueError(f"'supports_params' in {path} must be a boolean")

        tiers.append(TierConfig(
            family=str(item['family']),
            input_per_1m=Decimal(str(item['input_per_1m'])),
            output_per_1m=Decimal(str(item['output_per_1m'])),
            context_window=context_window,
            supports_params=supports_params
        ))
    return tuple(tiers)


def _parse_router(data: Dict) -> RouterSettings:
    _reject_unknown(data, {'max_retries', 'backoff_base_s', 'backoff_max_s'}, "router")
    values: Dict[str, Any] = {}
    if data.get('max_retries') is not None:
        if not isinstance(data['max_retries'], int):
            raise ValueError("'router.max_retries' must be an integer")
        values['max_retries'] = data['max_retries']
    for key in ('backoff_base_s', 'backoff_max_s'):
        if data.get(key) is not None:
            values[key] = float(data[key])
    return RouterSettings(**values)


def _parse_cache(data: Dict) -> CacheSettings:
    _reject_unknown(data, {'capacity', 'ttl_seconds'}, "cache")
    values: Dict[str, Any] = {}
    if data.get('capacity') is not None:
        if not isinstance(data['capacity'], int):
            raise ValueError("'cache.capacity' must be an integer")
        values['capacity'] = data['capacity']
    if 'ttl_seconds' in data:
        ttl = data['ttl_seconds']
        values['ttl_seconds'] = None if ttl is None else float(ttl)
    return CacheSettings(**values)
