"""
Configuration management and loading.

Builds an immutable PolicySnapshot from a YAML (or JSON) policy file. The
snapshot is handed to the decision engine explicitly, so a reload never
races a decision in flight.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from model_gate.core.block_policy import BlockEntry, BlockPolicy, as_utc
from model_gate.core.errors import ConfigurationError
from model_gate.core.guardrails import AgentQuota, Thresholds
from model_gate.core.pricing import DEFAULT_PRICING, PriceEntry, PricingTable

logger = logging.getLogger(__name__)

UNPRICED_REJECT = "reject"
UNPRICED_DEFAULT_PRICE = "default_price"


@dataclass(frozen=True)
class AgentConfig:
    """An agent known to the policy file."""
    id: str
    model: Optional[str] = None
    quota: AgentQuota = AgentQuota()


@dataclass(frozen=True)
class PolicySnapshot:
    """Complete, versioned policy consumed by the decision engine.

    Every field has a documented default: no thresholds (all axes disabled),
    unlimited quotas, DEFAULT_PRICING, nothing blocked and unpriced models
    rejected.
    """
    version: str = "default"
    currency: str = "USD"
    pricing: PricingTable = DEFAULT_PRICING
    unpriced_models: str = UNPRICED_REJECT
    default_price: Optional[PriceEntry] = None
    thresholds: Thresholds = Thresholds()
    default_quota: AgentQuota = AgentQuota()
    agents: Mapping[str, AgentConfig] = field(default_factory=dict)
    block_policy: BlockPolicy = field(default_factory=BlockPolicy)

    def quota_for(self, agent_id: str) -> AgentQuota:
        """Quota for an agent, using the default quota if not specified."""
        agent = self.agents.get(agent_id)
        if agent is None:
            return self.default_quota
        return agent.quota

    @property
    def fallback_price(self) -> Optional[PriceEntry]:
        if self.unpriced_models == UNPRICED_DEFAULT_PRICE:
            return self.default_price
        return None


def load_policy(path: Union[str, Path]) -> PolicySnapshot:
    """Load and validate a policy file.

    Files ending in ``.json`` are parsed as JSON, anything else as YAML.

    Raises:
        ConfigurationError: If the file is missing, unparseable or invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Policy file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            if config_path.suffix.lower() == ".json":
                raw_config = json.load(f)
            else:
                raw_config = yaml.safe_load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Invalid policy file {path}: {e}") from e

    snapshot = parse_policy(raw_config)
    logger.info("Loaded policy %s (version %s)", config_path, snapshot.version)
    return snapshot


_TOP_KEYS = {
    'version', 'currency', 'pricing', 'unpriced_models', 'default_price',
    'thresholds', 'default_quota', 'agents', 'model_policy', 'default_model'
}
_THRESHOLD_KEYS = {'monthly_hard', 'monthly_soft', 'per_run_soft', 'per_run_hard', 'per_run_approval'}
_PRICE_KEYS = {'input_per_1k', 'output_per_1k'}
_QUOTA_KEYS = {'monthly_cost', 'monthly_tokens'}
_AGENT_KEYS = {'id', 'model', 'role'} | _QUOTA_KEYS
_MODEL_POLICY_KEYS = {'default_model', 'fallback_order', 'blocked_models'}
_BLOCK_KEYS = {'blocked_until', 'reason'}


def parse_policy(raw_config: Any) -> PolicySnapshot:
    """Validate a parsed policy document and build a snapshot.

    Strict validation: unknown keys, non-positive limits and malformed
    timestamps are errors, never silently ignored.
    """
    if not raw_config:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration must be a mapping")

    _reject_unknown(raw_config, _TOP_KEYS, "configuration")

    version = str(raw_config.get('version', 'default'))
    currency = raw_config.get('currency', 'USD')
    if not isinstance(currency, str) or not currency:
        raise ConfigurationError("'currency' must be a non-empty string")

    pricing = DEFAULT_PRICING
    if 'pricing' in raw_config:
        pricing_data = _require_mapping(raw_config['pricing'], 'pricing')
        pricing = PricingTable({
            str(model): _parse_price(entry, f"pricing.{model}")
            for model, entry in pricing_data.items()
        })

    unpriced = raw_config.get('unpriced_models', UNPRICED_REJECT)
    if unpriced not in (UNPRICED_REJECT, UNPRICED_DEFAULT_PRICE):
        raise ConfigurationError(
            f"'unpriced_models' must be one of: {[UNPRICED_REJECT, UNPRICED_DEFAULT_PRICE]}"
        )
    default_price = None
    if 'default_price' in raw_config:
        default_price = _parse_price(raw_config['default_price'], 'default_price')
    if unpriced == UNPRICED_DEFAULT_PRICE and default_price is None:
        raise ConfigurationError("'default_price' is required when unpriced_models is 'default_price'")

    thresholds = _parse_thresholds(raw_config.get('thresholds') or {})
    default_quota = _parse_quota(raw_config.get('default_quota') or {}, 'default_quota')
    agents = _parse_agents(raw_config.get('agents') or [])
    block_policy = _parse_model_policy(
        raw_config.get('model_policy') or {},
        raw_config.get('default_model')
    )

    return PolicySnapshot(
        version=version,
        currency=currency,
        pricing=pricing,
        unpriced_models=unpriced,
        default_price=default_price,
        thresholds=thresholds,
        default_quota=default_quota,
        agents=agents,
        block_policy=block_policy
    )


def parse_timestamp(value: Any, path: str) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) to aware UTC.

    A bare date, which YAML loads as ``datetime.date``, means midnight UTC.
    """
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str):
        raise ConfigurationError(f"'{path}' must be an ISO-8601 timestamp")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        raise ConfigurationError(f"'{path}' is not a valid ISO-8601 timestamp: {value!r}") from None


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in {path}: {sorted(unknown_keys)}")


def _require_mapping(data: Any, path: str) -> Dict:
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{path}' must be a dictionary")
    return data


def _decimal(value: Any, path: str, allow_zero: bool = False) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigurationError(f"'{path}' must be a number")
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise ConfigurationError(f"'{path}' must be a number") from None
    if not number.is_finite() or number < 0 or (number == 0 and not allow_zero):
        raise ConfigurationError(f"'{path}' must be {'>= 0' if allow_zero else '> 0'}")
    return number


def _parse_price(data: Any, path: str) -> PriceEntry:
    data = _require_mapping(data, path)
    _reject_unknown(data, _PRICE_KEYS, path)
    for key in _PRICE_KEYS:
        if key not in data:
            raise ConfigurationError(f"Missing required '{key}' in {path}")
    return PriceEntry(
        input_per_1k=_decimal(data['input_per_1k'], f"{path}.input_per_1k", allow_zero=True),
        output_per_1k=_decimal(data['output_per_1k'], f"{path}.output_per_1k", allow_zero=True)
    )


def _parse_thresholds(data: Any) -> Thresholds:
    data = _require_mapping(data, 'thresholds')
    _reject_unknown(data, _THRESHOLD_KEYS, 'thresholds')
    values = {
        key: _decimal(data[key], f"thresholds.{key}")
        for key in _THRESHOLD_KEYS
        if data.get(key) is not None
    }
    thresholds = Thresholds(**values)

    if (thresholds.monthly_soft is not None and thresholds.monthly_hard is not None
            and thresholds.monthly_soft > thresholds.monthly_hard):
        raise ConfigurationError("'thresholds.monthly_soft' must not exceed 'thresholds.monthly_hard'")
    if (thresholds.per_run_soft is not None and thresholds.per_run_hard is not None
            and thresholds.per_run_soft >= thresholds.per_run_hard):
        raise ConfigurationError("'thresholds.per_run_soft' must be below 'thresholds.per_run_hard'")
    return thresholds


def _parse_quota(data: Any, path: str) -> AgentQuota:
    data = _require_mapping(data, path)
    _reject_unknown(data, _QUOTA_KEYS, path)
    monthly_cost = None
    if data.get('monthly_cost') is not None:
        monthly_cost = _decimal(data['monthly_cost'], f"{path}.monthly_cost")
    monthly_tokens = None
    if data.get('monthly_tokens') is not None:
        tokens = data['monthly_tokens']
        if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens <= 0:
            raise ConfigurationError(f"'{path}.monthly_tokens' must be a positive integer")
        monthly_tokens = tokens
    return AgentQuota(monthly_cost=monthly_cost, monthly_tokens=monthly_tokens)


def _parse_agents(data: Any) -> Dict[str, AgentConfig]:
    if not isinstance(data, list):
        raise ConfigurationError("'agents' must be a list")

    agents: Dict[str, AgentConfig] = {}
    for index, entry in enumerate(data):
        path = f"agents[{index}]"
        entry = _require_mapping(entry, path)
        _reject_unknown(entry, _AGENT_KEYS, path)
        agent_id = entry.get('id')
        if not isinstance(agent_id, str) or not agent_id.strip():
            raise ConfigurationError(f"Missing required 'id' in {path}")
        if agent_id in agents:
            raise ConfigurationError(f"Duplicate agent id: {agent_id}")
        quota = _parse_quota(
            {k: v for k, v in entry.items() if k in _QUOTA_KEYS},
            path
        )
        agents[agent_id] = AgentConfig(id=agent_id, model=entry.get('model'), quota=quota)
    return agents


def _parse_model_policy(data: Any, top_default_model: Optional[str]) -> BlockPolicy:
    data = _require_mapping(data, 'model_policy')
    _reject_unknown(data, _MODEL_POLICY_KEYS, 'model_policy')

    fallback_order = data.get('fallback_order') or []
    if not isinstance(fallback_order, list) or not all(isinstance(m, str) for m in fallback_order):
        raise ConfigurationError("'model_policy.fallback_order' must be a list of model names")

    default_model = data.get('default_model', top_default_model)
    if default_model is not None and not isinstance(default_model, str):
        raise ConfigurationError("'model_policy.default_model' must be a string")

    blocked = _require_mapping(data.get('blocked_models') or {}, 'model_policy.blocked_models')
    entries = []
    for model, block in blocked.items():
        path = f"model_policy.blocked_models.{model}"
        # A bare timestamp is shorthand for {blocked_until: ...}
        if not isinstance(block, dict):
            block = {'blocked_until': block}
        _reject_unknown(block, _BLOCK_KEYS, path)
        if 'blocked_until' not in block:
            raise ConfigurationError(f"Missing required 'blocked_until' in {path}")
        entries.append(BlockEntry(
            model=str(model),
            blocked_until=parse_timestamp(block['blocked_until'], f"{path}.blocked_until"),
            reason=str(block.get('reason') or "")
        ))

    return BlockPolicy(entries=entries, fallback_order=fallback_order, default_model=default_model)

