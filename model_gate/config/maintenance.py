"""
Offline policy maintenance.

Rewrites a stored policy file so that agents (and the default model) pinned
to a currently blocked model use a fallback instead, and optionally prunes
block entries that have expired. Running it twice changes nothing the second
time. The decision engine never depends on this having run.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from model_gate.core.block_policy import BlockPolicy, as_utc
from model_gate.core.errors import ConfigurationError

from .loader import parse_policy

logger = logging.getLogger(__name__)

# Used when the policy names no usable fallback at all
DEFAULT_REPLACEMENT = "gpt-codex"


@dataclass(frozen=True)
class ModelOverride:
    """One model reference rewritten away from a blocked model."""
    target: str
    from_model: str
    to_model: str
    blocked_until: datetime


@dataclass
class MaintenanceReport:
    overrides: List[ModelOverride] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)
    backup_path: Optional[Path] = None

    @property
    def changed(self) -> bool:
        return bool(self.overrides or self.pruned)


def override_blocked_models(
    document: Dict[str, Any],
    now: datetime,
    prune: bool = False
) -> Tuple[Dict[str, Any], MaintenanceReport]:
    """Return a rewritten copy of a policy document and what changed.

    Raises:
        ConfigurationError: If the document is not a valid policy
    """
    policy = parse_policy(document).block_policy
    updated = copy.deepcopy(document)
    report = MaintenanceReport()

    for index, agent in enumerate(updated.get('agents') or []):
        target = f"agent {agent.get('id') or agent.get('role') or index}"
        override = _override(policy, agent.get('model'), target, now)
        if override:
            agent['model'] = override.to_model
            report.overrides.append(override)

    model_policy = updated.get('model_policy') or {}
    for holder, target in ((model_policy, "model_policy.default_model"), (updated, "default_model")):
        override = _override(policy, holder.get('default_model'), target, now)
        if override:
            holder['default_model'] = override.to_model
            report.overrides.append(override)

    if prune:
        blocked = model_policy.get('blocked_models') or {}
        active = {entry.model for entry in policy.entries if entry.is_active(now)}
        for model in [m for m in blocked if str(m) not in active]:
            del blocked[model]
            report.pruned.append(str(model))

    for override in report.overrides:
        logger.info(
            "Overriding %s model %s -> %s (blocked until %s)",
            override.target, override.from_model, override.to_model,
            override.blocked_until.isoformat()
        )
    for model in report.pruned:
        logger.info("Pruned expired block entry for %s", model)
    return updated, report


def _override(policy: BlockPolicy, model: Any, target: str, now: datetime) -> Optional[ModelOverride]:
    if not isinstance(model, str):
        return None
    status = policy.status(model, now)
    if not status.blocked:
        return None
    replacement = policy.fallback_for(model, now) or DEFAULT_REPLACEMENT
    if replacement == model:
        return None
    return ModelOverride(
        target=target,
        from_model=model,
        to_model=replacement,
        blocked_until=status.blocked_until
    )


def rewrite_policy_file(
    path: Union[str, Path],
    now: datetime,
    prune: bool = False
) -> MaintenanceReport:
    """Apply ``override_blocked_models`` to a file in place.

    A backup ``<file>.bak.<timestamp>`` is written before any change. Nothing
    is written when no change is needed.

    Raises:
        ConfigurationError: If the file is missing or not a valid policy
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Policy file not found: {path}")

    is_json = config_path.suffix.lower() == ".json"
    raw = config_path.read_text(encoding='utf-8')
    try:
        document = json.loads(raw) if is_json else yaml.safe_load(raw)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Invalid policy file {path}: {e}") from e

    updated, report = override_blocked_models(document, now, prune=prune)
    if not report.changed:
        logger.info("No changes required for %s", config_path)
        return report

    stamp = int(as_utc(now).timestamp() * 1000)
    backup_path = config_path.with_name(f"{config_path.name}.bak.{stamp}")
    backup_path.write_text(raw, encoding='utf-8')
    report.backup_path = backup_path

    if is_json:
        content = json.dumps(updated, indent=2, default=str) + "\n"
    else:
        content = yaml.safe_dump(updated, sort_keys=False, default_flow_style=False)
    config_path.write_text(content, encoding='utf-8')
    logger.info("Policy updated at %s (backup %s)", config_path, backup_path)
    return report
