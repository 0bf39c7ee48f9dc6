"""Reusable canary configurations.

Templates have their own lifecycle; a deployment created from a template
gets a copy of its traffic and threshold settings and no further link.
"""
import copy
import itertools
from dataclasses import fields, replace
from typing import Any, Dict, List, Optional

from loguru import logger

from src.rollout.core.errors import NotFoundError, ValidationError
from src.rollout.deployment.models import (
    CanaryTemplate,
    DeploymentConfig,
    HealthThresholds,
    RollbackFlags,
    TrafficSplitType,
    utcnow,
)
from src.rollout.deployment.repository import validate_thresholds, validate_traffic

_READ_ONLY = {"id", "created_at", "updated_at"}
_THRESHOLD_FIELDS = {f.name for f in fields(HealthThresholds)}


def validate_template(template: CanaryTemplate) -> None:
    if not (template.name or "").strip():
        raise ValidationError("name", "must not be empty")
    try:
        TrafficSplitType(template.traffic_split_type)
    except ValueError:
        raise ValidationError(
            "traffic_split_type",
            f"must be one of {[t.value for t in TrafficSplitType]}",
        ) from None
    validate_traffic(
        template.initial_canary_percent,
        template.target_canary_percent,
        template.increment_percent,
        template.increment_interval_minutes,
    )
    validate_thresholds(template.thresholds)


class TemplateStore:
    """In-memory CRUD over :class:`CanaryTemplate`.

    At most one template is the default; marking one as default clears the
    flag on all others.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self._templates: Dict[int, CanaryTemplate] = {}

    async def create(self, template: CanaryTemplate) -> CanaryTemplate:
        validate_template(template)
        now = utcnow()
        template = replace(
            template,
            id=next(self._ids),
            traffic_split_type=TrafficSplitType(template.traffic_split_type),
            created_at=now,
            updated_at=now,
        )
        if template.is_default:
            self._clear_default()
        self._templates[template.id] = copy.deepcopy(template)
        logger.info(f"Created canary template {template.id} ({template.name})")
        return template

    async def list(self) -> List[CanaryTemplate]:
        """Default template first, then by name."""
        templates = sorted(self._templates.values(), key=lambda t: (not t.is_default, t.name, t.id))
        return [copy.deepcopy(t) for t in templates]

    async def get(self, template_id: int) -> CanaryTemplate:
        try:
            return copy.deepcopy(self._templates[template_id])
        except KeyError:
            raise NotFoundError("Template", template_id) from None

    async def get_default(self) -> Optional[CanaryTemplate]:
        for template in self._templates.values():
            if template.is_default:
                return copy.deepcopy(template)
        return None

    async def update(self, template_id: int, changes: Dict[str, Any]) -> CanaryTemplate:
        """Apply a partial update.

        Args:
            template_id: Template to change
            changes: Template fields to overwrite; ``thresholds`` may be a
                partial dict of threshold fields

        Raises:
            NotFoundError: unknown template
            ValidationError: unknown field or inconsistent result
        """
        current = await self.get(template_id)
        changes = dict(changes)

        unknown = set(changes) - {f.name for f in fields(CanaryTemplate)}
        if unknown:
            raise ValidationError(sorted(unknown)[0], "unknown template field")
        readonly = set(changes) & _READ_ONLY
        if readonly:
            raise ValidationError(sorted(readonly)[0], "is read-only")

        thresholds = changes.pop("thresholds", None)
        if isinstance(thresholds, dict):
            bad = set(thresholds) - _THRESHOLD_FIELDS
            if bad:
                raise ValidationError(sorted(bad)[0], "unknown threshold field")
            changes["thresholds"] = replace(current.thresholds, **thresholds)
        elif thresholds is not None:
            changes["thresholds"] = thresholds

        updated = replace(current, **changes, updated_at=utcnow())
        validate_template(updated)
        updated.traffic_split_type = TrafficSplitType(updated.traffic_split_type)
        if updated.is_default and not current.is_default:
            self._clear_default()
        self._templates[template_id] = copy.deepcopy(updated)
        return updated

    async def delete(self, template_id: int) -> None:
        if self._templates.pop(template_id, None) is None:
            raise NotFoundError("Template", template_id)
        logger.info(f"Deleted canary template {template_id}")

    async def create_from_template(self, template_id: int, overrides: Dict[str, Any]) -> DeploymentConfig:
        """Build a deployment create-input from a template.

        ``overrides`` must carry the deployment identity (name,
        target_deployment, canary_image) and may override any other
        :class:`DeploymentConfig` field. The result is validated when the
        deployment is created.
        """
        template = await self.get(template_id)
        values: Dict[str, Any] = {
            "traffic_split_type": template.traffic_split_type,
            "initial_canary_percent": template.initial_canary_percent,
            "target_canary_percent": template.target_canary_percent,
            "increment_percent": template.increment_percent,
            "increment_interval_minutes": template.increment_interval_minutes,
            "thresholds": copy.deepcopy(template.thresholds),
            "rollback": RollbackFlags(auto_rollback_enabled=template.auto_rollback_enabled),
            "require_manual_approval": template.require_manual_approval,
        }

        config_fields = {f.name for f in fields(DeploymentConfig)}
        unknown = set(overrides) - config_fields
        if unknown:
            raise ValidationError(sorted(unknown)[0], "unknown deployment field")
        values.update({key: value for key, value in overrides.items() if value is not None})

        for required in ("name", "target_deployment", "canary_image"):
            if required not in values:
                raise ValidationError(required, "must not be empty")

        logger.debug(f"Deployment config for {values['name']} built from template {template.name}")
        return DeploymentConfig(**values)

    def _clear_default(self) -> None:
        for template in self._templates.values():
            if template.is_default:
                template.is_default = False
                template.updated_at = utcnow()
