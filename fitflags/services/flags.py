"""
Feature flag evaluation and administration.

Evaluation precedence, strongest first:
1. unknown flag                -> disabled (not_found)
2. any disabled ancestor       -> disabled (parent_disabled)
3. per-user override           -> as stored (override)
4. flag disabled               -> disabled (feature_flag)
5. caller says not in audience -> disabled (feature_flag)
6. bucket(user, flag) < rollout percentage
"""

import logging
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from fitflags import catalog
from fitflags.bucketing import bucket
from fitflags.config import settings
from fitflags.errors import NotFoundError, ValidationError
from fitflags.models import FeatureFlag, UserFeatureOverride
from fitflags.schemas import (
    BulkOperationResult,
    EvaluationResult,
    EvaluationSource,
    FlagUpsert,
    ItemFailure,
)
from fitflags.store import Store

logger = logging.getLogger(__name__)


class FlagEvaluator:
    """Read-only: never writes to the store and never raises to the caller."""

    def __init__(self, store: Store, max_depth: Optional[int] = None):
        self.store = store
        self.max_depth = max_depth if max_depth is not None else settings.max_hierarchy_depth

    def evaluate(
        self, user_id: str, feature_name: str, audience_eligible: bool = True
    ) -> EvaluationResult:
        try:
            return self._evaluate(user_id, feature_name, audience_eligible)
        except SQLAlchemyError:
            logger.error(
                f"Flag evaluation failed for {feature_name}; serving disabled", exc_info=True
            )
            return _result(feature_name, False, EvaluationSource.ERROR)

    def evaluate_many(
        self, user_id: str, feature_names: Iterable[str], audience_eligible: bool = True
    ) -> dict:
        return {
            name: self.evaluate(user_id, name, audience_eligible)
            for name in dict.fromkeys(feature_names)
        }

    def _evaluate(self, user_id, feature_name, audience_eligible):
        flag = self.store.get_flag(feature_name)
        if flag is None:
            return _result(feature_name, False, EvaluationSource.NOT_FOUND)

        if not self._ancestors_enabled(flag):
            return _result(feature_name, False, EvaluationSource.PARENT_DISABLED)

        override = self.store.get_override(user_id, flag)
        if override is not None:
            return _result(
                feature_name, override.enabled, EvaluationSource.OVERRIDE, override.variant
            )

        if not flag.enabled or not audience_eligible:
            return _result(feature_name, False, EvaluationSource.FEATURE_FLAG)

        enabled = bucket(user_id, feature_name) < flag.rollout_percentage
        return _result(feature_name, enabled, EvaluationSource.FEATURE_FLAG)

    def _ancestors_enabled(self, flag: FeatureFlag) -> bool:
        """Logical AND of enabled bits from the flag's parent up to the root."""
        hops = 0
        parent_id = flag.parent_id
        while parent_id is not None:
            hops += 1
            if hops > self.max_depth:
                logger.warning(
                    f"Parent chain of {flag.feature_name} exceeds {self.max_depth} hops; failing closed"
                )
                return False
            parent = self.store.get_flag_by_id(parent_id)
            if parent is None:
                logger.warning(f"Flag {flag.feature_name} points at missing parent id {parent_id}")
                return False
            if not parent.enabled:
                return False
            parent_id = parent.parent_id
        return True


def _result(feature_name, enabled, source, variant=None):
    return EvaluationResult(
        feature_name=feature_name, enabled=enabled, variant=variant, source=source
    )


class FlagAdmin:
    """
    Administrative flag operations.

    Unlike evaluation these raise NotFoundError / ValidationError so admins can
    correct their input. Every successful operation commits.
    """

    def __init__(self, store: Store):
        self.store = store

    def get_flag(self, feature_name: str) -> FeatureFlag:
        flag = self.store.get_flag(feature_name)
        if flag is None:
            raise NotFoundError(f"Feature flag {feature_name} not found")
        return flag

    def list_flags(self, category=None) -> list:
        return self.store.list_flags(category)

    def upsert_flag(self, definition: FlagUpsert) -> FeatureFlag:
        flag = self.store.get_flag(definition.feature_name)
        parent = self._resolve_parent(flag, definition.feature_name, definition.parent_feature)

        if flag is None:
            flag = FeatureFlag(feature_name=definition.feature_name)
            self.store.add(flag)
            logger.info(f"Creating feature flag {definition.feature_name}")
        else:
            logger.info(f"Updating feature flag {definition.feature_name}")

        if definition.enabled and not flag.enabled:
            self._check_dependencies(definition.feature_name)

        flag.enabled = definition.enabled
        flag.rollout_percentage = definition.rollout_percentage
        flag.audience = definition.audience
        flag.category = definition.category
        flag.description = definition.description
        flag.parent = parent

        self.store.commit()
        return flag

    def upsert_from_catalog(self, feature_name: str, enabled: bool = False) -> FeatureFlag:
        """Create or reset a flag from its catalog defaults."""
        definition = catalog.get_definition(feature_name)
        return self.upsert_flag(FlagUpsert(
            feature_name=definition.name,
            enabled=enabled,
            rollout_percentage=definition.default_rollout_percentage,
            audience=definition.default_audience,
            category=definition.category,
            description=definition.description,
            parent_feature=definition.parent,
        ))

    def seed_catalog(self) -> list:
        """Create every catalog feature that has no flag yet, parents first, disabled."""
        created = []
        for definition in catalog.seeding_order():
            if self.store.get_flag(definition.name) is None:
                created.append(self.upsert_from_catalog(definition.name))
        return created

    def set_enabled(self, feature_name: str, enabled: bool) -> FeatureFlag:
        flag = self.get_flag(feature_name)
        self._apply_enabled(flag, enabled)
        self.store.commit()
        logger.info(f"Feature flag {feature_name} {'enabled' if enabled else 'disabled'}")
        return flag

    def set_rollout(self, feature_name: str, rollout_percentage: int) -> FeatureFlag:
        flag = self.get_flag(feature_name)
        _check_percentage(rollout_percentage)
        flag.rollout_percentage = rollout_percentage
        self.store.commit()
        logger.info(f"Feature flag {feature_name} rollout set to {rollout_percentage}%")
        return flag

    def toggle_with_children(self, feature_name: str, enabled: bool) -> BulkOperationResult:
        """
        Apply the same enabled bit to a flag and each of its direct children.

        The target itself must succeed or nothing is written. Each child runs in
        its own savepoint: failures are reported by name while the children
        that succeeded are committed.
        """
        flag = self.get_flag(feature_name)
        self._apply_enabled(flag, enabled)

        result = BulkOperationResult(updated=[feature_name])
        for child in self.store.list_children(flag):
            try:
                with self.store.savepoint():
                    self._apply_enabled(child, enabled)
                    self.store.flush()
            except (ValidationError, SQLAlchemyError) as e:
                logger.warning(f"Toggle of child {child.feature_name} failed: {e}")
                result.failed.append(ItemFailure(feature_name=child.feature_name, error=str(e)))
            else:
                result.updated.append(child.feature_name)

        self.store.commit()
        logger.info(
            f"Toggled {feature_name} and children to {enabled}: "
            f"{len(result.updated)} updated, {len(result.failed)} failed"
        )
        return result

    def bulk_update_rollout(self, feature_names: Iterable[str], rollout_percentage: int) -> BulkOperationResult:
        _check_percentage(rollout_percentage)
        result = BulkOperationResult()
        for name in dict.fromkeys(feature_names):
            flag = self.store.get_flag(name)
            if flag is None:
                result.failed.append(ItemFailure(feature_name=name, error=f"Feature flag {name} not found"))
                continue
            try:
                with self.store.savepoint():
                    flag.rollout_percentage = rollout_percentage
                    self.store.flush()
            except SQLAlchemyError as e:
                result.failed.append(ItemFailure(feature_name=name, error=str(e)))
            else:
                result.updated.append(name)
        self.store.commit()
        return result

    def delete_flag(self, feature_name: str, hard: bool = False) -> None:
        """Soft delete disables the flag; hard delete removes it and its overrides."""
        flag = self.get_flag(feature_name)
        if not hard:
            flag.enabled = False
            self.store.commit()
            logger.info(f"Feature flag {feature_name} soft-deleted")
            return

        children = self.store.list_children(flag)
        if children:
            raise ValidationError(
                f"Feature flag {feature_name} still has children: "
                f"{', '.join(c.feature_name for c in children)}"
            )
        for experiment in self.store.list_experiments():
            if experiment.feature_flag_id == flag.id:
                experiment.feature_flag_id = None
        self.store.delete(flag)
        self.store.commit()
        logger.info(f"Feature flag {feature_name} deleted")

    def set_override(
        self,
        user_id: str,
        feature_name: str,
        enabled: bool,
        variant: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> UserFeatureOverride:
        flag = self.get_flag(feature_name)
        override = self.store.get_override(user_id, flag)
        if override is None:
            override = UserFeatureOverride(user_id=user_id, feature_flag=flag)
            self.store.add(override)
        override.enabled = enabled
        override.variant = variant
        override.reason = reason
        self.store.commit()
        logger.info(f"Override for {user_id} on {feature_name} set to {enabled}")
        return override

    def remove_override(self, user_id: str, feature_name: str) -> None:
        flag = self.get_flag(feature_name)
        override = self.store.get_override(user_id, flag)
        if override is None:
            raise NotFoundError(f"No override for user {user_id} on {feature_name}")
        self.store.delete(override)
        self.store.commit()

    def list_overrides(self, feature_name: Optional[str] = None, user_id: Optional[str] = None) -> list:
        flag = self.get_flag(feature_name) if feature_name is not None else None
        return self.store.list_overrides(flag=flag, user_id=user_id)

    def _resolve_parent(self, flag, feature_name, parent_feature):
        """Reject unknown parents, self-parenting and cycles before anything is written."""
        if parent_feature is None:
            return None
        if parent_feature == feature_name:
            raise ValidationError(f"Feature flag {feature_name} cannot be its own parent")
        parent = self.store.get_flag(parent_feature)
        if parent is None:
            raise ValidationError(f"Parent feature flag {parent_feature} does not exist")

        if flag is not None:
            ancestor = parent
            while ancestor is not None:
                if ancestor.id == flag.id:
                    raise ValidationError(
                        f"Setting {parent_feature} as parent of {feature_name} would create a cycle"
                    )
                ancestor = self.store.get_flag_by_id(ancestor.parent_id) if ancestor.parent_id else None
        return parent

    def _apply_enabled(self, flag: FeatureFlag, enabled: bool) -> None:
        if enabled and not flag.enabled:
            self._check_dependencies(flag.feature_name)
        flag.enabled = enabled

    def _check_dependencies(self, feature_name: str) -> None:
        definition = catalog.find_definition(feature_name)
        if definition is None:
            return
        missing = []
        for dependency in sorted(definition.dependencies):
            dependency_flag = self.store.get_flag(dependency)
            if dependency_flag is None or not dependency_flag.enabled:
                missing.append(dependency)
        if missing:
            raise ValidationError(
                f"Cannot enable {feature_name}: dependencies not enabled: {', '.join(missing)}"
            )


def _check_percentage(value: int) -> None:
    if not 0 <= value <= 100:
        raise ValidationError(f"Rollout percentage must be within 0-100, got {value}")
