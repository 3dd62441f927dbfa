"""
Unit tests for the feature catalog
"""

import pytest

from fitflags import catalog
from fitflags.catalog import FeatureDefinition, seeding_order, validate_catalog
from fitflags.errors import NotFoundError, ValidationError
from fitflags.models import Audience, FeatureCategory


def _definition(name, parent=None, dependencies=()):
    return FeatureDefinition(
        name, name.title(), "", FeatureCategory.BETA, Audience.BETA, 10,
        dependencies=frozenset(dependencies), parent=parent,
    )


def test_builtin_catalog_is_consistent():
    by_name = validate_catalog()

    assert "dark_mode" in by_name
    assert by_name["custom_themes"].parent == "dark_mode"


def test_lookup_by_name_and_category():
    assert catalog.get_definition("offline_mode").default_rollout_percentage == 75
    assert catalog.find_definition("does_not_exist") is None

    admin_features = catalog.list_definitions(FeatureCategory.ADMIN)
    assert {d.name for d in admin_features} == {"admin_dashboard", "user_management", "analytics_dashboard"}


def test_unknown_definition_raises():
    with pytest.raises(NotFoundError):
        catalog.get_definition("teleportation")


def test_duplicate_names_rejected():
    with pytest.raises(ValidationError, match="Duplicate"):
        validate_catalog([_definition("a"), _definition("a")])


def test_unknown_parent_rejected():
    with pytest.raises(ValidationError, match="unknown parent"):
        validate_catalog([_definition("a", parent="ghost")])


def test_unknown_dependency_rejected():
    with pytest.raises(ValidationError, match="unknown dependencies"):
        validate_catalog([_definition("a", dependencies=["ghost"])])


def test_parent_cycle_rejected():
    with pytest.raises(ValidationError, match="cycle"):
        validate_catalog([_definition("a", parent="b"), _definition("b", parent="a")])


def test_seeding_order_places_parents_first():
    ordered = [d.name for d in seeding_order()]

    for definition in catalog.FEATURE_CATALOG:
        if definition.parent is not None:
            assert ordered.index(definition.parent) < ordered.index(definition.name)
    assert len(ordered) == len(catalog.FEATURE_CATALOG)
