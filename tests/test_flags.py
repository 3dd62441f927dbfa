"""
Unit tests for flag evaluation and flag administration
"""

import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_flag
from fitflags.bucketing import bucket
from fitflags.errors import NotFoundError, ValidationError
from fitflags.schemas import EvaluationSource
from fitflags.services.flags import FlagEvaluator
from fitflags.store import SQLAlchemyStore

USERS = [f"user-{i}" for i in range(300)]


def test_unknown_flag_evaluates_disabled(store):
    result = FlagEvaluator(store).evaluate("user-1", "no_such_feature")

    assert result.enabled is False
    assert result.source == EvaluationSource.NOT_FOUND
    assert result.variant is None


def test_disabled_parent_dominates_child(store, flag_admin):
    """A child at 100% rollout stays off while its parent is off"""
    make_flag(flag_admin, "parent_feature", enabled=False)
    make_flag(flag_admin, "child_feature", enabled=True, rollout=100, parent="parent_feature")
    evaluator = FlagEvaluator(store)

    for user_id in USERS[:50]:
        result = evaluator.evaluate(user_id, "child_feature")
        assert result.enabled is False
        assert result.source == EvaluationSource.PARENT_DISABLED


def test_disabled_grandparent_dominates(store, flag_admin):
    make_flag(flag_admin, "root_feature", enabled=False)
    make_flag(flag_admin, "middle_feature", enabled=True, parent="root_feature")
    make_flag(flag_admin, "leaf_feature", enabled=True, parent="middle_feature")

    result = FlagEvaluator(store).evaluate("user-1", "leaf_feature")

    assert result.source == EvaluationSource.PARENT_DISABLED


def test_disabled_parent_beats_override(store, flag_admin):
    make_flag(flag_admin, "parent_feature", enabled=False)
    make_flag(flag_admin, "child_feature", enabled=True, parent="parent_feature")
    flag_admin.set_override("user-1", "child_feature", enabled=True, variant="gold")

    result = FlagEvaluator(store).evaluate("user-1", "child_feature")

    assert result.enabled is False
    assert result.source == EvaluationSource.PARENT_DISABLED


def test_override_beats_rollout(store, flag_admin):
    make_flag(flag_admin, "beta_x", enabled=True, rollout=0)
    flag_admin.set_override("user-7", "beta_x", enabled=True, variant="early_access", reason="tester")
    evaluator = FlagEvaluator(store)

    granted = evaluator.evaluate("user-7", "beta_x")
    others = evaluator.evaluate("user-8", "beta_x")

    assert granted.enabled is True
    assert granted.variant == "early_access"
    assert granted.source == EvaluationSource.OVERRIDE
    assert others.enabled is False
    assert others.source == EvaluationSource.FEATURE_FLAG


def test_override_can_disable_and_beats_disabled_flag(store, flag_admin):
    make_flag(flag_admin, "everyone", enabled=True, rollout=100)
    make_flag(flag_admin, "nobody", enabled=False)
    flag_admin.set_override("user-1", "everyone", enabled=False)
    flag_admin.set_override("user-1", "nobody", enabled=True)
    evaluator = FlagEvaluator(store)

    assert evaluator.evaluate("user-1", "everyone").enabled is False
    assert evaluator.evaluate("user-1", "nobody").enabled is True


def test_rollout_zero_and_hundred(store, flag_admin):
    make_flag(flag_admin, "beta_x", enabled=True, rollout=0)
    evaluator = FlagEvaluator(store)
    assert not any(evaluator.evaluate(u, "beta_x").enabled for u in USERS)

    flag_admin.set_rollout("beta_x", 100)
    assert all(evaluator.evaluate(u, "beta_x").enabled for u in USERS)


def test_rollout_uses_bucket(store, flag_admin):
    make_flag(flag_admin, "half_feature", enabled=True, rollout=50)
    evaluator = FlagEvaluator(store)

    for user_id in USERS[:100]:
        expected = bucket(user_id, "half_feature") < 50
        assert evaluator.evaluate(user_id, "half_feature").enabled is expected


def test_rollout_monotonicity(store, flag_admin):
    """Raising the percentage only ever adds users"""
    make_flag(flag_admin, "growing", enabled=True, rollout=30)
    evaluator = FlagEvaluator(store)
    at_30 = {u for u in USERS if evaluator.evaluate(u, "growing").enabled}

    flag_admin.set_rollout("growing", 60)
    at_60 = {u for u in USERS if evaluator.evaluate(u, "growing").enabled}

    assert at_30 < at_60


def test_evaluation_is_repeatable(store, flag_admin):
    make_flag(flag_admin, "stable", enabled=True, rollout=42)
    evaluator = FlagEvaluator(store)

    first = [evaluator.evaluate(u, "stable") for u in USERS]
    second = [evaluator.evaluate(u, "stable") for u in USERS]

    assert first == second


def test_disabled_flag_source(store, flag_admin):
    make_flag(flag_admin, "off_feature", enabled=False, rollout=100)

    result = FlagEvaluator(store).evaluate("user-1", "off_feature")

    assert result.enabled is False
    assert result.source == EvaluationSource.FEATURE_FLAG


def test_audience_ineligible_users_are_disabled(store, flag_admin):
    make_flag(flag_admin, "pro_only", enabled=True, rollout=100)
    flag_admin.set_override("vip", "pro_only", enabled=True)
    evaluator = FlagEvaluator(store)

    assert evaluator.evaluate("user-1", "pro_only", audience_eligible=False).enabled is False
    assert evaluator.evaluate("vip", "pro_only", audience_eligible=False).enabled is True


def test_hop_limit_fails_closed(store, flag_admin):
    make_flag(flag_admin, "level_0")
    make_flag(flag_admin, "level_1", parent="level_0")
    make_flag(flag_admin, "level_2", parent="level_1")
    make_flag(flag_admin, "level_3", parent="level_2")

    assert FlagEvaluator(store, max_depth=3).evaluate("u", "level_3").enabled is True
    assert FlagEvaluator(store, max_depth=2).evaluate("u", "level_3").source == EvaluationSource.PARENT_DISABLED


def test_store_failure_degrades_to_disabled(db):
    class BrokenStore(SQLAlchemyStore):
        def get_flag(self, feature_name):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

    result = FlagEvaluator(BrokenStore(db)).evaluate("user-1", "dark_mode")

    assert result.enabled is False
    assert result.source == EvaluationSource.ERROR


def test_evaluate_many(store, flag_admin):
    make_flag(flag_admin, "dark_mode", rollout=100)

    results = FlagEvaluator(store).evaluate_many("user-1", ["dark_mode", "ghost", "dark_mode"])

    assert list(results) == ["dark_mode", "ghost"]
    assert results["dark_mode"].enabled is True
    assert results["ghost"].source == EvaluationSource.NOT_FOUND


def test_upsert_rejects_missing_parent(flag_admin):
    with pytest.raises(ValidationError, match="does not exist"):
        make_flag(flag_admin, "orphan", parent="ghost")


def test_upsert_rejects_self_parent(flag_admin):
    make_flag(flag_admin, "loop")

    with pytest.raises(ValidationError, match="own parent"):
        make_flag(flag_admin, "loop", parent="loop")


def test_upsert_rejects_cycle(flag_admin):
    make_flag(flag_admin, "a")
    make_flag(flag_admin, "b", parent="a")
    make_flag(flag_admin, "c", parent="b")

    with pytest.raises(ValidationError, match="cycle"):
        make_flag(flag_admin, "a", parent="c")

    assert flag_admin.get_flag("a").parent_id is None


def test_upsert_updates_existing_flag(flag_admin):
    make_flag(flag_admin, "dark_mode", enabled=False, rollout=10)
    make_flag(flag_admin, "dark_mode", enabled=True, rollout=80, description="Dark theme")

    flag = flag_admin.get_flag("dark_mode")
    assert flag.enabled is True
    assert flag.rollout_percentage == 80
    assert flag.description == "Dark theme"
    assert len(flag_admin.list_flags()) == 1


def test_enabling_requires_catalog_dependencies(flag_admin):
    make_flag(flag_admin, "friend_system", enabled=False)
    make_flag(flag_admin, "social_challenges", enabled=False)

    with pytest.raises(ValidationError, match="friend_system"):
        flag_admin.set_enabled("social_challenges", True)

    flag_admin.set_enabled("friend_system", True)
    assert flag_admin.set_enabled("social_challenges", True).enabled is True


def test_admin_operations_on_missing_flag_raise(flag_admin):
    with pytest.raises(NotFoundError):
        flag_admin.set_enabled("ghost", True)
    with pytest.raises(NotFoundError):
        flag_admin.set_override("user-1", "ghost", enabled=True)
    with pytest.raises(NotFoundError):
        flag_admin.toggle_with_children("ghost", False)


def test_toggle_with_children(store, flag_admin):
    make_flag(flag_admin, "social_hub", enabled=False)
    make_flag(flag_admin, "leaderboards", enabled=False, parent="social_hub")
    make_flag(flag_admin, "goal_tracking", enabled=False, parent="social_hub")
    make_flag(flag_admin, "unrelated", enabled=False)

    result = flag_admin.toggle_with_children("social_hub", True)

    assert result.updated == ["social_hub", "goal_tracking", "leaderboards"]
    assert result.failed == []
    assert flag_admin.get_flag("leaderboards").enabled is True
    assert flag_admin.get_flag("unrelated").enabled is False


def test_toggle_with_children_reports_partial_failure(db, store, flag_admin):
    """A failing child is reported; the other children stay applied"""
    make_flag(flag_admin, "friend_system", enabled=False)
    make_flag(flag_admin, "social_hub", enabled=False)
    make_flag(flag_admin, "leaderboards", enabled=False, parent="social_hub")
    make_flag(flag_admin, "social_challenges", enabled=False, parent="social_hub")

    result = flag_admin.toggle_with_children("social_hub", True)

    assert result.partial_failure
    assert result.updated == ["social_hub", "leaderboards"]
    assert [f.feature_name for f in result.failed] == ["social_challenges"]
    assert "friend_system" in result.failed[0].error

    db.expire_all()
    assert flag_admin.get_flag("social_hub").enabled is True
    assert flag_admin.get_flag("leaderboards").enabled is True
    assert flag_admin.get_flag("social_challenges").enabled is False


def test_bulk_update_rollout(flag_admin):
    make_flag(flag_admin, "voice_commands", rollout=20)
    make_flag(flag_admin, "ar_workout_mode", rollout=10)

    result = flag_admin.bulk_update_rollout(["voice_commands", "ghost", "ar_workout_mode"], 50)

    assert result.updated == ["voice_commands", "ar_workout_mode"]
    assert [f.feature_name for f in result.failed] == ["ghost"]
    assert flag_admin.get_flag("ar_workout_mode").rollout_percentage == 50


def test_soft_delete_disables(store, flag_admin):
    make_flag(flag_admin, "dark_mode", rollout=100)

    flag_admin.delete_flag("dark_mode")

    assert flag_admin.get_flag("dark_mode").enabled is False
    assert FlagEvaluator(store).evaluate("u", "dark_mode").enabled is False


def test_hard_delete(store, flag_admin):
    make_flag(flag_admin, "parent_feature")
    make_flag(flag_admin, "child_feature", parent="parent_feature")
    flag_admin.set_override("user-1", "child_feature", enabled=True)

    with pytest.raises(ValidationError, match="children"):
        flag_admin.delete_flag("parent_feature", hard=True)

    flag_admin.delete_flag("child_feature", hard=True)
    flag_admin.delete_flag("parent_feature", hard=True)

    assert flag_admin.list_flags() == []
    assert store.list_overrides() == []
    assert FlagEvaluator(store).evaluate("user-1", "child_feature").source == EvaluationSource.NOT_FOUND


def test_override_lifecycle(flag_admin):
    make_flag(flag_admin, "offline_mode")
    flag_admin.set_override("user-1", "offline_mode", enabled=True, reason="purchased premium")
    flag_admin.set_override("user-1", "offline_mode", enabled=False)

    overrides = flag_admin.list_overrides("offline_mode")
    assert len(overrides) == 1
    assert overrides[0].enabled is False
    assert overrides[0].feature_name == "offline_mode"

    flag_admin.remove_override("user-1", "offline_mode")
    assert flag_admin.list_overrides(user_id="user-1") == []
    with pytest.raises(NotFoundError):
        flag_admin.remove_override("user-1", "offline_mode")


def test_seed_catalog(flag_admin):
    created = flag_admin.seed_catalog()

    names = {f.feature_name for f in created}
    assert "custom_themes" in names
    assert all(f.enabled is False for f in created)
    assert flag_admin.get_flag("custom_themes").parent_feature == "dark_mode"
    assert flag_admin.get_flag("offline_mode").rollout_percentage == 75
    assert flag_admin.seed_catalog() == []
