"""
Registry of known feature definitions.

Pure data curated by admins: names, categories and the defaults a flag is
seeded with. Nothing here changes at runtime and evaluation never reads it.
"""

from dataclasses import dataclass, field
from typing import Optional

from fitflags.errors import NotFoundError, ValidationError
from fitflags.models import Audience, FeatureCategory


@dataclass(frozen=True)
class FeatureDefinition:
    name: str
    display_name: str
    description: str
    category: FeatureCategory
    default_audience: Audience
    default_rollout_percentage: int
    dependencies: frozenset = field(default_factory=frozenset)
    parent: Optional[str] = None


CATEGORY_LABELS = {
    FeatureCategory.CORE: "Core Features",
    FeatureCategory.SOCIAL: "Social Features",
    FeatureCategory.PREMIUM: "Premium Features",
    FeatureCategory.ADMIN: "Admin Features",
    FeatureCategory.BETA: "Beta Features",
    FeatureCategory.ANALYTICS: "Analytics Features",
    FeatureCategory.UI: "UI Features",
}


FEATURE_CATALOG = (
    # Core
    FeatureDefinition(
        "advanced_stats", "Advanced Statistics",
        "Detailed performance analytics and insights for users",
        FeatureCategory.CORE, Audience.PREMIUM, 100,
    ),
    FeatureDefinition(
        "smart_recommendations", "Smart Recommendations",
        "AI-powered workout recommendations based on user performance",
        FeatureCategory.CORE, Audience.PREMIUM, 80,
        dependencies=frozenset({"advanced_stats"}),
    ),
    FeatureDefinition(
        "custom_workouts", "Custom Workouts",
        "Allow users to create and customize their own workout routines",
        FeatureCategory.CORE, Audience.PRO, 100,
    ),
    FeatureDefinition(
        "priority_support", "Priority Support",
        "Enhanced customer support for premium users",
        FeatureCategory.CORE, Audience.PRO, 100,
    ),
    # Social
    FeatureDefinition(
        "social_challenges", "Social Challenges",
        "Community-driven challenges and competitions",
        FeatureCategory.SOCIAL, Audience.PREMIUM, 90,
        dependencies=frozenset({"friend_system"}),
    ),
    FeatureDefinition(
        "friend_system", "Friend System",
        "Add friends and share workout achievements",
        FeatureCategory.SOCIAL, Audience.ALL, 100,
    ),
    FeatureDefinition(
        "activity_feed", "Activity Feed",
        "View friend activities and social interactions",
        FeatureCategory.SOCIAL, Audience.ALL, 100,
        parent="friend_system",
    ),
    FeatureDefinition(
        "basic_social_sharing", "Basic Social Sharing",
        "Share achievements on social media platforms",
        FeatureCategory.SOCIAL, Audience.ALL, 100,
    ),
    FeatureDefinition(
        "workout_posting", "Workout Posting",
        "Post workout completions to activity feed",
        FeatureCategory.SOCIAL, Audience.ALL, 100,
        parent="activity_feed",
        dependencies=frozenset({"basic_social_sharing"}),
    ),
    FeatureDefinition(
        "league_sharing", "League Sharing",
        "Share league and competition results with special graphics",
        FeatureCategory.SOCIAL, Audience.PREMIUM, 90,
        parent="basic_social_sharing",
        dependencies=frozenset({"leaderboards"}),
    ),
    FeatureDefinition(
        "competition_graphics", "Competition Graphics",
        "Enhanced sharing templates for competitions",
        FeatureCategory.SOCIAL, Audience.PREMIUM, 90,
        parent="league_sharing",
    ),
    FeatureDefinition(
        "leaderboards", "Leaderboards",
        "Competitive rankings and achievements",
        FeatureCategory.SOCIAL, Audience.ALL, 85,
    ),
    # Premium
    FeatureDefinition(
        "premium_exercises", "Premium Exercise Library",
        "Access to advanced and specialized exercises",
        FeatureCategory.PREMIUM, Audience.PREMIUM, 100,
    ),
    FeatureDefinition(
        "offline_mode", "Offline Mode",
        "Download workouts for offline use",
        FeatureCategory.PREMIUM, Audience.PREMIUM, 75,
    ),
    FeatureDefinition(
        "personal_trainer_ai", "AI Personal Trainer",
        "Advanced AI coaching and form correction",
        FeatureCategory.PREMIUM, Audience.PRO, 60,
        dependencies=frozenset({"smart_recommendations"}),
    ),
    # Admin
    FeatureDefinition(
        "admin_dashboard", "Admin Dashboard",
        "Administrative interface for app management",
        FeatureCategory.ADMIN, Audience.ADMIN, 100,
    ),
    FeatureDefinition(
        "user_management", "User Management",
        "Manage user accounts and permissions",
        FeatureCategory.ADMIN, Audience.ADMIN, 100,
        parent="admin_dashboard",
    ),
    FeatureDefinition(
        "analytics_dashboard", "Analytics Dashboard",
        "Advanced analytics and reporting tools",
        FeatureCategory.ADMIN, Audience.ADMIN, 100,
        parent="admin_dashboard",
    ),
    # Beta
    FeatureDefinition(
        "new_ui_design", "New UI Design",
        "Updated user interface with modern design",
        FeatureCategory.BETA, Audience.BETA, 30,
    ),
    FeatureDefinition(
        "voice_commands", "Voice Commands",
        "Control workouts using voice commands",
        FeatureCategory.BETA, Audience.BETA, 20,
    ),
    FeatureDefinition(
        "ar_workout_mode", "AR Workout Mode",
        "Augmented reality workout experience",
        FeatureCategory.BETA, Audience.BETA, 10,
    ),
    # Analytics
    FeatureDefinition(
        "detailed_performance_tracking", "Detailed Performance Tracking",
        "Advanced metrics and performance analysis",
        FeatureCategory.ANALYTICS, Audience.PREMIUM, 90,
        dependencies=frozenset({"advanced_stats"}),
    ),
    FeatureDefinition(
        "goal_tracking", "Goal Tracking",
        "Set and track fitness goals with progress insights",
        FeatureCategory.ANALYTICS, Audience.ALL, 100,
    ),
    # UI
    FeatureDefinition(
        "dark_mode", "Dark Mode",
        "Dark theme option for better viewing experience",
        FeatureCategory.UI, Audience.ALL, 100,
    ),
    FeatureDefinition(
        "custom_themes", "Custom Themes",
        "Personalized color themes and customization",
        FeatureCategory.UI, Audience.PREMIUM, 80,
        parent="dark_mode",
    ),
)


def validate_catalog(definitions=FEATURE_CATALOG) -> dict:
    """
    Check a catalog for duplicate names, dangling references and parent cycles.

    Returns the definitions keyed by name.
    """
    by_name = {}
    for definition in definitions:
        if definition.name in by_name:
            raise ValidationError(f"Duplicate feature definition: {definition.name}")
        if not 0 <= definition.default_rollout_percentage <= 100:
            raise ValidationError(
                f"{definition.name}: default rollout {definition.default_rollout_percentage} "
                f"is outside 0-100"
            )
        by_name[definition.name] = definition

    for definition in by_name.values():
        if definition.parent is not None and definition.parent not in by_name:
            raise ValidationError(
                f"{definition.name}: unknown parent feature {definition.parent}"
            )
        unknown = sorted(d for d in definition.dependencies if d not in by_name)
        if unknown:
            raise ValidationError(
                f"{definition.name}: unknown dependencies {', '.join(unknown)}"
            )

        seen = {definition.name}
        parent = definition.parent
        while parent is not None:
            if parent in seen:
                raise ValidationError(f"{definition.name}: parent chain contains a cycle")
            seen.add(parent)
            parent = by_name[parent].parent

    return by_name


_CATALOG_BY_NAME = validate_catalog()


def get_definition(name: str) -> FeatureDefinition:
    definition = _CATALOG_BY_NAME.get(name)
    if definition is None:
        raise NotFoundError(f"Feature {name} is not in the catalog")
    return definition


def find_definition(name: str) -> Optional[FeatureDefinition]:
    return _CATALOG_BY_NAME.get(name)


def list_definitions(category: Optional[FeatureCategory] = None) -> list:
    if category is None:
        return list(FEATURE_CATALOG)
    return [d for d in FEATURE_CATALOG if d.category == category]


def seeding_order(definitions=FEATURE_CATALOG) -> list:
    """Definitions ordered so every parent precedes its children."""
    by_name = {d.name: d for d in definitions}
    ordered = []
    placed = set()

    def place(definition):
        if definition.name in placed:
            return
        if definition.parent is not None:
            place(by_name[definition.parent])
        placed.add(definition.name)
        ordered.append(definition)

    for definition in definitions:
        place(definition)
    return ordered
