"""Default achievement templates for a fresh moments installation."""

from __future__ import annotations

import logging

from moments.achievements.store import AchievementStore
from moments.achievements.templates import create_template

logger = logging.getLogger(__name__)

# Prerequisites reference other seed entries by name; ids are resolved at seed time
TEMPLATE_SEED_DATA: list[dict] = [
    # Moments
    {
        "name": "First Moment",
        "description": "Record your very first moment",
        "condition_type": "count",
        "metric": "moments_created",
        "target": 1,
        "points": 10,
        "difficulty": "easy",
        "category": "moments",
        "tags": ["beginner"],
    },
    {
        "name": "Moment Collector",
        "description": "Record 10 moments",
        "condition_type": "count",
        "metric": "moments_created",
        "target": 10,
        "points": 50,
        "difficulty": "medium",
        "category": "moments",
        "prerequisites": ["First Moment"],
    },
    {
        "name": "Moment Expert",
        "description": "Record 50 moments",
        "condition_type": "count",
        "metric": "moments_created",
        "target": 50,
        "points": 200,
        "difficulty": "hard",
        "category": "moments",
        "prerequisites": ["Moment Collector"],
    },
    {
        "name": "Moment Master",
        "description": "Record 100 moments. A life well documented.",
        "condition_type": "count",
        "metric": "moments_created",
        "target": 100,
        "points": 500,
        "difficulty": "legendary",
        "category": "moments",
        "prerequisites": ["Moment Expert"],
    },
    # Media
    {
        "name": "Photo Rookie",
        "description": "Attach your first photo to a moment",
        "condition_type": "count",
        "metric": "photos_uploaded",
        "target": 1,
        "points": 10,
        "difficulty": "easy",
        "category": "photos",
    },
    {
        "name": "Photographer",
        "description": "Attach 100 photos to your moments",
        "condition_type": "milestone",
        "metric": "total_photos",
        "target": 100,
        "points": 300,
        "difficulty": "hard",
        "category": "photos",
        "prerequisites": ["Photo Rookie"],
    },
    {
        "name": "Video Maker",
        "description": "Attach your first video to a moment",
        "condition_type": "count",
        "metric": "videos_uploaded",
        "target": 1,
        "points": 15,
        "difficulty": "easy",
        "category": "videos",
    },
    # Places
    {
        "name": "Explorer",
        "description": "Record a moment at a new place",
        "condition_type": "location",
        "metric": "moment_locations",
        "target": 1,
        "points": 10,
        "difficulty": "easy",
        "category": "locations",
        "params": {"location": {"distinct_places": 1}},
    },
    {
        "name": "Traveler",
        "description": "Record moments in 10 different places",
        "condition_type": "location",
        "metric": "moment_locations",
        "target": 10,
        "points": 80,
        "difficulty": "medium",
        "category": "locations",
        "params": {"location": {"distinct_places": 10}},
        "prerequisites": ["Explorer"],
    },
    # Streaks
    {
        "name": "One Week Strong",
        "description": "Record a moment every day for 7 days",
        "condition_type": "streak",
        "metric": "daily_moments",
        "target": 7,
        "timeframe": "day",
        "points": 30,
        "difficulty": "easy",
        "category": "time",
    },
    {
        "name": "One Month Strong",
        "description": "Record a moment every day for 30 days",
        "condition_type": "streak",
        "metric": "daily_moments",
        "target": 30,
        "timeframe": "day",
        "points": 150,
        "difficulty": "medium",
        "category": "time",
    },
    {
        "name": "One Year Strong",
        "description": "Record a moment every day for a whole year",
        "condition_type": "streak",
        "metric": "daily_moments",
        "target": 365,
        "timeframe": "day",
        "points": 1000,
        "difficulty": "legendary",
        "category": "time",
        "is_hidden": True,
    },
    {
        "name": "Weekly Journaler",
        "description": "Record at least one moment a week for 12 weeks",
        "condition_type": "streak",
        "metric": "daily_moments",
        "target": 12,
        "timeframe": "week",
        "points": 120,
        "difficulty": "medium",
        "category": "time",
    },
    # Social
    {
        "name": "Social Butterfly",
        "description": "Add your first friend",
        "condition_type": "count",
        "metric": "friends_added",
        "target": 1,
        "points": 10,
        "difficulty": "easy",
        "category": "social",
    },
    {
        "name": "Popular",
        "description": "Receive 50 likes on your moments",
        "condition_type": "milestone",
        "metric": "total_likes_received",
        "target": 50,
        "points": 100,
        "difficulty": "medium",
        "category": "social",
    },
    {
        "name": "Critic",
        "description": "Leave 10 comments on friends' moments",
        "condition_type": "count",
        "metric": "comments_posted",
        "target": 10,
        "points": 25,
        "difficulty": "easy",
        "category": "social",
        "is_repeatable": True,
    },
]


async def seed_templates(store: AchievementStore, created_by: str = "system") -> int:
    """Create missing default templates by name. Existing ones are left as-is.

    Returns number of templates created.
    """
    ids_by_name = {t.name: t.id for t in await store.all_templates()}
    created = 0
    for data in TEMPLATE_SEED_DATA:
        if data["name"] in ids_by_name:
            continue
        payload = dict(data)
        payload["prerequisites"] = [ids_by_name[name] for name in data.get("prerequisites", [])]
        template = await create_template(store, payload, created_by=created_by)
        ids_by_name[template.name] = template.id
        created += 1

    logger.info("Seeded %d achievement templates", created)
    return created
