#!/usr/bin/env python3
"""Database seeding script for TopicBot.

This script connects to the database, creates all tables, and loads the
category registry from config/categories.yaml and sources from
config/sources.yaml using the repository layer.
"""

import asyncio
import sys
from pathlib import Path

import yaml
from sqlalchemy.exc import SQLAlchemyError

from topicbot.core.db import create_all, get_sessionmaker
from topicbot.core.errors import PersistenceFailure
from topicbot.core.repositories import (
    get_active_categories,
    list_active_sources,
    upsert_category,
    upsert_source,
)
from topicbot.core.settings import get_settings

project_root = Path(__file__).parent.parent
settings = get_settings()


def load_yaml_config(file_path: Path) -> dict:
    """Load YAML configuration file."""
    if not file_path.exists():
        print(f"Warning: {file_path} not found, skipping...")
        return {}

    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
            print(f"✅ Loaded config from {file_path}")
            return config
    except yaml.YAMLError as e:
        print(f"❌ Error loading {file_path}: {e}")
        return {}


async def seed_categories_from_yaml(session) -> int:
    """Seed the category registry. Returns count of categories processed."""
    print("🏷️  Loading categories from config/categories.yaml...")
    config = load_yaml_config(project_root / "config" / "categories.yaml")

    processed_count = 0
    for entry in config.get('categories', []):
        try:
            category = await upsert_category(
                session,
                entry['name'],
                sort_order=entry.get('sort_order', 0),
                is_active=entry.get('is_active', True),
            )
            print(f"  ✅ {category.name} (order {category.sort_order})")
            processed_count += 1
        except (KeyError, ValueError, PersistenceFailure) as e:
            print(f"  ❌ Error processing category {entry}: {e}")

    return processed_count


async def seed_sources_from_yaml(session) -> int:
    """Seed sources. Returns count of sources processed."""
    print("📰 Loading sources from config/sources.yaml...")
    config = load_yaml_config(project_root / "config" / "sources.yaml")

    sources_config = config.get('sources', [])
    if not sources_config:
        print("⚠️  No sources found in config/sources.yaml")
        return 0

    processed_count = 0
    for source_config in sources_config:
        try:
            source = await upsert_source(session, source_config)
            print(f"  ✅ {source.name} ({source.url})")
            processed_count += 1
        except (ValueError, PersistenceFailure) as e:
            print(f"  ❌ Error processing source {source_config.get('name', 'unknown')}: {e}")

    return processed_count


async def main():
    """Main seeding function."""
    print("🌱 Starting TopicBot database seeding...")

    try:
        print("\n📊 Creating database tables...")
        await create_all()
        print("✅ Database tables ready")

        async with get_sessionmaker()() as session:
            categories_processed = await seed_categories_from_yaml(session)
            sources_processed = await seed_sources_from_yaml(session)
            active_categories = await get_active_categories(session)
            active_sources = await list_active_sources(session)

        print("\n" + "=" * 60)
        print("🎉 DATABASE SEEDING COMPLETE!")
        print("=" * 60)
        print(f"🏷️  Categories processed: {categories_processed} (active: {', '.join(active_categories)})")
        print(f"📰 Sources processed: {sources_processed} (active: {len(active_sources)})")
        print(f"🔗 Database: {settings.db_url.split('@')[-1]}")
        print("=" * 60)

        if not active_categories:
            print("⚠️  No active categories; the configured category list will be used.")
        return 0

    except (PersistenceFailure, SQLAlchemyError, OSError) as e:
        print(f"❌ Error during seeding: {e}")
        return 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
