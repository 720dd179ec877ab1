from pathlib import Path
from typing import Optional

import pytest
from dotenv import load_dotenv

from hybridmigrate.core.config import Settings, get_settings
from hybridmigrate.core.db.session import create_migration_engine
from hybridmigrate.core.migrations import Entity, Field, MigrationManager
from hybridmigrate.core.migrations.models import Dialect

# Load environment variables from .env files
# Priority: .env (current dir) > ../.env (parent dir) > system env vars
project_dir = Path(__file__).parent.parent
for env_file in (project_dir / ".env", project_dir.parent / ".env"):
    if env_file.exists():
        load_dotenv(env_file, override=False)  # Don't override existing env vars

# Clear settings cache to force reload with new env vars
get_settings.cache_clear()


class User(Entity):
    id = Field(int, "primary_key")
    email = Field(str, "unique,not_null,max_length:255")
    name = Field(str, "max_length:100")


class Order(Entity):
    id = Field(int, "primary_key")
    user_id = Field(int, "not_null,foreign_key:users.id,index")
    total = Field(float, "precision:10,scale:2")
    note = Field(Optional[str])


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a temporary SQLite database and migrations directory."""
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        MIGRATIONS_DIR=str(tmp_path / "migrations"),
        _env_file=None,
    )


@pytest.fixture
def engine(settings):
    engine = create_migration_engine(settings.database_url, echo=False)
    yield engine
    engine.dispose()


@pytest.fixture
def migrations_dir(tmp_path) -> Path:
    return tmp_path / "migrations"


@pytest.fixture
def manager(engine, migrations_dir, settings):
    """MigrationManager over a fresh SQLite file."""
    manager = MigrationManager(engine=engine, migrations_dir=migrations_dir, settings=settings)
    assert manager.dialect == Dialect.SQLITE
    yield manager
    manager.close()
