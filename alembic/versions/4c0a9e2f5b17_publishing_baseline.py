"""publishing baseline: users, taxonomy, books, chapters, audio

Revision ID: 4c0a9e2f5b17
Revises:
Create Date: 2026-10-19 09:12:40.511204

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from app.database import Base
from app import models  # noqa: F401  registers every table on Base.metadata

# revision identifiers, used by Alembic.
revision: str = "4c0a9e2f5b17"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, categories, books, chapters, audio, audio chapters and parts."""
    bind: Connection = op.get_bind()
    Base.metadata.create_all(bind)


def downgrade() -> None:
    """Drop every table created by the baseline."""
    bind: Connection = op.get_bind()
    Base.metadata.drop_all(bind)
