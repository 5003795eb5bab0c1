from __future__ import annotations

from alembic import op
from sqlmodel import SQLModel
from esign.db.base import *  # noqa: F401,F403 register e-sign tables on SQLModel.metadata

revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Baseline: companies, users, templates, documents, recipients, tokens, audit log,
    # api keys, otp, short links, locks and bulk jobs
    bind = op.get_bind()
    SQLModel.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    SQLModel.metadata.drop_all(bind=bind)
