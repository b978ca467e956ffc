"""create documents table

Revision ID: 3f1a9c2b7d10
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f1a9c2b7d10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

def upgrade() -> None:
    op.create_table(
        'documents',
        sa.Column('collection', sa.String(length=64), nullable=False),
        sa.Column('doc_id', sa.String(length=255), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('version', sa.String(length=32), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('collection', 'doc_id'),
    )
    op.create_index('ix_documents_collection_expires_at', 'documents', ['collection', 'expires_at'])

def downgrade() -> None:
    op.drop_index('ix_documents_collection_expires_at', table_name='documents')
    op.drop_table('documents')
