"""Create crates and doc_embeddings

Revision ID: 3c1e9a7d52b0
Revises: 
Create Date: 2025-09-14 10:02:41.518204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector


# revision identifiers, used by Alembic.
revision: str = '3c1e9a7d52b0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table('crates',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('version', sa.Text(), nullable=True),
        sa.Column('last_updated', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('total_docs', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('total_tokens', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name', name='uq_crates_name')
    )

    # Dimension is left open so a model switch only needs a --force run.
    op.create_table('doc_embeddings',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('crate_id', sa.Integer(), nullable=False),
        sa.Column('crate_name', sa.Text(), nullable=False),
        sa.Column('doc_path', sa.Text(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('embedding', Vector(), nullable=False),
        sa.Column('token_count', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['crate_id'], ['crates.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('crate_id', 'doc_path', name='uq_doc_embeddings_crate_path')
    )

    op.create_index('idx_doc_embeddings_crate_name', 'doc_embeddings', ['crate_name'])
    op.create_index('idx_doc_embeddings_crate_id', 'doc_embeddings', ['crate_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('idx_doc_embeddings_crate_id', table_name='doc_embeddings')
    op.drop_index('idx_doc_embeddings_crate_name', table_name='doc_embeddings')
    op.drop_table('doc_embeddings')
    op.drop_table('crates')
