"""创建文件记录和分片表

Revision ID: 20251017_090000
Revises:
Create Date: 2025-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20251017_090000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """创建file_records表和chunks表"""
    op.create_table(
        'file_records',
        sa.Column('file_id', sa.String(length=100), nullable=False),
        sa.Column('file_name', sa.String(length=255), nullable=False),
        sa.Column('mime_type', sa.String(length=255), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=True),
        sa.Column('storage_key', sa.String(length=1024), nullable=False),
        sa.Column('owner_id', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('upload_id', sa.String(length=1024), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('file_id'),
    )
    op.create_index('ix_file_records_storage_key', 'file_records', ['storage_key'], unique=True)
    op.create_index('ix_file_records_owner_id', 'file_records', ['owner_id'])
    op.create_index('ix_file_records_status', 'file_records', ['status'])

    op.create_table(
        'chunks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('file_id', sa.String(length=100), nullable=False),
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=False),
        sa.Column('checksum', sa.String(length=255), nullable=False),
        sa.Column('storage_key', sa.String(length=1024), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='COMPLETED'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['file_id'], ['file_records.file_id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('file_id', 'chunk_index', name='uq_chunks_file_id_chunk_index'),
    )
    op.create_index('ix_chunks_file_id', 'chunks', ['file_id'])


def downgrade() -> None:
    """删除chunks表和file_records表"""
    op.drop_index('ix_chunks_file_id', table_name='chunks')
    op.drop_table('chunks')
    op.drop_index('ix_file_records_status', table_name='file_records')
    op.drop_index('ix_file_records_owner_id', table_name='file_records')
    op.drop_index('ix_file_records_storage_key', table_name='file_records')
    op.drop_table('file_records')
