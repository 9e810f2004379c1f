"""create catalog tables

Revision ID: 5c2e8a1f4b90
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c2e8a1f4b90'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _named_table(name: str, length: int) -> None:
    op.create_table(
        name,
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=length), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f(f'ix_{name}_name'), name, ['name'], unique=True)


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('image', sa.Text(), nullable=True),
        sa.Column('email_verified', sa.DateTime(timezone=True), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    _named_table('authors', 200)
    _named_table('artists', 200)
    _named_table('genres', 120)
    _named_table('work_types', 120)

    op.create_table(
        'works',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('cover_image', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('rating', sa.Float(), nullable=True),
        sa.Column('serialization', sa.String(length=255), nullable=True),
        sa.Column('publication_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('author_id', sa.Integer(), nullable=True),
        sa.Column('artist_id', sa.Integer(), nullable=True),
        sa.Column('type_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['author_id'], ['authors.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['artist_id'], ['artists.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['type_id'], ['work_types.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_works_slug'), 'works', ['slug'], unique=True)
    op.create_index(op.f('ix_works_author_id'), 'works', ['author_id'])
    op.create_index(op.f('ix_works_artist_id'), 'works', ['artist_id'])
    op.create_index(op.f('ix_works_type_id'), 'works', ['type_id'])

    op.create_table(
        'work_genres',
        sa.Column('work_id', sa.Integer(), nullable=False),
        sa.Column('genre_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['work_id'], ['works.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['genre_id'], ['genres.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('work_id', 'genre_id'),
    )

    op.create_table(
        'episodes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('work_id', sa.Integer(), nullable=False),
        sa.Column('number', sa.Float(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('release_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('views', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['work_id'], ['works.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('work_id', 'slug', name='ux_episodes_work_slug'),
    )
    op.create_index(op.f('ix_episodes_work_id'), 'episodes', ['work_id'])
    op.create_index(op.f('ix_episodes_slug'), 'episodes', ['slug'])

    op.create_table(
        'episode_images',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('episode_id', sa.Integer(), nullable=False),
        sa.Column('page_number', sa.Integer(), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(['episode_id'], ['episodes.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('episode_id', 'page_number', name='ux_episode_images_page'),
    )
    op.create_index(op.f('ix_episode_images_episode_id'), 'episode_images', ['episode_id'])


def downgrade() -> None:
    op.drop_index(op.f('ix_episode_images_episode_id'), table_name='episode_images')
    op.drop_table('episode_images')
    op.drop_index(op.f('ix_episodes_slug'), table_name='episodes')
    op.drop_index(op.f('ix_episodes_work_id'), table_name='episodes')
    op.drop_table('episodes')
    op.drop_table('work_genres')
    op.drop_index(op.f('ix_works_type_id'), table_name='works')
    op.drop_index(op.f('ix_works_artist_id'), table_name='works')
    op.drop_index(op.f('ix_works_author_id'), table_name='works')
    op.drop_index(op.f('ix_works_slug'), table_name='works')
    op.drop_table('works')
    for name in ('work_types', 'genres', 'artists', 'authors'):
        op.drop_index(op.f(f'ix_{name}_name'), table_name=name)
        op.drop_table(name)
    op.drop_index(op.f('ix_users_email'), table_name='users')
    op.drop_table('users')
