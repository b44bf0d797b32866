"""listings and listing categories"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_listings"
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # Idempotent: the listings table may predate the migration history.
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if "listings" not in existing_tables:
        op.create_table(
            "listings",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("url", sa.Text(), nullable=False),
            sa.Column("platform", sa.String(length=32), nullable=False),
            sa.Column("title", sa.Text(), nullable=False),
            sa.Column("image", sa.Text(), nullable=True),
            sa.Column("price", sa.String(), nullable=True),
            sa.Column("price_min", sa.Float(), nullable=True),
            sa.Column("currency", sa.String(length=8), nullable=True),
            sa.Column("moq", sa.String(), nullable=True),
            sa.Column("moq_min", sa.Integer(), nullable=True),
            sa.Column("store_name", sa.String(), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("rating", sa.String(), nullable=True),
            sa.Column("orders", sa.String(), nullable=True),
            sa.Column("terms", JSONType, nullable=True),
            sa.Column("quality_class", sa.String(length=16), nullable=True),
            sa.Column("detail", JSONType, nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint("id", name=op.f("pk_listings")),
            sa.UniqueConstraint("url", name=op.f("uq_listings_url")),
        )
        op.create_index(op.f("ix_listings_platform"), "listings", ["platform"], unique=False)

    if "listing_categories" not in existing_tables:
        op.create_table(
            "listing_categories",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("listing_id", sa.Integer(), nullable=False),
            sa.Column("category_key", sa.String(), nullable=False),
            sa.ForeignKeyConstraint(
                ["listing_id"],
                ["listings.id"],
                name=op.f("fk_listing_categories_listing_id_listings"),
                ondelete="CASCADE",
            ),
            sa.PrimaryKeyConstraint("id", name=op.f("pk_listing_categories")),
            sa.UniqueConstraint("listing_id", "category_key", name="uq_listing_categories_listing_category"),
        )
        op.create_index(op.f("ix_listing_categories_listing_id"), "listing_categories", ["listing_id"], unique=False)
        op.create_index(
            op.f("ix_listing_categories_category_key"), "listing_categories", ["category_key"], unique=False
        )


def downgrade() -> None:
    op.drop_index(op.f("ix_listing_categories_category_key"), table_name="listing_categories")
    op.drop_index(op.f("ix_listing_categories_listing_id"), table_name="listing_categories")
    op.drop_table("listing_categories")
    op.drop_index(op.f("ix_listings_platform"), table_name="listings")
    op.drop_table("listings")
