"""Table definitions shared by the application, migrations and tests."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

brands = Table(
    "brands",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", Text, nullable=False),
    Column("slug", Text, nullable=False, unique=True),
    Column("site_url", Text),
    Column("ecommerce_platform", Text),
    Column("meta", JSON),
    Column("catalog_finished_at", DateTime),
    Column("catalog_finished_reason", Text),
    Column("refresh_last_completed_at", DateTime),
    Column("refresh_next_due_at", DateTime),
    Column("created_at", DateTime),
)

catalog_runs = Table(
    "catalog_runs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("brand_id", Integer, ForeignKey("brands.id"), nullable=False),
    Column("status", Text, nullable=False),
    Column("platform", Text),
    Column("total_items", Integer, nullable=False, default=0),
    Column("started_at", DateTime),
    Column("updated_at", DateTime),
    Column("finished_at", DateTime),
    Column("last_url", Text),
    Column("last_stage", Text),
    Column("last_error", Text),
    Column("block_reason", Text),
    Column("consecutive_errors", Integer, nullable=False, default=0),
    Index("ix_catalog_runs_brand_status", "brand_id", "status"),
)

catalog_items = Table(
    "catalog_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("run_id", Integer, ForeignKey("catalog_runs.id"), nullable=False),
    Column("url", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text),
    Column("last_stage", Text),
    Column("started_at", DateTime),
    Column("completed_at", DateTime),
    Column("updated_at", DateTime),
    Index("ix_catalog_items_run_status", "run_id", "status"),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("brand_id", Integer, ForeignKey("brands.id"), nullable=False),
    Column("external_id", Text),
    Column("name", Text, nullable=False),
    Column("description", Text),
    Column("category", Text),
    Column("subcategory", Text),
    Column("style_tags", JSON),
    Column("material_tags", JSON),
    Column("pattern_tags", JSON),
    Column("occasion_tags", JSON),
    Column("gender", Text),
    Column("season", Text),
    Column("currency", Text),
    Column("source_url", Text),
    Column("image_cover_url", Text),
    Column("meta", JSON),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
    UniqueConstraint("brand_id", "source_url", name="uq_products_brand_source_url"),
)

variants = Table(
    "variants",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("sku", Text, nullable=False),
    Column("color", Text),
    Column("size", Text),
    Column("fit", Text),
    Column("material", Text),
    Column("price", Numeric(14, 2, asdecimal=False)),
    Column("compare_at_price", Numeric(14, 2, asdecimal=False)),
    Column("currency", Text),
    Column("stock", Integer),
    Column("stock_status", Text),
    Column("images", JSON),
    Column("meta", JSON),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
    UniqueConstraint("product_id", "sku", name="uq_variants_product_sku"),
)

price_history = Table(
    "price_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("variant_id", Integer, ForeignKey("variants.id"), nullable=False),
    Column("price", Numeric(14, 2, asdecimal=False)),
    Column("currency", Text),
    Column("recorded_at", DateTime, nullable=False),
)

stock_history = Table(
    "stock_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("variant_id", Integer, ForeignKey("variants.id"), nullable=False),
    Column("stock", Integer),
    Column("stock_status", Text),
    Column("recorded_at", DateTime, nullable=False),
)
