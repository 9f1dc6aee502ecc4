import sqlalchemy as sa

from app.catalog.brands import BRANDS_PATH, BrandSeed, load_brands, upsert_brands
from app.db.tables import brands


def test_bundled_brands_file():
    seeds = load_brands()
    assert BRANDS_PATH.exists()
    assert {seed.slug for seed in seeds} >= {"lumi-threads", "casa-olivo"}
    assert len(load_brands(limit=2)) == 2


def test_load_brands_from_custom_file(tmp_path):
    path = tmp_path / "brands.yml"
    path.write_text("- name: Acme\n  slug: acme\n  site_url: acme.test\n  meta:\n    country: CO\n")
    (seed,) = load_brands(path)
    assert seed == BrandSeed(name="Acme", slug="acme", site_url="acme.test", meta={"country": "CO"})


def test_upsert_brands_matches_by_slug(engine):
    first = upsert_brands(engine, [BrandSeed(name="Acme", slug="acme", site_url="acme.test", ecommerce_platform="Shopify")])
    assert first == {"created": 1, "updated": 0}

    with engine.begin() as conn:
        conn.execute(brands.update().values(catalog_finished_reason="manual"))

    second = upsert_brands(engine, [BrandSeed(name="Acme Co", slug="acme", site_url="https://acme.test/")])
    assert second == {"created": 0, "updated": 1}

    with engine.connect() as conn:
        row = conn.execute(sa.select(brands)).mappings().one()
    assert row["name"] == "Acme Co"
    assert row["catalog_finished_reason"] == "manual"
    assert row["ecommerce_platform"] is None
