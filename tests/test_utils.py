from datetime import datetime

import pytest

from app.catalog.platform_detect import score_signals
from app.catalog.types import ProductRef
from app.catalog.utils import (
    dedupe_refs,
    extract_sitemaps_from_robots,
    guess_currency,
    is_likely_product_url,
    normalize_url,
    parse_price_value,
    sane_price,
)
from app.utils.dates import next_due_at
from app.utils.tokens import InvalidToken, generate_admin_token, load_token


@pytest.mark.parametrize(
    "value, expected",
    [
        ("49.90", 49.9),
        ("160.000", 160000.0),
        ("$ 1,299.90", 1299.9),
        ("1.299,90", 1299.9),
        ("COP 89.900", 89900.0),
        (12, 12.0),
        ("gratis", None),
        (None, None),
    ],
)
def test_parse_price_value(value, expected):
    assert parse_price_value(value) == expected


def test_sane_price_drops_out_of_range_values():
    assert sane_price("0") is None
    assert sane_price(0.001) is None
    assert sane_price(250_000_000) is None
    assert sane_price("19.999") == 19999.0


def test_guess_currency():
    assert guess_currency(10.0, " usd ") == "USD"
    assert guess_currency(45.0, None) == "USD"
    assert guess_currency(89900.0, None) == "COP"
    assert guess_currency(5000.0, None) is None


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://acme.test/products/camisa", True),
        ("https://acme.test/producto/blusa-lino/", True),
        ("https://acme.test/vestido-azul-p-1234", True),
        ("https://acme.test/collections/verano", False),
        ("https://acme.test/blogs/news/lanzamiento", False),
        ("https://acme.test/media/foto.jpg", False),
        ("https://acme.test/", False),
    ],
)
def test_is_likely_product_url(url, expected):
    assert is_likely_product_url(url) is expected


def test_normalize_url_and_robots():
    assert normalize_url(" acme.test ") == "https://acme.test"
    assert normalize_url("") is None
    robots = "User-agent: *\nSitemap: https://acme.test/a.xml\nsitemap: https://acme.test/a.xml\nSitemap: https://acme.test/b.xml"
    assert extract_sitemaps_from_robots(robots) == ["https://acme.test/a.xml", "https://acme.test/b.xml"]


def test_dedupe_refs_ignores_fragments():
    refs = [ProductRef(url="https://acme.test/p/1"), ProductRef(url="https://acme.test/p/1#reviews"), ProductRef(url="https://acme.test/p/2")]
    assert [ref.url for ref in dedupe_refs(refs)] == ["https://acme.test/p/1", "https://acme.test/p/2"]
    assert len(dedupe_refs(refs, limit=1)) == 1


def test_score_signals():
    guess = score_signals('<link href="/wp-content/themes/x.css">', [], {}, "WordPress 6.4; WooCommerce 8.2".lower())
    assert guess.platform == "woocommerce"
    assert 0.4 <= guess.confidence <= 0.98
    assert score_signals("<html></html>", [], {}, None) is None
    assert score_signals("", [], {"X-ShopId": "1"}, None).platform == "shopify"


def test_next_due_at_without_jitter():
    now = datetime(2026, 3, 1, 12, 0)
    assert next_due_at(7, 0, now=now) == datetime(2026, 3, 8, 12, 0)


def test_admin_tokens_round_trip(monkeypatch):
    monkeypatch.setenv("SIGNING_SECRET", "secret")
    token = generate_admin_token("ops@example.com")
    assert load_token(token)["email"] == "ops@example.com"
    with pytest.raises(InvalidToken):
        load_token(token + "x")
    with pytest.raises(InvalidToken):
        load_token(token, purpose="other")
