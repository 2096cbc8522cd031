from shopcart.config import Config
from shopcart.jobs import run_cleanup
from shopcart.models import AddItemOptions, CartIdentifier


def test_cleanup_pass_reports_counts(seeded, clock):
    seeded.cart_service.add_to_cart(CartIdentifier(user_id="u1"), "widget", 2, AddItemOptions(reserve_stock=True))
    seeded.cart_service.get_cart(CartIdentifier(user_id="u2"))

    clock.advance(hours=25)
    results = run_cleanup(seeded)

    assert results == {
        "expired_reservations": 1,
        "expired_carts": 1,
        "abandoned_carts": 1,
        "replenished_templates": 0,
    }
    assert seeded.stock.get_record("widget").reserved == 0


def test_redis_url_reflects_tls_and_auth(monkeypatch):
    monkeypatch.setattr(Config, "REDIS_SSL", True)
    monkeypatch.setattr(Config, "REDIS_AUTH_TOKEN", "s3cret")
    monkeypatch.setattr(Config, "REDIS_HOST", "cache.internal")

    assert Config.redis_url() == f"rediss://:s3cret@cache.internal:{Config.REDIS_PORT}/{Config.REDIS_DB}"


def test_load_redis_secrets_is_a_noop_when_token_present(monkeypatch):
    monkeypatch.setattr(Config, "REDIS_AUTH_TOKEN", "from-env")
    monkeypatch.setenv("REDIS_SECRET_NAME", "prod/redis")

    Config.load_redis_secrets()

    assert Config.REDIS_AUTH_TOKEN == "from-env"

