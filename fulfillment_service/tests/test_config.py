from fulfillment_service.app.config import Settings


def test_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("FULFILLMENT_WEBHOOK_SECRET", "from-env")
    monkeypatch.setenv("FULFILLMENT_ANONYMOUS_CHECKOUT_ENABLED", "true")
    monkeypatch.setenv("FULFILLMENT_MAX_PRICE", "2500")

    settings = Settings(_env_file=None)

    assert settings.webhook_secret == "from-env"
    assert settings.anonymous_checkout_enabled is True
    assert settings.max_price == 2500


def test_webhook_url_carries_secret():
    settings = Settings(_env_file=None, public_base_url="https://shop.example.com/", webhook_secret="s3")

    assert settings.webhook_url("tracking") == "https://shop.example.com/webhooks/tracking?secret=s3"


def test_importing_the_app_module_builds_nothing():
    from fulfillment_service.app import main

    assert not hasattr(main, "app")
    assert callable(main.create_app)
